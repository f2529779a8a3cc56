import json
import math
from typing import Optional

import pandas as pd
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from . import config
from .db import get_db
from .deps import get_current_user
from .models import AuditLog, Subscription, User, UserSettings, Workflow, utcnow, isoformat_utc
from .rate_limit import rate_limit

router = APIRouter(tags=["account"])

WORKFLOW_COLUMNS = ["id", "name", "description", "status", "workflow_json", "created_at", "updated_at"]


class SettingsPatch(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    timezone: Optional[str] = Field(default=None, min_length=1, max_length=64)
    email_notifications: Optional[bool] = None
    weekly_digest: Optional[bool] = None


def _settings_for(db: Session, user: User) -> UserSettings:
    settings = db.query(UserSettings).filter(UserSettings.user_id == user.id).first()
    if settings is None:
        settings = UserSettings(user_id=user.id, timezone="UTC", email_notifications=True, weekly_digest=True)
        db.add(settings)
        db.commit()
        db.refresh(settings)
    return settings


def _settings_payload(user: User, settings: UserSettings) -> dict:
    return {
        "user": {"id": user.id, "name": user.name, "email": user.email},
        "settings": {
            "timezone": settings.timezone,
            "email_notifications": settings.email_notifications,
            "weekly_digest": settings.weekly_digest,
        },
    }


@router.get("/settings")
def get_settings(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _settings_payload(user, _settings_for(db, user))


@router.patch("/settings")
def update_settings(payload: SettingsPatch, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    settings = _settings_for(db, user)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "name" in changes:
        user.name = changes.pop("name").strip() or None
        user.updated_at = utcnow()
    for field, value in changes.items():
        setattr(settings, field, value)
    db.commit()
    return {"success": True, **_settings_payload(user, settings)}


@router.get("/export", dependencies=[Depends(rate_limit("export", limit=3, window=60 * 60,
                                                         message="Too many export requests"))])
def export_data(format: str = Query("json", pattern="^(json|csv)$"),
                db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    workflows = (
        db.query(Workflow)
        .filter(Workflow.user_id == user.id)
        .order_by(Workflow.created_at.desc())
        .all()
    )
    stamp = utcnow().date().isoformat()
    filename = f"{config.APP_NAME.lower()}-export-{stamp}"

    if format == "csv":
        df = pd.DataFrame([w.to_dict() for w in workflows], columns=WORKFLOW_COLUMNS)
        df["workflow_json"] = df["workflow_json"].map(json.dumps)
        return Response(
            content=df.to_csv(index=False),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}.csv"'},
        )

    subs = db.query(Subscription).filter(Subscription.user_id == user.id).all()
    data = {
        "exported_at": utcnow().isoformat(),
        "user": {"id": user.id, "email": user.email, "name": user.name, "created_at": isoformat_utc(user.created_at)},
        "subscriptions": [s.summary() for s in subs],
        "workflows": [w.to_dict() for w in workflows],
    }
    return Response(
        content=json.dumps(data, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}.json"'},
    )


@router.get("/activity")
def list_activity(page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=100),
                  category: Optional[str] = None,
                  db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    query = db.query(AuditLog).filter(AuditLog.user_id == user.id)
    if category:
        query = query.filter(AuditLog.entity_type == category)
    total = query.count()
    rows = (
        query.order_by(AuditLog.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    items = [
        {
            "id": r.id,
            "action": r.action,
            "category": r.entity_type,
            "entity_id": r.entity_id,
            "metadata": r.details,
            "timestamp": isoformat_utc(r.created_at),
        }
        for r in rows
    ]
    return {"items": items, "total": total, "page": page, "limit": limit,
            "total_pages": math.ceil(total / limit)}

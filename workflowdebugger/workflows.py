from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .db import get_db
from .deps import get_current_user, require_premium
from .errors import ApiError
from .models import User, Workflow, utcnow

router = APIRouter(prefix="/workflows", tags=["workflows"])

LIST_LIMIT = 100


class WorkflowStatus(str, Enum):
    draft = "draft"
    active = "active"
    paused = "paused"
    archived = "archived"


class WorkflowIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    workflow_json: dict = Field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.draft


class WorkflowPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    workflow_json: Optional[dict] = None
    status: Optional[WorkflowStatus] = None


def _owned(db: Session, workflow_id: str, user_id: int) -> Workflow:
    item = (
        db.query(Workflow)
        .filter(Workflow.id == workflow_id, Workflow.user_id == user_id)
        .first()
    )
    if item is None:
        raise ApiError.not_found()
    return item


@router.get("")
def list_workflows(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    items = (
        db.query(Workflow)
        .filter(Workflow.user_id == user.id)
        .order_by(Workflow.created_at.desc())
        .limit(LIST_LIMIT)
        .all()
    )
    return {"items": [w.to_dict() for w in items], "count": len(items)}


@router.post("", status_code=201)
def create_workflow(payload: WorkflowIn, db: Session = Depends(get_db), user: User = Depends(require_premium)):
    item = Workflow(
        user_id=user.id,
        name=payload.name.strip(),
        description=payload.description,
        workflow_json=payload.workflow_json,
        status=payload.status.value,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item.to_dict()


@router.get("/{workflow_id}")
def get_workflow(workflow_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _owned(db, workflow_id, user.id).to_dict()


@router.patch("/{workflow_id}")
def update_workflow(workflow_id: str, payload: WorkflowPatch,
                    db: Session = Depends(get_db), user: User = Depends(require_premium)):
    item = _owned(db, workflow_id, user.id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "status" in changes:
        changes["status"] = changes["status"].value
    for field, value in changes.items():
        setattr(item, field, value)
    item.updated_at = utcnow()
    db.commit()
    db.refresh(item)
    return item.to_dict()


@router.delete("/{workflow_id}")
def delete_workflow(workflow_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    db.query(Workflow).filter(Workflow.id == workflow_id, Workflow.user_id == user.id).delete(
        synchronize_session=False
    )
    db.commit()
    return {"success": True}

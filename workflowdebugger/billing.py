import logging
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from . import audit, config, payments
from .db import get_db
from .deps import get_access, get_current_user
from .entitlement import AccessCheck
from .errors import ApiError
from .models import Subscription, User, utcnow
from .rate_limit import get_client_ip

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class SubscriptionAction(str, Enum):
    cancel = "cancel"
    cancel_immediately = "cancel_immediately"
    reactivate = "reactivate"
    change_plan = "change_plan"


class CheckoutIn(BaseModel):
    plan_id: str


class SubscriptionUpdateIn(BaseModel):
    action: SubscriptionAction
    new_price_id: Optional[str] = None


def _latest_subscription(db: Session, user_id: int) -> Optional[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc())
        .first()
    )


def ensure_customer(db: Session, user: User) -> str:
    """Return the user's Stripe customer id, creating and storing it on first use."""
    if user.stripe_customer_id:
        return user.stripe_customer_id
    customer_id = payments.get_or_create_customer(user.id, user.email, user.name)
    user.stripe_customer_id = customer_id
    user.updated_at = utcnow()
    db.commit()
    return customer_id


@router.post("/checkout")
def create_checkout(payload: CheckoutIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    price_id = config.plan_price_ids().get(payload.plan_id)
    if not price_id:
        raise ApiError.bad_request("Invalid plan selected")

    customer_id = ensure_customer(db, user)
    checkout = payments.create_checkout_session(
        customer_id=customer_id,
        user_id=user.id,
        price_id=price_id,
        success_url=f"{config.APP_URL}/dashboard?upgraded=true",
        cancel_url=f"{config.APP_URL}/pricing?canceled=true",
        trial_days=config.TRIAL_DAYS,
    )
    logger.info("Checkout session created", extra={"user_id": user.id, "plan": payload.plan_id})
    return checkout


@router.post("/portal")
def create_portal(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    customer_id = ensure_customer(db, user)
    return payments.create_portal_session(customer_id, f"{config.APP_URL}/dashboard/billing")


@router.get("/subscription")
def get_subscription(db: Session = Depends(get_db), user: User = Depends(get_current_user),
                     access: AccessCheck = Depends(get_access)):
    sub = _latest_subscription(db, user.id)
    return {
        "subscription": sub.summary() if sub else None,
        "plan": access.plan,
        "has_access": access.has_access,
    }


@router.patch("/subscription")
def update_subscription(payload: SubscriptionUpdateIn, request: Request,
                        db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    sub = _latest_subscription(db, user.id)
    if sub is None:
        raise ApiError.not_found("No active subscription found")

    action = payload.action
    if action == SubscriptionAction.cancel:
        payments.cancel_subscription(sub.id)
        sub.cancel_at_period_end = True
        message = "Subscription will cancel at end of billing period"
    elif action == SubscriptionAction.cancel_immediately:
        payments.cancel_subscription(sub.id, immediate=True)
        sub.status = "canceled"
        message = "Subscription canceled immediately"
    elif action == SubscriptionAction.reactivate:
        if not sub.cancel_at_period_end:
            raise ApiError.bad_request("Subscription is not set to cancel")
        payments.reactivate_subscription(sub.id)
        sub.cancel_at_period_end = False
        message = "Subscription reactivated"
    else:
        if not payload.new_price_id:
            raise ApiError.bad_request("new_price_id is required")
        payments.change_subscription_plan(sub.id, payload.new_price_id)
        sub.price_id = payload.new_price_id
        message = "Plan changed successfully. Prorated charges applied."

    sub.updated_at = utcnow()
    audit.record(db, f"subscription.{action.value}", "subscription", sub.id, user_id=user.id,
                 details={"new_price_id": payload.new_price_id} if payload.new_price_id else None,
                 ip_address=get_client_ip(request))
    db.commit()
    return {"message": message}

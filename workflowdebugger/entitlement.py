import datetime as dt
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .models import Subscription, as_utc, utcnow

logger = logging.getLogger(__name__)

GRACE_PERIOD = dt.timedelta(days=7)
UNCONDITIONAL_STATUSES = ("active", "trialing")

# Grant access when the subscription store is unreachable.
FAIL_OPEN_ON_STORE_ERROR = True

NO_SUBSCRIPTION_REASON = "No active subscription. Please upgrade to access this feature."
STORE_FAILURE_REASON = "Access check failed — allowing temporarily"


@dataclass
class AccessCheck:
    has_access: bool
    plan: str
    reason: Optional[str] = None
    subscription: Optional[dict] = None


def grants_access(sub: Subscription, now: dt.datetime = None) -> bool:
    if sub.status in UNCONDITIONAL_STATUSES:
        return True
    if sub.status == "past_due":
        period_end = as_utc(sub.current_period_end)
        if period_end is None:
            return False
        return (now or utcnow()) <= period_end + GRACE_PERIOD
    return False


def plan_for_price(price_id: Optional[str]) -> str:
    price_id = price_id or ""
    if "enterprise" in price_id or price_id == config.STRIPE_ENTERPRISE_PRICE_ID:
        return "enterprise"
    if "pro" in price_id or price_id == config.STRIPE_PRO_PRICE_ID:
        return "pro"
    return "starter"


def _fail_open(user_id, exc: Exception) -> AccessCheck:
    logger.error("Entitlement check failed, failing open", extra={"user_id": user_id, "error": str(exc)})
    return AccessCheck(has_access=True, plan="free", reason=STORE_FAILURE_REASON)


def check_access(db: Session, user_id: int, now: dt.datetime = None) -> AccessCheck:
    """Derive the user's current access from their stored subscriptions."""
    now = now or utcnow()
    try:
        subs = (
            db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .filter(Subscription.status.in_(UNCONDITIONAL_STATUSES + ("past_due",)))
            .order_by(Subscription.created_at.desc())
            .all()
        )
    except SQLAlchemyError as exc:
        if FAIL_OPEN_ON_STORE_ERROR:
            return _fail_open(user_id, exc)
        raise

    sub = next((s for s in subs if grants_access(s, now)), None)
    if sub is None:
        return AccessCheck(has_access=False, plan="free", reason=NO_SUBSCRIPTION_REASON)

    summary = sub.summary()
    return AccessCheck(
        has_access=True,
        plan=plan_for_price(sub.price_id),
        subscription={key: summary[key] for key in ("id", "status", "trial_end", "current_period_end")},
    )

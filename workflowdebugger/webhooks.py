"""Stripe webhook endpoint and the reconciler that folds billing events into local state.

Every mutation is an upsert or a targeted update keyed by the Stripe subscription
(or customer) id, so redelivery is harmless. Events are applied in arrival order;
there is no per-row version check, so a stale `customer.subscription.updated`
delivered after `customer.subscription.deleted` wins.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import audit, mailer, payments
from .db import get_db
from .errors import ApiError
from .events import (
    CheckoutCompleted,
    CustomerDeleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
    Unrecognized,
    event_type_of,
    parse_event,
)
from .models import SUBSCRIPTION_STATUSES, Subscription, User, utcnow
from .rate_limit import get_client_ip

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_UPSERT_INSERTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


def _link_customer(db: Session, event: CheckoutCompleted):
    if event.user_id is None or not event.customer_id:
        return None
    db.query(User).filter(User.id == event.user_id).update(
        {User.stripe_customer_id: event.customer_id, User.updated_at: utcnow()},
        synchronize_session=False,
    )
    return None


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    try:
        return _UPSERT_INSERTS[dialect]
    except KeyError:
        raise RuntimeError(f"No upsert support for dialect {dialect!r}") from None


def _upsert_subscription(db: Session, event: SubscriptionChanged):
    if event.user_id is None:
        logger.warning("Subscription without user_id metadata", extra={"subscription_id": event.subscription_id})
        return None
    if event.status not in SUBSCRIPTION_STATUSES:
        logger.warning(
            "Unknown subscription status stored as reported",
            extra={"subscription_id": event.subscription_id, "status": event.status},
        )

    now = utcnow()
    fields = {
        "status": event.status,
        "price_id": event.price_id,
        "current_period_start": event.current_period_start,
        "current_period_end": event.current_period_end,
        "cancel_at_period_end": event.cancel_at_period_end,
        "trial_end": event.trial_end,
        "updated_at": now,
    }
    # Single statement; a concurrent delivery for the same id turns into an update.
    stmt = _insert_for(db)(Subscription).values(
        id=event.subscription_id, user_id=event.user_id, created_at=now, **fields
    )
    db.execute(stmt.on_conflict_do_update(index_elements=[Subscription.id], set_=fields))

    if event.created and event.status == "active":
        return [(_notify_subscription_created, (db, event.user_id, event.plan_name), "Subscription email")]
    return None


def _set_status(db: Session, subscription_id: str, status: str) -> int:
    return db.query(Subscription).filter(Subscription.id == subscription_id).update(
        {Subscription.status: status, Subscription.updated_at: utcnow()},
        synchronize_session=False,
    )


def _cancel_subscription(db: Session, event: SubscriptionDeleted):
    _set_status(db, event.subscription_id, "canceled")
    return None


def _mark_past_due(db: Session, event: InvoicePaymentFailed):
    if not event.subscription_id:
        return None
    _set_status(db, event.subscription_id, "past_due")
    return [(_notify_payment_failed, (db, event.subscription_id), "Payment failed email")]


def _mark_active(db: Session, event: InvoicePaymentSucceeded):
    # past_due subscriptions recover through this event; Stripe sends no dedicated one.
    if not event.subscription_id:
        return None
    _set_status(db, event.subscription_id, "active")
    return None


def _unlink_customer(db: Session, event: CustomerDeleted):
    if event.user_id is None:
        return None
    db.query(User).filter(User.id == event.user_id).update(
        {User.stripe_customer_id: None, User.updated_at: utcnow()},
        synchronize_session=False,
    )
    return None


_HANDLERS = {
    CheckoutCompleted: _link_customer,
    SubscriptionChanged: _upsert_subscription,
    SubscriptionDeleted: _cancel_subscription,
    InvoicePaymentFailed: _mark_past_due,
    InvoicePaymentSucceeded: _mark_active,
    CustomerDeleted: _unlink_customer,
}


def _notify_subscription_created(db: Session, user_id: int, plan_name: str) -> bool:
    user = db.get(User, user_id)
    if not user or not user.email:
        return False
    return mailer.send_subscription_created_email(user.email, plan_name)


def _notify_payment_failed(db: Session, subscription_id: str) -> bool:
    sub = db.get(Subscription, subscription_id)
    if sub is None:
        return False
    user = db.get(User, sub.user_id)
    if not user or not user.email:
        return False
    return mailer.send_payment_failed_email(user.email, user.name)


def reconcile(db: Session, event) -> bool:
    """Apply one billing event and commit. Returns False for event kinds we ignore."""
    if isinstance(event, Unrecognized):
        logger.info("Unhandled webhook event type", extra={"event_type": event.event_type, "event_id": event.event_id})
        return False

    handler = _HANDLERS[type(event)]
    notifications = handler(db, event)
    audit.record(db, event_type_of(event), "stripe_event", entity_id=event.event_id or None)
    db.commit()

    for send, args, label in notifications or ():
        mailer.best_effort(send, *args, label=label)
    return True


def process_event(db: Session, raw_event: dict) -> bool:
    """Parse and reconcile a verified event, never raising.

    Stripe retries on 5xx; a persistence failure here would just fail again,
    so it is logged for manual reconciliation and acknowledged.
    """
    try:
        reconcile(db, parse_event(raw_event))
        return True
    except Exception:
        db.rollback()
        logger.exception(
            "Webhook processing error",
            extra={"event_id": raw_event.get("id"), "event_type": raw_event.get("type")},
        )
        return False


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise ApiError.bad_request("Missing stripe-signature header", code="INVALID_SIGNATURE")

    try:
        raw_event = payments.verify_webhook(payload, signature)
    except payments.WebhookSignatureError as exc:
        logger.warning(
            "Webhook signature verification failed",
            extra={"reason": str(exc), "client_ip": get_client_ip(request)},
        )
        raise ApiError.bad_request("Invalid signature", code="INVALID_SIGNATURE")

    if not await run_in_threadpool(process_event, db, raw_event):
        return {"received": True, "error": "Processing error"}
    return {"received": True}

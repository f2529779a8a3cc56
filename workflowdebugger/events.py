"""Stripe webhook events, decoded into the closed set of variants the reconciler handles."""
import datetime as dt
from dataclasses import dataclass
from typing import Optional, Union

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
CUSTOMER_DELETED = "customer.deleted"


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    user_id: Optional[int]
    customer_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionChanged:
    event_id: str
    created: bool
    subscription_id: str
    user_id: Optional[int]
    status: str
    price_id: Optional[str]
    plan_name: str
    current_period_start: Optional[dt.datetime]
    current_period_end: Optional[dt.datetime]
    cancel_at_period_end: bool
    trial_end: Optional[dt.datetime]


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    subscription_id: str


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    subscription_id: Optional[str]


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    event_id: str
    subscription_id: Optional[str]


@dataclass(frozen=True)
class CustomerDeleted:
    event_id: str
    customer_id: Optional[str]
    user_id: Optional[int]


@dataclass(frozen=True)
class Unrecognized:
    event_id: str
    event_type: str


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    CustomerDeleted,
    Unrecognized,
]


def from_unix(value) -> Optional[dt.datetime]:
    if value in (None, ""):
        return None
    return dt.datetime.fromtimestamp(int(value), tz=dt.timezone.utc)


def _user_id(metadata) -> Optional[int]:
    raw = (metadata or {}).get("user_id")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _reference(value) -> Optional[str]:
    """Stripe sends either an id string or an expanded object for references."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _invoice_subscription(invoice: dict) -> Optional[str]:
    sub = _reference(invoice.get("subscription"))
    if sub:
        return sub
    # Newer API versions move the reference under parent.subscription_details.
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _reference(details.get("subscription"))


def _subscription_changed(event_id: str, created: bool, sub: dict) -> SubscriptionChanged:
    items = ((sub.get("items") or {}).get("data") or [])
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    # Period bounds moved onto subscription items in newer API versions.
    period_start = sub.get("current_period_start") or first_item.get("current_period_start")
    period_end = sub.get("current_period_end") or first_item.get("current_period_end")
    return SubscriptionChanged(
        event_id=event_id,
        created=created,
        subscription_id=sub["id"],
        user_id=_user_id(sub.get("metadata")),
        status=sub.get("status") or "incomplete",
        price_id=price.get("id"),
        plan_name=price.get("nickname") or "Pro",
        current_period_start=from_unix(period_start),
        current_period_end=from_unix(period_end),
        cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        trial_end=from_unix(sub.get("trial_end")),
    )


def parse_event(event: dict) -> BillingEvent:
    """Map a verified Stripe event payload onto a BillingEvent variant."""
    event_id = event.get("id") or ""
    event_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == CHECKOUT_COMPLETED:
        return CheckoutCompleted(event_id, _user_id(obj.get("metadata")), _reference(obj.get("customer")))
    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return _subscription_changed(event_id, event_type == SUBSCRIPTION_CREATED, obj)
    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(event_id, obj["id"])
    if event_type == INVOICE_PAYMENT_FAILED:
        return InvoicePaymentFailed(event_id, _invoice_subscription(obj))
    if event_type == INVOICE_PAYMENT_SUCCEEDED:
        return InvoicePaymentSucceeded(event_id, _invoice_subscription(obj))
    if event_type == CUSTOMER_DELETED:
        return CustomerDeleted(event_id, obj.get("id"), _user_id(obj.get("metadata")))
    return Unrecognized(event_id, event_type)


def event_type_of(event: BillingEvent) -> str:
    if isinstance(event, SubscriptionChanged):
        return SUBSCRIPTION_CREATED if event.created else SUBSCRIPTION_UPDATED
    if isinstance(event, Unrecognized):
        return event.event_type
    return _EVENT_TYPES[type(event)]


_EVENT_TYPES = {
    CheckoutCompleted: CHECKOUT_COMPLETED,
    SubscriptionDeleted: SUBSCRIPTION_DELETED,
    InvoicePaymentFailed: INVOICE_PAYMENT_FAILED,
    InvoicePaymentSucceeded: INVOICE_PAYMENT_SUCCEEDED,
    CustomerDeleted: CUSTOMER_DELETED,
}

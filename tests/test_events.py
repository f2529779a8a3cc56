import datetime as dt

from workflowdebugger.events import (
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

PERIOD_START = 1_767_225_600  # 2026-01-01T00:00:00Z
PERIOD_END = 1_769_904_000  # 2026-02-01T00:00:00Z


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _subscription(**overrides):
    sub = {
        "id": "sub_123",
        "object": "subscription",
        "status": "active",
        "metadata": {"user_id": "7"},
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "cancel_at_period_end": False,
        "trial_end": None,
        "items": {"data": [{"id": "si_1", "price": {"id": "price_pro", "nickname": "Pro Monthly"}}]},
    }
    sub.update(overrides)
    return sub


def test_subscription_created_carries_full_row():
    event = parse_event(_event("customer.subscription.created", _subscription()))

    assert isinstance(event, SubscriptionChanged)
    assert event.created is True
    assert event.user_id == 7
    assert event.price_id == "price_pro"
    assert event.plan_name == "Pro Monthly"
    assert event.current_period_start == dt.datetime(2026, 1, 1, tzinfo=dt.timezone.utc)
    assert event.current_period_end == dt.datetime(2026, 2, 1, tzinfo=dt.timezone.utc)
    assert event.trial_end is None
    assert event_type_of(event) == "customer.subscription.created"


def test_subscription_updated_is_not_flagged_created():
    event = parse_event(_event("customer.subscription.updated", _subscription(status="past_due")))

    assert event.created is False
    assert event.status == "past_due"
    assert event_type_of(event) == "customer.subscription.updated"


def test_period_bounds_fall_back_to_subscription_item():
    sub = _subscription(current_period_start=None, current_period_end=None)
    sub["items"]["data"][0].update(current_period_start=PERIOD_START, current_period_end=PERIOD_END)

    event = parse_event(_event("customer.subscription.updated", sub))

    assert event.current_period_end == dt.datetime(2026, 2, 1, tzinfo=dt.timezone.utc)


def test_missing_or_bad_user_metadata_yields_none():
    assert parse_event(_event("customer.subscription.created", _subscription(metadata={}))).user_id is None
    assert parse_event(_event("customer.subscription.created", _subscription(metadata={"user_id": "abc"}))).user_id is None


def test_plan_name_defaults_to_pro_without_nickname():
    sub = _subscription(items={"data": [{"id": "si_1", "price": {"id": "price_x"}}]})

    assert parse_event(_event("customer.subscription.created", sub)).plan_name == "Pro"


def test_checkout_completed():
    event = parse_event(_event("checkout.session.completed", {"customer": "cus_9", "metadata": {"user_id": "3"}}))

    assert event == CheckoutCompleted(event_id="evt_1", user_id=3, customer_id="cus_9")


def test_invoice_events_reference_subscription():
    failed = parse_event(_event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_123"}))
    succeeded = parse_event(_event("invoice.payment_succeeded", {"id": "in_2", "subscription": {"id": "sub_123"}}))

    assert failed == InvoicePaymentFailed(event_id="evt_1", subscription_id="sub_123")
    assert succeeded == InvoicePaymentSucceeded(event_id="evt_1", subscription_id="sub_123")


def test_invoice_subscription_under_parent_details():
    invoice = {"id": "in_1", "parent": {"subscription_details": {"subscription": "sub_456"}}}

    assert parse_event(_event("invoice.payment_failed", invoice)).subscription_id == "sub_456"


def test_invoice_without_subscription():
    assert parse_event(_event("invoice.payment_succeeded", {"id": "in_1"})).subscription_id is None


def test_subscription_deleted_and_customer_deleted():
    deleted = parse_event(_event("customer.subscription.deleted", _subscription()))
    customer = parse_event(_event("customer.deleted", {"id": "cus_9", "metadata": {"user_id": "3"}}))

    assert deleted == SubscriptionDeleted(event_id="evt_1", subscription_id="sub_123")
    assert customer == CustomerDeleted(event_id="evt_1", customer_id="cus_9", user_id=3)


def test_unknown_event_types_are_unrecognized():
    event = parse_event(_event("charge.refunded", {"id": "ch_1"}))

    assert event == Unrecognized(event_id="evt_1", event_type="charge.refunded")
    assert event_type_of(event) == "charge.refunded"

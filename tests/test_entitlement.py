import datetime as dt
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_subscription, make_user
from workflowdebugger import entitlement
from workflowdebugger.entitlement import GRACE_PERIOD, check_access, grants_access, plan_for_price
from workflowdebugger.models import Subscription

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


@pytest.mark.parametrize("status", ["active", "trialing"])
def test_active_and_trialing_grant_access_regardless_of_period_end(db, user, status):
    make_subscription(db, user, status=status, period_end=NOW - dt.timedelta(days=90))

    access = check_access(db, user.id, now=NOW)

    assert access.has_access
    assert access.plan == "pro"
    assert access.subscription["status"] == status


def test_past_due_inside_grace_window_grants_access(db, user):
    make_subscription(db, user, status="past_due", period_end=NOW - dt.timedelta(days=6))

    assert check_access(db, user.id, now=NOW).has_access


def test_past_due_exactly_at_grace_boundary_grants_access(db, user):
    make_subscription(db, user, status="past_due", period_end=NOW - GRACE_PERIOD)

    assert check_access(db, user.id, now=NOW).has_access


def test_past_due_after_grace_window_is_denied(db, user):
    make_subscription(db, user, status="past_due", period_end=NOW - GRACE_PERIOD - dt.timedelta(seconds=1))

    access = check_access(db, user.id, now=NOW)

    assert not access.has_access
    assert access.plan == "free"


@pytest.mark.parametrize("status", ["canceled", "unpaid", "incomplete"])
def test_other_statuses_do_not_grant_access(db, user, status):
    make_subscription(db, user, status=status)

    access = check_access(db, user.id, now=NOW)

    assert not access.has_access
    assert access.plan == "free"


def test_user_without_subscription_is_free(db, user):
    access = check_access(db, user.id)

    assert access.has_access is False
    assert access.plan == "free"
    assert access.reason == entitlement.NO_SUBSCRIPTION_REASON
    assert access.subscription is None


def test_other_users_subscriptions_are_ignored(db, user):
    other = make_user(db, email="grace@acme.io")
    make_subscription(db, other, status="active")

    assert not check_access(db, user.id).has_access


def test_past_due_without_period_end_is_denied():
    sub = Subscription(id="sub_x", user_id=1, status="past_due", current_period_end=None)

    assert grants_access(sub, NOW) is False


def test_naive_period_end_is_treated_as_utc():
    naive_end = (NOW - dt.timedelta(days=3)).replace(tzinfo=None)
    sub = Subscription(id="sub_x", user_id=1, status="past_due", current_period_end=naive_end)

    assert grants_access(sub, NOW)


@pytest.mark.parametrize(
    "price_id, plan",
    [
        ("price_enterprise_yearly", "enterprise"),
        ("price_pro_monthly", "pro"),
        ("price_starter", "starter"),
        ("price_1Nabc", "starter"),
        (None, "starter"),
    ],
)
def test_plan_is_derived_from_price_id(price_id, plan):
    assert plan_for_price(price_id) == plan


def test_configured_price_ids_map_to_tiers(monkeypatch):
    monkeypatch.setattr(entitlement.config, "STRIPE_PRO_PRICE_ID", "price_1PROXYZ")
    monkeypatch.setattr(entitlement.config, "STRIPE_ENTERPRISE_PRICE_ID", "price_1ENT999")

    assert plan_for_price("price_1PROXYZ") == "pro"
    assert plan_for_price("price_1ENT999") == "enterprise"


def test_store_failure_fails_open():
    db = MagicMock()
    db.query.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))

    access = check_access(db, 42)

    assert access.has_access is True
    assert access.plan == "free"
    assert access.reason == entitlement.STORE_FAILURE_REASON


def test_store_failure_propagates_when_fail_open_disabled(monkeypatch):
    monkeypatch.setattr(entitlement, "FAIL_OPEN_ON_STORE_ERROR", False)
    db = MagicMock()
    db.query.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))

    with pytest.raises(OperationalError):
        check_access(db, 42)


def test_premium_routes_reject_free_users(client, auth_headers):
    res = client.post("/workflows", json={"name": "Nightly sync"}, headers=auth_headers)

    assert res.status_code == 403
    assert res.json()["error"] == entitlement.NO_SUBSCRIPTION_REASON

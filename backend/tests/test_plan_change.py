from datetime import datetime, timezone

import pytest

import app.services.billing as billing
from app.core.errors import AuthorizationError, ConflictError, UnsupportedOperation, ValidationFailed
from app.services.billing_provider import MercadoPagoProvider, PlanChangeResult
from tests.testkit import FakeProvider

PERIOD_END = datetime(2026, 6, 1, tzinfo=timezone.utc)
PLANS = {
    "plan-basic": {"id": "plan-basic", "name": "Basico", "price": 20, "stripe_price_id": "price_basic"},
    "plan-pro": {"id": "plan-pro", "name": "Pro", "price": 50, "stripe_price_id": None},
    "plan-same": {"id": "plan-same", "name": "Basico Plus", "price": 20, "stripe_price_id": None},
}


@pytest.fixture()
def sub_store(monkeypatch, store):
    store.put(
        "subscriptions",
        {
            "id": "sub-row-1",
            "company_id": "co-1",
            "plan_id": "plan-basic",
            "provider": "stripe",
            "provider_subscription_id": "sub_1",
            "status": "active",
            "modules": ["inventory"],
            "current_period_end": None,
        },
    )

    def subscription_with_plan(db, company_id):
        row = dict(store.get("subscriptions", "sub-row-1"))
        plan = PLANS[row["plan_id"]]
        return {**row, "plan_name": plan["name"], "plan_price": plan["price"]}

    monkeypatch.setattr(billing, "require_active_member", lambda db, user_id, company_id, role=None: {"role": "admin"})
    monkeypatch.setattr(billing, "_subscription_with_plan", subscription_with_plan)
    monkeypatch.setattr(billing, "get_plan", lambda db, plan_id, active_only=True: PLANS.get(plan_id))
    monkeypatch.setattr(billing, "update_versioned", store.update_versioned)
    monkeypatch.setattr(billing, "record_subscription_event", store.record_subscription_event)
    monkeypatch.setattr(billing, "enqueue_notification", store.enqueue_notification)
    monkeypatch.setattr(billing, "company_contact", lambda db, company_id: "owner@example.com")
    return store


def test_upgrade_prorates_and_updates_plan(sub_store):
    provider = FakeProvider("stripe", plan_change=PlanChangeResult(status="active", current_period_end=PERIOD_END))

    out = billing.change_plan(None, user_id="u-1", company_id="co-1", new_plan_id="plan-pro", provider=provider)

    request = provider.calls[0][1]
    assert request.proration_behavior == "create_prorations"
    assert request.new_price == 50
    assert out["old_plan"] == "Basico"
    assert out["new_plan"] == "Pro"
    assert out["next_billing"] == PERIOD_END
    row = sub_store.get("subscriptions", "sub-row-1")
    assert row["plan_id"] == "plan-pro"
    assert row["amount_usd"] == 60.0
    assert sub_store.events[-1]["event_type"] == "upgraded"
    assert sub_store.notifications[-1]["kind"] == "plan_changed"


def test_downgrade_invoices_immediately(sub_store):
    sub_store.get("subscriptions", "sub-row-1")["plan_id"] = "plan-pro"
    provider = FakeProvider("stripe")

    out = billing.change_plan(None, user_id="u-1", company_id="co-1", new_plan_id="plan-basic", provider=provider)

    assert provider.calls[0][1].proration_behavior == "always_invoice"
    assert provider.calls[0][1].stripe_price_id == "price_basic"
    assert out["message"] == "Plan reducido exitosamente"
    assert sub_store.events[-1]["event_type"] == "downgraded"


def test_same_price_is_rejected_before_provider_call(sub_store):
    provider = FakeProvider("stripe")

    with pytest.raises(ValidationFailed):
        billing.change_plan(None, user_id="u-1", company_id="co-1", new_plan_id="plan-same", provider=provider)
    assert provider.calls == []
    assert sub_store.get("subscriptions", "sub-row-1")["plan_id"] == "plan-basic"


def test_mp_plan_change_is_not_supported(sub_store):
    with pytest.raises(UnsupportedOperation):
        billing.change_plan(
            None,
            user_id="u-1",
            company_id="co-1",
            new_plan_id="plan-pro",
            provider=MercadoPagoProvider(),
        )
    assert sub_store.get("subscriptions", "sub-row-1")["version"] == 1


def test_non_member_cannot_change_plan(monkeypatch, sub_store):
    def deny(db, user_id, company_id, role=None):
        raise AuthorizationError("No tienes acceso a esta empresa")

    monkeypatch.setattr(billing, "require_active_member", deny)
    provider = FakeProvider("stripe")
    with pytest.raises(AuthorizationError):
        billing.change_plan(None, user_id="u-2", company_id="co-1", new_plan_id="plan-pro", provider=provider)
    assert provider.calls == []


def test_cancel_subscription_cancels_at_provider_and_locally(sub_store):
    provider = FakeProvider("stripe")
    now = datetime(2026, 5, 20, tzinfo=timezone.utc)

    out = billing.cancel_subscription(None, user_id="u-1", company_id="co-1", reason="  ", provider=provider, now=now)

    assert provider.calls == [("cancel", "sub_1")]
    assert out["canceled_at"] == now
    row = sub_store.get("subscriptions", "sub-row-1")
    assert row["status"] == "canceled"
    assert row["cancellation_reason"] == "Cancelacion solicitada por el usuario"
    assert sub_store.events[-1]["event_type"] == "canceled"


def test_cancel_twice_conflicts(sub_store):
    sub_store.get("subscriptions", "sub-row-1")["status"] = "canceled"
    provider = FakeProvider("stripe")

    with pytest.raises(ConflictError):
        billing.cancel_subscription(None, user_id="u-1", company_id="co-1", provider=provider)
    assert provider.calls == []

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import pytest

import app.services.billing as billing
import app.services.intents as intents
from app.services.billing_provider import BillingEvent, WebhookEnvelope, mp_resource_to_event
from tests.testkit import FakeDb, FakeProvider, ScriptedDb

NOW = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def wired(monkeypatch, store):
    monkeypatch.setattr(billing, "update_versioned", store.update_versioned)
    monkeypatch.setattr(intents, "update_versioned", store.update_versioned)
    monkeypatch.setattr(billing, "record_subscription_event", store.record_subscription_event)
    monkeypatch.setattr(billing, "enqueue_notification", store.enqueue_notification)
    monkeypatch.setattr(billing, "company_contact", lambda db, company_id: "owner@example.com")
    monkeypatch.setattr(billing, "ensure_mp_payment_method", lambda *a, **kw: True)

    def find_subscription(db, provider, provider_subscription_id):
        for (table, _), row in store.rows.items():
            if table == "subscriptions" and provider_subscription_id in (
                row.get("provider_subscription_id"),
                row.get("mp_preapproval_id"),
            ):
                return dict(row)
        return None

    def find_intent(db, intent_ref):
        key = ("signup_intents", str(intent_ref))
        return dict(store.rows[key]) if key in store.rows else None

    def failed_intent(db, company_id):
        for (table, _), row in store.rows.items():
            if table == "signup_intents" and row.get("company_id") == company_id and row["status"] == "payment_failed":
                return row["id"]
        return None

    monkeypatch.setattr(billing, "_find_subscription", find_subscription)
    monkeypatch.setattr(billing, "_find_intent_by_ref", find_intent)
    monkeypatch.setattr(billing, "_failed_intent_for_company", failed_intent)
    return store


def _subscription(store, **overrides):
    row = {
        "id": "sub-row-1",
        "company_id": "co-1",
        "plan_id": "plan-basic",
        "provider": "stripe",
        "provider_subscription_id": "sub_1",
        "status": "active",
        "payment_failed_count": 0,
        "last_payment_failed_at": None,
        "payment_retry_after": None,
        "disabled_until": None,
    }
    row.update(overrides)
    return store.put("subscriptions", row)


def _event(kind: str, **kw) -> BillingEvent:
    base = {"provider": "stripe", "event_key": f"evt_{kind}", "event_type": kind}
    base.update(kw)
    return BillingEvent(kind=kind, **base)


def test_payment_failed_marks_past_due_and_notifies(wired):
    _subscription(wired)

    out = billing.apply_billing_event(None, _event("payment_failed", provider_subscription_id="sub_1"), now=NOW)

    assert out["applied"] is True
    row = wired.get("subscriptions", "sub-row-1")
    assert row["status"] == "past_due"
    assert row["payment_failed_count"] == 1
    assert row["payment_retry_after"] == NOW + timedelta(days=3)
    assert row["disabled_until"] is None
    assert wired.events[-1]["event_type"] == "payment_failed"
    assert wired.notifications[-1]["kind"] == "payment_failed"


def test_three_failures_suspend_access(wired):
    _subscription(wired)
    event = _event("payment_failed", provider_subscription_id="sub_1")
    for _ in range(3):
        billing.apply_billing_event(None, event, now=NOW)

    row = wired.get("subscriptions", "sub-row-1")
    assert row["payment_failed_count"] == 3
    assert row["disabled_until"] == NOW + timedelta(days=7)
    assert wired.events[-1]["data"]["suspended"] is True
    assert wired.notifications[-1]["subject"].startswith("Acceso temporal deshabilitado")


def test_payment_succeeded_clears_dunning_and_reactivates_intent(wired):
    _subscription(
        wired,
        status="past_due",
        payment_failed_count=3,
        last_payment_failed_at=NOW - timedelta(days=1),
        payment_retry_after=NOW + timedelta(days=6),
        disabled_until=NOW + timedelta(days=6),
    )
    wired.put("signup_intents", {"id": "intent-1", "status": "payment_failed", "company_id": "co-1", "payment_failed_at": NOW})

    out = billing.apply_billing_event(None, _event("payment_succeeded", provider_subscription_id="sub_1"), now=NOW)

    assert out["applied"] is True
    row = wired.get("subscriptions", "sub-row-1")
    assert row["status"] == "active"
    assert row["payment_failed_count"] == 0
    assert row["disabled_until"] is None
    assert row["payment_retry_after"] is None
    intent = wired.get("signup_intents", "intent-1")
    assert intent["status"] == "subscription_active"
    assert intent["payment_failed_at"] is None
    assert wired.events[-1]["event_type"] == "payment_recovered"


def test_unknown_subscription_is_ignored(wired):
    out = billing.apply_billing_event(None, _event("payment_failed", provider_subscription_id="sub_missing"), now=NOW)
    assert out["applied"] is False
    assert wired.events == []


def test_subscription_canceled_is_applied_once(wired):
    _subscription(wired)
    event = _event("subscription_canceled", provider_subscription_id="sub_1")

    first = billing.apply_billing_event(None, event, now=NOW)
    second = billing.apply_billing_event(None, event, now=NOW)

    assert first["applied"] is True
    assert second["applied"] is False
    row = wired.get("subscriptions", "sub-row-1")
    assert row["status"] == "canceled"
    assert row["canceled_at"] == NOW
    assert [e["event_type"] for e in wired.events] == ["canceled"]


def test_checkout_completed_moves_intent_to_paid_ready(wired):
    wired.put("signup_intents", {"id": "intent-2", "status": "checkout_created"})

    out = billing.apply_billing_event(
        None,
        _event("checkout_completed", intent_ref="intent-2", provider_subscription_id="sub_2", provider_customer_id="cus_2"),
        now=NOW,
    )

    assert out["applied"] is True
    intent = wired.get("signup_intents", "intent-2")
    assert intent["status"] == "paid_ready"
    assert intent["stripe_subscription_id"] == "sub_2"
    assert intent["stripe_customer_id"] == "cus_2"


def test_checkout_completed_does_not_move_completed_intent(wired):
    wired.put("signup_intents", {"id": "intent-3", "status": "completed"})

    out = billing.apply_billing_event(None, _event("checkout_completed", intent_ref="intent-3"), now=NOW)

    assert out["applied"] is False
    assert wired.get("signup_intents", "intent-3")["status"] == "completed"


def test_mp_preapproval_authorized_confirms_pending_intent(wired):
    wired.put("signup_intents", {"id": "intent-4", "status": "checkout_created"})

    out = billing.apply_billing_event(
        None,
        _event(
            "status_changed",
            provider="mercadopago",
            status="active",
            intent_ref="intent-4",
            provider_subscription_id="pre_4",
        ),
        now=NOW,
    )

    assert out["applied"] is True
    intent = wired.get("signup_intents", "intent-4")
    assert intent["status"] == "paid_ready"
    assert intent["mp_preapproval_id"] == "pre_4"


def test_mp_approved_payment_confirms_pending_intent(wired):
    wired.put("signup_intents", {"id": "intent-9", "status": "checkout_created"})
    event = mp_resource_to_event(
        "payment",
        "55",
        {"status": "approved", "external_reference": "intent-9", "preapproval_id": "pre_9"},
    )

    out = billing.apply_billing_event(None, event, now=NOW)

    assert event.kind == "payment_succeeded"
    assert out["applied"] is True
    intent = wired.get("signup_intents", "intent-9")
    assert intent["status"] == "paid_ready"
    assert intent["mp_preapproval_id"] == "pre_9"
    assert wired.events == []


def test_mp_rejected_payment_keeps_intent_in_checkout(wired):
    wired.put("signup_intents", {"id": "intent-10", "status": "draft"})
    event = mp_resource_to_event(
        "subscription_authorized_payment",
        "56",
        {"status": "rejected", "external_reference": "intent-10"},
    )

    out = billing.apply_billing_event(None, event, now=NOW)

    assert event.kind == "payment_failed"
    assert out["applied"] is True
    assert wired.get("signup_intents", "intent-10")["status"] == "checkout_created"
    assert wired.notifications == []


def test_mp_payment_for_completed_intent_hits_subscription(wired):
    _subscription(wired, provider="mercadopago", provider_subscription_id="pre_11")
    wired.put("signup_intents", {"id": "intent-11", "status": "completed"})
    event = mp_resource_to_event(
        "payment",
        "57",
        {"status": "rejected", "external_reference": "intent-11", "preapproval_id": "pre_11"},
    )

    out = billing.apply_billing_event(None, event, now=NOW)

    assert out["applied"] is True
    assert wired.get("signup_intents", "intent-11")["status"] == "completed"
    assert wired.get("subscriptions", "sub-row-1")["payment_failed_count"] == 1


def test_mp_preapproval_cancel_updates_subscription(wired):
    _subscription(wired, provider="mercadopago", provider_subscription_id="pre_5")

    out = billing.apply_billing_event(
        None,
        _event("status_changed", provider="mercadopago", status="canceled", provider_subscription_id="pre_5"),
        now=NOW,
    )

    assert out["applied"] is True
    assert wired.get("subscriptions", "sub-row-1")["status"] == "canceled"
    assert wired.events[-1]["event_type"] == "canceled"


def test_unhandled_kind_is_ignored(wired):
    out = billing.apply_billing_event(None, _event("unhandled"), now=NOW)
    assert out["applied"] is False


def test_ingest_webhook_skips_duplicates_before_resolving(monkeypatch, wired):
    _subscription(wired, provider="mercadopago", provider_subscription_id="pre_1")
    envelope = WebhookEnvelope(
        provider="mercadopago",
        event_key="payment:99",
        event_type="payment",
        payload={"topic": "payment", "data_id": "99", "body": {}},
    )
    event = _event(
        "payment_failed",
        provider="mercadopago",
        event_key="payment:99",
        event_type="payment",
        provider_subscription_id="pre_1",
    )
    provider = FakeProvider("mercadopago", envelope=envelope, event=event)

    claimed: set[tuple[str, str]] = set()
    finished: list[tuple] = []

    def claim(db, env):
        key = (env.provider, env.event_key)
        if key in claimed:
            return None
        claimed.add(key)
        return f"ledger-{len(claimed)}"

    monkeypatch.setattr(billing, "_claim_webhook", claim)
    monkeypatch.setattr(billing, "_finish_webhook", lambda db, ledger_id, status: finished.append((ledger_id, status)))

    first = billing.ingest_webhook(FakeDb(), provider_code="mercadopago", headers={}, raw_body=b"{}", provider=provider, now=NOW)
    second = billing.ingest_webhook(FakeDb(), provider_code="mercadopago", headers={}, raw_body=b"{}", provider=provider, now=NOW)

    assert first["duplicate"] is False
    assert first["applied"] is True
    assert second["duplicate"] is True
    assert provider.called("resolve_event") == 1
    assert wired.get("subscriptions", "sub-row-1")["payment_failed_count"] == 1
    assert finished == [("ledger-1", "processed")]


def test_ingest_webhook_acknowledges_empty_notification(monkeypatch):
    provider = FakeProvider("mercadopago", envelope=None)
    monkeypatch.setattr(billing, "_claim_webhook", lambda db, env: pytest.fail("no debe registrar"))

    out = billing.ingest_webhook(FakeDb(), provider_code="mercadopago", headers={}, raw_body=b"", provider=provider)

    assert out["ok"] is True
    assert "note" in out


def test_ingest_webhook_marks_ignored_events(monkeypatch, wired):
    envelope = WebhookEnvelope(provider="stripe", event_key="evt_x", event_type="customer.created", payload={})
    provider = FakeProvider("stripe", envelope=envelope, event=_event("unhandled", event_key="evt_x"))
    finished: list[tuple] = []
    monkeypatch.setattr(billing, "_claim_webhook", lambda db, env: "ledger-x")
    monkeypatch.setattr(billing, "_finish_webhook", lambda db, ledger_id, status: finished.append((ledger_id, status)))

    out = billing.ingest_webhook(FakeDb(), provider_code="stripe", headers={}, raw_body=b"{}", provider=provider)

    assert out["applied"] is False
    assert finished == [("ledger-x", "ignored")]


def test_claim_webhook_uses_conflict_free_insert():
    db = ScriptedDb().on("INSERT INTO webhook_events", scalar="ledger-1")
    envelope = WebhookEnvelope(
        provider="stripe",
        event_key="evt_42",
        event_type="invoice.payment_failed",
        payload={"id": "evt_42", "received_at": NOW},
    )

    assert billing._claim_webhook(db, envelope) == "ledger-1"

    sql, params = db.statements[0]
    assert "ON CONFLICT (provider, event_key) DO NOTHING" in sql
    assert sql.endswith("RETURNING id")
    assert params["provider"] == "stripe"
    assert params["event_key"] == "evt_42"
    assert params["event_type"] == "invoice.payment_failed"
    assert json.loads(params["payload"]) == {"id": "evt_42", "received_at": str(NOW)}


def test_ingest_webhook_treats_lost_claim_as_duplicate():
    envelope = WebhookEnvelope(provider="stripe", event_key="evt_dup", event_type="invoice.paid", payload={})
    provider = FakeProvider("stripe", envelope=envelope)
    db = ScriptedDb()

    out = billing.ingest_webhook(db, provider_code="stripe", headers={}, raw_body=b"{}", provider=provider)

    assert out == {"ok": True, "duplicate": True, "event_key": "evt_dup"}
    assert provider.called("resolve_event") == 0
    assert db.executed("UPDATE webhook_events") == []

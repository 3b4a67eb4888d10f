from __future__ import annotations

import pytest

import app.services.payment_methods as payment_methods
from app.core.errors import NotFoundError, ProviderError, ValidationFailed
from app.services.billing_provider import PaymentMethodCheck
from tests.testkit import FakeProvider, ScriptedDb

METHOD_SELECT = "is_default FROM company_payment_methods WHERE id=:id"


@pytest.fixture()
def wired(monkeypatch, store):
    monkeypatch.setattr(payment_methods, "update_versioned", store.update_versioned)
    monkeypatch.setattr(payment_methods, "require_active_member", lambda *a, **kw: None)
    store.put(
        "subscriptions",
        {"id": "sub-row-1", "company_id": "co-1", "stripe_payment_method_id": None, "mp_preapproval_id": "pre_old"},
    )
    return store


def test_payment_pointer_changes_keep_exactly_one_pointer():
    assert payment_methods.payment_pointer_changes("stripe", "pm_1") == {
        "stripe_payment_method_id": "pm_1",
        "mp_preapproval_id": None,
    }
    assert payment_methods.payment_pointer_changes("mercadopago", "pre_1") == {
        "mp_preapproval_id": "pre_1",
        "stripe_payment_method_id": None,
    }


def test_save_before_company_exists_is_staged():
    db = ScriptedDb().on("INSERT INTO signup_payment_methods", rows=[{"id": "spm-1"}])

    out = payment_methods.save_payment_method(
        db,
        provider="Stripe",
        payment_method_ref=" pm_1 ",
        email="Owner@Example.com",
        last4="4242",
    )

    assert out == {"ok": True, "staged": True, "id": "spm-1", "is_default": False}
    params = db.executed("INSERT INTO signup_payment_methods")[0]
    assert params["e"] == "owner@example.com"
    assert params["provider"] == "stripe"
    assert params["ref"] == "pm_1"


def test_save_rejects_unknown_provider_and_missing_target():
    with pytest.raises(ValidationFailed):
        payment_methods.save_payment_method(ScriptedDb(), provider="paypal", payment_method_ref="x", email="a@b.co")
    with pytest.raises(ValidationFailed):
        payment_methods.save_payment_method(ScriptedDb(), provider="stripe", payment_method_ref="pm_1")
    with pytest.raises(ValidationFailed):
        payment_methods.save_payment_method(ScriptedDb(), provider="stripe", payment_method_ref="pm_1", company_id="co-1")


def test_save_for_company_sets_default_and_swaps_pointer(wired):
    db = (
        ScriptedDb()
        .on("INSERT INTO company_payment_methods", rows=[{"id": "cpm-1", "is_default": True}])
        .on("SELECT id FROM subscriptions", rows=[{"id": "sub-row-1"}])
    )

    out = payment_methods.save_payment_method(
        db,
        provider="stripe",
        payment_method_ref="pm_new",
        company_id="co-1",
        user_id="user-1",
        brand="visa",
    )

    assert out == {"ok": True, "staged": False, "id": "cpm-1", "is_default": True}
    insert_sql = next(sql for sql, _ in db.statements if "INSERT INTO company_payment_methods" in sql)
    assert "NOT EXISTS ( SELECT 1 FROM company_payment_methods WHERE company_id=:c AND is_default )" in insert_sql
    assert "stripe_payment_method_id" in insert_sql
    sub = wired.get("subscriptions", "sub-row-1")
    assert sub["stripe_payment_method_id"] == "pm_new"
    assert sub["mp_preapproval_id"] is None


def _method(**overrides):
    row = {
        "id": "cpm-1",
        "company_id": "co-1",
        "type": "card",
        "stripe_payment_method_id": "pm_1",
        "mp_preapproval_id": None,
        "is_default": True,
    }
    row.update(overrides)
    return row


def test_delete_default_detaches_clears_pointer_and_promotes(monkeypatch, wired):
    wired.get("subscriptions", "sub-row-1").update(stripe_payment_method_id="pm_1", mp_preapproval_id=None)
    provider = FakeProvider("stripe")
    monkeypatch.setattr(payment_methods, "get_provider", lambda code: provider)
    db = (
        ScriptedDb()
        .on(METHOD_SELECT, rows=[_method()])
        .on("SELECT id FROM subscriptions", rows=[{"id": "sub-row-1"}])
        .on("SET is_default=true", scalar="cpm-2")
    )

    out = payment_methods.delete_payment_method(db, user_id="user-1", method_id="cpm-1")

    assert out == {"ok": True, "deleted_id": "cpm-1", "new_default_id": "cpm-2"}
    assert provider.calls == [("detach_payment_method", "pm_1")]
    assert wired.get("subscriptions", "sub-row-1")["stripe_payment_method_id"] is None
    assert db.executed("DELETE FROM company_payment_methods") == [{"id": "cpm-1"}]


def test_delete_survives_stripe_detach_failure(monkeypatch, wired):
    class FailingDetach(FakeProvider):
        def detach_payment_method(self, payment_method_ref):
            raise ProviderError("stripe", "No such payment_method")

    monkeypatch.setattr(payment_methods, "get_provider", lambda code: FailingDetach("stripe"))
    db = ScriptedDb().on(METHOD_SELECT, rows=[_method(is_default=False)])

    out = payment_methods.delete_payment_method(db, user_id="user-1", method_id="cpm-1")

    assert out["new_default_id"] is None
    assert db.executed("DELETE FROM company_payment_methods") == [{"id": "cpm-1"}]
    assert db.executed("SET is_default=true") == []


def test_delete_mercadopago_method_keeps_other_pointer(monkeypatch, wired):
    monkeypatch.setattr(payment_methods, "get_provider", lambda code: pytest.fail("no debe llamar al proveedor"))
    db = (
        ScriptedDb()
        .on(METHOD_SELECT, rows=[_method(type="mercadopago", stripe_payment_method_id=None, mp_preapproval_id="pre_other", is_default=False)])
        .on("SELECT id FROM subscriptions", rows=[{"id": "sub-row-1"}])
    )

    payment_methods.delete_payment_method(db, user_id="user-1", method_id="cpm-1")

    assert wired.get("subscriptions", "sub-row-1")["mp_preapproval_id"] == "pre_old"


def test_delete_unknown_method_is_not_found():
    with pytest.raises(NotFoundError):
        payment_methods.delete_payment_method(ScriptedDb(), user_id="user-1", method_id="cpm-x")


# ---------------------------------------------------------------- credential verification


def test_setup_intent_uses_stripe_adapter():
    provider = FakeProvider("stripe")

    out = payment_methods.create_signup_setup_intent(email=" Owner@Example.com ", name="Ana", adapter=provider)

    assert out == {"client_secret": "seti_secret_test", "setup_intent_id": "seti_test"}
    assert provider.calls == [("create_setup_intent", "owner@example.com")]


def test_setup_intent_requires_email():
    with pytest.raises(ValidationFailed):
        payment_methods.create_signup_setup_intent(email=" ", adapter=FakeProvider("stripe"))


def test_verify_records_outcome_on_staged_row():
    card = {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030}
    provider = FakeProvider("stripe", check=PaymentMethodCheck(verified=True, card=card))
    db = ScriptedDb().on("SELECT id FROM signup_payment_methods", rows=[{"id": "spm-1"}])

    out = payment_methods.verify_staged_payment_method(
        db,
        email="owner@example.com",
        provider="stripe",
        payment_method_ref="pm_1",
        adapter=provider,
    )

    assert out == {"ok": True, "verified": True, "error": None}
    assert provider.calls == [("verify_payment_method", "pm_1")]
    update = db.executed("UPDATE signup_payment_methods")[0]
    assert update["id"] == "spm-1"
    assert update["v"] is True
    assert update["err"] is None
    assert update["last4"] == "4242"


def test_verify_failure_is_recorded_with_error():
    provider = FakeProvider("stripe", check=PaymentMethodCheck(verified=False, error="El metodo de pago no es una tarjeta"))
    db = ScriptedDb().on("SELECT id FROM signup_payment_methods", rows=[{"id": "spm-1"}])

    out = payment_methods.verify_staged_payment_method(
        db,
        email="owner@example.com",
        provider="stripe",
        payment_method_ref="pm_bank",
        adapter=provider,
    )

    assert out["verified"] is False
    update = db.executed("UPDATE signup_payment_methods")[0]
    assert update["v"] is False
    assert update["err"] == "El metodo de pago no es una tarjeta"


def test_verify_unknown_staged_method_skips_provider():
    provider = FakeProvider("mercadopago")
    db = ScriptedDb()

    out = payment_methods.verify_staged_payment_method(
        db,
        email="owner@example.com",
        provider="mercadopago",
        payment_method_ref="pre_missing",
        adapter=provider,
    )

    assert out == {"ok": True, "verified": False, "error": "Metodo de pago no registrado"}
    assert provider.calls == []
    assert db.executed("UPDATE signup_payment_methods") == []

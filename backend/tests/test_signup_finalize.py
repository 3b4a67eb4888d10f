from decimal import Decimal

import pytest

import app.services.intents as intents
from app.core.errors import ConflictError, ValidationFailed
from tests.testkit import ScriptedDb


class PaymentLinks:
    def __init__(self):
        self.staged = {"id": "cpm-1", "is_default": True}
        self.linked: list[dict] = []
        self.attached: list[dict] = []

    def link(self, db, *, email, provider, company_id):
        self.linked.append({"email": email, "provider": provider, "company_id": company_id})
        return self.staged

    def attach(self, db, company_id, **kwargs):
        self.attached.append({"company_id": company_id, **kwargs})
        return {"id": "cpm-mp", "is_default": True}


@pytest.fixture()
def links(monkeypatch):
    links = PaymentLinks()
    monkeypatch.setattr(intents, "link_staged_payment_method", links.link)
    monkeypatch.setattr(intents, "attach_company_payment_method", links.attach)
    return links


@pytest.fixture()
def signup(monkeypatch, store, links):
    monkeypatch.setattr(intents, "update_versioned", store.update_versioned)
    monkeypatch.setattr(intents, "get_intent", lambda db, intent_id: dict(store.get("signup_intents", intent_id)))
    monkeypatch.setattr(intents, "hash_password", lambda password: f"hashed:{password}")
    return store


def _intent(store, status: str = "paid_ready", **extra):
    row = {
        "id": "intent-1",
        "email": "owner@example.com",
        "full_name": "Ana Perez",
        "company_name": "Acme",
        "plan_id": "plan-pro",
        "modules": ["inventory"],
        "provider": "stripe",
        "status": status,
        "amount_usd": Decimal("59.90"),
        "amount_ars": None,
        "fx_rate_usd_ars": None,
        "stripe_customer_id": "cus_1",
        "stripe_subscription_id": "sub_1",
        "mp_preapproval_id": None,
        "company_id": None,
    }
    row.update(extra)
    return store.put("signup_intents", row)


def _db() -> ScriptedDb:
    return (
        ScriptedDb()
        .on("INSERT INTO users", scalar="user-1")
        .on("INSERT INTO companies", scalar="co-1")
    )


def test_finalize_creates_company_trial_and_completes_intent(signup, links):
    _intent(signup)
    db = _db()

    out = intents.finalize_signup(db, intent_id="intent-1", password="secreto123")

    assert out["company_id"] == "co-1"
    assert out["user_id"] == "user-1"
    assert out["payment_method_id"] == "cpm-1"
    assert out["already_completed"] is False

    user = db.executed("INSERT INTO users")[0]
    assert user["h"] == "hashed:secreto123"
    membership = db.executed("INSERT INTO company_users")[0]
    assert membership == {"c": "co-1", "u": "user-1"}
    sub = db.executed("INSERT INTO subscriptions")[0]
    assert sub["provider"] == "stripe"
    assert sub["sub_id"] == "sub_1"
    assert sub["customer"] == "cus_1"
    assert sub["modules"] == '["inventory"]'
    assert sub["trial_ends_at"] == out["trial_ends_at"]

    intent = signup.get("signup_intents", "intent-1")
    assert intent["status"] == "completed"
    assert intent["company_id"] == "co-1"
    assert intent["trial_ends_at"] == out["trial_ends_at"]
    assert links.linked == [{"email": "owner@example.com", "provider": "stripe", "company_id": "co-1"}]


def test_finalize_reuses_existing_user(signup):
    _intent(signup)
    db = _db().on("SELECT id FROM users", rows=[{"id": "user-existing"}])

    out = intents.finalize_signup(db, intent_id="intent-1", password="secreto123")

    assert out["user_id"] == "user-existing"
    assert db.executed("INSERT INTO users") == []


def test_finalize_mercadopago_falls_back_to_preapproval(signup, links):
    _intent(signup, provider="mercadopago", stripe_subscription_id=None, mp_preapproval_id="pre_1")
    links.staged = None

    out = intents.finalize_signup(_db(), intent_id="intent-1", password="secreto123")

    assert out["payment_method_id"] == "cpm-mp"
    assert links.attached == [{"company_id": "co-1", "provider": "mercadopago", "payment_method_ref": "pre_1"}]


def test_finalize_is_idempotent_once_completed(signup):
    _intent(signup, status="completed", company_id="co-9")
    db = _db()

    out = intents.finalize_signup(db, intent_id="intent-1", password="secreto123")

    assert out == {"ok": True, "company_id": "co-9", "already_completed": True}
    assert db.statements == []


@pytest.mark.parametrize("status", ["draft", "checkout_created", "payment_failed"])
def test_finalize_requires_paid_ready(signup, status):
    _intent(signup, status=status)
    with pytest.raises(ConflictError):
        intents.finalize_signup(_db(), intent_id="intent-1", password="secreto123")


def test_finalize_rejects_short_password(signup):
    _intent(signup)
    with pytest.raises(ValidationFailed):
        intents.finalize_signup(_db(), intent_id="intent-1", password="corta")

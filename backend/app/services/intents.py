"""Signup intents: the pre-company half of the subscription lifecycle.

Status chain::

    draft -> checkout_created -> paid_ready -> completed
    completed -> subscription_active | payment_failed
    payment_failed -> subscription_active | deleted

Every status write goes through ``transition_intent`` so the allowed
edges are enforced in one place, on top of the optimistic version check.
"""
from __future__ import annotations

from datetime import timedelta
import json
import logging
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ConflictError, NotFoundError, ValidationFailed
from app.core.security import hash_password, now_utc
from app.services.billing_provider import VALID_PROVIDERS, fetch_usd_ars_rate
from app.services.dunning import round2, signup_amount_usd
from app.services.payment_methods import attach_company_payment_method, link_staged_payment_method
from app.services.versioning import load_row, update_versioned

logger = logging.getLogger(__name__)

INTENT_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"checkout_created", "paid_ready"},
    "checkout_created": {"checkout_created", "paid_ready"},
    "paid_ready": {"paid_ready", "completed"},
    "completed": {"subscription_active", "payment_failed"},
    "subscription_active": {"payment_failed"},
    "payment_failed": {"subscription_active", "deleted"},
    "deleted": set(),
}
CHECKOUT_STATUSES = {"draft", "checkout_created"}
PENDING_STATUSES = {"draft", "checkout_created", "paid_ready"}


def can_transition(current: str, target: str) -> bool:
    return target in INTENT_TRANSITIONS.get(current, set())


def assert_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise ConflictError(f"Transicion de intent invalida: {current} -> {target}")


def transition_intent(db: Session, intent_id, target: str, *, allowed_from: set[str] | None = None, **changes) -> dict:
    """Moves the intent to ``target`` and returns the snapshot it was applied to."""

    def _compute(intent: dict) -> dict:
        if allowed_from is not None and intent["status"] not in allowed_from:
            raise ConflictError(f"El intent ya avanzo (estado actual: {intent['status']})")
        assert_transition(intent["status"], target)
        return {"status": target, **changes}

    snapshot, _ = update_versioned(db, "signup_intents", intent_id, _compute)
    logger.info("intent %s %s -> %s", intent_id, snapshot["status"], target)
    return snapshot


def get_intent(db: Session, intent_id) -> dict:
    intent = load_row(db, "signup_intents", intent_id)
    if not intent:
        raise NotFoundError("Intent no encontrado")
    return intent


def list_plans(db: Session) -> list[dict]:
    rows = db.execute(
        sa.text(
            """
            SELECT id, name, description, price, billing_period
            FROM subscription_plans
            WHERE active=true
            ORDER BY price ASC, name ASC
            """
        )
    ).mappings().all()
    return [dict(r) for r in rows]


def get_plan(db: Session, plan_id, *, active_only: bool = True):
    try:
        pid = str(UUID(str(plan_id)))
    except ValueError:
        raise ValidationFailed("plan_id invalido")
    return db.execute(
        sa.text(
            """
            SELECT id, name, price, stripe_price_id, active
            FROM subscription_plans
            WHERE id=:id AND (:any_state OR active=true)
            """
        ),
        {"id": pid, "any_state": not active_only},
    ).mappings().first()


def create_intent(
    db: Session,
    *,
    email: str,
    plan_id,
    provider: str,
    full_name: str | None = None,
    company_name: str | None = None,
    modules: list[str] | None = None,
) -> dict:
    mail = (email or "").strip().lower()
    if not mail or "@" not in mail:
        raise ValidationFailed("email, plan_id y provider son requeridos")
    provider_code = (provider or "").strip().lower()
    if provider_code not in VALID_PROVIDERS:
        raise ValidationFailed("provider invalido (usa stripe|mercadopago)")
    plan = get_plan(db, plan_id)
    if not plan:
        raise ValidationFailed("Plan invalido o inactivo")

    module_ids = sorted({str(m).strip() for m in (modules or []) if str(m).strip()})
    amount_usd = signup_amount_usd(float(plan["price"]), len(module_ids))
    amount_ars = fx_rate = fx_at = None
    if provider_code == "mercadopago":
        fx_rate = fetch_usd_ars_rate()
        fx_at = now_utc()
        amount_ars = round2(amount_usd * fx_rate)

    row = db.execute(
        sa.text(
            """
            INSERT INTO signup_intents (
                email, full_name, company_name, plan_id, modules, provider, status,
                amount_usd, amount_ars, fx_rate_usd_ars, fx_rate_at
            )
            VALUES (
                :e, :full_name, :company_name, :plan_id, CAST(:modules AS json), :provider, 'draft',
                :amount_usd, :amount_ars, :fx, :fx_at
            )
            RETURNING id, status
            """
        ),
        {
            "e": mail,
            "full_name": full_name,
            "company_name": company_name,
            "plan_id": str(plan["id"]),
            "modules": json.dumps(module_ids),
            "provider": provider_code,
            "amount_usd": amount_usd,
            "amount_ars": amount_ars,
            "fx": fx_rate,
            "fx_at": fx_at,
        },
    ).mappings().one()
    logger.info("intent %s created for %s (%s, %s USD)", row["id"], mail, provider_code, amount_usd)
    return {
        "intent_id": str(row["id"]),
        "status": row["status"],
        "provider": provider_code,
        "amount_usd": amount_usd,
        "amount_ars": amount_ars,
        "fx_rate_usd_ars": fx_rate,
    }


def get_intent_status(db: Session, intent_id) -> dict:
    intent = get_intent(db, intent_id)
    return {"intent_id": str(intent["id"]), "status": intent["status"]}


def _find_or_create_user(db: Session, *, email: str, full_name: str | None, password: str):
    existing = db.execute(
        sa.text("SELECT id FROM users WHERE lower(email)=lower(:e)"),
        {"e": email},
    ).mappings().first()
    if existing:
        return existing["id"]
    return db.execute(
        sa.text(
            """
            INSERT INTO users (email, full_name, password_hash, status)
            VALUES (:e, :n, :h, 'active')
            RETURNING id
            """
        ),
        {"e": email, "n": full_name, "h": hash_password(password)},
    ).scalar_one()


def finalize_signup(db: Session, *, intent_id, password: str) -> dict:
    intent = get_intent(db, intent_id)
    if intent["status"] == "completed":
        return {"ok": True, "company_id": str(intent["company_id"]), "already_completed": True}
    if intent["status"] != "paid_ready":
        raise ConflictError(f"El intent no esta listo para finalizar (estado: {intent['status']})")
    if not password or len(password) < 8:
        raise ValidationFailed("La contrasena debe tener al menos 8 caracteres")

    now = now_utc()
    trial_ends_at = now + timedelta(days=settings.BILLING_TRIAL_DAYS)
    user_id = _find_or_create_user(db, email=intent["email"], full_name=intent["full_name"], password=password)
    company_id = db.execute(
        sa.text("INSERT INTO companies (name, email) VALUES (:n, :e) RETURNING id"),
        {"n": intent["company_name"] or intent["email"], "e": intent["email"]},
    ).scalar_one()
    db.execute(
        sa.text(
            """
            INSERT INTO company_users (company_id, user_id, role, active)
            VALUES (:c, :u, 'admin', true)
            """
        ),
        {"c": str(company_id), "u": str(user_id)},
    )

    provider = intent["provider"]
    provider_subscription_id = intent["stripe_subscription_id"] if provider == "stripe" else intent["mp_preapproval_id"]
    db.execute(
        sa.text(
            """
            INSERT INTO subscriptions (
                company_id, plan_id, provider, provider_customer_id, provider_subscription_id,
                status, trial_ends_at, modules, amount_usd, amount_ars, fx_rate_usd_ars
            )
            VALUES (
                :c, :plan, :provider, :customer, :sub_id,
                'trialing', :trial_ends_at, CAST(:modules AS json), :amount_usd, :amount_ars, :fx
            )
            """
        ),
        {
            "c": str(company_id),
            "plan": str(intent["plan_id"]),
            "provider": provider,
            "customer": intent["stripe_customer_id"],
            "sub_id": provider_subscription_id,
            "trial_ends_at": trial_ends_at,
            "modules": json.dumps(intent["modules"] or []),
            "amount_usd": intent["amount_usd"],
            "amount_ars": intent["amount_ars"],
            "fx": intent["fx_rate_usd_ars"],
        },
    )

    method = link_staged_payment_method(db, email=intent["email"], provider=provider, company_id=company_id)
    if method is None and provider == "mercadopago" and intent["mp_preapproval_id"]:
        method = attach_company_payment_method(
            db,
            company_id,
            provider="mercadopago",
            payment_method_ref=intent["mp_preapproval_id"],
        )

    transition_intent(
        db,
        intent["id"],
        "completed",
        allowed_from={"paid_ready"},
        company_id=str(company_id),
        trial_ends_at=trial_ends_at,
    )
    logger.info("intent %s finalized: company %s user %s", intent["id"], company_id, user_id)
    return {
        "ok": True,
        "company_id": str(company_id),
        "user_id": str(user_id),
        "trial_ends_at": trial_ends_at,
        "payment_method_id": (method["id"] if method else None),
        "already_completed": False,
    }

"""Daily trial-expiry sweep.

1. Charges intents whose trial ended and that were never charged.
2. Deletes accounts whose trial charge failed more than the grace period ago.
3. Reminds trialing companies whose trial ends within a week (no state change).

Each intent runs inside its own savepoint so one failing company never
blocks the rest of the batch.
"""
from __future__ import annotations

from datetime import datetime, timedelta
import logging
import math
from typing import Callable

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import now_utc
from app.services.billing_provider import ChargeRequest, PaymentProvider, get_provider
from app.services.companies import company_contact, delete_account
from app.services.dunning import deletion_cutoff, signup_amount_usd, trial_charge_reference
from app.services.intents import transition_intent
from app.services.notifications import enqueue_notification

logger = logging.getLogger(__name__)

FAILURE_SUBJECT = "Fallo de pago - Tienes 2 dias para pagar"
FAILURE_BODY = (
    "El cobro automatico al finalizar tu periodo de prueba ha fallado.\n"
    "Tienes 2 dias para resolver el pago.\n"
    "Si no actualizas tu metodo de pago en 2 dias, tu cuenta sera eliminada completamente.\n"
    "Por favor, accede a tu cuenta y actualiza tu informacion de pago lo antes posible."
)
TRIAL_REMINDER_WINDOW_DAYS = 7
TRIAL_REMINDER_KIND = "trial_ending"


def _due_intents(db: Session, now: datetime, limit: int):
    return db.execute(
        sa.text(
            """
            SELECT
                i.id, i.email, i.provider, i.modules, i.fx_rate_usd_ars,
                i.stripe_customer_id, i.mp_preapproval_id, i.trial_ends_at,
                p.name AS plan_name, p.price AS plan_price,
                s.provider_customer_id AS sub_customer_id,
                s.provider_subscription_id AS sub_provider_id,
                s.fx_rate_usd_ars AS sub_fx_rate
            FROM signup_intents i
            JOIN subscription_plans p ON p.id=i.plan_id
            LEFT JOIN subscriptions s ON s.company_id=i.company_id
            WHERE i.status='completed'
              AND i.payment_failed_at IS NULL
              AND i.trial_ends_at <= :now
            ORDER BY i.trial_ends_at ASC
            LIMIT :limit
            FOR UPDATE OF i SKIP LOCKED
            """
        ),
        {"now": now, "limit": limit},
    ).mappings().all()


def _failed_intents_due(db: Session, cutoff: datetime):
    return db.execute(
        sa.text(
            """
            SELECT id, email, company_id, payment_failed_at
            FROM signup_intents
            WHERE status='payment_failed' AND payment_failed_at <= :cutoff
            ORDER BY payment_failed_at ASC
            FOR UPDATE SKIP LOCKED
            """
        ),
        {"cutoff": cutoff},
    ).mappings().all()


def build_charge_request(row) -> ChargeRequest:
    modules = row["modules"] or []
    is_stripe = row["provider"] == "stripe"
    fx = row["sub_fx_rate"] or row["fx_rate_usd_ars"]
    return ChargeRequest(
        intent_id=str(row["id"]),
        reference=trial_charge_reference(row["id"], row["trial_ends_at"]),
        amount_usd=signup_amount_usd(float(row["plan_price"] or 0), len(modules)),
        fx_rate_usd_ars=(float(fx) if fx else None),
        customer_id=(row["sub_customer_id"] or row["stripe_customer_id"]) if is_stripe else None,
        preapproval_id=None if is_stripe else (row["sub_provider_id"] or row["mp_preapproval_id"]),
        description=f"Cobro despues del periodo de prueba - Plan {row['plan_name'] or 'basico'}",
    )


def _charge_intent(db: Session, row, now: datetime, provider_factory: Callable[[str], PaymentProvider]) -> dict:
    request = build_charge_request(row)
    result = provider_factory(row["provider"]).charge_trial_end(request)
    if result.success:
        transition_intent(db, row["id"], "subscription_active", allowed_from={"completed"})
        logger.info("trial charge ok intent=%s ref=%s", row["id"], request.reference)
        return {"intent_id": str(row["id"]), "status": "charged", "provider_ref": result.provider_ref}

    transition_intent(db, row["id"], "payment_failed", allowed_from={"completed"}, payment_failed_at=now)
    enqueue_notification(db, row["email"], FAILURE_SUBJECT, FAILURE_BODY, kind="trial_charge_failed")
    logger.warning("trial charge failed intent=%s: %s", row["id"], result.error)
    return {"intent_id": str(row["id"]), "status": "payment_failed", "error": result.error}


def charge_due_trials(
    db: Session,
    now: datetime,
    *,
    limit: int,
    provider_factory: Callable[[str], PaymentProvider] = get_provider,
) -> tuple[int, list[dict]]:
    rows = _due_intents(db, now, limit)
    results: list[dict] = []
    for row in rows:
        try:
            with db.begin_nested():
                results.append(_charge_intent(db, row, now, provider_factory))
        except Exception as exc:
            logger.error("trial charge error intent=%s", row["id"], exc_info=True)
            results.append({"intent_id": str(row["id"]), "status": "error", "error": str(exc)})
    return (len(rows), results)


def delete_expired_accounts(db: Session, now: datetime) -> tuple[list[str], list[dict]]:
    deleted: list[str] = []
    errors: list[dict] = []
    for row in _failed_intents_due(db, deletion_cutoff(now)):
        try:
            with db.begin_nested():
                delete_account(db, email=row["email"], company_id=row["company_id"])
                transition_intent(db, row["id"], "deleted", allowed_from={"payment_failed"})
        except Exception as exc:
            logger.error("account deletion error intent=%s", row["id"], exc_info=True)
            errors.append({"intent_id": str(row["id"]), "status": "error", "error": str(exc)})
            continue
        deleted.append(str(row["id"]))
        logger.info("intent %s deleted after grace period (failed at %s)", row["id"], row["payment_failed_at"])
    return (deleted, errors)


def _expiring_trials(db: Session, now: datetime):
    return db.execute(
        sa.text(
            """
            SELECT s.id, s.company_id, s.trial_ends_at, c.name AS company_name, p.name AS plan_name
            FROM subscriptions s
            JOIN companies c ON c.id=s.company_id
            JOIN subscription_plans p ON p.id=s.plan_id
            WHERE s.status='trialing'
              AND s.trial_ends_at >= :now
              AND s.trial_ends_at <= :until
            ORDER BY s.trial_ends_at ASC
            """
        ),
        {"now": now, "until": now + timedelta(days=TRIAL_REMINDER_WINDOW_DAYS)},
    ).mappings().all()


def _reminded_since(db: Session, recipient: str, since: datetime) -> bool:
    return db.execute(
        sa.text(
            """
            SELECT 1 FROM notification_outbox
            WHERE kind=:kind AND recipient=:r AND created_at >= :since
            LIMIT 1
            """
        ),
        {"kind": TRIAL_REMINDER_KIND, "r": recipient, "since": since},
    ).scalar() is not None


def days_left(trial_ends_at: datetime, now: datetime) -> int:
    return max(math.ceil((trial_ends_at - now).total_seconds() / 86400), 1)


def trial_reminder(company_name: str | None, plan_name: str | None, days: int) -> tuple[str, str]:
    subject = f"Tu periodo de prueba termina en {days} dias"
    greeting = f"Hola {company_name}," if company_name else "Hola,"
    body = (
        f"{greeting}\n"
        f"Tu periodo de prueba del plan {plan_name or 'basico'} expira en {days} dias.\n"
        "Agrega un metodo de pago para continuar usando nuestros servicios sin interrupciones."
    )
    return (subject, body)


def notify_expiring_trials(db: Session, now: datetime) -> int:
    """Queues at most one reminder per recipient per day; returns how many were queued."""
    queued = 0
    for row in _expiring_trials(db, now):
        recipient = company_contact(db, row["company_id"])
        if not recipient or _reminded_since(db, recipient, now - timedelta(days=1)):
            continue
        days = days_left(row["trial_ends_at"], now)
        subject, body = trial_reminder(row["company_name"], row["plan_name"], days)
        if enqueue_notification(db, recipient, subject, body, kind=TRIAL_REMINDER_KIND):
            queued += 1
    return queued


def charge_expired_trials(
    db: Session,
    *,
    now: datetime | None = None,
    limit: int | None = None,
    provider_factory: Callable[[str], PaymentProvider] = get_provider,
) -> dict:
    now = now or now_utc()
    processed, results = charge_due_trials(
        db,
        now,
        limit=limit or settings.TRIAL_CHARGE_BATCH_SIZE,
        provider_factory=provider_factory,
    )
    deleted, errors = delete_expired_accounts(db, now)
    results.extend(errors)
    try:
        with db.begin_nested():
            reminders = notify_expiring_trials(db, now)
    except Exception:
        logger.error("trial reminders failed", exc_info=True)
        reminders = 0
    logger.info(
        "trial sweep processed=%s deleted=%s errors=%s reminders=%s",
        processed,
        len(deleted),
        len(errors),
        reminders,
    )
    return {"processed": processed, "results": results, "deleted": deleted, "reminders": reminders}

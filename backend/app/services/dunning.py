"""Dunning policy: retry backoff, suspension and grace-period rules.

Everything here is pure. Callers pass ``now`` and a subscription snapshot
(a mapping with the columns of ``subscriptions``) and get back the column
changes to persist, so webhook handlers, the trial charger and the tests
all share one implementation.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Mapping

from app.core.config import settings

PRORATE_UPGRADE = "create_prorations"
PRORATE_DOWNGRADE = "always_invoice"


def compute_retry_delay(failure_count: int) -> timedelta:
    if failure_count < 1:
        raise ValueError("failure_count debe ser >= 1")
    if failure_count <= 2:
        return timedelta(days=3)
    if failure_count <= 4:
        return timedelta(days=7)
    return timedelta(days=14)


def should_suspend(failure_count: int) -> bool:
    return failure_count >= settings.BILLING_SUSPEND_AFTER_FAILURES


def payment_failed_changes(sub: Mapping, now: datetime) -> dict:
    count = int(sub.get("payment_failed_count") or 0) + 1
    suspend = should_suspend(count)
    return {
        "status": "past_due",
        "payment_failed_count": count,
        "last_payment_failed_at": now,
        "payment_retry_after": now + compute_retry_delay(count),
        "disabled_until": (now + timedelta(days=settings.BILLING_SUSPENSION_DAYS)) if suspend else None,
    }


def payment_succeeded_changes(sub: Mapping, now: datetime) -> dict:
    return {
        "status": "active",
        "payment_failed_count": 0,
        "last_payment_failed_at": None,
        "payment_retry_after": None,
        "disabled_until": None,
    }


def failure_notice(changes: Mapping) -> tuple[str, str]:
    count = changes["payment_failed_count"]
    retry_on = changes["payment_retry_after"].strftime("%Y-%m-%d")
    if changes.get("disabled_until") is not None:
        return (
            "Acceso temporal deshabilitado - Pago pendiente",
            f"El pago ha fallado {count} veces. Acceso deshabilitado por "
            f"{settings.BILLING_SUSPENSION_DAYS} dias. Por favor actualiza tu metodo de pago.",
        )
    return (
        f"Pago rechazado - Reintentando el {retry_on}",
        f"El pago fue rechazado. Reintentaremos automaticamente el {retry_on}.",
    )


def is_deletion_due(payment_failed_at: datetime | None, now: datetime) -> bool:
    if payment_failed_at is None:
        return False
    return payment_failed_at <= deletion_cutoff(now)


def deletion_cutoff(now: datetime) -> datetime:
    return now - timedelta(days=settings.BILLING_GRACE_DAYS)


def trial_charge_reference(intent_id, trial_ends_at: datetime) -> str:
    """Stable per logical charge: retries of the same trial end reuse the key."""
    return f"trial-{intent_id}-{int(trial_ends_at.timestamp())}"


def proration_behavior(old_price: float, new_price: float) -> str:
    if new_price == old_price:
        raise ValueError("El nuevo plan tiene el mismo precio que el actual")
    return PRORATE_UPGRADE if new_price > old_price else PRORATE_DOWNGRADE


def round2(value: float) -> float:
    return round(float(value), 2)


def signup_amount_usd(plan_price: float, modules_count: int) -> float:
    return round2(float(plan_price) + settings.BILLING_MODULE_PRICE_USD * modules_count)

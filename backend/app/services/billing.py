from __future__ import annotations

from datetime import datetime
import json
import logging
from typing import Mapping

import sqlalchemy as sa
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, NotFoundError, ValidationFailed
from app.core.security import now_utc
from app.services.audit import record_subscription_event
from app.services.billing_provider import (
    BillingEvent,
    CheckoutRequest,
    PaymentProvider,
    PlanChangeRequest,
    WebhookEnvelope,
    get_provider,
)
from app.services.companies import company_contact, require_active_member
from app.services.dunning import (
    failure_notice,
    payment_failed_changes,
    payment_succeeded_changes,
    proration_behavior,
    signup_amount_usd,
)
from app.services.intents import (
    CHECKOUT_STATUSES,
    PENDING_STATUSES,
    get_intent,
    get_plan,
    transition_intent,
)
from app.services.notifications import enqueue_notification
from app.services.payment_methods import ensure_mp_payment_method
from app.services.versioning import update_versioned

logger = logging.getLogger(__name__)

SUBSCRIPTION_STATUSES = {"trialing", "active", "past_due", "canceled", "incomplete"}


# ---------------------------------------------------------------- checkout


def start_checkout(
    db: Session,
    *,
    intent_id,
    success_url: str,
    cancel_url: str,
    provider: PaymentProvider | None = None,
) -> dict:
    intent = get_intent(db, intent_id)
    if intent["status"] not in CHECKOUT_STATUSES:
        raise ConflictError(f"El intent ya avanzo (estado actual: {intent['status']})")
    plan = get_plan(db, intent["plan_id"], active_only=False)
    if not plan:
        raise NotFoundError("Plan no encontrado")

    adapter = provider or get_provider(intent["provider"])
    result = adapter.create_checkout(
        CheckoutRequest(
            intent_id=str(intent["id"]),
            email=intent["email"],
            full_name=intent["full_name"],
            company_name=intent["company_name"],
            plan_name=plan["name"],
            amount_usd=float(intent["amount_usd"]),
            amount_ars=(float(intent["amount_ars"]) if intent["amount_ars"] is not None else None),
            success_url=success_url,
            cancel_url=cancel_url,
        )
    )
    transition_intent(
        db,
        intent["id"],
        "checkout_created",
        allowed_from=CHECKOUT_STATUSES,
        **result.references,
    )
    logger.info("checkout created for intent %s via %s", intent["id"], result.provider)
    return {"checkout_url": result.checkout_url, "provider": result.provider}


# ---------------------------------------------------------------- webhooks


def _claim_webhook(db: Session, envelope: WebhookEnvelope):
    return db.execute(
        sa.text(
            """
            INSERT INTO webhook_events (provider, event_key, event_type, payload, status)
            VALUES (:provider, :event_key, :event_type, CAST(:payload AS json), 'received')
            ON CONFLICT (provider, event_key) DO NOTHING
            RETURNING id
            """
        ),
        {
            "provider": envelope.provider,
            "event_key": envelope.event_key,
            "event_type": envelope.event_type,
            "payload": json.dumps(envelope.payload, default=str),
        },
    ).scalar()


def _finish_webhook(db: Session, ledger_id, status: str):
    db.execute(
        sa.text("UPDATE webhook_events SET status=:s, processed_at=now() WHERE id=:id"),
        {"s": status, "id": ledger_id},
    )


def ingest_webhook(
    db: Session,
    *,
    provider_code: str,
    headers: Mapping[str, str],
    raw_body: bytes,
    query: Mapping[str, str] | None = None,
    provider: PaymentProvider | None = None,
    now: datetime | None = None,
) -> dict:
    """Verify, dedupe and apply one provider delivery.

    Exceptions propagate so the caller rolls back the ledger row together
    with any partial state change and the provider redelivers.
    """
    adapter = provider or get_provider(provider_code)
    envelope = adapter.parse_webhook(headers, raw_body, query or {})
    if envelope is None:
        return {"ok": True, "note": "Notificacion sin id de recurso"}

    ledger_id = _claim_webhook(db, envelope)
    if ledger_id is None:
        logger.info("webhook %s %s duplicate, skipped", envelope.provider, envelope.event_key)
        return {"ok": True, "duplicate": True, "event_key": envelope.event_key}

    event = adapter.resolve_event(envelope)
    outcome = apply_billing_event(db, event, now=now)
    _finish_webhook(db, ledger_id, "processed" if outcome["applied"] else "ignored")
    logger.info(
        "webhook %s %s kind=%s applied=%s %s",
        envelope.provider,
        envelope.event_key,
        event.kind,
        outcome["applied"],
        outcome.get("detail", ""),
    )
    return {
        "ok": True,
        "duplicate": False,
        "event_key": envelope.event_key,
        "kind": event.kind,
        "applied": outcome["applied"],
    }


def _find_subscription(db: Session, provider: str, provider_subscription_id: str | None):
    if not provider_subscription_id:
        return None
    row = db.execute(
        sa.text(
            """
            SELECT id, company_id, plan_id, status, payment_failed_count
            FROM subscriptions
            WHERE provider=:p
              AND (provider_subscription_id=:s OR mp_preapproval_id=:s)
            ORDER BY created_at DESC
            LIMIT 1
            """
        ),
        {"p": provider, "s": provider_subscription_id},
    ).mappings().first()
    return dict(row) if row else None


def _find_intent_by_ref(db: Session, intent_ref: str | None):
    if not intent_ref:
        return None
    row = db.execute(
        sa.text(
            """
            SELECT id, status, company_id
            FROM signup_intents
            WHERE id::text=:ref
            """
        ),
        {"ref": str(intent_ref)},
    ).mappings().first()
    return dict(row) if row else None


def _failed_intent_for_company(db: Session, company_id):
    return db.execute(
        sa.text(
            """
            SELECT id
            FROM signup_intents
            WHERE company_id=:c AND status='payment_failed'
            ORDER BY payment_failed_at DESC NULLS LAST
            LIMIT 1
            """
        ),
        {"c": str(company_id)},
    ).scalar()


def _advance_pending_intent(db: Session, intent: dict, event: BillingEvent, *, confirmed: bool) -> dict:
    if confirmed:
        refs = {"mp_preapproval_id": event.provider_subscription_id} if event.provider_subscription_id else {}
        transition_intent(db, intent["id"], "paid_ready", allowed_from=PENDING_STATUSES, **refs)
        return {"applied": True, "detail": "intent paid_ready"}
    if intent["status"] in CHECKOUT_STATUSES:
        transition_intent(db, intent["id"], "checkout_created", allowed_from=CHECKOUT_STATUSES)
        return {"applied": True, "detail": "intent checkout_created"}
    return {"applied": False, "detail": "intent ya confirmado"}


def _pending_intent_for_payment(db: Session, event: BillingEvent):
    """MercadoPago signup payments reference the intent, not a subscription."""
    if event.provider != "mercadopago":
        return None
    intent = _find_intent_by_ref(db, event.intent_ref)
    if intent and intent["status"] in PENDING_STATUSES:
        return intent
    return None


def _apply_payment_failed(db: Session, event: BillingEvent, now: datetime) -> dict:
    intent = _pending_intent_for_payment(db, event)
    if intent:
        return _advance_pending_intent(db, intent, event, confirmed=False)

    sub = _find_subscription(db, event.provider, event.provider_subscription_id)
    if not sub:
        return {"applied": False, "detail": f"suscripcion {event.provider_subscription_id} desconocida"}

    snapshot, changes = update_versioned(db, "subscriptions", sub["id"], lambda s: payment_failed_changes(s, now))
    count = changes["payment_failed_count"]
    retry_on = changes["payment_retry_after"].strftime("%Y-%m-%d")
    record_subscription_event(
        db,
        snapshot["company_id"],
        "payment_failed",
        old_status=snapshot["status"],
        new_status="past_due",
        reason=f"Pago fallido. Intento #{count}. Reintento el {retry_on}",
        data={
            "invoice_id": event.invoice_id,
            "failure_reason": event.failure_reason,
            "retry_count": count,
            "suspended": changes["disabled_until"] is not None,
        },
    )
    subject, body = failure_notice(changes)
    enqueue_notification(db, company_contact(db, snapshot["company_id"]), subject, body, kind="payment_failed")
    return {"applied": True, "detail": f"count={count}"}


def _apply_payment_succeeded(db: Session, event: BillingEvent, now: datetime) -> dict:
    intent = _pending_intent_for_payment(db, event)
    if intent:
        return _advance_pending_intent(db, intent, event, confirmed=True)

    sub = _find_subscription(db, event.provider, event.provider_subscription_id)
    if not sub:
        return {"applied": False, "detail": f"suscripcion {event.provider_subscription_id} desconocida"}

    snapshot, _ = update_versioned(db, "subscriptions", sub["id"], lambda s: payment_succeeded_changes(s, now))
    company_id = snapshot["company_id"]
    record_subscription_event(
        db,
        company_id,
        "payment_recovered",
        old_status=snapshot["status"],
        new_status="active",
        reason="Pago procesado exitosamente",
        data={"invoice_id": event.invoice_id, "previous_failures": snapshot["payment_failed_count"]},
    )
    if event.provider == "mercadopago" and event.card and event.provider_subscription_id:
        ensure_mp_payment_method(db, company_id, event.provider_subscription_id, event.card)

    failed_intent_id = _failed_intent_for_company(db, company_id)
    if failed_intent_id:
        transition_intent(db, failed_intent_id, "subscription_active", payment_failed_at=None)

    enqueue_notification(
        db,
        company_contact(db, company_id),
        "Pago exitoso - Suscripcion activa",
        "Tu pago ha sido procesado exitosamente. Gracias por tu confianza.",
        kind="payment_succeeded",
    )
    return {"applied": True}


def _apply_subscription_canceled(db: Session, event: BillingEvent, now: datetime) -> dict:
    sub = _find_subscription(db, event.provider, event.provider_subscription_id)
    if not sub:
        return {"applied": False, "detail": f"suscripcion {event.provider_subscription_id} desconocida"}

    def _cancel(s: dict) -> dict | None:
        if s["status"] == "canceled":
            return None
        return {"status": "canceled", "canceled_at": now}

    snapshot, changes = update_versioned(db, "subscriptions", sub["id"], _cancel)
    if not changes:
        return {"applied": False, "detail": "ya cancelada"}
    record_subscription_event(
        db,
        snapshot["company_id"],
        "canceled",
        old_plan_id=snapshot["plan_id"],
        old_status=snapshot["status"],
        new_status="canceled",
        reason="Suscripcion cancelada en el proveedor",
        data={"provider_subscription_id": event.provider_subscription_id},
    )
    return {"applied": True}


def _apply_checkout_completed(db: Session, event: BillingEvent, now: datetime) -> dict:
    intent = _find_intent_by_ref(db, event.intent_ref)
    if not intent:
        return {"applied": False, "detail": f"intent {event.intent_ref} desconocido"}
    if intent["status"] not in PENDING_STATUSES:
        return {"applied": False, "detail": f"intent en estado {intent['status']}"}
    transition_intent(
        db,
        intent["id"],
        "paid_ready",
        allowed_from=PENDING_STATUSES,
        stripe_subscription_id=event.provider_subscription_id,
        stripe_customer_id=event.provider_customer_id,
    )
    return {"applied": True}


def _apply_status_changed(db: Session, event: BillingEvent, now: datetime) -> dict:
    intent = _find_intent_by_ref(db, event.intent_ref)
    if intent and intent["status"] in PENDING_STATUSES:
        return _advance_pending_intent(db, intent, event, confirmed=event.status == "active")

    sub = _find_subscription(db, event.provider, event.provider_subscription_id)
    if not sub:
        return {"applied": False, "detail": f"recurso {event.provider_subscription_id} sin suscripcion"}
    if event.status not in SUBSCRIPTION_STATUSES:
        return {"applied": False, "detail": f"estado {event.status} desconocido"}

    def _set_status(s: dict) -> dict | None:
        if s["status"] == event.status:
            return None
        changes = {"status": event.status}
        if event.status == "canceled":
            changes["canceled_at"] = now
        return changes

    snapshot, changes = update_versioned(db, "subscriptions", sub["id"], _set_status)
    if event.status == "active" and event.provider_subscription_id:
        ensure_mp_payment_method(db, snapshot["company_id"], event.provider_subscription_id)
    if changes and event.status == "canceled":
        record_subscription_event(
            db,
            snapshot["company_id"],
            "canceled",
            old_plan_id=snapshot["plan_id"],
            old_status=snapshot["status"],
            new_status="canceled",
            reason="Preapproval cancelado en MercadoPago",
            data=event.metadata,
        )
    return {"applied": bool(changes), "detail": f"status={event.status}"}


EVENT_HANDLERS = {
    "payment_failed": _apply_payment_failed,
    "payment_succeeded": _apply_payment_succeeded,
    "subscription_canceled": _apply_subscription_canceled,
    "checkout_completed": _apply_checkout_completed,
    "status_changed": _apply_status_changed,
}


def apply_billing_event(db: Session, event: BillingEvent, *, now: datetime | None = None) -> dict:
    handler = EVENT_HANDLERS.get(event.kind)
    if handler is None:
        logger.info("billing event %s (%s) ignored", event.event_type, event.provider)
        return {"applied": False, "detail": f"tipo {event.event_type} no manejado"}
    return handler(db, event, now or now_utc())


# ---------------------------------------------------------------- plan change / cancel


def _subscription_with_plan(db: Session, company_id):
    row = db.execute(
        sa.text(
            """
            SELECT
                s.id, s.company_id, s.plan_id, s.provider, s.provider_subscription_id,
                s.status, s.modules, s.current_period_end,
                p.name AS plan_name, p.price AS plan_price
            FROM subscriptions s
            JOIN subscription_plans p ON p.id=s.plan_id
            WHERE s.company_id=:c
            """
        ),
        {"c": str(company_id)},
    ).mappings().first()
    return dict(row) if row else None


def change_plan(
    db: Session,
    *,
    user_id,
    company_id,
    new_plan_id,
    provider: PaymentProvider | None = None,
) -> dict:
    require_active_member(db, user_id, company_id)
    sub = _subscription_with_plan(db, company_id)
    if not sub:
        raise NotFoundError("No se encontro suscripcion activa")
    new_plan = get_plan(db, new_plan_id)
    if not new_plan:
        raise NotFoundError("Plan no encontrado")

    old_price = float(sub["plan_price"])
    new_price = float(new_plan["price"])
    try:
        behavior = proration_behavior(old_price, new_price)
    except ValueError as exc:
        raise ValidationFailed(str(exc)) from exc
    is_upgrade = new_price > old_price

    adapter = provider or get_provider(sub["provider"])
    if not sub["provider_subscription_id"]:
        raise ValidationFailed("La suscripcion no tiene id en el proveedor")
    result = adapter.change_plan(
        PlanChangeRequest(
            provider_subscription_id=sub["provider_subscription_id"],
            plan_name=new_plan["name"],
            new_price=new_price,
            stripe_price_id=new_plan["stripe_price_id"],
            proration_behavior=behavior,
        )
    )

    def _compute(s: dict) -> dict:
        changes = {
            "plan_id": str(new_plan["id"]),
            "amount_usd": signup_amount_usd(new_price, len(s["modules"] or [])),
        }
        if result.status in SUBSCRIPTION_STATUSES:
            changes["status"] = result.status
        if result.current_period_end:
            changes["current_period_end"] = result.current_period_end
        return changes

    snapshot, changes = update_versioned(db, "subscriptions", sub["id"], _compute)
    label = "actualizado" if is_upgrade else "reducido"
    record_subscription_event(
        db,
        company_id,
        "upgraded" if is_upgrade else "downgraded",
        old_plan_id=sub["plan_id"],
        new_plan_id=new_plan["id"],
        old_status=snapshot["status"],
        new_status=changes.get("status", snapshot["status"]),
        reason=f"Plan {label} por el usuario",
        data={"old_price": old_price, "new_price": new_price, "proration_behavior": behavior},
    )
    enqueue_notification(
        db,
        company_contact(db, company_id),
        f"Tu plan ha sido {label}",
        f"Tu suscripcion cambio de {sub['plan_name']} a {new_plan['name']}. Nuevo precio: ${new_price:g} USD/mes.",
        kind="plan_changed",
    )
    logger.info("company %s plan %s -> %s (%s)", company_id, sub["plan_id"], new_plan["id"], behavior)
    return {
        "ok": True,
        "message": f"Plan {label} exitosamente",
        "old_plan": sub["plan_name"],
        "new_plan": new_plan["name"],
        "old_price": old_price,
        "new_price": new_price,
        "next_billing": changes.get("current_period_end") or sub["current_period_end"],
    }


def cancel_subscription(
    db: Session,
    *,
    user_id,
    company_id,
    reason: str | None = None,
    provider: PaymentProvider | None = None,
    now: datetime | None = None,
) -> dict:
    require_active_member(db, user_id, company_id, role="admin")
    sub = _subscription_with_plan(db, company_id)
    if not sub:
        raise NotFoundError("No se encontro suscripcion activa")
    if sub["status"] == "canceled":
        raise ConflictError("La suscripcion ya esta cancelada")

    cancel_reason = (reason or "").strip() or "Cancelacion solicitada por el usuario"
    if sub["provider_subscription_id"]:
        adapter = provider or get_provider(sub["provider"])
        adapter.cancel(sub["provider_subscription_id"])

    canceled_at = now or now_utc()
    snapshot, _ = update_versioned(
        db,
        "subscriptions",
        sub["id"],
        lambda _s: {"status": "canceled", "canceled_at": canceled_at, "cancellation_reason": cancel_reason},
    )
    record_subscription_event(
        db,
        company_id,
        "canceled",
        old_plan_id=sub["plan_id"],
        old_status=snapshot["status"],
        new_status="canceled",
        reason=cancel_reason,
    )
    enqueue_notification(
        db,
        company_contact(db, company_id),
        "Suscripcion cancelada",
        "Tu suscripcion ha sido cancelada exitosamente. Si cambias de idea, puedes reactivarla en cualquier momento.",
        kind="subscription_canceled",
    )
    logger.info("company %s subscription canceled: %s", company_id, cancel_reason)
    return {"ok": True, "message": "Suscripcion cancelada exitosamente", "canceled_at": canceled_at}

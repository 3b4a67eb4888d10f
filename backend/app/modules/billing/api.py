import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, http_error, require_cron_secret
from app.core.errors import BillingError
from app.db.session import get_db
from app.schemas.billing import (
    CancelSubscriptionIn,
    CancelSubscriptionOut,
    ChargeTrialsOut,
    DispatchNotificationsOut,
    PaymentMethodDeleteOut,
    PlanChangeIn,
    PlanChangeOut,
    WebhookAckOut,
)
from app.services.billing import cancel_subscription, change_plan, ingest_webhook
from app.services.notifications import dispatch_pending_notifications
from app.services.payment_methods import delete_payment_method
from app.services.trial_charger import charge_expired_trials

logger = logging.getLogger(__name__)

router = APIRouter()


def _ingest_and_commit(db: Session, provider_code: str, request: Request, raw: bytes) -> dict:
    try:
        out = ingest_webhook(
            db,
            provider_code=provider_code,
            headers=request.headers,
            raw_body=raw,
            query=request.query_params,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return out


async def _webhook(provider_code: str, request: Request, db: Session) -> WebhookAckOut:
    raw = await request.body()
    try:
        # ingest blocks on provider HTTP and the DB session
        out = await run_in_threadpool(_ingest_and_commit, db, provider_code, request, raw)
    except BillingError as exc:
        logger.warning("webhook %s rejected: %s", provider_code, exc.detail)
        raise http_error(exc)
    except Exception:
        logger.error("webhook %s processing failed", provider_code, exc_info=True)
        raise HTTPException(500, "Error procesando webhook")
    return WebhookAckOut(**out)


@router.post("/webhooks/stripe", response_model=WebhookAckOut)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    return await _webhook("stripe", request, db)


@router.post("/webhooks/mercadopago", response_model=WebhookAckOut)
async def mercadopago_webhook(request: Request, db: Session = Depends(get_db)):
    return await _webhook("mercadopago", request, db)


@router.get("/webhooks/mercadopago", response_model=WebhookAckOut)
def mercadopago_webhook_ack():
    return WebhookAckOut(note="ok")


@router.post("/jobs/charge-trials", response_model=ChargeTrialsOut, dependencies=[Depends(require_cron_secret)])
def charge_trials_job(
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
):
    out = charge_expired_trials(db, limit=limit)
    db.commit()
    return ChargeTrialsOut(**out)


@router.post(
    "/jobs/dispatch-notifications",
    response_model=DispatchNotificationsOut,
    dependencies=[Depends(require_cron_secret)],
)
def dispatch_notifications_job(
    limit: int | None = Query(default=None, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    out = dispatch_pending_notifications(db, limit=limit)
    db.commit()
    return DispatchNotificationsOut(**out)


@router.post("/upgrade", response_model=PlanChangeOut)
def upgrade_subscription(payload: PlanChangeIn, current=Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        out = change_plan(
            db,
            user_id=current.id,
            company_id=payload.company_id,
            new_plan_id=payload.new_plan_id,
        )
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    return PlanChangeOut(**out)


@router.post("/cancel", response_model=CancelSubscriptionOut)
def cancel(payload: CancelSubscriptionIn, current=Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        out = cancel_subscription(
            db,
            user_id=current.id,
            company_id=payload.company_id,
            reason=payload.reason,
        )
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    return CancelSubscriptionOut(**out)


@router.delete("/payment-methods/{method_id}", response_model=PaymentMethodDeleteOut)
def remove_payment_method(method_id: UUID, current=Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        out = delete_payment_method(db, user_id=current.id, method_id=method_id)
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    return PaymentMethodDeleteOut(**out)

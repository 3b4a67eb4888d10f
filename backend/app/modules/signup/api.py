from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.deps import get_optional_user, http_error
from app.core.errors import BillingError
from app.db.session import get_db
from app.schemas.signup import (
    CheckoutIn,
    CheckoutOut,
    FinalizeSignupIn,
    FinalizeSignupOut,
    IntentCreateIn,
    IntentCreateOut,
    IntentStatusOut,
    PaymentMethodIn,
    PaymentMethodOut,
    PaymentVerifyIn,
    PaymentVerifyOut,
    PlanOut,
    SetupIntentIn,
    SetupIntentOut,
)
from app.services.billing import start_checkout
from app.services.intents import create_intent, finalize_signup, get_intent_status, list_plans
from app.services.payment_methods import (
    create_signup_setup_intent,
    save_payment_method,
    verify_staged_payment_method,
)

router = APIRouter()


@router.get("/plans", response_model=list[PlanOut])
def signup_plans(db: Session = Depends(get_db)):
    return [PlanOut(**p) for p in list_plans(db)]


@router.post("/intents", response_model=IntentCreateOut)
def signup_create_intent(payload: IntentCreateIn, db: Session = Depends(get_db)):
    try:
        out = create_intent(
            db,
            email=payload.email,
            plan_id=payload.plan_id,
            provider=payload.provider,
            full_name=payload.full_name,
            company_name=payload.company_name,
            modules=payload.modules,
        )
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    return IntentCreateOut(**out)


@router.get("/intents/{intent_id}/status", response_model=IntentStatusOut)
def signup_intent_status(intent_id: UUID, db: Session = Depends(get_db)):
    try:
        out = get_intent_status(db, intent_id)
    except BillingError as exc:
        raise http_error(exc)
    return IntentStatusOut(**out)


@router.post("/checkout", response_model=CheckoutOut)
def signup_checkout(payload: CheckoutIn, db: Session = Depends(get_db)):
    try:
        out = start_checkout(
            db,
            intent_id=payload.intent_id,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    return CheckoutOut(**out)


@router.post("/payment-methods", response_model=PaymentMethodOut)
def signup_save_payment_method(
    payload: PaymentMethodIn,
    current=Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    user_id = None
    if payload.company_id is not None:
        if current is None:
            raise HTTPException(401, "No autorizado")
        user_id = current.id
    try:
        out = save_payment_method(
            db,
            provider=payload.provider,
            payment_method_ref=payload.payment_method_ref,
            email=payload.email,
            company_id=payload.company_id,
            user_id=user_id,
            name=payload.name,
            billing_country=payload.billing_country,
            brand=payload.brand,
            last4=payload.last4,
            exp_month=payload.exp_month,
            exp_year=payload.exp_year,
        )
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    return PaymentMethodOut(**out)


@router.post("/setup-intent", response_model=SetupIntentOut)
def signup_setup_intent(payload: SetupIntentIn):
    try:
        out = create_signup_setup_intent(email=payload.email, name=payload.name)
    except BillingError as exc:
        raise http_error(exc)
    return SetupIntentOut(**out)


@router.post("/payment-methods/verify", response_model=PaymentVerifyOut)
def signup_verify_payment_method(payload: PaymentVerifyIn, db: Session = Depends(get_db)):
    try:
        out = verify_staged_payment_method(
            db,
            email=payload.email,
            provider=payload.provider,
            payment_method_ref=payload.payment_method_ref,
        )
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    return PaymentVerifyOut(**out)


@router.post("/finalize", response_model=FinalizeSignupOut)
def signup_finalize(payload: FinalizeSignupIn, db: Session = Depends(get_db)):
    try:
        out = finalize_signup(db, intent_id=payload.intent_id, password=payload.password)
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    return FinalizeSignupOut(**out)

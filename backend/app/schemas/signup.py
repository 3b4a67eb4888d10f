from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

PaymentProviderCode = Literal["stripe", "mercadopago"]
IntentStatus = Literal[
    "draft",
    "checkout_created",
    "paid_ready",
    "completed",
    "payment_failed",
    "subscription_active",
    "deleted",
]


def looks_like_email(value: str) -> bool:
    v = value.strip()
    return "@" in v and "." in v.split("@")[-1]


class PlanOut(BaseModel):
    id: UUID
    name: str
    description: str | None = None
    price: float
    billing_period: str


class IntentCreateIn(BaseModel):
    email: str = Field(..., max_length=320, examples=["owner@example.com"])
    full_name: str | None = Field(default=None, max_length=200)
    company_name: str | None = Field(default=None, max_length=200)
    plan_id: UUID
    modules: list[str] = Field(default_factory=list, max_length=50)
    provider: PaymentProviderCode

    @model_validator(mode="after")
    def validate_email(self):
        if not looks_like_email(self.email):
            raise ValueError("Invalid email")
        return self


class IntentCreateOut(BaseModel):
    intent_id: UUID
    status: IntentStatus
    provider: PaymentProviderCode
    amount_usd: float
    amount_ars: float | None = None
    fx_rate_usd_ars: float | None = None


class IntentStatusOut(BaseModel):
    intent_id: UUID
    status: IntentStatus


class CheckoutIn(BaseModel):
    intent_id: UUID
    success_url: str = Field(..., max_length=2048)
    cancel_url: str = Field(..., max_length=2048)


class CheckoutOut(BaseModel):
    checkout_url: str
    provider: PaymentProviderCode


class PaymentMethodIn(BaseModel):
    email: str | None = Field(default=None, max_length=320)
    company_id: UUID | None = None
    provider: PaymentProviderCode
    payment_method_ref: str = Field(..., min_length=3, max_length=255)
    name: str | None = Field(default=None, max_length=200)
    billing_country: str | None = Field(default=None, max_length=2)
    brand: str | None = Field(default=None, max_length=40)
    last4: str | None = Field(default=None, min_length=4, max_length=4)
    exp_month: int | None = Field(default=None, ge=1, le=12)
    exp_year: int | None = Field(default=None, ge=2000, le=2100)

    @model_validator(mode="after")
    def validate_target(self):
        if not self.email and not self.company_id:
            raise ValueError("Provide email or company_id")
        if self.email and not looks_like_email(self.email):
            raise ValueError("Invalid email")
        return self


class PaymentMethodOut(BaseModel):
    ok: bool = True
    id: UUID
    staged: bool
    is_default: bool


class SetupIntentIn(BaseModel):
    email: str = Field(..., max_length=320)
    name: str | None = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def validate_email(self):
        if not looks_like_email(self.email):
            raise ValueError("Invalid email")
        return self


class SetupIntentOut(BaseModel):
    client_secret: str
    setup_intent_id: str


class PaymentVerifyIn(BaseModel):
    email: str = Field(..., max_length=320)
    provider: PaymentProviderCode
    payment_method_ref: str = Field(..., min_length=3, max_length=255)


class PaymentVerifyOut(BaseModel):
    ok: bool = True
    verified: bool
    error: str | None = None


class FinalizeSignupIn(BaseModel):
    intent_id: UUID
    password: str = Field(..., min_length=8, max_length=128)


class FinalizeSignupOut(BaseModel):
    ok: bool = True
    company_id: UUID
    user_id: UUID | None = None
    trial_ends_at: datetime | None = None
    payment_method_id: UUID | None = None
    already_completed: bool = False

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class WebhookAckOut(BaseModel):
    ok: bool = True
    received: bool = True
    duplicate: bool = False
    event_key: str | None = None
    kind: str | None = None
    applied: bool | None = None
    note: str | None = None


class ChargeTrialResultOut(BaseModel):
    intent_id: UUID
    status: str
    provider_ref: str | None = None
    error: str | None = None


class ChargeTrialsOut(BaseModel):
    processed: int
    results: list[ChargeTrialResultOut]
    deleted: list[UUID]
    reminders: int = 0


class DispatchNotificationsOut(BaseModel):
    processed: int
    sent: int
    retried: int
    failed: int
    skipped: int


class PlanChangeIn(BaseModel):
    company_id: UUID
    new_plan_id: UUID


class PlanChangeOut(BaseModel):
    ok: bool = True
    message: str
    old_plan: str
    new_plan: str
    old_price: float
    new_price: float
    next_billing: datetime | None = None


class CancelSubscriptionIn(BaseModel):
    company_id: UUID
    reason: str | None = Field(default=None, max_length=500)


class CancelSubscriptionOut(BaseModel):
    ok: bool = True
    message: str
    canceled_at: datetime


class PaymentMethodDeleteOut(BaseModel):
    ok: bool = True
    deleted_id: UUID
    new_default_id: UUID | None = None

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class SubscriptionMetricsOut(BaseModel):
    mrr: float
    active_subscriptions: int
    trialing_subscriptions: int
    canceled_last_90_days: int
    churn_rate_30d: float


class AtRiskSubscriptionOut(BaseModel):
    company_id: UUID
    company_name: str
    status: str
    payment_failed_count: int
    payment_retry_after: datetime | None = None
    disabled_until: datetime | None = None


class ExpiringTrialOut(BaseModel):
    company_id: UUID
    company_name: str
    trial_ends_at: datetime


class SubscriptionAlertsOut(BaseModel):
    at_risk_count: int
    at_risk_subscriptions: list[AtRiskSubscriptionOut]
    expiring_trials_count: int
    expiring_trials: list[ExpiringTrialOut]


class SubscriptionEventOut(BaseModel):
    id: UUID
    company_id: UUID
    event_type: str
    old_status: str | None = None
    new_status: str | None = None
    reason: str | None = None
    created_at: datetime


class SubscriptionActivityOut(BaseModel):
    recent_events: list[SubscriptionEventOut]
    upgrades_30d: int
    downgrades_30d: int


class SubscriptionAnalyticsOut(BaseModel):
    metrics: SubscriptionMetricsOut
    alerts: SubscriptionAlertsOut
    activity: SubscriptionActivityOut
    generated_at: datetime

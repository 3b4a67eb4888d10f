from sqlalchemy.orm import Session

from app.models.billing import SubscriptionEvent


def record_subscription_event(
    db: Session,
    company_id,
    event_type: str,
    *,
    old_plan_id=None,
    new_plan_id=None,
    old_status: str | None = None,
    new_status: str | None = None,
    reason: str | None = None,
    data: dict | None = None,
):
    row = SubscriptionEvent(
        company_id=company_id,
        event_type=event_type,
        old_plan_id=old_plan_id,
        new_plan_id=new_plan_id,
        old_status=old_status,
        new_status=new_status,
        reason=reason,
        data=data or {},
    )
    db.add(row)

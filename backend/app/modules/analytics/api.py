from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import require_platform_admin
from app.db.session import get_db
from app.schemas.analytics import SubscriptionAnalyticsOut
from app.services.analytics import subscription_analytics

router = APIRouter()


@router.get("/subscriptions", response_model=SubscriptionAnalyticsOut)
def get_subscription_analytics(current=Depends(require_platform_admin), db: Session = Depends(get_db)):
    return SubscriptionAnalyticsOut(**subscription_analytics(db))

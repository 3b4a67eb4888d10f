from app.models.user import User
from app.models.company import Company, CompanyUser
from app.models.billing import (
    CompanyPaymentMethod,
    NotificationOutbox,
    SignupIntent,
    SignupPaymentMethod,
    Subscription,
    SubscriptionEvent,
    SubscriptionPlan,
    WebhookEvent,
)

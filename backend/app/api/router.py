from fastapi import APIRouter
from app.modules.analytics import api as analytics
from app.modules.auth import api as auth
from app.modules.billing import api as billing
from app.modules.signup import api as signup

router = APIRouter()
router.include_router(auth.router, prefix="/auth", tags=["auth"])
router.include_router(signup.router, prefix="/signup", tags=["signup"])
router.include_router(billing.router, prefix="/billing", tags=["billing"])
router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])

from fastapi import APIRouter
from app.modules.admin import api as admin
from app.modules.billing import api as billing
from app.modules.entitlements import api as entitlements

router = APIRouter()
router.include_router(billing.router, prefix="/billing", tags=["billing"])
router.include_router(entitlements.router, prefix="/entitlements", tags=["entitlements"])
router.include_router(admin.router, prefix="/admin", tags=["admin"])

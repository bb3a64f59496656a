"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.webhooks.ringover import router as ringover_router

router = APIRouter()

router.include_router(admin_router, prefix="/admin", tags=["admin"])
router.include_router(ringover_router, prefix="/webhooks/ringover", tags=["webhooks"])

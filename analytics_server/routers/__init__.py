# API routers for the analytics and monitoring service

from fastapi import APIRouter

from .analytics import router as analytics_router
from .moderation import router as moderation_router
from .monitoring import router as monitoring_router

router = APIRouter()
router.include_router(monitoring_router)
router.include_router(analytics_router)
router.include_router(moderation_router)

"""Admin dashboard endpoints."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException

from studio.api.v1.deps import get_analytics_service
from studio.auth import AdminUser
from studio.models.billing import AdminAnalytics
from studio.services.analytics_service import AnalyticsService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

Analytics = Annotated[AnalyticsService, Depends(get_analytics_service)]


@router.get("/analytics", response_model=AdminAnalytics)
async def admin_analytics(admin: AdminUser, analytics: Analytics) -> AdminAnalytics:
    """Month-to-date revenue, paying subscriptions and visitor conversion."""
    try:
        return await analytics.get_admin_analytics()
    except Exception as e:
        logger.exception("admin_analytics_failed", admin_id=admin.id, error=str(e))
        raise HTTPException(status_code=500, detail="Unable to retrieve analytics.")

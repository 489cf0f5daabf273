"""Month-to-date metrics for the admin dashboard."""

from datetime import UTC, datetime

import structlog

from studio.constants import ANALYTICS_VISITS_TABLE
from studio.models.billing import AdminAnalytics
from studio.services.quota_service import QuotaService
from studio.services.stripe_service import StripeService

logger = structlog.get_logger(__name__)


def start_of_month(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class AnalyticsService:
    """Combines Stripe revenue, subscription counts and site visits.

    Revenue and subscription counts are required; the visits table is
    optional and its failures only blank the visitor metrics.
    """

    def __init__(
        self,
        quota_service: QuotaService,
        stripe_service: StripeService,
        supabase=None,
        visits_table: str = ANALYTICS_VISITS_TABLE,
        now_provider=lambda: datetime.now(UTC),
    ) -> None:
        self.quota_service = quota_service
        self.stripe_service = stripe_service
        self.supabase = supabase
        self.visits_table = visits_table
        self.now_provider = now_provider

    async def _count_visitors(self, since: datetime) -> int | None:
        if self.supabase is None:
            return None
        try:
            response = (
                await self.supabase.table(self.visits_table)
                .select("id", count="exact", head=True)
                .gte("created_at", since.isoformat())
                .execute()
            )
        except Exception as e:
            logger.warning("analytics_visitors_unavailable", table=self.visits_table, error=str(e))
            return None
        return response.count or 0

    async def get_admin_analytics(self) -> AdminAnalytics:
        since = start_of_month(self.now_provider())

        revenue = await self.stripe_service.summarize_revenue(int(since.timestamp()))
        active_subscriptions = await self.quota_service.count_active_subscriptions()
        visitors = await self._count_visitors(since)

        conversion_rate = None
        if visitors:
            conversion_rate = round(active_subscriptions / visitors, 4)

        logger.info(
            "admin_analytics_computed",
            payments_count=revenue.payments_count,
            active_subscriptions=active_subscriptions,
            visitors_count=visitors,
        )
        return AdminAnalytics(
            revenue=revenue,
            payments_count=revenue.payments_count,
            active_subscriptions=active_subscriptions,
            visitors_count=visitors,
            conversion_rate=conversion_rate,
        )

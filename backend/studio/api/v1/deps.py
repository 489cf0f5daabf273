"""Service lookups from app.state shared by the v1 routers.

Each getter raises 503 when the service was not configured at startup.
"""

from fastapi import HTTPException, Request

from studio.services.analytics_service import AnalyticsService
from studio.services.billing_events import BillingEventProcessor
from studio.services.credit_ledger import CreditLedger
from studio.services.generation_service import GenerationService
from studio.services.identity_store import IdentityStore
from studio.services.quota_service import QuotaService
from studio.services.referral_service import ReferralService
from studio.services.stripe_service import StripeService


def _service(request: Request, name: str, detail: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=detail)
    return service


def get_quota_service(request: Request) -> QuotaService:
    return _service(request, "quota_service", "Billing service unavailable")


def get_stripe_service(request: Request) -> StripeService:
    return _service(request, "stripe_service", "Stripe is not configured")


def get_billing_events(request: Request) -> BillingEventProcessor:
    return _service(request, "billing_events", "Stripe is not configured")


def get_identity_store(request: Request) -> IdentityStore:
    return _service(request, "identity_store", "Identity service unavailable")


def get_credit_ledger(request: Request) -> CreditLedger:
    return _service(request, "credit_ledger", "Credit service unavailable")


def get_referral_service(request: Request) -> ReferralService:
    return _service(request, "referral_service", "Referral service unavailable")


def get_generation_service(request: Request) -> GenerationService:
    return _service(request, "generation_service", "Generation service unavailable")


def get_analytics_service(request: Request) -> AnalyticsService:
    return _service(request, "analytics_service", "Analytics service unavailable")

"""
Image Studio Backend - Main FastAPI Application.

Entry point for the Image Studio API: AI image generation gated by
subscription quotas, Stripe billing, and a referral credit programme.

Run with:
    uvicorn studio.main:app --reload
"""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from studio.api.v1.admin import router as admin_router
from studio.api.v1.billing import router as billing_router
from studio.api.v1.credits import router as credits_router
from studio.api.v1.generate import router as generate_router
from studio.api.v1.projects import router as projects_router
from studio.api.v1.referrals import router as referrals_router
from studio.api.v1.subscriptions import router as subscriptions_router
from studio.config import ConfigurationError, Settings, get_settings
from studio.constants import (
    ANALYTICS_VISITS_TABLE,
    API_TITLE,
    API_VERSION,
    REFERRAL_CLAIMS_TABLE,
    REFERRAL_CODES_TABLE,
    SUBSCRIPTIONS_TABLE,
    WEBHOOK_EVENTS_TABLE,
)
from studio.logging_config import setup_logging
from studio.middleware import RequestContextMiddleware
from studio.services.analytics_service import AnalyticsService
from studio.services.billing_events import BillingEventProcessor
from studio.services.credit_ledger import CreditLedger
from studio.services.email_service import EmailNotifier
from studio.services.generation_service import GenerationService
from studio.services.identity_store import InMemoryIdentityStore, SupabaseIdentityStore
from studio.services.openai_client import build_image_client
from studio.services.plans import PlanTable
from studio.services.quota_service import (
    InMemorySubscriptionRepository,
    QuotaService,
    SupabaseSubscriptionRepository,
)
from studio.services.referral_service import (
    InMemoryReferralCodeStore,
    MetadataReferralCodeStore,
    ReferralService,
    SupabaseReferralCodeStore,
    detect_referral_codes_table,
)
from studio.services.stripe_service import StripeService

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# pydantic-settings reads .env into the Settings model but does NOT inject
# values into os.environ, which is where langsmith looks.
if settings.langchain_tracing_v2 and settings.langsmith_api_key:
    os.environ["LANGCHAIN_TRACING_V2"] = "true"
    os.environ["LANGSMITH_API_KEY"] = settings.langsmith_api_key
    os.environ["LANGSMITH_PROJECT"] = settings.langsmith_project

setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


async def _build_referral_store(supabase_client, identity_store, config: Settings):
    """Pick the referral code store once; routes never re-detect it."""
    if supabase_client is None:
        return InMemoryReferralCodeStore()

    use_table = config.referrals.use_code_table
    if use_table is None:
        try:
            use_table = await detect_referral_codes_table(supabase_client, REFERRAL_CODES_TABLE)
        except Exception as e:
            logger.warning("referral_codes_detection_failed", error=str(e))
            use_table = True

    if use_table:
        return SupabaseReferralCodeStore(supabase_client, REFERRAL_CODES_TABLE)
    logger.warning("referral_codes_using_metadata_store")
    return MetadataReferralCodeStore(identity_store)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Using in-memory stores; auth returns 503")

    _app.state.supabase = supabase_client

    if supabase_client is not None:
        repository = SupabaseSubscriptionRepository(
            supabase_client, SUBSCRIPTIONS_TABLE, WEBHOOK_EVENTS_TABLE
        )
        identity_store = SupabaseIdentityStore(supabase_client)
    else:
        repository = InMemorySubscriptionRepository()
        identity_store = InMemoryIdentityStore()

    plans = PlanTable.from_config(settings.billing)
    if not plans.quotas:
        logger.warning("billing_prices_not_configured", detail="Every user gets the free quota")

    quota_service = QuotaService(repository, plans)
    credit_ledger = CreditLedger(identity_store)
    referral_service = ReferralService(
        await _build_referral_store(supabase_client, identity_store, settings),
        identity_store,
        credit_ledger,
        quota_service,
        settings.referrals,
        claims_client=supabase_client,
        claims_table=REFERRAL_CLAIMS_TABLE,
    )

    notifier: EmailNotifier | None = None
    if settings.email.sendgrid_api_key and settings.email.from_email:
        notifier = EmailNotifier(settings.email)
    else:
        logger.warning("email_not_configured", detail="Billing notifications are disabled")

    stripe_service: StripeService | None = None
    billing_events: BillingEventProcessor | None = None
    try:
        stripe_service = StripeService(settings.stripe)
        billing_events = BillingEventProcessor(
            quota_service, stripe_service, identity_store, notifier
        )
        logger.info("stripe_configured")
    except ConfigurationError as e:
        logger.warning("stripe_not_configured", detail=str(e))

    analytics_service: AnalyticsService | None = None
    if stripe_service is not None:
        analytics_service = AnalyticsService(
            quota_service, stripe_service, supabase_client, ANALYTICS_VISITS_TABLE
        )

    generation_service: GenerationService | None = None
    if supabase_client is not None:
        try:
            generation_service = GenerationService(
                supabase_client,
                build_image_client(settings.generation),
                settings.generation,
            )
            logger.info("generation_configured", model=settings.generation.model)
        except ConfigurationError as e:
            logger.warning("generation_not_configured", detail=str(e))

    _app.state.quota_service = quota_service
    _app.state.identity_store = identity_store
    _app.state.credit_ledger = credit_ledger
    _app.state.referral_service = referral_service
    _app.state.stripe_service = stripe_service
    _app.state.billing_events = billing_events
    _app.state.generation_service = generation_service
    _app.state.analytics_service = analytics_service

    logger.info("services_initialized")

    yield

    logger.info("api_shutdown")


app = FastAPI(
    title=API_TITLE,
    description=(
        "AI image studio API: quota-gated image generation, Stripe subscriptions "
        "and a referral credit programme."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(billing_router, prefix="/api/v1")
app.include_router(subscriptions_router, prefix="/api/v1")
app.include_router(generate_router, prefix="/api/v1")
app.include_router(credits_router, prefix="/api/v1")
app.include_router(referrals_router, prefix="/api/v1")
app.include_router(projects_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Quota-gated AI image generation",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}

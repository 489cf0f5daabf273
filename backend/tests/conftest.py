"""
Shared test fixtures for the Image Studio backend test suite.
"""

import pytest
import structlog
from fastapi.testclient import TestClient

from studio.config import BillingConfig, ReferralConfig
from studio.services.credit_ledger import CreditLedger
from studio.services.identity_store import InMemoryIdentityStore
from studio.services.plans import PlanTable
from studio.services.quota_service import InMemorySubscriptionRepository, QuotaService
from studio.services.referral_service import InMemoryReferralCodeStore, ReferralService

BASIC_PRICE = "price_basic"
PRO_PRICE = "price_pro"

SERVICE_ATTRIBUTES = (
    "supabase",
    "quota_service",
    "identity_store",
    "credit_ledger",
    "referral_service",
    "stripe_service",
    "billing_events",
    "generation_service",
    "analytics_service",
)


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set required environment variables for tests so Settings can be instantiated."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-fake-key-for-testing")
    monkeypatch.setenv("ADMIN_EMAILS", "admin@example.com")
    # Disable LangSmith tracing in tests
    monkeypatch.setenv("LANGCHAIN_TRACING_V2", "false")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests(_set_test_env):
    """Configure structlog for tests using a simple, deterministic setup."""
    # Import the app first so its import-time setup_logging() cannot
    # override this configuration after the fact.
    import studio.main  # noqa: F401

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application.

    The lifespan is not entered, so tests install the services they need on
    ``app.state``; anything left unset answers 503.
    """
    # Clear the lru_cache so settings pick up test env vars
    from studio.config import get_settings

    get_settings.cache_clear()

    from studio.main import app

    for name in SERVICE_ATTRIBUTES:
        setattr(app.state, name, None)

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        free_tier_quota=5,
        price_basic=BASIC_PRICE,
        price_pro=PRO_PRICE,
        basic_quota=50,
        pro_quota=200,
    )


@pytest.fixture
def plans(billing_config: BillingConfig) -> PlanTable:
    return PlanTable.from_config(billing_config)


@pytest.fixture
def subscription_repository() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def quota_service(subscription_repository, plans) -> QuotaService:
    return QuotaService(subscription_repository, plans)


@pytest.fixture
def identity_store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore()


@pytest.fixture
def credit_ledger(identity_store) -> CreditLedger:
    return CreditLedger(identity_store)


@pytest.fixture
def referral_code_store() -> InMemoryReferralCodeStore:
    return InMemoryReferralCodeStore()


@pytest.fixture
def referral_service(
    referral_code_store, identity_store, credit_ledger, quota_service
) -> ReferralService:
    return ReferralService(
        referral_code_store,
        identity_store,
        credit_ledger,
        quota_service,
        ReferralConfig(reward_bonus=10, stripe_coupon_id="coupon_ref"),
    )

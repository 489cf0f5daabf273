"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (StripeConfig, BillingConfig, ReferralConfig, ...) are
env-overridable via the double-underscore delimiter, e.g.:
    STRIPE__SECRET_KEY=sk_live_...
    BILLING__FREE_TIER_QUOTA=5
    REFERRALS__REWARD_BONUS=10
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """A required credential or identifier is missing."""


def require(value: str, name: str) -> str:
    """Return ``value`` or raise ConfigurationError naming the missing setting."""
    if not value:
        raise ConfigurationError(f"{name} is not configured")
    return value


class StripeConfig(BaseModel):
    """Stripe credentials and redirect targets."""

    secret_key: str = ""
    webhook_secret: str = ""
    api_version: str = "2024-06-20"
    checkout_success_url: str = "http://localhost:3000/dashboard"
    checkout_cancel_url: str = "http://localhost:3000/pricing"
    portal_return_url: str = "http://localhost:3000/dashboard"
    history_limit: int = 20


class BillingConfig(BaseModel):
    """Plan catalogue: Stripe price ids and the generations each one allows per cycle."""

    free_tier_quota: int = Field(default=5, ge=0)
    price_basic: str = ""
    price_pro: str = ""
    basic_quota: int = Field(default=50, ge=0)
    pro_quota: int = Field(default=200, ge=0)


class ReferralConfig(BaseModel):
    """Referral programme parameters."""

    reward_bonus: int = Field(default=10, gt=0)
    stripe_coupon_id: str = ""
    # None = detect the referral_codes table at startup
    use_code_table: bool | None = None
    max_code_attempts: int = 5


class EmailConfig(BaseModel):
    """Transactional email (SendGrid v3 API)."""

    sendgrid_api_key: str = ""
    from_email: str = ""
    api_url: str = "https://api.sendgrid.com/v3/mail/send"
    timeout_seconds: float = 10.0


class GenerationConfig(BaseModel):
    """Image generation pipeline."""

    model: str = "gpt-image-1"
    input_bucket: str = ""
    output_bucket: str = ""
    output_content_type: str = "image/png"
    download_timeout_seconds: float = 30.0
    request_timeout_seconds: float = 120.0
    max_retries: int = 2
    max_upload_bytes: int = 20 * 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # API Keys
    openai_api_key: str = ""

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # LangSmith / Observability
    langsmith_api_key: str = ""
    langsmith_project: str = "image-studio"
    langchain_tracing_v2: bool = False  # Explicit opt-in

    # Comma-separated list of emails allowed to use admin endpoints
    admin_emails: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    referrals: ReferralConfig = Field(default_factory=ReferralConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)

    @property
    def admin_email_list(self) -> list[str]:
        return [e.strip().lower() for e in self.admin_emails.split(",") if e.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

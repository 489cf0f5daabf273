"""
Business logic constants for the Image Studio backend.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(plan quotas, price ids, reward sizes), see config.py.
"""

API_TITLE = "Image Studio API"
API_VERSION = "1.0.0"

# --- Subscription statuses ---
STATUS_FREE = "free"
STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"

# Statuses for which a stored paid price still grants its plan quota
PAID_STATUSES: frozenset[str] = frozenset({"active", "trialing", "past_due"})

# Terminal statuses: the record falls back to the free tier
TERMINAL_STATUSES: frozenset[str] = frozenset({"canceled", "incomplete_expired"})

# Balance transaction types counted as revenue
REVENUE_TRANSACTION_TYPES: frozenset[str] = frozenset({"charge", "payment"})

# --- Supabase tables ---
SUBSCRIPTIONS_TABLE = "subscriptions"
WEBHOOK_EVENTS_TABLE = "stripe_webhook_events"
REFERRAL_CODES_TABLE = "referral_codes"
REFERRAL_CLAIMS_TABLE = "referral_claims"
PROJECTS_TABLE = "projects"
ANALYTICS_VISITS_TABLE = "analytics_visits"

# --- Postgres / PostgREST error codes ---
UNIQUE_VIOLATION_CODE = "23505"
# Undefined table (Postgres) and schema-cache misses (PostgREST)
MISSING_RELATION_CODES: frozenset[str] = frozenset({"42P01", "PGRST302", "PGRST205"})

# --- User metadata keys (Supabase Auth user_metadata) ---
METADATA_USER_ID_KEY = "supabase_user_id"
CREDIT_BALANCE_KEY = "credit_balance"
LEGACY_REFERRAL_CREDITS_KEY = "referral_credits"
CREDIT_SCHEMA_VERSION_KEY = "credit_schema_version"
CREDIT_SCHEMA_VERSION = 1
REFERRAL_CODE_KEY = "referral_code"
REFERRED_BY_KEY = "referred_by"
REFERRAL_REWARD_CLAIMED_KEY = "referral_reward_claimed"
REFERRAL_COUPON_ID_KEY = "referral_coupon_id"
REFERRAL_COUPON_REDEEMED_KEY = "referral_coupon_redeemed"

# --- Referral codes ---
REFERRAL_CODE_BASE_LENGTH = 6
REFERRAL_CODE_SUFFIX_LENGTH = 4

# --- Admin detection ---
ADMIN_ROLE_KEYS: frozenset[str] = frozenset({"admin", "owner", "superuser"})

# --- Notification categories ---
CATEGORY_PAYMENT_FAILED = "billing-payment-failed"
CATEGORY_SUBSCRIPTION_CANCELED = "billing-subscription-canceled"
CATEGORY_BILLING_SUMMARY = "billing-summary"

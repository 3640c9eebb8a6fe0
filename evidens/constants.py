"""
Business logic constants for the EVIDENS billing core.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(failure threshold, minimum charge, table names), see config.py.
"""

API_TITLE = "EVIDENS Billing API"
API_VERSION = "1.0.0"

# --- Billing cadence ---
VALID_BILLING_INTERVALS: frozenset[str] = frozenset({"day", "week", "month", "year"})
DEFAULT_BILLING_INTERVAL = "month"
DEFAULT_INTERVAL_COUNT = 1

# Portuguese labels used in plan descriptions shown at checkout
INTERVAL_LABELS: dict[str, str] = {
    "day": "dia",
    "week": "semana",
    "month": "mês",
    "year": "ano",
}

# --- Provider status -> EVIDENS status ---
SUBSCRIPTION_STATUS_MAPPING: dict[str, str] = {
    "active": "active",
    "trialing": "trial",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "suspended",
    "incomplete": "incomplete",
    "incomplete_expired": "expired",
}

# --- Plan amount (minor units, inclusive upper bound) -> tier ---
# Anything above the last bound is enterprise.
TIER_AMOUNT_THRESHOLDS: tuple[tuple[int, str], ...] = (
    (999, "free"),      # up to R$ 9,99
    (2999, "basic"),    # R$ 10 - R$ 29,99
    (9999, "premium"),  # R$ 30 - R$ 99,99
)
TOP_TIER = "enterprise"
# Tier assigned when a created event carries no plan at all
MISSING_PLAN_TIER = "basic"
# Plan metadata key that overrides the amount-based tier
PLAN_TIER_METADATA_KEY = "evidens_tier"

# --- Health score deltas per event ---
HEALTH_SCORE_MAX = 100
HEALTH_SCORE_CHARGE_FAILED = -15
HEALTH_SCORE_SUSPENDED = -25
HEALTH_SCORE_CHARGED = 5
HEALTH_SCORE_REACTIVATED = 20

# --- Lifetime value multipliers ---
LTV_LOYALTY_STEP = 0.1
LTV_LOYALTY_CAP = 2.0
LTV_CHURN_MULTIPLIERS: dict[str, float] = {
    "low": 1.0,
    "medium": 0.8,
    "high": 0.6,
    "critical": 0.3,
}
LTV_UNKNOWN_RISK_MULTIPLIER = 0.5

# --- Webhook payment events that extend access (one-time flow) ---
PAYMENT_SUCCESS_EVENTS: frozenset[str] = frozenset({"order.paid", "charge.paid"})
PAYMENT_FAILED_EVENTS: frozenset[str] = frozenset(
    {"order.payment_failed", "charge.failed", "charge.payment_failed"}
)

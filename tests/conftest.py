"""
Shared test fixtures for the EVIDENS billing test suite.
"""

import pytest
import structlog
from fastapi.testclient import TestClient

from evidens.models.billing import BillingPlan, PromotionalConfig


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables for tests so Settings never reaches real services."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "")
    monkeypatch.setenv("PAGARME__SECRET_KEY", "sk_test_fake_key")
    monkeypatch.setenv("PAGARME__WEBHOOK_USER", "evidens")
    monkeypatch.setenv("PAGARME__WEBHOOK_PASSWORD", "webhook-pass")


def _configure_test_structlog() -> None:
    """Simple, deterministic structlog setup with logger caching disabled."""
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


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    _configure_test_structlog()


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from evidens.config import get_settings

    get_settings.cache_clear()

    from evidens.main import app

    # Importing the app runs setup_logging, which caches loggers on first use;
    # restore the test setup so structlog.testing.capture_logs keeps working.
    _configure_test_structlog()

    return TestClient(app)


@pytest.fixture
def monthly_plan() -> BillingPlan:
    """Monthly subscription plan without promotion."""
    return BillingPlan(
        id="plan-monthly",
        name="EVIDENS Mensal",
        type="subscription",
        amount=2990,
        billing_interval="month",
        days=30,
    )


@pytest.fixture
def promo_plan() -> BillingPlan:
    """Yearly subscription plan with an active finalPrice promotion."""
    return BillingPlan(
        id="plan-yearly",
        name="EVIDENS Anual",
        type="subscription",
        amount=29900,
        billing_interval="year",
        days=365,
        promotional_config=PromotionalConfig(
            isActive=True,
            finalPrice=19900,
            customName="Black Friday",
            expiresAt="2026-12-31T23:59:59+00:00",
        ),
    )


@pytest.fixture
def one_time_plan() -> BillingPlan:
    """Single-payment plan granting 90 days."""
    return BillingPlan(
        id="plan-once",
        name="Acesso Trimestral",
        type="one-time",
        amount=8990,
        days=90,
    )

"""Integration tests for the billing endpoints and the Pagar.me webhook."""

import base64
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from structlog.testing import capture_logs

from evidens.auth import AuthenticatedUser, get_current_user
from evidens.config import BillingConfig, PagarmeConfig
from evidens.models.billing import PractitionerAccount
from evidens.services.billing_service import BillingService, InMemoryBillingRepository
from evidens.services.pagarme_service import PagarmeService

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)
WEBHOOK_AUTH = "Basic " + base64.b64encode(b"evidens:webhook-pass").decode()


async def _fake_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", email="ana@evidens.com.br")


class ProviderStub:
    """Records requests sent to the Pagar.me API and replies with a canned response."""

    def __init__(self, status_code: int = 200, body: dict | None = None):
        self.status_code = status_code
        self.body = body if body is not None else {
            "id": "sub_new",
            "status": "active",
            "next_billing_at": "2026-11-17T00:00:00Z",
        }
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


@pytest.fixture
def provider() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def repo(monthly_plan, promo_plan, one_time_plan) -> InMemoryBillingRepository:
    repository = InMemoryBillingRepository()
    for plan in (monthly_plan, promo_plan, one_time_plan):
        repository.plans[plan.id] = plan
    return repository


@pytest.fixture
def billing_client(client: TestClient, repo, provider):
    """TestClient with in-memory billing state, a stubbed provider and a signed-in user."""
    config = PagarmeConfig(
        secret_key="sk_test_fake_key",
        webhook_user="evidens",
        webhook_password="webhook-pass",
    )
    http_client = httpx.AsyncClient(base_url=config.api_url, transport=httpx.MockTransport(provider))
    client.app.state.billing_service = BillingService(repo, BillingConfig(), now_provider=lambda: NOW)
    client.app.state.pagarme_service = PagarmeService(config, client=http_client)
    client.app.dependency_overrides[get_current_user] = _fake_user
    yield client
    client.app.dependency_overrides.clear()
    client.app.state.billing_service = None
    client.app.state.pagarme_service = None


def _subscription_request(**overrides) -> dict:
    body = {
        "plan_id": "plan-monthly",
        "payment_method": "pix",
        "customer": {
            "name": "Dra. Ana Souza",
            "email": "ana@evidens.com.br",
            "document": "123.456.789-09",
            "phone": "(11) 98765-4321",
        },
    }
    body.update(overrides)
    return body


def _post_event(client: TestClient, event: dict, authorization: str | None = WEBHOOK_AUTH):
    headers = {"Authorization": authorization} if authorization else {}
    return client.post("/api/v1/billing/webhook", json=event, headers=headers)


class TestServiceAvailability:
    def test_routing_without_billing_service_returns_503(self, client: TestClient):
        client.app.state.billing_service = None

        response = client.get("/api/v1/billing/routing")

        assert response.status_code == 503

    def test_webhook_without_pagarme_returns_503(self, client: TestClient):
        client.app.state.billing_service = BillingService(InMemoryBillingRepository(), BillingConfig())
        client.app.state.pagarme_service = None

        response = _post_event(client, {"id": "evt_1", "type": "order.paid"})

        assert response.status_code == 503
        client.app.state.billing_service = None


class TestPlanEndpoints:
    def test_plan_pricing(self, billing_client: TestClient):
        response = billing_client.get("/api/v1/billing/plans/plan-yearly/pricing")

        assert response.status_code == 200
        data = response.json()
        assert data["flow_type"] == "subscription"
        assert data["final_amount"] == 19900
        assert data["has_promotion"] is True
        assert data["interval"] == "year"

    def test_unknown_plan_returns_404(self, billing_client: TestClient):
        response = billing_client.get("/api/v1/billing/plans/nope/pricing")

        assert response.status_code == 404

    def test_routing_report(self, billing_client: TestClient):
        response = billing_client.get("/api/v1/billing/routing")

        assert response.status_code == 200
        data = response.json()
        assert data["total_plans"] == 3
        assert data["flow_counts"] == {"subscription": 2, "one-time": 1}


class TestAccessEndpoint:
    def test_returns_recomputed_window(self, billing_client: TestClient, repo):
        repo.accounts["user-1"] = PractitionerAccount(
            id="user-1",
            subscription_tier="premium",
            subscription_ends_at=NOW + timedelta(days=10),
        )

        response = billing_client.get("/api/v1/billing/access")

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == "user-1"
        assert data["is_premium"] is True
        assert data["remaining_days"] == 10


class TestCreateSubscription:
    def test_active_subscription_extends_access(self, billing_client: TestClient, repo, provider):
        response = billing_client.post("/api/v1/billing/subscriptions", json=_subscription_request())

        assert response.status_code == 200
        data = response.json()
        assert data["subscription_id"] == "sub_new"
        assert data["status"] == "active"
        assert data["access"]["days_added"] == 30
        assert repo.accounts["user-1"].subscription_ends_at == NOW + timedelta(days=30)
        assert len(provider.requests) == 1

    def test_pending_subscription_does_not_extend_access(self, billing_client: TestClient, repo, provider):
        provider.body = {"id": "sub_new", "status": "pending"}

        response = billing_client.post("/api/v1/billing/subscriptions", json=_subscription_request())

        assert response.status_code == 200
        assert response.json()["access"] is None
        assert "user-1" not in repo.accounts

    def test_one_time_plan_returns_400(self, billing_client: TestClient, provider):
        response = billing_client.post(
            "/api/v1/billing/subscriptions", json=_subscription_request(plan_id="plan-once")
        )

        assert response.status_code == 400
        assert provider.requests == []

    def test_provider_rejection_returns_400(self, billing_client: TestClient, provider):
        provider.status_code = 422
        provider.body = {"errors": {"customer.email": ["The email is invalid"]}}

        response = billing_client.post("/api/v1/billing/subscriptions", json=_subscription_request())

        assert response.status_code == 400
        assert "Email inválido" in response.json()["detail"]

    def test_unknown_plan_returns_404(self, billing_client: TestClient):
        response = billing_client.post(
            "/api/v1/billing/subscriptions", json=_subscription_request(plan_id="nope")
        )

        assert response.status_code == 404


class TestWebhookAuth:
    def test_missing_authorization_returns_401(self, billing_client: TestClient):
        response = _post_event(billing_client, {"id": "evt_1", "type": "order.paid"}, authorization=None)

        assert response.status_code == 401

    def test_wrong_credentials_return_401(self, billing_client: TestClient):
        bad = "Basic " + base64.b64encode(b"evidens:nope").decode()

        response = _post_event(billing_client, {"id": "evt_1", "type": "order.paid"}, authorization=bad)

        assert response.status_code == 401

    def test_event_without_id_returns_400(self, billing_client: TestClient):
        response = _post_event(billing_client, {"type": "order.paid"})

        assert response.status_code == 400


class TestWebhookSubscriptionEvents:
    def test_created_event_updates_account(self, billing_client: TestClient, repo):
        event = {
            "id": "evt_created",
            "type": "subscription.created",
            "data": {
                "id": "sub_1",
                "plan": {"id": "plan_pgm", "name": "EVIDENS Mensal", "amount": 2990},
                "metadata": {"evidens_customer_id": "user-1"},
            },
        }

        response = _post_event(billing_client, event)

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] is True
        assert data["action"] == "subscription.created"
        assert "should_send_welcome_email" in data["flags"]
        assert repo.accounts["user-1"].subscription_status == "active"
        assert repo.accounts["user-1"].subscription_tier == "basic"

    def test_charge_failed_reads_user_from_nested_subscription(self, billing_client: TestClient, repo):
        event = {
            "id": "evt_failed",
            "type": "subscription.charge_failed",
            "data": {
                "id": "ch_1",
                "subscription": {"id": "sub_1", "metadata": {"evidens_customer_id": "user-1"}},
            },
        }

        response = _post_event(billing_client, event)

        assert response.json()["processed"] is True
        assert repo.accounts["user-1"].subscription_status == "past_due"

    def test_duplicate_delivery_is_ignored(self, billing_client: TestClient, repo):
        event = {
            "id": "evt_dup",
            "type": "subscription.charge_failed",
            "data": {"id": "ch_1", "metadata": {"evidens_customer_id": "user-1"}},
        }

        first = _post_event(billing_client, event)
        second = _post_event(billing_client, event)

        assert first.json()["processed"] is True
        assert second.json() == {
            "received": True,
            "processed": False,
            "action": "duplicate",
            "error": None,
            "flags": [],
        }
        assert repo.accounts["user-1"].payment_metadata["failure_count"] == 1

    def test_unmapped_subscription_event_is_not_processed(self, billing_client: TestClient):
        event = {
            "id": "evt_updated",
            "type": "subscription.updated",
            "data": {"id": "sub_1", "metadata": {"evidens_customer_id": "user-1"}},
        }

        response = _post_event(billing_client, event)

        assert response.json()["processed"] is False
        assert response.json()["action"] == "subscription.updated"

    def test_subscription_event_without_user_reports_error(self, billing_client: TestClient):
        response = _post_event(
            billing_client, {"id": "evt_x", "type": "subscription.canceled", "data": {"id": "sub_1"}}
        )

        assert response.status_code == 200
        assert response.json()["error"] == "user_not_found"

    def test_malformed_plan_is_applied_with_fallbacks(self, billing_client: TestClient, repo):
        event = {
            "id": "evt_bad_plan",
            "type": "subscription.created",
            "data": {"id": "sub_1", "plan": "plan_abc", "metadata": {"evidens_customer_id": "user-1"}},
        }

        response = _post_event(billing_client, event)

        assert response.status_code == 200
        assert response.json()["processed"] is True
        assert repo.accounts["user-1"].subscription_tier == "basic"
        assert repo.accounts["user-1"].pagarme_subscription_id == "sub_1"

    def test_apply_failure_returns_invalid_payload(self, billing_client: TestClient, monkeypatch):
        def _reject(*args, **kwargs):
            raise ValueError("amount: Input should be a valid integer")

        processor = billing_client.app.state.billing_service.processor
        monkeypatch.setattr(processor, "process_subscription_event", _reject)
        event = {
            "id": "evt_rejected",
            "type": "subscription.charged",
            "data": {"id": "ch_1", "metadata": {"evidens_customer_id": "user-1"}},
        }

        with capture_logs() as logs:
            response = _post_event(billing_client, event)

        assert response.status_code == 200
        assert response.json()["processed"] is False
        assert response.json()["error"] == "invalid_payload"
        assert any(log["event"] == "pagarme_webhook_payload_invalid" for log in logs)

    def test_string_subscription_does_not_break_user_lookup(self, billing_client: TestClient, repo):
        event = {
            "id": "evt_str_sub",
            "type": "subscription.charged",
            "data": {"id": "ch_1", "subscription": "sub_1", "metadata": {"evidens_customer_id": "user-1"}},
        }

        response = _post_event(billing_client, event)

        assert response.status_code == 200
        assert response.json()["processed"] is True
        assert repo.accounts["user-1"].payment_metadata["billing_cycle_count"] == 1

    def test_string_subscription_without_user_reports_error(self, billing_client: TestClient):
        event = {"id": "evt_str_sub_2", "type": "subscription.canceled", "data": {"subscription": "sub_1"}}

        response = _post_event(billing_client, event)

        assert response.status_code == 200
        assert response.json()["error"] == "user_not_found"


class TestWebhookPaymentEvents:
    def test_order_paid_extends_access_by_plan_days(self, billing_client: TestClient, repo):
        repo.accounts["user-1"] = PractitionerAccount(id="user-1", email="ana@evidens.com.br")
        event = {
            "id": "evt_paid",
            "type": "order.paid",
            "data": {
                "id": "or_1",
                "customer": {"email": "ana@evidens.com.br"},
                "metadata": {"plan_id": "plan-once"},
            },
        }

        response = _post_event(billing_client, event)

        assert response.json()["action"] == "access_extended"
        account = repo.accounts["user-1"]
        assert account.subscription_ends_at == NOW + timedelta(days=90)
        assert account.subscription_tier == "premium"
        assert account.payment_metadata["payment_id"] == "or_1"

    def test_duration_days_metadata_wins(self, billing_client: TestClient, repo):
        repo.accounts["user-1"] = PractitionerAccount(id="user-1", email="ana@evidens.com.br")
        event = {
            "id": "evt_paid_2",
            "type": "charge.paid",
            "data": {
                "id": "ch_2",
                "customer": {"email": "ana@evidens.com.br"},
                "metadata": {"duration_days": "7", "plan_id": "plan-once"},
            },
        }

        _post_event(billing_client, event)

        assert repo.accounts["user-1"].subscription_ends_at == NOW + timedelta(days=7)

    def test_unknown_customer_reports_error(self, billing_client: TestClient):
        event = {"id": "evt_paid_3", "type": "order.paid", "data": {"customer": {"email": "x@y.com"}}}

        response = _post_event(billing_client, event)

        assert response.json()["processed"] is False
        assert response.json()["error"] == "user_not_found"

    def test_string_customer_reports_error(self, billing_client: TestClient):
        event = {"id": "evt_paid_4", "type": "order.paid", "data": {"customer": "cus_1"}}

        response = _post_event(billing_client, event)

        assert response.status_code == 200
        assert response.json()["error"] == "user_not_found"

    def test_string_metadata_uses_default_days(self, billing_client: TestClient, repo):
        repo.accounts["user-1"] = PractitionerAccount(id="user-1", email="ana@evidens.com.br")
        event = {
            "id": "evt_paid_5",
            "type": "order.paid",
            "data": {"id": "or_5", "customer": {"email": "ana@evidens.com.br"}, "metadata": "plan-once"},
        }

        response = _post_event(billing_client, event)

        assert response.status_code == 200
        assert response.json()["action"] == "access_extended"
        assert repo.accounts["user-1"].subscription_ends_at == NOW + timedelta(days=30)

    def test_payment_failure_is_logged_only(self, billing_client: TestClient, repo):
        response = _post_event(billing_client, {"id": "evt_f", "type": "charge.failed", "data": {}})

        assert response.json()["action"] == "payment_failed_logged"
        assert repo.accounts == {}

    def test_unhandled_event_type(self, billing_client: TestClient):
        response = _post_event(billing_client, {"id": "evt_u", "type": "invoice.created", "data": {}})

        assert response.json()["processed"] is False
        assert response.json()["error"] == "unhandled_event_type"

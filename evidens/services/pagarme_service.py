"""Pagar.me API wrapper."""

import re
from datetime import datetime
from typing import Any

import httpx
import structlog

from evidens.auth import WebhookAuthResult, authenticate_webhook
from evidens.config import BillingConfig, PagarmeConfig
from evidens.models.billing import (
    BillingAddress,
    BillingPlan,
    CardData,
    CustomerInfo,
    FlowType,
)
from evidens.services.payment_router import resolve_plan_pricing_and_flow

logger = structlog.get_logger(__name__)

PAYMENT_METHODS = {"credit_card", "pix"}

# Substrings of provider validation errors -> message shown to the customer
_PROVIDER_ERROR_MESSAGES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("document", "not a valid number"), "CPF/CNPJ inválido. Use apenas números."),
    (("card", "invalid"), "Dados do cartão inválidos. Verifique número, validade e CVV."),
    (("email", "invalid"), "Email inválido. Verifique o formato do email."),
    (("phone", "invalid"), "Telefone inválido. Use apenas números."),
    (("zip_code",), "Dados do endereço inválidos. Verifique CEP, cidade e estado."),
    (("address",), "Dados do endereço inválidos. Verifique CEP, cidade e estado."),
)


class PaymentRoutingError(ValueError):
    """A plan cannot be charged through the requested flow."""


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value)


def provider_error_message(error_data: dict[str, Any]) -> str:
    """Translate a Pagar.me error body into a customer-facing message."""
    errors = error_data.get("errors")
    if isinstance(errors, dict) and errors:
        first = next(iter(errors.values()))
        if isinstance(first, list) and first:
            original = str(first[0])
            for needles, message in _PROVIDER_ERROR_MESSAGES:
                if all(needle in original for needle in needles):
                    return message
            return original
    if error_data.get("message"):
        return str(error_data["message"])
    return "Falha ao criar assinatura"


class PagarmeService:
    """Encapsulates Pagar.me calls used by the billing routes."""

    def __init__(
        self,
        config: PagarmeConfig,
        billing_config: BillingConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not config.secret_key:
            raise ValueError("Pagar.me secret key is required")

        self.config = config
        self.billing_config = billing_config or BillingConfig()
        self._client = client or httpx.AsyncClient(
            base_url=config.api_url,
            auth=(config.secret_key, ""),
            timeout=config.request_timeout_seconds,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def authenticate_webhook(self, authorization: str | None) -> WebhookAuthResult:
        return authenticate_webhook(authorization, self.config)

    def build_subscription_payload(
        self,
        plan: BillingPlan,
        customer: CustomerInfo,
        *,
        user_id: str,
        payment_method: str,
        card: CardData | None = None,
        billing_address: BillingAddress | None = None,
        installments: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Build a standalone subscription body with inline unit pricing.

        The promotional price in force at `now` becomes the recurring price.

        Raises:
            PaymentRoutingError: If the plan does not route as a subscription.
            ValueError: If credit card data is incomplete or the method is unknown.
        """
        pricing = resolve_plan_pricing_and_flow(plan, now=now, config=self.billing_config)
        if pricing.flow_type != FlowType.SUBSCRIPTION:
            raise PaymentRoutingError(
                f"Plan '{plan.id}' routes as {pricing.flow_type.value}, not subscription"
            )
        if payment_method not in PAYMENT_METHODS:
            raise ValueError(f"Unsupported payment method '{payment_method}'")

        payload: dict[str, Any] = {
            "description": plan.description or f"Assinatura {plan.name}",
            "quantity": 1,
            "pricing_scheme": {"scheme_type": "unit", "price": pricing.final_amount},
            "interval": pricing.interval,
            "interval_count": plan.billing_interval_count or pricing.interval_count,
            "billing_type": "prepaid",
            "payment_method": payment_method,
            "customer": {
                "name": customer.name,
                "email": customer.email,
                "document": _digits(customer.document),
                "phone": _digits(customer.phone),
                "type": "individual",
            },
            "metadata": {
                "evidens_plan_id": plan.id,
                "evidens_customer_id": user_id,
                "evidens_plan_name": plan.name,
                "flow_type": "standalone_subscription",
                "has_promotion": str(pricing.has_promotion).lower(),
            },
        }

        if payment_method == "credit_card":
            if card is None or billing_address is None:
                raise ValueError("Credit card payments require card data and billing address")
            payload["card"] = {
                "number": card.number,
                "holder_name": card.holder_name,
                "exp_month": card.expiration_month,
                "exp_year": card.expiration_year,
                "cvv": card.cvv,
                "billing_address": billing_address.model_dump(),
            }
            if installments and installments > 1:
                payload["installments"] = installments

        return payload

    async def create_subscription(
        self,
        plan: BillingPlan,
        customer: CustomerInfo,
        *,
        user_id: str,
        payment_method: str,
        card: CardData | None = None,
        billing_address: BillingAddress | None = None,
        installments: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Create a subscription and return the provider's subscription object.

        Raises:
            PaymentRoutingError: If the plan does not route as a subscription.
            ValueError: On invalid input or when the provider rejects the request.
        """
        payload = self.build_subscription_payload(
            plan,
            customer,
            user_id=user_id,
            payment_method=payment_method,
            card=card,
            billing_address=billing_address,
            installments=installments,
            now=now,
        )
        logger.info(
            "pagarme_subscription_requested",
            plan_id=plan.id,
            user_id=user_id,
            price=payload["pricing_scheme"]["price"],
            interval=payload["interval"],
            payment_method=payment_method,
        )

        response = await self._client.post("/subscriptions", json=payload)
        if response.is_error:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            message = provider_error_message(error_data)
            logger.warning(
                "pagarme_subscription_rejected",
                status_code=response.status_code,
                message=message,
            )
            raise ValueError(f"Subscription creation failed: {message}")

        subscription = response.json()
        logger.info(
            "pagarme_subscription_created",
            subscription_id=subscription.get("id"),
            status=subscription.get("status"),
        )
        return subscription

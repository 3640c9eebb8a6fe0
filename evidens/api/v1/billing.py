"""Billing API endpoints."""

from typing import Any, Literal

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, Field

from evidens.auth import CurrentUser
from evidens.constants import PAYMENT_FAILED_EVENTS, PAYMENT_SUCCESS_EVENTS
from evidens.models.billing import (
    AccessStatus,
    AccessTimeResult,
    BillingAddress,
    CardData,
    CustomerInfo,
    ResolvedPricing,
    RoutingAnalysis,
)
from evidens.services.billing_service import BillingService
from evidens.services.pagarme_service import PagarmeService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class CreateSubscriptionRequest(BaseModel):
    """Subscription checkout request."""

    plan_id: str
    payment_method: Literal["credit_card", "pix"]
    customer: CustomerInfo
    card: CardData | None = None
    billing_address: BillingAddress | None = None
    installments: int | None = Field(default=None, ge=1, le=12)


class CreateSubscriptionResponse(BaseModel):
    """Subscription checkout response."""

    subscription_id: str
    status: str
    plan_name: str
    next_billing_at: str | None = None
    access: AccessTimeResult | None = None


class WebhookResponse(BaseModel):
    """Pagar.me webhook processing response."""

    received: bool
    processed: bool
    action: str | None = None
    error: str | None = None
    flags: list[str] = Field(default_factory=list)


def _get_billing_service(request: Request) -> BillingService:
    service = getattr(request.app.state, "billing_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Serviço de pagamentos indisponível")
    return service


def _get_pagarme_service(request: Request) -> PagarmeService:
    service = getattr(request.app.state, "pagarme_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Pagar.me não configurado")
    return service


def _subscription_user_id(data: dict[str, Any]) -> str | None:
    """EVIDENS user ID stamped into subscription metadata at checkout."""
    subscription = data.get("subscription")
    candidates = [data.get("metadata")]
    if isinstance(subscription, dict):
        candidates.append(subscription.get("metadata"))
    for metadata in candidates:
        if isinstance(metadata, dict) and metadata.get("evidens_customer_id"):
            return str(metadata["evidens_customer_id"])
    return None


async def _plan_days(service: BillingService, data: dict[str, Any]) -> int | None:
    metadata = data.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    try:
        if metadata.get("duration_days"):
            return int(metadata["duration_days"])
    except (TypeError, ValueError):
        logger.warning("webhook_duration_days_invalid", duration_days=metadata.get("duration_days"))
    plan_id = metadata.get("plan_id") or metadata.get("evidens_plan_id")
    if plan_id:
        plan = await service.repository.get_plan(str(plan_id))
        if plan is not None:
            return plan.days
    return None


@router.get("/plans/{plan_id}/pricing", response_model=ResolvedPricing)
async def plan_pricing(plan_id: str, request: Request) -> ResolvedPricing:
    """Resolve flow type, promotional price and cadence for a plan."""
    service = _get_billing_service(request)
    pricing = await service.resolve_plan(plan_id)
    if pricing is None:
        raise HTTPException(status_code=404, detail="Plano não encontrado")
    return pricing


@router.get("/routing", response_model=RoutingAnalysis)
async def routing_report(request: Request) -> RoutingAnalysis:
    """Aggregate routing view over the active plan catalog."""
    service = _get_billing_service(request)
    return await service.routing_report()


@router.get("/access", response_model=AccessStatus)
async def access_status(request: Request, user: CurrentUser) -> AccessStatus:
    """Return the recomputed access window for the authenticated user."""
    service = _get_billing_service(request)
    return await service.get_access_status(user.id)


@router.post("/subscriptions", response_model=CreateSubscriptionResponse)
async def create_subscription(
    body: CreateSubscriptionRequest,
    request: Request,
    user: CurrentUser,
) -> CreateSubscriptionResponse:
    """Create a Pagar.me subscription and extend access when it starts active."""
    billing_service = _get_billing_service(request)
    pagarme_service = _get_pagarme_service(request)

    plan = await billing_service.repository.get_plan(body.plan_id)
    if plan is None or not plan.is_active:
        raise HTTPException(status_code=404, detail="Plano não encontrado")

    try:
        subscription = await pagarme_service.create_subscription(
            plan,
            body.customer,
            user_id=user.id,
            payment_method=body.payment_method,
            card=body.card,
            billing_address=body.billing_address,
            installments=body.installments,
            now=billing_service.now_provider(),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    status = str(subscription.get("status", ""))
    subscription_id = str(subscription.get("id", ""))
    access = None
    if status == "active":
        access = await billing_service.apply_payment_success(
            user.id, plan.days, payment_id=subscription_id
        )

    return CreateSubscriptionResponse(
        subscription_id=subscription_id,
        status=status,
        plan_name=plan.name,
        next_billing_at=subscription.get("next_billing_at"),
        access=access,
    )


@router.post("/webhook", response_model=WebhookResponse)
async def pagarme_webhook(
    request: Request,
    authorization: str | None = Header(default=None),
) -> WebhookResponse:
    """Process Pagar.me webhooks.

    Business-level failures answer 200 with processed=false so the provider
    does not retry them.
    """
    billing_service = _get_billing_service(request)
    pagarme_service = _get_pagarme_service(request)

    auth = pagarme_service.authenticate_webhook(authorization)
    if not auth.success:
        logger.warning("pagarme_webhook_unauthorized", method=auth.method, details=auth.details)
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        event = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Payload inválido")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Payload inválido")

    event_id = str(event.get("id") or "")
    if not event_id:
        raise HTTPException(status_code=400, detail="Evento sem ID")

    is_new = await billing_service.process_webhook_event_id(event_id)
    if not is_new:
        return WebhookResponse(received=True, processed=False, action="duplicate")

    event_type = str(event.get("type", ""))
    data = event.get("data") or {}
    if not isinstance(data, dict):
        data = {}

    if event_type.startswith("subscription."):
        user_id = _subscription_user_id(data)
        if not user_id:
            logger.warning("pagarme_webhook_user_missing", event_id=event_id, event_type=event_type)
            return WebhookResponse(received=True, processed=False, error="user_not_found")
        try:
            update = await billing_service.apply_subscription_event(event_type, data, user_id)
        except ValueError as e:
            logger.warning(
                "pagarme_webhook_payload_invalid",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            return WebhookResponse(received=True, processed=False, error="invalid_payload")
        result = WebhookResponse(
            received=True,
            processed=not update.is_noop,
            action=event_type,
            flags=update.business_logic.active() if update.business_logic else [],
        )
    elif event_type in PAYMENT_SUCCESS_EVENTS:
        customer = data.get("customer")
        email = customer.get("email") if isinstance(customer, dict) else None
        account = await billing_service.repository.get_account_by_email(email) if email else None
        if account is None:
            logger.warning("pagarme_webhook_account_not_found", event_id=event_id)
            return WebhookResponse(received=True, processed=False, error="user_not_found")
        await billing_service.apply_payment_success(
            account.id,
            await _plan_days(billing_service, data),
            payment_id=str(data.get("id") or event_id),
        )
        result = WebhookResponse(received=True, processed=True, action="access_extended")
    elif event_type in PAYMENT_FAILED_EVENTS:
        result = WebhookResponse(received=True, processed=True, action="payment_failed_logged")
    else:
        result = WebhookResponse(received=True, processed=False, error="unhandled_event_type")

    logger.info(
        "pagarme_webhook_processed",
        event_id=event_id,
        event_type=event_type,
        processed=result.processed,
        action=result.action,
    )
    return result

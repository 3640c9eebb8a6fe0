"""
Payment flow resolution for billing plans.

Decides whether a plan is charged as a recurring subscription or a one-time
payment, applies promotional pricing with real-time expiration and
normalizes the billing cadence. Every function here is total: malformed
plans degrade to the safe defaults (one-time flow, monthly interval, no
promotion) and the fallback is recorded on a `Diagnostics` collector.

Usage:
    pricing = resolve_plan_pricing_and_flow(plan, now=datetime.now(UTC))
    pricing.flow_type, pricing.final_amount, pricing.warnings
"""

import math
from collections import defaultdict
from datetime import datetime
from typing import Iterable

import structlog

from evidens.config import BillingConfig
from evidens.constants import (
    DEFAULT_BILLING_INTERVAL,
    DEFAULT_INTERVAL_COUNT,
    INTERVAL_LABELS,
    VALID_BILLING_INTERVALS,
)
from evidens.models.billing import (
    BillingPlan,
    FlowType,
    IntervalDescriptor,
    PromotionalPricing,
    ResolvedPricing,
    RoutingAnalysis,
)
from evidens.services.diagnostics import Diagnostics
from evidens.services.timeutils import parse_timestamp, utcnow

logger = structlog.get_logger(__name__)


def analyze_payment_flow(
    plan: BillingPlan, diagnostics: Diagnostics | None = None
) -> FlowType:
    """
    Decide how a plan is charged.

    A plan routes as a subscription only when it is declared as one and has a
    billing interval. Conflicting signals fall back to one-time.
    """
    diagnostics = diagnostics or Diagnostics(logger)
    has_interval = bool(plan.billing_interval)

    if plan.type == FlowType.SUBSCRIPTION.value and has_interval:
        return FlowType.SUBSCRIPTION
    if plan.type == FlowType.ONE_TIME.value:
        return FlowType.ONE_TIME
    if not has_interval:
        diagnostics.warn(
            "subscription_plan_missing_interval",
            plan_id=plan.id,
            declared_type=plan.type,
        )
        return FlowType.ONE_TIME
    return FlowType.SUBSCRIPTION


def map_billing_interval(
    interval: str | None, diagnostics: Diagnostics | None = None
) -> IntervalDescriptor:
    """Map a stored billing interval to the provider's cadence descriptor."""
    if interval in VALID_BILLING_INTERVALS:
        return IntervalDescriptor(interval=interval, interval_count=DEFAULT_INTERVAL_COUNT)

    (diagnostics or Diagnostics(logger)).warn(
        "unknown_billing_interval",
        interval=interval,
        fallback=DEFAULT_BILLING_INTERVAL,
    )
    return IntervalDescriptor(
        interval=DEFAULT_BILLING_INTERVAL, interval_count=DEFAULT_INTERVAL_COUNT
    )


def _percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    # Half-up rounding, matching the prices shown on the checkout page.
    return math.floor(part / whole * 100 + 0.5)


def resolve_promotional_pricing(
    plan: BillingPlan,
    now: datetime | None = None,
    diagnostics: Diagnostics | None = None,
    config: BillingConfig | None = None,
) -> PromotionalPricing:
    """
    Evaluate the plan's promotion at `now`.

    Order of precedence: inactive or expired promotions are ignored; an
    explicit `finalPrice` wins; otherwise the legacy absolute
    `promotionValue` discount is applied, floored at the minimum chargeable
    amount.
    """
    diagnostics = diagnostics or Diagnostics(logger)
    config = config or BillingConfig()
    now = parse_timestamp(now) or utcnow()
    original = plan.amount
    promo = plan.promotional_config

    if promo is None or not promo.is_active:
        return PromotionalPricing(final_amount=original)

    try:
        expires_at = parse_timestamp(promo.expires_at)
    except ValueError:
        diagnostics.warn(
            "promotion_expiry_unparseable",
            plan_id=plan.id,
            expires_at=promo.expires_at,
        )
        expires_at = None

    if expires_at is not None and expires_at < now:
        diagnostics.warn(
            "promotion_expired",
            plan_id=plan.id,
            expires_at=expires_at.isoformat(),
        )
        return PromotionalPricing(final_amount=original, promotion_expired=True)

    if promo.final_price is not None and promo.final_price > 0:
        if promo.final_price > original:
            diagnostics.warn(
                "promotion_price_above_original",
                plan_id=plan.id,
                final_price=promo.final_price,
                original_amount=original,
            )
            return PromotionalPricing(final_amount=original)
        discount = original - promo.final_price
        return PromotionalPricing(
            final_amount=promo.final_price,
            has_promotion=True,
            promotional_name=promo.display_name,
            discount_amount=discount,
            discount_percentage=_percentage(discount, original),
        )

    if promo.promotion_value is not None and promo.promotion_value > 0:
        final = max(original - promo.promotion_value, config.minimum_charge_amount)
        if final >= original:
            # The floor swallowed the whole discount.
            return PromotionalPricing(final_amount=original)
        discount = original - final
        return PromotionalPricing(
            final_amount=final,
            has_promotion=True,
            promotional_name=promo.display_name,
            discount_amount=discount,
            discount_percentage=_percentage(discount, original),
        )

    diagnostics.warn("promotion_without_price", plan_id=plan.id)
    return PromotionalPricing(final_amount=original)


def format_brl(amount: int) -> str:
    """Format an amount in centavos as Brazilian reais (R$ 1.234,56)."""
    reais = f"{amount / 100:,.2f}"
    return "R$ " + reais.replace(",", "_").replace(".", ",").replace("_", ".")


def _build_description(
    plan: BillingPlan,
    flow_type: FlowType,
    pricing: PromotionalPricing,
    interval: IntervalDescriptor | None,
) -> str:
    name = (pricing.has_promotion and pricing.promotional_name) or plan.name or plan.id
    description = f"{name} - {format_brl(pricing.final_amount)}"

    if flow_type == FlowType.SUBSCRIPTION and interval is not None:
        label = INTERVAL_LABELS.get(interval.interval, interval.interval)
        description += f" por {label}"
    else:
        description += " (pagamento único)"

    if pricing.has_promotion and plan.promotional_config is not None:
        try:
            expires_at = parse_timestamp(plan.promotional_config.expires_at)
        except ValueError:
            expires_at = None
        if expires_at is not None:
            description += f" - promoção válida até {expires_at:%d/%m/%Y}"

    return description


def resolve_plan_pricing_and_flow(
    plan: BillingPlan,
    now: datetime | None = None,
    config: BillingConfig | None = None,
) -> ResolvedPricing:
    """Resolve flow type, promotional price and cadence for one plan."""
    now = parse_timestamp(now) or utcnow()
    diagnostics = Diagnostics(logger)

    flow_type = analyze_payment_flow(plan, diagnostics)
    pricing = resolve_promotional_pricing(plan, now, diagnostics, config)

    interval: IntervalDescriptor | None = None
    if flow_type == FlowType.SUBSCRIPTION:
        interval = map_billing_interval(plan.billing_interval, diagnostics)

    return ResolvedPricing(
        plan_id=plan.id,
        flow_type=flow_type,
        original_amount=plan.amount,
        final_amount=pricing.final_amount,
        has_promotion=pricing.has_promotion,
        promotional_name=pricing.promotional_name,
        discount_amount=pricing.discount_amount,
        discount_percentage=pricing.discount_percentage,
        interval=interval.interval if interval else None,
        interval_count=interval.interval_count if interval else None,
        description=_build_description(plan, flow_type, pricing, interval),
        metadata={
            "plan_id": plan.id,
            "plan_name": plan.name,
            "declared_type": plan.type,
            "flow_type": flow_type.value,
            "original_amount": plan.amount,
            "final_amount": pricing.final_amount,
            "has_promotion": pricing.has_promotion,
            "promotion_expired": pricing.promotion_expired,
            "evaluated_at": now.isoformat(),
        },
        warnings=list(diagnostics.warnings),
    )


def analyze_payment_routing(
    plans: Iterable[BillingPlan],
    now: datetime | None = None,
    config: BillingConfig | None = None,
) -> RoutingAnalysis:
    """Aggregate flow types, promotions and cadences across a plan catalog."""
    now = parse_timestamp(now) or utcnow()
    flow_counts: dict[str, int] = {flow.value: 0 for flow in FlowType}
    interval_distribution: dict[str, int] = defaultdict(int)
    amounts: dict[str, list[int]] = defaultdict(list)
    active_promotions = 0
    expired_promotions = 0
    total = 0

    for plan in plans:
        total += 1
        diagnostics = Diagnostics(logger)
        flow_type = analyze_payment_flow(plan, diagnostics)
        pricing = resolve_promotional_pricing(plan, now, diagnostics, config)

        flow_counts[flow_type.value] += 1
        interval_distribution[plan.billing_interval or "none"] += 1
        amounts[flow_type.value].append(pricing.final_amount)
        if pricing.has_promotion:
            active_promotions += 1
        if pricing.promotion_expired:
            expired_promotions += 1

    average_final_amount = {
        flow: round(sum(values) / len(values), 2) if values else 0.0
        for flow, values in ((f, amounts.get(f, [])) for f in flow_counts)
    }

    logger.info(
        "payment_routing_analyzed",
        total_plans=total,
        flow_counts=flow_counts,
        active_promotions=active_promotions,
        expired_promotions=expired_promotions,
    )

    return RoutingAnalysis(
        total_plans=total,
        flow_counts=flow_counts,
        active_promotions=active_promotions,
        expired_promotions=expired_promotions,
        interval_distribution=dict(interval_distribution),
        average_final_amount=average_final_amount,
    )

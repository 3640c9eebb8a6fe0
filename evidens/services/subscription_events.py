"""
Subscription lifecycle event processing.

Maps a Pagar.me subscription event to three co-located outputs: the
Practitioners column updates, the evidens_subscriptions row snapshot and the
business flags (emails, feature toggles, analytics) for external
collaborators. The processor keeps no state: prior account state is passed
in by the caller, who is also responsible for persisting the result.

Also hosts the subscription analytics helpers (health score, churn risk,
lifetime value) used by reporting.
"""

import math
from datetime import datetime
from typing import Any, Iterable

import structlog

from evidens.config import BillingConfig
from evidens.constants import (
    HEALTH_SCORE_CHARGE_FAILED,
    HEALTH_SCORE_CHARGED,
    HEALTH_SCORE_MAX,
    HEALTH_SCORE_REACTIVATED,
    HEALTH_SCORE_SUSPENDED,
    LTV_CHURN_MULTIPLIERS,
    LTV_LOYALTY_CAP,
    LTV_LOYALTY_STEP,
    LTV_UNKNOWN_RISK_MULTIPLIER,
    MISSING_PLAN_TIER,
    PLAN_TIER_METADATA_KEY,
    SUBSCRIPTION_STATUS_MAPPING,
    TIER_AMOUNT_THRESHOLDS,
    TOP_TIER,
)
from evidens.models.events import (
    BusinessFlags,
    ChargeFailedPayload,
    ChurnRisk,
    EventPlan,
    PriorAccountState,
    SubscriptionCanceledPayload,
    SubscriptionChargedPayload,
    SubscriptionCreatedPayload,
    SubscriptionEventType,
    SubscriptionReactivatedPayload,
    SubscriptionUpdateRequest,
    parse_event_payload,
)
from evidens.services.diagnostics import Diagnostics
from evidens.services.timeutils import parse_timestamp, utcnow

logger = structlog.get_logger(__name__)


def tier_for_amount(amount: int) -> str:
    """Tier implied by a plan amount in centavos."""
    for upper_bound, tier in TIER_AMOUNT_THRESHOLDS:
        if amount <= upper_bound:
            return tier
    return TOP_TIER


def determine_tier_from_plan(plan: EventPlan | None) -> str:
    """Explicit tier from plan metadata, else derived from the plan amount."""
    if plan is None:
        return MISSING_PLAN_TIER
    explicit = plan.metadata.get(PLAN_TIER_METADATA_KEY)
    if explicit:
        return str(explicit)
    return tier_for_amount(plan.amount or 0)


def _as_count(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SubscriptionEventProcessor:
    """Turns subscription events into account updates and business flags."""

    def __init__(self, config: BillingConfig | None = None) -> None:
        self.config = config or BillingConfig()

    def failure_count(
        self,
        payload: ChargeFailedPayload,
        prior_state: PriorAccountState | None,
        diagnostics: Diagnostics,
    ) -> int:
        """Failure count including the charge that just failed."""
        if prior_state is not None and prior_state.failure_count is not None:
            return prior_state.failure_count + 1

        raw = payload.metadata.get("failure_count")
        previous = _as_count(raw)
        if previous is not None:
            return previous + 1
        if raw not in (None, ""):
            diagnostics.warn("failure_count_unparseable", failure_count=raw)
        return 1

    @staticmethod
    def billing_cycle_count(
        payload: SubscriptionChargedPayload, prior_state: PriorAccountState | None
    ) -> int:
        if prior_state is not None and prior_state.billing_cycle_count is not None:
            return prior_state.billing_cycle_count + 1
        metadata = payload.subscription.metadata if payload.subscription else {}
        return (_as_count(metadata.get("billing_cycle_count")) or 0) + 1

    def process_subscription_event(
        self,
        event_type: SubscriptionEventType | str,
        event_payload: dict[str, Any] | None,
        user_id: str,
        prior_state: PriorAccountState | None = None,
        now: datetime | None = None,
    ) -> SubscriptionUpdateRequest:
        """
        Map one lifecycle event to its update request.

        Event types without a mapping, and unknown strings, yield the base
        request with no account mutation and no business flags.
        """
        now = parse_timestamp(now) or utcnow()
        timestamp = now.isoformat()
        diagnostics = Diagnostics(logger)
        if event_payload is not None and not isinstance(event_payload, dict):
            diagnostics.warn("payload_malformed", user_id=user_id, fields=["<root>"])
            event_payload = None
        raw_payload = dict(event_payload or {})
        raw_type = event_type.value if isinstance(event_type, SubscriptionEventType) else str(event_type)

        base = SubscriptionUpdateRequest(
            user_id=user_id,
            event_type=raw_type,
            event_data=raw_payload,
            timestamp=timestamp,
        )

        try:
            kind = SubscriptionEventType(raw_type)
        except ValueError:
            diagnostics.warn("unknown_event_type", event_type=raw_type, user_id=user_id)
            return base.model_copy(update={"warnings": diagnostics.warnings})

        payload, dropped = parse_event_payload(kind, raw_payload)
        if dropped:
            diagnostics.warn(
                "payload_malformed", event_type=raw_type, user_id=user_id, fields=dropped
            )

        if kind == SubscriptionEventType.CREATED:
            update = self._created(base, payload, timestamp)
        elif kind == SubscriptionEventType.CHARGED:
            update = self._charged(base, payload, prior_state, timestamp)
        elif kind == SubscriptionEventType.CHARGE_FAILED:
            update = self._charge_failed(base, payload, prior_state, timestamp, diagnostics)
        elif kind == SubscriptionEventType.CANCELED:
            update = self._canceled(base, payload, timestamp)
        elif kind == SubscriptionEventType.REACTIVATED:
            update = self._reactivated(base, payload, timestamp)
        else:
            # TODO: charge_created, trial_ended, suspended, updated and expired
            # need product rules before they can mutate the account.
            logger.info("subscription_event_unmapped", event_type=raw_type, user_id=user_id)
            update = base

        update.warnings = list(diagnostics.warnings)
        logger.info(
            "subscription_event_processed",
            event_type=raw_type,
            user_id=user_id,
            status=(update.practitioner_updates or {}).get("subscription_status"),
            flags=update.business_logic.active() if update.business_logic else [],
        )
        return update

    def _created(
        self,
        base: SubscriptionUpdateRequest,
        payload: SubscriptionCreatedPayload,
        timestamp: str,
    ) -> SubscriptionUpdateRequest:
        cycle = payload.current_cycle
        return base.model_copy(
            update={
                "practitioner_updates": {
                    "subscription_status": "active",
                    "subscription_tier": determine_tier_from_plan(payload.plan),
                    "pagarme_subscription_id": payload.id,
                    "subscription_next_billing": payload.next_billing_at,
                    "subscription_plan_name": payload.plan.name if payload.plan else None,
                    "updated_at": timestamp,
                },
                "subscription_record": {
                    "user_id": base.user_id,
                    "pagarme_subscription_id": payload.id,
                    "pagarme_plan_id": payload.plan.id if payload.plan else None,
                    "status": SUBSCRIPTION_STATUS_MAPPING["active"],
                    "current_period_start": cycle.start_at if cycle else None,
                    "current_period_end": cycle.end_at if cycle else None,
                    "next_billing_date": payload.next_billing_at,
                    "created_at": payload.created_at or timestamp,
                    "updated_at": timestamp,
                },
                "business_logic": BusinessFlags(
                    should_send_welcome_email=True,
                    should_activate_features=True,
                    should_log_analytics=True,
                ),
            }
        )

    def _charged(
        self,
        base: SubscriptionUpdateRequest,
        payload: SubscriptionChargedPayload,
        prior_state: PriorAccountState | None,
        timestamp: str,
    ) -> SubscriptionUpdateRequest:
        subscription = payload.subscription
        cycle = subscription.current_cycle if subscription else None
        next_billing = subscription.next_billing_at if subscription else None
        return base.model_copy(
            update={
                "practitioner_updates": {
                    "subscription_status": "active",
                    "subscription_next_billing": next_billing,
                    "last_payment_date": timestamp,
                    "payment_metadata": {
                        "last_payment_amount": payload.amount,
                        "last_charge_id": payload.id,
                        "payment_method": payload.payment_method,
                        "billing_cycle_count": self.billing_cycle_count(payload, prior_state),
                        "failure_count": 0,
                    },
                },
                "subscription_record": {
                    "status": SUBSCRIPTION_STATUS_MAPPING["active"],
                    "current_period_start": cycle.start_at if cycle else None,
                    "current_period_end": cycle.end_at if cycle else None,
                    "next_billing_date": next_billing,
                    "updated_at": timestamp,
                },
                "business_logic": BusinessFlags(
                    should_send_payment_confirmation=True,
                    should_reset_failure_count=True,
                    should_extend_access=True,
                    should_log_revenue=True,
                ),
            }
        )

    def _charge_failed(
        self,
        base: SubscriptionUpdateRequest,
        payload: ChargeFailedPayload,
        prior_state: PriorAccountState | None,
        timestamp: str,
        diagnostics: Diagnostics,
    ) -> SubscriptionUpdateRequest:
        failures = self.failure_count(payload, prior_state, diagnostics)
        suspended = failures >= self.config.failure_suspension_threshold
        status = "suspended" if suspended else "past_due"
        return base.model_copy(
            update={
                "practitioner_updates": {
                    "subscription_status": status,
                    "payment_metadata": {
                        "failure_count": failures,
                        "last_failure_date": timestamp,
                        "failure_reason": payload.status_reason or "payment_failed",
                        "failed_charge_id": payload.id,
                    },
                },
                "subscription_record": {
                    "status": SUBSCRIPTION_STATUS_MAPPING["unpaid" if suspended else "past_due"],
                    "updated_at": timestamp,
                },
                "business_logic": BusinessFlags(
                    should_send_payment_failed_email=True,
                    should_start_dunning_process=not suspended,
                    should_suspend_access=suspended,
                    should_log_churn_risk=True,
                ),
            }
        )

    def _canceled(
        self,
        base: SubscriptionUpdateRequest,
        payload: SubscriptionCanceledPayload,
        timestamp: str,
    ) -> SubscriptionUpdateRequest:
        return base.model_copy(
            update={
                "practitioner_updates": {
                    "subscription_status": "canceled",
                    "subscription_canceled_at": timestamp,
                    "payment_metadata": {
                        "cancellation_reason": payload.cancel_reason or "user_requested",
                        "canceled_at": timestamp,
                    },
                },
                "subscription_record": {
                    "status": SUBSCRIPTION_STATUS_MAPPING["canceled"],
                    "canceled_at": timestamp,
                    "updated_at": timestamp,
                },
                "business_logic": BusinessFlags(
                    should_send_cancellation_email=True,
                    should_schedule_access_revocation=True,
                    should_trigger_win_back_campaign=True,
                    should_log_churn=True,
                ),
            }
        )

    def _reactivated(
        self,
        base: SubscriptionUpdateRequest,
        payload: SubscriptionReactivatedPayload,
        timestamp: str,
    ) -> SubscriptionUpdateRequest:
        return base.model_copy(
            update={
                "practitioner_updates": {
                    "subscription_status": "active",
                    "subscription_next_billing": payload.next_billing_at,
                    "payment_metadata": {
                        "reactivated_at": timestamp,
                        "failure_count": 0,
                    },
                },
                "subscription_record": {
                    "status": SUBSCRIPTION_STATUS_MAPPING["active"],
                    "reactivated_at": timestamp,
                    "updated_at": timestamp,
                },
                "business_logic": BusinessFlags(
                    should_send_reactivation_email=True,
                    should_restore_features=True,
                    should_log_win_back=True,
                ),
            }
        )


def process_subscription_event(
    event_type: SubscriptionEventType | str,
    event_payload: dict[str, Any] | None,
    user_id: str,
    prior_state: PriorAccountState | None = None,
    now: datetime | None = None,
) -> SubscriptionUpdateRequest:
    """Process an event with the default billing rules."""
    return SubscriptionEventProcessor().process_subscription_event(
        event_type, event_payload, user_id, prior_state=prior_state, now=now
    )


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


def calculate_health_score(events: Iterable[SubscriptionEventType | str]) -> int:
    """Score 0-100 from an ordered event history; a cancellation zeroes it."""
    score = HEALTH_SCORE_MAX
    for event in events:
        kind = event.value if isinstance(event, SubscriptionEventType) else str(event)
        if kind == SubscriptionEventType.CHARGE_FAILED.value:
            score += HEALTH_SCORE_CHARGE_FAILED
        elif kind == SubscriptionEventType.SUSPENDED.value:
            score += HEALTH_SCORE_SUSPENDED
        elif kind == SubscriptionEventType.CANCELED.value:
            score = 0
        elif kind == SubscriptionEventType.CHARGED.value:
            score = min(score + HEALTH_SCORE_CHARGED, HEALTH_SCORE_MAX)
        elif kind == SubscriptionEventType.REACTIVATED.value:
            score = min(score + HEALTH_SCORE_REACTIVATED, HEALTH_SCORE_MAX)
    return max(score, 0)


def predict_churn_risk(
    failure_count: int,
    days_since_last_payment: int,
    billing_cycle_count: int,
) -> ChurnRisk:
    if failure_count >= 3:
        return ChurnRisk.CRITICAL
    if failure_count >= 2 or days_since_last_payment > 45:
        return ChurnRisk.HIGH
    if failure_count >= 1 or days_since_last_payment > 35:
        return ChurnRisk.MEDIUM
    if billing_cycle_count < 3 and days_since_last_payment > 25:
        return ChurnRisk.MEDIUM
    return ChurnRisk.LOW


def calculate_ltv(
    monthly_amount: float,
    billing_cycle_count: int,
    churn_risk: ChurnRisk | str,
) -> int:
    """Annualized value scaled by loyalty (capped at 2x) and churn risk."""
    base_ltv = monthly_amount * 12
    loyalty = min(1 + billing_cycle_count * LTV_LOYALTY_STEP, LTV_LOYALTY_CAP)
    risk = churn_risk.value if isinstance(churn_risk, ChurnRisk) else str(churn_risk)
    multiplier = LTV_CHURN_MULTIPLIERS.get(risk, LTV_UNKNOWN_RISK_MULTIPLIER)
    return math.floor(base_ltv * loyalty * multiplier + 0.5)

"""Subscription lifecycle event models.

Provider payloads arrive as loosely shaped JSON. Each handled event type is
parsed into its own payload model so the processor reads typed attributes
instead of probing nested dicts; every field is optional and unknown keys
are dropped.
"""

from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class SubscriptionEventType(str, Enum):
    """Subscription events emitted by the Pagar.me webhook."""

    CREATED = "subscription.created"
    CANCELED = "subscription.canceled"
    CHARGE_CREATED = "subscription.charge_created"
    CHARGED = "subscription.charged"
    CHARGE_FAILED = "subscription.charge_failed"
    TRIAL_ENDED = "subscription.trial_ended"
    REACTIVATED = "subscription.reactivated"
    SUSPENDED = "subscription.suspended"
    UPDATED = "subscription.updated"
    EXPIRED = "subscription.expired"


class ChurnRisk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    @field_validator("metadata", mode="before", check_fields=False)
    @classmethod
    def _metadata_dict(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}


class BillingCycle(_ProviderObject):
    start_at: str | None = None
    end_at: str | None = None


class EventPlan(_ProviderObject):
    id: str | None = None
    name: str | None = None
    amount: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionRef(_ProviderObject):
    id: str | None = None
    current_cycle: BillingCycle | None = None
    next_billing_at: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionCreatedPayload(_ProviderObject):
    id: str | None = None
    plan: EventPlan | None = None
    current_cycle: BillingCycle | None = None
    next_billing_at: str | None = None
    created_at: str | None = None


class SubscriptionChargedPayload(_ProviderObject):
    id: str | None = None
    amount: int | None = None
    payment_method: str | None = None
    subscription: SubscriptionRef | None = None


class ChargeFailedPayload(_ProviderObject):
    id: str | None = None
    status_reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionCanceledPayload(_ProviderObject):
    id: str | None = None
    cancel_reason: str | None = None


class SubscriptionReactivatedPayload(_ProviderObject):
    id: str | None = None
    next_billing_at: str | None = None


class GenericEventPayload(_ProviderObject):
    """Payload of event types the processor records without acting on."""

    id: str | None = None


EventPayload = Union[
    SubscriptionCreatedPayload,
    SubscriptionChargedPayload,
    ChargeFailedPayload,
    SubscriptionCanceledPayload,
    SubscriptionReactivatedPayload,
    GenericEventPayload,
]

PAYLOAD_MODELS: dict[SubscriptionEventType, type[_ProviderObject]] = {
    SubscriptionEventType.CREATED: SubscriptionCreatedPayload,
    SubscriptionEventType.CHARGED: SubscriptionChargedPayload,
    SubscriptionEventType.CHARGE_FAILED: ChargeFailedPayload,
    SubscriptionEventType.CANCELED: SubscriptionCanceledPayload,
    SubscriptionEventType.REACTIVATED: SubscriptionReactivatedPayload,
}


def parse_event_payload(
    event_type: SubscriptionEventType, payload: dict[str, Any] | None
) -> tuple[EventPayload, list[str]]:
    """
    Parse a raw payload into the model registered for its event type.

    Top-level keys whose values do not fit the model (a string where an
    object is expected, a fractional amount) are dropped and the rest is
    parsed again. Returns the payload and the names of the dropped keys.
    """
    model = PAYLOAD_MODELS.get(event_type, GenericEventPayload)
    data = dict(payload or {})
    try:
        return model.model_validate(data), []
    except ValidationError as e:
        dropped = sorted({str(error["loc"][0]) for error in e.errors() if error["loc"]})

    cleaned = {key: value for key, value in data.items() if key not in dropped}
    try:
        return model.model_validate(cleaned), dropped
    except ValidationError:
        return model(), sorted(data)


class PriorAccountState(BaseModel):
    """Account state the caller read from storage before processing an event."""

    model_config = ConfigDict(frozen=True)

    failure_count: int | None = Field(default=None, ge=0)
    billing_cycle_count: int | None = Field(default=None, ge=0)


class BusinessFlags(BaseModel):
    """Side effects external collaborators should perform after an event."""

    should_send_welcome_email: bool = False
    should_send_payment_confirmation: bool = False
    should_send_payment_failed_email: bool = False
    should_send_cancellation_email: bool = False
    should_send_reactivation_email: bool = False
    should_activate_features: bool = False
    should_restore_features: bool = False
    should_suspend_access: bool = False
    should_schedule_access_revocation: bool = False
    should_start_dunning_process: bool = False
    should_trigger_win_back_campaign: bool = False
    should_reset_failure_count: bool = False
    should_extend_access: bool = False
    should_log_analytics: bool = False
    should_log_revenue: bool = False
    should_log_churn: bool = False
    should_log_churn_risk: bool = False
    should_log_win_back: bool = False

    def active(self) -> list[str]:
        """Names of the flags that are raised."""
        return [name for name, value in self if value]


class SubscriptionUpdateRequest(BaseModel):
    """Account and subscription-row changes derived from one event."""

    user_id: str
    event_type: str
    event_data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str
    practitioner_updates: dict[str, Any] | None = None
    subscription_record: dict[str, Any] | None = None
    business_logic: BusinessFlags | None = None
    warnings: list[str] = Field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.practitioner_updates is None and self.subscription_record is None

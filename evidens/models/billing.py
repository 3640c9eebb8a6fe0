"""Billing plan, pricing and access models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FlowType(str, Enum):
    """How a plan is charged."""

    SUBSCRIPTION = "subscription"
    ONE_TIME = "one-time"


class AccessTier(str, Enum):
    """Access level derived from the account's access window."""

    FREE = "free"
    PREMIUM = "premium"


class PromotionalConfig(BaseModel):
    """Promotion settings stored in the plan's `promotional_config` JSON column."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_active: bool = Field(default=False, alias="isActive")
    final_price: int | None = Field(default=None, alias="finalPrice")
    promotion_value: int | None = Field(default=None, alias="promotionValue")
    custom_name: str | None = Field(default=None, alias="customName")
    promotional_name: str | None = Field(default=None, alias="promotionalName")
    expires_at: str | None = Field(default=None, alias="expiresAt")

    @property
    def display_name(self) -> str | None:
        return self.custom_name or self.promotional_name or None


class BillingPlan(BaseModel):
    """A sellable plan as stored in the PaymentPlans table."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    description: str | None = None
    type: str = FlowType.ONE_TIME.value
    amount: int = Field(ge=0)
    billing_interval: str | None = None
    billing_interval_count: int | None = Field(default=None, ge=1)
    days: int | None = Field(default=None, ge=1)
    promotional_config: PromotionalConfig | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)


class IntervalDescriptor(BaseModel):
    """Normalized billing cadence."""

    interval: str
    interval_count: int = 1


class PromotionalPricing(BaseModel):
    """Outcome of evaluating a plan's promotion at a given instant."""

    final_amount: int
    has_promotion: bool = False
    promotion_expired: bool = False
    promotional_name: str | None = None
    discount_amount: int | None = None
    discount_percentage: int | None = None


class ResolvedPricing(BaseModel):
    """Derived, non-persisted view of a plan at resolution time."""

    plan_id: str
    flow_type: FlowType
    original_amount: int
    final_amount: int
    has_promotion: bool
    promotional_name: str | None = None
    discount_amount: int | None = None
    discount_percentage: int | None = None
    interval: str | None = None
    interval_count: int | None = None
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)


class RoutingAnalysis(BaseModel):
    """Aggregate view over a catalog of plans, used for reporting."""

    total_plans: int = 0
    flow_counts: dict[str, int] = Field(default_factory=dict)
    active_promotions: int = 0
    expired_promotions: int = 0
    interval_distribution: dict[str, int] = Field(default_factory=dict)
    average_final_amount: dict[str, float] = Field(default_factory=dict)


class AccessTimeResult(BaseModel):
    """New access window computed from a successful payment."""

    new_end_date: datetime
    new_tier: AccessTier = AccessTier.PREMIUM
    should_upgrade: bool = False
    days_added: int


class AccountAccessWindow(BaseModel):
    """Per-user access state with the tier recomputed from the end date."""

    subscription_ends_at: datetime | None = None
    subscription_tier: AccessTier = AccessTier.FREE
    subscription_status: str | None = None


class AccessStatus(AccountAccessWindow):
    """Access window returned to the frontend."""

    user_id: str
    remaining_days: int | None = None
    is_premium: bool = False


class PractitionerAccount(BaseModel):
    """Billing columns of a row in the Practitioners table."""

    model_config = ConfigDict(extra="ignore")

    id: str
    email: str | None = None
    subscription_status: str | None = None
    subscription_tier: str | None = None
    subscription_starts_at: datetime | None = None
    subscription_ends_at: datetime | None = None
    subscription_next_billing: str | None = None
    subscription_plan_name: str | None = None
    subscription_canceled_at: str | None = None
    pagarme_subscription_id: str | None = None
    last_payment_date: datetime | None = None
    admin_subscription_notes: str | None = None
    payment_metadata: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None

    @field_validator("payment_metadata", mode="before")
    @classmethod
    def _default_metadata(cls, value: Any) -> dict[str, Any]:
        return value or {}


class CustomerInfo(BaseModel):
    """Customer data sent to the provider when creating a subscription."""

    name: str
    email: str
    document: str
    phone: str


class CardData(BaseModel):
    number: str
    holder_name: str
    expiration_month: str
    expiration_year: str
    cvv: str


class BillingAddress(BaseModel):
    line_1: str
    zip_code: str
    city: str
    state: str
    country: str = "BR"

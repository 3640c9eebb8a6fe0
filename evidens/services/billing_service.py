"""Billing service and repositories.

Glue between the pure billing modules and storage: loads the account state a
rule needs, runs the rule, and writes the result back.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Protocol

import structlog

from evidens.config import BillingConfig
from evidens.models.billing import (
    AccessStatus,
    AccessTier,
    AccessTimeResult,
    BillingPlan,
    PractitionerAccount,
    ResolvedPricing,
    RoutingAnalysis,
)
from evidens.models.events import (
    PriorAccountState,
    SubscriptionEventType,
    SubscriptionUpdateRequest,
)
from evidens.services.access_time import (
    access_window,
    adjust_access_time,
    calculate_access_time_from_payment,
    calculate_remaining_days,
)
from evidens.services.payment_router import (
    analyze_payment_routing,
    resolve_plan_pricing_and_flow,
)
from evidens.services.subscription_events import SubscriptionEventProcessor
from evidens.services.timeutils import utcnow

logger = structlog.get_logger(__name__)


def _jsonable(updates: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in updates.items()}


class BillingRepository(Protocol):
    """Storage contract for billing state."""

    async def get_account(self, user_id: str) -> PractitionerAccount | None:
        """Fetch a practitioner's billing columns."""

    async def get_account_by_email(self, email: str) -> PractitionerAccount | None:
        """Fetch a practitioner by email (provider payloads carry the customer email)."""

    async def update_account(self, user_id: str, updates: dict[str, Any]) -> PractitionerAccount:
        """Apply column updates, creating the row if missing."""

    async def upsert_subscription(self, user_id: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert or update the user's subscription row."""

    async def get_plan(self, plan_id: str) -> BillingPlan | None:
        """Fetch a plan by ID."""

    async def list_plans(self, *, active_only: bool = True) -> list[BillingPlan]:
        """List plans in the catalog."""

    async def mark_webhook_processed(self, event_id: str) -> bool:
        """Record webhook idempotency key.

        Returns True when the event is new; False if already seen.
        """


class InMemoryBillingRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.accounts: dict[str, PractitionerAccount] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.plans: dict[str, BillingPlan] = {}
        self.processed_events: set[str] = set()

    async def get_account(self, user_id: str) -> PractitionerAccount | None:
        account = self.accounts.get(user_id)
        return account.model_copy(deep=True) if account else None

    async def get_account_by_email(self, email: str) -> PractitionerAccount | None:
        for account in self.accounts.values():
            if account.email and account.email.lower() == email.lower():
                return account.model_copy(deep=True)
        return None

    async def update_account(self, user_id: str, updates: dict[str, Any]) -> PractitionerAccount:
        current = self.accounts.get(user_id) or PractitionerAccount(id=user_id)
        merged = {**current.model_dump(), **updates, "id": user_id}
        stored = PractitionerAccount.model_validate(merged)
        self.accounts[user_id] = stored
        return stored.model_copy(deep=True)

    async def upsert_subscription(self, user_id: str, record: dict[str, Any]) -> dict[str, Any]:
        stored = {**self.subscriptions.get(user_id, {}), **record, "user_id": user_id}
        self.subscriptions[user_id] = stored
        return dict(stored)

    async def get_plan(self, plan_id: str) -> BillingPlan | None:
        plan = self.plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def list_plans(self, *, active_only: bool = True) -> list[BillingPlan]:
        return [
            plan.model_copy(deep=True)
            for plan in self.plans.values()
            if plan.is_active or not active_only
        ]

    async def mark_webhook_processed(self, event_id: str) -> bool:
        if event_id in self.processed_events:
            return False
        self.processed_events.add(event_id)
        return True


class SupabaseBillingRepository:
    """Supabase-backed repository for billing state."""

    def __init__(self, client, config: BillingConfig):
        self.client = client
        self.config = config

    async def _single_account(self, column: str, value: str) -> PractitionerAccount | None:
        response = (
            await self.client.table(self.config.accounts_table)
            .select("*")
            .eq(column, value)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return PractitionerAccount.model_validate(rows[0])

    async def get_account(self, user_id: str) -> PractitionerAccount | None:
        return await self._single_account("id", user_id)

    async def get_account_by_email(self, email: str) -> PractitionerAccount | None:
        return await self._single_account("email", email)

    async def update_account(self, user_id: str, updates: dict[str, Any]) -> PractitionerAccount:
        payload = _jsonable({**updates, "id": user_id})
        response = (
            await self.client.table(self.config.accounts_table)
            .upsert(payload, on_conflict="id")
            .execute()
        )
        rows = response.data or []
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return PractitionerAccount.model_validate(payload)
        return PractitionerAccount.model_validate(rows[0])

    async def upsert_subscription(self, user_id: str, record: dict[str, Any]) -> dict[str, Any]:
        payload = _jsonable({**record, "user_id": user_id})
        response = (
            await self.client.table(self.config.subscriptions_table)
            .upsert(payload, on_conflict="user_id")
            .execute()
        )
        rows = response.data or []
        return rows[0] if rows else payload

    async def get_plan(self, plan_id: str) -> BillingPlan | None:
        response = (
            await self.client.table(self.config.plans_table)
            .select("*")
            .eq("id", plan_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return BillingPlan.model_validate(rows[0])

    async def list_plans(self, *, active_only: bool = True) -> list[BillingPlan]:
        query = self.client.table(self.config.plans_table).select("*")
        if active_only:
            query = query.eq("is_active", True)
        response = await query.order("created_at", desc=False).execute()
        return [BillingPlan.model_validate(row) for row in response.data or []]

    async def mark_webhook_processed(self, event_id: str) -> bool:
        existing = (
            await self.client.table(self.config.webhook_events_table)
            .select("event_id")
            .eq("event_id", event_id)
            .limit(1)
            .execute()
        )
        if existing.data:
            return False

        await self.client.table(self.config.webhook_events_table).insert(
            {"event_id": event_id, "processed_at": utcnow().isoformat()}
        ).execute()
        return True


def prior_state_from_account(account: PractitionerAccount | None) -> PriorAccountState:
    """Counters the event processor needs, read from the stored payment metadata."""
    if account is None:
        return PriorAccountState()
    metadata = account.payment_metadata

    def _count(key: str) -> int | None:
        value = metadata.get(key)
        try:
            return max(int(value), 0) if value is not None else None
        except (TypeError, ValueError):
            return None

    return PriorAccountState(
        failure_count=_count("failure_count"),
        billing_cycle_count=_count("billing_cycle_count"),
    )


class BillingService:
    """Applies subscription events and payments to practitioner accounts."""

    def __init__(
        self,
        repository: BillingRepository,
        config: BillingConfig,
        now_provider=utcnow,
    ) -> None:
        self.repository = repository
        self.config = config
        self.now_provider = now_provider
        self.processor = SubscriptionEventProcessor(config)
        # Serializes deliveries for the same user within this process only;
        # cross-instance ordering relies on webhook idempotency.
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def process_webhook_event_id(self, event_id: str) -> bool:
        return await self.repository.mark_webhook_processed(event_id)

    async def apply_subscription_event(
        self,
        event_type: SubscriptionEventType | str,
        payload: dict[str, Any] | None,
        user_id: str,
    ) -> SubscriptionUpdateRequest:
        """Run the lifecycle processor against stored state and persist the result."""
        async with self._locks[user_id]:
            account = await self.repository.get_account(user_id)
            update = self.processor.process_subscription_event(
                event_type,
                payload,
                user_id,
                prior_state=prior_state_from_account(account),
                now=self.now_provider(),
            )

            if update.practitioner_updates is not None:
                changes = dict(update.practitioner_updates)
                if "payment_metadata" in changes:
                    previous = account.payment_metadata if account else {}
                    changes["payment_metadata"] = {**previous, **changes["payment_metadata"]}
                changes["updated_at"] = self.now_provider()
                await self.repository.update_account(user_id, changes)

            if update.subscription_record is not None:
                record = dict(update.subscription_record)
                if not record.get("pagarme_subscription_id") and account is not None:
                    record["pagarme_subscription_id"] = account.pagarme_subscription_id
                await self.repository.upsert_subscription(user_id, record)

            return update

    async def apply_payment_success(
        self,
        user_id: str,
        plan_days: int | None = None,
        payment_date: datetime | None = None,
        *,
        payment_id: str | None = None,
    ) -> AccessTimeResult:
        """Extend the user's access window after a confirmed payment."""
        days = plan_days or self.config.default_plan_days
        paid_at = payment_date or self.now_provider()

        async with self._locks[user_id]:
            account = await self.repository.get_account(user_id)
            result = calculate_access_time_from_payment(
                account.subscription_ends_at if account else None,
                days,
                paid_at,
            )

            previous_metadata = account.payment_metadata if account else {}
            changes: dict[str, Any] = {
                "subscription_ends_at": result.new_end_date,
                "subscription_tier": result.new_tier.value,
                "subscription_status": "active",
                "last_payment_date": paid_at,
                "payment_metadata": {
                    **previous_metadata,
                    "payment_id": payment_id,
                    "days_added": result.days_added,
                },
                "updated_at": self.now_provider(),
            }
            if result.should_upgrade:
                changes["subscription_starts_at"] = paid_at
            await self.repository.update_account(user_id, changes)

        logger.info(
            "billing_access_extended",
            user_id=user_id,
            days_added=result.days_added,
            new_end_date=result.new_end_date.isoformat(),
            upgraded=result.should_upgrade,
        )
        return result

    async def adjust_access(self, user_id: str, days: int, notes: str = "") -> PractitionerAccount:
        """Admin adjustment of a user's access window by a number of days."""
        async with self._locks[user_id]:
            account = await self.repository.get_account(user_id)
            now = self.now_provider()
            new_end = adjust_access_time(account.subscription_ends_at if account else None, days, now)
            tier = AccessTier.PREMIUM if new_end > now else AccessTier.FREE
            sign = "+" if days > 0 else ""
            return await self.repository.update_account(
                user_id,
                {
                    "subscription_ends_at": new_end,
                    "subscription_tier": tier.value,
                    "admin_subscription_notes": f"{sign}{days} dias em {now:%d/%m/%Y}. {notes}".strip(),
                    "updated_at": now,
                },
            )

    async def get_access_status(self, user_id: str) -> AccessStatus:
        now = self.now_provider()
        account = await self.repository.get_account(user_id) or PractitionerAccount(id=user_id)
        window = access_window(account, now)
        return AccessStatus(
            **window.model_dump(),
            user_id=user_id,
            remaining_days=calculate_remaining_days(account.subscription_ends_at, now),
            is_premium=window.subscription_tier == AccessTier.PREMIUM,
        )

    async def resolve_plan(self, plan_id: str) -> ResolvedPricing | None:
        plan = await self.repository.get_plan(plan_id)
        if plan is None:
            return None
        return resolve_plan_pricing_and_flow(plan, now=self.now_provider(), config=self.config)

    async def routing_report(self) -> RoutingAnalysis:
        plans = await self.repository.list_plans(active_only=True)
        return analyze_payment_routing(plans, now=self.now_provider(), config=self.config)

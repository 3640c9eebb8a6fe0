"""
Access window arithmetic for paid accounts.

A payment always grants premium access. How the purchased days are added
depends on the current window:
- no window: starts at the payment date
- overdue (ends at or before the payment date): the full purchase starts at
  the payment date, expired days are not deducted
- active: the purchase is appended to the existing end date
"""

import math
from datetime import datetime, timedelta

import structlog

from evidens.models.billing import (
    AccessTier,
    AccessTimeResult,
    AccountAccessWindow,
    PractitionerAccount,
)
from evidens.services.timeutils import parse_timestamp, utcnow

logger = structlog.get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def calculate_access_time_from_payment(
    current_end_date: datetime | str | None,
    plan_days: int,
    payment_date: datetime | None = None,
) -> AccessTimeResult:
    """
    Compute the access window after a successful payment.

    Raises:
        ValueError: If plan_days is negative or current_end_date is not ISO 8601.
    """
    if plan_days < 0:
        raise ValueError(f"plan_days must be non-negative, got {plan_days}")

    payment_date = parse_timestamp(payment_date) or utcnow()
    current_end = parse_timestamp(current_end_date)
    extension = timedelta(days=plan_days)

    if current_end is None:
        branch = "new"
        new_end = payment_date + extension
        should_upgrade = True
    elif current_end <= payment_date:
        branch = "overdue"
        new_end = payment_date + extension
        should_upgrade = True
    else:
        branch = "active"
        new_end = current_end + extension
        should_upgrade = False

    logger.info(
        "access_time_calculated",
        branch=branch,
        plan_days=plan_days,
        new_end_date=new_end.isoformat(),
    )
    return AccessTimeResult(
        new_end_date=new_end,
        new_tier=AccessTier.PREMIUM,
        should_upgrade=should_upgrade,
        days_added=plan_days,
    )


def determine_user_tier(
    end_date: datetime | str | None, now: datetime | None = None
) -> AccessTier:
    """Premium while the access window ends strictly after `now`."""
    end = parse_timestamp(end_date)
    if end is None:
        return AccessTier.FREE
    now = parse_timestamp(now) or utcnow()
    return AccessTier.PREMIUM if end > now else AccessTier.FREE


def calculate_remaining_days(
    end_date: datetime | str | None, now: datetime | None = None
) -> int | None:
    """Whole days left, rounded up. Negative once expired; None without a window."""
    end = parse_timestamp(end_date)
    if end is None:
        return None
    now = parse_timestamp(now) or utcnow()
    return math.ceil((end - now).total_seconds() / SECONDS_PER_DAY)


def adjust_access_time(
    current_end_date: datetime | str | None,
    days: int,
    now: datetime | None = None,
) -> datetime:
    """
    Manual adjustment from admin tooling: add (positive) or remove (negative) days.

    Grants on an expired or empty window start from `now`; removals always
    apply to the stored end date.

    Raises:
        ValueError: If days is zero, or a removal targets an empty window.
    """
    if days == 0:
        raise ValueError("Adjustment must add or remove at least one day")

    now = parse_timestamp(now) or utcnow()
    current_end = parse_timestamp(current_end_date)

    if days > 0:
        start = current_end if current_end is not None and current_end > now else now
        return start + timedelta(days=days)

    if current_end is None:
        raise ValueError("Cannot remove days from an account without access")
    return current_end + timedelta(days=days)


def access_window(
    account: PractitionerAccount, now: datetime | None = None
) -> AccountAccessWindow:
    """Access window with the tier recomputed rather than read from the row."""
    return AccountAccessWindow(
        subscription_ends_at=account.subscription_ends_at,
        subscription_tier=determine_user_tier(account.subscription_ends_at, now),
        subscription_status=account.subscription_status,
    )

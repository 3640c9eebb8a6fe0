"""Timestamp helpers shared by the billing modules."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: datetime | str | None) -> datetime | None:
    """
    Normalize a stored timestamp to an aware UTC datetime.

    Naive values are assumed to be UTC (Postgres `timestamp` columns come back
    without an offset). Empty strings count as absent.

    Raises:
        ValueError: If a non-empty string is not ISO 8601.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)

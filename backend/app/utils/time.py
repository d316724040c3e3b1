from datetime import UTC, datetime


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every column stores."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)

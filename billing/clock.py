from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now; SQLite hands back naive datetimes so we store them that way."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

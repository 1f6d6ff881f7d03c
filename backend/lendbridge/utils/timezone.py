from datetime import datetime, timezone


def utc_now() -> datetime:
    # Stored naive (UTC) so SQLite and Postgres compare the same way.
    return datetime.now(tz=timezone.utc).replace(tzinfo=None)


def as_utc(dt: datetime | None) -> datetime | None:
    """Naive UTC for storage; aware values are converted, naive ones taken as UTC."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)

"""Timezone helpers. All timestamps in the service are UTC."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Attach UTC to naive datetimes read back from the store.

    SQLite does not keep tzinfo, so a timestamp written as aware UTC comes
    back naive. Normalizing on read keeps a replayed response identical to
    the one produced when the row was written.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

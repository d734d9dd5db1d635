"""
Timestamp helpers shared by the naming conventions and the watermark store.

Three textual forms are in use and must stay bit-for-bit stable because
object names and watermark rows written by earlier runs are compared against
them:

  - Master snapshot timestamps: ISO-8601 UTC with ``:`` and ``.`` replaced by
    ``_`` (``2025-06-01T10_15_30_123Z``).
  - Shard timestamps: ``YYYY_MM_DD_hh:mm:ss`` (UTC).
  - Watermark / bookkeeping timestamps: fixed-width ISO-8601 UTC with
    microseconds (``2025-06-01T10:15:30.123456Z``), so that text comparison
    in SQL equals chronological comparison.
"""

from __future__ import annotations

from datetime import datetime, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_SHARD_FORMAT = "%Y_%m_%d_%H:%M:%S"
_STAGING_FORMAT = "%Y%m%dT%H%M%SZ"


def utcnow() -> datetime:
    """Return the current UTC datetime with timezone info.

    Prefer this over ``datetime.utcnow()`` (which returns naive datetimes).
    """
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Format a datetime as fixed-width ISO-8601 UTC text with microseconds.

    Args:
        value: Aware or naive (assumed UTC) datetime.

    Returns:
        String like ``"2025-06-01T10:15:30.123456Z"``.
    """
    return ensure_utc(value).strftime(_ISO_FORMAT)


def from_iso(text: str) -> datetime:
    """Parse ISO-8601 text (``Z`` or offset suffix) into an aware UTC datetime.

    Raises:
        ValueError: If ``text`` is not a valid ISO-8601 timestamp.
    """
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def master_timestamp(value: datetime) -> str:
    """Format a master snapshot timestamp (millisecond ISO with ``_`` separators)."""
    value = ensure_utc(value)
    iso = value.strftime("%Y-%m-%dT%H:%M:%S") + f".{value.microsecond // 1000:03d}Z"
    return iso.replace(":", "_").replace(".", "_")


def shard_timestamp(value: datetime) -> str:
    """Format a shard timestamp as ``YYYY_MM_DD_hh:mm:ss``."""
    return ensure_utc(value).strftime(_SHARD_FORMAT)


def staging_timestamp(value: datetime) -> str:
    """Format the compact timestamp embedded in staging relation names."""
    return ensure_utc(value).strftime(_STAGING_FORMAT)


def parse_staging_timestamp(text: str) -> datetime:
    """Parse a compact staging timestamp back into an aware UTC datetime.

    Raises:
        ValueError: If ``text`` does not match ``YYYYMMDDTHHMMSSZ``.
    """
    return datetime.strptime(text, _STAGING_FORMAT).replace(tzinfo=timezone.utc)

from datetime import date, datetime, time, timedelta, timezone
import hashlib
import json
import logging
import re
from typing import Iterator

from . import config
from .errors import InvalidDateFormat

logger = logging.getLogger(__name__)

# Fixed local offset used for every local-day decision. Never use the host
# timezone (datetime.astimezone() without an argument) in this package.
LOCAL_TZ = timezone(timedelta(hours=config.LOCAL_UTC_OFFSET_HOURS))

_DATE_KEY_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_HHMM_RE = re.compile(r"(\d{1,2}):(\d{2})")


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Return dt as an aware UTC datetime. Naive values are treated as UTC,
    which is how SQLite hands back the timestamps we stored."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date_key(value: str) -> date:
    """Parse a local date key (YYYY-MM-DD).

    Raises InvalidDateFormat for anything else; values are never coerced.
    """
    if not isinstance(value, str) or not _DATE_KEY_RE.fullmatch(value):
        raise InvalidDateFormat(value)
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise InvalidDateFormat(value) from None


def to_local_date_key(instant) -> str:
    """Return the local calendar day (YYYY-MM-DD) an instant falls on.

    A plain ``date`` is already a calendar day and is returned as-is.
    """
    if isinstance(instant, datetime):
        return ensure_aware(instant).astimezone(LOCAL_TZ).date().isoformat()
    if isinstance(instant, date):
        return instant.isoformat()
    raise TypeError(f"expected datetime or date, got {type(instant).__name__}")


def local_midnight(date_key: str) -> datetime:
    """Return the UTC instant of local 00:00 on the given day."""
    d = parse_date_key(date_key)
    return datetime.combine(d, time(0, 0), tzinfo=LOCAL_TZ).astimezone(timezone.utc)


def local_datetime(date_key: str, wall: time) -> datetime:
    """Combine a local day and a local wall-clock time into a UTC instant."""
    d = parse_date_key(date_key)
    return datetime.combine(d, wall.replace(tzinfo=None), tzinfo=LOCAL_TZ).astimezone(timezone.utc)


def local_time_of(instant: datetime) -> time:
    """Local wall-clock time of an instant, down to the microsecond."""
    local = ensure_aware(instant).astimezone(LOCAL_TZ)
    return local.timetz().replace(tzinfo=None)


def parse_hhmm(value: str | None, default: str = '00:00') -> time:
    """Parse 'HH:MM' into a time; falls back to default when value is
    missing or malformed."""
    for candidate in (value, default):
        if not candidate:
            continue
        m = _HHMM_RE.fullmatch(candidate.strip())
        if m:
            hour, minute = int(m.group(1)), int(m.group(2))
            if 0 <= hour <= 23 and 0 <= minute <= 59:
                return time(hour, minute)
        if candidate is value:
            logger.debug('ignoring malformed wall time %r', value)
    return time(0, 0)


def local_weekday(date_key: str) -> int:
    """Weekday of a date key with 0=Sunday .. 6=Saturday."""
    return (parse_date_key(date_key).weekday() + 1) % 7


def add_days(date_key: str, days: int) -> str:
    return (parse_date_key(date_key) + timedelta(days=days)).isoformat()


def days_between(start_key: str, end_key: str) -> int:
    """Number of days from start_key to end_key (negative if end is earlier)."""
    return (parse_date_key(end_key) - parse_date_key(start_key)).days


def iter_date_keys(start_key: str, end_key: str) -> Iterator[str]:
    """Yield every date key in the half-open range [start_key, end_key)."""
    cur = parse_date_key(start_key)
    stop = parse_date_key(end_key)
    while cur < stop:
        yield cur.isoformat()
        cur += timedelta(days=1)


def isoformat_utc(dt: datetime | None) -> str | None:
    """Canonical ISO 8601 UTC string with a trailing Z."""
    if dt is None:
        return None
    return ensure_aware(dt).isoformat().replace('+00:00', 'Z')


def _canonical_json(obj):
    return json.dumps(obj, separators=(',', ':'), sort_keys=True, ensure_ascii=False)


def _sha256_hex(s):
    return hashlib.sha256(s.encode('utf-8')).hexdigest()


def occurrence_id(entity_type: str, entity_id, date_key: str) -> str:
    """Stable identifier for a computed occurrence, usable by clients as an
    idempotency key when marking completion."""
    payload = {'type': str(entity_type), 'id': str(entity_id), 'date': date_key}
    return 'occ:' + _sha256_hex(_canonical_json(payload))[:32]

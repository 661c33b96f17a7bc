"""Recurrence rules: the closed set of patterns a task or habit may carry.

Patterns arrive from storage as free-form strings (``daily``, ``weekly:1,3``,
``custom:0 9 * * 1-5``...). They are parsed into one of the frozen variants
below exactly once, at the boundary, and validated when written. ``Custom``
is kept opaque: the engine never expands it and the exporter never
translates it.

Weekdays use 0=Sunday .. 6=Saturday throughout.
"""
from dataclasses import dataclass
from datetime import datetime
import logging
import re
from typing import Iterable, Optional, Union

from .errors import InvalidRecurrencePattern
from .utils import ensure_aware, local_weekday, parse_date_key

logger = logging.getLogger(__name__)

# iCalendar day tokens indexed by our weekday numbering (0=Sunday).
ICAL_DAY_TOKENS = ('SU', 'MO', 'TU', 'WE', 'TH', 'FR', 'SA')

CUSTOM_PREFIX = 'custom:'
_WEEKLY_DAYS_RE = re.compile(r"weekly:\s*(\d(?:\s*,\s*\d)*)")


@dataclass(frozen=True)
class NoRecurrence:
    kind: str = 'none'


@dataclass(frozen=True)
class Daily:
    kind: str = 'daily'


@dataclass(frozen=True)
class Weekly:
    target_days: frozenset = frozenset()
    kind: str = 'weekly'


@dataclass(frozen=True)
class Monthly:
    kind: str = 'monthly'


@dataclass(frozen=True)
class Yearly:
    kind: str = 'yearly'


@dataclass(frozen=True)
class Custom:
    raw: str = ''
    kind: str = 'custom'


RecurrenceRule = Union[NoRecurrence, Daily, Weekly, Monthly, Yearly, Custom]

NONE = NoRecurrence()


def _normalize_days(days: Optional[Iterable[int]]) -> frozenset:
    if days is None:
        return frozenset()
    out = set()
    for d in days:
        try:
            v = int(d)
        except (TypeError, ValueError):
            raise InvalidRecurrencePattern(days, f'weekday {d!r} is not an integer') from None
        if not 0 <= v <= 6:
            raise InvalidRecurrencePattern(days, f'weekday {v} outside 0..6')
        out.add(v)
    return frozenset(out)


def is_recurring(rule: RecurrenceRule) -> bool:
    return not isinstance(rule, NoRecurrence)


def parse_recurring_pattern(raw: Optional[str], target_days: Optional[Iterable[int]] = None) -> RecurrenceRule:
    """Parse a stored pattern string into a rule variant.

    Accepted (keyword case-insensitive): empty/None, ``daily``, ``weekly``,
    ``weekly:1,3``, ``monthly``, ``yearly`` and ``custom:<anything>``. The
    custom payload is kept verbatim. ``target_days`` supplies weekdays for a
    bare ``weekly`` (habits keep them in a separate column); days embedded in
    the pattern take precedence.
    """
    if raw is None:
        return NONE
    text = raw.strip()
    if not text:
        return NONE
    lowered = text.lower()
    if lowered.startswith(CUSTOM_PREFIX):
        payload = text[len(CUSTOM_PREFIX):].strip()
        if not payload:
            raise InvalidRecurrencePattern(raw, 'custom pattern is empty')
        return Custom(raw=payload)
    if lowered == 'daily':
        return Daily()
    if lowered == 'weekly':
        return Weekly(target_days=_normalize_days(target_days))
    m = _WEEKLY_DAYS_RE.fullmatch(lowered)
    if m:
        return Weekly(target_days=_normalize_days(p for p in m.group(1).split(',')))
    if lowered == 'monthly':
        return Monthly()
    if lowered == 'yearly':
        return Yearly()
    raise InvalidRecurrencePattern(raw)


def rule_for_habit(frequency: Optional[str], target_days: Optional[Iterable[int]] = None) -> RecurrenceRule:
    """Habits store frequency ('daily'|'weekly') and target days separately."""
    freq = (frequency or '').strip().lower()
    if freq == 'daily':
        return Daily()
    if freq == 'weekly':
        return Weekly(target_days=_normalize_days(target_days))
    raise InvalidRecurrencePattern(frequency, "habit frequency must be 'daily' or 'weekly'")


def format_recurring_pattern(rule: RecurrenceRule) -> Optional[str]:
    """Canonical storage form of a rule (inverse of parse_recurring_pattern)."""
    if isinstance(rule, NoRecurrence):
        return None
    if isinstance(rule, Weekly):
        if not rule.target_days:
            return 'weekly'
        return 'weekly:' + ','.join(str(d) for d in sorted(rule.target_days))
    if isinstance(rule, Custom):
        return CUSTOM_PREFIX + rule.raw
    return rule.kind


def validate_recurring_pattern(raw: Optional[str], target_days: Optional[Iterable[int]] = None,
                               require_target_days: bool = True) -> Optional[str]:
    """Write-time validation. Returns the canonical pattern string.

    Malformed patterns are rejected here rather than silently producing zero
    occurrences later. For tasks a weekly rule must name its weekdays.
    """
    rule = parse_recurring_pattern(raw, target_days)
    if require_target_days and isinstance(rule, Weekly) and not rule.target_days:
        raise InvalidRecurrencePattern(raw, 'weekly pattern requires target days')
    return format_recurring_pattern(rule)


def matches(rule: RecurrenceRule, date_key: str, created_key: str,
            end_key: Optional[str] = None, anchor_key: Optional[str] = None) -> bool:
    """Does ``rule`` produce an occurrence on ``date_key``?

    All comparisons are on local date keys, never instants. ``created_key``
    is the first allowed day, ``end_key`` the last (inclusive). Monthly and
    yearly rules repeat the day (and month) of ``anchor_key``, defaulting to
    the creation day. A month that lacks the anchor day has no occurrence.
    NoRecurrence and Custom never match.
    """
    if date_key < created_key:
        return False
    if end_key is not None and date_key > end_key:
        return False
    if isinstance(rule, Daily):
        return True
    if isinstance(rule, Weekly):
        return local_weekday(date_key) in rule.target_days
    if isinstance(rule, (Monthly, Yearly)):
        d = parse_date_key(date_key)
        anchor = parse_date_key(anchor_key or created_key)
        if d.day != anchor.day:
            return False
        return isinstance(rule, Monthly) or d.month == anchor.month
    return False


def rule_to_recurrence_dict(rule: RecurrenceRule) -> dict:
    """Map a rule to a recurrence dict ({'freq': ..., 'byweekday': [...]}).

    Returns {} for rules with no native recurrence (none/custom). A weekly
    rule without target days is also {} since it produces nothing.
    """
    if isinstance(rule, Daily):
        return {'freq': 'DAILY'}
    if isinstance(rule, Weekly):
        if not rule.target_days:
            return {}
        return {'freq': 'WEEKLY', 'byweekday': [ICAL_DAY_TOKENS[d] for d in sorted(rule.target_days)]}
    if isinstance(rule, Monthly):
        return {'freq': 'MONTHLY'}
    if isinstance(rule, Yearly):
        return {'freq': 'YEARLY'}
    return {}


def _format_until(until: datetime) -> str:
    return ensure_aware(until).strftime('%Y%m%dT%H%M%SZ')


def recurrence_dict_to_rrule_string(rec: dict, until: Optional[datetime] = None) -> str:
    """Export a recurrence dict to an RFC5545 RRULE value (no leading 'RRULE:').

    Supports keys: freq (DAILY/WEEKLY/MONTHLY/YEARLY), interval, byweekday
    (list of 'MO'..'SU'). ``until`` is appended as a UTC UNTIL part.
    """
    if not rec:
        return ''
    parts: list[str] = []
    f = rec.get('freq')
    if f:
        parts.append(f'FREQ={f.upper()}')
    if until is not None:
        parts.append(f'UNTIL={_format_until(until)}')
    if rec.get('interval') is not None:
        parts.append(f'INTERVAL={int(rec["interval"])}')
    if rec.get('byweekday'):
        parts.append('BYDAY=' + ','.join(w.upper() for w in rec['byweekday']))
    return ';'.join(parts)


def recurrence_dict_to_ical(rec: dict, until: Optional[datetime] = None) -> dict:
    """Shape a recurrence dict the way icalendar's vRecur expects it."""
    if not rec:
        return {}
    out: dict = {'freq': rec['freq']}
    if until is not None:
        out['until'] = ensure_aware(until)
    if rec.get('interval') is not None:
        out['interval'] = int(rec['interval'])
    if rec.get('byweekday'):
        out['byday'] = list(rec['byweekday'])
    return out


def rule_to_rrule_string(rule: RecurrenceRule, until: Optional[datetime] = None) -> str:
    return recurrence_dict_to_rrule_string(rule_to_recurrence_dict(rule), until)


def recurrence_dict_to_rrule_params(rec: dict) -> dict:
    """Convert a recurrence dict into kwargs for dateutil.rrule.rrule."""
    if not rec:
        return {}
    from dateutil import rrule as _rrule
    out: dict = {}
    freq_map = {'DAILY': _rrule.DAILY, 'WEEKLY': _rrule.WEEKLY, 'MONTHLY': _rrule.MONTHLY, 'YEARLY': _rrule.YEARLY}
    out['freq'] = freq_map[rec['freq'].upper()]
    if 'interval' in rec:
        out['interval'] = int(rec['interval'])
    if rec.get('byweekday'):
        wd_map = {'MO': _rrule.MO, 'TU': _rrule.TU, 'WE': _rrule.WE, 'TH': _rrule.TH,
                  'FR': _rrule.FR, 'SA': _rrule.SA, 'SU': _rrule.SU}
        out['byweekday'] = tuple(wd_map[w.upper()] for w in rec['byweekday'])
    return out


def build_rrule(rule: RecurrenceRule, dtstart: datetime, until: Optional[datetime] = None):
    """Build the dateutil rrule equivalent to what the calendar exporter emits
    for ``rule``. Returns None for rules with no native recurrence."""
    params = recurrence_dict_to_rrule_params(rule_to_recurrence_dict(rule))
    if not params:
        return None
    from dateutil import rrule as _rrule
    if until is not None:
        params['until'] = until
    return _rrule.rrule(dtstart=dtstart, **params)

"""Habit statistics.

Every "was this a scheduled day" question goes through
``RecurringEntity.occurs_on`` (and so ``recurrence.matches``), the same
predicate the expander uses, so stats and agenda cannot disagree.
Stats are recomputed on every call; nothing is cached.
"""
from datetime import datetime
import logging
from typing import Optional

from .expander import RecurringEntity, entity_from_habit
from .ledger import LedgerSnapshot
from .models import HabitStats
from .utils import add_days, iter_date_keys, to_local_date_key

logger = logging.getLogger(__name__)


def scheduled_days(entity: RecurringEntity, first_key: str, last_key: str) -> list[str]:
    """Scheduled days of ``entity`` between first_key and last_key inclusive."""
    lower = max(first_key, entity.first_key)
    upper = last_key
    if entity.end_key is not None:
        upper = min(upper, entity.end_key)
    if lower > upper:
        return []
    return [d for d in iter_date_keys(lower, add_days(upper, 1)) if entity.occurs_on(d)]


def expected_occurrences(entity: RecurringEntity, first_key: Optional[str], last_key: str) -> int:
    return len(scheduled_days(entity, first_key or entity.created_key, last_key))


def completion_rate(completion_count: int, expected: int) -> float:
    """completions / max(expected, 1), clamped to [0, 1]."""
    rate = completion_count / max(expected, 1)
    return min(max(rate, 0.0), 1.0)


def current_streak(entity: RecurringEntity, snapshot: LedgerSnapshot, today_key: str) -> int:
    """Consecutive completed scheduled days counting back from today.

    Unscheduled days are skipped without breaking the streak. Today, while
    still open, does not break it either: a habit done every day up to
    yesterday keeps its streak until today is over.
    """
    day = today_key
    if entity.occurs_on(day) and not snapshot.is_completed(entity.id, day):
        day = add_days(day, -1)
    streak = 0
    while day >= entity.first_key:
        if entity.occurs_on(day):
            if not snapshot.is_completed(entity.id, day):
                break
            streak += 1
        day = add_days(day, -1)
    return streak


def longest_streak(entity: RecurringEntity, snapshot: LedgerSnapshot, today_key: str) -> int:
    best = run = 0
    for day in scheduled_days(entity, entity.first_key, today_key):
        if snapshot.is_completed(entity.id, day):
            run += 1
            best = max(best, run)
        elif day != today_key:
            run = 0
    return best


def compute_stats(entity: RecurringEntity, completion_count: int, now: datetime,
                  snapshot: Optional[LedgerSnapshot] = None) -> HabitStats:
    """Stats for one (active) habit as of ``now``.

    ``completion_count`` is the number of ledger records for the habit;
    ``snapshot`` supplies the per-day records the streaks are computed from.
    """
    snapshot = snapshot if snapshot is not None else LedgerSnapshot()
    today_key = to_local_date_key(now)
    expected = expected_occurrences(entity, entity.created_key, today_key)
    return HabitStats(
        habit_id=entity.id,
        expected_occurrences=expected,
        total_completions=completion_count,
        completion_rate=completion_rate(completion_count, expected),
        current_streak=current_streak(entity, snapshot, today_key),
        longest_streak=longest_streak(entity, snapshot, today_key),
    )


def compute_habit_stats(habit, snapshot: LedgerSnapshot, now: datetime) -> Optional[HabitStats]:
    """Stats straight from a Habit row. Returns None for inactive or
    unusable habits; those are hidden rather than reported as paused."""
    if not habit.active:
        return None
    entity = entity_from_habit(habit)
    if entity is None:
        return None
    count = snapshot.count(entity.id, entity.created_key, to_local_date_key(now))
    return compute_stats(entity, count, now, snapshot)

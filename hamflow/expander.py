"""Occurrence expansion.

Turns tasks and habits into the dated occurrences shown on agenda and
calendar views. Expansion is a pure function of ``(entities, window,
ledger snapshot)``: it never queries storage and never writes to the ledger,
so two calls with the same inputs return the same list.

Completion is represented two ways and the difference is kept explicit:
non-recurring tasks carry their own ``completed`` flag
(``CompletionSource.ENTITY_FLAG``) while recurring tasks and habits are
looked up per date in a ledger snapshot (``CompletionSource.LEDGER``).
"""
from dataclasses import dataclass
from datetime import time
from enum import Enum
import logging
from typing import Iterable, Iterator, Optional

from . import config
from .errors import InvalidRecurrencePattern, InvalidWindow, WindowTooLarge
from .ledger import LedgerSnapshot
from .models import Occurrence
from .recurrence import (
    NONE,
    Custom,
    RecurrenceRule,
    is_recurring,
    matches,
    parse_recurring_pattern,
    rule_for_habit,
)
from .utils import (
    add_days,
    days_between,
    isoformat_utc,
    iter_date_keys,
    local_datetime,
    local_midnight,
    local_time_of,
    occurrence_id,
    parse_date_key,
    to_local_date_key,
)

logger = logging.getLogger(__name__)


class CompletionSource(str, Enum):
    ENTITY_FLAG = 'entity_flag'
    LEDGER = 'ledger'


@dataclass(frozen=True)
class RecurringEntity:
    """The part of a Task or Habit row the engine needs.

    ``anchor_key``/``anchor_time`` come from a task's due date; habits have
    no anchor time and their occurrences are all-day.
    """
    entity_type: str
    id: str
    title: str
    created_key: str
    rule: RecurrenceRule = NONE
    end_key: Optional[str] = None
    anchor_key: Optional[str] = None
    anchor_time: Optional[time] = None
    completed_flag: bool = False
    space: Optional[str] = None

    @property
    def recurring(self) -> bool:
        return is_recurring(self.rule)

    @property
    def completion_source(self) -> CompletionSource:
        return CompletionSource.LEDGER if self.recurring else CompletionSource.ENTITY_FLAG

    @property
    def first_key(self) -> str:
        """First day an occurrence may fall on: the creation day, or the
        anchor day when that is later."""
        if self.anchor_key and self.anchor_key > self.created_key:
            return self.anchor_key
        return self.created_key

    def occurs_on(self, date_key: str) -> bool:
        """Whether a recurring entity is scheduled on ``date_key``."""
        return matches(self.rule, date_key, self.first_key, self.end_key, self.anchor_key)

    def due_instant(self, date_key: str) -> Optional[str]:
        if self.anchor_time is None:
            return None
        return isoformat_utc(local_datetime(date_key, self.anchor_time))


def entity_from_task(task) -> Optional[RecurringEntity]:
    """Adapt a Task row. Returns None (and logs) for rows that cannot be
    expanded: an unparseable pattern, or a recurrence without a due date."""
    try:
        rule = parse_recurring_pattern(task.recurring_pattern)
    except InvalidRecurrencePattern:
        logger.warning('skipping task %s: invalid recurring pattern %r', task.id, task.recurring_pattern)
        return None
    due = task.due_date
    if is_recurring(rule) and due is None:
        logger.warning('skipping task %s: recurring pattern %r without a due date', task.id, task.recurring_pattern)
        return None
    created = task.created_at or due
    if created is None:
        logger.warning('skipping task %s: no creation or due date', task.id)
        return None
    return RecurringEntity(
        entity_type='task',
        id=str(task.id),
        title=task.title,
        created_key=to_local_date_key(created),
        rule=rule,
        end_key=to_local_date_key(task.recurring_end_date) if task.recurring_end_date else None,
        anchor_key=to_local_date_key(due) if due is not None else None,
        anchor_time=local_time_of(due) if due is not None else None,
        completed_flag=bool(task.completed),
        space=getattr(task, 'space', None),
    )


def entity_from_habit(habit) -> Optional[RecurringEntity]:
    try:
        rule = rule_for_habit(habit.frequency, habit.target_days)
    except InvalidRecurrencePattern:
        logger.warning('skipping habit %s: invalid frequency %r / target days %r',
                       habit.id, habit.frequency, habit.target_days)
        return None
    if habit.created_at is None:
        logger.warning('skipping habit %s: no creation date', habit.id)
        return None
    created_key = to_local_date_key(habit.created_at)
    return RecurringEntity(
        entity_type='habit',
        id=str(habit.id),
        title=habit.name,
        created_key=created_key,
        rule=rule,
        anchor_key=created_key,
        space=getattr(habit, 'space', None),
    )


def active_habits(habits: Iterable) -> list:
    """Inactive habits are hidden from agenda, stats and export alike."""
    return [h for h in habits if h.active]


def entities_from_rows(tasks: Iterable = (), habits: Iterable = ()) -> list[RecurringEntity]:
    out: list[RecurringEntity] = []
    for t in tasks:
        e = entity_from_task(t)
        if e is not None:
            out.append(e)
    for h in active_habits(habits):
        e = entity_from_habit(h)
        if e is not None:
            out.append(e)
    return out


def check_window(window_start: str, window_end: str, max_days: Optional[int] = None) -> int:
    """Validate a half-open window of date keys and return its length in days."""
    parse_date_key(window_start)
    parse_date_key(window_end)
    if window_end <= window_start:
        raise InvalidWindow(window_start, window_end)
    limit = config.MAX_EXPANSION_DAYS if max_days is None else max_days
    span = days_between(window_start, window_end)
    if span > limit:
        raise WindowTooLarge(span, limit)
    return span


def _make_occurrence(entity: RecurringEntity, date_key: str, completed: bool) -> Occurrence:
    return Occurrence(
        occurrence_id=occurrence_id(entity.entity_type, entity.id, date_key),
        entity_type=entity.entity_type,
        entity_id=entity.id,
        title=entity.title,
        occurrence_date=date_key,
        completed=completed,
        completion_source=entity.completion_source.value,
        recurring=entity.recurring,
        due_instant=entity.due_instant(date_key),
        space=entity.space,
    )


def iter_occurrences(entity: RecurringEntity, window_start: str, window_end: str,
                     snapshot: Optional[LedgerSnapshot] = None) -> Iterator[Occurrence]:
    """Lazily yield one entity's occurrences in [window_start, window_end),
    in date order. The window is assumed to be validated already."""
    if not entity.recurring:
        date_key = entity.anchor_key
        if date_key is None:
            return
        if window_start <= date_key < window_end:
            yield _make_occurrence(entity, date_key, entity.completed_flag)
        return
    if isinstance(entity.rule, Custom):
        # opaque; only the calendar exporter ever sees the raw pattern
        return
    snapshot = snapshot if snapshot is not None else LedgerSnapshot()
    lower = max(window_start, entity.first_key)
    upper = window_end
    if entity.end_key is not None:
        upper = min(upper, add_days(entity.end_key, 1))
    if lower >= upper:
        return
    for date_key in iter_date_keys(lower, upper):
        if entity.occurs_on(date_key):
            yield _make_occurrence(entity, date_key, snapshot.is_completed(entity.id, date_key))


def _sort_key(occ: Occurrence):
    return (
        occ.occurrence_date,
        occ.due_instant or isoformat_utc(local_midnight(occ.occurrence_date)),
        occ.entity_id,
        occ.entity_type,
    )


def expand(entities: Iterable[RecurringEntity], window_start: str, window_end: str,
           snapshot: Optional[LedgerSnapshot] = None, max_days: Optional[int] = None) -> list[Occurrence]:
    """Expand entities into the sorted occurrences of [window_start, window_end).

    Raises InvalidDateFormat, InvalidWindow or WindowTooLarge before doing any
    work. Output is ordered by (date, due instant or local midnight, entity
    id) and is identical across calls with the same inputs.
    """
    check_window(window_start, window_end, max_days)
    occurrences: list[Occurrence] = []
    for entity in entities:
        occurrences.extend(iter_occurrences(entity, window_start, window_end, snapshot))
    occurrences.sort(key=_sort_key)
    logger.debug('expand window=[%s,%s) occurrences=%d', window_start, window_end, len(occurrences))
    return occurrences


def agenda_for_date(entities: Iterable[RecurringEntity], date_key: str,
                    snapshot: Optional[LedgerSnapshot] = None) -> list[Occurrence]:
    """Occurrences falling on a single local day."""
    return expand(entities, date_key, add_days(date_key, 1), snapshot)

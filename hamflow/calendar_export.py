"""iCalendar feed export.

Builds the subscription document served at ``/calendar/ical/...``: tasks with
a due date, active habits, reminders and completed pomodoro sessions. Free
text goes through icalendar's ``vText`` which escapes ``\\``, ``;``, ``,`` and
newlines, and the library emits CRLF-terminated, folded content lines.

Events are written in the app's local zone (``TZID=Asia/Tokyo`` plus a
VTIMEZONE block) so BYDAY weekdays in recurrence rules are evaluated on
local days, the same days the expander uses.

One bad record never breaks a feed: it is logged and skipped.
"""
from datetime import datetime, timedelta
import hmac
import logging
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from icalendar import Calendar, Event

from . import config
from .expander import RecurringEntity, active_habits, entity_from_habit, entity_from_task
from .recurrence import Weekly, recurrence_dict_to_ical, rule_to_recurrence_dict
from .utils import (
    _sha256_hex,
    add_days,
    ensure_aware,
    local_datetime,
    local_midnight,
    now_utc,
    parse_hhmm,
    to_local_date_key,
)

logger = logging.getLogger(__name__)

CALENDAR_CONTENT_TYPE = 'text/calendar; charset=utf-8'
CALENDAR_FILENAME = 'hamflow.ics'

PRIORITY_MAP = {
    'urgent': 1,
    'high': 3,
    'medium': 5,
    'low': 7,
}
HABIT_PRIORITY = 5

# Furthest we look ahead for the first scheduled day of a rule (covers a
# yearly Feb 29 anchor).
_FIRST_DAY_SEARCH_DAYS = 4 * 366


def _local_zone():
    return ZoneInfo(config.APP_TIMEZONE_NAME)


def _as_local(dt: datetime) -> datetime:
    return ensure_aware(dt).astimezone(_local_zone())


def _describe(text: Optional[str], link: Optional[str]) -> Optional[str]:
    description = text or ''
    if link:
        description = f'{description}\n\nLink: {link}' if description else f'Link: {link}'
    return description or None


def _first_scheduled_day(entity: RecurringEntity) -> Optional[str]:
    day = entity.first_key
    for _ in range(_FIRST_DAY_SEARCH_DAYS):
        if entity.end_key is not None and day > entity.end_key:
            return None
        if entity.occurs_on(day):
            return day
        day = add_days(day, 1)
    return None


def _until_for(entity: RecurringEntity) -> Optional[datetime]:
    """UNTIL bound for an inclusive recurrence end day: the last second of
    that local day, in UTC."""
    if entity.end_key is None:
        return None
    return local_midnight(add_days(entity.end_key, 1)) - timedelta(seconds=1)


def _add_recurrence(event: Event, entity: RecurringEntity) -> None:
    rec = rule_to_recurrence_dict(entity.rule)
    if not rec:
        # none, or custom: semantics unknown to the exporter, no RRULE line
        return
    event.add('rrule', recurrence_dict_to_ical(rec, _until_for(entity)))


def _recurring_start_day(entity: RecurringEntity) -> Optional[str]:
    if isinstance(entity.rule, Weekly) and not entity.rule.target_days:
        logger.warning('calendar export: skipping %s %s: weekly rule without target days',
                       entity.entity_type, entity.id)
        return None
    if entity.rule.kind == 'custom':
        return entity.anchor_key or entity.created_key
    day = _first_scheduled_day(entity)
    if day is None:
        logger.warning('calendar export: skipping %s %s: rule never occurs', entity.entity_type, entity.id)
    return day


def task_event(task, frontend_url: str, dtstamp: datetime) -> Optional[Event]:
    if task.due_date is None:
        logger.debug('calendar export: task %s has no due date', task.id)
        return None
    entity = entity_from_task(task)
    if entity is None:
        return None
    if entity.recurring:
        day = _recurring_start_day(entity)
        if day is None:
            return None
        start = local_datetime(day, entity.anchor_time)
    else:
        start = ensure_aware(task.due_date)
    start = _as_local(start)
    space = task.space or 'work'

    if task.board_id:
        url = f'{frontend_url}/board/{task.board_id}'
    else:
        url = f'{frontend_url}/agenda?date={to_local_date_key(start)}'

    event = Event()
    event.add('uid', f'task-{task.id}@hamflow')
    event.add('dtstamp', dtstamp)
    event.add('dtstart', start)
    event.add('dtend', start + timedelta(minutes=config.TASK_EVENT_MINUTES))
    event.add('summary', f'[{space}] {task.title}')
    description = _describe(task.description, task.link)
    if description:
        event.add('description', description)
    event.add('categories', [space, 'tasks'])
    event.add('url', url)
    completed = bool(task.completed) and not entity.recurring
    event.add('status', 'CANCELLED' if completed else 'CONFIRMED')
    if task.priority:
        event.add('priority', PRIORITY_MAP.get(task.priority.lower(), 5))
    _add_recurrence(event, entity)
    return event


def habit_event(habit, frontend_url: str, dtstamp: datetime) -> Optional[Event]:
    entity = entity_from_habit(habit)
    if entity is None:
        return None
    day = _recurring_start_day(entity)
    if day is None:
        return None
    wall = parse_hhmm(habit.reminder_time, config.DEFAULT_HABIT_TIME)
    start = _as_local(local_datetime(day, wall))

    event = Event()
    event.add('uid', f'habit-{habit.id}@hamflow')
    event.add('dtstamp', dtstamp)
    event.add('dtstart', start)
    event.add('dtend', start + timedelta(minutes=config.HABIT_EVENT_MINUTES))
    event.add('summary', habit.name)
    description = _describe(habit.description, habit.link)
    if description:
        event.add('description', description)
    event.add('categories', [habit.space or 'personal', 'habits'])
    event.add('url', f'{frontend_url}/agenda?date={day}')
    event.add('status', 'CONFIRMED')
    event.add('priority', HABIT_PRIORITY)
    _add_recurrence(event, entity)
    return event


def reminder_event(reminder, frontend_url: str, dtstamp: datetime) -> Optional[Event]:
    if reminder.reminder_time is None:
        logger.debug('calendar export: reminder %s has no time', reminder.id)
        return None
    start = _as_local(reminder.reminder_time)
    event = Event()
    event.add('uid', f'reminder-{reminder.id}@hamflow')
    event.add('dtstamp', dtstamp)
    event.add('dtstart', start)
    event.add('dtend', start + timedelta(minutes=config.REMINDER_EVENT_MINUTES))
    event.add('summary', reminder.message or 'Reminder')
    event.add('categories', ['reminders'])
    event.add('url', reminder.link or f'{frontend_url}/agenda?date={to_local_date_key(start)}')
    event.add('status', 'CONFIRMED')
    return event


def session_event(session, frontend_url: str, dtstamp: datetime) -> Optional[Event]:
    if session.completed_at is None:
        return None
    if session.start_time is None:
        logger.debug('calendar export: pomodoro session %s has no start time', session.id)
        return None
    start = _as_local(session.start_time)
    if session.end_time is not None:
        end = _as_local(session.end_time)
    else:
        end = start + timedelta(minutes=session.duration or 0)
    kind = session.type or 'focus'
    event = Event()
    event.add('uid', f'pomodoro-{session.id}@hamflow')
    event.add('dtstamp', dtstamp)
    event.add('dtstart', start)
    event.add('dtend', end)
    event.add('summary', f'Pomodoro: {kind} ({session.duration} min)')
    event.add('categories', ['pomodoro'])
    event.add('status', 'CONFIRMED')
    return event


def _new_calendar(name: str) -> Calendar:
    cal = Calendar()
    cal.add('prodid', config.CALENDAR_PRODID)
    cal.add('version', '2.0')
    cal.add('calscale', 'GREGORIAN')
    cal.add('method', 'PUBLISH')
    cal.add('x-wr-calname', name)
    cal.add('x-wr-caldesc', config.CALENDAR_DESCRIPTION)
    cal.add('x-wr-timezone', config.APP_TIMEZONE_NAME)
    return cal


def to_calendar_document(tasks: Iterable = (), reminders: Iterable = (), habits: Iterable = (),
                         sessions: Iterable = (), *, frontend_url: Optional[str] = None,
                         now: Optional[datetime] = None, name: Optional[str] = None) -> str:
    """Serialize everything into one iCalendar text document.

    Inactive habits are left out. Each record is converted independently;
    a record that is missing its date or otherwise cannot be converted is
    skipped and the rest of the document is still produced.
    """
    frontend_url = (frontend_url or config.FRONTEND_URL).rstrip('/')
    dtstamp = ensure_aware(now) if now is not None else now_utc()
    cal = _new_calendar(name or config.CALENDAR_NAME)
    batches = (
        ('task', tasks, task_event),
        ('habit', active_habits(habits), habit_event),
        ('reminder', reminders, reminder_event),
        ('pomodoro', sessions, session_event),
    )
    added = skipped = 0
    for kind, rows, build in batches:
        for row in rows:
            try:
                event = build(row, frontend_url, dtstamp)
            except Exception:
                logger.exception('calendar export: failed to convert %s %s; skipping',
                                 kind, getattr(row, 'id', None))
                event = None
            if event is None:
                skipped += 1
                continue
            cal.add_component(event)
            added += 1
    if added:
        cal.add_missing_timezones()
    logger.info('calendar export: %d events, %d records skipped', added, skipped)
    return cal.to_ical().decode('utf-8')


def calendar_feed_token(user_id, secret: Optional[str] = None) -> str:
    """Subscription token for a user's feed: sha256 of '<user_id>-<secret>'."""
    return _sha256_hex(f'{user_id}-{secret or config.CALENDAR_SECRET}')


def verify_feed_token(user_id, token: str, secret: Optional[str] = None) -> bool:
    return hmac.compare_digest(calendar_feed_token(user_id, secret), token or '')


def calendar_feed_url(user_id, frontend_url: Optional[str] = None, secret: Optional[str] = None) -> str:
    base = (frontend_url or config.FRONTEND_URL).rstrip('/')
    return f'{base}/api/calendar/ical/{user_id}/{calendar_feed_token(user_id, secret)}'

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional
import logging
import sys

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel
from sqlmodel import select

from . import config
from .calendar_export import (
    CALENDAR_CONTENT_TYPE,
    CALENDAR_FILENAME,
    calendar_feed_token,
    calendar_feed_url,
    to_calendar_document,
    verify_feed_token,
)
from .db import async_session, init_db
from .errors import HamflowError, InvalidRecurrencePattern
from .expander import agenda_for_date, check_window, entities_from_rows, entity_from_habit, entity_from_task, expand
from .ledger import HabitLogLedger, LedgerSnapshot, TaskCompletionLedger
from .models import Habit, PomodoroSession, Reminder, Task
from .recurrence import is_recurring, parse_recurring_pattern, rule_for_habit, validate_recurring_pattern
from .stats import compute_habit_stats
from .utils import add_days, ensure_aware, now_utc, parse_date_key

logger = logging.getLogger(__name__)
# Ensure INFO-level messages from this module appear on the server console when
# no handlers are configured (fallback for development/testing).
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


@dataclass
class EngineContext:
    """Everything a request needs: storage, ledgers and tunables.

    The app lifespan builds one and keeps it on ``app.state.context``; routes
    get it through ``Depends(get_context)`` and tests swap it with
    ``app.dependency_overrides[get_context]``.
    """
    session_factory: Any
    task_ledger: TaskCompletionLedger
    habit_ledger: HabitLogLedger
    max_days: int = config.MAX_EXPANSION_DAYS
    default_window_days: int = config.DEFAULT_WINDOW_DAYS
    calendar_secret: str = config.CALENDAR_SECRET
    frontend_url: str = config.FRONTEND_URL

    @classmethod
    def for_sessions(cls, session_factory, **overrides) -> 'EngineContext':
        return cls(
            session_factory=session_factory,
            task_ledger=TaskCompletionLedger(session_factory),
            habit_ledger=HabitLogLedger(session_factory),
            **overrides,
        )


def get_context(request: Request) -> EngineContext:
    ctx = getattr(request.app.state, 'context', None)
    if ctx is None:
        raise RuntimeError('engine context missing: the app lifespan has not run')
    return ctx


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail='missing X-User-Id header')
    return x_user_id


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    app.state.context = EngineContext.for_sessions(async_session)
    logger.info('starting server using DATABASE_URL=%s', config.DATABASE_URL)
    yield


app = FastAPI(lifespan=lifespan)


class TaskCreate(BaseModel):
    title: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: Optional[str] = None
    space: str = 'work'
    board_id: Optional[str] = None
    recurring_pattern: Optional[str] = None
    recurring_end_date: Optional[datetime] = None
    link: Optional[str] = None
    # accepted so imported rows keep their creation time
    created_at: Optional[datetime] = None


class HabitCreate(BaseModel):
    name: str
    description: Optional[str] = None
    frequency: str = 'daily'
    target_days: List[int] = []
    reminder_time: Optional[str] = None
    space: str = 'work'
    color: Optional[str] = None
    active: bool = True
    link: Optional[str] = None
    created_at: Optional[datetime] = None


class CompletionRequest(BaseModel):
    date: str
    note: Optional[str] = None


ALL_SPACES = 'all'


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops the offset on write; store UTC so reads can assume it
    return ensure_aware(dt) if dt is not None else None


async def _load_rows(ctx: EngineContext, user_id: str, *models, space: str = ALL_SPACES):
    """Rows of each model owned by the user, limited to one space unless
    ``space`` is 'all'."""
    out = []
    async with ctx.session_factory() as sess:
        for model in models:
            stmt = select(model).where(model.user_id == user_id)
            if space != ALL_SPACES:
                stmt = stmt.where(model.space == space)
            res = await sess.exec(stmt)
            out.append(res.all())
    return out


async def _get_owned(ctx: EngineContext, model, obj_id: str, user_id: str):
    async with ctx.session_factory() as sess:
        obj = await sess.get(model, obj_id)
    if obj is None or obj.user_id != user_id:
        raise HTTPException(status_code=404, detail=f'{model.__name__.lower()} not found')
    return obj


@app.post("/tasks")
async def create_task(body: TaskCreate, user_id: str = Depends(get_user_id), ctx: EngineContext = Depends(get_context)):
    try:
        pattern = validate_recurring_pattern(body.recurring_pattern)
    except InvalidRecurrencePattern as e:
        raise _bad_request(e)
    if pattern and body.due_date is None:
        raise HTTPException(status_code=400, detail='a recurring task requires a due date')
    now = now_utc()
    task = Task(
        user_id=user_id,
        title=body.title,
        description=body.description,
        due_date=_utc(body.due_date),
        priority=body.priority,
        space=body.space,
        board_id=body.board_id,
        recurring_pattern=pattern,
        recurring_end_date=_utc(body.recurring_end_date),
        link=body.link,
        created_at=_utc(body.created_at) or now,
        updated_at=now,
    )
    async with ctx.session_factory() as sess:
        sess.add(task)
        await sess.commit()
        await sess.refresh(task)
    logger.info('created task id=%s user=%s pattern=%r', task.id, user_id, pattern)
    return task


@app.post("/habits")
async def create_habit(body: HabitCreate, user_id: str = Depends(get_user_id), ctx: EngineContext = Depends(get_context)):
    try:
        rule = rule_for_habit(body.frequency, body.target_days)
    except InvalidRecurrencePattern as e:
        raise _bad_request(e)
    now = now_utc()
    habit = Habit(
        user_id=user_id,
        name=body.name,
        description=body.description,
        frequency=rule.kind,
        target_days=sorted(getattr(rule, 'target_days', ())),
        reminder_time=body.reminder_time,
        space=body.space,
        color=body.color,
        active=body.active,
        link=body.link,
        created_at=_utc(body.created_at) or now,
        updated_at=now,
    )
    async with ctx.session_factory() as sess:
        sess.add(habit)
        await sess.commit()
        await sess.refresh(habit)
    logger.info('created habit id=%s user=%s frequency=%s', habit.id, user_id, habit.frequency)
    return habit


async def _snapshot_for(ctx: EngineContext, tasks, habits, first_key: Optional[str] = None,
                        last_key: Optional[str] = None) -> LedgerSnapshot:
    task_snap = await ctx.task_ledger.snapshot([t.id for t in tasks], first_key, last_key)
    habit_snap = await ctx.habit_ledger.snapshot([h.id for h in habits], first_key, last_key)
    return task_snap.merge(habit_snap)


@app.get("/calendar/occurrences")
async def calendar_occurrences(start: str, end: Optional[str] = None, space: str = ALL_SPACES,
                               user_id: str = Depends(get_user_id),
                               ctx: EngineContext = Depends(get_context)):
    """Expanded occurrences of the user's tasks and active habits in the
    half-open window [start, end). ``end`` defaults to start plus the
    configured default window. ``space`` limits the result to one space
    ('work', 'personal'); 'all' returns every space."""
    try:
        if end is None:
            end = add_days(start, ctx.default_window_days)
        check_window(start, end, ctx.max_days)
    except HamflowError as e:
        raise _bad_request(e)
    tasks, habits = await _load_rows(ctx, user_id, Task, Habit, space=space)
    entities = entities_from_rows(tasks, habits)
    snapshot = await _snapshot_for(ctx, tasks, habits, start, add_days(end, -1))
    occurrences = expand(entities, start, end, snapshot, max_days=ctx.max_days)
    return {
        'start': start,
        'end': end,
        'space': space,
        'occurrences': [o.model_dump() for o in occurrences],
    }


@app.get("/habits/agenda")
async def habits_agenda(date: str, space: str = ALL_SPACES, user_id: str = Depends(get_user_id),
                        ctx: EngineContext = Depends(get_context)):
    try:
        parse_date_key(date)
    except HamflowError as e:
        raise _bad_request(e)
    (habits,) = await _load_rows(ctx, user_id, Habit, space=space)
    by_id = {str(h.id): h for h in habits}
    entities = entities_from_rows((), habits)
    snapshot = await ctx.habit_ledger.snapshot(by_id, date, date)
    out = []
    for occ in agenda_for_date(entities, date, snapshot):
        habit = by_id[occ.entity_id]
        out.append({
            'habit_id': habit.id,
            'name': habit.name,
            'occurrence_id': occ.occurrence_id,
            'date': occ.occurrence_date,
            'completed_today': occ.completed,
            'reminder_time': habit.reminder_time,
            'space': habit.space,
            'color': habit.color,
        })
    return {'date': date, 'space': space, 'habits': out}


async def _set_task_completion(task_id: str, body: CompletionRequest, done: bool, user_id: str, ctx: EngineContext):
    try:
        parse_date_key(body.date)
    except HamflowError as e:
        raise _bad_request(e)
    task = await _get_owned(ctx, Task, task_id, user_id)
    try:
        rule = parse_recurring_pattern(task.recurring_pattern)
    except InvalidRecurrencePattern as e:
        raise _bad_request(e)

    if not is_recurring(rule):
        # a one-off task carries its own completion flag; the ledger is not used
        changed = bool(task.completed) != done
        if changed:
            async with ctx.session_factory() as sess:
                row = await sess.get(Task, task.id)
                row.completed = done
                row.updated_at = now_utc()
                sess.add(row)
                await sess.commit()
        logger.info('task %s completed=%s (entity flag, changed=%s)', task.id, done, changed)
        return {'task_id': task.id, 'date': body.date, 'completed': done, 'changed': changed,
                'completion_source': 'entity_flag'}

    entity = entity_from_task(task)
    if entity is None or not entity.occurs_on(body.date):
        raise HTTPException(status_code=400, detail=f'task has no occurrence on {body.date}')
    if done:
        changed = await ctx.task_ledger.mark_complete(task.id, body.date, user_id)
    else:
        changed = await ctx.task_ledger.mark_incomplete(task.id, body.date)
    return {'task_id': task.id, 'date': body.date, 'completed': done, 'changed': changed,
            'completion_source': 'ledger'}


@app.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str, body: CompletionRequest, user_id: str = Depends(get_user_id),
                        ctx: EngineContext = Depends(get_context)):
    return await _set_task_completion(task_id, body, True, user_id, ctx)


@app.post("/tasks/{task_id}/uncomplete")
async def uncomplete_task(task_id: str, body: CompletionRequest, user_id: str = Depends(get_user_id),
                          ctx: EngineContext = Depends(get_context)):
    return await _set_task_completion(task_id, body, False, user_id, ctx)


async def _get_active_habit(ctx: EngineContext, habit_id: str, user_id: str):
    habit = await _get_owned(ctx, Habit, habit_id, user_id)
    if not habit.active:
        raise HTTPException(status_code=404, detail='habit not found')
    return habit


@app.post("/habits/{habit_id}/complete")
async def complete_habit(habit_id: str, body: CompletionRequest, user_id: str = Depends(get_user_id),
                         ctx: EngineContext = Depends(get_context)):
    try:
        parse_date_key(body.date)
    except HamflowError as e:
        raise _bad_request(e)
    habit = await _get_active_habit(ctx, habit_id, user_id)
    entity = entity_from_habit(habit)
    if entity is None or not entity.occurs_on(body.date):
        raise HTTPException(status_code=400, detail=f'habit is not scheduled on {body.date}')
    created = await ctx.habit_ledger.mark_complete(habit.id, body.date, user_id, note=body.note)
    return {'habit_id': habit.id, 'date': body.date, 'completed': True, 'changed': created}


@app.post("/habits/{habit_id}/uncomplete")
async def uncomplete_habit(habit_id: str, body: CompletionRequest, user_id: str = Depends(get_user_id),
                           ctx: EngineContext = Depends(get_context)):
    try:
        parse_date_key(body.date)
    except HamflowError as e:
        raise _bad_request(e)
    habit = await _get_active_habit(ctx, habit_id, user_id)
    deleted = await ctx.habit_ledger.mark_incomplete(habit.id, body.date)
    return {'habit_id': habit.id, 'date': body.date, 'completed': False, 'changed': deleted}


@app.get("/habits/{habit_id}/stats")
async def habit_stats(habit_id: str, now: Optional[datetime] = None, user_id: str = Depends(get_user_id),
                      ctx: EngineContext = Depends(get_context)):
    habit = await _get_active_habit(ctx, habit_id, user_id)
    snapshot = await ctx.habit_ledger.snapshot([habit.id])
    stats = compute_habit_stats(habit, snapshot, now or now_utc())
    if stats is None:
        raise HTTPException(status_code=404, detail='habit not found')
    return stats.model_dump()


@app.get("/calendar/feed-url")
async def calendar_feed(user_id: str = Depends(get_user_id), ctx: EngineContext = Depends(get_context)):
    url = calendar_feed_url(user_id, ctx.frontend_url, ctx.calendar_secret)
    return {
        'url': url,
        'token': calendar_feed_token(user_id, ctx.calendar_secret),
        'instructions': {
            'google': 'Google Calendar: Other calendars > From URL, then paste the URL.',
            'apple': 'Apple Calendar: File > New Calendar Subscription, then paste the URL.',
            'outlook': 'Outlook: Add calendar > Subscribe from web, then paste the URL.',
        },
    }


@app.get("/calendar/ical/{user_id}/{token}")
async def calendar_ical(user_id: str, token: str, ctx: EngineContext = Depends(get_context)):
    if not verify_feed_token(user_id, token, ctx.calendar_secret):
        logger.warning('calendar feed: rejected token for user=%s', user_id)
        raise HTTPException(status_code=401, detail='invalid calendar token')
    tasks, habits, reminders, sessions = await _load_rows(ctx, user_id, Task, Habit, Reminder, PomodoroSession)
    document = to_calendar_document(tasks, reminders, habits, sessions, frontend_url=ctx.frontend_url)
    return Response(
        content=document,
        media_type=CALENDAR_CONTENT_TYPE,
        headers={'Content-Disposition': f'attachment; filename="{CALENDAR_FILENAME}"'},
    )

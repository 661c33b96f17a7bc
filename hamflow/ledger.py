"""Completion ledgers: per-date completion records kept apart from the owning
task or habit row.

A record keyed ``(entity_id, date_key)`` means "the occurrence of this entity
on this local day is done". Absence means not done; there is no
``completed=False`` row. Marking is idempotent in both directions so clients
can retry or double-submit from optimistic UI. Nothing here ever touches the
Task/Habit row itself.

Expansion and stats never query the database: callers take a
``LedgerSnapshot`` first and pass it in.
"""
from datetime import datetime
import logging
from typing import Iterable, Iterator, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from .models import HabitLog, TaskCompletion
from .utils import now_utc, parse_date_key

logger = logging.getLogger(__name__)


class LedgerSnapshot:
    """Immutable set of completed ``(entity_id, date_key)`` pairs."""

    __slots__ = ('_keys',)

    def __init__(self, keys: Iterable[tuple] = ()):
        self._keys = frozenset((str(entity_id), date_key) for entity_id, date_key in keys)

    @classmethod
    def from_rows(cls, rows, entity_attr: str, date_attr: str) -> 'LedgerSnapshot':
        return cls((getattr(r, entity_attr), getattr(r, date_attr)) for r in rows)

    def is_completed(self, entity_id, date_key: str) -> bool:
        return (str(entity_id), date_key) in self._keys

    def dates_for(self, entity_id) -> list[str]:
        eid = str(entity_id)
        return sorted(d for e, d in self._keys if e == eid)

    def count(self, entity_id, first_key: Optional[str] = None, last_key: Optional[str] = None) -> int:
        """Completions of one entity between first_key and last_key inclusive."""
        n = 0
        for d in self.dates_for(entity_id):
            if first_key is not None and d < first_key:
                continue
            if last_key is not None and d > last_key:
                continue
            n += 1
        return n

    def merge(self, other: 'LedgerSnapshot') -> 'LedgerSnapshot':
        return LedgerSnapshot(self._keys | other._keys)

    def __contains__(self, key) -> bool:
        entity_id, date_key = key
        return self.is_completed(entity_id, date_key)

    def __iter__(self) -> Iterator[tuple]:
        return iter(sorted(self._keys))

    def __len__(self) -> int:
        return len(self._keys)

    def __eq__(self, other) -> bool:
        return isinstance(other, LedgerSnapshot) and self._keys == other._keys

    def __hash__(self) -> int:
        return hash(self._keys)

    def __repr__(self) -> str:
        return f'LedgerSnapshot({len(self._keys)} records)'


class CompletionLedger:
    """Database-backed ledger. Subclasses bind the table and its columns."""

    model = None
    entity_column = ''
    date_column = ''
    extra_fields: tuple = ()
    name = 'ledger'

    def __init__(self, session_factory=None):
        if session_factory is None:
            from .db import async_session as session_factory
        self._session_factory = session_factory

    def _col(self, name: str):
        return getattr(self.model, name)

    def _key_query(self, entity_id, date_key: str):
        return (select(self.model)
                .where(self._col(self.entity_column) == str(entity_id))
                .where(self._col(self.date_column) == date_key))

    def _range(self, stmt, first_key: Optional[str], last_key: Optional[str]):
        if first_key is not None:
            parse_date_key(first_key)
            stmt = stmt.where(self._col(self.date_column) >= first_key)
        if last_key is not None:
            parse_date_key(last_key)
            stmt = stmt.where(self._col(self.date_column) <= last_key)
        return stmt

    def _new_row(self, entity_id, date_key: str, user_id, completed_at: datetime, **fields):
        unknown = set(fields) - set(self.extra_fields)
        if unknown:
            raise TypeError(f'{self.name} does not store {sorted(unknown)}')
        return self.model(**{
            self.entity_column: str(entity_id),
            self.date_column: date_key,
            'user_id': str(user_id),
            'completed_at': completed_at,
            **fields,
        })

    async def is_completed(self, entity_id, date_key: str) -> bool:
        parse_date_key(date_key)
        async with self._session_factory() as sess:
            res = await sess.exec(self._key_query(entity_id, date_key))
            return res.first() is not None

    async def mark_complete(self, entity_id, date_key: str, user_id,
                            completed_at: Optional[datetime] = None, **fields) -> bool:
        """Record completion of the occurrence on ``date_key``.

        Returns True when a record was created, False when one already
        existed. Two concurrent calls for the same key converge on a single
        record: the loser of the insert race hits the unique constraint and
        is reported as already present.
        """
        parse_date_key(date_key)
        async with self._session_factory() as sess:
            res = await sess.exec(self._key_query(entity_id, date_key))
            if res.first() is not None:
                logger.info('%s.mark_complete idempotent (already completed) entity=%s date=%s',
                            self.name, entity_id, date_key)
                return False
            sess.add(self._new_row(entity_id, date_key, user_id, completed_at or now_utc(), **fields))
            try:
                await sess.commit()
            except IntegrityError:
                await sess.rollback()
                logger.info('%s.mark_complete lost insert race entity=%s date=%s; record already present',
                            self.name, entity_id, date_key)
                return False
        logger.info('%s.mark_complete persisted entity=%s date=%s user=%s', self.name, entity_id, date_key, user_id)
        return True

    async def mark_incomplete(self, entity_id, date_key: str) -> bool:
        """Hard-delete the record for ``date_key``. Returns False when there
        was nothing to delete."""
        parse_date_key(date_key)
        async with self._session_factory() as sess:
            res = await sess.exec(self._key_query(entity_id, date_key))
            rows = res.all()
            if not rows:
                return False
            for row in rows:
                await sess.delete(row)
            await sess.commit()
        logger.info('%s.mark_incomplete removed entity=%s date=%s', self.name, entity_id, date_key)
        return True

    async def snapshot(self, entity_ids: Iterable, first_key: Optional[str] = None,
                       last_key: Optional[str] = None) -> LedgerSnapshot:
        """Read every record for ``entity_ids`` (optionally limited to an
        inclusive date range) into an immutable snapshot."""
        ids = sorted({str(e) for e in entity_ids})
        if not ids:
            return LedgerSnapshot()
        stmt = select(self.model).where(self._col(self.entity_column).in_(ids))
        stmt = self._range(stmt, first_key, last_key)
        async with self._session_factory() as sess:
            res = await sess.exec(stmt)
            rows = res.all()
        return LedgerSnapshot.from_rows(rows, self.entity_column, self.date_column)

    async def count(self, entity_id, first_key: Optional[str] = None, last_key: Optional[str] = None) -> int:
        stmt = (select(func.count())
                .select_from(self.model)
                .where(self._col(self.entity_column) == str(entity_id)))
        stmt = self._range(stmt, first_key, last_key)
        async with self._session_factory() as sess:
            res = await sess.exec(stmt)
            return int(res.one())


class TaskCompletionLedger(CompletionLedger):
    model = TaskCompletion
    entity_column = 'task_id'
    date_column = 'completed_date'
    name = 'task_completions'


class HabitLogLedger(CompletionLedger):
    model = HabitLog
    entity_column = 'habit_id'
    date_column = 'log_date'
    name = 'habit_logs'

    extra_fields = ('note',)

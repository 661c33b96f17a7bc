import sys
import pathlib
import warnings
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except Exception:
    pass

# Reduce SQLAlchemy logger verbosity during tests
import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from hamflow.db import init_db, make_engine, make_session_factory
from hamflow.ledger import HabitLogLedger, TaskCompletionLedger
from hamflow.main import EngineContext, app, get_context
from hamflow.models import Habit, Task
from hamflow.utils import local_datetime, parse_hhmm

USER = 'user-1'


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def jst(date_key: str, hhmm: str = '00:00') -> datetime:
    """UTC instant of a local (JST) wall time."""
    return local_datetime(date_key, parse_hhmm(hhmm))


def make_task(**kw) -> Task:
    kw.setdefault('user_id', USER)
    kw.setdefault('title', 'task')
    return Task(**kw)


def make_habit(**kw) -> Habit:
    kw.setdefault('user_id', USER)
    kw.setdefault('name', 'habit')
    kw.setdefault('frequency', 'daily')
    return Habit(**kw)


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'hamflow.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def task_ledger(session_factory):
    return TaskCompletionLedger(session_factory)


@pytest.fixture
def habit_ledger(session_factory):
    return HabitLogLedger(session_factory)


@pytest.fixture
def ctx(session_factory):
    return EngineContext.for_sessions(session_factory, calendar_secret='test-secret',
                                      frontend_url='https://hamflow.test')


@pytest_asyncio.fixture
async def add_rows(session_factory):
    """Persist model instances directly, bypassing the API."""
    async def _add(*rows):
        async with session_factory() as sess:
            for row in rows:
                sess.add(row)
            await sess.commit()
            for row in rows:
                await sess.refresh(row)
        return rows
    return _add


@pytest_asyncio.fixture
async def client(ctx):
    app.dependency_overrides[get_context] = lambda: ctx
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers={'X-User-Id': USER}) as ac:
        yield ac
    app.dependency_overrides.pop(get_context, None)

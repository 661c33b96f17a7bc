from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import logging
import os

from . import config
# Table classes must be imported before create_all so their metadata exists.
from . import models  # noqa: F401

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL


def _sqlite_path_from_url(url: str | None) -> str | None:
    """Return the filesystem path of a sqlite URL, or None for other backends
    and in-memory databases."""
    if not url or not url.startswith('sqlite'):
        return None
    _, _, path = url.partition(':///')
    if not path or path == ':memory:':
        return None
    return path


def make_engine(url: str = DATABASE_URL) -> AsyncEngine:
    path = _sqlite_path_from_url(url)
    if path:
        parent = os.path.dirname(os.path.abspath(path))
        os.makedirs(parent, exist_ok=True)
    # Use NullPool to avoid connection-pool objects being bound to a specific
    # event loop (tests create a loop per test function).
    return create_async_engine(url, echo=False, future=True, poolclass=NullPool)


def make_session_factory(bind: AsyncEngine):
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(DATABASE_URL)
async_session = make_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None):
    """Create all tables on ``bind`` (the module engine by default)."""
    target = bind if bind is not None else engine
    async with target.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info('init_db: tables ensured on %s', target.url.render_as_string(hide_password=True))

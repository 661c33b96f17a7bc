"""Simple runtime configuration for the HamFlow recurrence engine.

Values are read from environment variables at import time so deployments can
tune them without code changes. The engine functions take these values as
defaults only; every computation accepts explicit overrides so tests never
need to patch this module.
"""
import os


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


# All "what day is it" decisions use this fixed offset (JST). It is not read
# from the environment: server and clients must agree on local-day boundaries
# regardless of where they run.
LOCAL_UTC_OFFSET_HOURS = 9
APP_TIMEZONE_NAME = 'Asia/Tokyo'

# Upper bound on the number of days a single expansion call may iterate.
# A recurring entity without recurrence end combined with a huge window would
# otherwise turn one request into unbounded work.
MAX_EXPANSION_DAYS = _int_env('MAX_EXPANSION_DAYS', 366)

# Agenda window used by the API when the client omits `end`.
DEFAULT_WINDOW_DAYS = _int_env('DEFAULT_WINDOW_DAYS', 30)

DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./hamflow.db')

# Salt for the per-user calendar subscription token.
CALENDAR_SECRET = os.getenv('CALENDAR_SECRET', 'hamflow-calendar')

# Base URL used for links embedded in exported calendar events.
FRONTEND_URL = os.getenv('FRONTEND_URL', 'http://localhost:3000')

# Exported event durations (minutes).
TASK_EVENT_MINUTES = 60
HABIT_EVENT_MINUTES = 30
REMINDER_EVENT_MINUTES = 15

# Local wall time used for habit events when the habit has no reminder time.
DEFAULT_HABIT_TIME = '09:00'

CALENDAR_NAME = 'HamFlow Tasks & Habits'
CALENDAR_DESCRIPTION = 'Your tasks and habits from HamFlow'
CALENDAR_PRODID = '-//HamFlow//Tasks Calendar//EN'

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Optional local overrides: define variables in hamflow/local_config.py to
# override the defaults above without changing versioned config.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    # No local overrides present; proceed with defaults.
    pass

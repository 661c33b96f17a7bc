from typing import List, Optional
from datetime import datetime
import uuid

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field

from .utils import now_utc


def _new_id() -> str:
    return uuid.uuid4().hex


class Task(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    title: str
    description: Optional[str] = None
    due_date: Optional[datetime] = Field(default=None, index=True)
    # 'urgent' | 'high' | 'medium' | 'low'
    priority: Optional[str] = None
    # 'work' | 'personal'
    space: str = Field(default='work', index=True)
    board_id: Optional[str] = None
    # Only meaningful for non-recurring tasks. Completion of a recurring
    # task's occurrences lives in TaskCompletion rows.
    completed: bool = Field(default=False)
    # Canonical pattern string, see hamflow.recurrence.format_recurring_pattern
    recurring_pattern: Optional[str] = None
    recurring_end_date: Optional[datetime] = None
    link: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)


class Habit(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    name: str
    description: Optional[str] = None
    # 'daily' | 'weekly'
    frequency: str
    # Weekly habits: weekdays 0=Sunday..6=Saturday. Empty means no occurrences.
    target_days: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    # Optional local wall time 'HH:MM'
    reminder_time: Optional[str] = None
    space: str = Field(default='work', index=True)
    color: Optional[str] = None
    # Inactive habits are hidden from agenda, stats and export.
    active: bool = Field(default=True, index=True)
    link: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)


class Reminder(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    task_id: Optional[str] = Field(default=None, foreign_key='task.id')
    reminder_time: Optional[datetime] = None
    message: str = ''
    sent: bool = Field(default=False)
    link: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)


class PomodoroSession(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    user_id: str = Field(index=True)
    task_id: Optional[str] = Field(default=None, foreign_key='task.id')
    # minutes
    duration: int = 25
    # 'focus' | 'break' | 'long_break'
    type: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime | None = Field(default_factory=now_utc)


class TaskCompletion(SQLModel, table=True):
    """One row per completed occurrence of a recurring task."""
    id: str = Field(default_factory=_new_id, primary_key=True)
    task_id: str = Field(foreign_key='task.id', index=True)
    # Local date key (YYYY-MM-DD) of the occurrence being marked, not "today"
    completed_date: str = Field(index=True)
    completed_at: datetime | None = Field(default_factory=now_utc)
    user_id: str = Field(index=True)
    __table_args__ = (UniqueConstraint('task_id', 'completed_date'),)


class HabitLog(SQLModel, table=True):
    """One row per completed day of a habit."""
    id: str = Field(default_factory=_new_id, primary_key=True)
    habit_id: str = Field(foreign_key='habit.id', index=True)
    log_date: str = Field(index=True)
    completed_at: datetime | None = Field(default_factory=now_utc)
    user_id: str = Field(index=True)
    note: Optional[str] = None
    __table_args__ = (UniqueConstraint('habit_id', 'log_date'),)


class Occurrence(BaseModel):
    """A computed, never persisted, dated instance of a task or habit."""
    model_config = ConfigDict(frozen=True)

    occurrence_id: str
    entity_type: str
    entity_id: str
    title: str
    occurrence_date: str
    completed: bool
    # 'entity_flag' for non-recurring entities, 'ledger' otherwise
    completion_source: str
    recurring: bool
    due_instant: Optional[str] = None
    space: Optional[str] = None


class HabitStats(BaseModel):
    habit_id: str
    expected_occurrences: int
    total_completions: int
    completion_rate: float
    current_streak: int
    longest_streak: int

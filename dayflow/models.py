from typing import Optional
from datetime import date, datetime
from enum import Enum
import json

from .utils import now_utc
from .recurrence import RecurrenceRule, parse_recurrence
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint


class TaskStatus(str, Enum):
    BACKLOG = 'backlog'
    THIS_WEEK = 'this-week'
    TODAY = 'today'
    DONE = 'done'


class TaskBase(SQLModel):
    """Fields shared by stored task templates and materialized occurrences.

    Everything except the schedule/completion fields is opaque to the
    occurrence engine and copied through unchanged.
    """
    title: str
    description: Optional[str] = None
    status: str = Field(default=TaskStatus.BACKLOG.value, index=True)
    # ordering within a status column
    position: int = Field(default=0)
    # Optional per-task priority: 1 (lowest) .. 4 (highest).
    priority: Optional[int] = Field(default=None, index=True)
    # minutes
    time_estimate: int = Field(default=0)
    time_spent: int = Field(default=0)
    progress_percentage: int = Field(default=0)
    # For recurring templates this is the anchor all occurrence math starts from.
    scheduled_date: Optional[datetime] = Field(default=None, index=True)
    created_at: datetime | None = Field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    board_id: Optional[int] = Field(default=None, index=True)
    tags_json: Optional[str] = None  # JSON-encoded list of strings
    # JSON-encoded recurrence rule (camelCase keys as written by the UI)
    recurring_json: Optional[str] = None

    @property
    def recurrence(self) -> Optional[RecurrenceRule]:
        return parse_recurrence(self.recurring_json)

    @property
    def tags(self) -> list[str]:
        if not self.tags_json:
            return []
        return list(json.loads(self.tags_json))


class Task(TaskBase, table=True):
    """Task template row. Owned by the board/task CRUD layer; read-only here."""
    id: Optional[int] = Field(default=None, primary_key=True)


class Occurrence(TaskBase):
    """One concrete calendar instance of a task, recomputed per request.

    `identity` is the key the UI sends back when toggling completion. It is
    None for non-recurring tasks, which are toggled through the task itself.
    """
    id: Optional[int] = None
    template_id: Optional[int] = None
    identity: Optional[str] = None
    instance_date: Optional[date] = None
    is_recurring_instance: bool = False


class RecurringInstance(SQLModel, table=True):
    """Persisted per-occurrence completion state.

    One row per (task_id, instance_date); `identity` duplicates the pair in
    the string form used by clients. Un-completing keeps the row with
    completed=False so the last write wins.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: int = Field(foreign_key='task.id', index=True)
    instance_date: str = Field(index=True)  # YYYY-MM-DD
    identity: str = Field(sa_column_kwargs={"unique": True, "index": True})
    completed: bool = Field(default=False, index=True)
    completed_at: Optional[datetime] = None
    created_at: datetime | None = Field(default_factory=now_utc)
    updated_at: datetime | None = Field(default_factory=now_utc)

    __table_args__ = (
        UniqueConstraint('task_id', 'instance_date', name='uq_recurringinstance_task_day'),
    )


class CompletionRecord(SQLModel):
    """Detached view of a RecurringInstance row handed to the materializer."""
    identity: str
    completed: bool
    completed_at: Optional[datetime] = None

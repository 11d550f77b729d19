"""Window requests across one or many task templates.

Completion maps are the only I/O: they are read once per template before
materialization. A failed read degrades to "no completions known" and is
reported through `sync_errors` instead of failing the window.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .completion_store import CompletionStore, CompletionStoreError
from .materializer import materialize_window
from .models import CompletionRecord, Occurrence
from .recurrence import RecurrenceValidationError
from .utils import to_calendar_day

logger = logging.getLogger(__name__)


@dataclass
class CalendarWindow:
    occurrences: list[Occurrence] = field(default_factory=list)
    truncated: bool = False
    sync_errors: list[str] = field(default_factory=list)

    @property
    def sync_error(self) -> Optional[str]:
        return '; '.join(self.sync_errors) or None


async def load_completion_map(store: CompletionStore, task_id: int) -> tuple[dict[str, CompletionRecord], Optional[str]]:
    try:
        return await store.get_completion_map(task_id), None
    except CompletionStoreError as exc:
        logger.warning('showing task id=%s without completion state: %s', task_id, exc)
        return {}, f'completion state unavailable for task {task_id}'


def _in_window(task, start, end) -> bool:
    if task.scheduled_date is None:
        return False
    day = to_calendar_day(task.scheduled_date)
    return to_calendar_day(start) <= day <= to_calendar_day(end)


def _expand(task, start, end, completion_map, max_total) -> tuple[list[Occurrence], bool]:
    # non-recurring tasks only show up on the calendar inside their own day
    if task.recurrence is None and not _in_window(task, start, end):
        return [], False
    window = materialize_window(task, start, end, completion_map, max_total=max_total)
    return window.occurrences, window.truncated


async def occurrences_for_task(task, start, end, store: CompletionStore,
                               max_total: Optional[int] = None) -> CalendarWindow:
    """Occurrences of a single template; non-recurring tasks are returned as-is."""
    if task.recurrence is None:
        return CalendarWindow(materialize_window(task, start, end, {}).occurrences)
    completion_map, err = await load_completion_map(store, task.id)
    window = materialize_window(task, start, end, completion_map, max_total=max_total)
    return CalendarWindow(window.occurrences, window.truncated, [err] if err else [])


def _sort_key(occ: Occurrence):
    dt = occ.scheduled_date
    # naive and aware datetimes cannot be compared: aware values are ordered
    # by their UTC instant, naive ones are taken as UTC
    if isinstance(dt, datetime) and dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return (dt or datetime.min, occ.template_id or 0)


async def calendar_window(tasks, start, end, store: CompletionStore,
                          max_total: Optional[int] = None) -> CalendarWindow:
    """Merged, date-ordered occurrences of many templates in one window.

    Templates with an invalid rule are skipped with a warning so one bad row
    cannot hide the rest of the calendar.
    """
    tasks = list(tasks)
    recurring = [t for t in tasks if t.recurring_json]
    loaded = await asyncio.gather(*(load_completion_map(store, t.id) for t in recurring))
    maps = {t.id: m for t, (m, _) in zip(recurring, loaded)}
    out = CalendarWindow(sync_errors=[err for _, err in loaded if err])

    for task in tasks:
        try:
            occs, truncated = _expand(task, start, end, maps.get(task.id, {}), max_total)
        except RecurrenceValidationError as exc:
            logger.warning('skipping task id=%s with invalid recurrence: %s', task.id, exc)
            continue
        out.occurrences.extend(occs)
        out.truncated = out.truncated or truncated

    out.occurrences.sort(key=_sort_key)
    if max_total is not None and len(out.occurrences) > max_total:
        out.occurrences = out.occurrences[:max_total]
        out.truncated = True
    logger.info('calendar_window tasks=%d occurrences=%d truncated=%s sync_errors=%d',
                len(tasks), len(out.occurrences), out.truncated, len(out.sync_errors))
    return out

from fastapi import FastAPI, HTTPException, Depends, Form
from sqlmodel import select
from .db import async_session, init_db
from .models import Task
from .completion_store import CompletionStore, CompletionStoreError
from .calendar_service import calendar_window, occurrences_for_task
from .identity import InvalidIdentityError, parse_instance_identity
from .occurrences import is_occurrence_day, next_occurrence
from .recurrence import RecurrenceValidationError, describe_recurrence
from .utils import now_utc, parse_iso_datetime
from datetime import date, datetime, timedelta
from typing import Optional
from contextlib import asynccontextmanager
import logging
import sys
from . import config

logger = logging.getLogger(__name__)
# Ensure INFO-level messages from this module appear on the server console when
# no handlers are configured (safe fallback for development/testing).
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info('config: DEV_MODE=%s MAX_OCCURRENCES_PER_REQUEST=%d DEFAULT_WINDOW_DAYS=%d',
                config.DEV_MODE, config.MAX_OCCURRENCES_PER_REQUEST, config.DEFAULT_WINDOW_DAYS)
    yield


app = FastAPI(lifespan=lifespan)


def get_completion_store() -> CompletionStore:
    """Completion store dependency; override in tests via app.dependency_overrides."""
    return CompletionStore(async_session)


def _parse_day(s: Optional[str], name: str) -> Optional[date]:
    try:
        dt = parse_iso_datetime(s)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid {name}: {s}")
    return dt.date() if dt else None


def _window(start: Optional[str], end: Optional[str]) -> tuple[date, date]:
    """Parse or default an inclusive [start, end] window of calendar days."""
    start_day = _parse_day(start, 'start')
    end_day = _parse_day(end, 'end')
    if start_day is None:
        start_day = now_utc().date()
    if end_day is None:
        end_day = start_day + timedelta(days=config.DEFAULT_WINDOW_DAYS)
    if end_day < start_day:
        raise HTTPException(status_code=400, detail='end must not be before start')
    return start_day, end_day


def _cap(max_total: Optional[int]) -> int:
    if max_total is None or max_total <= 0:
        return config.MAX_OCCURRENCES_PER_REQUEST
    return min(max_total, config.MAX_OCCURRENCES_PER_REQUEST)


async def _get_task(task_id: int) -> Task:
    async with async_session() as sess:
        task = await sess.get(Task, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail='task not found')
    return task


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _window_payload(window) -> dict:
    return {
        'occurrences': [o.model_dump(mode='json') for o in window.occurrences],
        'truncated': window.truncated,
        'sync_error': window.sync_error,
    }


@app.get('/tasks/{task_id}/occurrences')
async def task_occurrences(task_id: int,
                           start: Optional[str] = None,
                           end: Optional[str] = None,
                           max_total: Optional[int] = None,
                           store: CompletionStore = Depends(get_completion_store)):
    """Occurrences of one task inside [start, end] (inclusive calendar days).

    A failed completion read does not fail the request: occurrences come back
    incomplete and `sync_error` is set.
    """
    start_day, end_day = _window(start, end)
    task = await _get_task(task_id)
    try:
        window = await occurrences_for_task(task, start_day, end_day, store, max_total=_cap(max_total))
    except RecurrenceValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _window_payload(window)


@app.get('/calendar/occurrences')
async def all_occurrences(start: Optional[str] = None,
                          end: Optional[str] = None,
                          max_total: Optional[int] = None,
                          store: CompletionStore = Depends(get_completion_store)):
    """Return a flattened, date-ordered list of occurrences of every scheduled task.

    Query params:
    - start, end: ISO dates bounding the window; defaults to today and
      start + DEFAULT_WINDOW_DAYS.
    - max_total: cap on total occurrences returned (never above the
      configured MAX_OCCURRENCES_PER_REQUEST).
    """
    start_day, end_day = _window(start, end)
    async with async_session() as sess:
        res = await sess.exec(select(Task).where(Task.scheduled_date != None))  # noqa: E711
        tasks = res.all()
    window = await calendar_window(tasks, start_day, end_day, store, max_total=_cap(max_total))
    return _window_payload(window)


async def _set_completion(identity: str, completed: bool, store: CompletionStore) -> dict:
    try:
        task_id, day = parse_instance_identity(identity)
    except InvalidIdentityError as e:
        raise HTTPException(status_code=400, detail=str(e))
    task = await _get_task(task_id)
    try:
        rule = task.recurrence
    except RecurrenceValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if rule is None:
        raise HTTPException(status_code=400, detail='task is not recurring')
    if task.scheduled_date is None or not is_occurrence_day(rule, task.scheduled_date, day):
        raise HTTPException(status_code=400, detail=f'task {task_id} has no occurrence on {day.isoformat()}')
    try:
        record = await store.set_completion(identity, completed)
    except CompletionStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {'ok': True, 'identity': record.identity, 'completed': record.completed,
            'completed_at': _iso(record.completed_at)}


@app.post('/occurrence/complete')
async def mark_occurrence_completed(identity: str = Form(...),
                                    store: CompletionStore = Depends(get_completion_store)):
    """Mark a single recurring instance as completed.

    Only the instance named by `identity` changes; neither other instances nor
    the template's own status are touched.
    """
    return await _set_completion(identity, True, store)


@app.post('/occurrence/uncomplete')
async def unmark_occurrence_completed(identity: str = Form(...),
                                      store: CompletionStore = Depends(get_completion_store)):
    return await _set_completion(identity, False, store)


@app.get('/tasks/{task_id}/completions')
async def task_completions(task_id: int,
                           start: Optional[str] = None,
                           end: Optional[str] = None,
                           store: CompletionStore = Depends(get_completion_store)):
    """Completed instances of a task, or every stored record inside [start, end]."""
    await _get_task(task_id)
    try:
        if start or end:
            start_day, end_day = _window(start, end)
            records = await store.records_in_range(task_id, start_day, end_day)
        else:
            records = await store.list_completed(task_id)
    except CompletionStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {'task_id': task_id, 'records': [r.model_dump(mode='json') for r in records]}


@app.get('/tasks/{task_id}/completion-stats')
async def task_completion_stats(task_id: int, days: Optional[int] = None,
                                store: CompletionStore = Depends(get_completion_store)):
    await _get_task(task_id)
    try:
        stats = await store.completion_stats(task_id, days)
    except CompletionStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {'task_id': task_id, **stats}


@app.get('/tasks/{task_id}/recurrence')
async def task_recurrence(task_id: int):
    """Rule summary and next upcoming occurrence of a task."""
    task = await _get_task(task_id)
    try:
        rule = task.recurrence
        upcoming = next_occurrence(task, now_utc()) if rule else None
    except RecurrenceValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {
        'task_id': task_id,
        'recurring': rule is not None,
        'rule': rule.model_dump(mode='json', by_alias=True) if rule else None,
        'description': describe_recurrence(rule),
        'next_occurrence': _iso(upcoming),
    }


@app.post('/maintenance/cleanup')
async def cleanup_completions(retention_days: Optional[int] = None,
                              store: CompletionStore = Depends(get_completion_store)):
    """Purge completion records older than the retention window."""
    try:
        removed = await store.cleanup_old_records(retention_days)
    except CompletionStoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {'ok': True, 'removed': removed}

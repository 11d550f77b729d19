"""Persistence of per-occurrence completion state.

Completion of a recurring instance is tracked apart from the template's own
status, one RecurringInstance row per (task, calendar day). Every storage
failure is raised as CompletionStoreError; deciding how to degrade is left to
callers.
"""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from . import config
from .identity import instance_identity, parse_instance_identity
from .models import CompletionRecord, RecurringInstance
from .utils import now_utc, parse_iso_datetime

logger = logging.getLogger(__name__)


class CompletionStoreError(RuntimeError):
    """Raised when completion state cannot be read or written."""


def _to_record(row: RecurringInstance) -> CompletionRecord:
    return CompletionRecord(identity=row.identity, completed=row.completed, completed_at=row.completed_at)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


class CompletionStore:
    """Async completion store bound to a session factory.

    `session_factory` is called with no arguments and must return an async
    context manager yielding a SQLModel AsyncSession (e.g. db.async_session).
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get_completion_map(self, task_id: int) -> dict[str, CompletionRecord]:
        try:
            async with self._session_factory() as sess:
                res = await sess.exec(select(RecurringInstance).where(RecurringInstance.task_id == task_id))
                rows = res.all()
        except SQLAlchemyError as exc:
            logger.exception('failed to load completion map task_id=%s', task_id)
            raise CompletionStoreError(f'failed to load completions for task {task_id}') from exc
        return {r.identity: _to_record(r) for r in rows}

    async def is_completed(self, identity: str) -> bool:
        try:
            async with self._session_factory() as sess:
                res = await sess.exec(select(RecurringInstance).where(RecurringInstance.identity == identity))
                row = res.first()
        except SQLAlchemyError as exc:
            raise CompletionStoreError(f'failed to read completion {identity}') from exc
        return bool(row and row.completed)

    async def set_completion(self, identity: str, completed: bool,
                             completed_at: Optional[datetime] = None) -> CompletionRecord:
        """Record completion state for one instance; the last write wins.

        Raises InvalidIdentityError for a malformed identity and
        CompletionStoreError when the write fails.
        """
        task_id, day = parse_instance_identity(identity)
        identity = instance_identity(task_id, day)
        if completed:
            completed_at = completed_at or now_utc()
        else:
            completed_at = None
        try:
            return await self._upsert(task_id, day, identity, completed, completed_at)
        except IntegrityError:
            # a concurrent toggle inserted the row first; apply ours on top
            logger.info('set_completion retrying after concurrent insert identity=%s', identity)
            try:
                return await self._upsert(task_id, day, identity, completed, completed_at)
            except SQLAlchemyError as exc:
                raise CompletionStoreError(f'failed to store completion {identity}') from exc
        except SQLAlchemyError as exc:
            logger.exception('failed to store completion identity=%s', identity)
            raise CompletionStoreError(f'failed to store completion {identity}') from exc

    async def _upsert(self, task_id: int, day: date, identity: str, completed: bool,
                      completed_at: Optional[datetime]) -> CompletionRecord:
        async with self._session_factory() as sess:
            res = await sess.exec(select(RecurringInstance).where(RecurringInstance.identity == identity))
            row = res.first()
            if row is None:
                row = RecurringInstance(task_id=task_id, instance_date=day.isoformat(), identity=identity)
            row.completed = completed
            row.completed_at = completed_at
            row.updated_at = now_utc()
            sess.add(row)
            try:
                await sess.commit()
            except SQLAlchemyError:
                await sess.rollback()
                raise
            logger.info('completion stored identity=%s completed=%s', identity, completed)
            return _to_record(row)

    async def list_completed(self, task_id: int) -> list[CompletionRecord]:
        """Completed instances of a task ordered by instance date."""
        q = (select(RecurringInstance)
             .where(RecurringInstance.task_id == task_id)
             .where(RecurringInstance.completed == True)  # noqa: E712
             .order_by(RecurringInstance.instance_date.asc()))
        return [_to_record(r) for r in await self._fetch(q, f'completed instances of task {task_id}')]

    async def records_in_range(self, task_id: int, start_day: date, end_day: date) -> list[CompletionRecord]:
        q = (select(RecurringInstance)
             .where(RecurringInstance.task_id == task_id)
             .where(RecurringInstance.instance_date >= start_day.isoformat())
             .where(RecurringInstance.instance_date <= end_day.isoformat())
             .order_by(RecurringInstance.instance_date.asc()))
        return [_to_record(r) for r in await self._fetch(q, f'instances of task {task_id} in range')]

    async def completion_stats(self, task_id: int, days: Optional[int] = None,
                               today: Optional[date] = None) -> dict:
        """Completion counts for instances dated within the last `days` days."""
        days = config.COMPLETION_STATS_DAYS if days is None else days
        today = today or now_utc().date()
        since = (today - timedelta(days=days)).isoformat()
        q = (select(RecurringInstance)
             .where(RecurringInstance.task_id == task_id)
             .where(RecurringInstance.instance_date >= since))
        rows = await self._fetch(q, f'completion stats of task {task_id}')
        total = len(rows)
        completed = sum(1 for r in rows if r.completed)
        rate = (completed / total) * 100 if total else 0.0
        return {'total': total, 'completed': completed, 'completion_rate': rate}

    async def cleanup_old_records(self, retention_days: Optional[int] = None,
                                  today: Optional[date] = None) -> int:
        """Delete records whose instance date is older than the retention window."""
        retention_days = config.COMPLETION_RETENTION_DAYS if retention_days is None else retention_days
        today = today or now_utc().date()
        cutoff = today - timedelta(days=retention_days)
        removed = await self.delete_before(cutoff)
        if removed:
            logger.info('cleaned up %d recurring instance records older than %s', removed, cutoff)
        return removed

    async def delete_before(self, cutoff: date, task_id: Optional[int] = None) -> int:
        """Delete records dated strictly before `cutoff`, optionally for one task."""
        where = [RecurringInstance.instance_date < cutoff.isoformat()]
        if task_id is not None:
            where.append(RecurringInstance.task_id == task_id)
        return await self._delete(*where)

    async def clear(self, task_id: Optional[int] = None) -> int:
        if task_id is None:
            return await self._delete()
        return await self._delete(RecurringInstance.task_id == task_id)

    async def export_json(self, task_id: Optional[int] = None) -> str:
        """Serialize records keyed by identity for backup."""
        q = select(RecurringInstance).order_by(RecurringInstance.task_id, RecurringInstance.instance_date)
        if task_id is not None:
            q = q.where(RecurringInstance.task_id == task_id)
        rows = await self._fetch(q, 'completion export')
        data = {
            r.identity: {
                'taskId': r.task_id,
                'instanceDate': r.instance_date,
                'completed': r.completed,
                'completedAt': _iso(r.completed_at),
            }
            for r in rows
        }
        return json.dumps(data, indent=2, sort_keys=True)

    async def import_json(self, payload) -> int:
        """Restore records from export_json() output.

        Also accepts the older browser-storage layout, whose entries carry only
        `completedAt` and are all completions. Raises ValueError (or
        InvalidIdentityError) for malformed input before any record is written.
        """
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise ValueError(f'invalid completion backup: {exc}') from exc
        if not isinstance(payload, dict):
            raise ValueError('completion backup must be a JSON object keyed by identity')
        # check every entry before writing so a bad backup changes nothing
        entries = []
        for key, value in payload.items():
            if value is None:
                value = {}
            if not isinstance(value, dict):
                raise ValueError(f'completion backup entry {key!r} must be an object')
            task_id, day = parse_instance_identity(key)
            completed = bool(value.get('completed', True))
            completed_at = parse_iso_datetime(value.get('completedAt')) if completed else None
            entries.append((instance_identity(task_id, day), completed, completed_at))
        for identity, completed, completed_at in entries:
            await self.set_completion(identity, completed, completed_at)
        count = len(entries)
        logger.info('imported %d recurring instance records', count)
        return count

    async def _fetch(self, q, what: str) -> list[RecurringInstance]:
        try:
            async with self._session_factory() as sess:
                res = await sess.exec(q)
                return res.all()
        except SQLAlchemyError as exc:
            logger.exception('failed to load %s', what)
            raise CompletionStoreError(f'failed to load {what}') from exc

    async def _delete(self, *where) -> int:
        del_q = sqlalchemy_delete(RecurringInstance)
        if where:
            del_q = del_q.where(*where)
        try:
            async with self._session_factory() as sess:
                res = await sess.execute(del_q)
                await sess.commit()
        except SQLAlchemyError as exc:
            logger.exception('failed to delete recurring instance records')
            raise CompletionStoreError('failed to delete recurring instance records') from exc
        return res.rowcount or 0

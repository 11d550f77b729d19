#!/usr/bin/env python3
"""Purge RecurringInstance completion rows from the DB.

Usage:
  python scripts/purge_recurring_instances.py --dry-run
  python scripts/purge_recurring_instances.py --retention-days 90 --yes
  python scripts/purge_recurring_instances.py --task 12 --before 2025-01-01 --yes

Defaults to a dry-run: you must pass --yes to actually delete rows. Without
--task/--before the configured retention window is applied.
"""
import argparse
import asyncio
import sys
from datetime import date, timedelta
from pathlib import Path

# Ensure project root is on sys.path when running the script directly
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from sqlmodel import select

from dayflow import config
from dayflow.completion_store import CompletionStore
from dayflow.db import async_session, init_db
from dayflow.models import RecurringInstance


def _cutoff(args) -> date | None:
    if args.before:
        try:
            return date.fromisoformat(args.before[:10])
        except ValueError:
            return None
    days = args.retention_days if args.retention_days is not None else config.COMPLETION_RETENTION_DAYS
    return date.today() - timedelta(days=days)


async def main(args):
    await init_db()
    cutoff = _cutoff(args)
    if cutoff is None:
        print('Invalid --before date; use ISO format like 2025-01-01')
        return 2
    where = [RecurringInstance.instance_date < cutoff.isoformat()]
    if args.task is not None:
        where.append(RecurringInstance.task_id == int(args.task))

    async with async_session() as sess:
        res = await sess.exec(select(RecurringInstance).where(*where))
        rows = res.all()
    print(f'Found {len(rows)} RecurringInstance rows dated before {cutoff.isoformat()}')
    if rows:
        print('Sample rows:')
        for r in rows[:10]:
            print(f'  id={r.id} identity={r.identity} completed={r.completed} completed_at={r.completed_at}')
    if args.dry_run:
        print('Dry-run mode; no rows will be deleted.')
        return 0
    if not args.yes:
        print('\nTo actually delete these rows re-run with --yes')
        return 0

    store = CompletionStore(async_session)
    removed = await store.delete_before(cutoff, task_id=args.task)
    print(f'Deleted {removed} rows')
    return 0


if __name__ == '__main__':
    p = argparse.ArgumentParser(description='Purge recurring instance completion rows')
    p.add_argument('--dry-run', action='store_true', help='List matching rows but do not delete')
    p.add_argument('--yes', action='store_true', help='Actually perform deletion')
    p.add_argument('--task', type=int, help='Restrict to a specific task id')
    p.add_argument('--before', type=str, help='Only delete instances dated before this ISO date (e.g. 2025-01-01)')
    p.add_argument('--retention-days', type=int, help='Delete instances older than this many days (default from config)')
    args = p.parse_args()
    try:
        raise SystemExit(asyncio.run(main(args)))
    except KeyboardInterrupt:
        print('\nAborted by user')
        raise

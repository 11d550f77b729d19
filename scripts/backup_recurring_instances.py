#!/usr/bin/env python3
"""Export or import recurring instance completion state as JSON.

Usage:
  python scripts/backup_recurring_instances.py export completions.json
  python scripts/backup_recurring_instances.py export completions.json --task 12
  python scripts/backup_recurring_instances.py import completions.json

Import also accepts the browser-storage dump written by older clients
(an object keyed by "<task_id>-<YYYY-MM-DD>" with a completedAt field).
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Ensure project root is on sys.path when running the script directly
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from dayflow.completion_store import CompletionStore
from dayflow.db import async_session, init_db


async def main(args):
    await init_db()
    store = CompletionStore(async_session)
    path = Path(args.path)
    if args.command == 'export':
        data = await store.export_json(task_id=args.task)
        path.write_text(data, encoding='utf-8')
        print(f'Wrote completion backup to {path}')
        return 0
    if not path.exists():
        print(f'No such file: {path}')
        return 2
    count = await store.import_json(path.read_text(encoding='utf-8'))
    print(f'Imported {count} recurring instance records')
    return 0


if __name__ == '__main__':
    p = argparse.ArgumentParser(description='Backup/restore recurring instance completions')
    p.add_argument('command', choices=('export', 'import'))
    p.add_argument('path', help='JSON file to write or read')
    p.add_argument('--task', type=int, help='Export only this task id')
    args = p.parse_args()
    try:
        raise SystemExit(asyncio.run(main(args)))
    except KeyboardInterrupt:
        print('\nAborted by user')
        raise

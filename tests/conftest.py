import sys
import pathlib
import os
import tempfile
import json
import pytest
import pytest_asyncio
import logging as _logging

# Point the app at a throwaway SQLite file before dayflow.db creates its
# engine. Tests share it for the session; each test creates its own tasks.
_TMP_DIR = tempfile.mkdtemp(prefix='dayflow-tests-')
os.environ.setdefault('DATABASE_URL', f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}")

# Reduce SQLAlchemy logger verbosity during tests
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from httpx import AsyncClient, ASGITransport

from dayflow.main import app
from dayflow.db import init_db, async_session
from dayflow.models import Task
from dayflow.completion_store import CompletionStore
from sqlalchemy.exc import OperationalError


@pytest_asyncio.fixture
async def ensure_db():
    await init_db()


@pytest_asyncio.fixture
async def store(ensure_db):
    return CompletionStore(async_session)


class _BrokenSession:
    """Session stand-in whose connection always fails."""

    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def broken_store():
    return CompletionStore(lambda: _BrokenSession())


@pytest_asyncio.fixture
async def make_task(ensure_db):
    """Factory inserting a Task row; `recurring` may be a dict or None.

        task = await make_task(scheduled_date=datetime(2024, 1, 1, 9),
                               recurring={'pattern': 'daily', 'interval': 1})
    """
    async def _make(title='recurring task', recurring=None, **fields):
        if recurring is not None and not isinstance(recurring, str):
            recurring = json.dumps(recurring)
        task = Task(title=title, recurring_json=recurring, **fields)
        async with async_session() as sess:
            sess.add(task)
            await sess.commit()
            await sess.refresh(task)
        return task
    return _make


@pytest_asyncio.fixture
async def client(ensure_db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def pytest_sessionfinish(session, exitstatus):
    """Dispose the async engine so pooled connections close before shutdown."""
    import asyncio
    from dayflow import db as app_db
    try:
        asyncio.run(app_db.engine.dispose())
    except RuntimeError:
        # an event loop is still running (e.g. under some plugins); skip disposal
        pass

from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text
from sqlalchemy.pool import NullPool

import logging

from . import config
# imported for table registration on SQLModel.metadata
from . import models  # noqa: F401

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

# NullPool: every session opens its own aiosqlite connection, which keeps
# engines usable across the separate event loops pytest-asyncio creates.
engine = create_async_engine(DATABASE_URL, echo=False, future=True, poolclass=NullPool)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# Columns added after the first release. SQLite's CREATE TABLE won't alter
# existing tables, so older database files get them via ALTER TABLE.
_TASK_COLUMNS = {
    'progress_percentage': "ALTER TABLE task ADD COLUMN progress_percentage INTEGER DEFAULT 0 NOT NULL",
    'time_spent': "ALTER TABLE task ADD COLUMN time_spent INTEGER DEFAULT 0 NOT NULL",
    'recurring_json': "ALTER TABLE task ADD COLUMN recurring_json TEXT",
}


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        if engine.dialect.name != 'sqlite':
            return
        res = await conn.execute(text("PRAGMA table_info('task')"))
        cols = [r[1] for r in res.fetchall()]
        for name, sql in _TASK_COLUMNS.items():
            if name in cols:
                continue
            logger.info('init_db: adding missing column task.%s', name)
            await conn.execute(text(sql))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS ix_recurringinstance_task_completed "
            "ON recurringinstance(task_id, completed)"))

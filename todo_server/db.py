from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import logging

from . import config

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    # SQLite connections are cheap to open and must not be shared across
    # event loops (pytest-asyncio gives each test its own loop), so skip
    # pooling for file-backed SQLite.
    if url.startswith('sqlite'):
        return {'poolclass': NullPool, 'connect_args': {'check_same_thread': False}}
    return {'pool_pre_ping': True}


engine = create_async_engine(DATABASE_URL, echo=False, **_engine_kwargs(DATABASE_URL))

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    # import models so their tables are registered on SQLModel.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info('database ready at %s', DATABASE_URL)


async def reset_db():
    """Drop and recreate every table. Used by the test-suite."""
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)


async def dispose_engine():
    await engine.dispose()

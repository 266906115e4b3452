from __future__ import annotations

from pathlib import Path

from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker

from discotrack.config import get_settings, get_tracker_config
from discotrack.models import db  # noqa: F401  registers tables on SQLModel.metadata

_engine = None
_session_factory = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        url = get_tracker_config().database_url(get_settings())

        # Ensure the log directory exists for SQLite
        if "sqlite" in url and ":memory:" not in url and "///" in url:
            db_path = url.split("///")[-1]
            if db_path:
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        _engine = create_async_engine(url, echo=False)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_factory


async def init_db():
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def dispose_db():
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_session() -> AsyncSession:
    factory = get_session_factory()
    async with factory() as session:
        yield session

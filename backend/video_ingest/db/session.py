from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from video_ingest.core.settings import get_settings


_engines_by_loop: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, object] = weakref.WeakKeyDictionary()
_sessionmakers_by_loop: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, async_sessionmaker[AsyncSession]] = (
    weakref.WeakKeyDictionary()
)


def _loop_cache_key() -> asyncio.AbstractEventLoop:
    # asyncpg connections are bound to the loop that opened them; the API, the
    # worker process and pytest-asyncio each run their own loop.
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.get_event_loop()
    return loop


def get_engine():
    key = _loop_cache_key()
    engine = _engines_by_loop.get(key)
    if engine is None:
        settings = get_settings()
        engine = create_async_engine(
            settings.database_url,
            pool_pre_ping=True,
        )
        _engines_by_loop[key] = engine
    return engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    key = _loop_cache_key()
    maker = _sessionmakers_by_loop.get(key)
    if maker is None:
        maker = async_sessionmaker(
            bind=get_engine(),
            expire_on_commit=False,
            autoflush=False,
            autocommit=False,
        )
        _sessionmakers_by_loop[key] = maker
    return maker


async def dispose_engine() -> None:
    engine = _engines_by_loop.pop(_loop_cache_key(), None)
    _sessionmakers_by_loop.pop(_loop_cache_key(), None)
    if engine is not None:
        await engine.dispose()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    SessionLocal = get_session_maker()
    async with SessionLocal() as session:
        yield session

"""Booking store engine, session dependency and schema bootstrap."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from functools import lru_cache

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from clinic_os.config import get_settings
from clinic_os.core.models import Base

logger = logging.getLogger(__name__)


def get_database_url() -> str:
    return get_settings().core_database_url


@lru_cache
def _get_engine() -> AsyncEngine:
    url = make_url(get_database_url())
    options = {"echo": get_settings().sql_echo}
    # aiosqlite connections are local files; there is nothing to ping
    if url.get_backend_name() != "sqlite":
        options["pool_pre_ping"] = True
    logger.debug(f"Creating booking store engine for {url.render_as_string(hide_password=True)}")
    return create_async_engine(url, **options)


@lru_cache
def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(_get_engine(), class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request.

    The request's bookings are committed together when the handler returns;
    any exception rolls all of them back.
    """
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the series and occurrence tables (dev only; production uses migrations)."""
    async with _get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Booking store tables created")


async def close_db() -> None:
    """Dispose the cached engine so the next use reads the current settings."""
    if _get_engine.cache_info().currsize:
        await _get_engine().dispose()
    _get_session_factory.cache_clear()
    _get_engine.cache_clear()

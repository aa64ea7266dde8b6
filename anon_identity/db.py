from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from anon_identity.settings import get_settings

T = TypeVar("T")
SessionFactory = async_sessionmaker[AsyncSession]


class Base(DeclarativeBase):
    pass


def create_engine_from_url(database_url: str, *, echo: bool = False) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=300,
    )


def create_session_factory(bind: AsyncEngine) -> SessionFactory:
    return async_sessionmaker(bind=bind, expire_on_commit=False, autoflush=False)


_settings = get_settings()
engine: AsyncEngine = create_engine_from_url(_settings.database_url, echo=_settings.database_echo)
SessionLocal: SessionFactory = create_session_factory(engine)

# Keeps strong references so detached units of work are not garbage collected mid-flight.
_DETACHED_TASKS: set[asyncio.Task[Any]] = set()


def get_session_factory() -> SessionFactory:
    return SessionLocal


async def run_detached_unit_of_work(
    session_factory: SessionFactory,
    work: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    """Run `work` in its own session, shielded from cancellation of the caller.

    A client disconnect cancels the request task; the write it started still
    finishes (or fails) on its own, so completed writes are never half-observed.
    """

    async def _runner() -> T:
        async with session_factory() as session:
            return await work(session)

    task = asyncio.ensure_future(_runner())
    _DETACHED_TASKS.add(task)
    task.add_done_callback(_DETACHED_TASKS.discard)
    return await asyncio.shield(task)

from __future__ import annotations
import logging
import time
from typing import AsyncIterator
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from .config import get_settings

log = logging.getLogger("app.sql")
S = get_settings()


def _watch_slow_queries(eng: AsyncEngine, threshold_ms: int) -> None:
    """Warn on any statement slower than threshold_ms."""

    @event.listens_for(eng.sync_engine, "before_cursor_execute")
    def _start(conn, cursor, statement, parameters, context, executemany):
        context._otp_t0 = time.perf_counter()

    @event.listens_for(eng.sync_engine, "after_cursor_execute")
    def _stop(conn, cursor, statement, parameters, context, executemany):
        t0 = getattr(context, "_otp_t0", None)
        if t0 is None:
            return
        elapsed_ms = int((time.perf_counter() - t0) * 1000)
        if elapsed_ms >= threshold_ms:
            log.warning("slow_query", extra={"extra": f"ms={elapsed_ms} sql={statement[:200]!r}"})


engine = create_async_engine(S.DATABASE_URL, pool_pre_ping=True)
_watch_slow_queries(engine, S.SLOW_QUERY_MS)

# records are copied out of ORM rows right after commit, so keep attributes loaded
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def db_health() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        log.warning("db_health_failed", exc_info=True)
        return False
    return True

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, AsyncGenerator

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from chainsync.shared.core.config import get_settings

logger = structlog.get_logger()

# Ensure ORM mappings are registered for workers that import the DB layer
# without importing `chainsync/main.py`.
import chainsync.models  # noqa: F401, E402

SLOW_QUERY_THRESHOLD_SECONDS = 0.2


@dataclass(slots=True)
class _DBRuntime:
    settings: Any
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    if bool(getattr(settings_obj, "TESTING", False)) and "sqlite" not in db_url:
        # Safety: protect tests from accidental writes to real databases.
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
    }
    if "sqlite" in effective_url:
        pool_config["poolclass"] = StaticPool
        return pool_config

    pool_config.update(
        {
            "pool_recycle": int(settings_obj.DB_POOL_RECYCLE),
            "pool_size": int(settings_obj.DB_POOL_SIZE),
            "max_overflow": int(settings_obj.DB_MAX_OVERFLOW),
            "pool_timeout": int(settings_obj.DB_POOL_TIMEOUT),
        }
    )
    return pool_config


def before_cursor_execute(
    conn: Connection,
    _cursor: Any,
    _statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Connection,
    _cursor: Any,
    statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Log slow queries."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    if total > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
        )


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    db_url = str(getattr(settings_obj, "DATABASE_URL", "") or "").strip()
    if not db_url and not settings_obj.TESTING:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    effective_url = _resolve_effective_url(settings_obj)
    engine = create_async_engine(
        effective_url, **_build_pool_config(settings_obj, effective_url)
    )
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(
        settings=settings_obj,
        engine=engine,
        session_maker=session_maker,
        effective_url=effective_url,
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


async def dispose_db_runtime() -> None:
    """Dispose the engine; the next access rebuilds it from current settings."""
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None
    if runtime is not None:
        await runtime.engine.dispose()


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def async_session_maker(*args: Any, **kwargs: Any) -> Any:
    """Return a new async session from the active session factory."""
    return _get_db_runtime().session_maker(*args, **kwargs)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def health_check() -> dict[str, Any]:
    """Round-trip a trivial query and report latency."""
    start = time.perf_counter()
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        return {"status": "down", "error": str(exc)}
    return {"status": "up", "latency_ms": round((time.perf_counter() - start) * 1000, 2)}

"""Async database engine and session management utilities.

SQLite handling for many agents writing to one inbox store:

- WAL mode so readers never block the single writer
- Exponential backoff with jitter on lock contention
- Circuit breaker to fail fast during prolonged lock storms

Every logical operation (message insert, each notification insert, activity
append) runs in its own short-lived session and commits on its own. Nothing here
spans a transaction across those writes.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from enum import Enum
from functools import wraps
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError, TimeoutError as SATimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from . import models  # noqa: F401  (registers tables on SQLModel.metadata)
from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings

T = TypeVar("T")
_logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None

_circuit_breaker_failures: int = 0
_circuit_breaker_open_until: float = 0.0
_CIRCUIT_BREAKER_THRESHOLD: int = 5
_CIRCUIT_BREAKER_RESET_SECONDS: float = 30.0
_CIRCUIT_BREAKER_LOCK: asyncio.Lock | None = None


class CircuitState(Enum):
    """Circuit breaker states for database operations."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """Raised when circuit breaker is open and operation should not proceed."""


def _get_circuit_breaker_lock() -> asyncio.Lock:
    global _CIRCUIT_BREAKER_LOCK
    if _CIRCUIT_BREAKER_LOCK is None:
        _CIRCUIT_BREAKER_LOCK = asyncio.Lock()
    return _CIRCUIT_BREAKER_LOCK


def get_circuit_state() -> CircuitState:
    """Get current circuit breaker state (non-blocking check)."""
    now = time.monotonic()
    if _circuit_breaker_open_until > now:
        return CircuitState.OPEN
    if _circuit_breaker_failures >= _CIRCUIT_BREAKER_THRESHOLD:
        return CircuitState.HALF_OPEN
    return CircuitState.CLOSED


async def _record_circuit_success() -> None:
    global _circuit_breaker_failures, _circuit_breaker_open_until
    async with _get_circuit_breaker_lock():
        _circuit_breaker_failures = 0
        _circuit_breaker_open_until = 0.0


async def _record_circuit_failure() -> None:
    global _circuit_breaker_failures, _circuit_breaker_open_until
    async with _get_circuit_breaker_lock():
        _circuit_breaker_failures += 1
        if _circuit_breaker_failures >= _CIRCUIT_BREAKER_THRESHOLD:
            _circuit_breaker_open_until = time.monotonic() + _CIRCUIT_BREAKER_RESET_SECONDS
            _logger.warning(
                "circuit_breaker.opened",
                extra={
                    "failures": _circuit_breaker_failures,
                    "reset_seconds": _CIRCUIT_BREAKER_RESET_SECONDS,
                },
            )


def _is_lock_error(error_msg: str) -> bool:
    lower_msg = error_msg.lower()
    return any(
        phrase in lower_msg
        for phrase in (
            "database is locked",
            "database is busy",
            "locked",
        )
    )


def _is_pool_exhausted_error(exc: Exception) -> bool:
    if isinstance(exc, SATimeoutError):
        return True
    error_msg = str(exc).lower()
    return "pool" in error_msg and ("timeout" in error_msg or "exhausted" in error_msg)


def retry_on_db_lock(
    max_retries: int = 7,
    base_delay: float = 0.05,
    max_delay: float = 8.0,
    use_circuit_breaker: bool = True,
) -> Callable[..., Any]:
    """Decorator to retry async functions on SQLite lock errors with exponential backoff + jitter.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        use_circuit_breaker: Whether to consult and update the circuit breaker

    Only lock and pool-exhaustion errors are retried; anything else is re-raised
    immediately. The decorated coroutine must be safe to re-run, which holds for
    the single-statement writes it wraps here.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception: Exception | None = None
            func_name = getattr(func, "__qualname__", getattr(func, "__name__", "<callable>"))

            if use_circuit_breaker and get_circuit_state() == CircuitState.OPEN:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker is open for database operations; {func_name} was not attempted."
                )

            for attempt in range(max_retries + 1):
                try:
                    result = await func(*args, **kwargs)
                    if use_circuit_breaker and attempt > 0:
                        await _record_circuit_success()
                    return result
                except (OperationalError, SATimeoutError) as e:
                    error_msg = str(e)
                    is_lock = _is_lock_error(error_msg)
                    is_pool = _is_pool_exhausted_error(e)

                    if not (is_lock or is_pool) or attempt >= max_retries:
                        if use_circuit_breaker:
                            await _record_circuit_failure()
                        raise

                    last_exception = e
                    delay = min(base_delay * (2**attempt), max_delay)
                    jitter = delay * 0.25 * (2 * random.random() - 1)
                    total_delay = max(0.01, delay + jitter)

                    error_type = "pool_exhausted" if is_pool else "db_locked"
                    _logger.warning(
                        f"db.{error_type}",
                        extra={
                            "function": func_name,
                            "attempt": attempt + 1,
                            "max_retries": max_retries,
                            "delay_seconds": round(total_delay, 3),
                            "error": error_msg[:200],
                        },
                    )
                    await asyncio.sleep(total_delay)

            if use_circuit_breaker:
                await _record_circuit_failure()
            if last_exception:
                raise last_exception
            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Build the async engine; SQLite connections get WAL and a long busy timeout."""
    connect_args: dict[str, Any] = {}
    is_sqlite = "sqlite" in settings.url.lower()
    engine_kwargs: dict[str, Any] = {}

    if is_sqlite:
        # SQLite returns "unable to open database file" when the parent directory is missing.
        parsed = make_url(settings.url)
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        connect_args = {
            "timeout": 60.0,
            "check_same_thread": False,
        }
    else:
        engine_kwargs = {
            "pool_size": settings.pool_size if settings.pool_size is not None else 25,
            "max_overflow": settings.max_overflow if settings.max_overflow is not None else 25,
            "pool_timeout": settings.pool_timeout if settings.pool_timeout is not None else 30,
            "pool_recycle": 1800,
        }

    engine = create_async_engine(
        settings.url,
        echo=settings.echo,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
        **engine_kwargs,
    )

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA busy_timeout=60000")
                cursor.execute("PRAGMA temp_store=MEMORY")
            finally:
                cursor.close()

    return engine


def init_engine(settings: Settings | None = None) -> None:
    """Initialise global engine and session factory once."""
    global _engine, _session_factory
    if _engine is not None and _session_factory is not None:
        return
    resolved_settings = settings or get_settings()
    engine = _build_engine(resolved_settings.database)
    _engine = engine
    _session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def get_engine() -> AsyncEngine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Provide an async database session that is closed even under task cancellation."""
    factory = get_session_factory()
    session = factory()
    try:
        yield session
    finally:
        close_task = asyncio.create_task(session.close())
        try:
            await asyncio.shield(close_task)
        except BaseException:
            with suppress(BaseException):
                await close_task
            raise


def get_db_health_status() -> dict[str, Any]:
    """Return circuit breaker state for the readiness probe and the health_check tool."""
    state = get_circuit_state()
    status: dict[str, Any] = {
        "circuit_state": state.value,
        "circuit_failures": _circuit_breaker_failures,
        "schema_ready": _schema_ready,
    }
    if state == CircuitState.OPEN:
        status["recommendation"] = (
            "Circuit breaker is OPEN. The database is seeing sustained lock contention; "
            "look for long-running transactions holding the write lock."
        )
    return status


@retry_on_db_lock(max_retries=7, base_delay=0.1, max_delay=8.0, use_circuit_breaker=False)
async def ensure_schema(settings: Settings | None = None) -> None:
    """Create tables from the SQLModel definitions plus the scan indexes.

    Both message generations are created side by side; nothing here copies
    rows between them.
    """
    global _schema_ready, _schema_lock
    if _schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if _schema_ready:
            return
        init_engine(settings)
        engine = get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
            await conn.run_sync(_setup_indexes)
        _schema_ready = True


def reset_database_state() -> None:
    """Test helper to reset global engine/session state and the circuit breaker."""
    global _engine, _session_factory, _schema_ready, _schema_lock
    global _circuit_breaker_failures, _circuit_breaker_open_until, _CIRCUIT_BREAKER_LOCK
    if _engine is not None:
        engine = _engine
        try:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not None and running.is_running():
                engine.sync_engine.dispose()
            else:
                asyncio.run(engine.dispose())
        except Exception:
            with suppress(Exception):
                engine.sync_engine.dispose()
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None
    _circuit_breaker_failures = 0
    _circuit_breaker_open_until = 0.0
    _CIRCUIT_BREAKER_LOCK = None
    clear_settings_cache()


def _setup_indexes(connection: Any) -> None:
    # Descending variants back the newest-first scans (dms_for, unread detail, recent).
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_messages_kind_recipient_created "
        "ON messages(kind, recipient, created_ts DESC, id DESC)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_messages_created_id ON messages(created_ts DESC, id DESC)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_notifications_recipient_created "
        "ON notifications(recipient, created_ts DESC, id DESC)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_notifications_created ON notifications(created_ts)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_agent_messages_pair_created "
        "ON agent_messages(sender_id, recipient_id, created_ts)"
    )

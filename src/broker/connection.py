"""
Broker connection management.

A Link owns the physical connection (an async SQLAlchemy engine and its pool)
and hands out channels: one session per broker operation. All operations in a
process multiplex over one Link.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import ArgumentError, DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.broker.models import Base
from src.config import get_settings
from src.errors import BrokerConnectionError

logger = logging.getLogger(__name__)

_ASYNC_DRIVERS = [
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
]


def to_async_url(endpoint: str) -> str:
    """Convert a sync broker URL to its async driver equivalent."""
    for sync_prefix, async_prefix in _ASYNC_DRIVERS:
        if endpoint.startswith(sync_prefix):
            return endpoint.replace(sync_prefix, async_prefix, 1)
    return endpoint


def _redact(endpoint: str) -> str:
    """Strip credentials from a URL before logging it."""
    return endpoint.split("@")[-1] if "@" in endpoint else endpoint


def _engine_kwargs(endpoint: str) -> dict[str, Any]:
    """Return driver-specific engine configuration."""
    settings = get_settings()
    base: dict[str, Any] = {"echo": settings.log_level == "DEBUG"}

    if endpoint.startswith("sqlite"):
        return base

    return {
        **base,
        "pool_size": settings.broker_pool_size,
        "max_overflow": settings.broker_max_overflow,
        "pool_pre_ping": True,
    }


def is_retryable(exc: BaseException) -> bool:
    """
    Classify a connection failure.

    Network-level and driver operational errors mean the broker may simply not
    be ready yet. Anything else (bad credentials syntax, unknown driver) will
    not fix itself.
    """
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError):
        return exc.connection_invalidated
    return isinstance(exc, (OSError, TimeoutError))


class Link:
    """
    Explicitly owned connection to the broker.

    Usage:
        link = await connect(url)
        async with link.channel() as session:
            ...
        await link.close()
    """

    def __init__(self, engine: AsyncEngine, endpoint: str):
        self._engine = engine
        self._endpoint = endpoint
        self._sessionmaker = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._closed = False

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    @property
    def is_closed(self) -> bool:
        return self._closed

    @asynccontextmanager
    async def channel(self) -> AsyncGenerator[AsyncSession]:
        """
        Open a channel for one broker operation.

        Commits when the block exits cleanly and rolls back otherwise.

        Yields:
            AsyncSession: A session bound to this link.

        Raises:
            BrokerConnectionError: If the link has been closed.
        """
        if self._closed:
            raise BrokerConnectionError("Link is closed", retryable=False)

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> bool:
        """Check that the broker answers on this link."""
        if self._closed:
            return False
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (DBAPIError, OSError):
            logger.warning("Broker ping failed", extra={"endpoint": _redact(self._endpoint)})
            return False

    async def close(self) -> None:
        """Dispose the engine. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._engine.dispose()
        logger.info("Broker link closed", extra={"endpoint": _redact(self._endpoint)})

    async def __aenter__(self) -> "Link":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


async def _handshake(engine: AsyncEngine, create_schema: bool) -> None:
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        if create_schema:
            await conn.run_sync(Base.metadata.create_all)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Broker not reachable, retrying",
        extra={
            "attempt": retry_state.attempt_number,
            "next_wait_seconds": retry_state.next_action.sleep if retry_state.next_action else None,
            "error": str(exc),
        },
    )


async def connect(
    endpoint: str | None = None,
    *,
    max_attempts: int | None = None,
    backoff_initial: float | None = None,
    backoff_max: float | None = None,
    create_schema: bool | None = None,
) -> Link:
    """
    Establish the link to the broker.

    Retryable failures are retried with bounded exponential backoff before
    giving up.

    Args:
        endpoint: Broker URL. Defaults to the configured broker_url.
        max_attempts: Total handshake attempts.
        backoff_initial: Multiplier of the exponential wait, in seconds.
        backoff_max: Upper bound of a single wait, in seconds.
        create_schema: Create broker tables if they do not exist.

    Returns:
        Link: The established link.

    Raises:
        BrokerConnectionError: If the broker stays unreachable or the endpoint
            is unusable.
    """
    settings = get_settings()
    endpoint = to_async_url(endpoint or settings.broker_url)
    if max_attempts is None:
        max_attempts = settings.broker_connect_max_attempts
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if backoff_initial is None:
        backoff_initial = settings.broker_connect_backoff_initial_seconds
    if backoff_max is None:
        backoff_max = settings.broker_connect_backoff_max_seconds
    if create_schema is None:
        create_schema = settings.broker_create_schema

    logger.info("Connecting to broker", extra={"endpoint": _redact(endpoint)})

    try:
        engine = create_async_engine(endpoint, **_engine_kwargs(endpoint))
    except (ArgumentError, ImportError) as e:
        raise BrokerConnectionError(
            f"Invalid broker endpoint {_redact(endpoint)}: {e}",
            retryable=False,
        ) from e

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_initial, max=backoff_max),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry,
    )

    try:
        async for attempt in retrying:
            with attempt:
                await _handshake(engine, create_schema)
    except RetryError as e:
        await engine.dispose()
        cause = e.last_attempt.exception()
        logger.error(
            "Broker connection failed",
            extra={"endpoint": _redact(endpoint), "attempts": max_attempts},
        )
        raise BrokerConnectionError(
            f"Broker unreachable after {max_attempts} attempts: {cause}",
            retryable=True,
        ) from cause
    except Exception as e:
        await engine.dispose()
        logger.error(
            "Broker rejected the connection",
            extra={"endpoint": _redact(endpoint), "error": str(e)},
        )
        raise BrokerConnectionError(
            f"Broker rejected the connection: {e}",
            retryable=False,
        ) from e

    logger.info("Broker connected", extra={"endpoint": _redact(endpoint)})
    return Link(engine, endpoint)

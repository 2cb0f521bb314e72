"""Execution strategies for the booking engine's atomic operations.

``TransactionalUnitOfWork`` is the correctness guarantee: one database
transaction per operation, row locks on the session and credit-account
rows, savepoints for partial failures.

``BestEffortUnitOfWork`` is the degraded mode for connections that cannot
hold an interactive transaction (statement-pooled deployments). It runs the
same steps, commits at checkpoints and takes no row locks, so concurrent
load can double-book or mis-promote inside a narrow window.

The strategy is chosen by configuration or by a capability probe, never by
inspecting business failures.
"""

import abc
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from libs.common.config import get_settings
from libs.common.logging import get_logger
from services.classes_service.errors import TransactionUnavailable
from sqlalchemy import Select, text
from sqlalchemy.exc import DBAPIError, InvalidRequestError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

T = TypeVar("T")

TRANSACTIONAL = "transactional"
BEST_EFFORT = "best_effort"

_probe_results: dict[str, bool] = {}


class UnitOfWork(abc.ABC):
    transactional: bool

    def __init__(self, db: AsyncSession):
        self.db = db

    async def run(self, operation: Callable[["UnitOfWork"], Awaitable[T]]) -> T:
        """Run ``operation`` and commit; roll back whatever is uncommitted on failure."""
        try:
            result = await operation(self)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return result

    def lock(self, stmt: Select) -> Select:
        """Add a row lock to ``stmt`` when this strategy can hold one."""
        return stmt

    @abc.abstractmethod
    def nested(self):
        """Scope whose failure undoes only its own writes."""

    @abc.abstractmethod
    async def checkpoint(self) -> None:
        """Make everything so far durable, where the strategy needs to."""


class TransactionalUnitOfWork(UnitOfWork):
    transactional = True

    def lock(self, stmt: Select) -> Select:
        return stmt.with_for_update()

    def nested(self):
        return self.db.begin_nested()

    async def checkpoint(self) -> None:
        # Everything commits together at the end of run().
        await self.db.flush()


class BestEffortUnitOfWork(UnitOfWork):
    transactional = False

    @asynccontextmanager
    async def nested(self) -> AsyncIterator[None]:
        await self.checkpoint()
        try:
            yield
        except Exception:
            await self.db.rollback()
            raise

    async def checkpoint(self) -> None:
        await self.db.commit()


def _bind_key(db: AsyncSession) -> str:
    return db.get_bind().engine.url.render_as_string(hide_password=True)


async def _open_probe_savepoint(db: AsyncSession) -> None:
    try:
        async with db.begin_nested():
            await db.execute(text("SELECT 1"))
    except (DBAPIError, InvalidRequestError, NotImplementedError) as exc:
        raise TransactionUnavailable(str(exc)) from exc


async def probe_transaction_support(db: AsyncSession) -> bool:
    """Open a savepoint and run a trivial statement inside it.

    Any DBAPI-level failure here means the connection cannot hold an
    interactive transaction.
    """
    try:
        await _open_probe_savepoint(db)
    except TransactionUnavailable as exc:
        logger.warning("Interactive transactions unavailable: %s", exc)
        await db.rollback()
        return False
    return True


async def get_unit_of_work(db: AsyncSession, mode: Optional[str] = None) -> UnitOfWork:
    """Pick the execution strategy for ``db``.

    ``mode`` overrides the DB_TRANSACTION_MODE setting; "auto" probes the
    connection once per database URL and caches the answer.
    """
    mode = mode or get_settings().DB_TRANSACTION_MODE
    if mode == TRANSACTIONAL:
        return TransactionalUnitOfWork(db)
    if mode == BEST_EFFORT:
        return BestEffortUnitOfWork(db)

    key = _bind_key(db)
    supported = _probe_results.get(key)
    if supported is None:
        supported = await probe_transaction_support(db)
        _probe_results[key] = supported
        if not supported:
            logger.warning("Falling back to best-effort execution for %s", key)
    if supported:
        return TransactionalUnitOfWork(db)
    return BestEffortUnitOfWork(db)

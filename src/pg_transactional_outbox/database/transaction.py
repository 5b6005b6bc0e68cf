"""
Transaction Helper

Runs a unit of work inside a single database transaction with
guaranteed commit or rollback.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

import asyncpg

from ..config import PostgresConnectionConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def create_pool(
    config: PostgresConnectionConfig,
    min_size: int = 1,
    max_size: int = 10
) -> asyncpg.Pool:
    """
    Create an asyncpg connection pool for transactional work.

    Each unit of work acquires its own connection from this pool, an open
    transaction is never shared between callbacks.
    """
    pool = await asyncpg.create_pool(
        min_size=min_size,
        max_size=max_size,
        **config.connect_kwargs()
    )
    logger.debug("Created PostgreSQL pool (min=%s, max=%s)", min_size, max_size)
    return pool


async def execute_transaction(
    pool: asyncpg.Pool,
    callback: Callable[[asyncpg.Connection], Awaitable[T]],
    isolation: Optional[str] = None
) -> T:
    """
    Run `callback` with a connection inside one transaction.

    The transaction commits when the callback returns and rolls back when
    it raises. The exception is re-raised to the caller.

    Args:
        pool: The pool to acquire the connection from
        callback: Unit of work receiving the connection
        isolation: Optional isolation level ("serializable", "repeatable_read",
            "read_committed")

    Returns:
        Whatever the callback returned
    """
    async with pool.acquire() as conn:
        if isolation:
            transaction = conn.transaction(isolation=isolation)
        else:
            transaction = conn.transaction()
        async with transaction:
            return await callback(conn)

"""
Database helpers.

Usage:
    from pg_transactional_outbox.database import create_pool, execute_transaction

    pool = await create_pool(config.pg_config)
    await execute_transaction(pool, lambda conn: conn.execute("UPDATE ..."))
"""

from .transaction import create_pool, execute_transaction

__all__ = [
    "create_pool",
    "execute_transaction",
]

"""
Outbox Pattern Implementation

Stores messages in the same transaction as the business change and
relays them from the change log.

Usage:
    from pg_transactional_outbox.outbox import (
        initialize_outbox_message_storage,
        start_outbox_relay,
    )

    store_order_created = initialize_outbox_message_storage(
        "order", "order_created", config
    )
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute("INSERT INTO orders ...")
            await store_order_created(order_id, order, conn)

    relay = start_outbox_relay(config, send_to_bus)
"""

from .writer import (
    initialize_general_outbox_message_storage,
    initialize_outbox_message_storage,
    store_outbox_message,
)
from .relay import OutboxRelay, start_outbox_relay

__all__ = [
    "initialize_general_outbox_message_storage",
    "initialize_outbox_message_storage",
    "store_outbox_message",
    "OutboxRelay",
    "start_outbox_relay",
]

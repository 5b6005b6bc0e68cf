"""
Outbox Writer

Writes a message to the outbox table within the caller's business
transaction. The row is deleted again in the same transaction: the insert
is already captured by the change log, so the table never grows.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import uuid4

import asyncpg

from ..config import InboxServiceConfig, OutboxServiceConfig, ReplicationSettings
from ..errors import MessageError
from ..models import OutboxMessage

logger = logging.getLogger(__name__)

AnyConfig = Union[OutboxServiceConfig, InboxServiceConfig, ReplicationSettings]

StoreMessage = Callable[[str, Any, asyncpg.Connection], Awaitable[OutboxMessage]]
StoreGeneralMessage = Callable[
    [str, str, str, Any, asyncpg.Connection], Awaitable[OutboxMessage]
]


def _settings(config: AnyConfig) -> ReplicationSettings:
    if isinstance(config, ReplicationSettings):
        return config
    return config.settings


async def store_outbox_message(
    aggregate_id: str,
    aggregate_type: str,
    message_type: str,
    payload: Any,
    conn: asyncpg.Connection,
    settings: ReplicationSettings,
    log: Optional[logging.Logger] = None
) -> OutboxMessage:
    """
    Insert and immediately delete an outbox row.

    Args:
        aggregate_id: Identifier of the aggregate the message belongs to
        aggregate_type: Aggregate root type that created the message
        message_type: What happened on the aggregate
        payload: JSON serializable message payload
        conn: Connection with an open transaction shared with the business write
        settings: Outbox table location

    Returns:
        The stored message with the database assigned creation time

    Raises:
        MessageError: If the insert did not create a row
    """
    log = log or logger
    message_id = uuid4()
    row = await conn.fetchrow(
        f"""
        INSERT INTO {settings.qualified_table}
            (id, aggregate_type, aggregate_id, message_type, payload)
        VALUES ($1, $2, $3, $4, $5)
        RETURNING id, created_at
        """,
        message_id,
        aggregate_type,
        aggregate_id,
        message_type,
        json.dumps(payload)
    )
    if row is None:
        raise MessageError(
            "Could not insert the message into the outbox!",
            {
                "aggregate_type": aggregate_type,
                "aggregate_id": aggregate_id,
                "message_type": message_type,
                "payload": payload,
            }
        )

    # Already captured by the change log - keep the table empty
    await conn.execute(
        f"DELETE FROM {settings.qualified_table} WHERE id = $1",
        message_id
    )

    message = OutboxMessage(
        id=row["id"],
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        message_type=message_type,
        payload=payload,
        created_at=row["created_at"],
    )
    log.debug("Stored outbox message", extra=message.log_context())
    return message


def initialize_outbox_message_storage(
    aggregate_type: str,
    message_type: str,
    config: AnyConfig,
    log: Optional[logging.Logger] = None
) -> StoreMessage:
    """
    Pre-configure the storage of one kind of outbox message.

    Usage:
        store_order_created = initialize_outbox_message_storage(
            "order", "order_created", config
        )
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("INSERT INTO orders ...")
                await store_order_created(order_id, order, conn)
    """
    settings = _settings(config)

    async def store(aggregate_id: str, payload: Any, conn: asyncpg.Connection) -> OutboxMessage:
        return await store_outbox_message(
            aggregate_id, aggregate_type, message_type, payload, conn, settings, log
        )

    return store


def initialize_general_outbox_message_storage(
    config: AnyConfig,
    log: Optional[logging.Logger] = None
) -> StoreGeneralMessage:
    """Outbox storage where every call supplies aggregate and message type."""
    settings = _settings(config)

    async def store(
        aggregate_id: str,
        aggregate_type: str,
        message_type: str,
        payload: Any,
        conn: asyncpg.Connection
    ) -> OutboxMessage:
        return await store_outbox_message(
            aggregate_id, aggregate_type, message_type, payload, conn, settings, log
        )

    return store

"""
Inbox Writer

Persists received messages in the inbox table. This is the durability
point for inbound messages: if `store` raises, whoever delivered the
message must deliver it again.
"""

import json
import logging
from typing import Any, Mapping, Optional, Union

import asyncpg

from ..config import InboxServiceConfig
from ..database.transaction import create_pool, execute_transaction
from ..models import InboxMessage, OutboxMessage

logger = logging.getLogger(__name__)

ReceivedMessage = Union[OutboxMessage, InboxMessage, Mapping[str, Any]]


class InboxMessageStorage:
    """
    Stores inbox messages, each in its own transaction.

    Usage:
        storage = await initialize_inbox_message_storage(config)
        await storage.store(message_from_the_bus)
        ...
        await storage.close()
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        config: InboxServiceConfig,
        log: Optional[logging.Logger] = None
    ):
        self.pool = pool
        self.config = config
        self.log = log or logger

    async def store(self, message: ReceivedMessage) -> None:
        """
        Insert the message with no processed time and zero retries.

        A message with an id that is already in the inbox is a redelivery
        and is ignored.
        """
        if isinstance(message, Mapping):
            message = OutboxMessage.model_validate(message)
        table = self.config.settings.qualified_table

        async def insert(conn: asyncpg.Connection):
            return await conn.fetchrow(
                f"""
                INSERT INTO {table}
                    (id, aggregate_type, aggregate_id, message_type, payload,
                     created_at, processed_at, retries)
                VALUES ($1, $2, $3, $4, $5, $6, NULL, 0)
                ON CONFLICT (id) DO NOTHING
                RETURNING id
                """,
                message.id,
                message.aggregate_type,
                message.aggregate_id,
                message.message_type,
                json.dumps(message.payload),
                message.created_at
            )

        row = await execute_transaction(self.pool, insert)
        if row is None:
            self.log.warning(
                "The message already existed in the inbox",
                extra=message.log_context()
            )
        else:
            self.log.debug("Stored inbox message", extra=message.log_context())

    async def close(self) -> None:
        await self.pool.close()


async def initialize_inbox_message_storage(
    config: Union[InboxServiceConfig, Mapping[str, Any]],
    log: Optional[logging.Logger] = None
) -> InboxMessageStorage:
    """Create the inbox storage with its own pool of the `pg_config` role."""
    if not isinstance(config, InboxServiceConfig):
        config = InboxServiceConfig.from_dict(config)
    pool = await create_pool(config.pg_config)
    return InboxMessageStorage(pool, config, log)

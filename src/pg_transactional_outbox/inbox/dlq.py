"""
Abandoned Inbox Messages

Messages that exceeded their retry budget stay unprocessed in the inbox
and are never redelivered by the change log. This module lists them and
processes single messages again after the cause was fixed.
"""

import json
import logging
from typing import Any, List, Mapping, Optional, Sequence
from uuid import UUID

import asyncpg

from ..config import InboxServiceConfig
from ..database.transaction import execute_transaction
from ..models import InboxMessage, map_inbox_message
from .relay import InboxMessageHandler, process_inbox_message

logger = logging.getLogger(__name__)

_COLUMNS = """
    id, aggregate_type, aggregate_id, message_type, payload,
    created_at, processed_at, retries
"""


def _row_to_message(row: Mapping[str, Any]) -> InboxMessage:
    data = dict(row)
    if isinstance(data.get("payload"), str):
        data["payload"] = json.loads(data["payload"])
    return map_inbox_message(data)


class InboxDeadLetters:
    """
    Queries and reprocesses abandoned inbox messages.

    Usage:
        dead_letters = InboxDeadLetters(pool, config, handlers)
        for message in await dead_letters.get_entries():
            ...
        await dead_letters.reprocess(message_id)
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        config: InboxServiceConfig,
        handlers: Sequence[InboxMessageHandler] = (),
        log: Optional[logging.Logger] = None
    ):
        self.pool = pool
        self.config = config
        self.handlers = list(handlers)
        self.log = log or logger

    async def get_entries(self, limit: int = 100, offset: int = 0) -> List[InboxMessage]:
        """Get abandoned messages, oldest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS} FROM {self.config.settings.qualified_table}
                WHERE processed_at IS NULL AND retries > $1
                ORDER BY created_at ASC
                LIMIT $2 OFFSET $3
                """,
                self.config.max_retries, limit, offset
            )
        return [_row_to_message(row) for row in rows]

    async def get_count(self) -> int:
        """Get the number of abandoned messages."""
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(
                f"""
                SELECT COUNT(*) FROM {self.config.settings.qualified_table}
                WHERE processed_at IS NULL AND retries > $1
                """,
                self.config.max_retries
            )
        return count or 0

    async def reprocess(self, message_id: UUID) -> bool:
        """
        Process an abandoned message now with a fresh retry counter.

        The reset, the handlers and the ack share one transaction: if the
        attempt fails, the message stays abandoned with its old counter.

        Returns:
            True if the message was processed. False if it is not abandoned
            or the attempt failed again.
        """
        async def attempt(conn: asyncpg.Connection) -> Optional[InboxMessage]:
            row = await conn.fetchrow(
                f"""
                UPDATE {self.config.settings.qualified_table}
                SET retries = 0
                WHERE id = $1 AND processed_at IS NULL AND retries > $2
                RETURNING {_COLUMNS}
                """,
                message_id, self.config.max_retries
            )
            if row is None:
                return None
            message = _row_to_message(row)
            if not await process_inbox_message(message, conn, self.handlers, self.config, self.log):
                return None
            return message

        try:
            message = await execute_transaction(self.pool, attempt)
        except Exception as e:
            self.log.error(
                "Reprocessing abandoned inbox message %s failed, it stays abandoned: %s",
                message_id, e, exc_info=True
            )
            return False

        if message is None:
            self.log.info("Inbox message %s is not abandoned, nothing to reprocess", message_id)
            return False

        self.log.info("Reprocessed abandoned inbox message", extra=message.log_context())
        return True

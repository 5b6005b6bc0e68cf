"""
Inbox Guard

The idempotency state machine of the inbox:

    received -> processing -> processed          (ack)
                           -> received, retries+1 (nack, RETRY)
                           -> retries exceeded   (nack, RETRIES_EXCEEDED)

All functions run on a connection inside the caller's transaction, so
handler side effects and the processed marker commit together.
"""

import logging
from typing import Optional, Union

import asyncpg

from ..config import InboxServiceConfig
from ..errors import ErrorCode, InboxError
from ..models import InboxAction, InboxMessage

logger = logging.getLogger(__name__)

VerifyResult = Union[bool, ErrorCode]


async def verify_inbox(
    message: InboxMessage,
    conn: asyncpg.Connection,
    config: InboxServiceConfig
) -> VerifyResult:
    """
    Check that the message may be processed and lock its row.

    Returns:
        True if the message exists and is unprocessed. Otherwise the reason:
        INBOX_MESSAGE_NOT_FOUND, ALREADY_PROCESSED or RETRIES_EXCEEDED.
        Compare with `is True` - error codes are truthy strings.
    """
    row = await conn.fetchrow(
        f"""
        SELECT processed_at, retries FROM {config.settings.qualified_table}
        WHERE id = $1 FOR UPDATE NOWAIT
        """,
        message.id
    )
    if row is None:
        return ErrorCode.INBOX_MESSAGE_NOT_FOUND
    if row["processed_at"] is not None:
        return ErrorCode.ALREADY_PROCESSED
    if row["retries"] > config.max_retries:
        return ErrorCode.RETRIES_EXCEEDED
    return True


async def ack_inbox(
    message: InboxMessage,
    conn: asyncpg.Connection,
    config: InboxServiceConfig
) -> None:
    """
    Mark the message as processed.

    Raises:
        InboxError: If there is no unprocessed row for the message
    """
    status = await conn.execute(
        f"""
        UPDATE {config.settings.qualified_table}
        SET processed_at = now()
        WHERE id = $1 AND processed_at IS NULL
        """,
        message.id
    )
    if _affected_rows(status) < 1:
        raise InboxError(ErrorCode.INBOX_MESSAGE_NOT_FOUND, message.id)


async def nack_inbox(
    message: InboxMessage,
    conn: asyncpg.Connection,
    config: InboxServiceConfig,
    log: Optional[logging.Logger] = None
) -> InboxAction:
    """
    Count a failed processing attempt.

    Returns:
        RETRY while the incremented counter is within `max_retries`,
        RETRIES_EXCEEDED once it is above.

    Raises:
        InboxError: If the row is missing or already processed
    """
    table = config.settings.qualified_table
    row = await conn.fetchrow(
        f"SELECT processed_at, retries FROM {table} WHERE id = $1 FOR UPDATE",
        message.id
    )
    if row is None:
        raise InboxError(ErrorCode.INBOX_MESSAGE_NOT_FOUND, message.id)
    if row["processed_at"] is not None:
        raise InboxError(ErrorCode.ALREADY_PROCESSED, message.id)

    retries = await conn.fetchval(
        f"UPDATE {table} SET retries = retries + 1 WHERE id = $1 RETURNING retries",
        message.id
    )
    (log or logger).debug(
        "Inbox message attempt failed (retries=%s)", retries,
        extra=message.log_context()
    )
    if retries > config.max_retries:
        return InboxAction.RETRIES_EXCEEDED
    return InboxAction.RETRY


def _affected_rows(status: str) -> int:
    """Row count of an asyncpg command status like 'UPDATE 1'."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0

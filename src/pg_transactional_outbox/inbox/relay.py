"""
Inbox Relay

Watches the change log for inbox inserts and processes each message
exactly once: verify, run the matching handlers and acknowledge in one
transaction. Failed attempts increase the retry counter of the message
until its retry budget is exhausted.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

import asyncpg

from ..config import InboxServiceConfig
from ..database.transaction import create_pool, execute_transaction
from ..errors import ErrorCode, InboxError, is_transient_error
from ..models import InboxAction, InboxMessage, map_inbox_message
from ..observability.metrics import record_counter, record_histogram
from ..replication.events import ChangeStreamSource
from ..replication.service import ErrorResolver, ReplicationService, SubscriptionState
from ..replication.wal2json import Wal2JsonSlotSource
from .guard import ack_inbox, nack_inbox, verify_inbox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboxMessageHandler:
    """
    Business logic for one aggregate type and message type.

    `handle` receives the connection of the inbox transaction. Raise to
    roll back and retry the message later.
    """
    aggregate_type: str
    message_type: str
    handle: Callable[[InboxMessage, asyncpg.Connection], Awaitable[None]]

    def matches(self, message: InboxMessage) -> bool:
        return (
            self.aggregate_type == message.aggregate_type
            and self.message_type == message.message_type
        )


async def process_inbox_message(
    message: InboxMessage,
    conn: asyncpg.Connection,
    handlers: Sequence[InboxMessageHandler],
    config: InboxServiceConfig,
    log: Optional[logging.Logger] = None
) -> bool:
    """
    Verify, handle and ack one message on a connection inside a transaction.

    Returns:
        True if the handlers ran and the message was acknowledged, False if
        verification skipped it
    """
    log = log or logger
    result = await verify_inbox(message, conn, config)
    if result is not True:
        if result == ErrorCode.RETRIES_EXCEEDED:
            log.error(
                "Inbox message exceeded the retry budget and is not processed",
                extra=message.log_context()
            )
        else:
            log.warning(
                "Received inbox message cannot be processed: %s", result.value,
                extra=message.log_context()
            )
        return False

    for handler in handlers:
        if handler.matches(message):
            await handler.handle(message, conn)
    await ack_inbox(message, conn, config)
    return True


def create_message_handler(
    handlers: Sequence[InboxMessageHandler],
    pool: asyncpg.Pool,
    config: InboxServiceConfig,
    log: Optional[logging.Logger] = None
) -> Callable[[InboxMessage], Awaitable[None]]:
    """
    Build the per message action: verify, handle and ack in one transaction.
    """
    log = log or logger

    async def handle_message(message: InboxMessage) -> None:
        started = time.monotonic()
        processed = await execute_transaction(
            pool, lambda conn: process_inbox_message(message, conn, handlers, config, log)
        )
        if not processed:
            return
        attributes = {"message_type": message.message_type}
        record_counter("inbox.messages.processed", attributes=attributes)
        record_histogram("message.handling.duration", time.monotonic() - started, attributes)

    return handle_message


def create_error_resolver(
    pool: asyncpg.Pool,
    config: InboxServiceConfig,
    log: Optional[logging.Logger] = None
) -> ErrorResolver:
    """
    Decide between retrying and giving up on a failed inbox message.

    Duplicates and missing rows are resolved right away. Every other
    error counts as a failed attempt.

    Returns a coroutine function answering True to retry the message.
    """
    log = log or logger

    async def resolve(error: Exception, message: InboxMessage) -> bool:
        context = message.log_context()
        attributes = {"message_type": message.message_type}
        if not is_transient_error(error):
            log.warning("Inbox message resolved without processing: %s", error, extra=context)
            return False

        try:
            action = await execute_transaction(
                pool, lambda conn: nack_inbox(message, conn, config, log)
            )
        except InboxError as e:
            log.warning("Inbox message resolved without processing: %s", e, extra=context)
            return False
        except Exception as e:
            log.error(
                "The message handling error handling failed: %s", e,
                extra=context, exc_info=True
            )
            return True

        if action == InboxAction.RETRIES_EXCEEDED:
            record_counter("inbox.messages.abandoned", attributes=attributes)
            log.error(
                "Inbox message exceeded the maximum of %s retries and is abandoned: %s",
                config.max_retries, error, extra=context
            )
            return False

        record_counter("inbox.messages.retried", attributes=attributes)
        log.warning("Inbox message processing failed, retrying: %s", error, extra=context)
        return True

    return resolve


class InboxRelay:
    """
    Processes inbox messages from the change log.

    Usage:
        relay = await start_inbox_relay(config, [
            InboxMessageHandler("order", "order_created", handle_order_created),
        ])
        ...
        await relay.stop()
    """

    def __init__(
        self,
        config: InboxServiceConfig,
        handlers: Sequence[InboxMessageHandler],
        pool: asyncpg.Pool,
        source: Optional[ChangeStreamSource] = None,
        log: Optional[logging.Logger] = None
    ):
        self.config = config
        self.handlers: List[InboxMessageHandler] = list(handlers)
        self.pool = pool
        self.log = log or logger
        self.source = source or Wal2JsonSlotSource(
            config.pg_replication_config,
            config.settings,
            batch_size=config.batch_size,
            log=self.log
        )
        self._service: ReplicationService[InboxMessage] = ReplicationService(
            self.source,
            config.settings,
            map_inbox_message,
            create_message_handler(self.handlers, pool, config, self.log),
            error_resolver=create_error_resolver(pool, config, self.log),
            restart_delay=config.restart_delay,
            name="inbox",
            log=self.log
        )

    @property
    def state(self) -> SubscriptionState:
        return self._service.state

    def start(self) -> None:
        self._service.start()

    def start_if_stopped(self) -> bool:
        return self._service.start_if_stopped()

    async def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop the subscription and close the pool (idempotent)."""
        await self._service.stop(timeout)
        try:
            await self.pool.close()
        except Exception as e:
            self.log.error("PostgreSQL pool shutdown error: %s", e)

    def health_check(self) -> Dict[str, Any]:
        return self._service.health_check()


async def start_inbox_relay(
    config: Union[InboxServiceConfig, Mapping[str, Any]],
    handlers: Sequence[InboxMessageHandler],
    source: Optional[ChangeStreamSource] = None,
    log: Optional[logging.Logger] = None
) -> InboxRelay:
    """
    Validate the configuration, create the pool and start processing.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    if not isinstance(config, InboxServiceConfig):
        config = InboxServiceConfig.from_dict(config)
    pool = await create_pool(config.pg_config)
    relay = InboxRelay(config, handlers, pool, source=source, log=log)
    relay.start()
    return relay

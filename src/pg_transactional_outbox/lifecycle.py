"""
Relay Lifecycle Management

Runs the relays for the lifetime of an asyncio application.

Usage:
    @asynccontextmanager
    async def lifespan(app):
        async with outbox_relay_lifespan(outbox_config, send_to_bus):
            async with inbox_relay_lifespan(inbox_config, handlers):
                yield
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping, Optional, Sequence, Union

from .config import InboxServiceConfig, OutboxServiceConfig
from .inbox.relay import InboxMessageHandler, InboxRelay, start_inbox_relay
from .outbox.relay import DeliveryCallback, OutboxRelay, start_outbox_relay

logger = logging.getLogger(__name__)


@asynccontextmanager
async def outbox_relay_lifespan(
    config: Union[OutboxServiceConfig, Mapping[str, Any]],
    callback: DeliveryCallback,
    log: Optional[logging.Logger] = None
) -> AsyncIterator[OutboxRelay]:
    """Start the outbox relay on enter and stop it on exit."""
    relay = start_outbox_relay(config, callback, log=log)
    try:
        yield relay
    finally:
        logger.info("Stopping outbox relay...")
        await relay.stop()


@asynccontextmanager
async def inbox_relay_lifespan(
    config: Union[InboxServiceConfig, Mapping[str, Any]],
    handlers: Sequence[InboxMessageHandler],
    log: Optional[logging.Logger] = None
) -> AsyncIterator[InboxRelay]:
    """Start the inbox relay on enter, stop it and close its pool on exit."""
    relay = await start_inbox_relay(config, handlers, log=log)
    try:
        yield relay
    finally:
        logger.info("Stopping inbox relay...")
        await relay.stop()

"""
Outbox Relay

Watches the change log for outbox inserts and hands every message to a
delivery callback (e.g. a message bus producer). The log position is only
acknowledged after the callback succeeded, so delivery is at-least-once:
the callback has to tolerate redelivered messages.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from ..config import OutboxServiceConfig
from ..models import OutboxMessage, map_outbox_message
from ..observability.metrics import record_counter, record_histogram
from ..replication.events import ChangeStreamSource
from ..replication.service import ReplicationService, SubscriptionState
from ..replication.wal2json import Wal2JsonSlotSource

logger = logging.getLogger(__name__)

DeliveryCallback = Callable[[OutboxMessage], Awaitable[None]]


class OutboxRelay:
    """
    Relays outbox messages from the change log to a delivery callback.

    Usage:
        async def send(message: OutboxMessage) -> None:
            await producer.send(message.message_type, message.model_dump_json())

        relay = start_outbox_relay(config, send)
        ...
        await relay.stop()
    """

    def __init__(
        self,
        config: OutboxServiceConfig,
        callback: DeliveryCallback,
        source: Optional[ChangeStreamSource] = None,
        log: Optional[logging.Logger] = None
    ):
        self.config = config
        self.callback = callback
        self.log = log or logger
        self.source = source or Wal2JsonSlotSource(
            config.pg_replication_config,
            config.settings,
            batch_size=config.batch_size,
            log=self.log
        )
        self._service: ReplicationService[OutboxMessage] = ReplicationService(
            self.source,
            config.settings,
            map_outbox_message,
            self._deliver,
            restart_delay=config.restart_delay,
            name="outbox",
            log=self.log
        )

    @property
    def state(self) -> SubscriptionState:
        return self._service.state

    def start(self) -> None:
        self._service.start()

    def start_if_stopped(self) -> bool:
        """Resume relaying if the subscription is not running (idempotent)."""
        return self._service.start_if_stopped()

    async def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Gracefully stop relaying (idempotent)."""
        await self._service.stop(timeout)

    def health_check(self) -> Dict[str, Any]:
        return self._service.health_check()

    async def _deliver(self, message: OutboxMessage) -> None:
        started = time.monotonic()
        attributes = {"message_type": message.message_type}
        try:
            await self.callback(message)
        except Exception:
            record_counter("outbox.messages.failed", attributes=attributes)
            raise
        record_counter("outbox.messages.relayed", attributes=attributes)
        record_histogram(
            "message.handling.duration", time.monotonic() - started, attributes
        )


def start_outbox_relay(
    config: Union[OutboxServiceConfig, Mapping[str, Any]],
    callback: DeliveryCallback,
    source: Optional[ChangeStreamSource] = None,
    log: Optional[logging.Logger] = None
) -> OutboxRelay:
    """
    Validate the configuration and start relaying outbox messages.

    Must be called from a running event loop.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    if not isinstance(config, OutboxServiceConfig):
        config = OutboxServiceConfig.from_dict(config)
    relay = OutboxRelay(config, callback, source=source, log=log)
    relay.start()
    return relay

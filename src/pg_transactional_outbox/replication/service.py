"""
Replication Service

Supervised subscription driver shared by the outbox and inbox relays.

Consumes one change stream source, filters insert events of the watched
table, hands the mapped message to a callback and acknowledges log
positions only after successful hand-off. Keeps the subscription alive
across database and network failures.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from ..config import ReplicationSettings
from ..errors import SubscriptionError
from ..observability.metrics import record_counter
from .events import ChangeEvent, ChangeStream, ChangeStreamSource

logger = logging.getLogger(__name__)

M = TypeVar("M")

MessageCallback = Callable[[M], Awaitable[None]]
# Returns True if the message should be retried (log position not acknowledged)
ErrorResolver = Callable[[Exception, M], Awaitable[bool]]

# Delays between restarts after consecutive subscription errors (in seconds)
RESTART_BACKOFF = [0, 0.1, 0.5, 1, 2, 5]


class SubscriptionState(str, Enum):
    """Supervisor state of a replication service."""
    SUBSCRIBED = "subscribed"
    RESTARTING = "restarting"
    STOPPED = "stopped"


TRANSITIONS = {
    SubscriptionState.STOPPED: {SubscriptionState.SUBSCRIBED},
    SubscriptionState.SUBSCRIBED: {SubscriptionState.RESTARTING, SubscriptionState.STOPPED},
    SubscriptionState.RESTARTING: {SubscriptionState.SUBSCRIBED, SubscriptionState.STOPPED},
}


def calculate_restart_delay(consecutive_failures: int) -> float:
    """Delay before the next subscription attempt after an error."""
    idx = min(consecutive_failures, len(RESTART_BACKOFF) - 1)
    return RESTART_BACKOFF[idx]


class ReplicationService(Generic[M]):
    """
    Subscription supervisor with the states subscribed, restarting and stopped.

    Features:
    - Processes events strictly one at a time in commit order
    - Acknowledges only after the callback succeeded, and never past an
      unacknowledged predecessor within one subscription cycle
    - Restarts after a clean end (fixed delay) or an error (backoff)

    Usage:
        service = ReplicationService(source, settings, map_outbox_message, send)
        service.start()
        ...
        await service.stop()
    """

    def __init__(
        self,
        source: ChangeStreamSource,
        settings: ReplicationSettings,
        mapper: Callable[[Dict[str, Any]], M],
        callback: MessageCallback,
        error_resolver: Optional[ErrorResolver] = None,
        restart_delay: float = 0.1,
        name: str = "replication",
        log: Optional[logging.Logger] = None
    ):
        self.source = source
        self.settings = settings
        self.mapper = mapper
        self.callback = callback
        self.error_resolver = error_resolver
        self.restart_delay = restart_delay
        self.name = name
        self.log = log or logger

        self._state = SubscriptionState.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._stop_requested = asyncio.Event()
        self._restarts = 0
        self._last_error: Optional[str] = None

    @property
    def state(self) -> SubscriptionState:
        return self._state

    def _transition(self, target: SubscriptionState) -> None:
        if target not in TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Invalid subscription transition {self._state.value} -> {target.value}"
            )
        self.log.debug(
            "%s subscription %s -> %s", self.name, self._state.value, target.value
        )
        self._state = target

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the supervised subscription loop on the running event loop."""
        if self.is_running:
            return
        self._stop_requested.clear()
        self._task = asyncio.get_running_loop().create_task(self._run())
        self.log.info("%s service started", self.name)

    def start_if_stopped(self) -> bool:
        """
        Resume the subscription if it is not running.

        Returns:
            True if a new subscription loop was started
        """
        if self.is_running:
            return False
        self.start()
        return True

    async def stop(self, timeout: Optional[float] = 10.0) -> None:
        """
        Stop the subscription.

        In-flight callback work is awaited, no further events are pulled.
        The loop is cancelled if it does not finish within `timeout`.
        Calling stop on a stopped service does nothing.
        """
        self._stop_requested.set()
        task = self._task
        if task is None:
            return
        if not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                self.log.warning("%s service did not stop in time, cancelling", self.name)
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self.log.info("%s service stopped", self.name)

    def health_check(self) -> Dict[str, Any]:
        """Return health status for monitoring."""
        return {
            "status": "healthy" if self.is_running else "unhealthy",
            "service": self.name,
            "state": self._state.value,
            "restarts": self._restarts,
            "last_error": self._last_error,
        }

    async def _run(self) -> None:
        """Main supervisor loop."""
        failures = 0
        try:
            while not self._stop_requested.is_set():
                self._transition(SubscriptionState.SUBSCRIBED)
                try:
                    await self._run_cycle()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._last_error = repr(e)
                    delay = calculate_restart_delay(failures)
                    failures += 1
                    self._restarts += 1
                    record_counter("replication.subscription.restarts", attributes={"service": self.name})
                    self.log.error(
                        "%s subscription failed, restarting in %ss: %s",
                        self.name, delay, e, exc_info=True
                    )
                    await self._dispose_source()
                else:
                    failures = 0
                    delay = self.restart_delay

                if self._stop_requested.is_set():
                    break
                self._transition(SubscriptionState.RESTARTING)
                await self._wait(delay)
        finally:
            if self._state != SubscriptionState.STOPPED:
                self._transition(SubscriptionState.STOPPED)
            await self._dispose_source()

    async def _run_cycle(self) -> None:
        """Consume one subscription cycle."""
        stream = await self.source.open()
        try:
            await self._consume(stream)
        except BaseException:
            try:
                await stream.close()
            except Exception as close_error:
                self.log.warning(
                    "%s stream close after failure failed: %s", self.name, close_error
                )
            raise
        await stream.close()

    async def _consume(self, stream: ChangeStream) -> None:
        blocked = False
        async for event in stream:
            if self._stop_requested.is_set():
                break
            handled = await self._process(event)
            if not handled:
                # Everything after this position is redelivered next cycle
                blocked = True
            elif not blocked:
                await stream.acknowledge(event)

    async def _process(self, event: ChangeEvent) -> bool:
        """
        Handle one event.

        Returns:
            True if the log position may be acknowledged
        """
        if not event.is_insert_into(self.settings.db_schema, self.settings.db_table):
            return True

        try:
            message = self.mapper(event.new)
        except Exception as e:
            raise SubscriptionError(
                f"Could not decode the {self.settings.db_table} row at {event.lsn}: {e}"
            ) from e

        context = {"lsn": event.lsn, **_log_context(message)}
        self.log.debug("Received a %s WAL message", self.name, extra=context)
        try:
            await self.callback(message)
            return True
        except Exception as error:
            if self.error_resolver is None:
                self.log.error(
                    "Could not handle the %s message: %s", self.name, error,
                    extra=context, exc_info=True
                )
                return False
            retry = await self.error_resolver(error, message)
            return not retry

    async def _wait(self, delay: float) -> None:
        """Sleep, returning early when a stop is requested."""
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop_requested.wait(), delay)
        except asyncio.TimeoutError:
            pass

    async def _dispose_source(self) -> None:
        try:
            await self.source.dispose()
        except Exception as e:
            self.log.warning("%s source cleanup failed: %s", self.name, e)


def _log_context(message: Any) -> Dict[str, Any]:
    log_context = getattr(message, "log_context", None)
    return log_context() if callable(log_context) else {}

"""
Tests for the supervised replication service.
"""

import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import pytest

from pg_transactional_outbox.models import map_outbox_message
from pg_transactional_outbox.replication.events import BEGIN, COMMIT, lsn_to_int
from pg_transactional_outbox.replication.service import (
    RESTART_BACKOFF,
    ReplicationService,
    SubscriptionState,
    calculate_restart_delay,
)

from .fakes import FakeChangeLog, eventually


def _outbox_row(aggregate_id: str = "1", **overrides):
    row = {
        "id": uuid4(),
        "aggregate_type": "movie",
        "aggregate_id": aggregate_id,
        "message_type": "movie_created",
        "payload": {"n": aggregate_id},
        "created_at": datetime.now(timezone.utc),
    }
    row.update(overrides)
    return ("public", "outbox", row)


def _service(changelog, settings, callback, **kwargs):
    kwargs.setdefault("restart_delay", 0.01)
    return ReplicationService(changelog, settings, map_outbox_message, callback, **kwargs)


class TestRestartDelay:

    def test_backoff_sequence(self):
        assert [calculate_restart_delay(n) for n in range(6)] == RESTART_BACKOFF

    def test_backoff_is_capped(self):
        assert calculate_restart_delay(100) == RESTART_BACKOFF[-1]


class TestStateTransitions:
    """Test the subscribed/restarting/stopped state machine."""

    def test_initially_stopped(self, outbox_config):
        service = _service(FakeChangeLog(), outbox_config.settings, None)
        assert service.state == SubscriptionState.STOPPED
        assert service.is_running is False

    def test_invalid_transition(self, outbox_config):
        service = _service(FakeChangeLog(), outbox_config.settings, None)
        with pytest.raises(RuntimeError):
            service._transition(SubscriptionState.RESTARTING)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, outbox_config):
        changelog = FakeChangeLog()

        async def deliver(message):
            pass

        service = _service(changelog, outbox_config.settings, deliver)
        service.start()
        await eventually(lambda: changelog.opened >= 2)

        assert service.state in (SubscriptionState.SUBSCRIBED, SubscriptionState.RESTARTING)
        await service.stop()

        assert service.state == SubscriptionState.STOPPED
        assert service.is_running is False
        assert changelog.disposed >= 1

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, outbox_config):
        service = _service(FakeChangeLog(), outbox_config.settings, None)
        await service.stop()

        service.start()
        await service.stop()
        await service.stop()

        assert service.state == SubscriptionState.STOPPED

    @pytest.mark.asyncio
    async def test_start_if_stopped(self, outbox_config):
        async def deliver(message):
            pass

        service = _service(FakeChangeLog(), outbox_config.settings, deliver)

        assert service.start_if_stopped() is True
        assert service.start_if_stopped() is False
        await service.stop()
        assert service.start_if_stopped() is True
        await service.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_a_hanging_callback(self, outbox_config):
        changelog = FakeChangeLog()
        changelog.append_transaction([_outbox_row()])
        entered = asyncio.Event()

        async def deliver(message):
            entered.set()
            await asyncio.sleep(60)

        service = _service(changelog, outbox_config.settings, deliver)
        service.start()
        await asyncio.wait_for(entered.wait(), 3)
        await service.stop(timeout=0.05)

        assert service.state == SubscriptionState.STOPPED
        assert changelog.confirmed == 0


class TestDelivery:
    """Test ordering and acknowledgement of change events."""

    @pytest.mark.asyncio
    async def test_delivers_in_commit_order(self, outbox_config):
        changelog = FakeChangeLog()
        changelog.append_transaction([_outbox_row("1"), _outbox_row("2")])
        changelog.append_transaction([_outbox_row("3")])
        delivered = []

        async def deliver(message):
            delivered.append(message.aggregate_id)

        service = _service(changelog, outbox_config.settings, deliver)
        service.start()
        await eventually(lambda: len(delivered) == 3)
        await service.stop()

        assert delivered == ["1", "2", "3"]
        assert changelog.confirmed == lsn_to_int(changelog.transactions[-1][-1].lsn)

    @pytest.mark.asyncio
    async def test_ignores_other_tables(self, outbox_config):
        """Changes of other tables are acknowledged without a callback."""
        changelog = FakeChangeLog()
        changelog.append_transaction([("public", "orders", {"id": 1})])
        delivered = []

        async def deliver(message):
            delivered.append(message)

        service = _service(changelog, outbox_config.settings, deliver)
        service.start()
        await eventually(lambda: changelog.confirmed > 0)
        await service.stop()

        assert delivered == []

    @pytest.mark.asyncio
    async def test_failure_blocks_later_acknowledgements(self, outbox_config):
        """Nothing after a failed message is acknowledged in the same cycle."""
        changelog = FakeChangeLog()
        changelog.append_transaction([_outbox_row("1")])
        changelog.append_transaction([_outbox_row("2")])
        delivered = []
        failures = []

        async def deliver(message):
            delivered.append(message.aggregate_id)
            if message.aggregate_id == "1" and not failures:
                failures.append(message)
                raise ConnectionError("bus unavailable")

        service = _service(changelog, outbox_config.settings, deliver, restart_delay=0.2)
        service.start()
        await eventually(lambda: len(delivered) >= 2)

        # Only the begin of the failed transaction was acknowledged
        assert [e.tag for e in changelog.acknowledged] == [BEGIN]
        assert changelog.confirmed == 0

        await eventually(lambda: len(delivered) == 4)
        await service.stop()

        assert delivered == ["1", "2", "1", "2"]
        assert changelog.confirmed == lsn_to_int(changelog.transactions[-1][-1].lsn)

    @pytest.mark.asyncio
    async def test_error_resolver_can_skip_a_message(self, outbox_config):
        changelog = FakeChangeLog()
        changelog.append_transaction([_outbox_row("1")])
        resolved = []

        async def deliver(message):
            raise ValueError("poison message")

        async def resolve(error, message):
            resolved.append((error, message.aggregate_id))
            return False

        service = _service(
            changelog, outbox_config.settings, deliver, error_resolver=resolve
        )
        service.start()
        await eventually(lambda: changelog.confirmed > 0)
        await service.stop()

        [(error, aggregate_id)] = resolved
        assert isinstance(error, ValueError)
        assert aggregate_id == "1"
        assert changelog.acknowledged[-1].tag == COMMIT


class TestRestarts:
    """Test recovery from subscription errors."""

    @pytest.mark.asyncio
    async def test_restarts_after_connection_error(self, outbox_config):
        changelog = FakeChangeLog()
        changelog.open_failures.append(ConnectionError("connection refused"))
        changelog.append_transaction([_outbox_row("1")])
        delivered = []

        async def deliver(message):
            delivered.append(message.aggregate_id)

        service = _service(changelog, outbox_config.settings, deliver)
        service.start()
        await eventually(lambda: delivered == ["1"])

        health = service.health_check()
        await service.stop()

        assert health["status"] == "healthy"
        assert health["restarts"] == 1
        assert "connection refused" in health["last_error"]
        assert changelog.disposed >= 1

    @pytest.mark.asyncio
    async def test_redelivers_after_stream_failure(self, outbox_config):
        """A broken stream keeps the unacknowledged transaction for the next cycle."""
        changelog = FakeChangeLog()
        changelog.append_transaction([_outbox_row("1")])
        changelog.fail_after_events = 2
        delivered = []

        async def deliver(message):
            delivered.append(message.aggregate_id)

        service = _service(changelog, outbox_config.settings, deliver)
        service.start()
        await eventually(lambda: changelog.confirmed > 0)
        await service.stop()

        assert delivered == ["1", "1"]
        assert service.health_check()["restarts"] == 1

    @pytest.mark.asyncio
    async def test_undecodable_row_restarts_the_subscription(self, outbox_config):
        changelog = FakeChangeLog()
        changelog.append_transaction([("public", "outbox", {"id": "not-a-message"})])

        async def deliver(message):
            pass

        service = _service(changelog, outbox_config.settings, deliver)
        service.start()
        await eventually(lambda: service.health_check()["restarts"] >= 1)
        await service.stop()

        assert "Could not decode" in service.health_check()["last_error"]
        assert changelog.confirmed == 0

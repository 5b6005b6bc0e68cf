"""
Tests for the wal2json slot source.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from pg_transactional_outbox.errors import SubscriptionError
from pg_transactional_outbox.models import map_outbox_message
from pg_transactional_outbox.replication.events import (
    BEGIN,
    COMMIT,
    INSERT,
    int_to_lsn,
    lsn_to_int,
)
from pg_transactional_outbox.replication.wal2json import (
    ADVANCE_SLOT,
    Wal2JsonSlotSource,
    Wal2JsonSlotStream,
    convert_value,
    decode_wal2json,
    parse_pg_timestamp,
)

MESSAGE_ID = "5f1b4a4e-5d0c-4c39-9f3e-b2b6b7f3d0a1"

INSERT_RECORD = json.dumps({
    "action": "I",
    "schema": "public",
    "table": "outbox",
    "columns": [
        {"name": "id", "type": "uuid", "value": MESSAGE_ID},
        {"name": "aggregate_type", "type": "text", "value": "movie"},
        {"name": "aggregate_id", "type": "text", "value": "42"},
        {"name": "message_type", "type": "text", "value": "movie_created"},
        {"name": "payload", "type": "jsonb", "value": "{\"title\": \"Alien\"}"},
        {"name": "created_at", "type": "timestamp with time zone",
         "value": "2023-01-18 21:02:27.123+00"},
    ],
})


class FakeSlotConnection:
    """Replication role connection answering the slot queries."""

    def __init__(self, rows=None, slot=None, published=1):
        self.rows = rows or []
        self.slot = slot if slot is not None else {"plugin": "wal2json", "slot_type": "logical"}
        self.published = published
        self.advanced = []
        self.closed = False

    async def fetch(self, query, *args):
        return self.rows

    async def fetchrow(self, query, *args):
        return self.slot or None

    async def fetchval(self, query, *args):
        if query == ADVANCE_SLOT:
            self.advanced.append(args[1])
            return args[1]
        return self.published

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True


def _source(outbox_config, conn=None):
    source = Wal2JsonSlotSource(
        outbox_config.pg_replication_config, outbox_config.settings
    )
    source._conn = conn
    return source


class TestDecode:
    """Test decoding format version 2 records."""

    def test_insert_record(self):
        event = decode_wal2json("0/16B3748", INSERT_RECORD)

        assert event.tag == INSERT
        assert event.is_insert_into("public", "outbox")
        assert event.new["payload"] == {"title": "Alien"}
        assert event.new["created_at"] == datetime(
            2023, 1, 18, 21, 2, 27, 123000, tzinfo=timezone.utc
        )

    def test_insert_maps_to_message(self):
        message = map_outbox_message(decode_wal2json("0/1", INSERT_RECORD).new)

        assert message.id == UUID(MESSAGE_ID)
        assert message.payload == {"title": "Alien"}

    @pytest.mark.parametrize("action,tag", [("B", BEGIN), ("C", COMMIT)])
    def test_transaction_boundaries(self, action, tag):
        event = decode_wal2json("0/1", json.dumps({"action": action}))
        assert event.tag == tag
        assert event.new == {}

    @pytest.mark.parametrize("data", [
        "not json",
        json.dumps({"action": "X"}),
        json.dumps({"action": "I", "columns": [{"type": "text"}]}),
        json.dumps(["I"]),
    ])
    def test_malformed_records(self, data):
        with pytest.raises(SubscriptionError):
            decode_wal2json("0/1", data)


class TestConvertValue:

    def test_timestamp_with_short_offset(self):
        value = parse_pg_timestamp("2023-01-18 21:02:27+02")
        assert value.utcoffset() == timedelta(hours=2)

    def test_timestamp_without_zone(self):
        value = convert_value("timestamp without time zone", "2023-01-18 21:02:27.5")
        assert value == datetime(2023, 1, 18, 21, 2, 27, 500000)

    def test_json_and_null(self):
        assert convert_value("json", "[1, 2]") == [1, 2]
        assert convert_value("jsonb", None) is None
        assert convert_value("integer", 5) == 5


class TestLsn:

    def test_round_trip(self):
        assert lsn_to_int("16/B374D848") == (0x16 << 32) + 0xB374D848
        assert int_to_lsn(lsn_to_int("16/B374D848")) == "16/B374D848"

    def test_ordering_is_numeric(self):
        assert lsn_to_int("0/10") > lsn_to_int("0/F")

    def test_invalid(self):
        with pytest.raises(ValueError):
            lsn_to_int("nonsense")


class TestSlotStream:
    """Test one peek batch."""

    @pytest.mark.asyncio
    async def test_advances_to_last_acknowledged_commit(self, outbox_config):
        conn = FakeSlotConnection(rows=[
            {"lsn": "0/10", "data": json.dumps({"action": "B"})},
            {"lsn": "0/18", "data": INSERT_RECORD},
            {"lsn": "0/20", "data": json.dumps({"action": "C"})},
            {"lsn": "0/28", "data": json.dumps({"action": "B"})},
            {"lsn": "0/30", "data": INSERT_RECORD},
        ])
        source = _source(outbox_config, conn)
        stream = Wal2JsonSlotStream(source, conn)

        async for event in stream:
            await stream.acknowledge(event)
        await stream.close()

        # The open transaction at 0/28 is not a restart point
        assert conn.advanced == ["0/20"]

    @pytest.mark.asyncio
    async def test_nothing_acknowledged(self, outbox_config):
        conn = FakeSlotConnection(rows=[{"lsn": "0/10", "data": json.dumps({"action": "B"})}])
        stream = Wal2JsonSlotStream(_source(outbox_config, conn), conn)

        async for event in stream:
            pass
        await stream.close()
        await stream.close()

        assert conn.advanced == []


class TestSlotSource:
    """Test slot verification and advancing."""

    @pytest.mark.asyncio
    async def test_advance_never_moves_backwards(self, outbox_config):
        conn = FakeSlotConnection()
        source = _source(outbox_config, conn)

        await source.advance("0/30")
        await source.advance("0/20")
        await source.advance("0/30")
        await source.advance("0/40")

        assert conn.advanced == ["0/30", "0/40"]

    @pytest.mark.asyncio
    async def test_dispose_closes_the_connection(self, outbox_config):
        conn = FakeSlotConnection()
        source = _source(outbox_config, conn)

        await source.dispose()
        await source.dispose()

        assert conn.closed

    @pytest.mark.asyncio
    async def test_missing_slot(self, outbox_config):
        source = _source(outbox_config)
        with pytest.raises(SubscriptionError, match="does not exist"):
            await source._verify(FakeSlotConnection(slot={}))

    @pytest.mark.asyncio
    async def test_wrong_plugin(self, outbox_config):
        source = _source(outbox_config)
        conn = FakeSlotConnection(slot={"plugin": "pgoutput", "slot_type": "logical"})
        with pytest.raises(SubscriptionError, match="wal2json"):
            await source._verify(conn)

    @pytest.mark.asyncio
    async def test_unpublished_table_warns(self, outbox_config, caplog):
        source = _source(outbox_config)
        with caplog.at_level(logging.WARNING):
            await source._verify(FakeSlotConnection(published=None))
        assert "does not contain public.outbox" in caplog.text

    @pytest.mark.asyncio
    async def test_connects_lazily(self, outbox_config, monkeypatch):
        conn = FakeSlotConnection()
        connects = []

        async def connect(**kwargs):
            connects.append(kwargs)
            return conn

        monkeypatch.setattr("pg_transactional_outbox.replication.wal2json.asyncpg.connect", connect)
        source = _source(outbox_config)

        await source.open()
        await source.open()

        assert connects == [{"dsn": outbox_config.pg_replication_config.dsn, "command_timeout": 60.0}]

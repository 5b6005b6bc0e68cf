"""
wal2json Slot Source

Reads a logical replication slot created with the `wal2json` output
plugin through `pg_logical_slot_peek_changes` and advances it with
`pg_replication_slot_advance` once changes are acknowledged.

One peek batch is one subscription cycle. The slot only moves forward,
and only to commit positions, so a partially handled transaction is
always redelivered as a whole.

Slot setup:
    SELECT pg_create_logical_replication_slot('outbox_slot', 'wal2json');
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg

from ..config import PostgresConnectionConfig, ReplicationSettings
from ..errors import SubscriptionError
from .events import (
    BEGIN,
    COMMIT,
    DELETE,
    INSERT,
    MESSAGE,
    TRUNCATE,
    UPDATE,
    ChangeEvent,
    lsn_to_int,
)

logger = logging.getLogger(__name__)

PEEK_CHANGES = """
SELECT lsn::text AS lsn, data
FROM pg_logical_slot_peek_changes(
    $1, NULL, $2,
    'format-version', '2',
    'include-transaction', 'true',
    'add-tables', $3::text,
    'actions', 'insert'
)
"""

ADVANCE_SLOT = """
SELECT end_lsn::text FROM pg_replication_slot_advance($1, $2::text::pg_lsn)
"""

SLOT_INFO = """
SELECT plugin, slot_type FROM pg_replication_slots WHERE slot_name = $1
"""

PUBLICATION_TABLE = """
SELECT 1 FROM pg_publication_tables
WHERE pubname = $1 AND schemaname = $2 AND tablename = $3
"""

ACTIONS = {
    "B": BEGIN,
    "C": COMMIT,
    "I": INSERT,
    "U": UPDATE,
    "D": DELETE,
    "T": TRUNCATE,
    "M": MESSAGE,
}

_SHORT_OFFSET = re.compile(r"([+-]\d{2})$")


def parse_pg_timestamp(value: str) -> datetime:
    """Parse PostgreSQL's text timestamp output (`2023-01-18 21:02:27.12+00`)."""
    return datetime.fromisoformat(_SHORT_OFFSET.sub(r"\1:00", value))


def convert_value(type_name: str, value: Any) -> Any:
    """Convert a wal2json column value into its Python representation."""
    if value is None:
        return None
    if type_name in ("json", "jsonb") and isinstance(value, str):
        return json.loads(value)
    if type_name.startswith("timestamp") and isinstance(value, str):
        return parse_pg_timestamp(value)
    return value


def decode_wal2json(lsn: str, data: str) -> ChangeEvent:
    """
    Decode one wal2json (format version 2) record.

    Raises:
        SubscriptionError: For malformed records or unknown actions
    """
    try:
        record = json.loads(data)
        tag = ACTIONS.get(record.get("action"))
        if tag is None:
            raise ValueError(f"unknown action {record.get('action')!r}")
        columns = {
            column["name"]: convert_value(column.get("type", ""), column.get("value"))
            for column in record.get("columns", [])
        }
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise SubscriptionError(f"Could not decode the change at {lsn}: {e}") from e

    return ChangeEvent(
        lsn=lsn,
        tag=tag,
        schema=record.get("schema"),
        table=record.get("table"),
        new=columns,
    )


class Wal2JsonSlotStream:
    """One peek batch of the slot."""

    def __init__(self, source: "Wal2JsonSlotSource", conn: asyncpg.Connection):
        self._source = source
        self._conn = conn
        self._acknowledged: Optional[str] = None
        self._closed = False

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[ChangeEvent]:
        settings = self._source.settings
        rows = await self._conn.fetch(
            PEEK_CHANGES,
            settings.postgres_slot,
            self._source.batch_size,
            f"{settings.db_schema}.{settings.db_table}"
        )
        for row in rows:
            if self._closed:
                return
            yield decode_wal2json(row["lsn"], row["data"])

    async def acknowledge(self, event: ChangeEvent) -> None:
        # Only commit positions are safe restart points for the slot
        if event.tag == COMMIT:
            self._acknowledged = event.lsn

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._acknowledged is not None:
            await self._source.advance(self._acknowledged)


class Wal2JsonSlotSource:
    """
    Change stream source for one slot and table.

    Holds one connection of the replication role across cycles and
    reconnects lazily after it was disposed or lost.
    """

    def __init__(
        self,
        connection: PostgresConnectionConfig,
        settings: ReplicationSettings,
        batch_size: int = 100,
        log: Optional[logging.Logger] = None
    ):
        self.connection = connection
        self.settings = settings
        self.batch_size = batch_size
        self.log = log or logger
        self._conn: Optional[asyncpg.Connection] = None
        self._confirmed: Optional[int] = None

    async def open(self) -> Wal2JsonSlotStream:
        conn = await self._connect()
        return Wal2JsonSlotStream(self, conn)

    async def advance(self, lsn: str) -> None:
        """Move the slot forward to `lsn`. Never moves backwards."""
        position = lsn_to_int(lsn)
        if self._confirmed is not None and position <= self._confirmed:
            return
        conn = await self._connect()
        await conn.fetchval(ADVANCE_SLOT, self.settings.postgres_slot, lsn)
        self._confirmed = position
        self.log.debug("Advanced slot %s to %s", self.settings.postgres_slot, lsn)

    async def dispose(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None and not conn.is_closed():
            await conn.close()

    async def _connect(self) -> asyncpg.Connection:
        if self._conn is not None and not self._conn.is_closed():
            return self._conn

        conn = await asyncpg.connect(**self.connection.connect_kwargs())
        try:
            await self._verify(conn)
        except BaseException:
            await conn.close()
            raise
        self._conn = conn
        self._confirmed = None
        self.log.info(
            "Connected to replication slot %s", self.settings.postgres_slot
        )
        return conn

    async def _verify(self, conn: asyncpg.Connection) -> None:
        settings = self.settings
        slot = await conn.fetchrow(SLOT_INFO, settings.postgres_slot)
        if slot is None:
            raise SubscriptionError(
                f"Replication slot '{settings.postgres_slot}' does not exist"
            )
        if slot["slot_type"] != "logical" or slot["plugin"] != "wal2json":
            raise SubscriptionError(
                f"Replication slot '{settings.postgres_slot}' must be a logical "
                f"slot using wal2json, found {slot['slot_type']}/{slot['plugin']}"
            )

        published = await conn.fetchval(
            PUBLICATION_TABLE,
            settings.postgres_pub,
            settings.db_schema,
            settings.db_table
        )
        if not published:
            self.log.warning(
                "Publication %s does not contain %s.%s",
                settings.postgres_pub, settings.db_schema, settings.db_table
            )

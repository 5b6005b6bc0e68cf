"""
Change Stream Contracts

A decoded, ordered feed of committed row changes consumed through a
replication slot. Sources implement the protocols below.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Protocol


# Event tags
BEGIN = "begin"
INSERT = "insert"
UPDATE = "update"
DELETE = "delete"
TRUNCATE = "truncate"
MESSAGE = "message"
COMMIT = "commit"


@dataclass(frozen=True)
class ChangeEvent:
    """One decoded entry of the change log."""
    lsn: str
    tag: str
    schema: Optional[str] = None
    table: Optional[str] = None
    new: Dict[str, Any] = field(default_factory=dict)

    def is_insert_into(self, schema: str, table: str) -> bool:
        return self.tag == INSERT and self.schema == schema and self.table == table


class ChangeStream(Protocol):
    """
    One subscription cycle on a replication slot.

    Iterating yields events in commit order. Ending the iteration without
    an error is a clean end of the cycle.
    """

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        ...

    async def acknowledge(self, event: ChangeEvent) -> None:
        """Mark the event as handled. Durable once its commit is acknowledged."""
        ...

    async def close(self) -> None:
        """End the cycle and persist the acknowledged position."""
        ...


class ChangeStreamSource(Protocol):
    """Opens subscription cycles on one publication/slot pair."""

    async def open(self) -> ChangeStream:
        ...

    async def dispose(self) -> None:
        """Release connections held across cycles."""
        ...


def lsn_to_int(lsn: str) -> int:
    """Convert a textual log sequence number (`16/B374D848`) to an integer."""
    try:
        high, low = lsn.split("/")
        return (int(high, 16) << 32) + int(low, 16)
    except ValueError as e:
        raise ValueError(f"Invalid LSN: {lsn!r}") from e


def int_to_lsn(value: int) -> str:
    """Convert an integer position back to the textual LSN form."""
    return f"{value >> 32:X}/{value & 0xFFFFFFFF:X}"

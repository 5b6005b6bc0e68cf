"""
Change-log replication.

Decoded change events, the supervised subscription driver and the
wal2json slot source.
"""

from .events import ChangeEvent, ChangeStream, ChangeStreamSource, int_to_lsn, lsn_to_int
from .service import ReplicationService, SubscriptionState, calculate_restart_delay
from .wal2json import Wal2JsonSlotSource, decode_wal2json

__all__ = [
    "ChangeEvent",
    "ChangeStream",
    "ChangeStreamSource",
    "int_to_lsn",
    "lsn_to_int",
    "ReplicationService",
    "SubscriptionState",
    "calculate_restart_delay",
    "Wal2JsonSlotSource",
    "decode_wal2json",
]

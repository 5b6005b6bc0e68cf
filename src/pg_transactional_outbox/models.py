"""
Message Models

Outbox and inbox message records plus the mapping from decoded
change-log rows.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class InboxAction(str, Enum):
    """Result of a negative inbox acknowledgement."""
    RETRY = "RETRY"
    RETRIES_EXCEEDED = "RETRIES_EXCEEDED"


class OutboxMessage(BaseModel):
    """
    A message written to the outbox table.

    The row only exists inside the writing transaction - the durable copy
    is the change-log entry.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID
    aggregate_type: str
    aggregate_id: str
    message_type: str
    payload: Any = None
    created_at: datetime

    def log_context(self) -> Dict[str, Any]:
        """Fields attached to log records about this message."""
        return {
            "message_id": str(self.id),
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "message_type": self.message_type,
        }


class InboxMessage(OutboxMessage):
    """
    A received message stored in the inbox table.

    The row is never deleted - it is the deduplication ledger.
    `processed_at` is set at most once, `retries` only grows.
    """

    processed_at: Optional[datetime] = None
    retries: int = Field(default=0, ge=0)


def map_outbox_message(row: Dict[str, Any]) -> OutboxMessage:
    """Map the column values of an outbox insert event."""
    return OutboxMessage(
        id=row["id"],
        aggregate_type=row["aggregate_type"],
        aggregate_id=row["aggregate_id"],
        message_type=row["message_type"],
        payload=row.get("payload"),
        created_at=row["created_at"],
    )


def map_inbox_message(row: Dict[str, Any]) -> InboxMessage:
    """Map the column values of an inbox insert event."""
    return InboxMessage(
        id=row["id"],
        aggregate_type=row["aggregate_type"],
        aggregate_id=row["aggregate_id"],
        message_type=row["message_type"],
        payload=row.get("payload"),
        created_at=row["created_at"],
        processed_at=row.get("processed_at"),
        retries=row.get("retries") or 0,
    )

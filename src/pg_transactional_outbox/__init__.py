"""
pg-transactional-outbox

Transactional outbox and inbox on top of PostgreSQL logical replication.

Usage:
    from pg_transactional_outbox import (
        OutboxServiceConfig,
        initialize_outbox_message_storage,
        start_outbox_relay,
    )
"""

import logging

from .config import (
    InboxServiceConfig,
    OutboxServiceConfig,
    PostgresConnectionConfig,
    ReplicationSettings,
)
from .database import create_pool, execute_transaction
from .errors import (
    ConfigurationError,
    ErrorCode,
    InboxError,
    MessageError,
    OutboxError,
    SubscriptionError,
    is_transient_error,
)
from .inbox import (
    InboxDeadLetters,
    InboxMessageHandler,
    InboxMessageStorage,
    InboxRelay,
    ack_inbox,
    initialize_inbox_message_storage,
    nack_inbox,
    start_inbox_relay,
    verify_inbox,
)
from .lifecycle import inbox_relay_lifespan, outbox_relay_lifespan
from .models import InboxAction, InboxMessage, OutboxMessage
from .observability import configure_logging, disable_logging
from .outbox import (
    OutboxRelay,
    initialize_general_outbox_message_storage,
    initialize_outbox_message_storage,
    start_outbox_relay,
    store_outbox_message,
)
from .replication import ChangeEvent, ReplicationService, SubscriptionState, Wal2JsonSlotSource

# Silent unless the host application configures logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "1.0.0"

__all__ = [
    # Configuration
    "InboxServiceConfig",
    "OutboxServiceConfig",
    "PostgresConnectionConfig",
    "ReplicationSettings",
    # Database
    "create_pool",
    "execute_transaction",
    # Errors
    "ConfigurationError",
    "ErrorCode",
    "InboxError",
    "MessageError",
    "OutboxError",
    "SubscriptionError",
    "is_transient_error",
    # Models
    "InboxAction",
    "InboxMessage",
    "OutboxMessage",
    # Outbox
    "OutboxRelay",
    "initialize_general_outbox_message_storage",
    "initialize_outbox_message_storage",
    "start_outbox_relay",
    "store_outbox_message",
    # Inbox
    "InboxDeadLetters",
    "InboxMessageHandler",
    "InboxMessageStorage",
    "InboxRelay",
    "ack_inbox",
    "initialize_inbox_message_storage",
    "nack_inbox",
    "start_inbox_relay",
    "verify_inbox",
    # Lifecycle
    "inbox_relay_lifespan",
    "outbox_relay_lifespan",
    # Replication
    "ChangeEvent",
    "ReplicationService",
    "SubscriptionState",
    "Wal2JsonSlotSource",
    # Logging
    "configure_logging",
    "disable_logging",
]

"""
Inbox Pattern Implementation

Stores received messages and processes each of them exactly once.

Usage:
    from pg_transactional_outbox.inbox import (
        InboxMessageHandler,
        initialize_inbox_message_storage,
        start_inbox_relay,
    )

    storage = await initialize_inbox_message_storage(config)
    await storage.store(received_message)

    relay = await start_inbox_relay(config, [
        InboxMessageHandler("order", "order_created", handle_order_created),
    ])
"""

from .guard import ack_inbox, nack_inbox, verify_inbox
from .writer import InboxMessageStorage, initialize_inbox_message_storage
from .relay import (
    InboxMessageHandler,
    InboxRelay,
    create_error_resolver,
    create_message_handler,
    process_inbox_message,
    start_inbox_relay,
)
from .dlq import InboxDeadLetters

__all__ = [
    "ack_inbox",
    "nack_inbox",
    "verify_inbox",
    "InboxMessageStorage",
    "initialize_inbox_message_storage",
    "InboxMessageHandler",
    "InboxRelay",
    "create_error_resolver",
    "create_message_handler",
    "process_inbox_message",
    "start_inbox_relay",
    "InboxDeadLetters",
]

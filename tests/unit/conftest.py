"""
Unit Test Fixtures

Configurations and in-memory database fakes shared by the unit tests.
"""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from pg_transactional_outbox.config import InboxServiceConfig, OutboxServiceConfig
from pg_transactional_outbox.models import InboxMessage

from .fakes import FakeDatabase, FakePool


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def pool(db: FakeDatabase) -> FakePool:
    return FakePool(db)


@pytest.fixture
def outbox_config() -> OutboxServiceConfig:
    return OutboxServiceConfig.from_dict({
        "pg_replication_config": {"dsn": "postgresql://outbox_replication@localhost/app"},
        "settings": {
            "db_schema": "public",
            "db_table": "outbox",
            "postgres_pub": "outbox_pub",
            "postgres_slot": "outbox_slot",
        },
        "restart_delay": 0.01,
    })


@pytest.fixture
def inbox_config() -> InboxServiceConfig:
    return InboxServiceConfig.from_dict({
        "pg_replication_config": {"dsn": "postgresql://inbox_replication@localhost/app"},
        "pg_config": {"dsn": "postgresql://inbox_handler@localhost/app"},
        "settings": {
            "db_schema": "public",
            "db_table": "inbox",
            "postgres_pub": "inbox_pub",
            "postgres_slot": "inbox_slot",
        },
        "max_retries": 2,
        "restart_delay": 0.01,
    })


@pytest.fixture
def make_inbox_message():
    """Factory for inbox messages as they arrive from a message bus."""

    def make(aggregate_type: str = "order", message_type: str = "order_created", **fields):
        data = {
            "id": uuid4(),
            "aggregate_type": aggregate_type,
            "aggregate_id": "order-1",
            "message_type": message_type,
            "payload": {"total": 42},
            "created_at": datetime.now(timezone.utc),
        }
        data.update(fields)
        return InboxMessage(**data)

    return make

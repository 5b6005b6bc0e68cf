"""
Service Configuration

Explicit, immutable configuration types for the outbox and inbox services.

Usage:
    config = OutboxServiceConfig.from_dict({
        "pg_replication_config": {"dsn": "postgresql://outbox_relay@db/app"},
        "settings": {
            "db_schema": "public",
            "db_table": "outbox",
            "postgres_pub": "pg_transactional_outbox_pub",
            "postgres_slot": "pg_transactional_outbox_slot",
        },
    })

    # or from OUTBOX_* environment variables
    config = OutboxServiceConfig.from_env()
"""

import os
import re
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class _FrozenModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        """Validate a plain mapping, raising ConfigurationError on problems."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid {cls.__name__}: {e}") from e


class PostgresConnectionConfig(_FrozenModel):
    """Connection parameters for one database role."""

    dsn: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    command_timeout: Optional[float] = 60.0

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for asyncpg.connect / asyncpg.create_pool."""
        kwargs = {
            key: value
            for key, value in self.model_dump().items()
            if value is not None
        }
        return kwargs


class ReplicationSettings(_FrozenModel):
    """Names of the watched table and its logical replication objects."""

    db_schema: str
    db_table: str
    postgres_pub: str
    postgres_slot: str

    @field_validator("db_schema", "db_table", "postgres_pub", "postgres_slot")
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        if not _IDENTIFIER.match(value):
            raise ValueError(f"'{value}' is not a valid PostgreSQL identifier")
        return value

    @property
    def qualified_table(self) -> str:
        """Quoted `schema.table` for use in SQL statements."""
        return f'"{self.db_schema}"."{self.db_table}"'


class OutboxServiceConfig(_FrozenModel):
    """
    Outbox relay configuration.

    `pg_replication_config` must use a role with the REPLICATION attribute.
    """

    pg_replication_config: PostgresConnectionConfig
    settings: ReplicationSettings
    restart_delay: float = Field(default=0.1, ge=0)
    batch_size: int = Field(default=100, gt=0)

    @classmethod
    def from_env(cls, prefix: str = "OUTBOX") -> "OutboxServiceConfig":
        """Build the configuration from `<PREFIX>_*` environment variables."""
        data: Dict[str, Any] = {
            "pg_replication_config": {"dsn": _env(prefix, "PG_REPLICATION_DSN")},
            "settings": _settings_from_env(prefix),
        }
        _optional(data, prefix, "RESTART_DELAY", "restart_delay")
        _optional(data, prefix, "BATCH_SIZE", "batch_size")
        return cls.from_dict(data)


class InboxServiceConfig(_FrozenModel):
    """
    Inbox relay configuration.

    `pg_config` is the role that updates the inbox table and runs the
    message handlers, `pg_replication_config` reads the change log.
    """

    pg_replication_config: PostgresConnectionConfig
    pg_config: PostgresConnectionConfig
    settings: ReplicationSettings
    max_retries: int = Field(default=5, ge=0)
    restart_delay: float = Field(default=0.1, ge=0)
    batch_size: int = Field(default=100, gt=0)

    @classmethod
    def from_env(cls, prefix: str = "INBOX") -> "InboxServiceConfig":
        """Build the configuration from `<PREFIX>_*` environment variables."""
        data: Dict[str, Any] = {
            "pg_replication_config": {"dsn": _env(prefix, "PG_REPLICATION_DSN")},
            "pg_config": {"dsn": _env(prefix, "PG_DSN")},
            "settings": _settings_from_env(prefix),
        }
        _optional(data, prefix, "MAX_RETRIES", "max_retries")
        _optional(data, prefix, "RESTART_DELAY", "restart_delay")
        _optional(data, prefix, "BATCH_SIZE", "batch_size")
        return cls.from_dict(data)


def _env(prefix: str, name: str) -> str:
    key = f"{prefix}_{name}"
    value = os.getenv(key)
    if not value:
        raise ConfigurationError(f"{key} environment variable is required")
    return value


def _optional(data: Dict[str, Any], prefix: str, name: str, field: str) -> None:
    value = os.getenv(f"{prefix}_{name}")
    if value:
        data[field] = value


def _settings_from_env(prefix: str) -> Dict[str, str]:
    return {
        "db_schema": os.getenv(f"{prefix}_DB_SCHEMA", "public"),
        "db_table": os.getenv(f"{prefix}_DB_TABLE", prefix.lower()),
        "postgres_pub": _env(prefix, "POSTGRES_PUB"),
        "postgres_slot": _env(prefix, "POSTGRES_SLOT"),
    }

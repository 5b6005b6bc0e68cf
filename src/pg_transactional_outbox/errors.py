"""
Error Taxonomy

Error codes and exceptions raised by the outbox/inbox components.

Writers raise these to the caller. Relays classify and absorb them.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Machine readable error codes."""

    # Storage
    INSERT_FAILED = "INSERT_FAILED"

    # Inbox verification
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    INBOX_MESSAGE_NOT_FOUND = "INBOX_MESSAGE_NOT_FOUND"
    RETRIES_EXCEEDED = "RETRIES_EXCEEDED"

    # Infrastructure
    SUBSCRIPTION_ERROR = "SUBSCRIPTION_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


# Inbox outcomes that cannot change by retrying
PERMANENT_ERROR_CODES = frozenset({
    ErrorCode.ALREADY_PROCESSED,
    ErrorCode.INBOX_MESSAGE_NOT_FOUND,
    ErrorCode.RETRIES_EXCEEDED,
})


class OutboxError(Exception):
    """Base exception for all errors raised by this package."""

    def __init__(self, code: ErrorCode, message: str):
        self.code = code
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class MessageError(OutboxError):
    """
    A message could not be stored.

    Carries the attempted message data so the caller does not lose the
    intent of the write.
    """

    def __init__(
        self,
        message: str,
        message_data: Dict[str, Any],
        code: ErrorCode = ErrorCode.INSERT_FAILED
    ):
        super().__init__(code, message)
        self.message_data = message_data


class InboxError(OutboxError):
    """Inbox verification outcome that is not a successful verification."""

    def __init__(self, code: ErrorCode, message_id: Optional[Any] = None):
        text = f"Inbox message cannot be processed: {code.value}"
        if message_id is not None:
            text = f"Inbox message {message_id} cannot be processed: {code.value}"
        super().__init__(code, text)
        self.message_id = message_id


class SubscriptionError(OutboxError):
    """The change stream subscription failed (connection, decoding, permissions)."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.SUBSCRIPTION_ERROR, message)


class ConfigurationError(OutboxError):
    """Service configuration is invalid."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.CONFIGURATION_ERROR, message)


def is_transient_error(error: BaseException) -> bool:
    """
    Classify an error raised while processing an inbox message.

    Returns:
        False for duplicate/missing/exhausted messages - retrying cannot
        change their outcome. True for everything else.
    """
    return not (
        isinstance(error, InboxError) and error.code in PERMANENT_ERROR_CODES
    )

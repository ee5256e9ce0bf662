from typing import Any, Optional


class LogSourceConnectionError(ConnectionError):
    """Raised when the node cannot be reached while registering subscriptions"""


class QueryError(Exception):
    """Raised when a historical range query fails.

    Carries the attempted block range, the event kind being queried (when
    known) and the underlying cause.
    """

    def __init__(self, message: str, block_range: Any = None, kind: Any = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.block_range = block_range
        self.kind = kind
        self.cause = cause

    def __str__(self):
        message = super().__str__()
        if self.block_range is not None:
            message = f"{message} (range {self.block_range})"
        if self.cause is not None:
            message = f"{message}: {self.cause}"
        return message


class DecodeMismatch(ValueError):
    """A raw log that matches none of the known market events"""

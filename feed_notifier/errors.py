"""Exception types for feed_notifier.

Broadcast sender adapters translate transport failures into a
``DeliveryError`` carrying a ``DeliveryErrorKind``, so the delivery queue
classifies failures with a switch over the enum instead of inspecting
messages.
"""

from enum import Enum
from typing import Optional, Union


class FeedNotifierError(Exception):
    """Base class for all feed_notifier errors."""


class ConfigError(FeedNotifierError, ValueError):
    """Raised when the configuration file or environment is invalid."""


class FetchError(FeedNotifierError):
    """Raised when a feed could not be fetched after all retries."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"Failed to fetch {url}: {message}")
        self.url = url
        self.status_code = status_code


class DeliveryErrorKind(str, Enum):
    """Closed set of delivery failure kinds."""

    TARGET_MISSING = "TARGET_MISSING"
    BLOCKED = "BLOCKED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    UNSUPPORTED_CONTENT = "UNSUPPORTED_CONTENT"
    TRANSIENT = "TRANSIENT"

    @property
    def is_fatal(self) -> bool:
        return self in FATAL_KINDS


FATAL_KINDS = frozenset({
    DeliveryErrorKind.TARGET_MISSING,
    DeliveryErrorKind.BLOCKED,
    DeliveryErrorKind.PERMISSION_DENIED,
})

# Raw transport codes reported by chat platform adapters
ERROR_CODE_KINDS = {
    "UnknownGroup": DeliveryErrorKind.TARGET_MISSING,
    "GROUP_NOT_FOUND": DeliveryErrorKind.TARGET_MISSING,
    "UserBlock": DeliveryErrorKind.BLOCKED,
    "BANNED": DeliveryErrorKind.BLOCKED,
    "PermissionDenied": DeliveryErrorKind.PERMISSION_DENIED,
    "NO_PERMISSION": DeliveryErrorKind.PERMISSION_DENIED,
    # OneBot retcode for an unsupported message segment (usually video)
    "1200": DeliveryErrorKind.UNSUPPORTED_CONTENT,
}


def classify_error_code(code: Union[str, int, None]) -> DeliveryErrorKind:
    """Map a raw transport error code to a delivery error kind.

    Args:
        code: Error code as reported by the transport (string or number)

    Returns:
        The matching kind, TRANSIENT for unknown or missing codes
    """
    if code is None:
        return DeliveryErrorKind.TRANSIENT
    return ERROR_CODE_KINDS.get(str(code), DeliveryErrorKind.TRANSIENT)


class DeliveryError(FeedNotifierError):
    """Raised by a broadcast sender when a message could not be delivered."""

    def __init__(
        self,
        message: str,
        kind: DeliveryErrorKind = DeliveryErrorKind.TRANSIENT,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.code = code

    @classmethod
    def from_code(cls, code: Union[str, int, None], message: str) -> "DeliveryError":
        return cls(message, kind=classify_error_code(code), code=None if code is None else str(code))

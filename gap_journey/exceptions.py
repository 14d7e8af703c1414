"""
Exception types raised by the gap journey engine.

Only I/O failures are raised as exceptions.  Unknown ids and malformed
imports are reported through return values (``MutationResult``,
``ImportResult``) rather than raised.
"""

from typing import Optional


class JourneyError(Exception):
    """Base class for journey engine errors."""


class StorageError(JourneyError):
    """Raised by a storage adapter when a key cannot be read, written or removed.

    Args:
        operation: ``"get"``, ``"set"``, ``"remove"`` or ``"clear"``.
        key: The storage key involved, if any.
    """

    def __init__(self, operation: str, key: Optional[str] = None, reason: str = "") -> None:
        self.operation = operation
        self.key = key
        self.reason = reason
        msg = f"storage {operation} failed"
        if key is not None:
            msg += f" for key {key!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)

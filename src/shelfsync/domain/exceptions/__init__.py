"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without parsing str(exception).
    # Don't raise this directly - pick a specific subclass so callers can catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class ValidationException(DomainException):
    """Raised when input data fails validation.

    Example: an unknown change type string coming back from the backend.
    We NEVER guess a channel for an unknown type - it would route a delete
    through the wrong command family.
    """

    pass


class InvalidStateException(DomainException):
    """Raised when an object is in an invalid state for the requested operation.

    Example: requesting covers from an asset cache that was already closed.
    """

    pass


class BusinessRuleViolation(DomainException):
    """A business rule was violated."""

    pass


class DestructiveChangeNotConfirmed(BusinessRuleViolation):
    """Raised when a multi-item or wildcard apply contains a delete without confirmation.

    Hey future me - this is the "apply all must never silently delete files" gate!
    The UI catches this, shows the confirm dialog with `change_ids`, and calls
    apply() again with confirmed=True.
    """

    def __init__(self, change_ids: list[str]) -> None:
        super().__init__(
            f"Scope contains {len(change_ids)} delete change(s); confirmation required"
        )
        self.change_ids = change_ids


class MalformedEventError(DomainException):
    """Raised when a backend event payload doesn't have the expected shape."""

    def __init__(self, event_name: str, reason: str) -> None:
        super().__init__(f"Malformed '{event_name}' payload: {reason}")
        self.event_name = event_name
        self.reason = reason


class HandleReleasedError(DomainException):
    """Raised when a released asset handle is read."""

    pass


class CommandError(DomainException):
    """A backend command failed as a whole (transport error or rejected command).

    Per-item failures are NOT this - those come back as `status=error` on the
    pending change. This one means the entire channel call blew up.
    """

    def __init__(
        self,
        command: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(f"Command '{command}' failed: {message}")
        self.command = command
        self.status_code = status_code


class ConfigurationError(DomainException):
    """Application misconfiguration."""

    pass


__all__ = [
    "BusinessRuleViolation",
    "CommandError",
    "ConfigurationError",
    "DestructiveChangeNotConfirmed",
    "DomainException",
    "HandleReleasedError",
    "InvalidStateException",
    "MalformedEventError",
    "ValidationException",
]

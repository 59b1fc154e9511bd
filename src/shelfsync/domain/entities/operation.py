"""Background operation progress records (scan, enrich, sync, change apply).

Wire format (event bus, operation name N):
    N-progress  {itemId, status, message, current, total}
    N-complete  {total, processed, skipped, errors}
    N-error     "reason"
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from shelfsync.domain.exceptions import MalformedEventError


class OperationItemStatus(str, Enum):
    """Per-item status inside a background operation."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    SKIPPED = "skipped"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        """Item is still being worked on (counts towards active ids)."""
        return self in (OperationItemStatus.PENDING, OperationItemStatus.PROCESSING)


def _require_count(payload: Mapping[str, Any], key: str, event_name: str) -> int:
    value = payload.get(key, 0)
    # bool is an int subclass - reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedEventError(event_name, f"'{key}' must be a non-negative integer")
    return value


@dataclass(frozen=True)
class OperationProgress:
    """One per-item progress record (the N-progress payload)."""

    item_id: str
    status: OperationItemStatus
    current: int = 0
    total: int = 0
    message: str | None = None

    @classmethod
    def from_payload(cls, payload: Any, event_name: str = "progress") -> OperationProgress:
        """Validate and convert a raw event payload.

        Raises:
            MalformedEventError: Payload isn't a progress record
        """
        if not isinstance(payload, Mapping):
            raise MalformedEventError(event_name, "expected an object")

        item_id = payload.get("itemId", payload.get("item_id"))
        if item_id is None or item_id == "":
            raise MalformedEventError(event_name, "missing 'itemId'")

        try:
            status = OperationItemStatus(payload.get("status"))
        except ValueError as e:
            raise MalformedEventError(
                event_name, f"unknown status {payload.get('status')!r}"
            ) from e

        message = payload.get("message")
        return cls(
            item_id=str(item_id),
            status=status,
            current=_require_count(payload, "current", event_name),
            total=_require_count(payload, "total", event_name),
            message=str(message) if message is not None else None,
        )


@dataclass(frozen=True)
class OperationStats:
    """Final stats of a background operation (the N-complete payload).

    Hey future me - a cancelled run ALSO ends with stats; the backend reports
    whatever partial work it did. `cancelled` tells the two apart.
    """

    total: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    cancelled: bool = False

    @classmethod
    def from_payload(
        cls,
        payload: Any,
        event_name: str = "complete",
        cancelled: bool = False,
    ) -> OperationStats:
        """Validate and convert a raw completion payload.

        Raises:
            MalformedEventError: Payload isn't a stats record
        """
        if not isinstance(payload, Mapping):
            raise MalformedEventError(event_name, "expected an object")
        return cls(
            total=_require_count(payload, "total", event_name),
            processed=_require_count(payload, "processed", event_name),
            skipped=_require_count(payload, "skipped", event_name),
            errors=_require_count(payload, "errors", event_name),
            cancelled=cancelled,
        )


@dataclass(frozen=True)
class OperationProgressState:
    """Aggregate view of one named background operation. Never persisted."""

    running: bool = False
    snapshot: OperationProgress | None = None
    active_ids: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def empty(cls) -> OperationProgressState:
        return cls()

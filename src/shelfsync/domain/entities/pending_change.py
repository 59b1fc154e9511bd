"""Pending change entity and change-type → channel routing.

Hey future me - a PendingChange is a proposed edit that hasn't been committed yet.
The backend owns the table; we only ever hold read-only snapshots of it.

Routing is the important bit here: every change type belongs to exactly ONE
channel, and the channel picks the backend command family:

    file   → apply-file-changes / remove-file-changes     (library records/files)
    device → apply-device-changes / remove-device-changes (eReader sync queue)

The mapping is an explicit table, checked at import time. If you add a new
ChangeType and forget the table, this module refuses to import - better than a
new type silently landing in the wrong channel.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from shelfsync.domain.exceptions import ValidationException

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Closed set of staged mutation types."""

    RENAME = "rename"
    DELETE = "delete"
    METADATA_UPDATE = "metadata_update"
    COVER_UPDATE = "cover_update"
    TAG_ADD = "tag_add"
    TAG_REMOVE = "tag_remove"
    RELINK_MISSING = "relink_missing"
    DEACTIVATE_MISSING = "deactivate_missing"
    DEVICE_ADD = "device_add"
    DEVICE_REMOVE = "device_remove"
    DEVICE_IMPORT = "device_import"
    DEVICE_UPDATE = "device_update"


class ChangeChannel(str, Enum):
    """Backend command family a change is routed through."""

    FILE = "file"
    DEVICE = "device"


class PendingChangeStatus(str, Enum):
    """Lifecycle: pending → applied | error (both terminal)."""

    PENDING = "pending"
    APPLIED = "applied"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not PendingChangeStatus.PENDING


CHANNEL_BY_CHANGE_TYPE: dict[ChangeType, ChangeChannel] = {
    ChangeType.RENAME: ChangeChannel.FILE,
    ChangeType.DELETE: ChangeChannel.FILE,
    ChangeType.METADATA_UPDATE: ChangeChannel.FILE,
    ChangeType.COVER_UPDATE: ChangeChannel.FILE,
    ChangeType.TAG_ADD: ChangeChannel.FILE,
    ChangeType.TAG_REMOVE: ChangeChannel.FILE,
    ChangeType.RELINK_MISSING: ChangeChannel.FILE,
    ChangeType.DEACTIVATE_MISSING: ChangeChannel.FILE,
    ChangeType.DEVICE_ADD: ChangeChannel.DEVICE,
    ChangeType.DEVICE_REMOVE: ChangeChannel.DEVICE,
    ChangeType.DEVICE_IMPORT: ChangeChannel.DEVICE,
    ChangeType.DEVICE_UPDATE: ChangeChannel.DEVICE,
}

_unmapped = set(ChangeType) - set(CHANNEL_BY_CHANGE_TYPE)
if _unmapped:
    raise ImportError(
        "ChangeType members without a channel: "
        + ", ".join(sorted(member.value for member in _unmapped))
    )

DESTRUCTIVE_CHANGE_TYPES: frozenset[ChangeType] = frozenset({ChangeType.DELETE})


def parse_change_type(value: ChangeType | str) -> ChangeType:
    """Coerce a backend string into a ChangeType.

    Raises:
        ValidationException: Unknown change type (never defaulted to a channel!)
    """
    if isinstance(value, ChangeType):
        return value
    try:
        return ChangeType(value)
    except ValueError as e:
        raise ValidationException(f"Unknown change type: {value!r}") from e


def classify(change_type: ChangeType | str) -> ChangeChannel:
    """Return the channel for a change type. Pure lookup, no side effects."""
    return CHANNEL_BY_CHANGE_TYPE[parse_change_type(change_type)]


def _parse_timestamp(value: Any) -> datetime | None:
    """Backend timestamps are epoch milliseconds (or ISO strings from older rows).

    Naive values are taken as UTC so mixed rows stay comparable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError as e:
            raise ValidationException(f"Invalid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_payload(value: Any) -> dict[str, Any]:
    # changes_json is a TEXT column in the backend - may come through as a string
    if value is None or value == "":
        return {}
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValidationException(f"Invalid change payload JSON: {e}") from e
        return decoded if isinstance(decoded, dict) else {"value": decoded}
    if isinstance(value, dict):
        return dict(value)
    raise ValidationException(f"Unsupported change payload type: {type(value).__name__}")


def _pick(record: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in record:
            return record[key]
    return None


@dataclass(frozen=True)
class PendingChange:
    """Proposed, not-yet-committed mutation (read-only snapshot of a backend row).

    Hey future me - frozen on purpose! The backend is the source of truth.
    After apply/remove, re-list instead of patching these objects.
    """

    id: str
    change_type: ChangeType
    target_id: str | None = None
    from_path: str | None = None
    to_path: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    status: PendingChangeStatus = PendingChangeStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    applied_at: datetime | None = None
    error: str | None = None

    @property
    def channel(self) -> ChangeChannel:
        return CHANNEL_BY_CHANGE_TYPE[self.change_type]

    @property
    def is_destructive(self) -> bool:
        return self.change_type in DESTRUCTIVE_CHANGE_TYPES

    @property
    def is_pending(self) -> bool:
        return self.status is PendingChangeStatus.PENDING

    @property
    def device_id(self) -> str | None:
        """Device the change targets (device channel only)."""
        if self.channel is not ChangeChannel.DEVICE:
            return None
        value = self.payload.get("deviceId") or self.payload.get("device_id")
        return str(value) if value else None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> PendingChange:
        """Build a PendingChange from a backend row.

        Accepts both the snake_case column names (file_id, change_type, changes_json)
        and camelCase keys (targetId, changeType, payload).

        Raises:
            ValidationException: Missing id, unknown change type, bad payload
        """
        change_id = _pick(record, "id")
        if not change_id:
            raise ValidationException("Pending change record without id")

        raw_type = _pick(record, "change_type", "changeType", "type")
        if raw_type is None:
            raise ValidationException(f"Pending change {change_id} without change type")

        raw_status = _pick(record, "status") or PendingChangeStatus.PENDING.value
        try:
            status = PendingChangeStatus(raw_status)
        except ValueError as e:
            raise ValidationException(
                f"Pending change {change_id} has unknown status {raw_status!r}"
            ) from e

        target_id = _pick(record, "target_id", "targetId", "file_id", "item_id")
        created_at = _parse_timestamp(_pick(record, "created_at", "createdAt"))

        return cls(
            id=str(change_id),
            change_type=parse_change_type(raw_type),
            target_id=str(target_id) if target_id else None,
            from_path=_pick(record, "from_path", "fromPath"),
            to_path=_pick(record, "to_path", "toPath"),
            payload=_parse_payload(_pick(record, "payload", "changes_json", "changesJson")),
            status=status,
            created_at=created_at or datetime.now(UTC),
            applied_at=_parse_timestamp(_pick(record, "applied_at", "appliedAt")),
            error=_pick(record, "error"),
        )


class ChangeSource(str, Enum):
    """Which channel(s) the changes view shows."""

    ALL = "all"
    LIBRARY = "library"
    EREADER = "ereader"


@dataclass(frozen=True)
class ChangeFilter:
    """Client-side view filter for the changes list."""

    source: ChangeSource = ChangeSource.ALL
    device_id: str | None = None

    @property
    def is_unrestricted(self) -> bool:
        """True when the filter hides nothing - "all matching" == "all pending"."""
        return self.source is ChangeSource.ALL and not self.device_id

    def matches(self, change: PendingChange) -> bool:
        if self.source is ChangeSource.LIBRARY and change.channel is not ChangeChannel.FILE:
            return False
        if self.source is ChangeSource.EREADER and change.channel is not ChangeChannel.DEVICE:
            return False
        if self.device_id:
            # device filter only narrows device changes; library changes have no device
            return change.channel is ChangeChannel.DEVICE and change.device_id == self.device_id
        return True

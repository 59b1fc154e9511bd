"""Domain entities."""

from shelfsync.domain.entities.asset import AssetBlob, AssetEntryState, AssetHandle
from shelfsync.domain.entities.operation import (
    OperationItemStatus,
    OperationProgress,
    OperationProgressState,
    OperationStats,
)
from shelfsync.domain.entities.pending_change import (
    CHANNEL_BY_CHANGE_TYPE,
    ChangeChannel,
    ChangeFilter,
    ChangeSource,
    ChangeType,
    PendingChange,
    PendingChangeStatus,
    classify,
    parse_change_type,
)

__all__ = [
    "CHANNEL_BY_CHANGE_TYPE",
    "AssetBlob",
    "AssetEntryState",
    "AssetHandle",
    "ChangeChannel",
    "ChangeFilter",
    "ChangeSource",
    "ChangeType",
    "OperationItemStatus",
    "OperationProgress",
    "OperationProgressState",
    "OperationStats",
    "PendingChange",
    "PendingChangeStatus",
    "classify",
    "parse_change_type",
]

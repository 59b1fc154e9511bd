"""Application services: mutation ledger, operation progress, asset cache."""

from shelfsync.application.services.asset_cache import (
    DEFAULT_MAX_CONCURRENT,
    RESOLVE_ASSET_COMMAND,
    AssetCacheEntry,
    AssetFetchCache,
)
from shelfsync.application.services.mutation_ledger import (
    ChannelOutcome,
    MutationKind,
    MutationLedger,
    MutationReport,
    MutationScope,
    RefreshPolicy,
)
from shelfsync.application.services.operation_progress import (
    OperationProgressCoordinator,
)

__all__ = [
    "DEFAULT_MAX_CONCURRENT",
    "RESOLVE_ASSET_COMMAND",
    "AssetCacheEntry",
    "AssetFetchCache",
    "ChannelOutcome",
    "MutationKind",
    "MutationLedger",
    "MutationReport",
    "MutationScope",
    "OperationProgressCoordinator",
    "RefreshPolicy",
]

# Hey future me - das ist der Staged-Change-Ledger!
#
# Edits landen erst als "pending" im Backend. Der User reviewt sie und wendet sie
# an (apply) oder verwirft sie (remove). Zwei unabhängige Backend-Kanäle:
#   file   → apply-file-changes / remove-file-changes
#   device → apply-device-changes / remove-device-changes
#
# Flow:
#   ledger.apply(MutationScope.explicit([...]))
#       ├─► split_by_channel()         (letzte geladene Ansicht)
#       ├─► asyncio.gather(file-cmd, device-cmd)   (unabhängig, beide awaited)
#       ├─► list_by_status(view_status)            (autoritatives Ergebnis!)
#       └─► refresh_catalog() je nach RefreshPolicy
#
# NICHT atomar: ein Kanal kann scheitern, der andere trotzdem durchlaufen.
"""Staged mutation ledger - review, apply and discard pending changes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from shelfsync.application.services.operation_progress import (
    OperationProgressCoordinator,
)
from shelfsync.domain.entities.operation import OperationStats
from shelfsync.domain.entities.pending_change import (
    ChangeChannel,
    ChangeFilter,
    ChangeType,
    PendingChange,
    PendingChangeStatus,
    classify,
)
from shelfsync.domain.exceptions import DestructiveChangeNotConfirmed
from shelfsync.domain.ports import CatalogRefresher, ICommandService
from shelfsync.infrastructure.observability.logger_template import log_operation
from shelfsync.infrastructure.observability.logging import set_correlation_id

logger = logging.getLogger(__name__)

LIST_COMMANDS: dict[ChangeChannel, str] = {
    ChangeChannel.FILE: "list-file-changes",
    ChangeChannel.DEVICE: "list-device-changes",
}


class RefreshPolicy(str, Enum):
    """When to reload the catalog after a mutation.

    Hey future me - catalog reloads are EXPENSIVE. File-channel changes (tag edits
    etc.) are already reflected by the direct mutation responses; device-channel
    changes alter sync state that only a reload can reconcile.
    """

    NEVER = "never"
    SYNC = "sync"
    ALWAYS = "always"

    def should_refresh(self, device_touched: bool) -> bool:
        if self is RefreshPolicy.ALWAYS:
            return True
        return self is RefreshPolicy.SYNC and device_touched


class MutationKind(str, Enum):
    """Apply commits pending changes, remove discards them."""

    APPLY = "apply"
    REMOVE = "remove"

    def command_for(self, channel: ChangeChannel) -> str:
        return f"{self.value}-{channel.value}-changes"


@dataclass(frozen=True)
class MutationScope:
    """Which changes a mutation targets.

    Either an explicit id list, or a wildcard ("every pending change server-side").
    A wildcard is sent as an EMPTY id list to both channels - the backend then
    applies everything, including rows the client never loaded (pagination!).
    """

    ids: tuple[str, ...] = ()
    wildcard: bool = False

    @classmethod
    def explicit(cls, ids: Iterable[str]) -> MutationScope:
        # dict.fromkeys keeps order and drops duplicates
        return cls(ids=tuple(dict.fromkeys(str(i) for i in ids)))

    @classmethod
    def everything(cls) -> MutationScope:
        return cls(wildcard=True)

    @classmethod
    def all_matching(
        cls, change_filter: ChangeFilter, visible_ids: Iterable[str]
    ) -> MutationScope:
        """"All changes matching the current filters".

        Only an unrestricted filter becomes a wildcard. With a source or device
        filter we can't express the filter server-side, so we fall back to the ids
        the client knows about.
        """
        if change_filter.is_unrestricted:
            return cls.everything()
        return cls.explicit(visible_ids)

    @property
    def is_empty(self) -> bool:
        return not self.wildcard and not self.ids

    @property
    def is_multi_item(self) -> bool:
        return self.wildcard or len(self.ids) > 1


@dataclass(frozen=True)
class ChannelOutcome:
    """Result of one channel command inside a mutation."""

    channel: ChangeChannel
    command: str
    ids: tuple[str, ...]
    ok: bool
    error: str | None = None
    result: Any = None

    @property
    def wildcard(self) -> bool:
        return not self.ids


@dataclass
class MutationReport:
    """What happened during apply()/remove().

    Hey future me - `changes` is the RE-LISTED view after the mutation. That's the
    authoritative per-item outcome (applied / error + message). `outcomes` only
    tells you whether each channel command went through as a whole. Items of a
    channel whose command failed come back as status=error with the channel's
    error text, even though the backend still has them pending (retry works).
    """

    kind: MutationKind
    outcomes: dict[ChangeChannel, ChannelOutcome] = field(default_factory=dict)
    device_touched: bool = False
    refreshed_catalog: bool = False
    changes: list[PendingChange] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes.values())

    @property
    def failed_channels(self) -> list[ChangeChannel]:
        return [c for c, outcome in self.outcomes.items() if not outcome.ok]

    @property
    def skipped(self) -> bool:
        """Nothing was sent to the backend (empty or fully filtered scope)."""
        return not self.outcomes


class MutationLedger:
    """Client-side ledger of staged changes, reconciled against two backend channels.

    Usage:
        ledger = MutationLedger(commands, refresh_catalog=catalog.reload)
        pending = await ledger.list_by_status(PendingChangeStatus.PENDING)
        report = await ledger.apply(MutationScope.explicit([pending[0].id]))
        report.changes   # re-listed view, authoritative
    """

    def __init__(
        self,
        commands: ICommandService,
        refresh_catalog: CatalogRefresher | None = None,
        progress: OperationProgressCoordinator | None = None,
    ) -> None:
        """Initialize ledger.

        Args:
            commands: Backend command service
            refresh_catalog: "Reload catalog" collaborator (skipped when None)
            progress: Coordinator for the "change" operation; begin() is called
                before the file-channel apply command streams its progress
        """
        self._commands = commands
        self._refresh_catalog = refresh_catalog
        self._progress = progress
        # Serialises apply/remove - see DESIGN.md (overlapping mutations)
        self._mutation_lock = asyncio.Lock()
        self._view_status = PendingChangeStatus.PENDING
        self._view_filter = ChangeFilter()
        self._changes: list[PendingChange] = []
        self._by_id: dict[str, PendingChange] = {}
        # (policy, device_touched) of the apply still waiting for change-complete
        self._completion_refresh: tuple[RefreshPolicy, bool] | None = None
        self._reconcile_tasks: set[asyncio.Task[list[PendingChange]]] = set()

    def attach_progress(self, progress: OperationProgressCoordinator) -> None:
        """Attach the "change" coordinator after construction (lifecycle wiring)."""
        self._progress = progress

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def changes(self) -> list[PendingChange]:
        """Last loaded view (filtered). Re-list before trusting it after a mutation."""
        return list(self._changes)

    @property
    def view_status(self) -> PendingChangeStatus:
        return self._view_status

    @property
    def is_mutating(self) -> bool:
        return self._mutation_lock.locked()

    @staticmethod
    def classify(change_type: ChangeType | str) -> ChangeChannel:
        """Channel for a change type. Pure lookup."""
        return classify(change_type)

    async def _fetch_channel(
        self, channel: ChangeChannel, status: PendingChangeStatus
    ) -> list[PendingChange]:
        rows = await self._commands.invoke(LIST_COMMANDS[channel], {"status": status.value})
        changes: list[PendingChange] = []
        for row in rows or []:
            change = PendingChange.from_record(row)
            if change.channel is not channel:
                # The backend owns routing too - log it, but trust the change type
                logger.warning(
                    "Change %s (%s) listed by %s channel",
                    change.id,
                    change.change_type.value,
                    channel.value,
                )
            changes.append(change)
        return changes

    async def _fetch_all(self, status: PendingChangeStatus) -> list[PendingChange]:
        file_changes, device_changes = await asyncio.gather(
            self._fetch_channel(ChangeChannel.FILE, status),
            self._fetch_channel(ChangeChannel.DEVICE, status),
        )
        merged = [*file_changes, *device_changes]
        # sorted() is stable: equal timestamps keep file-before-device order
        merged.sort(key=lambda change: change.created_at)
        return merged

    async def list_by_status(
        self,
        status: PendingChangeStatus | str = PendingChangeStatus.PENDING,
        change_filter: ChangeFilter | None = None,
    ) -> list[PendingChange]:
        """Load changes with `status` from the backend, oldest first.

        Never served from a local cache - every call goes to the backend. The
        result becomes the ledger's current view (used to split ids by channel).

        Raises:
            CommandError: A list command failed
        """
        status = PendingChangeStatus(status)
        if change_filter is not None:
            self._view_filter = change_filter

        changes = await self._fetch_all(status)
        visible = [c for c in changes if self._view_filter.matches(c)]

        self._view_status = status
        self._changes = visible
        self._by_id = {change.id: change for change in changes}
        return list(visible)

    async def count_pending(self) -> int:
        """Number of pending changes across both channels (unfiltered)."""
        return len(await self._fetch_all(PendingChangeStatus.PENDING))

    def split_by_channel(self, ids: Iterable[str]) -> dict[ChangeChannel, list[str]]:
        """Group ids by channel using the last loaded view.

        Hey future me - ids we don't know (already removed) and ids that aren't
        pending anymore (applied/error) are DROPPED here. That's what makes
        remove() idempotent and guarantees we never touch applied history.
        """
        groups: dict[ChangeChannel, list[str]] = {
            ChangeChannel.FILE: [],
            ChangeChannel.DEVICE: [],
        }
        for change_id in ids:
            change = self._by_id.get(change_id)
            if change is None:
                logger.debug("Skipping unknown change id %s", change_id)
                continue
            if not change.is_pending:
                logger.debug(
                    "Skipping change %s with status %s", change_id, change.status.value
                )
                continue
            groups[change.channel].append(change_id)
        return groups

    async def contains_destructive(self, scope: MutationScope) -> bool:
        """True if applying `scope` could delete files.

        Wildcard scopes ask the backend for the full pending list - the loaded
        view may be filtered or paginated and hide a delete.
        """
        return bool(await self._destructive_ids(scope))

    async def _destructive_ids(self, scope: MutationScope) -> list[str]:
        if scope.wildcard:
            pending = await self._fetch_all(PendingChangeStatus.PENDING)
            return [c.id for c in pending if c.is_destructive]
        return [
            change_id
            for change_id in scope.ids
            if (change := self._by_id.get(change_id)) is not None
            and change.is_pending
            and change.is_destructive
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def apply(
        self,
        scope: MutationScope,
        refresh: RefreshPolicy = RefreshPolicy.SYNC,
        confirmed: bool = False,
    ) -> MutationReport:
        """Commit the pending changes in `scope`.

        Args:
            scope: Explicit ids or wildcard
            refresh: Catalog refresh policy for this call
            confirmed: Caller confirmed destructive changes (required for
                multi-item/wildcard scopes containing a delete)

        Raises:
            DestructiveChangeNotConfirmed: Gate tripped - ask the user, retry
                with confirmed=True
        """
        if scope.is_multi_item and not confirmed:
            destructive = await self._destructive_ids(scope)
            if destructive:
                raise DestructiveChangeNotConfirmed(destructive)
        return await self._mutate(MutationKind.APPLY, scope, refresh)

    async def remove(
        self,
        scope: MutationScope,
        refresh: RefreshPolicy = RefreshPolicy.NEVER,
    ) -> MutationReport:
        """Discard the pending changes in `scope`. Applied items are never touched."""
        return await self._mutate(MutationKind.REMOVE, scope, refresh)

    async def _mutate(
        self,
        kind: MutationKind,
        scope: MutationScope,
        refresh: RefreshPolicy,
    ) -> MutationReport:
        report = MutationReport(kind=kind)
        if scope.is_empty:
            return report

        async with self._mutation_lock:
            # One correlation id per batch - ties channel logs to the mutation
            set_correlation_id()
            async with log_operation(
                logger,
                f"ledger.{kind.value}",
                wildcard=scope.wildcard,
                requested=len(scope.ids),
            ):
                groups = self._plan(scope)
                if not any(groups.values()) and not scope.wildcard:
                    logger.info("Nothing to %s: no pending changes in scope", kind.value)
                    report.changes = self.changes
                    return report

                outcomes = await self._run_channels(kind, groups, scope.wildcard, refresh)
                report.outcomes = {outcome.channel: outcome for outcome in outcomes}
                report.device_touched = ChangeChannel.DEVICE in report.outcomes

                relisted = await self._relist_after_mutation()
                report.changes = self._mark_channel_failures(relisted, outcomes)

                if refresh.should_refresh(report.device_touched):
                    report.refreshed_catalog = await self._reload_catalog()

        return report

    def _plan(self, scope: MutationScope) -> dict[ChangeChannel, list[str]]:
        if scope.wildcard:
            # Empty list = "all pending" for both channels
            return {ChangeChannel.FILE: [], ChangeChannel.DEVICE: []}
        return self.split_by_channel(scope.ids)

    async def _run_channels(
        self,
        kind: MutationKind,
        groups: Mapping[ChangeChannel, Sequence[str]],
        wildcard: bool,
        refresh: RefreshPolicy,
    ) -> list[ChannelOutcome]:
        channels = [c for c, ids in groups.items() if wildcard or ids]

        tracks_progress = (
            kind is MutationKind.APPLY
            and ChangeChannel.FILE in channels
            and self._progress is not None
        )
        if tracks_progress:
            self._progress.begin()
            self._completion_refresh = (refresh, ChangeChannel.DEVICE in channels)

        outcomes = list(
            await asyncio.gather(
                *(self._run_channel(kind, c, tuple(groups[c])) for c in channels)
            )
        )

        if tracks_progress and any(
            o.channel is ChangeChannel.FILE and not o.ok for o in outcomes
        ):
            # The backend never started the run - no change-complete will close it
            self._progress.reset()
            self._completion_refresh = None
        return outcomes

    @staticmethod
    def _mark_channel_failures(
        changes: Sequence[PendingChange], outcomes: Sequence[ChannelOutcome]
    ) -> list[PendingChange]:
        failed = [outcome for outcome in outcomes if not outcome.ok]
        if not failed:
            return list(changes)

        marked: list[PendingChange] = []
        for change in changes:
            outcome = next(
                (
                    o
                    for o in failed
                    if o.channel is change.channel and (o.wildcard or change.id in o.ids)
                ),
                None,
            )
            if outcome is not None and change.is_pending:
                change = replace(
                    change, status=PendingChangeStatus.ERROR, error=outcome.error
                )
            marked.append(change)
        return marked

    # ------------------------------------------------------------------
    # change-complete reconciliation
    # ------------------------------------------------------------------

    def handle_change_complete(self, stats: OperationStats) -> None:
        """on_complete hook of the "change" coordinator.

        Hey future me - the real backend applies file changes in the background and
        answers apply-file-changes right away. The re-list inside apply() then still
        sees pending rows; the authoritative view only exists after change-complete.
        Runs from a synchronous bus callback, so the work is scheduled as a task.
        """
        task = asyncio.get_running_loop().create_task(
            self.reconcile(), name="ledger-reconcile"
        )
        self._reconcile_tasks.add(task)
        task.add_done_callback(self._reconcile_tasks.discard)
        logger.debug(
            "change-complete (%d processed, %d errors) - re-listing changes",
            stats.processed,
            stats.errors,
        )

    async def reconcile(self) -> list[PendingChange]:
        """Re-list the current view and apply the refresh policy of the last apply."""
        followup, self._completion_refresh = self._completion_refresh, None
        async with self._mutation_lock:
            changes = await self._relist_after_mutation()
            if followup is not None and followup[0].should_refresh(followup[1]):
                await self._reload_catalog()
        return changes

    async def aclose(self) -> None:
        """Cancel reconciliations still scheduled from change-complete."""
        tasks, self._reconcile_tasks = self._reconcile_tasks, set()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_channel(
        self,
        kind: MutationKind,
        channel: ChangeChannel,
        ids: tuple[str, ...],
    ) -> ChannelOutcome:
        command = kind.command_for(channel)
        try:
            result = await self._commands.invoke(command, {"ids": list(ids)})
        except Exception as e:
            # Whole channel failed: every id in this channel's scope failed for this
            # call. Reported ONCE here; the other channel keeps going.
            logger.warning(
                "%s failed for %s: %s",
                command,
                f"{len(ids)} change(s)" if ids else "all pending changes",
                e,
            )
            return ChannelOutcome(
                channel=channel, command=command, ids=ids, ok=False, error=str(e)
            )

        logger.debug(
            "%s accepted %s", command, f"{len(ids)} change(s)" if ids else "wildcard"
        )
        return ChannelOutcome(
            channel=channel, command=command, ids=ids, ok=True, result=result
        )

    async def _relist_after_mutation(self) -> list[PendingChange]:
        try:
            return await self.list_by_status(self._view_status)
        except Exception as e:
            # The mutation itself already went through - report a stale view
            # instead of turning a successful apply into an exception.
            logger.warning("Could not re-list changes after mutation: %s", e)
            return self.changes

    async def _reload_catalog(self) -> bool:
        if self._refresh_catalog is None:
            return False
        try:
            await self._refresh_catalog()
        except Exception as e:
            logger.warning("Catalog refresh failed: %s", e)
            return False
        return True


__all__ = [
    "ChannelOutcome",
    "MutationKind",
    "MutationLedger",
    "MutationReport",
    "MutationScope",
    "RefreshPolicy",
]

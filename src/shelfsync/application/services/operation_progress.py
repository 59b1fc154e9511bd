# Hey future me - das hier ersetzt die globalen Event-Listener pro Operation!
#
# Jede lange Backend-Operation (scan, enrich, sync, change) streamt drei Events:
#   N-progress  → ein Item-Status (pending/processing/done/skipped/error)
#   N-complete  → finale Stats {total, processed, skipped, errors}
#   N-error     → String mit dem Grund
#
# Der Coordinator aggregiert das zu running/snapshot/active_ids.
# Wichtig: complete/error sind AUTORITATIV. Ein verspätetes progress-Event darf
# running nicht wieder auf True setzen → nach dem Terminal-Event ist das Gate zu,
# bis jemand begin() oder reset() aufruft.
"""Operation progress coordinator - aggregated state of one background operation."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from shelfsync.domain.entities.operation import (
    OperationProgress,
    OperationProgressState,
    OperationStats,
)
from shelfsync.domain.exceptions import MalformedEventError
from shelfsync.domain.ports import IEventBus, Unsubscribe

logger = logging.getLogger(__name__)

CompleteCallback = Callable[[OperationStats], None]
ErrorCallback = Callable[[str], None]


class OperationProgressCoordinator:
    """Subscribes to one named operation's events and exposes aggregate state.

    Hey future me - this is an explicit object with start()/stop() instead of
    process-wide listeners, so every test can build an isolated instance with its
    own bus.

    Lifecycle:
        coordinator = OperationProgressCoordinator("enrich", bus, on_complete=...)
        coordinator.start()        # subscribe (no-op while disabled)
        coordinator.begin()        # optional: we kicked off the run ourselves
        ... events arrive ...
        coordinator.stop()         # unsubscribe + reset

    There is NO cancel() here on purpose. Cancelling is a separate backend command;
    we only reflect the eventual complete event with whatever partial stats the
    backend reports.
    """

    def __init__(
        self,
        operation_name: str,
        event_bus: IEventBus,
        enabled: bool = True,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_cancelled: CompleteCallback | None = None,
        listen_cancelled: bool = False,
    ) -> None:
        """Initialize coordinator.

        Args:
            operation_name: Event prefix, e.g. "enrich" for "enrich-progress"
            event_bus: Bus to subscribe on
            enabled: False outside the hosting runtime - everything becomes a no-op
            on_complete: Called with final stats on N-complete
            on_error: Called with the reason on N-error (and on malformed payloads)
            on_cancelled: Called on N-cancelled (falls back to on_complete)
            listen_cancelled: Also subscribe to N-cancelled (only some operations emit it)
        """
        if not operation_name:
            raise ValueError("operation_name must not be empty")
        self._name = operation_name
        self._bus = event_bus
        self._enabled = enabled
        self._on_complete = on_complete
        self._on_error = on_error
        self._on_cancelled = on_cancelled
        self._listen_cancelled = listen_cancelled

        self._unsubscribers: list[Unsubscribe] = []
        self._state = OperationProgressState.empty()
        # Closed after a terminal event until begin()/reset() opens a new run
        self._gate_open = True
        self._stats: dict[str, int] = {
            "progress_events": 0,
            "stale_progress_dropped": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def operation_name(self) -> str:
        return self._name

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_started(self) -> bool:
        return bool(self._unsubscribers)

    def event_name(self, kind: str) -> str:
        """Namespaced event name, e.g. event_name("progress") → "enrich-progress"."""
        return f"{self._name}-{kind}"

    def start(self) -> None:
        """Subscribe to the operation's events. Idempotent."""
        if not self._enabled:
            logger.debug("Coordinator '%s' disabled, not subscribing", self._name)
            return
        if self._unsubscribers:
            return

        self._gate_open = True
        self._unsubscribers = [
            self._bus.subscribe(self.event_name("progress"), self._handle_progress),
            self._bus.subscribe(self.event_name("complete"), self._handle_complete),
            self._bus.subscribe(self.event_name("error"), self._handle_error),
        ]
        if self._listen_cancelled:
            self._unsubscribers.append(
                self._bus.subscribe(self.event_name("cancelled"), self._handle_cancelled)
            )
        logger.debug("Coordinator '%s' subscribed", self._name)

    def stop(self) -> None:
        """Unsubscribe and reset state. Idempotent."""
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()
        self.reset()
        if unsubscribers:
            logger.debug("Coordinator '%s' unsubscribed", self._name)

    async def __aenter__(self) -> OperationProgressCoordinator:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> OperationProgressState:
        """Immutable snapshot of the aggregate state."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state.running

    @property
    def progress(self) -> OperationProgress | None:
        return self._state.snapshot

    @property
    def processing_ids(self) -> frozenset[str]:
        return self._state.active_ids

    def begin(self) -> None:
        """Mark a caller-initiated run as started.

        Hey future me - call this right BEFORE invoking the backend command that
        starts the operation. It re-opens the progress gate that the previous
        terminal event closed.
        """
        if not self._enabled:
            return
        self._gate_open = True
        self._state = OperationProgressState(running=True)

    def reset(self) -> None:
        """Force state back to empty (caller lost interest, e.g. view unmounted)."""
        self._state = OperationProgressState.empty()
        self._gate_open = True

    def get_stats(self) -> dict[str, Any]:
        """Counters for monitoring/debugging."""
        return {
            "operation": self._name,
            "running": self._state.running,
            "active": len(self._state.active_ids),
            **self._stats,
        }

    # ------------------------------------------------------------------
    # Event handlers (subscription boundary - never raise into the bus)
    # ------------------------------------------------------------------

    def _handle_progress(self, payload: Any) -> None:
        event_name = self.event_name("progress")
        if not self._gate_open:
            # Closed gate drops everything, malformed or not
            self._stats["stale_progress_dropped"] += 1
            logger.debug("Dropping late %s (run already finished)", event_name)
            return

        try:
            progress = OperationProgress.from_payload(payload, event_name)
        except MalformedEventError as e:
            logger.warning("%s", e.message)
            self._finish_with_error(e.message)
            return

        self._stats["progress_events"] += 1
        active = set(self._state.active_ids)
        if progress.status.is_active:
            active.add(progress.item_id)
        else:
            active.discard(progress.item_id)

        self._state = OperationProgressState(
            running=True,
            snapshot=progress,
            active_ids=frozenset(active),
        )

    def _handle_complete(self, payload: Any) -> None:
        try:
            stats = OperationStats.from_payload(payload, self.event_name("complete"))
        except MalformedEventError as e:
            logger.warning("%s", e.message)
            self._finish_with_error(e.message)
            return

        self._close_run()
        self._stats["completed"] += 1
        logger.info(
            "Operation '%s' complete: %d processed, %d skipped, %d errors (of %d)",
            self._name,
            stats.processed,
            stats.skipped,
            stats.errors,
            stats.total,
        )
        self._notify(self._on_complete, stats)

    def _handle_cancelled(self, payload: Any) -> None:
        # The backend may cancel before it has any stats to report
        if payload is None:
            payload = {}
        try:
            stats = OperationStats.from_payload(
                payload, self.event_name("cancelled"), cancelled=True
            )
        except MalformedEventError as e:
            logger.warning("%s", e.message)
            self._finish_with_error(e.message)
            return

        self._close_run()
        self._stats["cancelled"] += 1
        logger.info(
            "Operation '%s' cancelled after %d processed", self._name, stats.processed
        )
        self._notify(self._on_cancelled or self._on_complete, stats)

    def _handle_error(self, payload: Any) -> None:
        reason = payload if isinstance(payload, str) else str(payload)
        self._finish_with_error(reason)

    def _finish_with_error(self, reason: str) -> None:
        self._close_run()
        self._stats["failed"] += 1
        logger.warning("Operation '%s' failed: %s", self._name, reason)
        self._notify(self._on_error, reason)

    def _close_run(self) -> None:
        self._state = OperationProgressState.empty()
        self._gate_open = False

    def _notify(self, callback: Callable[[Any], None] | None, value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            # A broken UI callback must not take down the event loop
            logger.exception("Callback for operation '%s' raised", self._name)

"""Lifecycle management - wires the coordination layer together.

Startup order:
1. Logging
2. Command service (HTTP) + local event bus
3. Mutation ledger
4. Progress coordinators for the known operations (scan, enrich, sync, change);
   "change" is attached to the ledger and reports change-complete back to it
5. Asset cache with the configured handle factory
6. SSE bridge (last - events may start flowing immediately)

Shutdown runs in reverse.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from shelfsync.application.services.asset_cache import AssetFetchCache
from shelfsync.application.services.mutation_ledger import MutationLedger
from shelfsync.application.services.operation_progress import (
    OperationProgressCoordinator,
)
from shelfsync.config import Settings, get_settings
from shelfsync.domain.exceptions import ConfigurationError
from shelfsync.domain.ports import CatalogRefresher, IAssetHandleFactory, ICommandService
from shelfsync.infrastructure.assets import FileHandleFactory, MemoryHandleFactory
from shelfsync.infrastructure.events import LocalEventBus, SseEventBridge
from shelfsync.infrastructure.integrations import HttpCommandService
from shelfsync.infrastructure.observability import configure_logging

logger = logging.getLogger(__name__)

# Operations the backend streams progress for. enrich also announces cancellation.
KNOWN_OPERATIONS: tuple[str, ...] = ("scan", "enrich", "sync", "change")
CANCELLABLE_OPERATIONS: frozenset[str] = frozenset({"enrich"})
CHANGE_OPERATION = "change"


# Hey future me, this validates the cover cache dir BEFORE the first cover lands there.
# Only matters for the file handle backend; the memory backend never touches disk.
def _validate_cache_dir(settings: Settings) -> None:
    cache_dir = settings.assets.cache_dir
    try:
        cache_dir.mkdir(parents=True, exist_ok=True)
        marker = cache_dir / ".write_test"
        marker.write_bytes(b"test")
        marker.unlink()
    except OSError as exc:
        raise ConfigurationError(
            f"Cover cache directory '{cache_dir}' is not writable: {exc}. "
            "Set SHELFSYNC_ASSETS__CACHE_DIR or use the memory handle backend."
        ) from exc


def build_handle_factory(settings: Settings) -> IAssetHandleFactory:
    if settings.assets.handle_backend == "file":
        _validate_cache_dir(settings)
        return FileHandleFactory(settings.assets.cache_dir)
    return MemoryHandleFactory()


@dataclass
class CoordinationContext:
    """Everything the UI layer needs, built once per process."""

    settings: Settings
    commands: ICommandService
    bus: LocalEventBus
    ledger: MutationLedger
    assets: AssetFetchCache
    coordinators: dict[str, OperationProgressCoordinator] = field(default_factory=dict)
    bridge: SseEventBridge | None = None
    _started: bool = field(default=False, init=False)

    def coordinator(self, operation_name: str) -> OperationProgressCoordinator:
        """Coordinator for a known operation.

        Raises:
            KeyError: Unknown operation name
        """
        return self.coordinators[operation_name]

    async def start(self) -> None:
        if self._started:
            return
        for coordinator in self.coordinators.values():
            coordinator.start()
        if self.bridge is not None:
            await self.bridge.start()
        self._started = True
        logger.info(
            "Coordination layer started (%d operations, event stream %s)",
            len(self.coordinators),
            "on" if self.bridge else "off",
        )

    async def aclose(self) -> None:
        if self.bridge is not None:
            await self.bridge.stop()
        for coordinator in self.coordinators.values():
            coordinator.stop()
        await self.ledger.aclose()
        await self.assets.aclose()
        if isinstance(self.commands, HttpCommandService):
            await self.commands.close()
        self._started = False
        logger.info("Coordination layer stopped")


def build_context(
    settings: Settings,
    commands: ICommandService | None = None,
    bus: LocalEventBus | None = None,
    refresh_catalog: CatalogRefresher | None = None,
    handle_factory: IAssetHandleFactory | None = None,
) -> CoordinationContext:
    """Build (but don't start) the coordination layer.

    Args:
        settings: Application settings
        commands: Command service override (default: HTTP)
        bus: Event bus override (default: fresh LocalEventBus)
        refresh_catalog: "Reload catalog" collaborator from the UI layer
        handle_factory: Handle factory override (default: from settings)
    """
    bus = bus or LocalEventBus()
    own_commands = commands is None
    commands = commands or HttpCommandService(settings.backend)

    ledger = MutationLedger(commands, refresh_catalog=refresh_catalog)
    coordinators = {
        name: OperationProgressCoordinator(
            name,
            bus,
            enabled=settings.runtime_enabled,
            # change-complete is when the ledger's view becomes authoritative
            on_complete=ledger.handle_change_complete if name == CHANGE_OPERATION else None,
            listen_cancelled=name in CANCELLABLE_OPERATIONS,
        )
        for name in KNOWN_OPERATIONS
    }
    ledger.attach_progress(coordinators[CHANGE_OPERATION])
    assets = AssetFetchCache(
        commands,
        handle_factory or build_handle_factory(settings),
        max_concurrent=settings.assets.max_concurrent,
        command=settings.assets.command,
    )

    bridge = None
    # The bridge only makes sense against the real backend
    if settings.runtime_enabled and settings.backend.enable_event_stream and own_commands:
        bridge = SseEventBridge(settings.backend, bus)

    return CoordinationContext(
        settings=settings,
        commands=commands,
        bus=bus,
        ledger=ledger,
        assets=assets,
        coordinators=coordinators,
        bridge=bridge,
    )


@asynccontextmanager
async def lifespan(
    settings: Settings | None = None,
    refresh_catalog: CatalogRefresher | None = None,
) -> AsyncGenerator[CoordinationContext, None]:
    """Configure logging, build and start the coordination layer, tear it down on exit."""
    settings = settings or get_settings()
    configure_logging(
        log_level=settings.log.level,
        json_format=settings.log.json_format,
        app_name=settings.app_name,
    )
    logger.info("Starting %s against %s", settings.app_name, settings.backend.base_url)

    context = build_context(settings, refresh_catalog=refresh_catalog)
    try:
        await context.start()
        yield context
    finally:
        await context.aclose()

"""Shared test doubles: an in-memory command service and pending-change backend."""

import inspect
from collections.abc import Callable
from functools import partial
from typing import Any

import pytest

from shelfsync.domain.entities.pending_change import ChangeChannel, classify
from shelfsync.domain.exceptions import CommandError
from shelfsync.domain.ports import ICommandService


class FakeCommandService(ICommandService):
    """Routes commands to registered handlers (sync or async) and records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._handlers: dict[str, Callable[[dict[str, Any]], Any]] = {}

    def on(self, command: str, handler: Callable[[dict[str, Any]], Any]) -> None:
        self._handlers[command] = handler

    def calls_to(self, command: str) -> list[dict[str, Any]]:
        return [args for name, args in self.calls if name == command]

    async def invoke(self, command: str, args: dict[str, Any] | None = None) -> Any:
        args = args or {}
        self.calls.append((command, args))
        handler = self._handlers.get(command)
        if handler is None:
            raise CommandError(command, "unknown command")
        result = handler(args)
        if inspect.isawaitable(result):
            result = await result
        return result


class FakeChangeBackend:
    """Both pending-change tables behind the list/apply/remove commands.

    Mirrors the backend rules: an empty id list means "every pending row of this
    channel", apply marks rows applied (or error), remove only deletes pending rows.
    """

    def __init__(self, commands: FakeCommandService) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.failing_channels: set[ChangeChannel] = set()
        self.failing_ids: dict[str, str] = {}
        self._clock = 0
        for channel in ChangeChannel:
            commands.on(f"list-{channel.value}-changes", partial(self._list, channel))
            commands.on(f"apply-{channel.value}-changes", partial(self._apply, channel))
            commands.on(f"remove-{channel.value}-changes", partial(self._remove, channel))

    def add(
        self, change_id: str, change_type: str, status: str = "pending", **extra: Any
    ) -> dict[str, Any]:
        self._clock += 1
        row = {
            "id": change_id,
            "change_type": change_type,
            "status": status,
            "created_at": 1_700_000_000_000 + self._clock,
            **extra,
        }
        self.rows[change_id] = row
        return row

    def add_many(
        self, count: int, change_type: str = "metadata_update", prefix: str = "c"
    ) -> list[str]:
        return [self.add(f"{prefix}{i}", change_type)["id"] for i in range(count)]

    def status_of(self, change_id: str) -> str | None:
        row = self.rows.get(change_id)
        return row["status"] if row else None

    def _rows(self, channel: ChangeChannel, status: str) -> list[dict[str, Any]]:
        return [
            row
            for row in self.rows.values()
            if classify(row["change_type"]) is channel and row["status"] == status
        ]

    def _targets(self, channel: ChangeChannel, ids: list[str]) -> list[dict[str, Any]]:
        pending = self._rows(channel, "pending")
        if not ids:
            return pending
        wanted = set(ids)
        return [row for row in pending if row["id"] in wanted]

    def _check(self, command: str, channel: ChangeChannel) -> None:
        if channel in self.failing_channels:
            raise CommandError(command, "backend unavailable")

    def _list(self, channel: ChangeChannel, args: dict[str, Any]) -> list[dict[str, Any]]:
        return [dict(row) for row in self._rows(channel, args.get("status", "pending"))]

    def _apply(self, channel: ChangeChannel, args: dict[str, Any]) -> int:
        self._check(f"apply-{channel.value}-changes", channel)
        applied = 0
        for row in self._targets(channel, args["ids"]):
            if row["id"] in self.failing_ids:
                row["status"] = "error"
                row["error"] = self.failing_ids[row["id"]]
            else:
                row["status"] = "applied"
                applied += 1
        return applied

    def _remove(self, channel: ChangeChannel, args: dict[str, Any]) -> int:
        self._check(f"remove-{channel.value}-changes", channel)
        targets = self._targets(channel, args["ids"])
        for row in targets:
            del self.rows[row["id"]]
        return len(targets)


@pytest.fixture
def commands() -> FakeCommandService:
    return FakeCommandService()


@pytest.fixture
def backend(commands: FakeCommandService) -> FakeChangeBackend:
    return FakeChangeBackend(commands)

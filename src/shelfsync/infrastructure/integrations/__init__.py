"""Backend integrations."""

from shelfsync.infrastructure.integrations.command_client import HttpCommandService

__all__ = ["HttpCommandService"]

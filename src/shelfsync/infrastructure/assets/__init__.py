"""Asset handle factories."""

from shelfsync.infrastructure.assets.handles import FileHandleFactory, MemoryHandleFactory

__all__ = ["FileHandleFactory", "MemoryHandleFactory"]

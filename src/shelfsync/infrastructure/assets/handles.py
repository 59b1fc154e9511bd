"""Asset handle factories.

Hey future me - the cache doesn't care WHAT a handle points at, only that it can be
released exactly once. Two flavours:
- MemoryHandleFactory: `data:` URI, release drops the bytes (the default)
- FileHandleFactory: bytes written to a temp file in the cover cache dir, release
  unlinks it (for views that want a plain file path)

Both count acquired/released so leaks show up in get_stats().
"""

import base64
import contextlib
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Any

from shelfsync.domain.entities.asset import AssetBlob, AssetHandle
from shelfsync.domain.ports import IAssetHandleFactory

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


class MemoryHandleFactory(IAssetHandleFactory):
    """Handles backed by in-memory `data:` URIs."""

    def __init__(self) -> None:
        self.acquired = 0
        self.released = 0

    def acquire(self, key: str, blob: AssetBlob) -> AssetHandle:
        encoded = base64.b64encode(blob.data).decode("ascii")
        self.acquired += 1
        return AssetHandle(
            uri=f"data:{blob.mime_type};base64,{encoded}",
            mime_type=blob.mime_type,
            size=len(blob.data),
            on_release=self._on_release,
        )

    def _on_release(self) -> None:
        self.released += 1

    @property
    def live(self) -> int:
        return self.acquired - self.released

    def get_stats(self) -> dict[str, Any]:
        return {"acquired": self.acquired, "released": self.released, "live": self.live}


class FileHandleFactory(IAssetHandleFactory):
    """Handles backed by uniquely named files in `cache_dir`."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = Path(cache_dir)
        self.acquired = 0
        self.released = 0

    def acquire(self, key: str, blob: AssetBlob) -> AssetHandle:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        extension = _EXTENSIONS.get(blob.mime_type) or (
            mimetypes.guess_extension(blob.mime_type) or ".bin"
        )
        # Unique per acquire: a force-refresh must never overwrite the old file
        # before its handle is released
        path = self.cache_dir / f"{uuid.uuid4().hex}{extension}"
        path.write_bytes(blob.data)
        self.acquired += 1
        logger.debug("Wrote cover for %s to %s", key, path.name)

        def release() -> None:
            self.released += 1
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

        return AssetHandle(
            uri=str(path),
            mime_type=blob.mime_type,
            size=len(blob.data),
            on_release=release,
        )

    @property
    def live(self) -> int:
        return self.acquired - self.released

    def get_stats(self) -> dict[str, Any]:
        return {"acquired": self.acquired, "released": self.released, "live": self.live}

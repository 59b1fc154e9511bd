"""Asset (cover image) blobs and revocable handles."""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from shelfsync.domain.exceptions import HandleReleasedError, ValidationException

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"


@dataclass(frozen=True)
class AssetBlob:
    """Raw bytes returned by the backend's resolve-asset-blob command."""

    mime_type: str
    data: bytes

    @classmethod
    def from_payload(cls, payload: Any) -> AssetBlob | None:
        """Convert a command result into a blob.

        Accepts `{mimeType|mime, bytes}` where bytes is a list of ints (what a
        JSON-serialised Vec<u8> looks like), a base64 string, or raw bytes.
        Returns None for a null result or an empty body.

        Raises:
            ValidationException: Result doesn't look like a blob
        """
        if payload is None:
            return None
        if not isinstance(payload, Mapping):
            raise ValidationException("Asset blob must be an object or null")

        mime_type = payload.get("mimeType") or payload.get("mime") or DEFAULT_MIME_TYPE
        raw = payload.get("bytes")
        if isinstance(raw, bytes | bytearray):
            data = bytes(raw)
        elif isinstance(raw, list):
            try:
                data = bytes(raw)
            except (TypeError, ValueError) as e:
                raise ValidationException(f"Invalid asset byte list: {e}") from e
        elif isinstance(raw, str):
            try:
                data = base64.b64decode(raw, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValidationException(f"Invalid base64 asset bytes: {e}") from e
        elif raw is None:
            return None
        else:
            raise ValidationException(f"Unsupported asset bytes type: {type(raw).__name__}")

        if not data:
            return None
        return cls(mime_type=str(mime_type), data=data)


class AssetEntryState(str, Enum):
    """Cache membership of one key. Exactly one at a time."""

    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    RESOLVED = "resolved"
    ABSENT = "absent"


class AssetHandle:
    """Ownership-bearing reference to displayable bytes.

    Hey future me - think of this as the Python version of a browser object URL.
    The cache is the ONLY owner. release() frees the underlying resource (drops
    bytes, unlinks a temp file, ...) and is safe to call twice: eviction and
    replacement can both race for the same handle, the second call is a no-op.
    """

    def __init__(
        self,
        uri: str,
        mime_type: str,
        size: int,
        on_release: Callable[[], None] | None = None,
    ) -> None:
        self._uri = uri
        self._mime_type = mime_type
        self._size = size
        self._on_release = on_release
        self._released = False

    @property
    def uri(self) -> str:
        if self._released:
            raise HandleReleasedError(f"Asset handle {self._uri[:48]} already released")
        return self._uri

    @property
    def mime_type(self) -> str:
        return self._mime_type

    @property
    def size(self) -> int:
        return self._size

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Release the underlying resource.

        Returns:
            True if this call released it, False if it was already released
        """
        if self._released:
            logger.debug("Ignoring double release of asset handle %s", self._uri[:48])
            return False
        self._released = True
        if self._on_release is not None:
            self._on_release()
        return True

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"AssetHandle({self._mime_type}, {self._size} bytes, {state})"

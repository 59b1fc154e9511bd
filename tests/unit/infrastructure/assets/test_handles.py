"""Tests for asset handle factories."""

import base64
from pathlib import Path

from shelfsync.domain.entities.asset import AssetBlob
from shelfsync.infrastructure.assets import FileHandleFactory, MemoryHandleFactory

PNG = AssetBlob(mime_type="image/png", data=b"\x89PNG-cover")


class TestMemoryHandleFactory:
    """Test data: URI handles."""

    def test_acquire_builds_data_uri(self):
        factory = MemoryHandleFactory()

        handle = factory.acquire("item-1", PNG)

        assert handle.uri == "data:image/png;base64," + base64.b64encode(PNG.data).decode()
        assert handle.size == len(PNG.data)
        assert factory.live == 1

    def test_release_is_counted_once(self):
        factory = MemoryHandleFactory()
        handle = factory.acquire("item-1", PNG)

        handle.release()
        handle.release()

        assert factory.get_stats() == {"acquired": 1, "released": 1, "live": 0}


class TestFileHandleFactory:
    """Test temp-file handles."""

    def test_acquire_writes_file(self, tmp_path: Path):
        factory = FileHandleFactory(tmp_path / "covers")

        handle = factory.acquire("item-1", PNG)

        path = Path(handle.uri)
        assert path.parent == tmp_path / "covers"
        assert path.suffix == ".png"
        assert path.read_bytes() == PNG.data

    def test_each_acquire_gets_its_own_file(self, tmp_path: Path):
        factory = FileHandleFactory(tmp_path)

        first = factory.acquire("item-1", PNG)
        second = factory.acquire("item-1", PNG)

        assert first.uri != second.uri

    def test_release_unlinks_file(self, tmp_path: Path):
        factory = FileHandleFactory(tmp_path)
        handle = factory.acquire("item-1", PNG)
        path = Path(handle.uri)

        handle.release()

        assert not path.exists()
        assert factory.live == 0

    def test_release_tolerates_missing_file(self, tmp_path: Path):
        factory = FileHandleFactory(tmp_path)
        handle = factory.acquire("item-1", PNG)
        Path(handle.uri).unlink()

        assert handle.release() is True
        assert factory.released == 1

    def test_unknown_mime_type_falls_back_to_bin(self, tmp_path: Path):
        factory = FileHandleFactory(tmp_path)

        handle = factory.acquire("item-1", AssetBlob(mime_type="x-shelfsync/unknown", data=b"?"))

        assert handle.uri.endswith(".bin")

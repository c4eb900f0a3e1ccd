"""Tests for aumai_nydusify.converter."""

from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest

from aumai_nydusify.converter import ChunkConverter, decompress_layer, read_bootstrap
from aumai_nydusify.errors import DecompressionFailedError

from conftest import BASIC_FILES, make_layer_tar


def _extract(tmp_path: Path, name: str, files: dict[str, bytes]) -> Path:
    tarball = make_layer_tar(tmp_path / f"{name}.tar.gz", files)
    dest = tmp_path / name
    with open(tarball, "rb") as fh:
        decompress_layer(fh, dest)
    return dest


# ---------------------------------------------------------------------------
# decompress_layer
# ---------------------------------------------------------------------------


class TestDecompressLayer:
    def test_extracts_gzip_layer(self, tmp_path: Path) -> None:
        dest = _extract(tmp_path, "layer", BASIC_FILES)
        assert (dest / "etc" / "hostname").read_bytes() == b"image-basic\n"
        assert not (tmp_path / "layer.partial").exists()

    def test_extracts_plain_tar(self, tmp_path: Path) -> None:
        tarball = make_layer_tar(tmp_path / "plain.tar", {"a.txt": b"a"}, gz=False)
        dest = tmp_path / "plain"
        with open(tarball, "rb") as fh:
            decompress_layer(fh, dest)
        assert (dest / "a.txt").read_bytes() == b"a"

    def test_corrupt_stream_leaves_nothing_behind(self, tmp_path: Path) -> None:
        dest = tmp_path / "broken"
        with pytest.raises(DecompressionFailedError):
            decompress_layer(io.BytesIO(b"\x1f\x8b\x08garbage" * 10), dest)
        assert not dest.exists()
        assert not (tmp_path / "broken.partial").exists()


# ---------------------------------------------------------------------------
# ChunkConverter
# ---------------------------------------------------------------------------


class TestChunkConverter:
    def test_produces_blob_and_bootstrap(self, tmp_path: Path) -> None:
        layer_dir = _extract(tmp_path, "layer", BASIC_FILES)
        result = ChunkConverter().convert(layer_dir, None, tmp_path / "out")
        assert result.blob_path.stat().st_size > 0
        document = read_bootstrap(result.bootstrap_path)
        assert document["files"]["usr/bin/app"]["size"] == len(BASIC_FILES["usr/bin/app"])
        assert document["files"]["usr"]["type"] == "dir"
        assert len(document["blobs"]) == 1

    def test_blob_holds_each_chunk_once(self, tmp_path: Path) -> None:
        payload = b"\x42" * 50000
        layer_dir = _extract(tmp_path, "layer", {"a.bin": payload, "b.bin": payload})
        result = ChunkConverter().convert(layer_dir, None, tmp_path / "out")
        assert result.blob_path.stat().st_size <= len(payload)
        document = read_bootstrap(result.bootstrap_path)
        assert document["files"]["a.bin"]["chunks"] == document["files"]["b.bin"]["chunks"]

    def test_is_deterministic(self, tmp_path: Path) -> None:
        layer_dir = _extract(tmp_path, "layer", BASIC_FILES)
        converter = ChunkConverter()
        first = converter.convert(layer_dir, None, tmp_path / "out1")
        second = converter.convert(layer_dir, None, tmp_path / "out2")
        assert first.blob_path.read_bytes() == second.blob_path.read_bytes()
        assert first.bootstrap_path.read_bytes() == second.bootstrap_path.read_bytes()

    def test_dedups_against_parent(self, tmp_path: Path) -> None:
        converter = ChunkConverter()
        base_dir = _extract(tmp_path, "base", BASIC_FILES)
        base = converter.convert(base_dir, None, tmp_path / "base-out")
        child_dir = _extract(tmp_path, "child", {"copy/app": BASIC_FILES["usr/bin/app"]})
        child = converter.convert(child_dir, base.bootstrap_path, tmp_path / "child-out")

        assert child.blob_path.stat().st_size == 0
        document = read_bootstrap(child.bootstrap_path)
        assert len(document["blobs"]) == 2
        assert "etc/hostname" in document["files"]
        assert document["files"]["copy/app"]["chunks"] == document["files"]["usr/bin/app"]["chunks"]

    def test_whiteout_removes_parent_entry(self, tmp_path: Path) -> None:
        converter = ChunkConverter()
        base = converter.convert(_extract(tmp_path, "base", BASIC_FILES), None, tmp_path / "o1")
        child_dir = _extract(tmp_path, "child", {"etc/.wh.hostname": b""})
        child = converter.convert(child_dir, base.bootstrap_path, tmp_path / "o2")
        files = read_bootstrap(child.bootstrap_path)["files"]
        assert "etc/hostname" not in files
        assert "etc/.wh.hostname" not in files
        assert "usr/bin/app" in files

    def test_opaque_whiteout_hides_directory_contents(self, tmp_path: Path) -> None:
        converter = ChunkConverter()
        base = converter.convert(_extract(tmp_path, "base", BASIC_FILES), None, tmp_path / "o1")
        child_dir = _extract(
            tmp_path, "child", {"usr/.wh..wh..opq": b"", "usr/new.txt": b"fresh"}
        )
        child = converter.convert(child_dir, base.bootstrap_path, tmp_path / "o2")
        files = read_bootstrap(child.bootstrap_path)["files"]
        assert "usr/bin/app" not in files
        assert "usr/share/doc/readme.txt" not in files
        assert files["usr/new.txt"]["size"] == 5
        assert "etc/hostname" in files

    def test_bootstrap_tarball_is_reproducible(self, tmp_path: Path) -> None:
        layer_dir = _extract(tmp_path, "layer", {"x": b"x"})
        result = ChunkConverter().convert(layer_dir, None, tmp_path / "out")
        with tarfile.open(result.bootstrap_path, "r:gz") as tar:
            (member,) = tar.getmembers()
        assert member.name == "image/image.boot"
        assert member.mtime == 0

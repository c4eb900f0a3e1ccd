"""Tests for aumai_nydusify.layer."""

from __future__ import annotations

import gzip
import hashlib
import io
import threading
from pathlib import Path

import pytest

from aumai_nydusify.errors import (
    ConvertCancelledError,
    DigestComputationError,
    LayerFormUnavailable,
)
from aumai_nydusify.layer import DigestingReader, Layer, _sha256_bytes, _sha256_file, copy_stream
from aumai_nydusify.models import MEDIA_TYPE_LAYER_GZIP, MEDIA_TYPE_LAYER_TAR, MEDIA_TYPE_NYDUS_BLOB


# ---------------------------------------------------------------------------
# _sha256_bytes / _sha256_file
# ---------------------------------------------------------------------------


class TestSha256Helpers:
    def test_sha256_bytes_known_value(self) -> None:
        expected = "sha256:" + hashlib.sha256(b"hello").hexdigest()
        assert _sha256_bytes(b"hello") == expected

    def test_sha256_file_matches_bytes(self, tmp_path: Path) -> None:
        f = tmp_path / "test.bin"
        f.write_bytes(b"test file content")
        assert _sha256_file(f) == _sha256_bytes(b"test file content")


# ---------------------------------------------------------------------------
# Digesting
# ---------------------------------------------------------------------------


class TestLayerDigest:
    def test_digest_is_stable(self, tmp_path: Path) -> None:
        f = tmp_path / "blob"
        f.write_bytes(b"\x00\x01" * 1000)
        layer = Layer.from_path(f, MEDIA_TYPE_NYDUS_BLOB)
        first = layer.digest
        assert first == layer.digest
        assert first == Layer.from_path(f, MEDIA_TYPE_NYDUS_BLOB).digest

    def test_digest_hex_has_no_prefix(self, tmp_path: Path) -> None:
        f = tmp_path / "blob"
        f.write_bytes(b"abc")
        layer = Layer.from_path(f, MEDIA_TYPE_NYDUS_BLOB)
        assert layer.digest_hex == hashlib.sha256(b"abc").hexdigest()

    def test_diff_id_equal_for_compressed_and_plain(self, tmp_path: Path) -> None:
        payload = b"layer tar bytes" * 300
        plain = tmp_path / "layer.tar"
        plain.write_bytes(payload)
        packed = tmp_path / "layer.tar.gz"
        packed.write_bytes(gzip.compress(payload))

        gz_layer = Layer.from_path(packed, MEDIA_TYPE_LAYER_GZIP)
        tar_layer = Layer.from_path(plain, MEDIA_TYPE_LAYER_TAR)
        assert gz_layer.digest != tar_layer.digest
        assert gz_layer.diff_id() == tar_layer.diff_id() == _sha256_bytes(payload)
        assert gz_layer.diff_id() == gz_layer.diff_id()

    def test_stream_digest_unavailable_before_consumption(self) -> None:
        layer = Layer.from_stream(io.BytesIO(b"data"), MEDIA_TYPE_NYDUS_BLOB, name="s")
        with pytest.raises(DigestComputationError, match="digest unavailable"):
            _ = layer.digest

    def test_stream_digest_captured_while_streaming(self) -> None:
        layer = Layer.from_stream(io.BytesIO(b"data" * 10), MEDIA_TYPE_NYDUS_BLOB)
        with layer.compressed() as fh:
            assert fh.read() == b"data" * 10
            fh.read()
        assert layer.digest == _sha256_bytes(b"data" * 10)
        assert layer.size == 40

    def test_stream_digest_supplied_out_of_band(self) -> None:
        digest = _sha256_bytes(b"x")
        layer = Layer.from_stream(io.BytesIO(b"x"), MEDIA_TYPE_NYDUS_BLOB, digest=digest, size=1)
        assert layer.digest == digest
        assert layer.size == 1

    def test_stream_can_only_be_read_once(self) -> None:
        layer = Layer.from_stream(io.BytesIO(b"x"), MEDIA_TYPE_NYDUS_BLOB)
        layer.compressed().read()
        with pytest.raises(LayerFormUnavailable):
            layer.compressed()

    def test_unreadable_path_reports_digest_unavailable(self, tmp_path: Path) -> None:
        layer = Layer.from_path(tmp_path / "missing", MEDIA_TYPE_NYDUS_BLOB)
        with pytest.raises(DigestComputationError):
            _ = layer.digest


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


class TestLayerReaders:
    def test_plain_tar_has_no_compressed_form(self, tmp_path: Path) -> None:
        f = tmp_path / "layer.tar"
        f.write_bytes(b"tar")
        layer = Layer.from_path(f, MEDIA_TYPE_LAYER_TAR)
        with pytest.raises(LayerFormUnavailable):
            layer.compressed()
        with layer.uncompressed() as fh:
            assert fh.read() == b"tar"

    def test_gzip_layer_uncompressed_reads_payload(self, tmp_path: Path) -> None:
        f = tmp_path / "layer.tar.gz"
        f.write_bytes(gzip.compress(b"payload"))
        layer = Layer.from_path(f, MEDIA_TYPE_LAYER_GZIP)
        with layer.uncompressed() as fh:
            assert fh.read() == b"payload"
        with layer.compressed() as fh:
            assert fh.read() == f.read_bytes()

    def test_descriptor_fields(self, tmp_path: Path) -> None:
        f = tmp_path / "blob"
        f.write_bytes(b"12345")
        desc = Layer.from_path(f, MEDIA_TYPE_NYDUS_BLOB).descriptor({"k": "v"})
        assert desc.size == 5
        assert desc.media_type == MEDIA_TYPE_NYDUS_BLOB
        assert desc.annotations == {"k": "v"}

    def test_needs_exactly_one_source(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            Layer("x", MEDIA_TYPE_NYDUS_BLOB)


class TestCopyStream:
    def test_copies_everything(self) -> None:
        dst = io.BytesIO()
        assert copy_stream(io.BytesIO(b"a" * 5000), dst) == 5000
        assert dst.getvalue() == b"a" * 5000

    def test_aborts_when_cancelled(self) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ConvertCancelledError):
            copy_stream(io.BytesIO(b"abc"), io.BytesIO(), cancel)

    def test_digesting_reader_tees_digest(self) -> None:
        reader = DigestingReader(io.BytesIO(b"tee"))
        assert reader.digest is None
        copy_stream(reader, io.BytesIO())  # type: ignore[arg-type]
        assert reader.digest == _sha256_bytes(b"tee")
        assert reader.size == 3

"""Shared test fixtures for aumai-nydusify."""

from __future__ import annotations

import io
import tarfile
import threading
from pathlib import Path
from typing import IO

import pytest

from aumai_nydusify.backend import Backend, LocalFSBackend
from aumai_nydusify.layer import Layer
from aumai_nydusify.models import ConvertOptions, Descriptor, ImageReference
from aumai_nydusify.registry import OCILayoutRegistry


# ---------------------------------------------------------------------------
# Layer tarball helpers
# ---------------------------------------------------------------------------


def make_layer_tar(path: Path, files: dict[str, bytes], *, gz: bool = True) -> Path:
    """Write a reproducible layer tarball containing *files*."""
    mode = "w:gz" if gz else "w"
    with tarfile.open(path, mode) as tar:
        for name, data in sorted(files.items()):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return path


BASIC_FILES = {
    "etc/hostname": b"image-basic\n",
    "usr/bin/app": bytes(range(256)) * 512,
    "usr/share/doc/readme.txt": b"hello nydus\n" * 100,
}
FROM_FILES = {
    "srv/data.bin": b"\xAB\xCD" * 40000,
    "etc/motd": b"welcome\n",
}


# ---------------------------------------------------------------------------
# Recording fakes
# ---------------------------------------------------------------------------


class RecordingRegistry(OCILayoutRegistry):
    """OCI layout registry that records layer pushes into a shared event log."""

    def __init__(self, root: Path, events: list[str]) -> None:
        super().__init__(root)
        self.events = events
        self.fail_names: set[str] = set()

    def write_layer(
        self,
        ref: ImageReference,
        layer: Layer,
        cancel: threading.Event | None = None,
    ) -> Descriptor:
        self.events.append(f"start:{layer.name}")
        if layer.name in self.fail_names:
            raise OSError(f"registry rejected {layer.name}")
        desc = super().write_layer(ref, layer, cancel)
        self.events.append(f"end:{layer.name}")
        return desc


class RecordingBackend(Backend):
    """External backend that records every ``put`` and can fail on demand."""

    def __init__(self, directory: Path, events: list[str]) -> None:
        self.store = LocalFSBackend(directory)
        self.events = events
        self.failures = 0

    def put(
        self,
        key: str,
        reader: IO[bytes],
        cancel: threading.Event | None = None,
    ) -> None:
        self.events.append(f"start:put:{key}")
        if self.failures > 0:
            self.failures -= 1
            raise OSError("backend unavailable")
        self.store.put(key, reader, cancel)
        self.events.append(f"end:put:{key}")

    def exists(self, key: str) -> bool:
        return self.store.exists(key)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def events() -> list[str]:
    return []


@pytest.fixture()
def registry(tmp_path: Path, events: list[str]) -> RecordingRegistry:
    return RecordingRegistry(tmp_path / "registry", events)


@pytest.fixture()
def backend(tmp_path: Path, events: list[str]) -> RecordingBackend:
    return RecordingBackend(tmp_path / "blobs", events)


@pytest.fixture()
def basic_layer(tmp_path: Path) -> Path:
    return make_layer_tar(tmp_path / "basic.tar.gz", BASIC_FILES)


@pytest.fixture()
def from_layer(tmp_path: Path) -> Path:
    return make_layer_tar(tmp_path / "from.tar.gz", FROM_FILES)


@pytest.fixture()
def image_basic(registry: RecordingRegistry, basic_layer: Path) -> ImageReference:
    """A one-layer image."""
    ref = ImageReference.parse("image-basic")
    registry.import_image(ref, [basic_layer])
    registry.events.clear()
    return ref


@pytest.fixture()
def image_from(
    registry: RecordingRegistry,
    basic_layer: Path,
    from_layer: Path,
) -> ImageReference:
    """``image-basic`` plus one extra layer on top."""
    ref = ImageReference.parse("image-from")
    registry.import_image(ref, [basic_layer, from_layer])
    registry.events.clear()
    return ref


@pytest.fixture()
def make_options(tmp_path: Path):
    """Build ConvertOptions with a fresh work dir per call."""
    counter = iter(range(1000))

    def _make(source: str, target: str, **kwargs: object) -> ConvertOptions:
        kwargs.setdefault("retry_backoff", 0)
        return ConvertOptions(
            source=source,
            target=target,
            work_dir=tmp_path / f"work-{next(counter)}",
            **kwargs,
        )

    return _make

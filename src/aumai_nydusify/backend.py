"""Storage backends that receive converted blob layers."""

from __future__ import annotations

import abc
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import IO, Any

import structlog

from .layer import Layer, copy_stream
from .models import ImageReference
from .registry import Registry

__all__ = [
    "Backend",
    "LocalFSBackend",
    "RegistryBackend",
    "create_backend",
]

logger = structlog.get_logger(__name__)


class Backend(abc.ABC):
    """
    Where a blob layer's bytes are stored.

    ``put`` is keyed by the lowercase hex content digest (no ``sha256:``
    prefix) and must be idempotent for identical content.
    """

    #: True when blobs live outside the target registry.
    external: bool = True

    @abc.abstractmethod
    def put(
        self,
        key: str,
        reader: IO[bytes],
        cancel: threading.Event | None = None,
    ) -> None: ...

    @abc.abstractmethod
    def exists(self, key: str) -> bool: ...

    def upload(self, layer: Layer, cancel: threading.Event | None = None) -> None:
        """Stream the uncompressed bytes of *layer* to ``put``."""
        with layer.uncompressed() as reader:
            self.put(layer.digest_hex, reader, cancel)


class RegistryBackend(Backend):
    """Keeps blob layers in the target repository as ordinary OCI layers."""

    external = False

    def __init__(self, registry: Registry, ref: ImageReference) -> None:
        self.registry = registry
        self.ref = ref

    def put(
        self,
        key: str,
        reader: IO[bytes],
        cancel: threading.Event | None = None,
    ) -> None:
        self.registry.write_blob(reader, f"sha256:{key}", cancel)

    def exists(self, key: str) -> bool:
        return self.registry.has_blob(f"sha256:{key}")

    def upload(self, layer: Layer, cancel: threading.Event | None = None) -> None:
        self.registry.write_layer(self.ref, layer, cancel)


class LocalFSBackend(Backend):
    """Key-addressed blob store on a local (or mounted) filesystem."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or key.startswith("."):
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.directory / key

    def put(
        self,
        key: str,
        reader: IO[bytes],
        cancel: threading.Event | None = None,
    ) -> None:
        target = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".put-")
        try:
            with os.fdopen(fd, "wb") as out:
                size = copy_stream(reader, out, cancel)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("localfs_blob_put", key=key, size=size)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()


def create_backend(
    backend_type: str,
    backend_config: str | dict[str, Any] | None,
    registry: Registry,
    target: ImageReference,
) -> Backend:
    """
    Build the backend selected for a run.

    *backend_config* is a JSON object (string or dict); ``localfs`` needs a
    ``dir`` entry.
    """
    if isinstance(backend_config, str):
        try:
            config = json.loads(backend_config) if backend_config.strip() else {}
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid backend config JSON: {exc}") from exc
    else:
        config = dict(backend_config or {})
    if not isinstance(config, dict):
        raise ValueError("backend config must be a JSON object")

    if backend_type == "registry":
        return RegistryBackend(registry, target)
    if backend_type == "localfs":
        directory = config.get("dir")
        if not directory:
            raise ValueError("localfs backend requires a 'dir' config entry")
        return LocalFSBackend(directory)
    raise ValueError(f"Unsupported backend type: {backend_type!r}")

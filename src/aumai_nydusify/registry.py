"""Registry collaborator: image pull, layer push and manifest storage."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, BinaryIO, Protocol

import structlog

from .errors import BlobNotFoundError, DigestComputationError, ManifestNotFoundError
from .layer import DigestingReader, Layer, _sha256_bytes, copy_stream
from .models import (
    MEDIA_TYPE_CONFIG,
    MEDIA_TYPE_LAYER_GZIP,
    MEDIA_TYPE_LAYER_TAR,
    Descriptor,
    ImageReference,
    OCIManifest,
)

__all__ = [
    "Image",
    "OCILayoutRegistry",
    "Registry",
]

logger = structlog.get_logger(__name__)

_LAYERS_DIR = "blobs/sha256"
_REPOSITORIES_DIR = "repositories"
_GZIP_MAGIC = b"\x1f\x8b"


@dataclass
class Image:
    """A source or target image taking part in one conversion run."""

    ref: ImageReference
    layers: list[Layer] = field(default_factory=list)
    config: Descriptor | None = None
    work_dir: Path | None = None


class Registry(Protocol):
    def pull(self, ref: ImageReference) -> Image: ...

    def write_layer(
        self,
        ref: ImageReference,
        layer: Layer,
        cancel: threading.Event | None = None,
    ) -> Descriptor: ...

    def write_blob(
        self,
        stream: IO[bytes],
        expected_digest: str | None = None,
        cancel: threading.Event | None = None,
    ) -> tuple[str, int]: ...

    def has_blob(self, digest: str) -> bool: ...

    def open_blob(self, digest: str) -> BinaryIO: ...

    def write_blob_bytes(self, data: bytes) -> str: ...

    def read_manifest(self, ref: ImageReference) -> OCIManifest: ...

    def write_manifest(self, ref: ImageReference, manifest: OCIManifest) -> str: ...


class OCILayoutRegistry:
    """
    Registry backed by a directory tree.

    Layout::

        blobs/sha256/<hex>                          # layers, configs, manifests
        repositories/<repository>/tags/<tag>        # manifest digest per tag

    Blobs are shared between repositories, the way a registry mounts
    blobs across repositories of the same storage.

    *keychain* is the opaque credential object handed to every registry
    client; a local layout has nothing to authenticate against and only
    keeps it.
    """

    def __init__(self, root: str | Path, keychain: object | None = None) -> None:
        self.root = Path(root)
        self.keychain = keychain
        self.blobs_dir = self.root / _LAYERS_DIR
        self.blobs_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Blobs
    # ------------------------------------------------------------------

    def blob_path(self, digest: str) -> Path:
        algorithm, _, hex_digest = digest.partition(":")
        if algorithm != "sha256" or not hex_digest:
            raise ValueError(f"Unsupported digest: {digest!r}")
        return self.blobs_dir / hex_digest

    def has_blob(self, digest: str) -> bool:
        return self.blob_path(digest).is_file()

    def open_blob(self, digest: str) -> BinaryIO:
        path = self.blob_path(digest)
        if not path.is_file():
            raise BlobNotFoundError(f"blob {digest} not found in {self.root}")
        return open(path, "rb")

    def write_blob(
        self,
        stream: IO[bytes],
        expected_digest: str | None = None,
        cancel: threading.Event | None = None,
    ) -> tuple[str, int]:
        """
        Store *stream* as a content-addressed blob.

        The blob is written to a temporary file first and moved into place
        only after its digest has been checked, so readers never observe a
        partial blob. Writing an existing digest again is harmless.
        """
        reader = DigestingReader(stream)
        fd, tmp_name = tempfile.mkstemp(dir=self.blobs_dir, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as out:
                copy_stream(reader, out, cancel)  # type: ignore[arg-type]
            digest = reader.digest or _sha256_bytes(b"")
            if expected_digest is not None and digest != expected_digest:
                raise DigestComputationError(
                    f"digest mismatch: expected {expected_digest}, got {digest}"
                )
            os.replace(tmp_name, self.blob_path(digest))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return digest, reader.size

    def write_blob_bytes(self, data: bytes) -> str:
        digest = _sha256_bytes(data)
        path = self.blob_path(digest)
        if not path.exists():
            tmp = path.with_name(f".upload-{path.name}")
            tmp.write_bytes(data)
            os.replace(tmp, path)
        return digest

    def write_layer(
        self,
        ref: ImageReference,
        layer: Layer,
        cancel: threading.Event | None = None,
    ) -> Descriptor:
        """Push *layer* as a blob of repository *ref*."""
        expected = layer.digest if layer.path is not None else None
        opener = layer.compressed if layer.compressed_form else layer.uncompressed
        with opener() as fh:
            digest, size = self.write_blob(fh, expected, cancel)
        logger.debug("blob_written", repository=ref.repository, digest=digest, size=size)
        return Descriptor(media_type=layer.media_type, digest=digest, size=size)

    # ------------------------------------------------------------------
    # Manifests
    # ------------------------------------------------------------------

    def _tag_path(self, ref: ImageReference) -> Path:
        base = self.root / _REPOSITORIES_DIR
        if ref.registry:
            base = base / ref.registry.replace(":", "_")
        return base / ref.repository / "tags" / ref.tag

    def read_manifest(self, ref: ImageReference) -> OCIManifest:
        tag_path = self._tag_path(ref)
        if not tag_path.is_file():
            raise ManifestNotFoundError(f"manifest {ref} not found")
        digest = tag_path.read_text(encoding="utf-8").strip()
        with self.open_blob(digest) as fh:
            return OCIManifest.model_validate_json(fh.read())

    def write_manifest(self, ref: ImageReference, manifest: OCIManifest) -> str:
        digest = self.write_blob_bytes(manifest.to_json())
        tag_path = self._tag_path(ref)
        tag_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = tag_path.with_name(f".{tag_path.name}.tmp")
        tmp.write_text(digest + "\n", encoding="utf-8")
        os.replace(tmp, tag_path)
        logger.debug("manifest_written", ref=str(ref), digest=digest)
        return digest

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def pull(self, ref: ImageReference) -> Image:
        """Return *ref* with its layers ordered base to top."""
        manifest = self.read_manifest(ref)
        layers = [
            Layer(
                desc.digest,
                desc.media_type,
                path=self.blob_path(desc.digest),
                digest=desc.digest,
                size=desc.size,
            )
            for desc in manifest.layers
        ]
        return Image(ref=ref, layers=layers, config=manifest.config)

    def import_image(
        self,
        ref: ImageReference,
        layer_paths: list[str | Path],
        config: dict[str, object] | None = None,
    ) -> str:
        """
        Store a plain OCI image made of the given layer tarballs.

        Gzip-compressed tarballs get the ``tar+gzip`` media type, anything
        else is stored as an uncompressed ``tar`` layer.
        """
        descriptors: list[Descriptor] = []
        diff_ids: list[str] = []
        for layer_path in layer_paths:
            with open(layer_path, "rb") as fh:
                magic = fh.read(2)
            media_type = MEDIA_TYPE_LAYER_GZIP if magic == _GZIP_MAGIC else MEDIA_TYPE_LAYER_TAR
            layer = Layer.from_path(layer_path, media_type)
            descriptors.append(self.write_layer(ref, layer))
            diff_ids.append(layer.diff_id())

        image_config: dict[str, object] = {
            "architecture": "amd64",
            "os": "linux",
            "config": {},
            "rootfs": {"type": "layers", "diff_ids": diff_ids},
        }
        image_config.update(config or {})
        config_bytes = json.dumps(image_config, sort_keys=True).encode("utf-8")
        config_digest = self.write_blob_bytes(config_bytes)
        manifest = OCIManifest(
            config=Descriptor(
                media_type=MEDIA_TYPE_CONFIG,
                digest=config_digest,
                size=len(config_bytes),
            ),
            layers=descriptors,
        )
        return self.write_manifest(ref, manifest)

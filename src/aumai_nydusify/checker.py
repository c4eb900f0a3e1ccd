"""Integrity checks for converted images."""

from __future__ import annotations

import tempfile
from pathlib import Path

from .backend import Backend
from .converter import read_bootstrap
from .layer import DigestingReader
from .models import ANNOTATION_NYDUS_BOOTSTRAP, ImageReference
from .registry import Registry

__all__ = ["check_image"]


def check_image(
    registry: Registry,
    ref: ImageReference,
    backend: Backend,
) -> list[tuple[str, bool]]:
    """
    Verify a converted image.

    Returns a list of (digest, is_valid) tuples: one per manifest layer
    (present in the registry with matching content), followed by one per
    blob referenced from the top bootstrap (present in the backend).
    """
    manifest = registry.read_manifest(ref)
    results: list[tuple[str, bool]] = []
    for desc in manifest.layers:
        valid = (
            registry.has_blob(desc.digest)
            and _blob_digest(registry, desc.digest) == desc.digest
        )
        results.append((desc.digest, valid))

    bootstraps = [
        desc for desc in manifest.layers
        if desc.annotations.get(ANNOTATION_NYDUS_BOOTSTRAP) == "true"
    ]
    if not bootstraps:
        raise ValueError(f"image {ref} has no bootstrap layer")
    bootstrap = bootstraps[-1]
    if not registry.has_blob(bootstrap.digest):
        return results

    with tempfile.TemporaryDirectory() as tmp_dir:
        local = Path(tmp_dir) / "bootstrap.tar.gz"
        with registry.open_blob(bootstrap.digest) as src:
            local.write_bytes(src.read())
        document = read_bootstrap(local)
    for blob_digest in document["blobs"]:
        results.append((blob_digest, backend.exists(blob_digest.split(":", 1)[1])))
    return results


def _blob_digest(registry: Registry, digest: str) -> str | None:
    with registry.open_blob(digest) as fh:
        reader = DigestingReader(fh)
        for _ in iter(lambda: reader.read(65536), b""):
            pass
    return reader.digest

"""Pydantic models for aumai-nydusify."""

from __future__ import annotations

import enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "CacheRecord",
    "ConvertOptions",
    "ConvertReport",
    "Descriptor",
    "ImageReference",
    "JobState",
    "LayerReport",
    "OCIManifest",
]

MEDIA_TYPE_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
MEDIA_TYPE_LAYER_TAR = "application/vnd.oci.image.layer.v1.tar"
MEDIA_TYPE_DOCKER_LAYER_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"
MEDIA_TYPE_NYDUS_BLOB = "application/vnd.oci.image.layer.nydus.blob.v1"
MEDIA_TYPE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_CONFIG = "application/vnd.oci.image.config.v1+json"

ANNOTATION_NYDUS_BLOB = "containerd.io/snapshot/nydus-blob"
ANNOTATION_NYDUS_BOOTSTRAP = "containerd.io/snapshot/nydus-bootstrap"
ANNOTATION_SOURCE_CHAIN_ID = "containerd.io/snapshot/nydus-source-chainid"
ANNOTATION_TITLE = "org.opencontainers.image.title"

GZIP_MEDIA_TYPES = frozenset({MEDIA_TYPE_LAYER_GZIP, MEDIA_TYPE_DOCKER_LAYER_GZIP})


class ImageReference(BaseModel):
    """A ``[registry/]repository[:tag]`` image reference."""

    model_config = ConfigDict(frozen=True)

    registry: str | None = None
    repository: str
    tag: str = "latest"

    @classmethod
    def parse(cls, ref: str) -> ImageReference:
        """Parse ``ref`` into its registry, repository and tag parts."""
        if not ref or ref.strip() != ref:
            raise ValueError(f"Invalid image reference: {ref!r}")

        registry: str | None = None
        remainder = ref
        head, sep, tail = ref.partition("/")
        if sep and ("." in head or ":" in head or head == "localhost"):
            registry, remainder = head, tail

        repository, colon, tag = remainder.rpartition(":")
        if not colon or "/" in tag:
            repository, tag = remainder, "latest"
        if not repository or not tag:
            raise ValueError(f"Invalid image reference: {ref!r}")
        return cls(registry=registry, repository=repository, tag=tag)

    def __str__(self) -> str:
        prefix = f"{self.registry}/" if self.registry else ""
        return f"{prefix}{self.repository}:{self.tag}"


class Descriptor(BaseModel):
    """An OCI content descriptor."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    media_type: str = Field(alias="mediaType")
    digest: str            # sha256:<hex>
    size: int              # bytes
    annotations: dict[str, str] = Field(default_factory=dict)

    @property
    def hex(self) -> str:
        return self.digest.split(":", 1)[1]


class OCIManifest(BaseModel):
    """
    OCI Image Manifest (schema version 2).

    Follows the OCI Image Manifest Specification
    https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=MEDIA_TYPE_MANIFEST, alias="mediaType")
    config: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)
    annotations: dict[str, str] = Field(default_factory=dict)

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True, indent=2).encode("utf-8")


class CacheRecord(BaseModel):
    """Converted artifacts previously produced for one source chain id."""

    model_config = ConfigDict(frozen=True)

    chain_id: str
    blob: Descriptor
    bootstrap: Descriptor


class JobState(str, enum.Enum):
    CREATED = "created"
    PULLED = "pulled"
    CONVERTED = "converted"
    CACHE_HIT = "cache_hit"
    PUSHED = "pushed"
    DONE = "done"
    FAILED = "failed"


class ConvertOptions(BaseModel):
    """Run-level configuration for one conversion."""

    source: str
    target: str
    work_dir: Path
    build_cache: str | None = None
    build_cache_max_records: int = Field(default=200, ge=1)
    workers: int = Field(default=4, ge=1)
    retry_attempts: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=1.0, ge=0)
    verify_cache: bool = True

    @property
    def source_ref(self) -> ImageReference:
        return ImageReference.parse(self.source)

    @property
    def target_ref(self) -> ImageReference:
        return ImageReference.parse(self.target)

    @property
    def cache_ref(self) -> ImageReference | None:
        if not self.build_cache:
            return None
        return ImageReference.parse(self.build_cache)


class LayerReport(BaseModel):
    """Outcome of a single layer job."""

    source_digest: str
    chain_id: str
    cached: bool
    blob_digest: str
    bootstrap_digest: str


class ConvertReport(BaseModel):
    """Summary of a finished conversion run."""

    source: str
    target: str
    manifest_digest: str
    layers: list[LayerReport] = Field(default_factory=list)
    pulled: int = 0

    @property
    def cache_hits(self) -> int:
        return sum(1 for layer in self.layers if layer.cached)

    @property
    def hit_rate(self) -> float:
        if not self.layers:
            return 0.0
        return self.cache_hits / len(self.layers)

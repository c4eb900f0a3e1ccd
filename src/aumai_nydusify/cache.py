"""Chain-id keyed conversion cache."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Iterable, Sequence
from typing import Protocol

import structlog

from .errors import CacheLookupError, CacheWriteError, ManifestNotFoundError
from .models import (
    ANNOTATION_NYDUS_BLOB,
    ANNOTATION_NYDUS_BOOTSTRAP,
    ANNOTATION_SOURCE_CHAIN_ID,
    MEDIA_TYPE_CONFIG,
    CacheRecord,
    Descriptor,
    ImageReference,
    OCIManifest,
)
from .registry import Registry

__all__ = [
    "CacheIndex",
    "ChainCacheResolver",
    "MemoryCacheIndex",
    "RegistryCacheIndex",
    "chain_id",
    "chain_ids",
]

logger = structlog.get_logger(__name__)


def chain_id(parent: str | None, digest: str) -> str:
    """
    Fold *digest* onto the chain id of its parent layer.

    The base layer's chain id is its own digest; every other layer's is
    ``sha256(parent + " " + digest)``.
    """
    if parent is None:
        return digest
    return "sha256:" + hashlib.sha256(f"{parent} {digest}".encode("utf-8")).hexdigest()


def chain_ids(digests: Iterable[str]) -> list[str]:
    """Return the chain id of every layer in base-to-top order."""
    result: list[str] = []
    parent: str | None = None
    for digest in digests:
        parent = chain_id(parent, digest)
        result.append(parent)
    return result


class CacheIndex(Protocol):
    def resolve(self, chain_id: str) -> CacheRecord | None: ...

    def record(self, records: Sequence[CacheRecord]) -> None: ...


class MemoryCacheIndex:
    """Cache index kept in a dict."""

    def __init__(self, records: Iterable[CacheRecord] = ()) -> None:
        self.records: dict[str, CacheRecord] = {r.chain_id: r for r in records}

    def resolve(self, chain_id: str) -> CacheRecord | None:
        return self.records.get(chain_id)

    def record(self, records: Sequence[CacheRecord]) -> None:
        for rec in records:
            self.records[rec.chain_id] = rec


class RegistryCacheIndex:
    """
    Cache index persisted as a tagged manifest in the registry.

    Each record is a pair of layers (blob, bootstrap) annotated with the
    source chain id. Records are kept newest first, one per chain id, and
    the list is truncated to ``max_records``. A missing tag is an empty
    cache.
    """

    def __init__(
        self,
        registry: Registry,
        ref: ImageReference,
        max_records: int = 200,
    ) -> None:
        self.registry = registry
        self.ref = ref
        self.max_records = max_records
        self._records: list[CacheRecord] | None = None

    def load(self) -> list[CacheRecord]:
        if self._records is None:
            try:
                manifest = self.registry.read_manifest(self.ref)
            except ManifestNotFoundError:
                self._records = []
            except (OSError, ValueError) as exc:
                raise CacheLookupError(f"read cache {self.ref}: {exc}") from exc
            else:
                self._records = self._parse(manifest)
        return self._records

    def resolve(self, chain_id: str) -> CacheRecord | None:
        for rec in self.load():
            if rec.chain_id == chain_id:
                return rec
        return None

    def record(self, records: Sequence[CacheRecord]) -> None:
        try:
            existing = self.load()
        except CacheLookupError:
            existing = []
        fresh = {rec.chain_id for rec in records}
        merged = list(records) + [rec for rec in existing if rec.chain_id not in fresh]
        merged = merged[: self.max_records]
        try:
            self.registry.write_manifest(self.ref, self._build(merged))
        except (OSError, ValueError) as exc:
            raise CacheWriteError(f"write cache {self.ref}: {exc}") from exc
        self._records = merged

    def _parse(self, manifest: OCIManifest) -> list[CacheRecord]:
        records: list[CacheRecord] = []
        layers = manifest.layers
        for blob, bootstrap in zip(layers[0::2], layers[1::2]):
            blob_chain = blob.annotations.get(ANNOTATION_SOURCE_CHAIN_ID)
            boot_chain = bootstrap.annotations.get(ANNOTATION_SOURCE_CHAIN_ID)
            if not blob_chain or blob_chain != boot_chain:
                logger.warning("cache_record_malformed", ref=str(self.ref), blob=blob.digest)
                continue
            records.append(
                CacheRecord(
                    chain_id=blob_chain,
                    blob=_strip(blob),
                    bootstrap=_strip(bootstrap),
                )
            )
        return records

    def _build(self, records: Sequence[CacheRecord]) -> OCIManifest:
        config_bytes = json.dumps({"records": len(records)}).encode("utf-8")
        config_digest = self.registry.write_blob_bytes(config_bytes)
        layers: list[Descriptor] = []
        for rec in records:
            for desc, role in (
                (rec.blob, ANNOTATION_NYDUS_BLOB),
                (rec.bootstrap, ANNOTATION_NYDUS_BOOTSTRAP),
            ):
                annotations = dict(desc.annotations)
                annotations[ANNOTATION_SOURCE_CHAIN_ID] = rec.chain_id
                annotations[role] = "true"
                layers.append(desc.model_copy(update={"annotations": annotations}))
        return OCIManifest(
            config=Descriptor(
                media_type=MEDIA_TYPE_CONFIG,
                digest=config_digest,
                size=len(config_bytes),
            ),
            layers=layers,
        )


def _strip(desc: Descriptor) -> Descriptor:
    annotations = {
        k: v for k, v in desc.annotations.items() if k != ANNOTATION_SOURCE_CHAIN_ID
    }
    return desc.model_copy(update={"annotations": annotations})


class ChainCacheResolver:
    """
    Decide which layers of an image can reuse earlier conversions.

    A hit at layer N is honored only if layers 1..N-1 all hit: bootstraps
    are cumulative, so the first miss forces reconversion of every layer
    above it.
    """

    def __init__(self, index: CacheIndex) -> None:
        self.index = index

    def resolve(
        self,
        digests: Sequence[str],
        verify: Callable[[CacheRecord], bool] | None = None,
    ) -> list[CacheRecord | None]:
        hits: list[CacheRecord | None] = []
        poisoned = False
        for layer_digest, cid in zip(digests, chain_ids(digests)):
            record: CacheRecord | None = None
            if not poisoned:
                record = self._lookup(cid)
                if record is not None and verify is not None and not verify(record):
                    logger.warning("cache_hit_unverified", chain_id=cid, digest=layer_digest)
                    record = None
            if record is None:
                poisoned = True
            hits.append(record)
            logger.info(
                "cache_resolved",
                digest=layer_digest,
                chain_id=cid,
                hit=record is not None,
            )
        return hits

    def update(self, records: Sequence[CacheRecord]) -> bool:
        """Persist *records*; failures are logged and reported as False."""
        try:
            self.index.record(records)
        except CacheWriteError as exc:
            logger.warning("cache_write_failed", error=str(exc))
            return False
        return True

    def _lookup(self, cid: str) -> CacheRecord | None:
        try:
            return self.index.resolve(cid)
        except CacheLookupError as exc:
            logger.warning("cache_lookup_failed", chain_id=cid, error=str(exc))
            return None

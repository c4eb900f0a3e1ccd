"""Per-layer conversion job."""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO

import structlog

from .backend import Backend
from .converter import Converter, decompress_layer
from .errors import (
    ConversionFailedError,
    ConvertCancelledError,
    DigestComputationError,
    LayerFormUnavailable,
    NydusifyError,
    SourceUnavailableError,
    UploadFailedError,
)
from .layer import Layer, copy_stream
from .models import (
    ANNOTATION_NYDUS_BLOB,
    ANNOTATION_NYDUS_BOOTSTRAP,
    MEDIA_TYPE_LAYER_GZIP,
    MEDIA_TYPE_NYDUS_BLOB,
    CacheRecord,
    Descriptor,
    JobState,
    LayerReport,
)
from .registry import Image, Registry

__all__ = ["LayerJob"]

logger = structlog.get_logger(__name__)


class LayerJob:
    """
    Converts one source layer into a nydus blob layer and bootstrap layer.

    ``parent`` is the job of the layer directly below; it is only read, to
    obtain the parent's finished bootstrap.
    """

    def __init__(
        self,
        source: Image,
        target: Image,
        source_layer: Layer,
        chain_id: str,
        *,
        registry: Registry,
        backend: Backend,
        parent: LayerJob | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.source = source
        self.target = target
        self.source_layer = source_layer
        self.source_layer_chain_id = chain_id
        self.registry = registry
        self.backend = backend
        self.parent = parent
        self.cancel = cancel

        self.target_blob_layer: Layer | None = None
        self.target_bootstrap_layer: Layer | None = None
        self.cached = False
        self.cache_record: CacheRecord | None = None
        self.state = JobState.CREATED

    @property
    def source_digest(self) -> str:
        return self.source_layer.digest

    @property
    def layer_dir(self) -> Path:
        """Extraction directory, named after the source layer digest."""
        if self.source.work_dir is None:
            raise NydusifyError(f"source image {self.source.ref} has no work dir")
        return self.source.work_dir / self.source_layer.digest_hex

    @property
    def output_dir(self) -> Path:
        """
        Conversion output directory, named after the chain id.

        The same layer content can occur at several positions of an image;
        each position has its own cumulative bootstrap.
        """
        if self.target.work_dir is None:
            raise NydusifyError(f"target image {self.target.ref} has no work dir")
        return self.target.work_dir / self.source_layer_chain_id.split(":", 1)[1]

    def set_target_blob_layer(self, source_path: Path, name: str, media_type: str) -> None:
        self.target_blob_layer = Layer.from_path(source_path, media_type, name=name)

    def set_target_bootstrap_layer(self, source_path: Path, name: str, media_type: str) -> None:
        self.target_bootstrap_layer = Layer.from_path(source_path, media_type, name=name)

    def apply_cache_hit(self, record: CacheRecord) -> None:
        self.cached = True
        self.cache_record = record
        self.state = JobState.CACHE_HIT

    def fail(self) -> None:
        self.state = JobState.FAILED

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def pull(self) -> None:
        """Fetch and extract the source layer unless it is cached or already present."""
        if self.cached:
            return
        digest = self.source_digest
        if self.layer_dir.is_dir():
            logger.info("source_layer_present", digest=digest)
            self.state = JobState.PULLED
            return

        logger.info("source_layer_pulling", digest=digest)
        reader = self._open_source(digest)
        with reader:
            decompress_layer(reader, self.layer_dir, self.cancel)
        self.state = JobState.PULLED
        logger.info("source_layer_pulled", digest=digest)

    def _open_source(self, digest: str) -> BinaryIO:
        # Some sources expose only one of the two forms.
        try:
            return self.source_layer.compressed()
        except (LayerFormUnavailable, OSError) as compressed_error:
            try:
                return self.source_layer.uncompressed()
            except (LayerFormUnavailable, OSError) as uncompressed_error:
                raise SourceUnavailableError(
                    digest, compressed_error, uncompressed_error
                ) from uncompressed_error

    # ------------------------------------------------------------------
    # Convert
    # ------------------------------------------------------------------

    def convert(self, converter: Converter) -> None:
        if self.cached:
            return
        parent_bootstrap = self.parent.bootstrap_path() if self.parent is not None else None
        try:
            result = converter.convert(self.layer_dir, parent_bootstrap, self.output_dir)
        except ConvertCancelledError:
            raise
        except Exception as exc:
            raise ConversionFailedError(
                f"convert layer {self.source_digest}: {exc}"
            ) from exc

        hex_digest = self.source_layer.digest_hex
        self.set_target_blob_layer(result.blob_path, f"blob-{hex_digest}", MEDIA_TYPE_NYDUS_BLOB)
        self.set_target_bootstrap_layer(
            result.bootstrap_path, f"bootstrap-{hex_digest}", MEDIA_TYPE_LAYER_GZIP
        )
        self.state = JobState.CONVERTED

    def bootstrap_path(self) -> Path:
        """
        Local path of this layer's bootstrap.

        A cached job has no local bootstrap; it is fetched from the registry
        the first time a child layer needs it.
        """
        if self.target_bootstrap_layer is not None and self.target_bootstrap_layer.path:
            return self.target_bootstrap_layer.path
        if self.cache_record is None:
            raise ConversionFailedError(
                f"bootstrap of layer {self.source_digest} is not available"
            )

        dest = self.output_dir / "bootstrap.tar.gz"
        if not dest.is_file():
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=".bootstrap-")
            try:
                with os.fdopen(fd, "wb") as out, self.registry.open_blob(
                    self.cache_record.bootstrap.digest
                ) as src:
                    copy_stream(src, out, self.cancel)
                os.replace(tmp_name, dest)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
            logger.info("cached_bootstrap_fetched", digest=self.cache_record.bootstrap.digest)
        return dest

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(self) -> None:
        """Upload the blob layer, then the bootstrap layer that references it."""
        if self.target_blob_layer is None:
            return

        blob_digest = self._artifact_digest(self.target_blob_layer, "blob")
        if self.backend.external:
            logger.info("blob_uploading", digest=blob_digest)
        else:
            logger.info("blob_pushing", digest=blob_digest)
        try:
            self.backend.upload(self.target_blob_layer, self.cancel)
        except ConvertCancelledError:
            raise
        except Exception as exc:
            raise UploadFailedError("blob", blob_digest, exc) from exc
        logger.info("blob_pushed", digest=blob_digest, external=self.backend.external)

        if self.target_bootstrap_layer is None:
            raise NydusifyError(f"layer {self.source_digest} has a blob but no bootstrap")
        bootstrap_digest = self._artifact_digest(self.target_bootstrap_layer, "bootstrap")
        logger.info("bootstrap_pushing", digest=bootstrap_digest)
        try:
            self.registry.write_layer(self.target.ref, self.target_bootstrap_layer, self.cancel)
        except ConvertCancelledError:
            raise
        except Exception as exc:
            raise UploadFailedError("bootstrap", bootstrap_digest, exc) from exc
        logger.info("bootstrap_pushed", digest=bootstrap_digest)
        self.state = JobState.PUSHED

    @staticmethod
    def _artifact_digest(layer: Layer, role: str) -> str:
        try:
            return layer.digest
        except DigestComputationError as exc:
            raise DigestComputationError(f"get {role} layer digest before upload: {exc}") from exc

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def blob_descriptor(self) -> Descriptor:
        if self.cache_record is not None:
            return self.cache_record.blob
        if self.target_blob_layer is None:
            raise NydusifyError(f"layer {self.source_digest} has not been converted")
        return self.target_blob_layer.descriptor({ANNOTATION_NYDUS_BLOB: "true"})

    def bootstrap_descriptor(self) -> Descriptor:
        if self.cache_record is not None:
            return self.cache_record.bootstrap
        if self.target_bootstrap_layer is None:
            raise NydusifyError(f"layer {self.source_digest} has not been converted")
        return self.target_bootstrap_layer.descriptor({ANNOTATION_NYDUS_BOOTSTRAP: "true"})

    def to_cache_record(self) -> CacheRecord:
        return CacheRecord(
            chain_id=self.source_layer_chain_id,
            blob=self.blob_descriptor(),
            bootstrap=self.bootstrap_descriptor(),
        )

    def report(self) -> LayerReport:
        return LayerReport(
            source_digest=self.source_digest,
            chain_id=self.source_layer_chain_id,
            cached=self.cached,
            blob_digest=self.blob_descriptor().digest,
            bootstrap_digest=self.bootstrap_descriptor().digest,
        )

    def __repr__(self) -> str:
        return f"LayerJob(digest={self.source_digest!r}, state={self.state.value!r})"

"""Conversion pipeline: cache resolution, pull, convert and push."""

from __future__ import annotations

import gzip
import hashlib
import json
import os
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .backend import Backend, RegistryBackend
from .cache import CacheIndex, ChainCacheResolver, RegistryCacheIndex, chain_ids
from .converter import Converter
from .errors import (
    ConvertCancelledError,
    LayerJobError,
    NydusifyError,
    SourceUnavailableError,
    UploadFailedError,
    WorkDirBusyError,
)
from .job import LayerJob
from .models import (
    GZIP_MEDIA_TYPES,
    CacheRecord,
    ConvertOptions,
    ConvertReport,
    Descriptor,
    JobState,
    OCIManifest,
)
from .registry import Image, Registry

__all__ = ["Pipeline"]

logger = structlog.get_logger(__name__)

_LOCK_NAME = ".lock"


class _WorkDirLock:
    """Exclusive claim on a run's scratch directory."""

    def __init__(self, work_dir: Path) -> None:
        self.path = work_dir / _LOCK_NAME

    def __enter__(self) -> _WorkDirLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as exc:
            raise WorkDirBusyError(
                f"work dir {self.path.parent} is in use by another run"
            ) from exc
        with os.fdopen(fd, "w") as fh:
            fh.write(f"{os.getpid()}\n")
        return self

    def __exit__(self, *exc: object) -> None:
        self.path.unlink(missing_ok=True)


class Pipeline:
    """
    Converts a source image into a nydus image, layer by layer.

    Cache resolution runs to completion first. Pulls and pushes of the
    layers that missed the cache run on a bounded thread pool; conversions
    run one at a time from the base layer up, since each bootstrap builds
    on its parent's. Nothing is pushed until every pull and conversion has
    succeeded, and the cache is only updated after a complete run.
    """

    def __init__(
        self,
        registry: Registry,
        converter: Converter,
        options: ConvertOptions,
        *,
        backend: Backend | None = None,
        cache_index: CacheIndex | None = None,
    ) -> None:
        self.registry = registry
        self.converter = converter
        self.options = options
        self.backend = backend or RegistryBackend(registry, options.target_ref)
        if cache_index is None and options.cache_ref is not None:
            cache_index = RegistryCacheIndex(
                registry, options.cache_ref, options.build_cache_max_records
            )
        self.resolver = ChainCacheResolver(cache_index) if cache_index is not None else None
        self.jobs: list[LayerJob] = []

    def run(self, cancel: threading.Event | None = None) -> ConvertReport:
        cancel = cancel or threading.Event()
        options = self.options
        log = logger.bind(source=options.source, target=options.target)

        with _WorkDirLock(options.work_dir):
            source = self.registry.pull(options.source_ref)
            if not source.layers:
                raise NydusifyError(f"source image {options.source} has no layers")
            source.work_dir = options.work_dir / "source"
            target = Image(ref=options.target_ref, work_dir=options.work_dir / "target")
            source.work_dir.mkdir(parents=True, exist_ok=True)
            target.work_dir.mkdir(parents=True, exist_ok=True)
            log.info("convert_started", layers=len(source.layers))

            self.jobs = self._build_jobs(source, target, cancel)
            try:
                self._resolve_cache()
                misses = [job for job in self.jobs if not job.cached]
                first_pulls = _first_per_digest(misses)
                self._run_parallel(first_pulls, "pull", LayerJob.pull, cancel)
                # Repeated layers share the extraction of their first occurrence.
                for job in misses:
                    if job not in first_pulls:
                        self._attempt(job, "pull", LayerJob.pull, cancel)
                for job in misses:
                    self._attempt(job, "convert", lambda j: j.convert(self.converter), cancel)
                self._run_parallel(misses, "push", LayerJob.push, cancel)
                if cancel.is_set():
                    raise ConvertCancelledError("conversion cancelled")
                manifest_digest = self._write_manifest(source, target)
            except BaseException:
                for job in self.jobs:
                    job.fail()
                raise

            for job in self.jobs:
                job.state = JobState.DONE
            if self.resolver is not None:
                self.resolver.update([job.to_cache_record() for job in self.jobs])

        report = ConvertReport(
            source=options.source,
            target=options.target,
            manifest_digest=manifest_digest,
            layers=[job.report() for job in self.jobs],
            pulled=len(misses),
        )
        log.info(
            "convert_finished",
            manifest=manifest_digest,
            cache_hits=report.cache_hits,
            pulled=report.pulled,
        )
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_jobs(
        self, source: Image, target: Image, cancel: threading.Event
    ) -> list[LayerJob]:
        jobs: list[LayerJob] = []
        parent: LayerJob | None = None
        ids = chain_ids(layer.digest for layer in source.layers)
        for layer, cid in zip(source.layers, ids):
            job = LayerJob(
                source,
                target,
                layer,
                cid,
                registry=self.registry,
                backend=self.backend,
                parent=parent,
                cancel=cancel,
            )
            jobs.append(job)
            parent = job
        return jobs

    def _resolve_cache(self) -> None:
        if self.resolver is None:
            return
        verify = self._verify_record if self.options.verify_cache else None
        records = self.resolver.resolve([job.source_digest for job in self.jobs], verify)
        for job, record in zip(self.jobs, records):
            if record is not None:
                job.apply_cache_hit(record)

    def _verify_record(self, record: CacheRecord) -> bool:
        return self.backend.exists(record.blob.hex) and self.registry.has_blob(
            record.bootstrap.digest
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.options.retry_attempts),
            wait=wait_exponential(multiplier=self.options.retry_backoff, max=30),
            retry=retry_if_exception_type((SourceUnavailableError, UploadFailedError)),
            before_sleep=_log_retry,
            reraise=True,
        )

    def _attempt(
        self,
        job: LayerJob,
        phase: str,
        fn: Callable[[LayerJob], None],
        cancel: threading.Event,
    ) -> None:
        if cancel.is_set():
            raise ConvertCancelledError(f"{phase} of layer {job.source_digest} cancelled")
        try:
            for attempt in self._retrying():
                with attempt:
                    fn(job)
        except ConvertCancelledError:
            job.fail()
            raise
        except Exception as exc:
            job.fail()
            logger.error("layer_job_failed", phase=phase, digest=job.source_digest, error=str(exc))
            raise LayerJobError(phase, job.source_digest, exc) from exc

    def _run_parallel(
        self,
        jobs: Sequence[LayerJob],
        phase: str,
        fn: Callable[[LayerJob], None],
        cancel: threading.Event,
    ) -> None:
        if not jobs:
            return
        failures: dict[int, BaseException] = {}
        order = {id(job): index for index, job in enumerate(jobs)}
        with ThreadPoolExecutor(max_workers=self.options.workers) as pool:
            futures = {pool.submit(self._attempt, job, phase, fn, cancel): job for job in jobs}
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                exc = future.exception()
                if exc is None:
                    continue
                failures[order[id(futures[future])]] = exc
                if not cancel.is_set():
                    cancel.set()
                    for pending in futures:
                        pending.cancel()
        if not failures:
            return
        # Report the lowest layer that failed on its own, not one that was
        # merely cancelled because of it.
        for index in sorted(failures):
            if not isinstance(failures[index], ConvertCancelledError):
                raise failures[index]
        raise failures[min(failures)]

    def _write_manifest(self, source: Image, target: Image) -> str:
        if source.config is None:
            raise NydusifyError(f"source image {source.ref} has no config")
        layers = []
        if not self.backend.external:
            layers.extend(job.blob_descriptor() for job in self.jobs)
        layers.append(self.jobs[-1].bootstrap_descriptor())
        manifest = OCIManifest(
            config=self._write_config(source.config, layers),
            layers=layers,
            annotations={"containerd.io/snapshot/nydus-source": str(source.ref)},
        )
        return self.registry.write_manifest(target.ref, manifest)

    def _write_config(self, source_config: Descriptor, layers: list[Descriptor]) -> Descriptor:
        """
        Store the target image config.

        The source config is kept, except that ``rootfs.diff_ids`` now lists
        the converted layers and the per-layer history is dropped.
        """
        with self.registry.open_blob(source_config.digest) as fh:
            config = json.loads(fh.read())
        if not isinstance(config, dict):
            raise NydusifyError(f"source config {source_config.digest} is not a JSON object")
        config["rootfs"] = {
            "type": "layers",
            "diff_ids": [self._diff_id(desc) for desc in layers],
        }
        config.pop("history", None)
        data = json.dumps(config, sort_keys=True).encode("utf-8")
        digest = self.registry.write_blob_bytes(data)
        return Descriptor(media_type=source_config.media_type, digest=digest, size=len(data))

    def _diff_id(self, desc: Descriptor) -> str:
        if desc.media_type not in GZIP_MEDIA_TYPES:
            return desc.digest
        h = hashlib.sha256()
        with self.registry.open_blob(desc.digest) as raw, gzip.open(raw, "rb") as fh:
            for chunk in iter(lambda: fh.read(65536), b""):
                h.update(chunk)
        return f"sha256:{h.hexdigest()}"


def _first_per_digest(jobs: Sequence[LayerJob]) -> list[LayerJob]:
    seen: set[str] = set()
    unique: list[LayerJob] = []
    for job in jobs:
        if job.source_digest not in seen:
            seen.add(job.source_digest)
            unique.append(job)
    return unique


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("layer_job_retrying", attempt=retry_state.attempt_number, error=str(error))

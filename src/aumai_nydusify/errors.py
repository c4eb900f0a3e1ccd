"""Error types raised by the conversion pipeline."""

from __future__ import annotations

__all__ = [
    "BlobNotFoundError",
    "CacheLookupError",
    "CacheWriteError",
    "ConversionFailedError",
    "ConvertCancelledError",
    "DecompressionFailedError",
    "DigestComputationError",
    "LayerFormUnavailable",
    "LayerJobError",
    "ManifestNotFoundError",
    "NydusifyError",
    "SourceUnavailableError",
    "UploadFailedError",
    "WorkDirBusyError",
]


class NydusifyError(Exception):
    """Base class for every error raised by aumai-nydusify."""


class LayerFormUnavailable(NydusifyError):
    """The requested (compressed or uncompressed) form of a layer is not available."""


class SourceUnavailableError(NydusifyError):
    """A source layer could be read neither compressed nor uncompressed."""

    def __init__(
        self,
        digest: str,
        compressed_error: Exception,
        uncompressed_error: Exception,
    ) -> None:
        super().__init__(
            f"source layer {digest} unavailable: compressed: {compressed_error}; "
            f"uncompressed: {uncompressed_error}"
        )
        self.digest = digest
        self.compressed_error = compressed_error
        self.uncompressed_error = uncompressed_error


class DecompressionFailedError(NydusifyError):
    pass


class ConversionFailedError(NydusifyError):
    pass


class DigestComputationError(NydusifyError):
    pass


class UploadFailedError(NydusifyError):
    """Uploading a blob or bootstrap artifact failed."""

    def __init__(self, artifact: str, digest: str, cause: Exception) -> None:
        super().__init__(f"upload {artifact} {digest}: {cause}")
        self.artifact = artifact
        self.digest = digest


class CacheLookupError(NydusifyError):
    pass


class CacheWriteError(NydusifyError):
    pass


class ConvertCancelledError(NydusifyError):
    pass


class WorkDirBusyError(NydusifyError):
    pass


class BlobNotFoundError(NydusifyError, FileNotFoundError):
    pass


class ManifestNotFoundError(NydusifyError, FileNotFoundError):
    pass


class LayerJobError(NydusifyError):
    """
    A layer job failed in one phase.

    Carries the source layer digest and the phase (``pull``, ``convert``
    or ``push``); the underlying error is chained as ``__cause__``.
    """

    def __init__(self, phase: str, digest: str, cause: Exception) -> None:
        super().__init__(f"{phase} layer {digest}: {cause}")
        self.phase = phase
        self.digest = digest
        self.cause = cause

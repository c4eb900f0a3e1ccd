"""Content-addressed layer artifacts."""

from __future__ import annotations

import gzip
import hashlib
import threading
from pathlib import Path
from typing import IO, BinaryIO

from .errors import ConvertCancelledError, DigestComputationError, LayerFormUnavailable
from .models import GZIP_MEDIA_TYPES, MEDIA_TYPE_LAYER_TAR, Descriptor

__all__ = [
    "DigestingReader",
    "Layer",
    "copy_stream",
]

_CHUNK_SIZE = 1024 * 1024


def _sha256_file(path: str | Path) -> str:
    """Return 'sha256:<hex>' digest for the file at *path*."""
    h = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            h.update(chunk)
    return f"sha256:{h.hexdigest()}"


def _sha256_bytes(data: bytes) -> str:
    """Return 'sha256:<hex>' digest for *data*."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def copy_stream(
    src: IO[bytes],
    dst: IO[bytes],
    cancel: threading.Event | None = None,
) -> int:
    """Copy *src* into *dst* chunk by chunk, aborting once *cancel* is set."""
    copied = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise ConvertCancelledError("stream copy cancelled")
        chunk = src.read(_CHUNK_SIZE)
        if not chunk:
            return copied
        dst.write(chunk)
        copied += len(chunk)


class DigestingReader:
    """
    Read-through wrapper that hashes every byte it hands out.

    The digest becomes available once the wrapped stream has been read to
    EOF, so single-pass sources can be digested while they are streamed.
    """

    def __init__(self, stream: IO[bytes]) -> None:
        self._stream = stream
        self._hash = hashlib.sha256()
        self.size = 0
        self.digest: str | None = None

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        if data:
            self._hash.update(data)
            self.size += len(data)
        elif self.digest is None:
            self.digest = f"sha256:{self._hash.hexdigest()}"
        return data

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        self._stream.close()

    def __enter__(self) -> DigestingReader:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class Layer:
    """
    A single content artifact: source layer, converted blob or bootstrap.

    Layers are backed either by a file (re-readable, digest computed on
    demand) or by a single-pass stream whose digest is supplied up front or
    captured while the stream is consumed.
    """

    def __init__(
        self,
        name: str,
        media_type: str,
        *,
        path: str | Path | None = None,
        stream: IO[bytes] | None = None,
        digest: str | None = None,
        size: int | None = None,
    ) -> None:
        if (path is None) == (stream is None):
            raise ValueError("Layer needs exactly one of path or stream.")
        self.name = name
        self.media_type = media_type
        self.path = Path(path) if path is not None else None
        self._stream = stream
        self._reader: DigestingReader | None = None
        self._digest = digest
        self._size = size
        self._lock = threading.Lock()

    @classmethod
    def from_path(cls, path: str | Path, media_type: str, name: str = "") -> Layer:
        return cls(name or Path(path).name, media_type, path=path)

    @classmethod
    def from_stream(
        cls,
        stream: IO[bytes],
        media_type: str,
        *,
        name: str = "",
        digest: str | None = None,
        size: int | None = None,
    ) -> Layer:
        return cls(name, media_type, stream=stream, digest=digest, size=size)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def digest(self) -> str:
        """Digest of the canonical bytes, stable once computed."""
        with self._lock:
            if self._digest is None:
                if self.path is not None:
                    try:
                        self._digest = _sha256_file(self.path)
                    except OSError as exc:
                        raise DigestComputationError(
                            f"digest unavailable for layer {self.name!r}: {exc}"
                        ) from exc
                elif self._reader is not None and self._reader.digest is not None:
                    self._digest = self._reader.digest
                else:
                    raise DigestComputationError(
                        f"digest unavailable for layer {self.name!r}: "
                        "stream has not been consumed"
                    )
            return self._digest

    @property
    def digest_hex(self) -> str:
        return self.digest.split(":", 1)[1]

    @property
    def size(self) -> int:
        if self._size is None:
            if self.path is not None:
                self._size = self.path.stat().st_size
            elif self._reader is not None and self._reader.digest is not None:
                self._size = self._reader.size
            else:
                raise DigestComputationError(
                    f"size unavailable for layer {self.name!r}"
                )
        return self._size

    @property
    def compressed_form(self) -> bool:
        return self.media_type != MEDIA_TYPE_LAYER_TAR

    def diff_id(self) -> str:
        """Digest of the uncompressed bytes."""
        h = hashlib.sha256()
        with self.uncompressed() as fh:
            for chunk in iter(lambda: fh.read(65536), b""):
                h.update(chunk)
        return f"sha256:{h.hexdigest()}"

    def descriptor(self, annotations: dict[str, str] | None = None) -> Descriptor:
        return Descriptor(
            media_type=self.media_type,
            digest=self.digest,
            size=self.size,
            annotations=annotations or {},
        )

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def compressed(self) -> BinaryIO:
        """Open the canonical (compressed) bytes of the layer."""
        if not self.compressed_form:
            raise LayerFormUnavailable(
                f"layer {self.name!r} has no compressed form ({self.media_type})"
            )
        return self._open_canonical()

    def uncompressed(self) -> BinaryIO:
        """Open the decompressed bytes of the layer."""
        if self.media_type not in GZIP_MEDIA_TYPES:
            return self._open_canonical()
        if self.path is not None:
            return gzip.open(self.path, "rb")  # type: ignore[return-value]
        return gzip.GzipFile(fileobj=self._open_canonical(), mode="rb")  # type: ignore[return-value]

    def _open_canonical(self) -> BinaryIO:
        if self.path is not None:
            return open(self.path, "rb")
        with self._lock:
            if self._stream is None:
                raise LayerFormUnavailable(
                    f"single-pass stream of layer {self.name!r} already consumed"
                )
            self._reader = DigestingReader(self._stream)
            self._stream = None
            return self._reader  # type: ignore[return-value]

    def __repr__(self) -> str:
        return f"Layer(name={self.name!r}, media_type={self.media_type!r})"

"""Layer extraction and the reference chunk-dedup converter."""

from __future__ import annotations

import gzip
import hashlib
import io
import json
import os
import shutil
import stat
import tarfile
import threading
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Protocol

import structlog
from fastcdc import fastcdc

from .errors import ConvertCancelledError, DecompressionFailedError

__all__ = [
    "ChunkConverter",
    "ConvertResult",
    "Converter",
    "decompress_layer",
    "read_bootstrap",
]

logger = structlog.get_logger(__name__)

BOOTSTRAP_NAME = "image/image.boot"
BOOTSTRAP_VERSION = 1

_WHITEOUT_PREFIX = ".wh."
_OPAQUE_WHITEOUT = ".wh..wh..opq"


@dataclass(frozen=True)
class ConvertResult:
    blob_path: Path
    bootstrap_path: Path


class Converter(Protocol):
    def convert(
        self,
        layer_dir: Path,
        parent_bootstrap: Path | None,
        out_dir: Path,
    ) -> ConvertResult: ...


def decompress_layer(
    reader: IO[bytes],
    dest: Path,
    cancel: threading.Event | None = None,
) -> None:
    """
    Extract a (gzip or plain) layer tarball stream into *dest*.

    Content lands in ``<dest>.partial`` first and is renamed into place once
    complete, so an existing *dest* always holds a fully extracted layer.
    """
    partial = dest.with_name(dest.name + ".partial")
    if partial.exists():
        shutil.rmtree(partial)
    partial.mkdir(parents=True)
    try:
        with tarfile.open(fileobj=reader, mode="r|*") as tar:
            for member in tar:
                if cancel is not None and cancel.is_set():
                    raise ConvertCancelledError(f"extraction of {dest.name} cancelled")
                if member.isdev():
                    continue
                tar.extract(member, path=partial, filter="tar")
    except (tarfile.TarError, EOFError, zlib.error, OSError) as exc:
        shutil.rmtree(partial, ignore_errors=True)
        raise DecompressionFailedError(f"extract layer {dest.name}: {exc}") from exc
    except BaseException:
        shutil.rmtree(partial, ignore_errors=True)
        raise
    os.replace(partial, dest)


def read_bootstrap(path: Path) -> dict[str, Any]:
    """Load the bootstrap document packed in a bootstrap layer tarball."""
    with tarfile.open(path, "r:gz") as tar:
        fh = tar.extractfile(BOOTSTRAP_NAME)
        if fh is None:
            raise FileNotFoundError(f"{BOOTSTRAP_NAME} not found in {path}")
        return json.loads(fh.read().decode("utf-8"))


def _write_bootstrap(document: dict[str, Any], path: Path) -> None:
    """Pack *document* reproducibly: fixed mtimes, owners and gzip header."""
    payload = json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")
    info = tarfile.TarInfo(BOOTSTRAP_NAME)
    info.size = len(payload)
    info.mode = 0o644
    info.mtime = 0
    with open(path, "wb") as raw:
        with gzip.GzipFile(filename="", fileobj=raw, mode="wb", mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.USTAR_FORMAT) as tar:
                tar.addfile(info, io.BytesIO(payload))


class ChunkConverter:
    """
    Content-defined chunking converter.

    Every regular file of the layer is split with FastCDC; chunks not
    already known to the parent bootstrap are appended to this layer's
    blob. The bootstrap is cumulative: it holds the merged file tree of
    the layer and all of its ancestors, with OCI whiteouts applied.

    Bootstrap document::

        {"version": 1,
         "blobs": ["sha256:...", ...],            # one per ancestor layer
         "chunks": {"<sha256>": [blob, offset, size]},
         "files": {"<path>": {"type": ..., "mode": ..., ...}}}
    """

    def __init__(
        self,
        min_size: int = 4096,
        avg_size: int = 16384,
        max_size: int = 65536,
    ) -> None:
        self.min_size = min_size
        self.avg_size = avg_size
        self.max_size = max_size

    def convert(
        self,
        layer_dir: Path,
        parent_bootstrap: Path | None,
        out_dir: Path,
    ) -> ConvertResult:
        if parent_bootstrap is not None:
            document = read_bootstrap(parent_bootstrap)
        else:
            document = {"version": BOOTSTRAP_VERSION, "blobs": [], "chunks": {}, "files": {}}
        files: dict[str, dict[str, Any]] = document["files"]
        chunks: dict[str, list[int]] = document["chunks"]
        blob_index = len(document["blobs"])

        entries = self._walk(layer_dir)
        self._apply_whiteouts(files, entries)

        out_dir.mkdir(parents=True, exist_ok=True)
        blob_path = out_dir / "blob"
        blob_hash = hashlib.sha256()
        blob_size = 0
        new_chunks = 0
        with open(blob_path, "wb") as blob:
            for rel, path in entries:
                if Path(rel).name.startswith(_WHITEOUT_PREFIX):
                    continue
                st = path.lstat()
                mode = stat.S_IMODE(st.st_mode)
                if stat.S_ISDIR(st.st_mode):
                    files[rel] = {"type": "dir", "mode": mode}
                elif stat.S_ISLNK(st.st_mode):
                    files[rel] = {"type": "symlink", "target": os.readlink(path)}
                elif stat.S_ISREG(st.st_mode):
                    file_chunks: list[str] = []
                    for length, data in self._chunk_file(path, st.st_size):
                        digest = hashlib.sha256(data).hexdigest()
                        file_chunks.append(digest)
                        if digest in chunks:
                            continue
                        chunks[digest] = [blob_index, blob_size, length]
                        blob.write(data)
                        blob_hash.update(data)
                        blob_size += length
                        new_chunks += 1
                    files[rel] = {
                        "type": "file",
                        "mode": mode,
                        "size": st.st_size,
                        "chunks": file_chunks,
                    }

        document["blobs"].append(f"sha256:{blob_hash.hexdigest()}")
        bootstrap_path = out_dir / "bootstrap.tar.gz"
        _write_bootstrap(document, bootstrap_path)
        logger.debug(
            "layer_converted",
            layer_dir=str(layer_dir),
            new_chunks=new_chunks,
            blob_size=blob_size,
            files=len(files),
        )
        return ConvertResult(blob_path=blob_path, bootstrap_path=bootstrap_path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _walk(self, root: Path) -> list[tuple[str, Path]]:
        entries: list[tuple[str, Path]] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            base = Path(dirpath)
            for name in dirnames + sorted(filenames):
                path = base / name
                entries.append((path.relative_to(root).as_posix(), path))
        entries.sort(key=lambda entry: entry[0])
        return entries

    def _apply_whiteouts(
        self,
        files: dict[str, dict[str, Any]],
        entries: list[tuple[str, Path]],
    ) -> None:
        """Drop entries of lower layers hidden by whiteouts in this layer."""
        for rel, _ in entries:
            parent, _, name = rel.rpartition("/")
            if name == _OPAQUE_WHITEOUT:
                prefix = f"{parent}/" if parent else ""
                hidden = [p for p in files if p.startswith(prefix) and p != parent]
            elif name.startswith(_WHITEOUT_PREFIX):
                removed = name[len(_WHITEOUT_PREFIX):]
                if parent:
                    removed = f"{parent}/{removed}"
                hidden = [p for p in files if p == removed or p.startswith(removed + "/")]
            else:
                continue
            for path in hidden:
                del files[path]

    def _chunk_file(self, path: Path, size: int):
        if size == 0:
            return
        with open(path, "rb") as fh:
            for chunk in fastcdc(str(path), self.min_size, self.avg_size, self.max_size):
                fh.seek(chunk.offset)
                yield chunk.length, fh.read(chunk.length)

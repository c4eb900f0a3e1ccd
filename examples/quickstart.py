"""
aumai-nydusify quickstart: build an image, convert it, reuse the cache, verify.

Run directly:

    python examples/quickstart.py

All demos use a temporary directory and clean up after themselves.
"""

from __future__ import annotations

import io
import pathlib
import tarfile
import tempfile


def _layer_tarball(path: pathlib.Path, files: dict[str, bytes]) -> pathlib.Path:
    with tarfile.open(path, "w:gz") as tar:
        for name, data in sorted(files.items()):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return path


# ---------------------------------------------------------------------------
# Demo 1: Store two plain OCI images in a local registry
# ---------------------------------------------------------------------------

def demo_import_images(root: pathlib.Path):
    """Create ``app:base`` (one layer) and ``app:full`` (base plus one layer)."""
    print("\n=== Demo 1: Import source images ===")

    from aumai_nydusify.models import ImageReference
    from aumai_nydusify.registry import OCILayoutRegistry

    registry = OCILayoutRegistry(root / "registry")
    base = _layer_tarball(root / "base.tar.gz", {
        "etc/os-release": b"NAME=demo\n",
        "usr/lib/libdemo.so": bytes(range(256)) * 1024,
    })
    extra = _layer_tarball(root / "extra.tar.gz", {
        "srv/app/main.py": b"print('hello')\n" * 200,
    })

    for tag, layers in (("base", [base]), ("full", [base, extra])):
        ref = ImageReference.parse(f"app:{tag}")
        digest = registry.import_image(ref, layers)
        print(f"  {str(ref):<10} {len(layers)} layer(s)  manifest {digest[:30]}...")
    return registry


# ---------------------------------------------------------------------------
# Demo 2: Convert with a build cache
# ---------------------------------------------------------------------------

def demo_convert(registry, root: pathlib.Path) -> None:
    """Convert both images; the second run reuses the shared base layer."""
    print("\n=== Demo 2: Convert with build cache ===")

    from aumai_nydusify.converter import ChunkConverter
    from aumai_nydusify.models import ConvertOptions
    from aumai_nydusify.pipeline import Pipeline

    for source in ("app:base", "app:full"):
        options = ConvertOptions(
            source=source,
            target=f"{source}-nydus",
            work_dir=root / "work" / source.replace(":", "-"),
            build_cache="app-cache:v1",
        )
        report = Pipeline(registry, ChunkConverter(), options).run()
        print(f"  {source:<10} -> {options.target}")
        for layer in report.layers:
            status = "cached" if layer.cached else "converted"
            print(f"    {layer.source_digest[:30]}...  {status}")
        print(f"    hit rate {report.hit_rate:.0%}, pulled {report.pulled}")


# ---------------------------------------------------------------------------
# Demo 3: Verify the converted image
# ---------------------------------------------------------------------------

def demo_check(registry) -> None:
    """Check every layer and blob of ``app:full-nydus``."""
    print("\n=== Demo 3: Verify converted image ===")

    from aumai_nydusify.backend import RegistryBackend
    from aumai_nydusify.checker import check_image
    from aumai_nydusify.models import ImageReference

    ref = ImageReference.parse("app:full-nydus")
    results = check_image(registry, ref, RegistryBackend(registry, ref))
    for digest, is_valid in results:
        print(f"  {'OK  ' if is_valid else 'FAIL'}  {digest[:40]}...")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    print("aumai-nydusify quickstart demo")
    print("=" * 40)

    with tempfile.TemporaryDirectory() as tmp:
        root = pathlib.Path(tmp)
        registry = demo_import_images(root)
        demo_convert(registry, root)
        demo_check(registry)

    print("\n" + "=" * 40)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()

"""CLI entry point for aumai-nydusify."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
import structlog

from .backend import create_backend
from .cache import RegistryCacheIndex
from .checker import check_image
from .converter import ChunkConverter
from .errors import NydusifyError
from .models import ConvertOptions, ImageReference
from .pipeline import Pipeline
from .registry import OCILayoutRegistry

_LOG_LEVELS = ["debug", "info", "warning", "error"]


def _configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        logger_factory=lambda *args: structlog.PrintLogger(sys.stderr),
    )


@click.group()
@click.version_option(package_name="aumai-nydusify")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="info",
    show_default=True,
    envvar="NYDUSIFY_LOG_LEVEL",
    help="Minimum level of log events written to stderr.",
)
def main(log_level: str) -> None:
    """AumAI Nydusify: convert OCI images into chunk-deduplicated nydus images."""
    _configure_logging(log_level)


registry_dir_option = click.option(
    "--registry-dir",
    required=True,
    type=click.Path(file_okay=False),
    envvar="NYDUSIFY_REGISTRY_DIR",
    help="Root directory of the OCI layout registry.",
)
backend_type_option = click.option(
    "--backend-type",
    type=click.Choice(["registry", "localfs"]),
    default="registry",
    show_default=True,
    envvar="NYDUSIFY_BACKEND_TYPE",
    help="Where converted blob layers are stored.",
)
backend_config_option = click.option(
    "--backend-config",
    default="{}",
    envvar="NYDUSIFY_BACKEND_CONFIG",
    help='Backend configuration as JSON string (e.g. \'{"dir": "/blobs"}\').',
)


@main.command("convert")
@click.option("--source", required=True, help="Source image reference.")
@click.option("--target", required=True, help="Target image reference.")
@registry_dir_option
@click.option(
    "--work-dir",
    default="./tmp",
    show_default=True,
    type=click.Path(file_okay=False),
    envvar="NYDUSIFY_WORK_DIR",
    help="Scratch directory, exclusive to one run.",
)
@click.option(
    "--build-cache",
    default=None,
    envvar="NYDUSIFY_BUILD_CACHE",
    help="Cache image reference (e.g. cache:v1); disabled when omitted.",
)
@click.option(
    "--build-cache-max-records",
    default=200,
    show_default=True,
    type=click.IntRange(min=1),
    help="Maximum number of records kept in the cache image.",
)
@backend_type_option
@backend_config_option
@click.option(
    "--workers",
    default=4,
    show_default=True,
    type=click.IntRange(min=1),
    envvar="NYDUSIFY_WORKERS",
    help="Concurrent layer pulls/pushes.",
)
@click.option(
    "--retries",
    default=3,
    show_default=True,
    type=click.IntRange(min=1),
    help="Attempts per layer pull/push.",
)
@click.option(
    "--no-verify-cache",
    is_flag=True,
    default=False,
    help="Trust cache hits without checking their blobs exist.",
)
def convert_command(
    source: str,
    target: str,
    registry_dir: str,
    work_dir: str,
    build_cache: str | None,
    build_cache_max_records: int,
    backend_type: str,
    backend_config: str,
    workers: int,
    retries: int,
    no_verify_cache: bool,
) -> None:
    """Convert a source image into a nydus image."""
    try:
        options = ConvertOptions(
            source=source,
            target=target,
            work_dir=Path(work_dir),
            build_cache=build_cache,
            build_cache_max_records=build_cache_max_records,
            workers=workers,
            retry_attempts=retries,
            verify_cache=not no_verify_cache,
        )
        registry = OCILayoutRegistry(registry_dir)
        backend = create_backend(backend_type, backend_config, registry, options.target_ref)
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    pipeline = Pipeline(registry, ChunkConverter(), options, backend=backend)
    try:
        report = pipeline.run()
    except (NydusifyError, OSError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Converted image: {target}")
    click.echo(f"  Source      : {source}")
    click.echo(f"  Manifest    : {report.manifest_digest}")
    click.echo(f"  Layers      : {len(report.layers)}")
    click.echo(f"  Cache hits  : {report.cache_hits} ({report.hit_rate:.0%})")
    click.echo(f"  Pulled      : {report.pulled}")


@main.command("check")
@click.option("--target", required=True, help="Converted image reference.")
@registry_dir_option
@backend_type_option
@backend_config_option
def check_command(
    target: str,
    registry_dir: str,
    backend_type: str,
    backend_config: str,
) -> None:
    """Verify that every layer and blob of a converted image is present."""
    try:
        ref = ImageReference.parse(target)
        registry = OCILayoutRegistry(registry_dir)
        backend = create_backend(backend_type, backend_config, registry, ref)
        verification = check_image(registry, ref, backend)
    except (NydusifyError, ValueError, OSError) as exc:
        click.echo(f"Error checking image: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Verification of {target} ({len(verification)} artifacts):")
    all_valid = True
    for digest, valid in verification:
        status = "OK" if valid else "FAIL"
        if not valid:
            all_valid = False
        click.echo(f"  {status}  {digest[:30]}...")
    if all_valid:
        click.echo("All artifacts verified.")
    else:
        click.echo("WARNING: some artifacts failed verification!", err=True)
        sys.exit(1)


@main.command("cache")
@click.option("--build-cache", required=True, help="Cache image reference.")
@registry_dir_option
def cache_command(build_cache: str, registry_dir: str) -> None:
    """List the records of a cache image."""
    try:
        index = RegistryCacheIndex(
            OCILayoutRegistry(registry_dir), ImageReference.parse(build_cache)
        )
        records = index.load()
    except (NydusifyError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Cache {build_cache}: {len(records)} record(s)")
    for record in records:
        click.echo(
            f"  {record.chain_id[:23]}...  blob {record.blob.digest[:23]}...  "
            f"bootstrap {record.bootstrap.digest[:23]}..."
        )


if __name__ == "__main__":
    main()

"""Thin CLI wrapper for isorootfs.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from isorootfs import __version__
from isorootfs.config import get_settings, print_settings_json

app = typer.Typer(
    name="isorootfs",
    help="ISO rootfs extractor - download, verify and unpack live ISO images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"isorootfs version {__version__}")
        raise typer.Exit()


def _configure_logging(level: str) -> None:
    """Send package logs to stderr through rich."""
    package_logger = logging.getLogger("isorootfs")
    if not package_logger.handlers:
        package_logger.addHandler(
            RichHandler(console=err_console, show_path=False, rich_tracebacks=True)
        )
    package_logger.setLevel(level)


def _print_json(data: Any) -> None:
    """Print data as JSON without rich markup or wrapping."""
    console.print(
        json.dumps(data, indent=2),
        soft_wrap=True,
        markup=False,
        highlight=False,
    )


def _load_descriptor_or_exit(path: Path, json_output: bool) -> Any:
    """Load a descriptor file, exiting with code 1 on failure."""
    from pydantic import ValidationError

    from isorootfs.sources.io import load_descriptor

    try:
        return load_descriptor(path)
    except FileNotFoundError:
        message = f"Descriptor not found: {path}"
    except ValidationError as e:
        message = f"Invalid descriptor {path}: {e}"
    except ValueError as e:
        message = f"Invalid descriptor {path}: {e}"

    if json_output:
        _print_json({"code": "invalid_descriptor", "message": message})
    else:
        console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=1)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """ISO rootfs extractor - download, verify and unpack live ISO images."""
    _configure_logging(get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
    else:
        work_dir_display = (
            str(settings.work_dir)
            if settings.work_dir
            else f"(default: {settings.effective_work_dir()})"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Work directory:      {work_dir_display}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Offline mode:        {settings.offline}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Keyserver:           {settings.keyserver}")
        console.print(f"  GitHub API:          {settings.github_api_url}")
        console.print()
        console.print("[bold]Tools:[/bold]")
        console.print(f"  gpg:                 {settings.gpg_binary}")
        console.print(f"  rsync:               {settings.rsync_binary}")
        console.print(f"  mount:               {settings.mount_binary}")
        console.print(f"  umount:              {settings.umount_binary}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Command timeout:     {settings.command_timeout}")
        console.print(f"  Sync timeout:        {settings.sync_timeout}")


@app.command()
def resolve(
    descriptor_path: Annotated[
        Path, typer.Argument(help="Path to source descriptor (YAML/JSON)")
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show which files would be downloaded for a descriptor."""
    from isorootfs.errors import PipelineError
    from isorootfs.pipeline import discover_source
    from isorootfs.sources.resolver import resolve_source

    descriptor = _load_descriptor_or_exit(descriptor_path, json_output)

    try:
        descriptor = discover_source(descriptor, get_settings())
        source = resolve_source(descriptor)
    except PipelineError as e:
        if json_output:
            _print_json(e.to_dict())
        else:
            console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(
            {
                "image_url": source.image.url,
                "manifest_url": source.manifest.url if source.manifest else None,
                "signature_url": source.signature.url if source.signature else None,
                "hash_algorithm": source.image.hash_algorithm,
                "verify": source.verify,
            }
        )
    else:
        console.print("[bold]Download plan:[/bold]")
        for artifact in source.artifacts():
            console.print(f"  {artifact.url}")
        if source.verify:
            console.print(
                f"  Verification: signed manifest ({source.image.hash_algorithm})"
            )
        else:
            console.print("  [yellow]Verification: none[/yellow]")


@app.command()
def extract(
    descriptor_path: Annotated[
        Path, typer.Argument(help="Path to source descriptor (YAML/JSON)")
    ],
    rootfs_dir: Annotated[
        Path, typer.Argument(help="Destination root directory (contents replaced)")
    ],
    skip_verification: Annotated[
        bool,
        typer.Option(
            "--skip-verification", help="Do not check the signed checksum manifest"
        ),
    ] = False,
    keyring: Annotated[
        Path | None,
        typer.Option(
            "--keyring", "-k", help="Import trusted keys from this file"
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Download, verify and unpack an image into a root directory."""
    from isorootfs.errors import PipelineError
    from isorootfs.pipeline import run_pipeline
    from isorootfs.verify.gpg import SignatureVerifier

    settings = get_settings()
    descriptor = _load_descriptor_or_exit(descriptor_path, json_output)
    if skip_verification:
        descriptor = descriptor.model_copy(update={"skip_verification": True})

    verifier = None
    if keyring is not None:
        verifier = SignatureVerifier(
            descriptor.keys,
            keyserver=descriptor.keyserver,
            keyring=keyring,
            settings=settings,
        )

    try:
        if not json_output:
            console.print(
                f"[blue]Extracting {descriptor.url} into {rootfs_dir}...[/blue]"
            )
        result = run_pipeline(
            descriptor,
            rootfs_dir,
            settings=settings,
            verifier=verifier,
        )
    except PipelineError as e:
        if json_output:
            _print_json(e.to_dict())
        else:
            stage = f"{e.stage.value}: " if e.stage else ""
            console.print(f"[red]Failed ({stage}{e.code}): {e}[/red]")
            for warning in e.warnings:
                console.print(f"[yellow]  Cleanup warning: {warning}[/yellow]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(
            {
                "image_url": result.source.image.url,
                "image_path": str(result.image_path),
                "rootfs_dir": str(result.extraction.rootfs_dir),
                "signature_verified": result.signature_verified,
                "state": result.extraction.state.value,
                "warnings": [w.to_dict() for w in result.extraction.warnings],
            }
        )
    else:
        console.print(f"[green]✓ Root filesystem ready: {rootfs_dir}[/green]")
        console.print(f"  Image: {result.image_path}")
        console.print(f"  Signature verified: {result.signature_verified}")
        for warning in result.extraction.warnings:
            console.print(f"[yellow]  Cleanup warning: {warning}[/yellow]")


cache_app = typer.Typer(help="Manage the download cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("list")
def cache_list(
    state: Annotated[
        str | None,
        typer.Option("--state", help="Filter by state (pending, ready, broken)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cached downloads."""
    from isorootfs.db import create_all_tables, get_engine, get_session_factory
    from isorootfs.fetch.service import list_artifacts
    from isorootfs.types import ArtifactState

    state_filter: ArtifactState | None = None
    if state:
        try:
            state_filter = ArtifactState(state)
        except ValueError:
            console.print(f"[red]Invalid state: {state}[/red]")
            console.print("Valid values: pending, ready, broken")
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        artifacts = list_artifacts(session, state=state_filter)

        if not artifacts:
            if json_output:
                console.print("[]", markup=False)
            else:
                console.print("[yellow]No cached downloads found[/yellow]")
            return

        if json_output:
            _print_json(
                [
                    {
                        "url": a.url,
                        "path": str(Path(a.cache_dir) / a.filename),
                        "state": a.state,
                        "checksum": a.checksum,
                        "hash_algorithm": a.hash_algorithm,
                        "verified": a.verified,
                        "size_bytes": a.size_bytes,
                        "fetched_at": a.fetched_at.isoformat()
                        if a.fetched_at
                        else None,
                        "last_used_at": a.last_used_at.isoformat()
                        if a.last_used_at
                        else None,
                    }
                    for a in artifacts
                ]
            )
        else:
            console.print(f"[bold]Found {len(artifacts)} cached download(s):[/bold]")
            console.print()
            for a in artifacts:
                state_color = {
                    "ready": "green",
                    "pending": "yellow",
                    "broken": "red",
                }.get(a.state, "white")
                console.print(f"  [{state_color}]{a.url}[/{state_color}]")
                console.print(f"    State: {a.state}")
                console.print(f"    Path: {Path(a.cache_dir) / a.filename}")
                if a.verified and a.checksum:
                    console.print(
                        f"    Verified {a.hash_algorithm}: {a.checksum[:16]}..."
                    )
                console.print()


@cache_app.command("info")
def cache_info(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show download cache information."""
    from isorootfs.fetch.service import get_cache_info

    info = get_cache_info()

    if json_output:
        _print_json(info)
    else:
        console.print("[bold]Download Cache Information:[/bold]")
        console.print()
        console.print(f"  Cache directory: {info['cache_dir']}")
        console.print(f"  Exists: {info['exists']}")
        console.print(f"  Total size: {info['total_size_human']}")


@cache_app.command("prune")
def cache_prune(
    prune_all: Annotated[
        bool,
        typer.Option("--all", help="Prune every cached download, not only broken ones"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-n", help="Show what would be pruned without actually pruning"
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Remove broken (or all) cached downloads."""
    from isorootfs.db import create_all_tables, get_engine, get_session_factory
    from isorootfs.fetch.service import prune_artifacts

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        pruned = prune_artifacts(
            session,
            broken_only=not prune_all,
            dry_run=dry_run,
        )
        if not dry_run:
            session.commit()

        if json_output:
            _print_json({"dry_run": dry_run, "pruned": pruned})
        elif not pruned:
            console.print("[yellow]Nothing to prune[/yellow]")
        else:
            action = "Would prune" if dry_run else "Pruned"
            console.print(f"[bold]{action} {len(pruned)} download(s):[/bold]")
            for url in pruned:
                console.print(f"  {url}")


if __name__ == "__main__":
    app()

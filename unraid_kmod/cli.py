"""Thin CLI wrapper for unraid_kmod.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from unraid_kmod import __version__
from unraid_kmod.config import Settings, get_settings, print_settings_json
from unraid_kmod.errors import (
    BuildError,
    ConfigurationError,
    DownloadError,
    FilesystemError,
    FormatError,
    PipelineCancelledError,
    PipelineError,
    ResolutionError,
)
from unraid_kmod.types import OperationResult, TargetVersion

if TYPE_CHECKING:
    from unraid_kmod.cache.store import CacheStore

app = typer.Typer(
    name="unraid-kmod",
    help="Unraid kernel module builder - resolve, compile and package out-of-tree modules",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

# Exit codes by error category; 1 covers anything unexpected
EXIT_CODES: tuple[tuple[type[PipelineError], int], ...] = (
    (ResolutionError, 2),
    (FormatError, 3),
    (BuildError, 4),
    (DownloadError, 5),
    (PipelineCancelledError, 6),
    (ConfigurationError, 7),
    (FilesystemError, 8),
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"unraid-kmod version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Unraid kernel module builder."""
    try:
        settings = get_settings()
    except ValidationError as e:
        error = ConfigurationError(
            str(e),
            code="invalid_settings",
            remediation="Fix the UNRAID_KMOD_* environment variables or .env entries listed above.",
        )
        _report_error(error, json_output=False)
        raise typer.Exit(code=_exit_code(error)) from None
    configure_logging("DEBUG" if verbose else settings.log_level)


def _exit_code(error: PipelineError) -> int:
    for error_type, code in EXIT_CODES:
        if isinstance(error, error_type):
            return code
    return 1


def _print_json(text: str) -> None:
    """Print JSON unwrapped and without markup so it stays parseable."""
    console.print(text, soft_wrap=True, markup=False, highlight=False)


def _format_size(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    size = size_bytes / 1024
    for unit in ("KiB", "MiB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"


def _report_error(error: PipelineError, json_output: bool) -> None:
    """Print a failure naming the stage and remediation, then the tool output."""
    output = getattr(error, "output", None)
    log_path = getattr(error, "log_path", None)

    if json_output:
        result = OperationResult(
            success=False,
            message=str(error),
            code=error.code,
            log_path=str(log_path) if log_path else None,
            details={"stage": error.stage, "remediation": error.remediation},
        )
        _print_json(json.dumps(asdict(result), indent=2))
        return

    stage = error.stage or "configuration"
    console.print(f"[red]✗ Stage {stage} failed ({error.code}):[/red] {error}", highlight=False)
    if error.remediation:
        console.print(f"[yellow]Remediation:[/yellow] {error.remediation}", highlight=False)
    if output:
        console.print()
        console.print("[bold]Tool output:[/bold]")
        console.print(output, markup=False, highlight=False)
    if log_path:
        console.print(f"  Log: {log_path}", highlight=False)


def _settings_with(**overrides: Any) -> Settings:
    """Return settings with CLI flag overrides applied (flags > env > defaults)."""
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


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
        _print_json(print_settings_json(settings))
    else:
        release_table = str(settings.release_table) if settings.release_table else "(bundled)"
        run_timeout = str(settings.run_timeout) if settings.run_timeout else "(none)"
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Output directory:    {settings.output_dir}")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Source root:         {settings.source_root}")
        console.print(f"  Database URL:        {settings.effective_db_url}")
        console.print()
        console.print("[bold]Sources:[/bold]")
        console.print(f"  Release table:       {release_table}")
        console.print(f"  URL templates:       {settings.allow_url_templates}")
        console.print(f"  Matched source URL:  {settings.matched_source_url_template}")
        console.print(f"  kernel.org base:     {settings.kernel_org_base}")
        console.print()
        console.print("[bold]Package:[/bold]")
        console.print(f"  Component:           {settings.component}")
        console.print(f"  Architecture:        {settings.arch}")
        console.print(f"  Make jobs:           {settings.make_jobs or '(CPU count)'}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Run timeout:         {run_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


@app.command()
def build(
    target_version: Annotated[
        str,
        typer.Argument(help="Unraid version to build against", envvar="UNRAID_VERSION"),
    ],
    plugin_version: Annotated[
        str,
        typer.Option("--plugin-version", "-p", help="Package version", envvar="PLUGIN_VERSION"),
    ] = "1.0.0",
    url: Annotated[
        str | None,
        typer.Option("--url", help="Explicit release archive URL"),
    ] = None,
    source_root: Annotated[
        Path | None,
        typer.Option("--source-root", help="Directory with upstream/ and src/"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Where to write the package"),
    ] = None,
    cache_dir: Annotated[
        Path | None,
        typer.Option("--cache-dir", help="Cache directory"),
    ] = None,
    timeout: Annotated[
        int | None,
        typer.Option("--timeout", help="Overall run timeout in seconds"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build the module package for an Unraid release."""
    from unraid_kmod.fetch import create_client
    from unraid_kmod.pipeline import BuildRequest, PipelineContext, run_pipeline

    try:
        settings = _settings_with(
            source_root=source_root,
            output_dir=output_dir,
            cache_dir=cache_dir,
            run_timeout=timeout,
        )
        target = TargetVersion(version=target_version, url_override=url)
    except ValueError as e:
        console.print(f"[red]Invalid arguments: {e}[/red]")
        raise typer.Exit(code=1) from None

    request = BuildRequest(
        target=target,
        plugin_version=plugin_version,
        source_root=settings.source_root,
        output_dir=settings.output_dir,
    )

    if not json_output:
        console.print(
            f"[blue]Building {settings.component} {plugin_version} "
            f"for Unraid {target.version}...[/blue]"
        )

    try:
        with create_client() as client:
            ctx = PipelineContext.from_settings(settings, client=client)
            result = run_pipeline(request, ctx)
    except PipelineError as e:
        _report_error(e, json_output)
        raise typer.Exit(code=_exit_code(e)) from None

    package = result.package
    assert package is not None

    if json_output:
        _print_json(json.dumps(result.to_dict(), indent=2))
        return

    for warning in result.warnings:
        console.print(f"[bold yellow]WARNING ({warning.stage}):[/bold yellow] {warning.message}")
    console.print(f"[green]✓ Package created: {package.path}[/green]")
    console.print(f"  Kernel version: {result.kernel_version}")
    console.print(f"  Configuration:  {result.configuration.tier.value if result.configuration else '-'}")
    console.print(f"  Size:           {_format_size(package.size_bytes)} ({package.size_bytes} bytes)")
    console.print(f"  SHA-256:        {package.sha256}")
    if package.manifest_path:
        console.print(f"  Manifest:       {package.manifest_path}")


@app.command()
def resolve(
    target_version: Annotated[
        str,
        typer.Argument(help="Unraid version", envvar="UNRAID_VERSION"),
    ],
    url: Annotated[
        str | None,
        typer.Option("--url", help="Explicit release archive URL"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Download the release (if needed) and print its kernel version."""
    from unraid_kmod.fetch import create_client
    from unraid_kmod.pipeline import PipelineContext, resolve_only

    try:
        target = TargetVersion(version=target_version, url_override=url)
    except ValueError as e:
        console.print(f"[red]Invalid arguments: {e}[/red]")
        raise typer.Exit(code=1) from None

    try:
        with create_client() as client:
            ctx = PipelineContext.from_settings(get_settings(), client=client)
            result = resolve_only(target, ctx)
    except PipelineError as e:
        _report_error(e, json_output)
        raise typer.Exit(code=_exit_code(e)) from None

    if json_output:
        _print_json(json.dumps(result.to_dict(), indent=2))
    else:
        console.print(str(result.kernel_version))


releases_app = typer.Typer(help="Inspect the release lookup table")
app.add_typer(releases_app, name="releases")


@releases_app.command("list")
def releases_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List versions with known download URLs."""
    from unraid_kmod.release.table import load_release_table

    settings = get_settings()
    try:
        table = load_release_table(settings.release_table)
    except PipelineError as e:
        _report_error(e, json_output)
        raise typer.Exit(code=_exit_code(e)) from None

    if json_output:
        _print_json(table.model_dump_json(indent=2))
        return

    if not table.releases:
        console.print("[yellow]No releases in table[/yellow]")
    else:
        console.print(f"[bold]Found {len(table.releases)} release(s):[/bold]")
        for version in sorted(table.releases):
            console.print(f"  [green]{version}[/green]")
            for mirror in table.releases[version]:
                console.print(f"    {mirror}")
    if table.url_templates:
        state = "enabled" if settings.allow_url_templates else "disabled"
        console.print()
        console.print(f"[bold]URL templates ({state}):[/bold]")
        for template in table.url_templates:
            console.print(f"  {template}")


cache_app = typer.Typer(help="Inspect the artifact cache")
app.add_typer(cache_app, name="cache")


def _open_cache(json_output: bool) -> "CacheStore":
    from unraid_kmod.cache.store import CacheStore

    try:
        return CacheStore.from_settings(get_settings())
    except PipelineError as e:
        _report_error(e, json_output)
        raise typer.Exit(code=_exit_code(e)) from None


@cache_app.command("list")
def cache_list(
    kind: Annotated[
        str | None,
        typer.Option("--kind", "-k", help="Filter by kind (release-archive, source-tarball, kernel-tree)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List cache entries."""
    from unraid_kmod.types import CacheKind

    cache_kind = None
    if kind is not None:
        try:
            cache_kind = CacheKind(kind)
        except ValueError:
            console.print(f"[red]Invalid kind: {kind}[/red]")
            console.print("Valid values: " + ", ".join(k.value for k in CacheKind))
            raise typer.Exit(code=1) from None

    store = _open_cache(json_output)
    entries = store.list_entries(cache_kind)

    if json_output:
        output = [
            {
                "key": e.key,
                "kind": e.kind,
                "state": e.state,
                "path": e.path,
                "size_bytes": e.size_bytes,
                "sha256": e.sha256,
                "validated_at": e.validated_at.isoformat() if e.validated_at else None,
            }
            for e in entries
        ]
        _print_json(json.dumps(output, indent=2))
        return

    if not entries:
        console.print("[yellow]Cache is empty[/yellow]")
        return

    console.print(f"[bold]Found {len(entries)} cache entr{'y' if len(entries) == 1 else 'ies'}:[/bold]")
    console.print()
    for e in entries:
        color = "green" if e.is_valid() else "red"
        console.print(f"  [{color}]{e.key}[/{color}] ({e.kind}, {e.state})")
        console.print(f"    Path: {e.path}")
        if e.size_bytes:
            console.print(f"    Size: {_format_size(e.size_bytes)}")


@cache_app.command("verify")
def cache_verify(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Re-validate every cache entry; exit non-zero if any is broken."""
    store = _open_cache(json_output)
    results = store.verify_all()

    if json_output:
        _print_json(json.dumps(results, indent=2))
    elif not results:
        console.print("[yellow]Cache is empty[/yellow]")
    else:
        for key, ok in results.items():
            mark = "[green]✓[/green]" if ok else "[red]✗[/red]"
            console.print(f"  {mark} {key}")

    if not all(results.values()):
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()

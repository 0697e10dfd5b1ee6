"""Command-line interface for Disperse.

Commands:
- run: Process a request body and print the result summary as JSON.
- check: Show which capabilities the permission gate grants for a path.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from . import __version__
from .file_manager import FileManager, RequestError
from .models import ResultSummary
from .permission import PermissionGate
from .settings import load_settings


def _load_settings(settings_path: str | None) -> dict:
    try:
        return load_settings(Path(settings_path) if settings_path else None, project_root=Path.cwd())
    except (OSError, ValueError) as exc:
        raise click.ClickException(f"Unable to read settings: {exc}") from None


@click.group()
@click.version_option(version=__version__, prog_name="disperse")
def cli():
    """Disperse asset finalization engine."""


@cli.command()
@click.argument("request_json", type=click.File("r", encoding="utf-8"))
@click.option(
    "--dir",
    "dirname",
    type=click.Path(file_okay=False),
    required=True,
    help="Output directory",
)
@click.option("--settings", "settings_path", type=click.Path(dir_okay=False), help="Settings file (YAML or JSON)")
@click.option("--empty-dir", is_flag=True, help="Empty output directories before writing")
@click.option("--disk-read", is_flag=True, help="Allow reading local files named by asset URIs")
@click.option("--disk-write", is_flag=True, help="Allow writing anywhere on the local disk")
@click.option("--unc-read", is_flag=True, help="Allow reading from UNC shares")
@click.option("--unc-write", is_flag=True, help="Allow writing to UNC shares")
def run(
    request_json,
    dirname: str,
    settings_path: str | None,
    empty_dir: bool,
    disk_read: bool,
    disk_write: bool,
    unc_read: bool,
    unc_write: bool,
):
    """Process the assets of REQUEST_JSON ('-' reads stdin)."""
    try:
        data = json.load(request_json)
    except ValueError as exc:
        raise click.ClickException(f"Invalid request JSON: {exc}") from None

    settings = _load_settings(settings_path)
    output = Path(dirname).resolve()
    gate = PermissionGate.from_settings(settings)
    for enabled, setter in (
        (disk_read, gate.set_disk_read),
        (disk_write, gate.set_disk_write),
        (unc_read, gate.set_unc_read),
        (unc_write, gate.set_unc_write),
    ):
        if enabled:
            setter()
    if not disk_write and not settings.get("disk_write"):
        # the output directory named on the command line is always writable
        gate.set_disk_write([output.as_posix(), output.as_posix() + "/*"])

    try:
        manager = FileManager.from_request(
            output, data, settings=settings, permission=gate, empty_dir=empty_dir
        )
        summary = asyncio.run(manager.run())
    except RequestError as exc:
        summary = ResultSummary(success=False, error=exc.to_response())

    click.echo(json.dumps(summary.to_dict(), indent=2))
    if not summary.success:
        raise SystemExit(1)


@cli.command()
@click.argument("path")
@click.option("--settings", "settings_path", type=click.Path(dir_okay=False), help="Settings file (YAML or JSON)")
def check(path: str, settings_path: str | None):
    """Show the permission verdicts for PATH."""
    gate = PermissionGate.from_settings(_load_settings(settings_path))
    verdicts = (
        ("disk_read", gate.has_disk_read(path)),
        ("disk_write", gate.has_disk_write(path)),
        ("unc_read", gate.has_unc_read(path)),
        ("unc_write", gate.has_unc_write(path)),
    )
    for name, allowed in verdicts:
        status = click.style("allow", fg="green") if allowed else click.style("deny", fg="red")
        click.echo(f"{name:<11} {status}")


def main():
    """Entry point for the CLI application."""
    cli()

"""modlink CLI: inspect and exercise a linked workspace."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.table import Table

from .console import console
from .engine import ModuleEngine
from .errors import ModuleLinkError
from .identifiers import ResourceIdentifier
from .logging_setup import init_json_logging
from .manifests.schema import ModuleFormat
from .registry.records import UNINITIALIZED
from .settings import load_engine_settings
from .ui.error_display import display_link_error

logger = logging.getLogger(__name__)

FORMAT_CHOICES = [fmt.value for fmt in ModuleFormat]


def _create_engine(root: Path) -> ModuleEngine:
    try:
        settings = load_engine_settings(root)
    except ValidationError as e:
        console.print(f"[red]Error:[/red] Invalid settings: {e}")
        sys.exit(1)
    return ModuleEngine(root, settings=settings)


def _fail(error: Exception, verbose: bool) -> None:
    if not display_link_error(console, error, verbose=verbose):
        console.print(f"[red]Error:[/red] {error}")
        if verbose:
            console.print_exception()
    sys.exit(1)


def _display_path(path: Path, root: Path) -> str:
    try:
        return str(path.relative_to(root)) or "."
    except ValueError:
        return str(path)


@click.group()
@click.version_option(package_name="modlink")
@click.option(
    "--root",
    "-r",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Workspace root directory",
)
@click.option("--log-file", default=None, help="Write JSONL logs to this file (or set MODLINK_LOG_PATH)")
@click.pass_context
def cli(ctx, root: Path, log_file: str | None):
    """modlink - module resolution and linking for multi-package workspaces."""
    ctx.ensure_object(dict)
    ctx.obj["root"] = root.resolve()
    if log_file or os.environ.get("MODLINK_LOG_PATH"):
        init_json_logging(log_file)


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def graph(ctx, verbose: bool):
    """Show workspace packages in build order."""
    root = ctx.obj["root"]
    engine = _create_engine(root)
    try:
        workspace = engine.start()
    except ModuleLinkError as e:
        _fail(e, verbose)

    if not len(workspace):
        console.print(f"[dim]No workspace packages found under {root}[/dim]")
        return

    table = Table(title="Workspace Packages (build order)", show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim")
    table.add_column("Name", style="green")
    table.add_column("Version", style="yellow")
    table.add_column("Format", style="magenta")
    table.add_column("Links")
    table.add_column("Root", style="cyan")

    for index, name in enumerate(workspace.build_order, start=1):
        node = workspace.node(name)
        table.add_row(
            str(index),
            name,
            node.manifest.version,
            node.manifest.declared_format.value,
            ", ".join(node.links) or "-",
            _display_path(node.root, root),
        )
    console.print(table)


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def check(ctx, verbose: bool):
    """Validate manifests, workspace links and package entry points."""
    root = ctx.obj["root"]
    engine = _create_engine(root)
    try:
        workspace = engine.start()
        for name in workspace.build_order:
            manifest = workspace.node(name).manifest
            identifier = engine.resolve(name, format=manifest.declared_format, package=name)
            console.print(f"[green]✓[/green] {name}@{manifest.version} -> {_display_path(identifier.as_path(), root)}")
    except ModuleLinkError as e:
        _fail(e, verbose)

    console.print(f"[green]✓ {len(workspace)} package(s) OK[/green]")


@cli.command()
@click.argument("specifier")
@click.option(
    "--from",
    "from_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Resolve as if imported from this file",
)
@click.option("--format", "format_name", type=click.Choice(FORMAT_CHOICES), default=None, help="Requesting format")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def resolve(ctx, specifier: str, from_file: Path | None, format_name: str | None, as_json: bool, verbose: bool):
    """Resolve SPECIFIER to a canonical identifier."""
    root = ctx.obj["root"]
    engine = _create_engine(root)
    importer = ResourceIdentifier.from_path(from_file) if from_file else None
    fmt = ModuleFormat(format_name) if format_name else None

    try:
        identifier = engine.resolve(specifier, importer, fmt)
        resolved_format = engine.format_for(identifier)
    except ModuleLinkError as e:
        if as_json:
            click.echo(json.dumps(e.to_dict(), indent=2))
            sys.exit(1)
        _fail(e, verbose)

    if as_json:
        click.echo(json.dumps({"specifier": specifier, "id": identifier.href, "format": resolved_format.value}, indent=2))
        return
    console.print(f"{specifier} -> [cyan]{identifier.href}[/cyan] [dim]({resolved_format.value})[/dim]")


@cli.command()
@click.argument("entry", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def run(ctx, entry: Path, verbose: bool):
    """Load and evaluate ENTRY, then show its exports."""
    root = ctx.obj["root"]
    engine = _create_engine(root)

    async def _run():
        with engine:
            namespace = await engine.import_module(str(entry.resolve()))
            records = engine.registry.records()
            return namespace, records

    try:
        namespace, records = asyncio.run(_run())
    except ModuleLinkError as e:
        _fail(e, verbose)

    table = Table(title=f"Exports of {_display_path(entry.resolve(), root)}", show_header=True, header_style="bold cyan")
    table.add_column("Name", style="green")
    table.add_column("Value")
    for name, value in namespace.to_dict().items():
        shown = "<uninitialized>" if value is UNINITIALIZED else repr(value)
        table.add_row(name, shown if len(shown) <= 80 else shown[:77] + "...")
    console.print(table)

    evaluated = sum(1 for record in records if not record.synthetic)
    console.print(f"[dim]{evaluated} module(s) linked[/dim]")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()

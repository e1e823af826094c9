"""Main CLI entry point for ThreatVault."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from threatvault import __version__
from threatvault.bundles import BundleExporter, BundleValidator, ImportCoordinator, ImportProgressStreamer
from threatvault.config.loader import ThreatVaultConfig, load_config
from threatvault.core.exceptions import BundleRejectedError, ConfigurationError, ThreatVaultError
from threatvault.core.models import CollectionResult, ImportCategories, ImportOptions, VersionedObject
from threatvault.core.types import ForceImport
from threatvault.store import create_store

# Load environment variables from .env file
load_dotenv()

console = Console()


def _load_config(ctx: click.Context) -> ThreatVaultConfig:
    try:
        return load_config(ctx.obj["config"])
    except ConfigurationError as e:
        raise click.ClickException(e.message)


def _read_bundle(bundle_file: str) -> Any:
    try:
        with open(bundle_file, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{bundle_file} is not valid JSON: {e}")


def _validator(config: ThreatVaultConfig) -> BundleValidator:
    return BundleValidator(
        system_spec_version=config.attack.spec_version,
        default_object_spec_version=config.attack.default_object_spec_version,
    )


def _categories_table(categories: ImportCategories) -> Table:
    table = Table(title="Import Categories")
    table.add_column("Category", style="cyan")
    table.add_column("Objects", justify="right")
    table.add_row("Additions", str(len(categories.additions)))
    table.add_row("Changes", str(len(categories.changes)))
    table.add_row("Duplicates", str(len(categories.duplicates)))
    table.add_row("Errors", str(len(categories.errors)), style="red" if categories.errors else None)
    table.add_row("Warnings", str(len(categories.warnings)), style="yellow" if categories.warnings else None)
    return table


def _print_rejection(exc: BundleRejectedError) -> None:
    body = exc.to_dict()
    flags = [name for name, value in body["bundleErrors"].items() if value]
    counts = {name: value for name, value in body["objectErrors"]["summary"].items() if value}
    lines = [f"[red]{exc.message}[/red]"]
    if flags:
        lines.append(f"Bundle errors: {', '.join(flags)}")
    if counts:
        lines.append("Object errors: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
    console.print(Panel("\n".join(lines), title="Bundle rejected", border_style="red"))


@click.group()
@click.version_option(version=__version__, prog_name="ThreatVault")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output"
)
@click.option(
    "--config",
    "-c",
    default="~/.threatvault/config.yaml",
    help="Configuration file path",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config: str) -> None:
    """ThreatVault: versioned ATT&CK/STIX object vault.

    Imports and exports STIX collection bundles, classifying every incoming
    object as an addition, change, duplicate or error before writing.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = config

    if verbose:
        logging.basicConfig(level=logging.DEBUG)
        console.print(f"[green]ThreatVault v{__version__}[/green]")
        console.print(f"[dim]Config: {config}[/dim]")


@cli.command()
@click.argument("bundle_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def validate(ctx: click.Context, bundle_file: str) -> None:
    """Validate a collection bundle without touching the store."""
    config = _load_config(ctx)
    bundle = _read_bundle(bundle_file)

    try:
        result = _validator(config).validate(bundle)
    except BundleRejectedError as e:
        _print_rejection(e)
        ctx.exit(1)

    table = Table(title=f"Validation: {Path(bundle_file).name}")
    table.add_column("Check", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Objects", str(len(result.objects)))
    table.add_row("Duplicate objects in bundle", str(result.summary.duplicate_object_in_bundle_count))
    table.add_row("Invalid ATT&CK spec versions", str(result.summary.invalid_attack_spec_version_count))
    table.add_row("Missing ATT&CK spec versions", str(result.summary.missing_attack_spec_version_count))
    console.print(table)

    if result.errors:
        for entry in result.errors:
            console.print(f"[red]{entry.error_type}[/red] {entry.object_ref} ({entry.object_modified})")
        ctx.exit(1)
    console.print("[green]Bundle is valid[/green]")


@cli.command(name="import")
@click.argument("bundle_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--check-only", is_flag=True, help="Classify objects without writing")
@click.option("--preview-only", is_flag=True, help="Classify objects without writing")
@click.option(
    "--force-import",
    "force_import",
    multiple=True,
    type=click.Choice([f.value for f in ForceImport] + ["all"]),
    help="Override a violation class (repeatable)",
)
@click.option("--stream", is_flag=True, help="Show per-object progress")
@click.pass_context
def import_bundle(
    ctx: click.Context,
    bundle_file: str,
    check_only: bool,
    preview_only: bool,
    force_import: Tuple[str, ...],
    stream: bool,
) -> None:
    """Import a collection bundle into the vault."""
    config = _load_config(ctx)
    bundle = _read_bundle(bundle_file)
    options = ImportOptions(
        check_only=check_only,
        preview_only=preview_only,
        force_import=ForceImport.parse(force_import),
    )

    if config.database.backend == "memory" and not options.dry_run:
        console.print("[yellow]Using the in-memory store: imported objects are not persisted[/yellow]")

    try:
        result = asyncio.run(_run_import(config, bundle, options, stream))
    except BundleRejectedError as e:
        _print_rejection(e)
        ctx.exit(1)
    except ThreatVaultError as e:
        console.print(f"[red]Import failed:[/red] {e.message}")
        ctx.exit(1)

    collection = result.collection
    verb = "Checked" if options.dry_run else "Imported"
    console.print(f"[green]{verb} collection[/green] {collection.stix.get('name', collection.stix_id)} "
                  f"[dim]({collection.modified})[/dim]")
    console.print(_categories_table(result.categories))


async def _run_import(
    config: ThreatVaultConfig,
    bundle: Any,
    options: ImportOptions,
    stream: bool,
) -> CollectionResult:
    async with create_store(config.database) as store:
        coordinator = ImportCoordinator(store, validator=_validator(config))
        if not stream:
            return await coordinator.import_bundle(bundle, options)

        streamer = ImportProgressStreamer(coordinator, progress_every=config.imports.progress_every)
        outcome: Optional[Dict[str, Any]] = None
        async for event in streamer.stream(bundle, options):
            if event.terminal:
                outcome = event.data
            else:
                data = event.data
                console.print(
                    f"[dim]{data['percentage']:5.1f}%[/dim] {data['phase']} "
                    f"{data['processed']}/{data['total']} {data.get('object_ref') or ''} "
                    f"{data.get('category') or ''}"
                )

        if outcome is None or "result" not in outcome:
            raise ThreatVaultError((outcome or {}).get("error", "Import did not complete"))
        return CollectionResult(
            collection=VersionedObject.from_dict(outcome["result"]),
            categories=ImportCategories.from_dict(outcome["categories"]),
            committed=not options.dry_run,
        )


@cli.command()
@click.argument("collection_id")
@click.option("--modified", "collection_modified", help="Collection revision (defaults to latest)")
@click.option("--include-notes", is_flag=True, help="Include notes about exported objects")
@click.option("--preview-only", is_flag=True, help="Do not record the export on the collection")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the bundle to a file")
@click.pass_context
def export(
    ctx: click.Context,
    collection_id: str,
    collection_modified: Optional[str],
    include_notes: bool,
    preview_only: bool,
    output: Optional[str],
) -> None:
    """Export a collection as a STIX bundle."""
    config = _load_config(ctx)

    async def run() -> Dict[str, Any]:
        async with create_store(config.database) as store:
            exporter = BundleExporter(store, ics_data_sources=config.attack.ics_data_sources)
            return await exporter.export_collection(
                collection_id,
                collection_modified,
                include_notes=include_notes,
                preview_only=preview_only,
            )

    try:
        bundle = asyncio.run(run())
    except ThreatVaultError as e:
        console.print(f"[red]Export failed:[/red] {e.message}")
        ctx.exit(1)

    payload = json.dumps(bundle, indent=2)
    if output:
        Path(output).write_text(payload, encoding="utf-8")
        console.print(f"[green]Wrote {len(bundle['objects'])} objects to {output}[/green]")
    else:
        click.echo(payload)


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to api.host)")
@click.option("--port", default=None, type=int, help="Port (defaults to api.port)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the ThreatVault REST API."""
    import uvicorn

    from threatvault.api.main import create_app
    from threatvault.config.loader import setup_logging

    config = _load_config(ctx)
    setup_logging(config)
    uvicorn.run(create_app(config), host=host or config.api.host, port=port or config.api.port)


def main() -> int:
    """Main entry point for the CLI."""
    try:
        cli()
        return 0
    except KeyboardInterrupt:
        console.print("\n[red]Operation cancelled by user[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""
Command-line interface for relmap.

Provides entity, discover, query, analyze and export commands for runtime
relationship discovery against a Web API.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
import pandas as pd
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from relmap import __version__
from relmap.config import DiscoveryConfig
from relmap.discovery.strategies import PatternStrategy
from relmap.exceptions import ConfigError
from relmap.models import ColumnDescriptor, Confidence, DiscoveredRelationship
from relmap.session import DiscoverySession

console = Console()

CONFIDENCE_STYLES = {"high": "green", "medium": "yellow", "low": "red"}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with Rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _config(ctx: click.Context) -> DiscoveryConfig:
    """Load config once per invocation, turning config errors into CLI errors."""
    if "config" not in ctx.obj:
        try:
            config = DiscoveryConfig.load(ctx.obj.get("config_path"))
            if ctx.obj.get("base_url"):
                config.base_url = ctx.obj["base_url"]
            config.require_base_url()
        except ConfigError as e:
            raise click.ClickException(str(e))
        ctx.obj["config"] = config
    return ctx.obj["config"]


def _session(ctx: click.Context) -> DiscoverySession:
    return DiscoverySession(_config(ctx), transport=ctx.obj.get("transport"))


def _relationship_table(title: str, relationships: List[DiscoveredRelationship]) -> Table:
    table = Table(title=title)
    table.add_column("Parent", style="cyan")
    table.add_column("Child", style="yellow")
    table.add_column("Lookup Column", style="green")
    table.add_column("Display Name")
    table.add_column("Confidence")
    table.add_column("Source", style="blue")

    for rel in relationships:
        style = CONFIDENCE_STYLES[rel.confidence.value]
        table.add_row(
            rel.parent_entity,
            rel.child_entity,
            rel.lookup_column,
            rel.display_name,
            f"[{style}]{rel.confidence.value}[/{style}]",
            rel.source.value,
        )
    return table


@click.group()
@click.version_option(version=__version__, prog_name="relmap")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="YAML config file (RELMAP_* environment variables override it)",
)
@click.option("--base_url", type=str, default=None, help="Web API base URL (overrides config)")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Optional[Path], base_url: Optional[str]) -> None:
    """
    relmap - Runtime relationship discovery for Web API entities

    Finds which lookup column links two entities from live metadata and
    builds the filtered list queries that use it.
    """
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["base_url"] = base_url


@cli.command()
@click.argument("entity_name")
@click.option("--bulk", is_flag=True, help="Fetch lookup targets with a single request")
@click.pass_context
def entity(ctx: click.Context, entity_name: str, bulk: bool) -> None:
    """
    Show the lookup attributes of an entity and their targets.

    Example:

        relmap entity contact
    """
    session = _session(ctx)
    session.resolver.bulk_lookups = bulk or session.resolver.bulk_lookups

    async def run():
        async with session:
            return await session.resolver.fetch(entity_name)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task(f"Resolving metadata for {entity_name}...", total=None)
        resolution = asyncio.run(run())
        progress.update(task, completed=True)

    if not resolution.ok:
        console.print(f"[red]Could not resolve {entity_name}: {resolution.failure.value} ({resolution.detail})[/red]")
        sys.exit(1)

    metadata = resolution.value
    info_table = Table(title="Entity Details")
    info_table.add_column("Property", style="cyan")
    info_table.add_column("Value", style="green")
    info_table.add_row("Logical Name", metadata.logical_name)
    info_table.add_row("Display Name", metadata.display_name)
    info_table.add_row("Collection", metadata.entity_set_name)
    info_table.add_row("Primary Key", metadata.primary_id_attribute or "N/A")
    info_table.add_row("Lookups", str(len(metadata.lookup_attributes)))
    console.print(info_table)

    if metadata.lookup_attributes:
        lookup_table = Table(title="Lookup Attributes")
        lookup_table.add_column("Attribute", style="cyan")
        lookup_table.add_column("Lookup Column", style="green")
        lookup_table.add_column("Targets", style="yellow")
        for attr in metadata.lookup_attributes:
            lookup_table.add_row(
                attr.logical_name,
                attr.lookup_field_name,
                ", ".join(attr.targets) if attr.targets else "-",
            )
        console.print(lookup_table)


@cli.command()
@click.argument("parent")
@click.argument("child")
@click.option("--record_id", type=str, default=None, help="Parent record id to build a filter for")
@click.option(
    "--definitions",
    is_flag=True,
    help="Also consult published relationship definitions",
)
@click.pass_context
def discover(
    ctx: click.Context,
    parent: str,
    child: str,
    record_id: Optional[str],
    definitions: bool,
) -> None:
    """
    Discover the lookup column linking PARENT to CHILD.

    Examples:

        relmap discover account contact

        relmap discover account contact --record_id 0b5f6c1e-...
    """
    if definitions:
        _config(ctx).use_relationship_definitions = True
    session = _session(ctx)

    async def run():
        async with session:
            return await session.discoverer.discover(parent, child)

    relationship = asyncio.run(run())
    if relationship is None:
        console.print(f"\n[yellow]No relationship found between {parent} and {child}.[/yellow]")
        sys.exit(1)

    console.print(_relationship_table("Discovered Relationship", [relationship]))
    if relationship.needs_review:
        console.print("[yellow]Low confidence: guessed from naming conventions, verify before use.[/yellow]")
    if record_id:
        console.print(f"Filter: {session.synthesizer.build_filter(relationship.lookup_column, record_id)}")


@cli.command()
@click.argument("child")
@click.option("--parent", type=str, default=None, help="Parent entity for a related query")
@click.option("--record_id", type=str, default=None, help="Parent record id")
@click.option("--relationship", type=str, default=None, help="Relationship name to map or promote")
@click.option("--top", type=int, default=None, help="Page size ($top)")
@click.option("--select", "select_fields", type=str, default=None, help="Comma-separated extra columns")
@click.option("--view_id", type=str, default=None, help="Saved view id")
@click.option("--execute", is_flag=True, help="Run the query and show the result")
@click.pass_context
def query(
    ctx: click.Context,
    child: str,
    parent: Optional[str],
    record_id: Optional[str],
    relationship: Optional[str],
    top: Optional[int],
    select_fields: Optional[str],
    view_id: Optional[str],
    execute: bool,
) -> None:
    """
    Build (and optionally run) a list query for CHILD.

    Example:

        relmap query contact --parent account --record_id 0b5f6c1e-... --top 10 --execute
    """
    session = _session(ctx)
    select = [s.strip() for s in select_fields.split(",")] if select_fields else None

    async def run():
        async with session:
            list_query = await session.synthesizer.build_list_query_with_discovery(
                child,
                session.discoverer,
                parent_entity=parent,
                relationship_name=relationship,
                parent_record_id=record_id,
                select=select,
                page_size=top,
                view_id=view_id,
            )
            result = await session.executor.execute(list_query, parent) if execute else None
            return list_query, result

    list_query, result = asyncio.run(run())
    console.print(f"[bold]Query:[/bold] {list_query.odata_query}")

    validation = session.synthesizer.validate_query(list_query)
    for error in validation.errors:
        console.print(f"[red]Validation: {error}[/red]")

    if result is None:
        return
    if result.success:
        console.print(f"[green]Retrieved {len(result.entities)} records[/green]")
        if result.next_link:
            console.print(f"Next page: {result.next_link}")
        return

    console.print(f"[red]Query failed: {result.error}[/red]")
    if result.error_analysis:
        console.print(session.analyzer.format_report(result.error_analysis, list_query.odata_query))
    sys.exit(1)


def _parse_column(value: str) -> ColumnDescriptor:
    name, _, data_type = value.partition(":")
    return ColumnDescriptor(name=name.strip(), data_type=data_type.strip() or None)


@cli.command("analyze-columns")
@click.argument("child")
@click.argument("columns", nargs=-1, required=True)
@click.pass_context
def analyze_columns(ctx: click.Context, child: str, columns: Tuple[str, ...]) -> None:
    """
    Find lookup relationships in a column list of CHILD.

    Columns are names, optionally typed as NAME:TYPE.

    Example:

        relmap analyze-columns contact _parentcustomerid_value ownerid:Owner contactid
    """
    session = _session(ctx)
    descriptors = [_parse_column(c) for c in columns]

    async def run():
        async with session:
            return await session.discoverer.infer_from_columns(child, descriptors)

    result = asyncio.run(run())

    lookup_table = Table(title="Potential Lookups")
    lookup_table.add_column("Column", style="cyan")
    lookup_table.add_column("Field", style="green")
    lookup_table.add_column("Note", style="yellow")
    for lookup in result.potential_lookups:
        lookup_table.add_row(lookup.column_name, lookup.field_name, lookup.warning or "")
    console.print(lookup_table)

    if result.discovered_relationships:
        console.print(_relationship_table("Discovered Relationships", result.discovered_relationships))
    else:
        console.print("\n[yellow]No relationships discovered.[/yellow]")


def read_records(path: Path) -> pd.DataFrame:
    """Read sample records from a CSV or JSON file."""
    if path.suffix.lower() == ".json":
        return pd.read_json(path)
    return pd.read_csv(path)


@cli.command("analyze-records")
@click.argument("child")
@click.argument("records_file", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def analyze_records(ctx: click.Context, child: str, records_file: Path) -> None:
    """
    Infer relationships from sample records of CHILD (CSV or JSON).

    Example:

        relmap analyze-records contact ./samples/contacts.json
    """
    records = read_records(records_file)
    console.print(f"Loaded {len(records)} records with {len(records.columns)} columns")
    session = _session(ctx)

    async def run():
        async with session:
            return await session.discoverer.infer_from_records(child, records)

    relationships = asyncio.run(run())
    if relationships:
        console.print(_relationship_table("Inferred Relationships", relationships))
    else:
        console.print("\n[yellow]No relationships inferred.[/yellow]")


@cli.command()
@click.argument("parent")
def patterns(parent: str) -> None:
    """
    List the naming-convention lookup columns tried for PARENT.

    No network access is needed.
    """
    table = Table(title=f"Candidate Lookup Columns for {parent}")
    table.add_column("#", justify="right")
    table.add_column("Lookup Column", style="green")
    for i, candidate in enumerate(PatternStrategy.candidate_lookup_columns(parent), 1):
        table.add_row(str(i), candidate)
    console.print(table)


@cli.command()
@click.option(
    "--pair",
    "pairs",
    type=str,
    multiple=True,
    required=True,
    help="PARENT:CHILD pair to discover (repeatable)",
)
@click.option(
    "--min_confidence",
    type=click.Choice([c.value for c in Confidence]),
    default=None,
    help="Lowest confidence to export (defaults to the configured threshold)",
)
@click.option(
    "--output",
    type=click.Path(path_type=Path),
    default=None,
    help="Output path for the mappings YAML (stdout if omitted)",
)
@click.pass_context
def export(
    ctx: click.Context,
    pairs: Tuple[str, ...],
    min_confidence: Optional[str],
    output: Optional[Path],
) -> None:
    """
    Discover relationships for entity pairs and export them as mappings.

    Example:

        relmap export --pair account:contact --pair contact:incident --output mappings.yaml
    """
    parsed = []
    for pair in pairs:
        parent, sep, child = pair.partition(":")
        if not sep or not parent or not child:
            raise click.BadParameter(f"Expected PARENT:CHILD, got {pair!r}", param_hint="--pair")
        parsed.append((parent, child))

    session = _session(ctx)
    threshold = Confidence(min_confidence) if min_confidence else session.config.export_min_confidence

    async def run():
        async with session:
            for parent, child in parsed:
                await session.discoverer.discover(parent, child)
            return session.discoverer.export_discovered_mappings(threshold)

    document = asyncio.run(run())

    if output:
        with open(output, "w") as f:
            f.write(document)
        console.print(f"\n[green]Saved mappings to: {output}[/green]")
    else:
        click.echo(document)


if __name__ == "__main__":
    cli()

"""Main CLI entry point for the schema engine.

Loads package documents and runs validation, unification, transition and
drift queries from the command line.
"""

import json
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from schema_engine import __version__, api
from schema_engine.cli.console import ConsoleSession
from schema_engine.config.logging import configure_logging
from schema_engine.config.settings import EngineSettings, load_settings
from schema_engine.errors import (
    ConflictError,
    DriftError,
    PackageLoadError,
    SchemaEngineError,
    TransitionError,
    UnknownReferenceError,
    UnknownStateError,
)
from schema_engine.generators.sample_generator import SampleGenerator, transition_cases
from schema_engine.packages.base import Graph
from schema_engine.packages.drift import DriftStatus
from schema_engine.packages.registry import GraphRegistry
from schema_engine.schemas.canonical import to_document

console = Console()
err_console = Console(stderr=True)

STATUS_COLORS = {
    DriftStatus.UNCHANGED: "dim",
    DriftStatus.WIDENED: "green",
    DriftStatus.NARROWED: "yellow",
    DriftStatus.NARROWED_INCOMPATIBLE: "red",
    DriftStatus.REMOVED: "red",
}


@click.group()
@click.version_option(version=__version__, prog_name="schema-engine")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--log-json", is_flag=True, help="Emit logs as JSON lines on stderr")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Settings YAML file")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, log_json: bool, config_path: str | None) -> None:
    """Schema Engine - compose, validate and drift-check declarative schemas.

    Package documents (YAML or JSON) declare types and state machines;
    every command loads them from the PATHS given.
    """
    ctx.ensure_object(dict)
    try:
        settings = load_settings(config_path)
    except (ValueError, FileNotFoundError) as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(2)
    configure_logging(verbose=verbose, log_json=log_json or settings.log_json)
    ctx.obj["verbose"] = verbose
    ctx.obj["settings"] = settings


def _settings(ctx: click.Context) -> EngineSettings:
    return ctx.obj.get("settings") or EngineSettings()


def _load(ctx: click.Context, paths: tuple[str, ...], lenient: bool = False) -> Graph:
    """Load packages or exit 1 after listing every load error."""
    try:
        return api.load_packages(paths, _settings(ctx), lenient=lenient)
    except PackageLoadError as e:
        _print_load_errors(e.errors)
        sys.exit(1)


def _print_load_errors(errors: list[SchemaEngineError]) -> None:
    err_console.print(f"[red]Failed to load packages ({len(errors)} error(s)):[/red]")
    for e in errors:
        kind = type(e).__name__
        err_console.print(f"  [red]{kind}[/red] {e}")
        if e.location.source_file:
            err_console.print(f"    File: {e.location.source_file}")


def _read_data(data: str | None, data_file: str | None) -> Any:
    if data is not None and data_file is not None:
        raise click.UsageError("Use either --data or --data-file, not both")
    if data_file is not None:
        content = Path(data_file).read_text()
        try:
            if data_file.endswith(".json"):
                return json.loads(content)
            return yaml.safe_load(content)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise click.BadParameter(f"cannot parse {data_file}: {e}", param_hint="--data-file")
    if data is None:
        raise click.UsageError("One of --data or --data-file is required")
    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--data")


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.pass_context
def check(ctx: click.Context, paths: tuple[str, ...]) -> None:
    """Load packages and report every load-time error.

    PATHS are package files or directories.
    """
    graph = _load(ctx, paths)

    table = Table(title="Loaded Packages")
    table.add_column("Package", style="cyan")
    table.add_column("Imports")
    table.add_column("Definitions", justify="right")
    table.add_column("Machines", justify="right")
    table.add_column("Source")

    for package in graph:
        table.add_row(
            package.name,
            ", ".join(package.imports) or "-",
            str(len(package.definitions)),
            str(len(package.machines)),
            package.source_file or "-",
        )

    console.print(table)
    console.print(f"[green]OK[/green] {len(graph)} package(s), {len(graph.references)} cross-package reference(s)")


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--type", "-t", "type_ref", required=True, help="Type to validate against (package.Name)")
@click.option("--data", "-d", help="Value as JSON")
@click.option("--data-file", "-f", type=click.Path(exists=True, dir_okay=False), help="Value as a JSON/YAML file")
@click.option("--timeout", type=float, help="Validation deadline in seconds")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def validate(
    ctx: click.Context,
    paths: tuple[str, ...],
    type_ref: str,
    data: str | None,
    data_file: str | None,
    timeout: float | None,
    as_json: bool,
) -> None:
    """Validate a value against a type.

    Exits 1 if the value has any violation.
    """
    value = _read_data(data, data_file)
    graph = _load(ctx, paths)

    try:
        result = api.validate(graph, type_ref, value, timeout=timeout, settings=_settings(ctx))
    except UnknownReferenceError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except ValueError as e:
        err_console.print(f"[red]Invalid value: {e}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _print_validation_result(type_ref, result)
    if not result.accepted:
        sys.exit(1)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.argument("left")
@click.argument("right")
@click.pass_context
def unify(ctx: click.Context, paths: tuple[str, ...], left: str, right: str) -> None:
    """Unify two types and print the result.

    LEFT and RIGHT are type names (package.Name). Exits 1 on a conflict.
    """
    graph = _load(ctx, paths)
    try:
        result = api.unify(graph, left, right)
    except ConflictError as e:
        where = f" at {e.path}" if e.path else ""
        err_console.print(f"[red]Conflict{where}:[/red] {e.message}")
        sys.exit(1)
    except UnknownReferenceError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    click.echo(yaml.safe_dump(to_document(result), default_flow_style=False, sort_keys=False).rstrip())


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.argument("machine")
@click.argument("state")
@click.option("--to", "target", help="Check a single transition instead of listing targets")
@click.option("--allow-self-loop/--no-allow-self-loop", default=None, help="Override the self-loop policy")
@click.pass_context
def transitions(
    ctx: click.Context,
    paths: tuple[str, ...],
    machine: str,
    state: str,
    target: str | None,
    allow_self_loop: bool | None,
) -> None:
    """List the states MACHINE may move to from STATE.

    With --to, exits 1 unless STATE may move to that state.
    """
    graph = _load(ctx, paths)
    if target is not None:
        try:
            api.check_transition(graph, machine, state, target, allow_self_loop, _settings(ctx))
        except UnknownReferenceError as e:
            err_console.print(f"[red]Error: {e}[/red]")
            sys.exit(1)
        except TransitionError as e:
            console.print(f"[red]REJECTED[/red] {state} -> {target}: {e.reason}")
            sys.exit(1)
        console.print(f"[green]ALLOWED[/green] {state} -> {target}")
        return

    try:
        targets = api.transitions(graph, machine, state, allow_self_loop, _settings(ctx))
    except (UnknownReferenceError, UnknownStateError) as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if not targets:
        console.print(f"[yellow]{state}[/yellow] is a terminal state")
        return
    for target in targets:
        click.echo(target)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.argument("machine")
@click.option("--allow-self-loop/--no-allow-self-loop", default=None, help="Override the self-loop policy")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write labelled test cases as JSON")
@click.pass_context
def matrix(
    ctx: click.Context,
    paths: tuple[str, ...],
    machine: str,
    allow_self_loop: bool | None,
    output: str | None,
) -> None:
    """Show every (from, to) pair of MACHINE as allowed or rejected."""
    graph = _load(ctx, paths)
    try:
        result = api.enumerate_transition_matrix(graph, machine, allow_self_loop, _settings(ctx))
    except UnknownReferenceError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    if output:
        cases = transition_cases(result)
        Path(output).write_text(json.dumps(
            [{**record.data, "name": record.metadata["name"]} for record in cases],
            indent=2,
        ))
        console.print(f"[green]Wrote {len(cases)} transition cases to {output}[/green]")
        return

    valid = set(result.valid)
    table = Table(title=f"Transitions: {result.machine}")
    table.add_column("From", style="cyan")
    table.add_column("To", style="cyan")
    table.add_column("Allowed")
    for source, target in result.valid + result.invalid:
        allowed = (source, target) in valid
        table.add_row(source, target, "[green]yes[/green]" if allowed else "[red]no[/red]")
    console.print(table)
    console.print(f"{len(result.valid)} allowed, {len(result.invalid)} rejected")


@cli.command()
@click.option("--old", "old_paths", multiple=True, required=True, type=click.Path(exists=True),
              help="Packages as they were (repeatable)")
@click.option("--new", "new_paths", multiple=True, required=True, type=click.Path(exists=True),
              help="Packages as they are now (repeatable)")
@click.option("--strict", is_flag=True, help="Also fail when a base narrowed compatibly")
@click.option("--json", "as_json", is_flag=True, help="Print reports as JSON")
@click.option("--all", "show_all", is_flag=True, help="Include unchanged references")
@click.pass_context
def drift(
    ctx: click.Context,
    old_paths: tuple[str, ...],
    new_paths: tuple[str, ...],
    strict: bool,
    as_json: bool,
    show_all: bool,
) -> None:
    """Check whether changed base packages still suit their dependents.

    Exits 1 when any dependent reference is narrowed_incompatible or removed.
    """
    old = _load(ctx, old_paths)
    new = _load(ctx, new_paths, lenient=True)

    try:
        reports = api.check_drift(old, new, strict=True)
        failed = False
    except DriftError as e:
        reports = e.reports
        failed = True
    if strict and any(r.status == DriftStatus.NARROWED for r in reports):
        failed = True

    shown = reports if show_all else [r for r in reports if r.status != DriftStatus.UNCHANGED]
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in shown], indent=2))
    elif not shown:
        console.print(f"[green]No drift[/green] across {len(reports)} reference(s)")
    else:
        table = Table(title="Drift Report")
        table.add_column("Dependent", style="cyan")
        table.add_column("Path")
        table.add_column("Reference", style="cyan")
        table.add_column("Status")
        table.add_column("Changed")
        table.add_column("Detail")
        for report in shown:
            color = STATUS_COLORS[report.status]
            table.add_row(
                f"{report.package}.{report.definition}",
                report.path or "-",
                report.reference,
                f"[{color}]{report.status.value}[/{color}]",
                report.changed or "-",
                report.message or "-",
            )
        console.print(table)

    if failed:
        sys.exit(1)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--type", "-t", "type_ref", required=True, help="Type to sample (package.Name)")
@click.option("--count", "-n", type=int, default=5, help="Number of samples")
@click.option("--seed", "-s", type=int, help="Random seed")
@click.option("--pretty", is_flag=True, help="Pretty print JSON output")
@click.pass_context
def sample(
    ctx: click.Context,
    paths: tuple[str, ...],
    type_ref: str,
    count: int,
    seed: int | None,
    pretty: bool,
) -> None:
    """Generate example values of a type as a JSON array."""
    graph = _load(ctx, paths)
    try:
        dataset = SampleGenerator(graph, seed=seed).generate(type_ref, count=count)
    except UnknownReferenceError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    invalid = [r for r in dataset if not r.valid]
    if invalid:
        err_console.print(f"[yellow]{len(invalid)} of {dataset.total_count} sample(s) do not validate[/yellow]")
        if ctx.obj.get("verbose"):
            for record in invalid:
                for violation in record.violations:
                    err_console.print(f"  #{record.sequence_number} {violation['path'] or '<root>'}: {violation['message']}")

    click.echo(json.dumps([r.data for r in dataset], indent=2 if pretty else None, default=str))


@cli.command(name="console")
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.pass_context
def console_command(ctx: click.Context, paths: tuple[str, ...]) -> None:
    """Answer JSON-lines requests on stdin until end of input.

    Send {"type": "evaluate", "data": {"expr": {"op": "reload"}}} to pick up
    changed package files.
    """
    registry = GraphRegistry(paths, _settings(ctx))
    result = registry.reload()
    if not result.swapped:
        _print_load_errors(result.errors)
        sys.exit(1)

    session = ConsoleSession(registry)
    session.run(click.get_text_stream("stdin"), click.get_text_stream("stdout"))


def _print_validation_result(type_ref: str, result: Any) -> None:
    """Print validation results."""
    if result.accepted:
        console.print(Panel.fit(f"[green]VALID[/green] against {type_ref}", title="Validation"))
        return

    console.print(f"\n{type_ref}: [red]INVALID[/red] ({len(result.violations)} violation(s))")
    table = Table()
    table.add_column("Path", style="cyan")
    table.add_column("Rule")
    table.add_column("Severity")
    table.add_column("Message")
    for violation in result.violations:
        color = {
            "data": "red",
            "schema": "magenta",
            "timeout": "yellow",
        }.get(violation.severity.value, "white")
        table.add_row(
            violation.path or "<root>",
            violation.rule,
            f"[{color}]{violation.severity.value}[/{color}]",
            violation.message,
        )
    console.print(table)


if __name__ == "__main__":
    cli()

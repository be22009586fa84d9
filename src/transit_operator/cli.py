"""Transit operator CLI (tgo).

Usage:
    tgo plan                 # Show what apply would change
    tgo apply                # Converge the remote system to the declarations
    tgo apply --dry-run      # Same as plan, through the apply path
    tgo prune --confirm      # Delete resources no longer declared
    tgo state                # Print recorded resources
    tgo graph                # Print the apply batches

Options default to the environment variables read by the operator
(TOPOLOGY_SPEC, STATE_FILE, AWS_REGION, ...).
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from .aws_provider import Ec2Provider
from .config import Config, ConfigurationError
from .dependency import GraphError, build_graph
from .main import EXIT_FAILURE, EXIT_GRAPH_ERROR, setup_logging
from .provider import ProviderAdapter
from .reconciler import NodeAction, Reconciler
from .resources import NodeState, render_references
from .scheduler import ApplyPlan, schedule
from .spec_loader import SpecLoadError, load_declarations
from .state import JsonFileStateStore, MemoryStateStore, StateStoreError

ACTION_SYMBOLS = {
    NodeAction.CREATE: "+",
    NodeAction.UPDATE: "~",
    NodeAction.REPLACE: "-/+",
    NodeAction.NOOP: "=",
    NodeAction.DELETE: "-",
}

STATE_SYMBOLS = {
    NodeState.APPLIED: "ok",
    NodeState.FAILED: "FAILED",
    NodeState.SKIPPED: "skipped",
}


def make_provider(region: str) -> ProviderAdapter:
    """Provider used by apply and prune."""
    return Ec2Provider(region)


def _load_config(ctx: click.Context, **overrides: Any) -> Config:
    options = {key: value for key, value in ctx.obj.items() if value is not None}
    options.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return dataclasses.replace(Config.from_env(), **options)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _load_plan(config: Config) -> ApplyPlan:
    try:
        return schedule(build_graph(load_declarations(config.spec_file, config.region)))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e
    except GraphError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_GRAPH_ERROR)


def _load_state(config: Config, *, read_only: bool = False) -> MemoryStateStore:
    try:
        store = JsonFileStateStore(config.state_file)
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e
    return MemoryStateStore(store.snapshot()) if read_only else store


@click.group()
@click.version_option(version="0.1.0", prog_name="tgo")
@click.option(
    "--spec",
    "spec_file",
    type=click.Path(path_type=Path, dir_okay=False),
    help="Declaration file (default: $TOPOLOGY_SPEC or ./topology.yaml)",
)
@click.option(
    "--state",
    "state_file",
    type=click.Path(path_type=Path, dir_okay=False),
    help="State document (default: $STATE_FILE)",
)
@click.option("--region", help="AWS region (default: $AWS_REGION or eu-north-1)")
@click.option("--verbose", "-v", is_flag=True, help="Emit JSON logs on stdout")
@click.pass_context
def cli(
    ctx: click.Context,
    spec_file: Path | None,
    state_file: Path | None,
    region: str | None,
    verbose: bool,
) -> None:
    """Transit operator - declarative transit gateway topologies.

    \b
    Quick start:
      tgo graph             # Check the declarations and show apply order
      tgo plan              # Preview changes
      tgo apply             # Apply
    """
    ctx.ensure_object(dict)
    ctx.obj.update(spec_file=spec_file, state_file=state_file, region=region)
    if verbose:
        setup_logging(logging.INFO)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def plan(ctx: click.Context, as_json: bool) -> None:
    """Show the changes apply would make, without calling AWS."""
    config = _load_config(ctx)
    apply_plan = _load_plan(config)
    state = _load_state(config, read_only=True)

    changes = Reconciler(config).plan_changes(apply_plan, state)

    if as_json:
        click.echo(
            json.dumps(
                [
                    {"name": c.name, "kind": c.kind, "action": c.action.value, "reason": c.reason}
                    for c in changes
                ],
                indent=2,
            )
        )
        return

    for change in changes:
        symbol = ACTION_SYMBOLS[change.action]
        click.echo(f"{symbol:>3} {change.name} ({change.kind}): {change.reason}")

    counts = {action: sum(c.action == action for c in changes) for action in NodeAction}
    click.echo(
        f"\nPlan: {counts[NodeAction.CREATE]} to create, {counts[NodeAction.UPDATE]} to update, "
        f"{counts[NodeAction.REPLACE]} to replace, {counts[NodeAction.DELETE]} to delete, "
        f"{counts[NodeAction.NOOP]} unchanged."
    )


@cli.command()
@click.option("--dry-run", is_flag=True, help="Plan only, no remote changes")
@click.option("--workers", "-w", type=int, help="Concurrent provider calls per batch")
@click.option("--confirm-deletions", is_flag=True, help="Delete orphaned resources")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable result")
@click.pass_context
def apply(
    ctx: click.Context,
    dry_run: bool,
    workers: int | None,
    confirm_deletions: bool,
    as_json: bool,
) -> None:
    """Converge AWS to the declarations."""
    # Flags only switch behavior on; the environment decides otherwise
    config = _load_config(
        ctx,
        dry_run=True if dry_run else None,
        max_workers=workers,
        confirm_deletions=True if confirm_deletions else None,
    )
    apply_plan = _load_plan(config)
    state = _load_state(config, read_only=config.dry_run)

    result = asyncio.run(
        Reconciler(config).apply(
            apply_plan, make_provider(config.region), state, spec_file=config.spec_file
        )
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    elif config.dry_run:
        for change in result.planned_changes:
            click.echo(f"{ACTION_SYMBOLS[change.action]:>3} {change.name} ({change.kind})")
    else:
        for outcome in result.outcomes.values():
            status = STATE_SYMBOLS.get(outcome.state, outcome.state.value)
            action = outcome.action.value if outcome.action else "-"
            detail = outcome.error or outcome.skip_reason or outcome.remote_id or ""
            click.echo(f"[{status}] {outcome.name} {action} {detail}".rstrip())
        for outcome in result.deletions:
            status = STATE_SYMBOLS.get(outcome.state, outcome.state.value)
            click.echo(f"[{status}] {outcome.name} delete {outcome.error or ''}".rstrip())
        click.echo(
            f"\nApplied {result.applied_count}, failed {result.failed_count}, "
            f"skipped {result.skipped_count} in {result.duration_seconds:.1f}s"
        )
        if result.orphans and not config.confirm_deletions:
            click.echo(f"Orphaned (not deleted): {', '.join(result.orphans)}")

    if not result.success:
        sys.exit(EXIT_FAILURE)


@cli.command()
@click.option("--confirm", is_flag=True, help="Actually delete orphaned resources")
@click.pass_context
def prune(ctx: click.Context, confirm: bool) -> None:
    """Delete resources that are recorded in state but no longer declared."""
    config = _load_config(ctx)
    apply_plan = _load_plan(config)
    state = _load_state(config)
    reconciler = Reconciler(config)

    if not confirm:
        changes = reconciler.plan_changes(apply_plan, state)
        orphans = [c for c in changes if c.action == NodeAction.DELETE]
        if not orphans:
            click.echo("No orphaned resources.")
            return
        for change in orphans:
            click.echo(f"  - {change.name} ({change.kind})")
        click.echo("\nRe-run with --confirm to delete them.")
        return

    deletions = asyncio.run(
        reconciler.prune(apply_plan.graph, make_provider(config.region), state, confirm=True)
    )
    if not deletions:
        click.echo("No orphaned resources.")
        return

    for outcome in deletions:
        status = STATE_SYMBOLS.get(outcome.state, outcome.state.value)
        detail = outcome.error or outcome.skip_reason or ""
        click.echo(f"[{status}] {outcome.name} {detail}".rstrip())

    if any(outcome.state != NodeState.APPLIED for outcome in deletions):
        sys.exit(EXIT_FAILURE)


@cli.command("state")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
def show_state(ctx: click.Context, as_json: bool) -> None:
    """Print recorded resources."""
    config = _load_config(ctx)
    records = _load_state(config, read_only=True).list()

    if as_json:
        click.echo(json.dumps({name: record.to_dict() for name, record in records}, indent=2))
        return

    if not records:
        click.echo(f"No resources recorded in {config.state_file}")
        return

    for name, record in records:
        click.echo(f"{name:<32} {record.kind:<30} {record.remote_id}")


@cli.command()
@click.option("--inputs", "show_inputs", is_flag=True, help="Also print declared inputs")
@click.pass_context
def graph(ctx: click.Context, show_inputs: bool) -> None:
    """Validate the declarations and print the apply batches."""
    config = _load_config(ctx)
    apply_plan = _load_plan(config)

    for index, batch in enumerate(apply_plan):
        click.echo(f"Batch {index}:")
        for name in batch:
            node = apply_plan.node(name)
            depends = sorted(apply_plan.graph.dependencies[name])
            suffix = f" <- {', '.join(depends)}" if depends else ""
            click.echo(f"  {name} ({node.kind}){suffix}")
            if show_inputs:
                rendered = json.dumps(render_references(dict(node.inputs)), sort_keys=True)
                click.echo(f"      {rendered}")

    click.echo(
        f"\n{apply_plan.node_count} resources, {apply_plan.graph.edge_count} dependencies, "
        f"{len(apply_plan)} batches"
    )


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()

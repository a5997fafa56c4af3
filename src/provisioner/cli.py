"""Provisioner CLI.

Usage:
    provisioner -f stack.yaml plan             # Show what apply would change
    provisioner -f stack.yaml apply --yes      # Apply and print outputs
    provisioner -f stack.yaml destroy          # Delete everything in state
    provisioner -f stack.yaml outputs          # Resolve outputs from state
    provisioner -f stack.yaml graph --dot      # Dependency graph
    provisioner state list                     # Recorded resources

Settings come from environment variables (see Config.from_env) and can be
overridden by the options below. Errors are printed to stderr as a single
JSON document so that pipelines can parse them.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NoReturn

import click

from .config import Config, ConfigurationError, LogFormat, ProviderType
from .executor import ApplyCancelledError, ApplyError
from .graph import GraphError, ResourceGraph
from .loader import DeclarationLoadError, load_declaration
from .main import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_SECURITY_VIOLATION,
    create_reconciler,
    run_cancellable,
    setup_logging,
)
from .outputs import UnresolvedOutputError
from .planner import ActionType, Plan, PlanningError, UnsafeReplacementError
from .policy import PolicyLoadError
from .reconciler import Reconciler, ReconcileResult
from .references import render_value
from .security import SecretlessViolationError
from .state import StateUnavailableError

VERSION = "0.1.0"


@dataclass
class CliState:
    """Objects shared by every subcommand."""

    config: Config
    parameters: dict[str, str] = field(default_factory=dict)
    _reconciler: Reconciler | None = None

    @property
    def reconciler(self) -> Reconciler:
        if self._reconciler is None:
            try:
                self._reconciler = create_reconciler(self.config)
            except PolicyLoadError as e:
                fail(e)
            except SecretlessViolationError as e:
                fail(e, exit_code=EXIT_SECURITY_VIOLATION)
        return self._reconciler


def fail(error: Exception, exit_code: int = EXIT_FAILURE, **details: Any) -> NoReturn:
    """Print a structured error on stderr and exit."""
    payload: dict[str, Any] = {"error": type(error).__name__, "message": str(error)}
    payload.update({k: v for k, v in details.items() if v is not None})
    click.echo(json.dumps(payload, indent=2, default=str), err=True)
    sys.exit(exit_code)


def parse_parameters(values: tuple[str, ...]) -> dict[str, str]:
    """Turn ("Name=value", ...) into a mapping."""
    result: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--param")
        result[name.strip()] = value
    return result


def load_graph(state: CliState) -> ResourceGraph:
    """Load the declaration and build its graph, exiting on any error."""
    if state.config.declaration_file is None:
        raise click.UsageError("No declaration file given (use -f or DECLARATION_FILE)")
    try:
        declaration = load_declaration(state.config.declaration_file)
        return state.reconciler.build(declaration, state.parameters)
    except (DeclarationLoadError, GraphError) as e:
        fail(e, cycle=getattr(e, "cycle", None))


def compute_plan(state: CliState, graph: ResourceGraph) -> Plan:
    try:
        return state.reconciler.plan(graph)
    except UnsafeReplacementError as e:
        fail(e, resource=e.resource, pinned_by=e.pinned_by)
    except (PlanningError, StateUnavailableError, GraphError) as e:
        fail(e)


def format_value(value: Any) -> str:
    return json.dumps(render_value(value), default=str)


def echo_plan(plan: Plan) -> None:
    """Print a human-readable change list."""
    changes = plan.changes
    if not changes:
        click.echo("No changes. State matches the declaration.")
        return

    click.echo("Planned changes:")
    for action in changes:
        click.echo(f"  {action.describe()}")
        if action.action == ActionType.DELETE:
            continue
        for diff in action.diffs:
            marker = "  # forces replacement" if diff.requires_replacement else ""
            if action.action == ActionType.CREATE:
                click.echo(f"      {diff.name} = {format_value(diff.after)}")
            else:
                click.echo(
                    f"      {diff.name}: {format_value(diff.before)} -> "
                    f"{format_value(diff.after)}{marker}"
                )

    summary = plan.summary()
    click.echo(
        f"\nPlan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete."
    )


def echo_outputs(outputs: dict[str, Any]) -> None:
    if not outputs:
        return
    click.echo("\nOutputs:")
    for name, value in outputs.items():
        click.echo(f"  {name} = {format_value(value)}")


def execute(
    work: Callable[[asyncio.Event], Awaitable[ReconcileResult]], as_json: bool
) -> ReconcileResult:
    """Run an apply-like coroutine factory and map failures to exit codes."""
    try:
        result = run_cancellable(work)
    except ApplyCancelledError as e:
        fail(e, exit_code=EXIT_CANCELLED, steps=e.result.to_dict()["steps"])
    except ApplyError as e:
        fail(e, resource=e.resource, steps=e.result.to_dict()["steps"])
    except UnresolvedOutputError as e:
        fail(e, missing=e.missing, resolved=e.resolved)
    except StateUnavailableError as e:
        fail(e)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        click.echo(
            f"\nApply complete: {result.changes_applied} operations in "
            f"{result.duration_seconds:.1f}s."
        )
        echo_outputs(result.outputs)
    return result


@click.group()
@click.version_option(version=VERSION, prog_name="provisioner")
@click.option(
    "--file",
    "-f",
    "declaration_file",
    type=click.Path(path_type=Path),
    help="Declaration file (YAML or JSON) [env: DECLARATION_FILE]",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="State Store directory [env: STATE_DIR]",
)
@click.option(
    "--policy",
    "policy_file",
    type=click.Path(path_type=Path),
    help="Replacement policy YAML [env: POLICY_FILE]",
)
@click.option(
    "--provider",
    type=click.Choice([p.value for p in ProviderType]),
    help="Control-plane provider [env: PROVIDER]",
)
@click.option(
    "--param",
    "-p",
    "params",
    multiple=True,
    metavar="NAME=VALUE",
    help="Declaration parameter value (repeatable)",
)
@click.option("--concurrency", type=int, help="Parallel provider calls [env: MAX_CONCURRENCY]")
@click.option(
    "--log-format",
    type=click.Choice([f.value for f in LogFormat]),
    help="Log output format [env: LOG_FORMAT]",
)
@click.option("--log-level", help="Log level [env: LOG_LEVEL]")
@click.pass_context
def cli(
    ctx: click.Context,
    declaration_file: Path | None,
    state_dir: Path | None,
    policy_file: Path | None,
    provider: str | None,
    params: tuple[str, ...],
    concurrency: int | None,
    log_format: str | None,
    log_level: str | None,
) -> None:
    """Declarative provisioning of typed resources with dependency ordering."""
    overrides: dict[str, Any] = {
        "declaration_file": declaration_file,
        "state_dir": state_dir,
        "policy_file": policy_file,
        "provider": ProviderType(provider) if provider else None,
        "max_concurrency": concurrency,
        "log_format": LogFormat(log_format) if log_format else None,
        "log_level": log_level.upper() if log_level else None,
    }
    try:
        config = Config.from_env()
        config = dataclasses.replace(
            config, **{k: v for k, v in overrides.items() if v is not None}
        )
    except ConfigurationError as e:
        fail(e)

    setup_logging(config.log_format, config.log_level)
    ctx.obj = CliState(config=config, parameters=parse_parameters(params))


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.pass_obj
def plan(state: CliState, as_json: bool) -> None:
    """Show the changes apply would make."""
    graph = load_graph(state)
    result = compute_plan(state, graph)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        echo_plan(result)


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_obj
def apply(state: CliState, yes: bool, as_json: bool) -> None:
    """Plan and apply the declaration."""
    graph = load_graph(state)
    computed = compute_plan(state, graph)
    if not as_json:
        echo_plan(computed)
    if computed.has_changes and not yes:
        click.confirm("\nApply these changes?", abort=True)

    execute(
        lambda cancel_event: state.reconciler.apply(graph, cancel_event, plan=computed),
        as_json,
    )


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_obj
def destroy(state: CliState, yes: bool, as_json: bool) -> None:
    """Delete every resource recorded in state."""
    computed = compute_plan(state, ResourceGraph())
    if not as_json:
        echo_plan(computed)
    if computed.has_changes and not yes:
        click.confirm("\nDestroy these resources?", abort=True)

    execute(
        lambda cancel_event: state.reconciler.destroy(cancel_event, plan=computed),
        as_json,
    )


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print outputs as JSON")
@click.pass_obj
def outputs(state: CliState, as_json: bool) -> None:
    """Resolve declaration outputs from current state."""
    graph = load_graph(state)
    try:
        resolved = state.reconciler.outputs(graph)
    except UnresolvedOutputError as e:
        fail(e, missing=e.missing, resolved=e.resolved)
    except StateUnavailableError as e:
        fail(e)

    if as_json:
        click.echo(json.dumps(resolved, indent=2, default=str))
    else:
        for name, value in resolved.items():
            click.echo(f"{name} = {format_value(value)}")


@cli.command()
@click.option("--dot", is_flag=True, help="Render Graphviz DOT instead of an ordered list")
@click.pass_obj
def graph(state: CliState, dot: bool) -> None:
    """Show the dependency graph of the declaration."""
    built = load_graph(state)
    if dot:
        click.echo(built.to_dot())
        return
    for wave, names in enumerate(built.levels(), start=1):
        click.echo(f"{wave}. {', '.join(names)}")


@cli.group(name="state")
def state_group() -> None:
    """Inspect or edit the State Store."""
    pass


@state_group.command(name="list")
@click.pass_obj
def state_list(state: CliState) -> None:
    """List recorded resources."""
    try:
        records = state.reconciler.store.records()
        pending = state.reconciler.store.pending()
    except StateUnavailableError as e:
        fail(e)

    for name, record in records.items():
        flag = "  (unconfirmed operation)" if name in pending else ""
        click.echo(f"{name}\t{record.kind}\t{record.physical_id}{flag}")
    for name in sorted(set(pending) - set(records)):
        click.echo(f"{name}\t-\t-  (unconfirmed {pending[name].operation})")


@state_group.command(name="show")
@click.argument("name")
@click.pass_obj
def state_show(state: CliState, name: str) -> None:
    """Print one state record as JSON."""
    try:
        record = state.reconciler.store.get(name)
    except (StateUnavailableError, ValueError) as e:
        fail(e)
    if record is None:
        raise click.ClickException(f"No state record for '{name}'")
    click.echo(json.dumps(record.to_dict(), indent=2, default=str))


@state_group.command(name="rm")
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def state_rm(state: CliState, name: str, yes: bool) -> None:
    """Forget a resource without deleting it at the provider."""
    store = state.reconciler.store
    try:
        record = store.get(name)
        if record is None and name not in store.pending():
            raise click.ClickException(f"No state record for '{name}'")
        if not yes:
            click.confirm(
                f"Forget '{name}'? The provider-side resource is left untouched.", abort=True
            )
        store.remove(name)
        store.clear_pending(name)
    except (StateUnavailableError, ValueError) as e:
        fail(e)
    click.echo(f"Removed '{name}' from state.")

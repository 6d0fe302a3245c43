"""widgetctl command line interface.

Usage:
    widgetctl plan registry.yaml                 # Show pending operations
    widgetctl plan registry.yaml --json          # Machine-readable plan
    widgetctl apply registry.yaml --simulate     # Rehearse locally
    widgetctl apply registry.yaml --provisioner mypkg.aws:make_client
    widgetctl validate registry.yaml             # Tag and routing checks
    widgetctl validate registry.yaml --live --provisioner mypkg.aws:make_client

Exit codes:
    0  success
    1  partial apply, cancellation, or a load/state/graph/config error
    2  validation failure (nothing was executed)
"""

from __future__ import annotations

import contextlib
import dataclasses
import json
from collections.abc import Iterator
from pathlib import Path

import click

from . import __version__
from .config import Config, ConfigurationError
from .main import cancel_on_signal, setup_logging
from .provisioner import ProvisionerClient, SimulatedProvisioner, load_provisioner
from .reconciler import ApplyStatus, Reconciler
from .resource_graph import GraphError
from .routing import PriorityExhaustedError
from .spec_loader import SpecLoadError, load_registry
from .state_store import StateError, StateStore
from .validator import PolicyViolationError

EXIT_PARTIAL = 1
EXIT_VALIDATION_FAILED = 2

registry_argument = click.argument(
    "registry", type=click.Path(dir_okay=False, path_type=Path)
)
state_option = click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="State snapshot file (default: WIDGETCTL_STATE_PATH).",
)
simulate_option = click.option(
    "--simulate", is_flag=True, help="Use the local simulated provisioner."
)
provisioner_option = click.option(
    "--provisioner",
    "provisioner_target",
    metavar="MODULE:FACTORY",
    default=None,
    help="Factory returning a provisioner client.",
)


@contextlib.contextmanager
def handle_errors() -> Iterator[None]:
    """Turn expected failures into an error message and exit code.

    Validation failures exit 2 with every violation listed; load, state,
    graph and configuration errors exit 1.
    """
    try:
        yield
    except PolicyViolationError as e:
        click.echo(str(e), err=True)
        raise SystemExit(EXIT_VALIDATION_FAILED) from e
    except (
        ConfigurationError,
        SpecLoadError,
        StateError,
        GraphError,
        PriorityExhaustedError,
    ) as e:
        raise click.ClickException(str(e)) from e


def build_reconciler(
    config: Config,
    registry_path: Path,
    state_path: Path | None,
    simulate: bool = False,
    provisioner_target: str | None = None,
) -> Reconciler:
    if simulate and provisioner_target:
        raise click.ClickException("--simulate and --provisioner are mutually exclusive")

    registry = load_registry(registry_path)
    store = StateStore.from_path(state_path or config.state_path)

    provisioner: ProvisionerClient | None = None
    if simulate:
        provisioner = SimulatedProvisioner(registry.discovered, records=store.load())
    elif provisioner_target:
        try:
            provisioner = load_provisioner(provisioner_target, registry.discovered)
        except (ImportError, ValueError) as e:
            raise click.ClickException(f"Cannot load provisioner: {e}") from e

    return Reconciler(config, registry, store, provisioner)


def echo_lines(lines: list[str], err: bool = False) -> None:
    for line in lines:
        click.echo(line, err=err)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="widgetctl")
@click.option("--log-level", default=None, help="Override WIDGETCTL_LOG_LEVEL.")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default=None,
    help="Override WIDGETCTL_LOG_JSON.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, log_format: str | None) -> None:
    """widgetctl: reconcile widget infrastructure against recorded state.

    \b
    Quick Start:
        widgetctl validate registry.yaml
        widgetctl plan registry.yaml
        widgetctl apply registry.yaml --simulate
    """
    with handle_errors():
        config = Config.from_env()
        if log_level is not None:
            config = dataclasses.replace(config, log_level=log_level.upper())

    json_output = config.log_json if log_format is None else log_format == "json"
    setup_logging(config.log_level, json_output)
    ctx.obj = config


# =============================================================================
# Commands
# =============================================================================


@cli.command()
@registry_argument
@state_option
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON.")
@click.pass_obj
def plan(config: Config, registry: Path, state_path: Path | None, as_json: bool) -> None:
    """Print the operations needed to reach the registry's desired state."""
    with handle_errors():
        outcome = build_reconciler(config, registry, state_path).plan()
        outcome.validation.raise_for_violations()

    assert outcome.plan is not None
    if as_json:
        click.echo(json.dumps(outcome.plan.to_dict(), indent=2, sort_keys=True))
    else:
        echo_lines(outcome.plan.render())


@cli.command()
@registry_argument
@state_option
@simulate_option
@provisioner_option
@click.option(
    "--max-workers",
    type=int,
    default=None,
    help="Worker pool size for independent widgets (default: WIDGETCTL_MAX_WORKERS).",
)
@click.pass_obj
def apply(
    config: Config,
    registry: Path,
    state_path: Path | None,
    simulate: bool,
    provisioner_target: str | None,
    max_workers: int | None,
) -> None:
    """Validate, plan and execute against the provisioner."""
    if not simulate and not provisioner_target:
        raise click.ClickException("apply needs --simulate or --provisioner MODULE:FACTORY")

    with handle_errors():
        if max_workers is not None:
            config = dataclasses.replace(config, max_workers=max_workers)
        reconciler = build_reconciler(
            config, registry, state_path, simulate=simulate, provisioner_target=provisioner_target
        )
        with cancel_on_signal(reconciler):
            outcome = reconciler.apply()
        # Nothing was executed when validation failed
        outcome.validation.raise_for_violations()

    assert outcome.plan is not None and outcome.execution is not None
    click.echo(outcome.plan.summary())
    echo_lines(outcome.execution.report())
    if outcome.post_validation is not None and not outcome.post_validation.ok:
        click.echo("Post-apply validation found problems:", err=True)
        echo_lines(outcome.post_validation.lines(), err=True)

    if outcome.status == ApplyStatus.PARTIAL:
        raise SystemExit(EXIT_PARTIAL)
    click.secho("Apply complete.", fg="green")


@cli.command()
@registry_argument
@state_option
@click.option("--live", is_flag=True, help="Also compare live resources with recorded state.")
@simulate_option
@provisioner_option
@click.pass_obj
def validate(
    config: Config,
    registry: Path,
    state_path: Path | None,
    live: bool,
    simulate: bool,
    provisioner_target: str | None,
) -> None:
    """Check tag consistency and routing non-collision."""
    if live and not simulate and not provisioner_target:
        raise click.ClickException("--live needs --simulate or --provisioner MODULE:FACTORY")

    with handle_errors():
        reconciler = build_reconciler(
            config, registry, state_path, simulate=simulate, provisioner_target=provisioner_target
        )
        report = reconciler.validate()
        drift = reconciler.verify() if live else None
        if drift is not None and not drift.ok:
            echo_lines(drift.lines(), err=True)
        report.raise_for_violations()

    if drift is not None and not drift.ok:
        raise SystemExit(EXIT_VALIDATION_FAILED)
    click.secho("Validation passed.", fg="green")

"""Main CLI entry point."""

import json
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn

from fleetform import __version__
from fleetform.cli.output import (
    RichProgressCallback,
    console,
    plan_summary_line,
    render_graph,
    render_plan,
    render_reconcile,
    render_report,
    render_state,
)
from fleetform.config.parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE
from fleetform.fleet.reconciler import FleetReconciler
from fleetform.orchestrator.dependency_graph import build_graph
from fleetform.orchestrator.executor import CancellationToken
from fleetform.orchestrator.orchestrator import ProvisioningOrchestrator
from fleetform.orchestrator.planner import Plan, Planner
from fleetform.providers.aws import aws_registry
from fleetform.providers.memory import InMemoryPlatform, memory_registry
from fleetform.providers.registry import ProviderRegistry
from fleetform.state.base import new_token
from fleetform.state.manager import FileStateStore
from fleetform.utils.aws_client import AWSClientManager
from fleetform.utils.errors import EngineError
from fleetform.utils.logging import setup_logging, get_logger

logger = get_logger(__name__)


@click.group()
@click.version_option(__version__, prog_name="fleetform")
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.option('--provider', default='aws', type=click.Choice(['aws', 'memory']),
              help='Provider backend (memory simulates the platform in-process)')
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', type=click.Choice(['debug', 'info', 'warning', 'error']),
              help='Override the configured log level')
@click.pass_context
def cli(ctx, config_path, provider, profile, region, log_level):
    """Declarative provisioning and fleet reconciliation."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['provider'] = provider
    ctx.obj['profile'] = profile
    ctx.obj['region'] = region
    ctx.obj['log_level'] = log_level


def load_config(ctx) -> Config:
    """Load and validate the configuration file, then set up logging from it."""
    config_path = ctx.obj['config_path']
    try:
        config = Config(config_path).load()
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Configuration file not found: {config_path}")
        sys.exit(1)
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(1)

    log_dir = config.settings.log_dir
    if log_dir and not Path(log_dir).is_absolute():
        log_dir = str(config.config_path.parent / log_dir)
    setup_logging(ctx.obj['log_level'] or config.settings.log_level, log_dir)
    logger.debug(f"Loaded {len(config.resources)} resources from {config.config_path}")
    return config


def create_registry(ctx) -> ProviderRegistry:
    """Build the provider registry selected on the command line."""
    if ctx.obj['provider'] == 'memory':
        return memory_registry(InMemoryPlatform())

    client_manager = AWSClientManager(profile=ctx.obj['profile'], region=ctx.obj['region'])
    client_manager.validate_credentials()
    return aws_registry(client_manager)


def create_store(config: Config) -> FileStateStore:
    return FileStateStore(str(config.state_path), stale_after=config.settings.lock.stale_after)


def create_orchestrator(ctx, config: Config, max_workers: Optional[int] = None) -> ProvisioningOrchestrator:
    """Create the orchestrator with all dependencies."""
    settings = config.settings
    return ProvisioningOrchestrator(
        state_store=create_store(config),
        registry=create_registry(ctx),
        max_workers=max_workers or settings.max_workers,
        retry_strategy=settings.retry.to_strategy(),
        scope=settings.workspace,
        lock_timeout=settings.lock.timeout
    )


def run_with_progress(orchestrator: ProvisioningOrchestrator, plan: Plan, label: str):
    """Apply a plan behind a progress bar; Ctrl-C cancels steps not yet started."""
    cancellation = CancellationToken()

    def interrupt(signum, frame):
        console.print("\n[yellow]Cancelling: waiting for in-flight steps to finish[/yellow]")
        cancellation.cancel()

    previous = signal.signal(signal.SIGINT, interrupt)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        ) as progress:
            task_id = progress.add_task(f"[cyan]Starting {label}...", total=None)
            callback = RichProgressCallback(progress, task_id, total=len(plan.steps))
            report = orchestrator.apply(plan, cancellation, callback)
    finally:
        signal.signal(signal.SIGINT, previous)
    return report


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print the plan as JSON')
@click.option('--destroy', 'destroy_all', is_flag=True, help='Plan the destruction of every recorded resource')
@click.pass_context
def plan(ctx, as_json, destroy_all):
    """Show what apply would change. Never modifies recorded resources."""
    cfg = load_config(ctx)
    settings = cfg.settings
    try:
        store = create_store(cfg)
        planner = Planner(store)
        with store.locked(settings.workspace, settings.lock.timeout, new_token()):
            result = planner.plan_destroy() if destroy_all else planner.plan(cfg.resources)
    except EngineError as e:
        console.print(f"[red]Plan failed:[/red] {escape(e.to_user_message())}")
        sys.exit(1)

    render_plan(result, as_json=as_json)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.option('--max-workers', type=click.IntRange(1, 64), help='Maximum concurrent provider calls')
@click.option('--refresh/--no-refresh', default=None,
              help='Re-read recorded resources before planning (default: on for aws)')
@click.pass_context
def apply(ctx, yes, max_workers, refresh):
    """Plan and apply the declared resources."""
    cfg = load_config(ctx)
    if refresh is None:
        refresh = ctx.obj['provider'] == 'aws'

    try:
        orchestrator = create_orchestrator(ctx, cfg, max_workers)
        with orchestrator.locked():
            if refresh:
                drift = orchestrator.refresh()
                changed = sorted(address for address, result in drift.items() if result != "unchanged")
                if changed:
                    console.print(f"[yellow]Refreshed with drift:[/yellow] {', '.join(changed)}")

            result = orchestrator.plan(cfg.resources)
            render_plan(result)
            if not result.has_changes():
                return

            if not yes and not click.confirm("\nApply these changes?", default=False):
                console.print("[yellow]Apply cancelled[/yellow]")
                return

            report = run_with_progress(orchestrator, result, "apply")
    except EngineError as e:
        console.print(f"[red]Apply failed:[/red] {escape(e.to_user_message())}")
        sys.exit(1)

    console.print()
    render_report(report, title="Apply")
    if not report.is_success():
        sys.exit(1)


@cli.command()
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, yes):
    """Destroy every recorded resource, consumers first."""
    cfg = load_config(ctx)
    try:
        orchestrator = create_orchestrator(ctx, cfg)
        with orchestrator.locked():
            result = orchestrator.plan_destroy()
            if not result.has_changes():
                console.print("[yellow]No resources recorded; nothing to destroy[/yellow]")
                return

            console.print(Panel.fit(
                f"[bold red]This will destroy resources[/bold red]\n\n"
                f"Workspace: {cfg.settings.workspace}\n"
                f"{plan_summary_line(result)}",
                title="Destruction Plan",
                border_style="red"
            ))
            if not yes and not click.confirm("Are you sure you want to destroy these resources?", default=False):
                console.print("[yellow]Destruction cancelled[/yellow]")
                return

            report = run_with_progress(orchestrator, result, "destruction")
    except EngineError as e:
        console.print(f"[red]Destroy failed:[/red] {escape(e.to_user_message())}")
        sys.exit(1)

    console.print()
    render_report(report, title="Destroy")
    if not report.is_success():
        console.print("\n[yellow]Some resources may need manual cleanup[/yellow]")
        sys.exit(1)


@cli.command()
@click.option('--format', 'output_format', default='tree', type=click.Choice(['tree', 'waves', 'dot']))
@click.pass_context
def graph(ctx, output_format):
    """Show the dependency graph of the declared resources."""
    cfg = load_config(ctx)
    try:
        dependency_graph = build_graph(cfg.resources, create_store(cfg).list())
    except EngineError as e:
        console.print(f"[red]Invalid graph:[/red] {escape(e.to_user_message())}")
        sys.exit(1)

    render_graph(dependency_graph, output_format)


@cli.group()
def state():
    """Inspect recorded state."""


@state.command('list')
@click.option('--json', 'as_json', is_flag=True, help='Print records as JSON')
@click.pass_context
def state_list(ctx, as_json):
    """List recorded resources."""
    cfg = load_config(ctx)
    try:
        records = create_store(cfg).list()
    except EngineError as e:
        console.print(f"[red]Error reading state:[/red] {escape(e.to_user_message())}")
        sys.exit(1)

    if as_json:
        console.print_json(json.dumps(
            {address: record.model_dump(mode='json') for address, record in sorted(records.items())}
        ))
        return
    render_state(records)


@cli.command()
@click.option('--once', is_flag=True, help='Run a single reconciliation tick')
@click.option('--ticks', type=click.IntRange(1), help='Stop after this many ticks')
@click.pass_context
def reconcile(ctx, once, ticks):
    """Keep autoscaling members registered with their target groups."""
    cfg = load_config(ctx)
    fleet = cfg.settings.fleet
    try:
        reconciler = FleetReconciler(
            registry=create_registry(ctx),
            state_store=create_store(cfg),
            interval=fleet.interval,
            healthy_threshold=fleet.healthy_threshold,
            unhealthy_threshold=fleet.unhealthy_threshold,
            deregistration_delay=fleet.deregistration_delay,
            replace_unhealthy=fleet.replace_unhealthy
        )
        if once:
            render_reconcile(reconciler.reconcile_once())
            return

        console.print(f"[cyan]Reconciling every {fleet.interval}s; press Ctrl-C to stop[/cyan]")
        try:
            reconciler.run(max_ticks=ticks)
        except KeyboardInterrupt:
            reconciler.stop()
            console.print("\n[yellow]Reconciler stopped[/yellow]")
    except EngineError as e:
        console.print(f"[red]Reconcile failed:[/red] {escape(e.to_user_message())}")
        sys.exit(1)


if __name__ == '__main__':
    cli()

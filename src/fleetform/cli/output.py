"""Rich rendering of plans, apply reports, graphs and state."""

import json
from typing import Dict, List

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress
from rich.table import Table
from rich.tree import Tree

from fleetform.fleet.models import ReconcileReport
from fleetform.orchestrator.dependency_graph import DependencyGraph
from fleetform.orchestrator.executor import ApplyReport, NodeStatus, StepStatus
from fleetform.orchestrator.planner import Action, Plan
from fleetform.state.models import StateRecord

console = Console()

ACTION_STYLES = {
    Action.CREATE: ("+", "green"),
    Action.READ: ("<=", "cyan"),
    Action.UPDATE: ("~", "yellow"),
    Action.DESTROY: ("-", "red"),
    Action.NOOP: (" ", "dim"),
    Action.REPLACE_CREATE_BEFORE_DESTROY: ("+/-", "magenta"),
    Action.REPLACE_DESTROY_THEN_CREATE: ("-/+", "magenta"),
    Action.DESTROY_DEPOSED: ("-", "red"),
}

STATUS_STYLES = {
    NodeStatus.SUCCEEDED: "green",
    NodeStatus.UNCHANGED: "dim",
    NodeStatus.FAILED: "red",
    NodeStatus.SKIPPED: "yellow",
    NodeStatus.CANCELLED: "yellow",
}


def plan_summary_line(plan: Plan) -> str:
    """One-line summary, e.g. ``Plan: 7 to create, 0 to update, 0 to replace, 0 to destroy, 0 to read``."""
    summary = plan.get_summary()
    replace = (
        summary[Action.REPLACE_CREATE_BEFORE_DESTROY.value]
        + summary[Action.REPLACE_DESTROY_THEN_CREATE.value]
    )
    destroy = summary[Action.DESTROY.value] + summary[Action.DESTROY_DEPOSED.value]
    return (
        f"Plan: {summary[Action.CREATE.value]} to create, {summary[Action.UPDATE.value]} to update, "
        f"{replace} to replace, {destroy} to destroy, {summary[Action.READ.value]} to read"
    )


def render_plan(plan: Plan, as_json: bool = False) -> None:
    """Print a plan as a table of changes with attribute diffs."""
    if as_json:
        console.print_json(json.dumps(plan.to_dict(), default=str))
        return

    if not plan.has_changes():
        console.print("[green]No changes.[/green] Recorded state matches the declarations.")
        return

    table = Table(title="Planned Changes", show_lines=True)
    table.add_column("", no_wrap=True)
    table.add_column("Resource", style="cyan", no_wrap=True)
    table.add_column("Action")
    table.add_column("Changes")

    for change in plan.changes:
        if change.action == Action.NOOP:
            continue
        symbol, style = ACTION_STYLES[change.action]
        diffs = "\n".join(
            escape(f"{diff.name}: {diff.to_dict()['before']!r} -> {diff.to_dict()['after']!r}")
            + (" [red](forces replacement)[/red]" if diff.forces_replacement else "")
            for diff in change.diffs
        )
        table.add_row(f"[{style}]{symbol}[/{style}]", change.address, f"[{style}]{change.action.value}[/{style}]", diffs)

    console.print(table)
    console.print(f"\n[bold]{plan_summary_line(plan)}[/bold]")


def render_report(report: ApplyReport, title: str = "Apply") -> None:
    """Print per-node outcomes and a summary panel."""
    table = Table(title=f"{title} Results")
    table.add_column("Resource", style="cyan", no_wrap=True)
    table.add_column("Action")
    table.add_column("Outcome")
    table.add_column("Identifier")
    table.add_column("Duration", justify="right")

    for address, node in report.nodes.items():
        style = STATUS_STYLES[node.status]
        table.add_row(
            address,
            node.action.value,
            f"[{style}]{node.status.value}[/{style}]",
            node.identifier or "-",
            f"{node.duration:.1f}s",
        )
    console.print(table)

    summary = ", ".join(f"{count} {name}" for name, count in report.get_summary().items() if count)
    if report.is_success():
        console.print(Panel.fit(
            f"[green]{title} complete[/green]\n\n{summary}\nDuration: {report.duration:.2f}s",
            border_style="green"
        ))
        return

    lines = [f"[red]{title} finished with failures[/red]", "", summary]
    for address, error in report.errors().items():
        lines.append(f"  [red]x[/red] {address}: {escape(error.message)}")
    if report.cancelled:
        lines.append("\n[yellow]Cancelled before every step could start[/yellow]")
    console.print(Panel.fit("\n".join(lines), border_style="red"))


def render_graph(graph: DependencyGraph, output_format: str = "tree") -> None:
    """Print the dependency graph as a tree, parallel waves, or DOT."""
    if output_format == "dot":
        lines = ["digraph fleetform {", "  rankdir=LR;"]
        for address in graph.topological_sort():
            lines.append(f'  "{address}";')
            for dep in sorted(graph.get_dependencies(address)):
                lines.append(f'  "{address}" -> "{dep}";')
        lines.append("}")
        console.print("\n".join(lines), markup=False, highlight=False)
        return

    if output_format == "waves":
        for number, wave in enumerate(graph.get_waves(), 1):
            console.print(f"[bold]Wave {number}:[/bold] {', '.join(wave)}")
        return

    tree = Tree("[bold]Resources[/bold] (producers first)")
    for address in graph.topological_sort():
        branch = tree.add(f"[cyan]{address}[/cyan]")
        for dep in sorted(graph.get_dependencies(address)):
            branch.add(f"[dim]depends on[/dim] {dep}")
    console.print(tree)


def render_state(records: Dict[str, StateRecord]) -> None:
    """Print recorded resources."""
    if not records:
        console.print("[dim]No resources recorded[/dim]")
        return

    table = Table(title="Recorded Resources")
    table.add_column("Resource", style="cyan", no_wrap=True)
    table.add_column("Identifier")
    table.add_column("Dependencies")
    table.add_column("Deposed")
    table.add_column("Updated")

    for address, record in sorted(records.items()):
        table.add_row(
            address,
            record.identifier or "-",
            ", ".join(record.dependencies) or "-",
            ", ".join(record.deposed) or "-",
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def render_reconcile(report: ReconcileReport) -> None:
    """Print what one reconciliation tick did."""
    if not report.transitions and not report.errors:
        console.print("[dim]Fleet is in sync[/dim]")
    for transition in report.transitions:
        console.print(
            f"{transition.group} {transition.member_id}: "
            f"{transition.from_phase.value} -> {transition.to_phase.value}"
        )
    for error in report.errors:
        console.print(f"[red]Error:[/red] {error}")


class RichProgressCallback:
    """Progress callback that displays step updates using Rich."""

    def __init__(self, progress: Progress, task_id, total: int):
        self.progress = progress
        self.task_id = task_id
        self.finished: List[str] = []
        self.progress.update(task_id, total=total)

    def __call__(self, step_id: str, status: StepStatus, message) -> None:
        if status == StepStatus.RUNNING:
            self.progress.update(self.task_id, description=f"[cyan]Running:[/cyan] {step_id}")
            return

        self.finished.append(step_id)
        marker = "[green]ok[/green]" if status == StepStatus.SUCCEEDED else f"[red]{status.value}[/red]"
        self.progress.update(
            self.task_id,
            completed=len(self.finished),
            description=f"{marker} {step_id}"
        )

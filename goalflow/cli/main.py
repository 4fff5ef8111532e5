"""Main CLI entry point using Typer."""

import json
from pathlib import Path
from typing import Any

import anyio
import typer
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from goalflow import __version__
from goalflow.core.approval import ApprovalDecision, ApprovalGate, AutoApprovalGate
from goalflow.core.checkpoint import JsonFileCheckpointer
from goalflow.core.config import get_settings
from goalflow.core.exceptions import GoalflowError
from goalflow.core.logging import configure_logging
from goalflow.core.orchestrator import GoalOrchestrator, GoalReport
from goalflow.decomposition.cycle_resolver import ProposedFix
from goalflow.decomposition.models import DependencyEdge, Plan, WorkerDescriptor
from goalflow.decomposition.registry import InMemoryWorkerRegistry
from goalflow.execution.dispatcher import DryRunDispatcher
from goalflow.execution.replanning import RecoveryProposal

app = typer.Typer(
    name="goalflow",
    help="goalflow - goal decomposition and wave-based orchestration",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


# =============================================================================
# GOAL FILES
# =============================================================================


class GoalFile:
    """
    Parsed goal file.

    Goal files are JSON documents::

        {
          "goal": "Ship the reporting feature",
          "root": "A",
          "subtasks": [{"id": "A", "name": "...", "done_criteria": "...", ...}],
          "edges": [{"producer": "A", "consumer": "B", "artifact": "design.md"}],
          "workers": [{"id": "w1", "domain_tags": ["backend"]}]
        }
    """

    def __init__(self, data: dict[str, Any]) -> None:
        self.goal: str = data.get("goal", "")
        self.goal_id: str | None = data.get("goal_id")
        self.root: str | None = data.get("root")
        self.subtasks: list[dict[str, Any]] = list(data.get("subtasks", []))
        self.edges = [DependencyEdge.model_validate(e) for e in data.get("edges", [])]
        self.workers = [WorkerDescriptor.model_validate(w) for w in data.get("workers", [])]
        self.infer_edges: bool = data.get("infer_edges", True)

    @classmethod
    def load(cls, path: Path) -> "GoalFile":
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise typer.BadParameter(f"Cannot read goal file {path}: {e}") from e
        if not isinstance(data, dict):
            raise typer.BadParameter(f"Goal file {path} must contain a JSON object")
        try:
            return cls(data)
        except ValidationError as e:
            raise typer.BadParameter(f"Invalid goal file {path}: {e}") from e


class ConsoleApprovalGate(ApprovalGate):
    """Approval gate that asks the operator on the terminal."""

    def present_plan(self, plan: Plan) -> ApprovalDecision | str | list[int]:
        display_plan(plan)
        answer = Prompt.ask(
            "Approve waves? ([bold]all[/bold], comma-separated indices, or none)",
            default="none",
            console=console,
        )
        answer = answer.strip().lower()
        if answer in ("all", "none"):
            return answer
        try:
            return [int(part) for part in answer.split(",") if part.strip()]
        except ValueError:
            return "none"

    def review_recovery(self, proposal: RecoveryProposal) -> ApprovalDecision:
        console.print(
            Panel(
                f"[bold]{proposal.action.value}[/bold] for {proposal.origin_id}\n"
                f"{proposal.rationale}\n\n"
                f"Blast radius: {', '.join(proposal.blast_radius)}\n"
                f"Needs rework: {', '.join(proposal.needs_rework) or '-'}",
                title="[bold yellow]Recovery proposal[/bold yellow]",
                border_style="yellow",
            )
        )
        if Confirm.ask("Apply this recovery?", default=False, console=console):
            return ApprovalDecision.approve_all()
        return ApprovalDecision.deny()

    def confirm_fix(self, cycle: list[str], fixes: list[ProposedFix]) -> ProposedFix | None:
        console.print(f"[bold red]Cycle detected:[/bold red] {' -> '.join(cycle)}")
        for i, fix in enumerate(fixes):
            console.print(f"  [cyan]{i}[/cyan] {fix.strategy.value}: {fix.rationale}")
        choice = Prompt.ask("Apply which fix? (index or none)", default="none", console=console)
        if choice.isdigit() and int(choice) < len(fixes):
            return fixes[int(choice)]
        return None


# =============================================================================
# DISPLAY
# =============================================================================


def display_plan(plan: Plan) -> None:
    """Print waves, critical path, gaps and flags."""
    table = Table(title="Execution Waves")
    table.add_column("Wave", style="cyan")
    table.add_column("Sub-task", style="bold")
    table.add_column("Effort")
    table.add_column("Domains")
    table.add_column("Worker")

    for wave in plan.waves:
        for sid in wave.subtask_ids:
            task = plan.subtasks[sid]
            assignment = plan.assignments.get(sid)
            worker = assignment.worker_id if assignment else "[red]UNASSIGNABLE[/red]"
            table.add_row(
                str(wave.index),
                f"{sid} ({task.name})" if task.name != sid else sid,
                task.effort.value,
                ", ".join(task.domain_tags) or "-",
                worker,
            )

    console.print(table)
    console.print(
        f"[bold]Critical path:[/bold] {' -> '.join(plan.wave_plan.critical_path)} "
        f"(length {plan.wave_plan.critical_path_length}, "
        f"weight {plan.wave_plan.critical_path_weight})"
    )

    for cycle in plan.cycles_reported:
        console.print(f"[yellow]Cycle repaired:[/yellow] {' -> '.join(cycle)}")

    if plan.unassignable:
        gaps = Table(title="Capability Gaps", border_style="red")
        gaps.add_column("Sub-task", style="bold")
        gaps.add_column("Missing capability", style="red")
        gaps.add_column("Reason")
        for gap in plan.unassignable.values():
            gaps.add_row(gap.subtask_id, gap.missing_capability, gap.reason)
        console.print(gaps)

    if plan.flags:
        flags = Table(title="Granularity Flags (advisory)")
        flags.add_column("Sub-task", style="bold")
        flags.add_column("Flag", style="yellow")
        flags.add_column("Reason")
        for flag in plan.flags:
            flags.add_row(flag.subtask_id, flag.kind.value, flag.reason)
        console.print(flags)


def display_report(report: GoalReport) -> None:
    status_colors = {
        "completed": "green",
        "halted": "yellow",
        "cancelled": "red",
    }
    color = status_colors.get(report.status.value, "white")

    table = Table(title="Goal Report")
    table.add_column("State", style="bold")
    table.add_column("Sub-tasks")
    table.add_row("[green]completed[/green]", ", ".join(report.completed) or "-")
    table.add_row("[red]failed[/red]", ", ".join(report.failed) or "-")
    table.add_row("[yellow]held[/yellow]", ", ".join(report.held) or "-")
    table.add_row("[dim]pending[/dim]", ", ".join(report.pending) or "-")
    table.add_row("[dim]cancelled[/dim]", ", ".join(report.cancelled) or "-")

    console.print(table)
    console.print(
        f"\n[bold {color}]Goal {report.status.value}[/bold {color}] "
        f"after {report.waves_completed} wave(s)"
    )


# =============================================================================
# COMMANDS
# =============================================================================


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]goalflow[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        "-d",
        help="Enable debug logging",
    ),
) -> None:
    """
    goalflow - decompose a goal, plan it in waves, execute behind approval.
    """
    settings = get_settings()
    if debug:
        settings = settings.model_copy(update={"debug": True})
    configure_logging(settings)


def _build_orchestrator(
    goal_file: GoalFile,
    approval: ApprovalGate,
    dispatcher: DryRunDispatcher | None = None,
    checkpoint_dir: Path | None = None,
) -> GoalOrchestrator:
    settings = get_settings()
    directory = checkpoint_dir or (Path(settings.checkpoint_dir) if settings.checkpoint_dir else None)
    orchestrator = GoalOrchestrator(
        registry=InMemoryWorkerRegistry(goal_file.workers),
        dispatcher=dispatcher or DryRunDispatcher(),
        approval=approval,
        settings=settings,
        checkpointer=JsonFileCheckpointer(directory) if directory else None,
        goal=goal_file.goal,
        goal_id=goal_file.goal_id,
    )
    if dispatcher is not None:
        dispatcher.bind(orchestrator.on_result)
    return orchestrator


@app.command()
def plan(
    goal_path: Path = typer.Argument(..., help="Path to goal file (JSON)"),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the plan as JSON to this file",
    ),
) -> None:
    """
    Build and display the plan for a goal without executing it.

    Example:
        goalflow plan goal.json -o plan.json
    """
    goal_file = GoalFile.load(goal_path)
    orchestrator = _build_orchestrator(goal_file, AutoApprovalGate())

    try:
        result = orchestrator.build_plan(
            goal_file.subtasks,
            edges=goal_file.edges,
            root_id=goal_file.root,
            infer_edges=goal_file.infer_edges,
        )
    except GoalflowError as e:
        console.print(f"[bold red]Planning failed:[/bold red] {e}")
        raise typer.Exit(1)

    console.print(
        Panel(
            f"[bold]Goal:[/bold] {result.goal or '-'}\n"
            f"[bold]Sub-tasks:[/bold] {len(result.subtasks)}  "
            f"[bold]Waves:[/bold] {result.wave_plan.total_waves}",
            title="[bold blue]goalflow plan[/bold blue]",
            border_style="blue",
        )
    )
    display_plan(result)

    if output:
        output.write_text(json.dumps(result.to_dict(), indent=2))
        console.print(f"[green]Saved to {output}[/green]")


@app.command()
def validate(
    goal_path: Path = typer.Argument(..., help="Path to goal file (JSON)"),
) -> None:
    """
    Validate a goal file: sub-tasks, orphans, cycles and capability gaps.

    Exits non-zero if the plan cannot be built or has unassignable sub-tasks.
    """
    goal_file = GoalFile.load(goal_path)
    orchestrator = _build_orchestrator(goal_file, AutoApprovalGate(accept_fixes=False))

    try:
        result = orchestrator.build_plan(
            goal_file.subtasks,
            edges=goal_file.edges,
            root_id=goal_file.root,
            infer_edges=goal_file.infer_edges,
        )
    except GoalflowError as e:
        console.print(f"[bold red]Invalid:[/bold red] {e}")
        raise typer.Exit(1)

    if result.has_gaps:
        for gap in result.unassignable.values():
            console.print(
                f"[red]UNASSIGNABLE[/red] {gap.subtask_id}: "
                f"missing '{gap.missing_capability}'"
            )
        raise typer.Exit(2)

    console.print(
        f"[green]Valid:[/green] {len(result.subtasks)} sub-tasks in "
        f"{result.wave_plan.total_waves} waves"
    )


@app.command()
def run(
    goal_path: Path = typer.Argument(..., help="Path to goal file (JSON)"),
    auto_approve: bool = typer.Option(
        False,
        "--auto-approve",
        "-y",
        help="Approve the plan, recoveries and cycle fixes without prompting",
    ),
    delay: float = typer.Option(
        0.0,
        "--delay",
        help="Simulated seconds per sub-task",
    ),
    fail: list[str] = typer.Option(
        [],
        "--fail",
        "-f",
        help="Sub-task ID whose first attempt should fail (repeatable)",
    ),
    checkpoint_dir: Path | None = typer.Option(
        None,
        "--checkpoint-dir",
        help="Directory for JSON checkpoints",
    ),
) -> None:
    """
    Plan a goal and execute it with simulated workers.

    Example:
        goalflow run goal.json --auto-approve --fail D
    """
    goal_file = GoalFile.load(goal_path)
    approval: ApprovalGate = AutoApprovalGate() if auto_approve else ConsoleApprovalGate()
    dispatcher = DryRunDispatcher(
        delay_per_task=delay,
        failures={sid: 1 for sid in fail},
    )
    orchestrator = _build_orchestrator(goal_file, approval, dispatcher, checkpoint_dir)

    async def execute() -> GoalReport:
        return await orchestrator.run(
            goal_file.subtasks,
            edges=goal_file.edges,
            root_id=goal_file.root,
            infer_edges=goal_file.infer_edges,
        )

    try:
        report = anyio.run(execute)
    except GoalflowError as e:
        logger.error(f"Goal {orchestrator.goal_id} stopped: {e}")
        console.print(f"[bold red]Stopped:[/bold red] {e}")
        raise typer.Exit(1)

    display_report(report)
    if report.status.value != "completed":
        raise typer.Exit(1)


if __name__ == "__main__":
    app()

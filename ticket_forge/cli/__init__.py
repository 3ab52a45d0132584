"""
Command Line Interface for Ticket Forge.
"""

import json
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import settings
from ..db import DocumentStore, get_engine, get_session_local, init_database
from ..drafts import DocumentDraftRepository
from ..errors import ForgeError
from ..logging_config import configure_logging
from ..quality import GateDecision, QualityEngine
from ..workflow.models import INSTANCE_COLLECTION, StepStatus, WorkflowInstance

app = typer.Typer(help="Ticket Forge - turn short intents into implementation-ready tickets")
console = Console()

GATE_STYLES = {
    GateDecision.BLOCKED: "bold red",
    GateDecision.ALLOWED_WITH_ISSUES: "bold yellow",
    GateDecision.HIGH_CONFIDENCE: "bold green",
}

STEP_ICONS = {
    StepStatus.PENDING: "⚪",
    StepStatus.IN_PROGRESS: "🟡",
    StepStatus.COMPLETE: "✅",
    StepStatus.FAILED: "❌",
    StepStatus.SUSPENDED: "⏸️",
}


def _store() -> DocumentStore:
    return DocumentStore(get_session_local())


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override LOG_LEVEL"),
    log_format: Optional[str] = typer.Option(None, help="json or console"),
):
    """Configure logging before any command runs."""
    configure_logging(log_level, log_format or "console")


@app.command("init-db")
def init_db():
    """Create database tables."""
    init_database(get_engine())
    console.print(f"✅ Database initialized at {settings.database_url}")


@app.command()
def score(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Ticket specification JSON file"),
):
    """Compute the quality score of a ticket specification."""
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        console.print(f"❌ {path} is not valid JSON: {e}")
        raise typer.Exit(code=1)

    try:
        report = QualityEngine().score(payload, artifact_id=path.name)
    except ForgeError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)

    table = Table(title=f"Quality: {path.name}", show_header=True, header_style="bold magenta")
    table.add_column("Criterion", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Weight", justify="right")
    table.add_column("Passed")
    table.add_column("Issues / Blockers")
    for result in report.results:
        notes = [f"[red]{b}[/red]" for b in result.blockers] + result.issues
        table.add_row(
            result.criterion,
            f"{result.score:.0%}",
            f"{result.weight:.2f}",
            "✅" if result.passed else "❌",
            "\n".join(notes) or "-",
        )
    console.print(table)
    rprint(
        Panel.fit(
            f"Overall {report.overall:.1f} - {report.gate.value}",
            style=GATE_STYLES[report.gate],
        )
    )
    if not report.creation_allowed:
        raise typer.Exit(code=2)


@app.command()
def show(
    instance_id: str = typer.Argument(..., help="Workflow instance id"),
    workspace: str = typer.Option(..., help="Workspace id owning the instance"),
):
    """Show the persisted steps of a workflow instance."""
    doc = _store().get(INSTANCE_COLLECTION, instance_id)
    if doc is None or doc.data.get("owner", {}).get("workspace_id") != workspace:
        console.print(f"❌ Workflow {instance_id} not found")
        raise typer.Exit(code=1)
    instance = WorkflowInstance.model_validate(doc.data)

    table = Table(
        title=f"Workflow {instance.id} ({instance.status.value})",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("#", justify="right")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Details")
    for step in instance.steps:
        table.add_row(
            str(step.id),
            step.title,
            f"{STEP_ICONS[step.status]} {step.status.value}",
            step.error or step.details or "",
        )
    console.print(table)
    console.print(f"Ticket: {instance.ticket_id}  Rounds: {len(instance.rounds)}  Version: {doc.version}")


@app.command("purge-drafts")
def purge_drafts():
    """Delete expired breakdown drafts."""
    removed = DocumentDraftRepository(_store()).purge_expired()
    console.print(f"🧹 Removed {removed} expired draft(s)")


if __name__ == "__main__":
    app()

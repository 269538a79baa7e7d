"""
pt status - Show the current phase, progress and criteria of a project.
"""

from rich.console import Console
from rich.table import Table

from phasetrack.lib.overview import project_overview
from phasetrack.store.files import ProjectFiles


def cmd_status(args, files: ProjectFiles, console: Console = None) -> int:
    """Show project status."""
    console = console or Console()
    snapshot = files.load()
    graph, tracker = snapshot.graph, snapshot.tracker
    items = snapshot.store.list()
    overview = project_overview(items, graph.ids)

    current = graph.get(tracker.current_phase_id)
    phase_name = current.name if current else f"{tracker.current_phase_id} (missing from graph)"

    console.print(f"[bold]Project:[/bold] {snapshot.project_id}")
    console.print(f"[bold]Phase:[/bold]   {phase_name} ({tracker.overall_progress:.0f}% of phase items done)")
    if tracker.advance_pending:
        console.print("[yellow]Phase complete, awaiting approval. Run 'pt advance'.[/yellow]")
    if tracker.completed_phase_ids:
        console.print(f"[bold]Done:[/bold]    {', '.join(tracker.completed_phase_ids)}")
    console.print(
        f"[bold]Items:[/bold]   {overview.completed_items}/{overview.total_items} completed "
        f"({overview.completion_percent:.0f}%), "
        f"{overview.pending_integrations} pending integrations, "
        f"{overview.critical_issues} critical issues"
    )
    settings = snapshot.settings
    auto = "on" if settings.enabled else "off"
    console.print(f"[bold]Auto:[/bold]    {auto}, mode={settings.mode.value}")

    phases = Table(title="Phases")
    phases.add_column("Phase")
    phases.add_column("Items", justify="right")
    phases.add_column("Criteria", justify="right")
    phases.add_column("State")
    for phase in graph:
        counts = overview.by_phase.get(phase.id)
        required = phase.required_criteria()
        met = sum(1 for c in required if c.satisfied)
        if phase.id == tracker.current_phase_id:
            state = "[bold cyan]current[/bold cyan]"
        elif phase.id in tracker.completed_phase_ids:
            state = "[green]done[/green]"
        else:
            state = ""
        phases.add_row(
            phase.name,
            f"{counts.completed}/{counts.total}" if counts else "0/0",
            f"{met}/{len(required)}",
            state,
        )
    console.print(phases)

    if current:
        criteria = Table(title=f"Criteria: {current.name}")
        criteria.add_column("Criterion")
        criteria.add_column("Kind")
        criteria.add_column("Required")
        criteria.add_column("Satisfied")
        for c in current.criteria:
            satisfied = "-"
            if c.satisfied:
                when = c.satisfied_at.strftime("%Y-%m-%d %H:%M") if c.satisfied_at else "yes"
                satisfied = f"[green]{when}[/green]"
            criteria.add_row(c.id, c.kind.value, "yes" if c.required else "no", satisfied)
        console.print(criteria)
    return 0

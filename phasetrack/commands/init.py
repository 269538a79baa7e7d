"""
pt init - Create a project directory with phases, settings and empty state.
"""

from pathlib import Path

from phasetrack.store.files import ProjectFiles
from phasetrack.workflow.phases import PhaseGraphError, parse_phase_graph


def cmd_init(args, files: ProjectFiles) -> int:
    """Initialise a new project."""
    graph = None
    if args.phases:
        path = Path(args.phases)
        if not path.exists():
            print(f"ERROR: Phases file not found: {path}")
            return 2
        try:
            graph = parse_phase_graph(path.read_text(), str(path))
        except PhaseGraphError as e:
            print(f"ERROR: {e}")
            return 2

    snapshot = files.init(graph=graph)

    print(f"Initialised project '{snapshot.project_id}' at {files.project_dir}")
    print(f"  Phases: {' -> '.join(snapshot.graph.ids)}")
    print(f"  Mode:   {snapshot.settings.mode.value}")
    print()
    print("Next steps:")
    print("  pt add --title '...' --phase <phase>   # add work items")
    print("  pt run                                 # start auto-completion")
    return 0

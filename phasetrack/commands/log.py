"""
pt log - Show the engine event timeline.

Similar to `git log --oneline` but for criteria, completions and phase moves.
"""

import sys

from phasetrack.lib.timeline import format_event, read_events
from phasetrack.store.files import ProjectFiles


def cmd_log(args, files: ProjectFiles) -> int:
    """Show recent engine events, oldest first."""
    events = read_events(files.project_dir, limit=args.limit)
    if not events:
        print("No events found.")
        return 0

    use_color = not args.no_color and sys.stdout.isatty()
    for event in events:
        print(format_event(event, use_color=use_color))
    return 0

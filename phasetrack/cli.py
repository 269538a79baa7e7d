#!/usr/bin/env python3
"""phasetrack CLI entrypoint."""

import argparse
import logging
import os
import sys
from pathlib import Path

from phasetrack.commands import evaluate as cmd_evaluate_module
from phasetrack.commands import init as cmd_init_module
from phasetrack.commands import items as cmd_items_module
from phasetrack.commands import log as cmd_log_module
from phasetrack.commands import run as cmd_run_module
from phasetrack.commands import status as cmd_status_module
from phasetrack.lib.config import ConfigurationError
from phasetrack.lib.types import Category, ItemKind, ItemStatus, Priority
from phasetrack.store.files import PersistenceError, ProjectFiles


def get_root(args) -> Path:
    """Directory holding projects/ (--root, $PHASETRACK_ROOT, or cwd)."""
    if args.root:
        return Path(args.root)
    return Path(os.environ.get("PHASETRACK_ROOT", os.getcwd()))


def get_project_files(args) -> ProjectFiles:
    """Resolve the project from --project or the single configured project."""
    root = get_root(args)
    if args.project:
        return ProjectFiles(root, args.project)

    projects_dir = root / "projects"
    projects = []
    if projects_dir.exists():
        projects = sorted(d for d in projects_dir.iterdir() if d.is_dir())
    if len(projects) == 0:
        print("ERROR: No projects found. Create one with 'pt --project <id> init'", file=sys.stderr)
        sys.exit(2)
    elif len(projects) > 1:
        print("ERROR: Multiple projects found. Use --project to specify one:", file=sys.stderr)
        for p in projects:
            print(f"  {p.name}", file=sys.stderr)
        sys.exit(2)
    return ProjectFiles(root, projects[0].name)


def _dispatch(handler):
    """Wrap a command module function with project resolution and error reporting."""
    def run(args):
        try:
            files = get_project_files(args)
            return handler(args, files)
        except ConfigurationError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 2
        except PersistenceError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
    return run


def main(argv=None):
    parser = argparse.ArgumentParser(prog='pt', description='Project phase tracking and auto-completion')
    parser.add_argument('--root', '-r', help='Directory containing projects/ (default: $PHASETRACK_ROOT or cwd)')
    parser.add_argument('--project', '-p', help='Project id')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # pt init
    p_init = subparsers.add_parser('init', help='Create a project with default phases and settings')
    p_init.add_argument('--phases', help='phases.yaml to use instead of the default graph')
    p_init.set_defaults(func=_dispatch(cmd_init_module.cmd_init))

    # pt status
    p_status = subparsers.add_parser('status', help='Show phase, progress and criteria')
    p_status.set_defaults(func=_dispatch(cmd_status_module.cmd_status))

    # pt items
    p_items = subparsers.add_parser('items', help='List work items')
    p_items.add_argument('--category', '-c', choices=[c.value for c in Category])
    p_items.add_argument('--status', '-s', choices=[s.value for s in ItemStatus])
    p_items.add_argument('--phase', help='Only items in this phase')
    p_items.set_defaults(func=_dispatch(cmd_items_module.cmd_items))

    # pt add
    p_add = subparsers.add_parser('add', help='Create a work item')
    p_add.add_argument('--title', '-t', required=True)
    p_add.add_argument('--id', help='Item id (generated if omitted)')
    p_add.add_argument('--kind', '-k', choices=[k.value for k in ItemKind], default='task')
    p_add.add_argument('--category', '-c', choices=[c.value for c in Category], default='backend')
    p_add.add_argument('--priority', choices=[p.value for p in Priority], default='medium')
    p_add.add_argument('--phase', help='Phase id')
    p_add.add_argument('--tag', action='append', default=[], help='Tag (repeatable)')
    p_add.add_argument('--depends', action='append', default=[], help='Dependency item id (repeatable)')
    p_add.add_argument('--related', action='append', default=[], help='Related component id (repeatable)')
    p_add.add_argument('--estimate', type=float, help='Estimated effort in hours')
    p_add.add_argument('--description', '-d', default='')
    p_add.set_defaults(func=_dispatch(cmd_items_module.cmd_add))

    # pt set-status
    p_set = subparsers.add_parser('set-status', help='Manually change an item status')
    p_set.add_argument('id', help='Item id')
    p_set.add_argument('status', choices=[s.value for s in ItemStatus])
    p_set.set_defaults(func=_dispatch(cmd_items_module.cmd_set_status))

    # pt evaluate
    p_eval = subparsers.add_parser('evaluate', help='Run one evaluation pass and save')
    p_eval.add_argument('--dry-run', action='store_true', help='Evaluate without saving')
    p_eval.add_argument('--no-notify', action='store_true', help='Disable desktop notifications')
    p_eval.set_defaults(func=_dispatch(cmd_evaluate_module.cmd_evaluate))

    # pt advance
    p_advance = subparsers.add_parser('advance', help='Approve advancing to the next phase')
    p_advance.add_argument('--no-notify', action='store_true', help='Disable desktop notifications')
    p_advance.set_defaults(func=_dispatch(cmd_evaluate_module.cmd_advance))

    # pt log
    p_log = subparsers.add_parser('log', help='Show engine events')
    p_log.add_argument('--limit', '-n', type=int, default=20)
    p_log.add_argument('--no-color', action='store_true')
    p_log.set_defaults(func=_dispatch(cmd_log_module.cmd_log))

    # pt run
    p_run = subparsers.add_parser('run', help='Run the scheduler until interrupted')
    p_run.add_argument('--no-watch', action='store_true', help='Do not watch state.json for external edits')
    p_run.add_argument('--no-notify', action='store_true', help='Disable desktop notifications')
    p_run.set_defaults(func=_dispatch(cmd_run_module.cmd_run))

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())

#!/usr/bin/env python3
"""storyloop CLI entrypoint."""

import argparse
import logging
import os
import sys
from pathlib import Path

from storyloop.agents.claude import ClaudeExecutor
from storyloop.commands import cancel as cmd_cancel_module
from storyloop.commands import delete as cmd_delete_module
from storyloop.commands import events as cmd_events_module
from storyloop.commands import list as cmd_list_module
from storyloop.commands import run as cmd_run_module
from storyloop.commands import show as cmd_show_module
from storyloop.lib.agents_config import check_binary_available, load_agents_config
from storyloop.lib.config import default_ops_dir, load_run_options
from storyloop.lib.errors import ConfigError
from storyloop.lib.github import GitHubProvider, check_gh_available
from storyloop.lib.prefect_server import ensure_prefect_server
from storyloop.runner.models import RunStatus
from storyloop.workflow.registry import RunRegistry


def get_ops_dir(args) -> Path:
    """--ops-dir, else $STORYLOOP_OPS_DIR, else ./.storyloop"""
    if args.ops_dir:
        return Path(args.ops_dir).resolve()
    return default_ops_dir()


def setup_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else os.environ.get("STORYLOOP_LOG_LEVEL", "WARNING")
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_registry(args, ops_dir: Path, as_flow: bool = False) -> RunRegistry:
    """Registry wired to the Claude CLI and git/gh in the configured repo."""
    options = load_run_options(ops_dir)
    repo_path = Path(getattr(args, "repo", None) or options.repo_path or Path.cwd()).resolve()
    agents_config = load_agents_config(ops_dir)
    return RunRegistry(
        ops_dir,
        executor_factory=lambda run: ClaudeExecutor(repo_path, agents_config),
        provider_factory=lambda run: GitHubProvider(repo_path),
        options=options,
        as_flow=as_flow,
    )


def check_prerequisites(ops_dir: Path) -> bool:
    """Agent binary and gh must be available before a run starts."""
    binary = load_agents_config(ops_dir).binary
    if not check_binary_available(binary):
        print(f"ERROR: Agent command '{binary}' not found in PATH")
        return False
    ok, message = check_gh_available()
    if not ok:
        print(f"ERROR: {message}")
        return False
    return True


def _with_registry(handler, as_flow: bool = False, preflight: bool = False):
    def run(args):
        ops_dir = get_ops_dir(args)
        if preflight and not check_prerequisites(ops_dir):
            return 2
        if as_flow:
            ensure_prefect_server(ops_dir)
        registry = build_registry(args, ops_dir, as_flow=as_flow)
        return handler(args, ops_dir, registry)
    return run


def main():
    parser = argparse.ArgumentParser(prog='storyloop', description='Run a coding agent through a story backlog')
    parser.add_argument('--ops-dir', help='State directory (default: $STORYLOOP_OPS_DIR or ./.storyloop)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # storyloop run
    p_run = subparsers.add_parser('run', help='Start a run for a backlog and follow it')
    p_run.add_argument('backlog', help='Backlog JSON file (branchName + userStories)')
    p_run.add_argument('--project', '-p', help='Project id (default: backlog directory name)')
    p_run.add_argument('--repo', help='Repository the agent works in (default: REPO_PATH or cwd)')
    p_run.add_argument('--max-iterations', '-n', type=int, help='Iteration budget')
    p_run.add_argument('--max-cost', type=float, help='Cost ceiling in USD')
    p_run.add_argument('--max-wall-clock', type=float, help='Agent time ceiling in seconds')
    p_run.add_argument('--system-prompt-file', help='File whose contents are prepended to every prompt')
    p_run.add_argument('--credential-env', help='Env var holding the agent credential '
                                                '(default: CLAUDE_CODE_OAUTH_TOKEN)')
    p_run.add_argument('--quiet', '-q', action='store_true', help='Hide agent text, show progress only')
    p_run.add_argument('--skip-checks', action='store_true', help='Skip agent/gh availability checks')
    p_run.set_defaults(func=None)

    # storyloop resume
    p_resume = subparsers.add_parser('resume', help='Resume a paused or interrupted run')
    p_resume.add_argument('id', help='Run ID')
    p_resume.add_argument('--repo', help='Repository the agent works in (default: REPO_PATH or cwd)')
    p_resume.add_argument('--credential-env', help='Env var holding the agent credential')
    p_resume.add_argument('--quiet', '-q', action='store_true', help='Hide agent text, show progress only')
    p_resume.set_defaults(func=_with_registry(cmd_run_module.cmd_resume, as_flow=True))

    # storyloop list
    p_list = subparsers.add_parser('list', help='List runs, newest first')
    p_list.add_argument('--project', '-p', help='Only runs for this project')
    p_list.add_argument('--status', choices=[s.value for s in RunStatus], help='Only runs in this state')
    p_list.add_argument('--limit', type=int, default=50, help='Maximum rows (default: 50)')
    p_list.set_defaults(func=_with_registry(cmd_list_module.cmd_list))

    # storyloop show
    p_show = subparsers.add_parser('show', help='Show run details')
    p_show.add_argument('id', help='Run ID')
    p_show.add_argument('--iterations', '-i', action='store_true', help='List every iteration')
    p_show.set_defaults(func=_with_registry(cmd_show_module.cmd_show))

    # storyloop events
    p_events = subparsers.add_parser('events', help='Replay a run\'s events (follows live runs)')
    p_events.add_argument('id', help='Run ID')
    p_events.add_argument('--from', dest='from_sequence', type=int, default=0,
                          help='Only events after this sequence number')
    p_events.add_argument('--json', action='store_true', help='One JSON record per line')
    p_events.add_argument('--quiet', '-q', action='store_true', help='Hide agent text')
    p_events.set_defaults(func=_with_registry(cmd_events_module.cmd_events))

    # storyloop pause
    p_pause = subparsers.add_parser('pause', help='Pause a run after its current iteration')
    p_pause.add_argument('id', help='Run ID')
    p_pause.set_defaults(func=_with_registry(cmd_cancel_module.cmd_pause))

    # storyloop cancel
    p_cancel = subparsers.add_parser('cancel', help='Cancel a run after its current iteration')
    p_cancel.add_argument('id', help='Run ID')
    p_cancel.set_defaults(func=_with_registry(cmd_cancel_module.cmd_cancel))

    # storyloop delete
    p_delete = subparsers.add_parser('delete', help='Permanently delete a finished run')
    p_delete.add_argument('id', help='Run ID')
    p_delete.add_argument('--confirm', action='store_true', help='Confirm deletion')
    p_delete.set_defaults(func=_with_registry(cmd_delete_module.cmd_delete))

    args = parser.parse_args()
    setup_logging(args.verbose)

    if args.command == 'run':
        args.func = _with_registry(cmd_run_module.cmd_run, as_flow=True, preflight=not args.skip_checks)

    try:
        return args.func(args)
    except ConfigError as e:
        print(f"ERROR: Invalid configuration: {e}")
        return 2


if __name__ == '__main__':
    sys.exit(main())

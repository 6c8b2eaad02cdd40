"""CLI entry points for the plan orchestrator."""

import argparse
import os
import shutil
import sys
import traceback

from auto_claude_plans.config import OrchestratorConfig, parse_bool
from auto_claude_plans.errors import OrchestratorError
from auto_claude_plans.git_helper import GitHelper
from auto_claude_plans.lock import LockManager
from auto_claude_plans.models import StepStatus
from auto_claude_plans.orchestrator import INTERRUPT_EXIT_CODE, Orchestrator
from auto_claude_plans.plan_store import (
    find_plan_for_branch, get_plan_files, load_plan, resolve_plan_path,
    save_plan, validate_plan_structure,
)
from auto_claude_plans.utils import cleanup_temp_plans, cleanup_worktrees

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID = 2


def _bool_flag(parser, name: str, help_text: str):
    parser.add_argument(name, nargs='?', const=True, default=None,
                        type=parse_bool, metavar='BOOL', help=help_text)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='auto-claude-plans',
        description='Execute YAML step plans with AI coding agents')
    parser.add_argument('--repo', help='Repository root (default: cwd)')
    parser.add_argument('--work-dir',
                        help='External base directory for plans and reports')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug output')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('exec', help='Process pending plans')
    p.add_argument('--plan', help='Run a single plan (path or file name)')
    p.add_argument('--dry-run', action='store_true',
                   help='Show what would run without changing anything')
    p.add_argument('--verbose', action='store_true',
                   help='Stream agent output')
    _bool_flag(p, '--resume', 'Continue the plan of the current branch')
    _bool_flag(p, '--review', 'Run the review/edit loop on completed steps')
    _bool_flag(p, '--parallel', 'Run parallel steps in git worktrees')
    p.add_argument('--timeout', type=float,
                   help='Per-invocation agent timeout in seconds')

    p = sub.add_parser('resume',
                       help='Unblock steps and continue the current plan')
    p.add_argument('--plan', help='Plan to resume (path or file name)')
    group = p.add_mutually_exclusive_group()
    group.add_argument('--step', help='Unblock only this step')
    group.add_argument('--all', action='store_true',
                       help='Unblock every blocked step (default)')
    p.add_argument('--dry-run', action='store_true')
    p.add_argument('--verbose', action='store_true')

    p = sub.add_parser('status', help='Show plan and lock status')
    p.add_argument('--plan', help='Plan to show (path or file name)')

    p = sub.add_parser('unblock', help='Reset blocked steps to pending')
    p.add_argument('plan', nargs='?', help='Plan (default: current branch)')
    group = p.add_mutually_exclusive_group()
    group.add_argument('--step', help='Unblock only this step')
    group.add_argument('--all', action='store_true',
                       help='Unblock every blocked step (default)')
    p.add_argument('--dry-run', action='store_true')

    p = sub.add_parser('validate-plan', help='Check a plan file')
    p.add_argument('file', help='Plan file to validate')
    p.add_argument('--no-resave', action='store_true',
                   help='Do not rewrite a valid plan in normalized form')

    p = sub.add_parser('ingest-plan',
                       help='Validate a plan and copy it into the plans dir')
    p.add_argument('file', help='Plan file to ingest')
    p.add_argument('--force', action='store_true',
                   help='Overwrite an existing plan of the same name')

    sub.add_parser('plans-dir', help='Print the resolved plans directory')
    return parser


def _config(args, **overrides) -> OrchestratorConfig:
    return OrchestratorConfig.resolve(repo_root=args.repo,
                                      work_dir=args.work_dir,
                                      debug=args.debug, **overrides)


def _current_plan_path(config: OrchestratorConfig, plan_arg):
    if plan_arg:
        path = resolve_plan_path(plan_arg, config.plans_dir)
        if path is None:
            raise OrchestratorError(f"Plan file not found: {plan_arg}")
        return path
    branch = GitHelper(config.repo_root).current_branch()
    plan = find_plan_for_branch(config.plans_dir, branch, config.completed_dir)
    if plan is None:
        raise OrchestratorError(f"No plan found with work_branch matching "
                                f"'{branch}'")
    return plan.file_path


# -- commands -----------------------------------------------------------------

def cmd_exec(args) -> int:
    config = _config(args, parallel=args.parallel, review=args.review,
                     agent_timeout=args.timeout, verbose=args.verbose)
    orch = Orchestrator(config)
    if not args.dry_run:
        cleanup_worktrees(orch.git)
        cleanup_temp_plans(config.temp_dir)
    ok = orch.run(plan=args.plan, dry_run=args.dry_run,
                  resume=bool(args.resume))
    return EXIT_OK if ok else EXIT_FAILURE


def cmd_resume(args) -> int:
    config = _config(args, verbose=args.verbose)
    config.ensure_directories()
    orch = Orchestrator(config)
    plan_file = _current_plan_path(config, args.plan)

    ids = orch.unblock(plan_file, step_id=args.step, dry_run=args.dry_run)
    if ids:
        verb = "Would unblock" if args.dry_run else "Unblocked"
        print(f"{verb}: {', '.join(ids)}")
    ok = orch.run(plan=plan_file, dry_run=args.dry_run, resume=True)
    return EXIT_OK if ok else EXIT_FAILURE


def cmd_unblock(args) -> int:
    config = _config(args)
    orch = Orchestrator(config)
    plan_file = _current_plan_path(config, args.plan)
    ids = orch.unblock(plan_file, step_id=args.step, dry_run=args.dry_run)
    if not ids:
        print("No blocked steps found.")
    elif args.dry_run:
        print(f"Would unblock {len(ids)} step(s): {', '.join(ids)}")
    return EXIT_OK


def cmd_status(args) -> int:
    config = _config(args)
    if args.plan:
        paths = [_current_plan_path(config, args.plan)]
    else:
        paths = get_plan_files(config.plans_dir)

    locks = LockManager(config.work_dir, debug=config.debug)
    lock = locks.status()
    if lock['locked']:
        print(f"Orchestrator running (PID {lock['pid']}, started "
              f"{lock['startedAt']})")
    elif lock['stale']:
        print(f"Stale lock from PID {lock['pid']} (will be reclaimed)")
    else:
        print("No orchestrator running")
    for info in locks.list_plan_locks():
        print(f"  plan lock: {info['planId']} (PID {info['pid']})")

    if not paths:
        print(f"No plans in {config.plans_dir}")
        return EXIT_OK

    marks = {
        StepStatus.COMPLETE.value: 'x',
        StepStatus.IN_PROGRESS.value: '>',
        StepStatus.BLOCKED.value: '!',
    }
    for path in paths:
        plan = load_plan(path)
        branch = plan.metadata.get('work_branch') or 'not dispatched'
        print(f"\n{plan.file_name} [{branch}]")
        for step in plan.steps:
            status = step.get('status') or StepStatus.PENDING.value
            line = (f"  [{marks.get(status, ' ')}] {step.get('id')}: "
                    f"{step.get('description', '')}")
            if status == StepStatus.BLOCKED.value and \
                    step.get('blocked_reason'):
                line += f" ({step.get('blocked_reason')})"
            print(line)
    return EXIT_OK


def cmd_validate_plan(args) -> int:
    path = os.path.abspath(args.file)
    errors, warnings = validate_plan_structure(path)
    for warning in warnings:
        print(f"WARNING: {warning}")
    if errors:
        print(f"Plan validation failed: {path}", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return EXIT_INVALID

    if not args.no_resave:
        save_plan(load_plan(path))
    print(f"Plan is valid: {path}")
    return EXIT_OK


def cmd_ingest_plan(args) -> int:
    source = os.path.abspath(args.file)
    if not os.path.isfile(source):
        print(f"File not found: {args.file}", file=sys.stderr)
        return EXIT_FAILURE

    errors, warnings = validate_plan_structure(source)
    if errors:
        print("Validation errors:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return EXIT_INVALID
    for warning in warnings:
        print(f"WARNING: {warning}")

    config = _config(args)
    os.makedirs(config.plans_dir, exist_ok=True)
    dest = os.path.join(config.plans_dir, os.path.basename(source))
    if os.path.exists(dest) and not args.force:
        print(f"Plan already exists: {dest}", file=sys.stderr)
        print("Use --force to overwrite", file=sys.stderr)
        return EXIT_FAILURE
    shutil.copyfile(source, dest)
    print(f"Plan ingested: {dest}")
    return EXIT_OK


def cmd_plans_dir(args) -> int:
    print(_config(args).plans_dir)
    return EXIT_OK


COMMANDS = {
    'exec': cmd_exec,
    'resume': cmd_resume,
    'status': cmd_status,
    'unblock': cmd_unblock,
    'validate-plan': cmd_validate_plan,
    'ingest-plan': cmd_ingest_plan,
    'plans-dir': cmd_plans_dir,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return COMMANDS[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return INTERRUPT_EXIT_CODE
    except OrchestratorError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        if args.debug:
            traceback.print_exc()
        return EXIT_FAILURE


if __name__ == '__main__':
    sys.exit(main())

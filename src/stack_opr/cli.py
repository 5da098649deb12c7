"""CLI handlers for stack verb commands (apply, destroy, plan, validate, status).

Usage:
    kfstack stack apply -S <stack> [--dry-run] [--json-output] [--verbose]
    kfstack stack destroy -S <stack> [--dry-run] [--yes]
    kfstack stack plan -S <stack>
    kfstack stack validate -S <stack> [--preflight]
    kfstack stack status -S <stack> [--json-output]
"""

import argparse
import json
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional

from config import ConfigError, get_site_config_dir, get_state_dir, list_stacks, load_settings
from credentials import broker_from_settings
from stack import Stack, load_stack
from stack_opr.errors import StateLockedError, ValidationError
from stack_opr.executor import ExecutionEngine, ExecutionReport, Outcome, preview
from stack_opr.graph import Plan, build_plan
from stack_opr.state import ResourceStatus, StateStore
from validation import format_preflight_results, validate_readiness

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_ABORTED = 3
EXIT_INVALID = 4

OUTCOME_EXIT_CODES = {
    Outcome.SUCCESS: EXIT_SUCCESS,
    Outcome.PARTIAL_FAILURE: EXIT_PARTIAL_FAILURE,
    Outcome.ABORTED: EXIT_ABORTED,
}


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with the stack selection options."""
    parser = argparse.ArgumentParser(
        prog=f'kfstack stack {verb}',
        description=description,
    )
    available = list_stacks()
    parser.add_argument(
        '--stack', '-S',
        help=f'Stack name from site-config/stacks/. Available: {", ".join(available) if available else "none"}',
    )
    parser.add_argument(
        '--stack-file',
        help='Path to stack file',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    return parser


def _run_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Parser for verbs that execute a plan (apply, destroy)."""
    parser = _common_parser(verb, description)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )
    parser.add_argument(
        '--max-retries',
        type=int,
        help='Override retries for transient errors',
    )
    parser.add_argument(
        '--timeout', '-t',
        type=int,
        help='Override default per-resource timeout in seconds (0 = none)',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool = False) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _site_config_dir(args) -> Optional[Path]:
    """Site-config directory for the selected stack, if one can be found."""
    if getattr(args, 'stack_file', None):
        path = Path(args.stack_file)
        return path.parent.parent if path.parent.name == 'stacks' else path.parent
    try:
        return get_site_config_dir()
    except ConfigError:
        return None


def _cli_overrides(args) -> dict:
    overrides = {}
    if getattr(args, 'max_retries', None) is not None:
        overrides['max_retries'] = args.max_retries
    if getattr(args, 'timeout', None) is not None:
        overrides['timeout'] = args.timeout
    return overrides


def _load(args) -> tuple[Stack, Plan]:
    """Load the stack named on the command line and build its plan.

    Raises:
        ConfigError: Missing or invalid stack/settings
        ValidationError: Duplicate ids, unknown dependencies or cycles
    """
    if not args.stack and not args.stack_file:
        raise ConfigError("specify a stack with -S or --stack-file")

    site_settings = load_settings(_site_config_dir(args))
    stack = load_stack(name=args.stack, file_path=args.stack_file, settings=site_settings)
    stack.settings = stack.settings.merged(_cli_overrides(args))
    plan = build_plan(stack.resources)
    return stack, plan


def _store(stack: Stack) -> StateStore:
    return StateStore(stack.name, get_state_dir(stack.settings))


def _run_preflight(args, stack: Stack, operation: str) -> Optional[int]:
    """Run preflight checks for apply/destroy.

    Returns:
        None if checks pass, EXIT_INVALID if they fail.
    """
    if args.skip_preflight or args.dry_run:
        return None

    errors = validate_readiness(stack, stack.settings, operation)
    if errors:
        print("\nPre-flight validation failed:", file=sys.stderr)
        for error in errors:
            for i, line in enumerate(error.split('\n')):
                prefix = "  ✗ " if i == 0 else "    "
                print(f"{prefix}{line}", file=sys.stderr)
        print("\nUse --skip-preflight to bypass these checks\n", file=sys.stderr)
        return EXIT_INVALID
    logger.info("Pre-flight validation passed")
    return None


def _install_signal_handlers(engine: ExecutionEngine) -> dict:
    """Route SIGINT/SIGTERM to engine cancellation; returns previous handlers."""
    previous = {}

    def _handler(signum, _frame):
        logger.warning(f"Received {signal.Signals(signum).name}, stopping after the current resource")
        engine.cancel()
        # A second signal falls back to the default behaviour
        signal.signal(signum, previous.get(signum, signal.SIG_DFL))

    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.getsignal(signum)
        signal.signal(signum, _handler)
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _summarize(report: ExecutionReport) -> None:
    """Log a one-line-per-resource summary of a run."""
    for state in report.resources:
        line = f"  {state.id}: {state.status.value}"
        if state.status == ResourceStatus.FAILED:
            line += f" [{state.error_class}] {state.last_error}"
        logger.info(line)


def _execute(args, operation: str) -> int:
    """Shared body of apply and destroy."""
    try:
        stack, plan = _load(args)
    except (ConfigError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    store = _store(stack)

    if args.dry_run:
        try:
            preview(plan, store, operation, stack.name)
        except ConfigError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_INVALID
        return EXIT_SUCCESS

    preflight_rc = _run_preflight(args, stack, operation)
    if preflight_rc is not None:
        return preflight_rc

    if operation == 'destroy' and not args.yes:
        print(f"\nWARNING: This will destroy all resources in stack '{stack.name}'.")
        print(f"State: {store.path}")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return EXIT_ABORTED

    engine = ExecutionEngine.from_settings(stack.settings)
    broker = broker_from_settings(stack.settings, _site_config_dir(args))

    verb = 'Applying' if operation == 'apply' else 'Destroying'
    logger.info(f"{verb} stack '{stack.name}' ({len(plan)} resources)")

    previous = _install_signal_handlers(engine)
    try:
        run = engine.apply if operation == 'apply' else engine.destroy
        report = run(plan, store, broker)
    except (ConfigError, StateLockedError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    finally:
        _restore_signal_handlers(previous)

    _summarize(report)
    if args.json_output:
        output = report.to_dict()
        output['stack'] = stack.name
        print(json.dumps(output, indent=2))

    return OUTCOME_EXIT_CODES[report.outcome]


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _run_parser('apply', 'Create or update the resources of a stack')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _execute(args, 'apply')


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _run_parser('destroy', 'Tear down the resources of a stack in reverse order')
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _execute(args, 'destroy')


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb: print the apply (or destroy) order."""
    parser = _common_parser('plan', 'Show the execution order of a stack')
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Show the teardown order instead',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        stack, plan = _load(args)
    except (ConfigError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    try:
        preview(plan, _store(stack), 'destroy' if args.destroy else 'apply', stack.name)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    return EXIT_SUCCESS


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Checks stack structure, action parameters and the dependency graph.
    With --preflight, also checks tools, AWS credentials and endpoints.
    """
    parser = _common_parser('validate', 'Validate a stack without executing it')
    parser.add_argument(
        '--preflight',
        action='store_true',
        help='Also run pre-flight readiness checks',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        stack, plan = _load(args)
    except (ConfigError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    print(f"Stack '{stack.name}' is valid ({len(plan)} resources)")
    print(f"  Order: {' -> '.join(plan.ids)}")

    if args.preflight:
        errors = validate_readiness(stack, stack.settings)
        print(format_preflight_results(stack.name, errors))
        if errors:
            return EXIT_INVALID
    return EXIT_SUCCESS


def status_main(argv: list) -> int:
    """Handle 'stack status' verb: show recorded resource states."""
    parser = _common_parser('status', 'Show recorded state of a stack')
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        stack, plan = _load(args)
    except (ConfigError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    store = _store(stack)
    try:
        recorded = {s.id: s for s in store.snapshot()}
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    if args.json_output:
        output = {
            'stack': stack.name,
            'state_file': str(store.path),
            'resources': [
                recorded[d.id].to_dict() if d.id in recorded
                else {'id': d.id, 'status': ResourceStatus.PENDING.value, 'attempts': 0}
                for d in plan
            ],
        }
        print(json.dumps(output, indent=2))
        return EXIT_SUCCESS

    print(f"Stack: {stack.name}")
    print(f"State: {store.path}")
    print()
    print(f"  {'RESOURCE':<24} {'KIND':<16} {'STATUS':<12} {'ATTEMPTS':>8}  UPDATED")
    for descriptor in plan:
        state = recorded.get(descriptor.id)
        status = state.status.value if state else ResourceStatus.PENDING.value
        attempts = state.attempts if state else 0
        updated = ''
        if state and state.updated_at:
            updated = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(state.updated_at))
        print(f"  {descriptor.id:<24} {descriptor.kind.value:<16} {status:<12} {attempts:>8}  {updated}")
        if state and state.status == ResourceStatus.FAILED:
            print(f"      [{state.error_class}] {state.last_error}")
    orphans = sorted(set(recorded) - set(plan.ids))
    if orphans:
        print(f"\n  Recorded but no longer in stack: {', '.join(orphans)}")
    return EXIT_SUCCESS


VERBS = {
    'apply': (apply_main, 'Create or update stack resources'),
    'destroy': (destroy_main, 'Tear down stack resources in reverse order'),
    'plan': (plan_main, 'Show execution order and pending changes'),
    'validate': (validate_main, 'Validate stack structure and dependencies'),
    'status': (status_main, 'Show recorded resource states'),
}

#!/usr/bin/env python3
"""CLI entry point for kfstack.

Supports noun-action subcommands:
- kfstack stack apply -S kubeflow-platform
- kfstack stack destroy -S kubeflow-platform --yes

Nouns:
- stack: Stack lifecycle (apply/destroy/plan/validate/status)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Stack lifecycle (apply/destroy/plan/validate/status)",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to verb-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-S', 'kubeflow-platform'])

    Returns:
        Exit code
    """
    from stack_opr.cli import VERBS

    if not argv or argv[0].startswith('-'):
        print("Usage: kfstack stack <verb> [options]")
        print()
        print("Verbs:")
        for verb, (_, desc) in VERBS.items():
            print(f"  {verb:<10}{desc}")
        print()
        print("Run 'kfstack stack <verb> --help' for verb-specific options.")
        return 1 if not argv else 0

    verb = argv[0]
    if verb not in VERBS:
        print(f"Error: Unknown stack verb '{verb}'")
        print(f"Available verbs: {', '.join(VERBS)}")
        return 1

    handler, _ = VERBS[verb]
    rc: int = handler(argv[1:])
    return rc


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        return dispatch_stack(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"kfstack {get_version()}")
    print()
    print("Usage: kfstack <noun> <verb> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'kfstack <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  kfstack stack validate -S kubeflow-platform --preflight")
    print("  kfstack stack apply -S kubeflow-platform --dry-run")
    print("  kfstack stack apply -S kubeflow-platform")
    print("  kfstack stack status -S kubeflow-platform --json-output")
    print("  kfstack stack destroy -S kubeflow-platform --yes")


def main():
    """CLI entry point: dispatch to noun-verb handlers."""
    argv = sys.argv[1:]

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    if argv[0] == '--version':
        print(f"kfstack {get_version()}")
        return 0

    noun = argv[0]
    if noun in NOUN_COMMANDS:
        return dispatch_noun(noun, argv[1:])

    print(f"Error: Unknown command '{noun}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())

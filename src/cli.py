#!/usr/bin/env python3
"""CLI entry point for envie.

Verb subcommands, plus the 'env' noun:
- envie deploy -S api --merge-request 123
- envie destroy --merge-request 123
- envie env list

Run 'envie <command> --help' for command-specific options.
"""

import logging
import subprocess
import sys
from pathlib import Path

# Verb commands (and nouns with actions)
COMMANDS = {
    "deploy": "Deploy a service and its dependencies (MR or stable)",
    "destroy": "Destroy a merge request or stable environment",
    "env": "Recorded environments (list/prune)",
    "show": "Service catalog and dependency trees",
    "output": "Combined outputs recorded for a scope",
    "generate": "Render a .env file from recorded outputs",
    "clean": "Remove engine working files from service directories",
    "init": "Scaffold a workspace with example services",
}


def dispatch(command: str, argv: list) -> int:
    """Dispatch to the command-specific handler.

    Args:
        command: The command (e.g., "deploy", "env")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if command == "deploy":
        from env_opr.cli import deploy_main
        rc: int = deploy_main(argv)
        return rc
    if command == "destroy":
        from env_opr.cli import destroy_main
        rc = destroy_main(argv)
        return rc
    if command == "env":
        from env_opr.cli import env_main
        rc = env_main(argv)
        return rc
    if command == "show":
        from env_opr.cli import show_main
        rc = show_main(argv)
        return rc
    if command == "output":
        from env_opr.cli import output_main
        rc = output_main(argv)
        return rc
    if command == "generate":
        from env_opr.cli import generate_main
        rc = generate_main(argv)
        return rc
    if command == "clean":
        from env_opr.cli import clean_main
        rc = clean_main(argv)
        return rc
    if command == "init":
        from env_opr.cli import init_main
        rc = init_main(argv)
        return rc

    print(f"Error: Command '{command}' not yet implemented")
    return 1


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

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing commands."""
    print(f"envie {get_version()}")
    print()
    print("Usage: envie <command> [options]")
    print()
    print("Commands:")
    for command, desc in COMMANDS.items():
        print(f"  {command:<12} {desc}")
    print()
    print("Run 'envie <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  envie init --name myapp --no-prompt")
    print("  envie deploy -S api --merge-request 123")
    print("  envie deploy -S api --merge-request 123 -E database:ephemeral --dry-run")
    print("  envie deploy -S database --stable sandbox")
    print("  envie destroy --merge-request 123 --yes")
    print("  envie env list")
    print("  envie generate --merge-request 123 --template .env.template")


def main(argv=None):
    """CLI entry point: dispatch to command handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0
    if argv[0] == '--version':
        print(f"envie {get_version()}")
        return 0

    command = argv[0]
    if command in COMMANDS:
        return dispatch(command, argv[1:])

    print(f"Error: Unknown command '{command}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())

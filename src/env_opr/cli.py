"""CLI handlers for environment verb commands.

Usage:
    envie deploy [-S <service>] --merge-request <id> [-E svc:policy] [--dry-run] [--json-output]
    envie deploy [-S <service>] --stable <env> [--dry-run] [--json-output]
    envie destroy --merge-request <id> [--dry-run] [--yes] [--json-output]
    envie destroy --stable <env> [--dry-run] [--yes] [--force]
    envie env list [--merge-request <id>] [--json-output]
    envie env prune --merge-request <id> | --stable <env>
    envie show [-S <service>]
    envie output --merge-request <id> [-f <file>]
    envie generate --merge-request <id> --template <file> [--target <file>]
    envie clean [-S <service>]
    envie init [--name <name>] [--description <text>] [--no-prompt]

Exit codes: 0 success, 1 partial failure or execution error,
2 configuration or resolution error.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from actions.tofu import TofuExecutor, clean
from common import CancelToken
from config import WORKSPACE_FILE, WorkspaceConfig, load_workspace_config
from env_opr.executor import DeploymentReport, EnvironmentOperator
from env_opr.graph import build_graph
from env_opr.ledger import Ledger, stable_scope
from env_opr.outputs import collect_outputs, generate_env, write_outputs
from env_opr.scaffold import DEFAULT_DESCRIPTION, init_project
from errors import ConfigError, ConfigurationError, EnvieError, ResolutionError
from registry import Catalog, DependencyPolicy, ServiceRegistry, discover_service

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(prog=f'envie {verb}', description=description)
    parser.add_argument(
        '--root',
        type=Path,
        help='Project root (override: ENVIE_ROOT env var)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _add_scope_args(parser: argparse.ArgumentParser, required: bool = True) -> None:
    group = parser.add_mutually_exclusive_group(required=required)
    group.add_argument(
        '--merge-request', '-m',
        help='Merge request id',
    )
    group.add_argument(
        '--stable',
        metavar='ENV',
        help='Stable environment name',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
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


def _emit_json(data) -> None:
    """Emit structured JSON output."""
    print(json.dumps(data, indent=2, sort_keys=False, default=str))


def _load(args) -> tuple[WorkspaceConfig, Catalog, Ledger]:
    """Load workspace config, service catalog and ledger."""
    config = load_workspace_config(args.root)
    catalog = ServiceRegistry(config).load()
    return config, catalog, Ledger(config.state_dir)


def _make_operator(config: WorkspaceConfig, catalog: Catalog, ledger: Ledger,
                   dry_run: bool = False, overrides: Optional[dict] = None,
                   cancel: Optional[CancelToken] = None, json_output: bool = False) -> EnvironmentOperator:
    engine = TofuExecutor(
        state_dir=config.state_dir,
        binary=config.binary,
        timeout_init=config.timeout_init,
        timeout_apply=config.timeout_apply,
    )
    return EnvironmentOperator(
        catalog=catalog,
        config=config,
        ledger=ledger,
        engine=engine,
        dry_run=dry_run,
        overrides=overrides or {},
        cancel=cancel or CancelToken(),
        json_output=json_output,
    )


def _install_cancel_handlers(cancel: CancelToken) -> None:
    """Route SIGINT/SIGTERM to the cancel token (main thread only)."""
    if threading.current_thread() is not threading.main_thread():
        return

    def handle_signal(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}, cancelling")
        cancel.cancel()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def _parse_overrides(values: list[str]) -> dict[str, DependencyPolicy]:
    """Parse repeated -E service:policy flags."""
    overrides = {}
    for value in values or []:
        service, sep, policy = value.partition(':')
        if not sep or not service:
            raise ConfigError(f"Invalid -E value '{value}' (expected service:policy)")
        overrides[service] = DependencyPolicy.parse(policy)
    return overrides


def _guarded(handler: Callable[[argparse.Namespace], int], args: argparse.Namespace) -> int:
    """Run a verb handler, mapping orchestration errors to exit codes."""
    try:
        return handler(args)
    except (ConfigurationError, ResolutionError) as e:
        logger.error(str(e))
        if args.json_output:
            _emit_json({'success': False, 'error': {'code': e.code, 'message': e.message}})
        return EXIT_CONFIG
    except EnvieError as e:
        logger.error(str(e))
        if args.json_output:
            _emit_json({'success': False, 'error': {'code': e.code, 'message': e.message}})
        return EXIT_FAILED


def _report_exit(report: DeploymentReport) -> int:
    if report.with_status('unresolved'):
        return EXIT_CONFIG
    return EXIT_OK if report.success else EXIT_FAILED


def _print_summary(report: DeploymentReport) -> None:
    if report.dry_run:
        return
    print("")
    print(f"{report.verb.capitalize()} '{report.root or report.scope}' ({report.scope}): "
          f"{'succeeded' if report.success else 'FAILED'}")
    for name in sorted(report.nodes):
        outcome = report.nodes[name]
        line = f"  {name:<20} {outcome.status:<10} {outcome.kind}"
        if outcome.error:
            line += f"  {outcome.error}"
        print(line)


def _confirm(message: str) -> bool:
    print(f"\nWARNING: {message}")
    print("This action cannot be undone.")
    response = input("Continue? [y/N] ").strip().lower()
    return response == 'y'


# -- deploy ----------------------------------------------------------------

def _deploy(args) -> int:
    config, catalog, ledger = _load(args)
    cancel = CancelToken(timeout=args.timeout)
    _install_cancel_handlers(cancel)
    operator = _make_operator(config, catalog, ledger, dry_run=args.dry_run,
                              overrides=_parse_overrides(args.environment), cancel=cancel,
                              json_output=args.json_output)
    if args.stable:
        report = operator.deploy_stable(args.stable, service=args.service)
    else:
        report = operator.deploy(args.merge_request, service=args.service)

    if args.json_output:
        _emit_json(report.to_dict())
    else:
        _print_summary(report)
    return _report_exit(report)


def deploy_main(argv: list) -> int:
    """Handle 'deploy' verb."""
    parser = _common_parser('deploy', 'Deploy a service and its dependencies')
    parser.add_argument(
        '--service', '-S',
        help='Service to deploy (default: discovered from the working directory)',
    )
    _add_scope_args(parser)
    parser.add_argument(
        '--environment', '-E',
        action='append',
        default=[],
        metavar='SERVICE:POLICY',
        help='Override a dependency policy (ephemeral, stable, stable.<env>); repeatable',
    )
    parser.add_argument(
        '--dry-run', '-D',
        action='store_true',
        help='Preview the plan without executing',
    )
    parser.add_argument(
        '--timeout',
        type=float,
        help='Overall deadline in seconds',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _guarded(_deploy, args)


# -- destroy ---------------------------------------------------------------

def _destroy(args) -> int:
    config, catalog, ledger = _load(args)
    cancel = CancelToken(timeout=args.timeout)
    _install_cancel_handlers(cancel)
    operator = _make_operator(config, catalog, ledger, dry_run=args.dry_run, cancel=cancel,
                              json_output=args.json_output)

    target = f"stable environment '{args.stable}'" if args.stable else f"merge request {args.merge_request}"
    if not args.dry_run and not args.yes:
        if not _confirm(f"This will destroy everything recorded for {target}."):
            print("Aborted.")
            return EXIT_FAILED

    if args.stable:
        report = operator.destroy_stable(args.stable, force=args.force)
    else:
        report = operator.destroy(args.merge_request)

    if args.json_output:
        _emit_json(report.to_dict())
    else:
        _print_summary(report)
    return _report_exit(report)


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy', 'Destroy a merge request or stable environment')
    _add_scope_args(parser)
    parser.add_argument(
        '--dry-run', '-D',
        action='store_true',
        help='Preview destroy order without executing',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    parser.add_argument(
        '--force',
        action='store_true',
        help='Destroy a stable environment even while merge requests bind to it',
    )
    parser.add_argument(
        '--timeout',
        type=float,
        help='Overall deadline in seconds',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _guarded(_destroy, args)


# -- env -------------------------------------------------------------------

def _format_time(timestamp: Optional[float]) -> str:
    if not timestamp:
        return '-'
    return datetime.fromtimestamp(timestamp).strftime('%Y-%m-%d %H:%M:%S')


def _env_list(args) -> int:
    config, catalog, ledger = _load(args)
    operator = _make_operator(config, catalog, ledger)
    scope = stable_scope(args.stable) if args.stable else None
    entries = ledger.list(scope) if scope else operator.env_list(args.merge_request)

    if args.json_output:
        _emit_json([e.to_dict() for e in entries])
        return EXIT_OK

    if not entries:
        print("No environments recorded.")
        return EXIT_OK
    print(f"{'SCOPE':<16} {'SERVICE':<20} {'KIND':<10} {'STATUS':<10} {'UPDATED':<20} STATE KEY")
    for e in entries:
        print(f"{e.merge_request_id:<16} {e.service_name:<20} {e.kind:<10} {e.status:<10} "
              f"{_format_time(e.updated_at or e.created_at):<20} {e.state_key}")
    return EXIT_OK


def _env_prune(args) -> int:
    config, catalog, ledger = _load(args)
    operator = _make_operator(config, catalog, ledger)
    scope = stable_scope(args.stable) if args.stable else args.merge_request
    removed = operator.prune(scope)
    if args.json_output:
        _emit_json({'scope': scope, 'removed': removed})
    else:
        print(f"Pruned {len(removed)} entr{'y' if len(removed) == 1 else 'ies'} from '{scope}'")
    return EXIT_OK


def env_main(argv: list) -> int:
    """Handle 'env' noun (list, prune)."""
    if not argv or argv[0].startswith('-'):
        print("Usage: envie env <action> [options]")
        print()
        print("Actions:")
        print("  list      List recorded environments")
        print("  prune     Drop ledger records of a destroyed scope")
        return 1 if not argv else 0

    action, rest = argv[0], argv[1:]
    if action == 'list':
        parser = _common_parser('env list', 'List recorded environments')
        _add_scope_args(parser, required=False)
        args = parser.parse_args(rest)
        _setup_logging(args.verbose, args.json_output)
        return _guarded(_env_list, args)
    if action == 'prune':
        parser = _common_parser('env prune', 'Drop ledger records of a destroyed scope')
        _add_scope_args(parser)
        args = parser.parse_args(rest)
        _setup_logging(args.verbose, args.json_output)
        return _guarded(_env_prune, args)

    print(f"Error: Unknown env action '{action}'")
    print("Available actions: list, prune")
    return 1


# -- show ------------------------------------------------------------------

def _print_tree(catalog: Catalog, name: str, prefix: str = '', seen: Optional[set] = None) -> None:
    seen = set() if seen is None else seen
    service = catalog.lookup(name)
    for i, dep in enumerate(service.dependencies):
        last = i == len(service.dependencies) - 1
        policy = service.policy_for(dep) or catalog.lookup(dep).default_policy
        marker = ' (see above)' if dep in seen else ''
        print(f"{prefix}{'└── ' if last else '├── '}{dep} [{policy}]{marker}")
        if dep not in seen:
            seen.add(dep)
            _print_tree(catalog, dep, prefix + ('    ' if last else '│   '), seen)


def _show(args) -> int:
    config, catalog, _ = _load(args)

    if args.service or args.here:
        root = args.service or discover_service(catalog).name
        graph = build_graph(catalog, root)
        if args.json_output:
            _emit_json({
                'root': root,
                'services': [catalog.lookup(n).to_dict() for n in graph.names],
                'edges': [list(e) for e in graph.edges()],
            })
            return EXIT_OK
        print(root)
        _print_tree(catalog, root)
        return EXIT_OK

    if args.json_output:
        _emit_json({
            'project': config.project_name,
            'root': str(config.root),
            'services': [catalog.lookup(n).to_dict() for n in catalog.names()],
        })
        return EXIT_OK

    print(f"Project: {config.project_name} ({config.root})")
    print(f"Services: {len(catalog)}")
    for name in catalog.names():
        service = catalog.lookup(name)
        depends = ', '.join(service.dependencies) or '-'
        print(f"  {name:<20} depends: {depends}")
        if service.description:
            print(f"  {'':<20} {service.description}")
    return EXIT_OK


def show_main(argv: list) -> int:
    """Handle 'show' verb."""
    parser = _common_parser('show', 'Show the service catalog or a dependency tree')
    parser.add_argument(
        '--service', '-S',
        help='Show the dependency tree of one service',
    )
    parser.add_argument(
        '--here',
        action='store_true',
        help='Show the tree of the service owning the working directory',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _guarded(_show, args)


# -- output / generate -----------------------------------------------------

def _scope_of(args) -> str:
    return stable_scope(args.stable) if args.stable else args.merge_request


def _output(args) -> int:
    config, _, _ = _load(args)
    outputs = collect_outputs(Ledger(config.state_dir), _scope_of(args))
    if args.file:
        write_outputs(outputs, args.file)
    else:
        _emit_json(outputs)
    return EXIT_OK


def output_main(argv: list) -> int:
    """Handle 'output' verb."""
    parser = _common_parser('output', 'Print combined outputs recorded for a scope')
    _add_scope_args(parser)
    parser.add_argument(
        '--file', '-f',
        type=Path,
        help='Write outputs as JSON to a file instead of stdout',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _guarded(_output, args)


def _generate(args) -> int:
    config, _, _ = _load(args)
    target = generate_env(Ledger(config.state_dir), _scope_of(args), args.template, args.target)
    print(f"Generated {target}")
    return EXIT_OK


def generate_main(argv: list) -> int:
    """Handle 'generate' verb."""
    parser = _common_parser('generate', 'Render a .env file from recorded outputs')
    _add_scope_args(parser)
    parser.add_argument(
        '--template', '-t',
        type=Path,
        required=True,
        help='Template file (NAME=service.output per line)',
    )
    parser.add_argument(
        '--target', '-o',
        type=Path,
        default=Path('.env'),
        help='File to write (default: .env)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _guarded(_generate, args)


# -- clean -----------------------------------------------------------------

def _clean(args) -> int:
    config, catalog, ledger = _load(args)
    names = [args.service] if args.service else catalog.names()
    entries = ledger.list()
    removed = []
    for name in names:
        state_keys = [e.state_key for e in entries if e.service_name == name]
        removed.extend(str(p) for p in clean(catalog.lookup(name).directory, config.state_dir, state_keys))
    if args.json_output:
        _emit_json({'removed': removed})
    else:
        for path in removed:
            print(f"Removed {path}")
        print(f"Cleaned {len(names)} service(s)")
    return EXIT_OK


def clean_main(argv: list) -> int:
    """Handle 'clean' verb."""
    parser = _common_parser('clean', 'Remove engine working files from service directories')
    parser.add_argument(
        '--service', '-S',
        help='Clean one service (default: all)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    return _guarded(_clean, args)


# -- init ------------------------------------------------------------------

def _ask(prompt: str, default: str) -> str:
    answer = input(f"{prompt} [{default}]: ").strip()
    return answer or default


def _init(args) -> int:
    root = args.root or Path.cwd()
    if (root / WORKSPACE_FILE).exists() and not args.no_prompt:
        response = input("Project already initialized. Continue anyway? [y/N] ").strip().lower()
        if response != 'y':
            print("Initialization cancelled.")
            return EXIT_FAILED

    name = args.name
    description = args.description
    if not args.no_prompt:
        name = name or _ask("Project name", root.resolve().name)
        description = description or _ask("Project description", DEFAULT_DESCRIPTION)

    result = init_project(root, name=name, description=description or DEFAULT_DESCRIPTION)
    if args.json_output:
        _emit_json(result.to_dict())
        return EXIT_OK

    for path in result.created:
        print(f"Created {path}")
    for path in result.skipped:
        print(f"Kept    {path}")
    print("")
    print("Next steps:")
    print(f"  1. Review {WORKSPACE_FILE} (backends, stable environments)")
    print("  2. Replace the example services under services/")
    print("  3. envie deploy -S database --stable sandbox")
    print("  4. envie deploy -S api --merge-request <id>")
    return EXIT_OK


def init_main(argv: list) -> int:
    """Handle 'init' verb."""
    parser = _common_parser('init', 'Scaffold a workspace with example services')
    parser.add_argument(
        '--name',
        help='Project name (default: root directory name)',
    )
    parser.add_argument(
        '--description',
        help='Project description',
    )
    parser.add_argument(
        '--no-prompt',
        action='store_true',
        help='Use defaults instead of prompting',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    if args.json_output:
        args.no_prompt = True
    return _guarded(_init, args)

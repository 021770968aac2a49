"""Project scaffolding for 'envie init'.

Creates a workspace.envie, three example services (networking, database,
api) wired the way a typical MR workflow uses them, and the .gitignore
entries for files the engine and the orchestrator generate. Files that
already exist are left alone.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from actions.tofu import REMOTE_STATE_FILE
from config import STATE_DIR_NAME, WORKSPACE_FILE
from errors import ConfigError
from registry import DECLARATION_FILE

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = 'An envie-managed infrastructure project'

GITIGNORE_MARKER = '# envie generated files'

GITIGNORE_ENTRIES = (
    f'{STATE_DIR_NAME}/',
    REMOTE_STATE_FILE,
    '.terraform/',
    '.terraform.lock.hcl',
    '*.tfstate',
    '*.tfstate.*',
    '.env',
)

# name -> (description, depends entries, outputs, variables)
EXAMPLE_SERVICES = {
    'networking': (
        'VPC and subnets',
        [],
        {'vpc_id': '"vpc-${null_resource.networking.id}"'},
        [],
    ),
    'database': (
        'Database shared by the API',
        ['../networking'],
        {'url': '"db-${null_resource.database.id}.internal"'},
        ['networking_vpc_id'],
    ),
    'api': (
        'API service under active development',
        ['../networking', {'service': 'database', 'environment': 'stable'}],
        {'endpoint': '"https://api-${null_resource.api.id}.example.com"'},
        ['networking_vpc_id', 'database_url'],
    ),
}


@dataclass
class ScaffoldResult:
    """Files written (and skipped) by init_project."""
    root: Path
    created: list[Path] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'root': str(self.root),
            'created': [str(p) for p in self.created],
            'skipped': [str(p) for p in self.skipped],
        }


def workspace_document(name: str, description: str) -> dict:
    """Contents of a fresh workspace.envie."""
    return {
        'version': '1.0',
        'project': {'name': name, 'description': description},
        'services': [{'path': f'services/{service}'} for service in EXAMPLE_SERVICES],
        'stable': {
            'sandbox': {'description': 'Shared development environment'},
        },
        'defaults': {
            'stable_environment': 'sandbox',
            'stable_fallback': 'error',
            'on_error': 'stop',
            'max_parallel': 4,
        },
    }


def render_module(service: str, outputs: dict[str, str], variables: list[str]) -> str:
    """Example module: one null_resource plus the declared outputs."""
    lines = [f'# {service}: example module created by envie init', '']
    for variable in variables:
        lines += [f'variable "{variable}" {{', '  type = string', '}', '']
    lines += [f'resource "null_resource" "{service}" {{']
    if variables:
        lines += ['  triggers = {']
        lines += [f'    {variable} = var.{variable}' for variable in variables]
        lines += ['  }']
    lines += ['}', '']
    for output, value in outputs.items():
        lines += [f'output "{output}" {{', f'  value = {value}', '}', '']
    return '\n'.join(lines)


def _write(path: Path, content: str, result: ScaffoldResult) -> None:
    if path.exists():
        logger.debug(f"Keeping existing {path}")
        result.skipped.append(path)
        return
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Cannot write {path}: {e}") from e
    logger.debug(f"Created {path}")
    result.created.append(path)


def update_gitignore(root: Path, result: Optional[ScaffoldResult] = None) -> bool:
    """Append envie's ignore block once. Returns True if the file changed."""
    path = Path(root) / '.gitignore'
    try:
        current = path.read_text(encoding='utf-8') if path.exists() else ''
        if GITIGNORE_MARKER in current:
            return False
        separator = '' if not current or current.endswith('\n') else '\n'
        block = '\n'.join((GITIGNORE_MARKER,) + GITIGNORE_ENTRIES)
        path.write_text(f'{current}{separator}{block}\n', encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Cannot update {path}: {e}") from e
    if result is not None:
        result.created.append(path)
    return True


def init_project(root: Path, name: Optional[str] = None,
                 description: str = DEFAULT_DESCRIPTION) -> ScaffoldResult:
    """Scaffold a project under root.

    Args:
        root: Project root (created if missing)
        name: Project name (default: root directory name)
        description: Project description
    """
    root = Path(root)
    name = name or root.resolve().name
    result = ScaffoldResult(root=root)

    workspace = yaml.dump(workspace_document(name, description), default_flow_style=False, sort_keys=False)
    _write(root / WORKSPACE_FILE, workspace, result)

    for service, (service_description, depends, outputs, variables) in EXAMPLE_SERVICES.items():
        directory = root / 'services' / service
        declaration: dict = {'name': service, 'description': service_description}
        if depends:
            declaration['depends'] = depends
        _write(directory / DECLARATION_FILE,
               yaml.dump(declaration, default_flow_style=False, sort_keys=False), result)
        _write(directory / 'main.tf', render_module(service, outputs, variables), result)

    update_gitignore(root, result)
    _write(root / 'README.md', _readme(name, description), result)

    logger.info(f"Initialized envie project '{name}' in {root} "
                f"({len(result.created)} created, {len(result.skipped)} kept)")
    return result


def _readme(name: str, description: str) -> str:
    return f"""# {name}

{description}

Environments are managed with envie. Each directory under `services/` holds a
`.envie` declaration and the infrastructure code for one service.

## Usage

    envie deploy -S database --stable sandbox
    envie deploy -S api --merge-request 123
    envie output --merge-request 123
    envie destroy --merge-request 123

`api` binds to the stable `database` in `sandbox`; `networking` is created
fresh for every merge request. Override per request with
`-E database:ephemeral`.
"""

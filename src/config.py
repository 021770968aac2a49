"""Workspace configuration management.

Configuration is loaded from the project root:
- workspace.envie: Project name, explicit service paths, backends, defaults
- .envie-state/: Ledger and lock files (override: ENVIE_STATE_DIR)

Resolution order for the project root:
1. Explicit path passed by the caller (--root)
2. $ENVIE_ROOT environment variable
3. Nearest ancestor of the working directory holding workspace.envie
4. The working directory itself

The merge order for tunables is: built-in default -> workspace.envie -> env var.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from errors import ConfigError

WORKSPACE_FILE = 'workspace.envie'
STATE_DIR_NAME = '.envie-state'

DEFAULT_STABLE_ENVIRONMENT = 'sandbox'
DEFAULT_STABLE_KEY_PATTERN = 'stable/{environment}/{service}/terraform.tfstate'
DEFAULT_EPHEMERAL_KEY_PATTERN = 'ephemeral/{workspace}/{service}/terraform.tfstate'


@dataclass
class BackendConfig:
    """Remote-state backend for the infrastructure engine.

    Attributes:
        type: Backend type (s3, gcs, local, ...)
        config: Backend attributes; 'key' (or 'path' for local) is
            replaced by the node's state key at generation time
        key_pattern: Pattern producing state keys, with {workspace},
            {environment} and {service} placeholders
    """
    type: str = 'local'
    config: dict[str, str] = field(default_factory=dict)
    key_pattern: str = DEFAULT_EPHEMERAL_KEY_PATTERN

    @classmethod
    def from_dict(cls, data: Optional[dict], key_pattern: str) -> 'BackendConfig':
        if not data:
            return cls(key_pattern=key_pattern)
        if not isinstance(data, dict) or 'type' not in data:
            raise ConfigError(f"Backend definition requires a 'type': {data!r}")
        return cls(
            type=str(data['type']),
            config={str(k): str(v) for k, v in (data.get('config') or {}).items()},
            key_pattern=data.get('key_pattern', key_pattern),
        )


@dataclass
class StableEnvironment:
    """A long-lived, shared environment (e.g. sandbox, staging)."""
    name: str
    backend: BackendConfig
    description: str = ''


@dataclass
class WorkspaceConfig:
    """Project-wide settings from workspace.envie.

    Attributes:
        root: Project root directory
        project_name: Prefix for ephemeral workspace names ({project}-{mr})
        service_paths: Explicit service directories (empty = auto-discover)
        ephemeral_backend: Backend for merge-request-scoped state
        stable: Named stable environments
        stable_environment: Stable environment used when a policy says
            just 'stable'
        stable_fallback: 'error' or 'ephemeral' when a stable binding has
            never been applied
        on_error: 'stop' (fail-fast, no later batch starts) or 'continue'
            (only dependents of a failed node are skipped)
        max_parallel: Worker pool size within a batch
        binary: Infrastructure engine executable (terraform or tofu)
        timeout_init: Seconds allowed for engine init
        timeout_apply: Seconds allowed for engine apply/destroy
        state_dir: Directory holding the ledger and lock files
    """
    root: Path
    project_name: str
    service_paths: list[Path] = field(default_factory=list)
    ephemeral_backend: BackendConfig = field(default_factory=BackendConfig)
    stable: dict[str, StableEnvironment] = field(default_factory=dict)
    stable_environment: str = DEFAULT_STABLE_ENVIRONMENT
    stable_fallback: str = 'error'
    on_error: str = 'stop'
    max_parallel: int = 4
    binary: str = 'terraform'
    timeout_init: int = 300
    timeout_apply: int = 1800
    state_dir: Optional[Path] = None
    defaults: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.root, str):
            self.root = Path(self.root)
        if self.state_dir is None:
            self.state_dir = self.root / STATE_DIR_NAME
        elif isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)

    def workspace_name(self, merge_request_id: str) -> str:
        """Ephemeral workspace name for a merge request."""
        return f'{self.project_name}-{merge_request_id}'

    def get_stable(self, name: str) -> StableEnvironment:
        """Get a stable environment, falling back to a default backend.

        Unknown names get the ephemeral backend with the stable key pattern,
        so a project can use stable environments without declaring them.
        """
        if name in self.stable:
            return self.stable[name]
        return StableEnvironment(
            name=name,
            backend=BackendConfig(
                type=self.ephemeral_backend.type,
                config=dict(self.ephemeral_backend.config),
                key_pattern=DEFAULT_STABLE_KEY_PATTERN,
            ),
        )


def _int_setting(key: str, value: Any) -> int:
    """Coerce an integer tunable, reporting the offending key."""
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from e


def _check_key_pattern(pattern: Any, where: str) -> None:
    """Reject key patterns that would fail when a state key is generated."""
    if not isinstance(pattern, str) or not pattern:
        raise ConfigError(f"{where}: key_pattern must be a non-empty string, got {pattern!r}")
    try:
        pattern.format(workspace='w', environment='e', service='s')
    except (KeyError, IndexError, AttributeError, ValueError) as e:
        raise ConfigError(
            f"{where}: invalid key_pattern {pattern!r} ({type(e).__name__}: {e}); "
            f"allowed placeholders are {{workspace}}, {{environment}} and {{service}}") from e


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def find_project_root(start: Optional[Path] = None) -> Path:
    """Discover the project root.

    Resolution order:
    1. $ENVIE_ROOT environment variable
    2. Nearest ancestor of start (default: cwd) containing workspace.envie
    3. start itself
    """
    if env_path := os.environ.get('ENVIE_ROOT'):
        path = Path(env_path)
        if path.is_dir():
            return path
        raise ConfigError(f"ENVIE_ROOT={env_path} does not exist")

    start = (start or Path.cwd()).resolve()
    for candidate in (start, *start.parents):
        if (candidate / WORKSPACE_FILE).exists():
            return candidate
    return start


def load_workspace_config(root: Optional[Path] = None) -> WorkspaceConfig:
    """Load workspace.envie from the project root.

    A missing workspace file is valid: the project name defaults to the
    root directory name and services are auto-discovered.
    """
    root = Path(root) if root is not None else find_project_root()
    data: dict = {}
    workspace_file = root / WORKSPACE_FILE
    if workspace_file.exists():
        data = _parse_yaml(workspace_file)

    project = data.get('project') or {}
    project_name = project.get('name') if isinstance(project, dict) else str(project)
    if not project_name:
        project_name = root.resolve().name

    service_paths = []
    for entry in data.get('services') or []:
        path = entry.get('path') if isinstance(entry, dict) else entry
        if not path:
            raise ConfigError(f"{WORKSPACE_FILE}: service entry without path: {entry!r}")
        service_paths.append(root / path)

    ephemeral = data.get('ephemeral') or {}
    ephemeral_backend = BackendConfig.from_dict(
        ephemeral.get('backend'), ephemeral.get('key_pattern', DEFAULT_EPHEMERAL_KEY_PATTERN))

    stable = {}
    for name, env_data in (data.get('stable') or {}).items():
        env_data = env_data or {}
        stable[name] = StableEnvironment(
            name=name,
            backend=BackendConfig.from_dict(env_data.get('backend'), env_data.get(
                'key_pattern', DEFAULT_STABLE_KEY_PATTERN)),
            description=env_data.get('description', ''),
        )

    defaults = data.get('defaults') or {}
    engine = data.get('engine') or {}

    config = WorkspaceConfig(
        root=root,
        project_name=project_name,
        service_paths=service_paths,
        ephemeral_backend=ephemeral_backend,
        stable=stable,
        stable_environment=defaults.get('stable_environment', DEFAULT_STABLE_ENVIRONMENT),
        stable_fallback=defaults.get('stable_fallback', 'error'),
        on_error=defaults.get('on_error', 'stop'),
        max_parallel=_int_setting('defaults.max_parallel', defaults.get('max_parallel', 4)),
        binary=engine.get('binary', 'terraform'),
        timeout_init=_int_setting('engine.timeout_init', engine.get('timeout_init', 300)),
        timeout_apply=_int_setting('engine.timeout_apply', engine.get('timeout_apply', 1800)),
        defaults=defaults,
    )

    # Environment overrides (highest priority)
    if state_dir := os.environ.get('ENVIE_STATE_DIR'):
        config.state_dir = Path(state_dir)
    if binary := os.environ.get('ENVIE_BINARY'):
        config.binary = binary
    if max_parallel := os.environ.get('ENVIE_MAX_PARALLEL'):
        config.max_parallel = _int_setting('ENVIE_MAX_PARALLEL', max_parallel)

    if config.stable_fallback not in ('error', 'ephemeral'):
        raise ConfigError(
            f"defaults.stable_fallback must be 'error' or 'ephemeral', got '{config.stable_fallback}'")
    if config.on_error not in ('stop', 'continue'):
        raise ConfigError(f"defaults.on_error must be 'stop' or 'continue', got '{config.on_error}'")
    if config.max_parallel < 1:
        raise ConfigError(f"max_parallel must be >= 1, got {config.max_parallel}")
    for key in ('timeout_init', 'timeout_apply'):
        if getattr(config, key) < 1:
            raise ConfigError(f"engine.{key} must be >= 1, got {getattr(config, key)}")

    _check_key_pattern(config.ephemeral_backend.key_pattern, 'ephemeral')
    for name, env in config.stable.items():
        _check_key_pattern(env.backend.key_pattern, f'stable.{name}')

    return config

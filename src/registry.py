"""Service declaration loading and discovery.

Each deployable service lives in its own directory with a `.envie` YAML
declaration:

    name: api
    description: API gateway and lambdas
    environment: ephemeral        # own default when it is a dependency
    depends:
      - networking                # plain name, default policy
      - ../shared                 # relative path, last component is the name
      - service: database
        environment: stable       # or stable.<env>

Services are found either from workspace.envie `services:` paths or by
walking the project root for `.envie` files.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

import yaml

from config import WorkspaceConfig
from errors import AmbiguousServiceError, ConfigError, DiscoveryError, ServiceNotFoundError

logger = logging.getLogger(__name__)

DECLARATION_FILE = '.envie'

# Auto-discovery does not descend further than this below the root
MAX_DISCOVERY_DEPTH = 3

# Directories never searched during auto-discovery
SKIP_DIRS = {'.terraform', '.git', 'node_modules', '.envie-state', '__pycache__'}


class MixingPolicy(str, Enum):
    """Whether a dependency gets a fresh MR-scoped instance or a shared one."""
    EPHEMERAL = 'ephemeral'
    STABLE = 'stable'


@dataclass(frozen=True)
class DependencyPolicy:
    """Policy for binding one dependency.

    Attributes:
        kind: ephemeral or stable
        stable_environment: Named stable environment (None = workspace default)
    """
    kind: MixingPolicy
    stable_environment: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> 'DependencyPolicy':
        """Parse 'ephemeral', 'stable' or 'stable.<env>'."""
        text = str(value).strip()
        if text == 'ephemeral':
            return cls(MixingPolicy.EPHEMERAL)
        if text == 'stable':
            return cls(MixingPolicy.STABLE)
        if text.startswith('stable.') and len(text) > len('stable.'):
            return cls(MixingPolicy.STABLE, text[len('stable.'):])
        raise ConfigError(
            f"Invalid environment policy '{value}' "
            "(expected ephemeral, stable or stable.<env>)")

    def __str__(self) -> str:
        if self.kind is MixingPolicy.STABLE and self.stable_environment:
            return f'stable.{self.stable_environment}'
        return self.kind.value


EPHEMERAL_POLICY = DependencyPolicy(MixingPolicy.EPHEMERAL)


@dataclass(frozen=True)
class Service:
    """A deployable unit declared by a `.envie` file.

    Attributes:
        name: Service identifier
        directory: Directory holding the declaration and the IaC code
        dependencies: Dependency names in declared order
        mixing_policy: Per-dependency policy overrides
        default_policy: Policy applied when dependents do not override
        description: Human-readable description
    """
    name: str
    directory: Path
    dependencies: tuple[str, ...] = ()
    mixing_policy: Mapping[str, DependencyPolicy] = field(default_factory=dict)
    default_policy: DependencyPolicy = EPHEMERAL_POLICY
    description: str = ''

    def policy_for(self, dependency: str) -> Optional[DependencyPolicy]:
        """Explicit override for a dependency, or None."""
        return self.mixing_policy.get(dependency)

    @classmethod
    def from_dict(cls, data: dict, directory: Path) -> 'Service':
        """Create a Service from a parsed declaration."""
        if not isinstance(data, dict) or not data.get('name'):
            raise ConfigError(f"{directory / DECLARATION_FILE}: 'name' is required")

        dependencies: list[str] = []
        policies: dict[str, DependencyPolicy] = {}
        for item in data.get('depends') or []:
            name, policy = _parse_dependency(item)
            if name not in dependencies:
                dependencies.append(name)
            if policy is not None:
                policies[name] = policy

        default = data.get('environment')
        return cls(
            name=str(data['name']),
            directory=directory,
            dependencies=tuple(dependencies),
            mixing_policy=MappingProxyType(policies),
            default_policy=DependencyPolicy.parse(default) if default else EPHEMERAL_POLICY,
            description=data.get('description', ''),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        d: dict[str, Any] = {
            'name': self.name,
            'directory': str(self.directory),
            'depends': [],
        }
        for dep in self.dependencies:
            policy = self.mixing_policy.get(dep)
            d['depends'].append({'service': dep, 'environment': str(policy)} if policy else dep)
        if self.default_policy != EPHEMERAL_POLICY:
            d['environment'] = str(self.default_policy)
        if self.description:
            d['description'] = self.description
        return d


def _parse_dependency(item: Any) -> tuple[str, Optional[DependencyPolicy]]:
    """Parse a depends entry into (name, explicit policy or None)."""
    if isinstance(item, str):
        return _dependency_name(item), None
    if isinstance(item, dict):
        ref = item.get('service') or item.get('name') or item.get('path')
        if not ref:
            raise ConfigError(f"Dependency entry needs 'service': {item!r}")
        env = item.get('environment')
        return _dependency_name(str(ref)), DependencyPolicy.parse(env) if env else None
    raise ConfigError(f"Invalid dependency entry: {item!r}")


def _dependency_name(ref: str) -> str:
    """'../networking' and 'services/networking' both name 'networking'."""
    ref = ref.strip().rstrip('/')
    if '/' in ref:
        return ref.rsplit('/', 1)[1]
    return ref


@dataclass(frozen=True)
class Catalog:
    """Immutable set of loaded services, keyed by name."""
    root: Path
    services: Mapping[str, Service]

    def lookup(self, name: str) -> Service:
        """Get a service by name.

        Raises:
            ServiceNotFoundError: If no such service
        """
        try:
            return self.services[name]
        except KeyError:
            raise ServiceNotFoundError(name, sorted(self.services)) from None

    def names(self) -> list[str]:
        return sorted(self.services)

    def __contains__(self, name: object) -> bool:
        return name in self.services

    def __len__(self) -> int:
        return len(self.services)

    def find_by_directory(self, directory: Path) -> Optional[Service]:
        """Service declared in exactly this directory."""
        directory = directory.resolve()
        for service in self.services.values():
            if service.directory.resolve() == directory:
                return service
        return None


class ServiceRegistry:
    """Loads service declarations into a Catalog."""

    def __init__(self, config: WorkspaceConfig):
        self.config = config

    def load(self, root: Optional[Path] = None) -> Catalog:
        """Discover and parse every service under root.

        Raises:
            ConfigError: If a declaration cannot be parsed
            DiscoveryError: If a dependency has no matching service, or two
                directories declare the same name
        """
        root = Path(root) if root is not None else self.config.root
        if self.config.service_paths:
            directories = list(self.config.service_paths)
        else:
            directories = discover_service_dirs(root)

        services: dict[str, Service] = {}
        for directory in directories:
            service = load_service(directory)
            if service.name in services:
                raise DiscoveryError(
                    f"Service '{service.name}' declared twice: "
                    f"{services[service.name].directory} and {directory}")
            services[service.name] = service
            logger.debug(f"Loaded service '{service.name}' from {directory}")

        for service in services.values():
            for dep in service.dependencies:
                if dep not in services:
                    raise DiscoveryError(
                        f"Service '{service.name}' depends on '{dep}', "
                        f"which has no service directory")

        logger.info(f"Loaded {len(services)} service(s) from {root}")
        return Catalog(root=root, services=MappingProxyType(services))


def load_service(directory: Path) -> Service:
    """Parse the declaration in a service directory."""
    declaration = directory / DECLARATION_FILE
    if not declaration.is_file():
        raise DiscoveryError(f"No {DECLARATION_FILE} file found in {directory}")
    try:
        with open(declaration, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {declaration}: {e}") from e
    return Service.from_dict(data, directory)


def discover_service_dirs(root: Path) -> list[Path]:
    """Find directories containing a declaration, in sorted order."""
    found: list[Path] = []
    root = Path(root)
    base_depth = len(root.parts)
    for dirpath, dirnames, filenames in os.walk(root):
        path = Path(dirpath)
        depth = len(path.parts) - base_depth
        dirnames[:] = sorted(
            d for d in dirnames if d not in SKIP_DIRS and not d.startswith('.'))
        if depth >= MAX_DISCOVERY_DEPTH:
            dirnames[:] = []
        if DECLARATION_FILE in filenames and (path / DECLARATION_FILE).is_file():
            found.append(path)
    return sorted(found)


def discover_service(catalog: Catalog, cwd: Optional[Path] = None) -> Service:
    """Identify the service owning a working directory.

    Walks upward from cwd to the first directory holding a declaration.

    Raises:
        AmbiguousServiceError: If no declaration is found, or the one found
            is not part of the catalog
    """
    start = (cwd or Path.cwd()).resolve()
    for candidate in (start, *start.parents):
        if (candidate / DECLARATION_FILE).is_file():
            service = catalog.find_by_directory(candidate)
            if service is None:
                raise AmbiguousServiceError(
                    f"{candidate / DECLARATION_FILE} is not part of the workspace at {catalog.root}")
            logger.debug(f"Discovered service '{service.name}' from {start}")
            return service
        if candidate == catalog.root.resolve():
            break
    raise AmbiguousServiceError(
        f"No service found for {start}. Specify --service or run from a service directory.")

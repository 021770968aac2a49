"""Environment resolution for dependency graphs.

Decides, per graph node, whether a deploy request gets a fresh
merge-request-scoped (ephemeral) instance or binds to an existing shared
(stable) one, and derives the state key each node's infrastructure state
lives under.

Policy precedence for a dependency edge (requester -> dependency):
0. Request-level override (CLI -E service:policy)
1. Requesting service's mixing policy for that dependency
2. Dependency's own default policy
3. Global default: ephemeral

The root of a deploy request is always ephemeral. Stable nodes bind to the
applied ledger entry of their stable environment and their own
dependencies are not expanded: those belong to the stable environment's
lifecycle, not to the merge request.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from config import WorkspaceConfig
from env_opr.graph import DependencyGraph
from env_opr.ledger import Ledger, stable_scope
from errors import ConfigError, PolicyConflictError, ResolutionError, UnresolvedStableBindingError
from registry import EPHEMERAL_POLICY, DependencyPolicy, MixingPolicy

logger = logging.getLogger(__name__)

_MR_ID_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]*$')


def validate_merge_request_id(merge_request_id: str) -> str:
    """Check an MR id is usable in workspace names, state keys and ledger scopes."""
    value = str(merge_request_id).strip()
    if not _MR_ID_RE.match(value):
        raise ConfigError(
            f"Invalid merge request id '{merge_request_id}' "
            "(letters, digits, '-' and '_' only)")
    return value


def validate_environment_name(environment: str) -> str:
    """Check a stable environment name is usable as a ledger scope."""
    value = str(environment).strip()
    if not _MR_ID_RE.match(value):
        raise ConfigError(
            f"Invalid stable environment name '{environment}' "
            "(letters, digits, '-' and '_' only)")
    return value


@dataclass
class ResolvedEnvironment:
    """Concrete environment for one node of one request.

    Attributes:
        service_name: Service name
        kind: ephemeral or stable
        state_key: Backend address of this node's infrastructure state
        directory: Service directory the engine runs in
        merge_request_id: Set only for ephemeral resolutions
        stable_environment: Set only for stable resolutions
        dependencies: Dependency names of this node inside the request
        outputs: Engine outputs, filled after apply (or from the ledger
            for stable bindings); consumed by dependents as inputs
    """
    service_name: str
    kind: MixingPolicy
    state_key: str
    directory: str
    merge_request_id: Optional[str] = None
    stable_environment: Optional[str] = None
    dependencies: list[str] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def is_ephemeral(self) -> bool:
        return self.kind is MixingPolicy.EPHEMERAL

    @property
    def is_stable(self) -> bool:
        return self.kind is MixingPolicy.STABLE

    @property
    def scope(self) -> str:
        """Ledger scope owning this node's entry."""
        if self.is_stable:
            return stable_scope(self.stable_environment or '')
        return self.merge_request_id or ''

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'service': self.service_name,
            'kind': self.kind.value,
            'state_key': self.state_key,
        }
        if self.merge_request_id is not None:
            d['merge_request_id'] = self.merge_request_id
        if self.stable_environment is not None:
            d['stable_environment'] = self.stable_environment
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        return d


class EnvironmentResolver:
    """Resolves graph nodes to concrete environments.

    Args:
        config: Workspace configuration (project name, backends, defaults)
        ledger: Ledger consulted for stable bindings
        overrides: Request-level policies by service name
    """

    def __init__(
        self,
        config: WorkspaceConfig,
        ledger: Ledger,
        overrides: Optional[dict[str, DependencyPolicy]] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.overrides = dict(overrides or {})

    def ephemeral_state_key(self, service: str, merge_request_id: str) -> str:
        """Deterministic state key for (service, MR)."""
        return self.config.ephemeral_backend.key_pattern.format(
            workspace=self.config.workspace_name(merge_request_id),
            environment=self.config.workspace_name(merge_request_id),
            service=service,
        )

    def stable_state_key(self, service: str, environment: str) -> str:
        """State key for a service in a stable environment."""
        backend = self.config.get_stable(environment).backend
        return backend.key_pattern.format(
            workspace=environment,
            environment=environment,
            service=service,
        )

    def resolve(self, graph: DependencyGraph, merge_request_id: str) -> dict[str, ResolvedEnvironment]:
        """Resolve every node reachable from the root for a merge request.

        Raises:
            PolicyConflictError: If dependents disagree on a node's policy
            UnresolvedStableBindingError: If a stable dependency was never applied
        """
        resolved, errors = self.resolve_partial(graph, merge_request_id)
        for name in graph.names:
            if name in errors:
                raise errors[name]
        return resolved

    def resolve_partial(
        self, graph: DependencyGraph, merge_request_id: str,
    ) -> tuple[dict[str, ResolvedEnvironment], dict[str, ResolutionError]]:
        """Resolve what can be resolved; collect per-node resolution errors.

        Used by dry-run so independent branches are still reported as
        plannable when one branch cannot bind its stable dependency.

        Raises:
            PolicyConflictError: Configuration errors are never collected
        """
        merge_request_id = validate_merge_request_id(merge_request_id)
        resolved: dict[str, ResolvedEnvironment] = {}
        errors: dict[str, ResolutionError] = {}

        # BFS from the root; a node's policy is settled once all of its
        # requesters within the request have been seen, so walk in
        # dependency-respecting order (dependents before dependencies).
        order = _dependents_first(graph)
        requests: dict[str, dict[str, DependencyPolicy]] = {name: {} for name in graph.names}
        reachable = {graph.root}

        for name in order:
            if name not in reachable:
                continue
            node = graph.get_node(name)
            if name == graph.root:
                policy = EPHEMERAL_POLICY
            else:
                policy = self._settle_policy(name, node.service.default_policy, requests[name])

            if policy.kind is MixingPolicy.STABLE:
                env = policy.stable_environment or self.config.stable_environment
                try:
                    resolved[name] = self._bind_stable(name, env, node.service.directory)
                    logger.info(f"[resolve] {name}: stable binding to '{env}' "
                                f"({resolved[name].state_key})")
                    continue
                except UnresolvedStableBindingError as e:
                    if self.config.stable_fallback != 'ephemeral':
                        errors[name] = e
                        continue
                    logger.warning(f"[resolve] {name}: no applied stable '{env}', "
                                   "falling back to ephemeral")

            resolved[name] = ResolvedEnvironment(
                service_name=name,
                kind=MixingPolicy.EPHEMERAL,
                state_key=self.ephemeral_state_key(name, merge_request_id),
                directory=str(node.service.directory),
                merge_request_id=merge_request_id,
                dependencies=[d.name for d in node.dependencies],
            )
            logger.info(f"[resolve] {name}: ephemeral for MR {merge_request_id} "
                        f"({resolved[name].state_key})")

            for dep in node.dependencies:
                reachable.add(dep.name)
                explicit = self.overrides.get(dep.name) or node.service.policy_for(dep.name)
                if explicit is not None:
                    requests[dep.name][name] = explicit

        return resolved, errors

    def resolve_stable(self, graph: DependencyGraph, environment: str) -> dict[str, ResolvedEnvironment]:
        """Resolve every node into one stable environment.

        Stable environments are deployed as a whole by their own lifecycle;
        no node is merge-request scoped.
        """
        resolved: dict[str, ResolvedEnvironment] = {}
        for name in graph.names:
            node = graph.get_node(name)
            resolved[name] = ResolvedEnvironment(
                service_name=name,
                kind=MixingPolicy.STABLE,
                state_key=self.stable_state_key(name, environment),
                directory=str(node.service.directory),
                stable_environment=environment,
                dependencies=[d.name for d in node.dependencies],
            )
        return resolved

    def _settle_policy(
        self,
        name: str,
        default: DependencyPolicy,
        requested: dict[str, DependencyPolicy],
    ) -> DependencyPolicy:
        if name in self.overrides:
            return self.overrides[name]
        distinct = set(requested.values())
        if len(distinct) > 1:
            raise PolicyConflictError(name, {k: str(v) for k, v in requested.items()})
        if distinct:
            return distinct.pop()
        return default

    def _bind_stable(self, name: str, environment: str, directory) -> ResolvedEnvironment:
        entry = self.ledger.get((stable_scope(environment), name))
        if entry is None or entry.status != 'applied':
            raise UnresolvedStableBindingError(name, environment)
        return ResolvedEnvironment(
            service_name=name,
            kind=MixingPolicy.STABLE,
            state_key=entry.state_key,
            directory=entry.directory or str(directory),
            stable_environment=environment,
            outputs=dict(entry.outputs),
        )


def _dependents_first(graph: DependencyGraph) -> list[str]:
    """Topological order with every dependent before its dependencies.

    Ties are broken by BFS discovery order for determinism.
    """
    position = {name: i for i, name in enumerate(graph.names)}
    pending = {name: len(graph.get_node(name).dependents) for name in graph.names}
    ready = deque(sorted((n for n, c in pending.items() if c == 0), key=position.get))
    order: list[str] = []
    while ready:
        name = ready.popleft()
        order.append(name)
        released = []
        for dep in graph.get_node(name).dependencies:
            pending[dep.name] -= 1
            if pending[dep.name] == 0:
                released.append(dep.name)
        ready.extend(sorted(released, key=position.get))
    return order

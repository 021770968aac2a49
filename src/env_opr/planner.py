"""Execution planning for resolved dependency graphs.

Orders the nodes a request must apply into batches: nodes inside a batch
have no dependency on each other and may run concurrently; batches run
strictly in sequence. Destroy uses the same batches in reverse.

Stable bindings are already satisfied and never appear in a merge-request
apply plan.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from env_opr.graph import DependencyGraph
from env_opr.ledger import LedgerEntry
from env_opr.resolver import ResolvedEnvironment
from errors import CyclicDependencyError
from registry import MixingPolicy

logger = logging.getLogger(__name__)


@dataclass
class DeploymentPlan:
    """Ordered batches of node names.

    Invariant: every node's planned dependencies appear in strictly
    earlier batches. Names inside a batch are sorted lexically.

    Attributes:
        batches: Ordered list of batches
        blocked: Nodes that cannot be planned because a dependency failed
            to resolve (dry-run reporting only), mapped to the blocker
    """
    batches: list[list[str]] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)

    @property
    def nodes(self) -> list[str]:
        return [name for batch in self.batches for name in batch]

    def batch_index(self, name: str) -> int:
        """Index of the batch containing name.

        Raises:
            KeyError: If name is not planned
        """
        for i, batch in enumerate(self.batches):
            if name in batch:
                return i
        raise KeyError(name)

    def __len__(self) -> int:
        return len(self.batches)

    def __bool__(self) -> bool:
        return bool(self.batches)

    def to_list(self) -> list[list[str]]:
        return [list(batch) for batch in self.batches]


def layer(dependencies: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Kahn layering of a name -> dependency-names mapping.

    Dependencies not present as keys are treated as satisfied.

    Raises:
        CyclicDependencyError: If the mapping has a cycle
    """
    deps = {name: {d for d in ds if d in dependencies} for name, ds in dependencies.items()}
    batches: list[list[str]] = []
    done: set[str] = set()
    while len(done) < len(deps):
        batch = sorted(n for n, ds in deps.items() if n not in done and ds <= done)
        if not batch:
            remaining = sorted(n for n in deps if n not in done)
            raise CyclicDependencyError(remaining + remaining[:1])
        batches.append(batch)
        done.update(batch)
    return batches


def plan(
    graph: DependencyGraph,
    resolved: Mapping[str, ResolvedEnvironment],
    owned_kind: MixingPolicy = MixingPolicy.EPHEMERAL,
) -> DeploymentPlan:
    """Plan the apply batches for a resolved graph.

    Only nodes of owned_kind are applied: ephemeral nodes for a merge
    request, stable nodes for a stable environment deploy. Nodes absent
    from resolved (failed resolution, or reachable only through a stable
    binding) are left out; owned nodes depending on an unresolved node are
    reported blocked.
    """
    blocked: dict[str, str] = {}
    applicable: dict[str, list[str]] = {}

    for name in graph.names:
        env = resolved.get(name)
        if env is None or env.kind is not owned_kind:
            continue
        applicable[name] = graph.dependencies_of(name)

    # Propagate blocking from unresolved dependencies through dependents
    changed = True
    while changed:
        changed = False
        for name, deps in applicable.items():
            if name in blocked:
                continue
            for dep in deps:
                if dep not in resolved:
                    blocked[name] = dep
                elif dep in blocked:
                    blocked[name] = blocked[dep]
                else:
                    continue
                changed = True
                break

    batches = layer({n: d for n, d in applicable.items() if n not in blocked})
    result = DeploymentPlan(batches=batches, blocked=blocked)
    logger.debug(f"Planned {len(result.nodes)} node(s) in {len(batches)} batch(es)")
    return result


def reverse_plan(deployment_plan: DeploymentPlan) -> DeploymentPlan:
    """Destroy order: same batches, batch order reversed."""
    return DeploymentPlan(batches=[list(b) for b in reversed(deployment_plan.batches)])


def plan_from_entries(entries: Iterable[LedgerEntry], include_stable: bool = False) -> DeploymentPlan:
    """Rebuild the apply plan from recorded ledger entries.

    Used by destroy, which must not depend on the current declarations.
    Stable entries are excluded unless include_stable (destroying a stable
    environment itself); destroyed entries are already gone.
    """
    owned = {
        e.service_name: list(e.dependencies)
        for e in entries
        if (include_stable or not e.is_stable) and e.status != 'destroyed'
    }
    return DeploymentPlan(batches=layer(owned))

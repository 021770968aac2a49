"""Batch executor for merge-request environment orchestration.

Runs a DeploymentPlan batch by batch: nodes inside a batch are applied (or
destroyed) concurrently by a bounded worker pool, batches strictly in
sequence. Every attempted node is recorded in the ledger before the engine
is invoked, so destroy can always find what was created.

Failure handling:
- A failed node never lets its dependents start (they are reported skipped).
- on_error='stop' (default): not-yet-started nodes of the failing batch and
  all later batches are skipped.
- on_error='continue': only dependents of the failed node are skipped.
- Cancellation (signal or deadline) aborts in-flight waits and skips
  everything not yet started.
"""

import logging
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from common import ActionResult, CancelToken
from config import BackendConfig, WorkspaceConfig
from env_opr.graph import build_graph
from env_opr.ledger import Ledger, LedgerEntry, is_stable_scope, stable_scope
from env_opr.locks import StateLocks
from env_opr.planner import DeploymentPlan, plan, plan_from_entries, reverse_plan
from env_opr.resolver import (
    EnvironmentResolver,
    ResolvedEnvironment,
    validate_environment_name,
    validate_merge_request_id,
)
from errors import CancelledError, ExecutionError, LiveEphemeralError, StableInUseError
from registry import Catalog, DependencyPolicy, MixingPolicy, discover_service

logger = logging.getLogger(__name__)


@runtime_checkable
class InfraExecutor(Protocol):
    """Protocol for the infrastructure engine (see actions.tofu.TofuExecutor)."""

    def apply(self, name: str, directory: Path, state_key: str, backend: BackendConfig,
              input_variables: dict, cancel: Optional[CancelToken] = None) -> ActionResult:
        """Apply one node; outputs and resource ids on success."""

    def destroy(self, name: str, directory: Path, state_key: str, backend: BackendConfig,
                input_variables: dict, cancel: Optional[CancelToken] = None) -> ActionResult:
        """Destroy one node."""


@dataclass
class NodeOutcome:
    """Per-node result of one command.

    Status values: applied, destroyed, failed, skipped (never attempted),
    bound (stable binding, not applied), planned (dry-run),
    blocked (dry-run, a dependency could not be resolved), unresolved.
    """
    name: str
    status: str
    kind: str = 'ephemeral'
    state_key: Optional[str] = None
    batch: Optional[int] = None
    error: Optional[str] = None
    duration: Optional[float] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name, 'status': self.status, 'kind': self.kind}
        if self.state_key is not None:
            d['state_key'] = self.state_key
        if self.batch is not None:
            d['batch'] = self.batch
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.error is not None:
            d['error'] = self.error
        return d


@dataclass
class DeploymentReport:
    """Manifest of what a command did, surfaced to the caller."""
    verb: str
    scope: str
    root: Optional[str] = None
    dry_run: bool = False
    plan: DeploymentPlan = field(default_factory=DeploymentPlan)
    nodes: dict[str, NodeOutcome] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    def add(self, outcome: NodeOutcome) -> NodeOutcome:
        self.nodes[outcome.name] = outcome
        return outcome

    def with_status(self, *statuses: str) -> list[str]:
        return sorted(n for n, o in self.nodes.items() if o.status in statuses)

    @property
    def applied(self) -> list[str]:
        return self.with_status('applied')

    @property
    def destroyed(self) -> list[str]:
        return self.with_status('destroyed')

    @property
    def failed(self) -> list[str]:
        return self.with_status('failed', 'unresolved')

    @property
    def skipped(self) -> list[str]:
        return self.with_status('skipped', 'blocked')

    @property
    def success(self) -> bool:
        return not self.failed and not self.skipped

    @property
    def duration(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def finish(self) -> None:
        self.completed_at = time.time()

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'verb': self.verb,
            'scope': self.scope,
            'success': self.success,
            'dry_run': self.dry_run,
            'batches': self.plan.to_list(),
            'applied': self.applied,
            'destroyed': self.destroyed,
            'failed': self.failed,
            'skipped': self.skipped,
            'nodes': [self.nodes[n].to_dict() for n in sorted(self.nodes)],
        }
        if self.root is not None:
            d['root'] = self.root
        if self.duration is not None:
            d['duration_seconds'] = round(self.duration, 2)
        return d


@dataclass
class EnvironmentOperator:
    """Executes deploy/destroy requests against the engine and the ledger.

    Attributes:
        catalog: Loaded service declarations
        config: Workspace configuration
        ledger: State ledger (the only durable store)
        engine: Infrastructure engine adapter
        dry_run: If True, resolve and plan only; no engine call, no ledger write
        overrides: Request-level environment policies by service name
        cancel: Cancellation token shared by all node operations
        json_output: If True, dry-run previews go to stderr
    """
    catalog: Catalog
    config: WorkspaceConfig
    ledger: Ledger
    engine: InfraExecutor
    dry_run: bool = False
    overrides: dict[str, DependencyPolicy] = field(default_factory=dict)
    cancel: CancelToken = field(default_factory=CancelToken)
    json_output: bool = False
    _locks: StateLocks = field(default=None, init=False, repr=False)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        self._locks = StateLocks(self.config.state_dir)

    # -- deploy -----------------------------------------------------------

    def deploy(self, merge_request_id: str, service: Optional[str] = None,
               cwd: Optional[Path] = None) -> DeploymentReport:
        """Deploy a service and its dependencies for a merge request.

        service=None discovers the owning service from cwd.

        Raises:
            ConfigurationError: Bad declarations, cycles, ambiguous discovery
            ResolutionError: Unresolved stable binding (not in dry-run)
            LedgerError: Ledger unavailable
        """
        merge_request_id = validate_merge_request_id(merge_request_id)
        root = service or discover_service(self.catalog, cwd).name
        graph = build_graph(self.catalog, root)
        resolver = EnvironmentResolver(self.config, self.ledger, self.overrides)

        report = DeploymentReport(verb='deploy', scope=merge_request_id, root=root, dry_run=self.dry_run)
        if self.dry_run:
            resolved, errors = resolver.resolve_partial(graph, merge_request_id)
        else:
            resolved, errors = resolver.resolve(graph, merge_request_id), {}

        self._check_rebinding(merge_request_id, resolved)
        report.plan = plan(graph, resolved)
        for name, error in errors.items():
            report.add(NodeOutcome(name=name, status='unresolved', kind='stable', error=str(error)))
        for name, blocker in report.plan.blocked.items():
            report.add(NodeOutcome(name=name, status='blocked', state_key=resolved[name].state_key,
                                   error=f"dependency '{blocker}' could not be resolved"))
        for name, env in resolved.items():
            if env.is_stable:
                report.add(NodeOutcome(name=name, status='bound', kind='stable', state_key=env.state_key))

        logger.info(f"Deploying '{root}' for MR {merge_request_id}: "
                    f"{' -> '.join(str(b) for b in report.plan.batches) or 'nothing to apply'}")

        if self.dry_run:
            self._mark_planned(report, resolved)
            self._preview(report, resolved)
            report.finish()
            return report

        self.ledger.check_writable()
        for env in resolved.values():
            if env.is_stable:
                self.ledger.record(LedgerEntry(
                    merge_request_id=merge_request_id,
                    service_name=env.service_name,
                    kind='stable',
                    state_key=env.state_key,
                    status='applied',
                    directory=env.directory,
                    outputs=dict(env.outputs),
                ))

        self._run(report, resolved, 'apply')
        report.finish()
        return report

    def _check_rebinding(self, merge_request_id: str, resolved: dict[str, ResolvedEnvironment]) -> None:
        """Refuse to record a stable binding over an ephemeral node still alive.

        The binding record would replace the ephemeral entry, and destroy
        would then never reach its infrastructure.
        """
        for name, env in sorted(resolved.items()):
            if not env.is_stable:
                continue
            entry = self.ledger.get((merge_request_id, name))
            if entry is not None and not entry.is_stable and entry.status != 'destroyed':
                raise LiveEphemeralError(merge_request_id, name, entry.status)

    def deploy_stable(self, environment: str, service: Optional[str] = None,
                      cwd: Optional[Path] = None) -> DeploymentReport:
        """Deploy a service and its dependencies into a stable environment.

        This is the stable environments' own lifecycle; merge-request
        deploys only ever bind to what it produced.
        """
        environment = validate_environment_name(environment)
        root = service or discover_service(self.catalog, cwd).name
        graph = build_graph(self.catalog, root)
        resolved = EnvironmentResolver(self.config, self.ledger).resolve_stable(graph, environment)

        report = DeploymentReport(verb='deploy', scope=stable_scope(environment), root=root,
                                  dry_run=self.dry_run)
        report.plan = plan(graph, resolved, owned_kind=MixingPolicy.STABLE)
        logger.info(f"Deploying '{root}' into stable environment '{environment}': "
                    f"{' -> '.join(str(b) for b in report.plan.batches)}")

        if self.dry_run:
            self._mark_planned(report, resolved)
            self._preview(report, resolved)
            report.finish()
            return report

        self.ledger.check_writable()
        self._run(report, resolved, 'apply')
        report.finish()
        return report

    # -- destroy ----------------------------------------------------------

    def destroy(self, merge_request_id: str) -> DeploymentReport:
        """Destroy everything a merge request created, in reverse order.

        The graph is rebuilt from ledger entries, not from the current
        declarations. Stable bindings are never touched.
        """
        merge_request_id = validate_merge_request_id(merge_request_id)
        return self._destroy_scope(merge_request_id, include_stable=False)

    def destroy_stable(self, environment: str, force: bool = False) -> DeploymentReport:
        """Destroy a stable environment.

        Raises:
            StableInUseError: If live merge requests still bind to it (unless force)
        """
        environment = validate_environment_name(environment)
        users = self.stable_users(environment)
        if users:
            if not force:
                raise StableInUseError(environment, users)
            logger.warning(f"Destroying stable '{environment}' still bound by: {', '.join(users)}")
        return self._destroy_scope(stable_scope(environment), include_stable=True)

    def stable_users(self, environment: str) -> list[str]:
        """Merge requests with live ephemeral nodes bound to a stable environment."""
        stable_keys = {e.state_key for e in self.ledger.list(stable_scope(environment))}
        users = []
        for scope in self.ledger.scopes():
            if is_stable_scope(scope):
                continue
            entries = self.ledger.list(scope)
            live = any(not e.is_stable and e.status != 'destroyed' for e in entries)
            if live and any(e.is_stable and e.state_key in stable_keys for e in entries):
                users.append(scope)
        return users

    def _destroy_scope(self, scope: str, include_stable: bool) -> DeploymentReport:
        entries = self.ledger.list(scope)
        report = DeploymentReport(verb='destroy', scope=scope, dry_run=self.dry_run)
        if not entries:
            logger.warning(f"Nothing recorded for '{scope}', nothing to destroy")
            report.finish()
            return report

        resolved = {e.service_name: _from_entry(e) for e in entries}
        report.plan = reverse_plan(plan_from_entries(entries, include_stable=include_stable))
        logger.info(f"Destroying '{scope}': "
                    f"{' -> '.join(str(b) for b in report.plan.batches) or 'nothing to destroy'}")

        if self.dry_run:
            self._mark_planned(report, resolved)
            self._preview(report, resolved)
            report.finish()
            return report

        self.ledger.check_writable()
        self._run(report, resolved, 'destroy')
        report.finish()
        return report

    # -- ledger views -----------------------------------------------------

    def env_list(self, merge_request_id: Optional[str] = None) -> list[LedgerEntry]:
        """Ledger entries for one merge request, or for every scope."""
        if merge_request_id is not None:
            merge_request_id = validate_merge_request_id(merge_request_id)
        return self.ledger.list(merge_request_id)

    def prune(self, scope: str) -> list[str]:
        """Drop the ledger records of a fully destroyed scope.

        Returns the removed service names. Scopes with live (not destroyed)
        owned entries are left alone.

        Raises:
            ExecutionError: If the scope still has live entries
        """
        entries = self.ledger.list(scope)
        stable = is_stable_scope(scope)
        live = [e.service_name for e in entries
                if (stable or not e.is_stable) and e.status != 'destroyed']
        if live:
            raise ExecutionError(scope, f"still has live entries: {', '.join(live)}", code="E303")
        removed = []
        for entry in entries:
            if self.ledger.remove(entry.key):
                removed.append(entry.service_name)
        logger.info(f"Pruned {len(removed)} ledger entries from '{scope}'")
        return removed

    # -- execution --------------------------------------------------------

    def _run(self, report: DeploymentReport, resolved: dict[str, ResolvedEnvironment], op: str) -> None:
        """Execute the report's plan batch by batch."""
        stop = False
        planned = set(report.plan.nodes)

        for index, batch in enumerate(report.plan.batches):
            runnable: list[str] = []
            for name in batch:
                env = resolved[name]
                blocker = self._blocker(name, resolved, report, planned, op)
                if stop or self.cancel.cancelled:
                    reason = 'cancelled' if self.cancel.cancelled else 'aborted after failure'
                    report.add(NodeOutcome(name=name, status='skipped', kind=env.kind.value,
                                           state_key=env.state_key, batch=index, error=reason))
                elif blocker is not None:
                    report.add(NodeOutcome(name=name, status='skipped', kind=env.kind.value,
                                           state_key=env.state_key, batch=index,
                                           error=f"'{blocker}' did not complete"))
                else:
                    runnable.append(name)

            if not runnable:
                continue

            logger.info(f"[{op}] Batch {index}: {', '.join(runnable)}")
            abort = threading.Event()
            workers = min(self.config.max_parallel, len(runnable))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f'envie-{op}') as pool:
                futures = [
                    pool.submit(self._run_node, op, name, index, resolved, abort)
                    for name in runnable
                ]
                outcomes = [f.result() for f in futures]

            for outcome in outcomes:
                report.add(outcome)
            if abort.is_set() or self.cancel.cancelled:
                stop = True

    def _blocker(self, name: str, resolved: dict[str, ResolvedEnvironment],
                 report: DeploymentReport, planned: set[str], op: str) -> Optional[str]:
        """Planned neighbour that had to complete first but did not."""
        if op == 'apply':
            neighbours = resolved[name].dependencies
            done = 'applied'
        else:
            neighbours = sorted(n for n, env in resolved.items() if name in env.dependencies)
            done = 'destroyed'
        for other in neighbours:
            if other not in planned:
                continue
            outcome = report.nodes.get(other)
            if outcome is None or outcome.status != done:
                return other
        return None

    def _run_node(self, op: str, name: str, batch: int,
                  resolved: dict[str, ResolvedEnvironment], abort: threading.Event) -> NodeOutcome:
        """Apply or destroy one node; runs on a worker thread."""
        env = resolved[name]
        outcome = NodeOutcome(name=name, status='skipped', kind=env.kind.value,
                              state_key=env.state_key, batch=batch)

        # Not yet started: cancel, or a same-batch failure under on_error=stop
        if self.cancel.cancelled or abort.is_set():
            outcome.error = 'cancelled' if self.cancel.cancelled else 'aborted after failure'
            return outcome

        inputs = compose_inputs(env, resolved)
        backend = self._backend_for(env)
        key = (env.scope, name)
        start = time.time()

        if op == 'apply':
            # A re-apply keeps the last known results until it succeeds
            previous = self.ledger.get(key)
            carried = previous is not None and previous.kind == env.kind.value
            self.ledger.record(LedgerEntry(
                merge_request_id=env.scope,
                service_name=name,
                kind=env.kind.value,
                state_key=env.state_key,
                status='pending',
                directory=env.directory,
                dependencies=list(env.dependencies),
                outputs=dict(previous.outputs) if carried else {},
                resource_ids=list(previous.resource_ids) if carried else [],
            ))

        try:
            with self._locks.hold(f'state:{env.state_key}', f'dir:{env.directory}',
                                  cancel=self.cancel, owner=name):
                if self.cancel.cancelled:
                    raise CancelledError(name)
                logger.info(f"[{op}] {name} ({env.kind.value}, state: {env.state_key})")
                runner = self.engine.apply if op == 'apply' else self.engine.destroy
                result = runner(name, Path(env.directory), env.state_key, backend, inputs, cancel=self.cancel)
                if not result.success:
                    if self.cancel.cancelled:
                        raise CancelledError(name)
                    raise ExecutionError(name, result.message)
        except ExecutionError as e:
            outcome.status = 'failed'
            outcome.error = str(e)
            outcome.duration = time.time() - start
            logger.error(f"[{op}] {name} failed: {e.message}")
            if self.config.on_error == 'stop':
                abort.set()
            self.ledger.update(key, 'failed', error=e.message)
            return outcome

        outcome.duration = time.time() - start
        if op == 'apply':
            env.outputs = dict(result.outputs)
            self.ledger.update(key, 'applied', outputs=result.outputs, resource_ids=result.resource_ids)
            outcome.status = 'applied'
        else:
            self.ledger.update(key, 'destroyed', outputs={}, resource_ids=[])
            outcome.status = 'destroyed'
        logger.info(f"[{op}] {name} {outcome.status} in {outcome.duration:.1f}s")
        return outcome

    def _backend_for(self, env: ResolvedEnvironment) -> BackendConfig:
        if env.is_stable:
            return self.config.get_stable(env.stable_environment or self.config.stable_environment).backend
        return self.config.ephemeral_backend

    # -- reporting --------------------------------------------------------

    def _mark_planned(self, report: DeploymentReport, resolved: dict[str, ResolvedEnvironment]) -> None:
        for index, batch in enumerate(report.plan.batches):
            for name in batch:
                env = resolved[name]
                report.add(NodeOutcome(name=name, status='planned', kind=env.kind.value,
                                       state_key=env.state_key, batch=index))

    def _preview(self, report: DeploymentReport, resolved: dict[str, ResolvedEnvironment]) -> None:
        """Print the would-apply / would-destroy report."""
        out = sys.stderr if self.json_output else sys.stdout
        print("", file=out)
        print("=" * 65, file=out)
        print(f"  DRY-RUN {report.verb.upper()}: {report.root or report.scope}", file=out)
        print(f"  Scope: {report.scope}", file=out)
        print("=" * 65, file=out)
        print("", file=out)
        for index, batch in enumerate(report.plan.batches):
            for name in batch:
                env = resolved[name]
                print(f"  [{index}] {name}: would {report.verb} ({env.kind.value})", file=out)
                print(f"      state_key={env.state_key}", file=out)
                if env.dependencies:
                    print(f"      depends: {', '.join(env.dependencies)}", file=out)
        for name in report.with_status('bound'):
            print(f"  [-] {name}: bound to stable state {report.nodes[name].state_key}", file=out)
        for name in report.with_status('unresolved', 'blocked'):
            print(f"  [!] {name}: {report.nodes[name].status}: {report.nodes[name].error}", file=out)
        print("", file=out)


def compose_inputs(env: ResolvedEnvironment, resolved: dict[str, ResolvedEnvironment]) -> dict[str, Any]:
    """Input variables from dependency outputs, named {dependency}_{output}."""
    inputs: dict[str, Any] = {}
    for dep in env.dependencies:
        dep_env = resolved.get(dep)
        if dep_env is None:
            continue
        for key, value in sorted(dep_env.outputs.items()):
            inputs[f'{dep}_{key}'] = value
    return inputs


def _from_entry(entry: LedgerEntry) -> ResolvedEnvironment:
    """Rebuild a resolved environment from its ledger record."""
    stable = entry.is_stable
    environment = None
    if stable and is_stable_scope(entry.merge_request_id):
        environment = entry.merge_request_id[len('stable.'):]
    return ResolvedEnvironment(
        service_name=entry.service_name,
        kind=MixingPolicy.STABLE if stable else MixingPolicy.EPHEMERAL,
        state_key=entry.state_key,
        directory=entry.directory or '',
        merge_request_id=None if stable else entry.merge_request_id,
        stable_environment=environment,
        dependencies=list(entry.dependencies),
        outputs=dict(entry.outputs),
    )

"""Error taxonomy for environment orchestration.

Errors carry a short code so that CLI output and JSON manifests can be
matched by tooling:

- E1xx: configuration errors (declarations, cycles, discovery)
- E2xx: resolution errors (stable bindings)
- E3xx: execution errors (infrastructure engine)
- E5xx: ledger errors (state store)
"""

from typing import Optional


class EnvieError(Exception):
    """Base exception for orchestration errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ConfigurationError(EnvieError):
    """Bad or missing declaration. Always fatal, raised before any apply."""


class ConfigError(ConfigurationError):
    """Workspace or declaration file could not be parsed."""

    def __init__(self, message: str):
        super().__init__("E100", message)


class DiscoveryError(ConfigurationError):
    """Declared dependency has no matching service."""

    def __init__(self, message: str):
        super().__init__("E101", message)


class ServiceNotFoundError(ConfigurationError):
    """Service name not present in the catalog."""

    def __init__(self, name: str, available: Optional[list[str]] = None):
        self.name = name
        hint = f". Available: {', '.join(available)}" if available else ''
        super().__init__("E102", f"Service not found: {name}{hint}")


class AmbiguousServiceError(ConfigurationError):
    """Working directory is not owned by any declared service."""

    def __init__(self, message: str):
        super().__init__("E103", message)


class CyclicDependencyError(ConfigurationError):
    """Service dependencies form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__("E104", f"Cyclic dependency: {' -> '.join(cycle)}")


class PolicyConflictError(ConfigurationError):
    """Two dependents request different environment kinds for one service."""

    def __init__(self, service: str, requests: dict[str, str]):
        self.service = service
        self.requests = requests
        detail = ', '.join(f"{k} wants {v}" for k, v in sorted(requests.items()))
        super().__init__("E105", f"Conflicting environment policy for '{service}': {detail}")


class StableInUseError(ConfigurationError):
    """Stable environment still bound by live merge requests."""

    def __init__(self, environment: str, merge_requests: list[str]):
        self.environment = environment
        self.merge_requests = merge_requests
        super().__init__(
            "E106",
            f"Stable environment '{environment}' is still referenced by merge request(s) "
            f"{', '.join(merge_requests)}. Destroy them first or pass --force.",
        )


class LiveEphemeralError(ConfigurationError):
    """A node the merge request still owns would be rebound to a stable environment."""

    def __init__(self, merge_request_id: str, service: str, status: str):
        self.merge_request_id = merge_request_id
        self.service = service
        super().__init__(
            "E107",
            f"Merge request {merge_request_id} still owns an ephemeral '{service}' ({status}). "
            f"Destroy it first (envie destroy -m {merge_request_id}) "
            f"or keep it with -E {service}:ephemeral.",
        )


class ResolutionError(EnvieError):
    """Environment for a node could not be resolved."""


class UnresolvedStableBindingError(ResolutionError):
    """Stable dependency has never been applied."""

    def __init__(self, service: str, environment: str):
        self.service = service
        self.environment = environment
        super().__init__(
            "E201",
            f"Stable environment '{environment}' has no applied '{service}'. "
            f"Deploy it first: envie deploy -S {service} --stable {environment}",
        )


class ExecutionError(EnvieError):
    """Infrastructure engine failed for a single node."""

    def __init__(self, node: str, message: str, code: str = "E301"):
        self.node = node
        super().__init__(code, f"[{node}] {message}")


class CancelledError(ExecutionError):
    """Node operation aborted by cancellation or deadline."""

    def __init__(self, node: str):
        super().__init__(node, "operation cancelled", code="E302")


class LedgerError(EnvieError):
    """State ledger unavailable or corrupt."""

    def __init__(self, message: str):
        super().__init__("E501", message)

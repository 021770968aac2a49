"""Shared pytest fixtures for envie tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import ActionResult  # noqa: E402


def write_workspace(root: Path, services: dict, workspace: str = '') -> Path:
    """Create a project tree from YAML strings.

    Args:
        root: Project root
        services: Mapping of relative directory -> .envie contents
        workspace: workspace.envie contents (omitted when empty)
    """
    root.mkdir(parents=True, exist_ok=True)
    if workspace:
        (root / 'workspace.envie').write_text(workspace)
    for rel, declaration in services.items():
        directory = root / rel
        directory.mkdir(parents=True, exist_ok=True)
        (directory / '.envie').write_text(declaration)
    return root


SCENARIO_WORKSPACE = """
project:
  name: myapp
defaults:
  stable_environment: sandbox
"""

SCENARIO_SERVICES = {
    'services/networking': """
name: networking
description: VPC and subnets
""",
    'services/database': """
name: database
depends:
  - ../networking
""",
    'services/api': """
name: api
depends:
  - ../networking
  - service: database
    environment: stable
""",
}


@pytest.fixture
def scenario_root(tmp_path, monkeypatch):
    """networking <- database, networking <- api, database <- api (stable)."""
    monkeypatch.delenv('ENVIE_ROOT', raising=False)
    monkeypatch.delenv('ENVIE_STATE_DIR', raising=False)
    monkeypatch.delenv('ENVIE_BINARY', raising=False)
    monkeypatch.delenv('ENVIE_MAX_PARALLEL', raising=False)
    return write_workspace(tmp_path / 'project', SCENARIO_SERVICES, SCENARIO_WORKSPACE)


@pytest.fixture
def scenario(scenario_root):
    """Loaded (config, catalog, ledger) for the scenario workspace."""
    from config import load_workspace_config
    from env_opr.ledger import Ledger
    from registry import ServiceRegistry

    config = load_workspace_config(scenario_root)
    catalog = ServiceRegistry(config).load()
    return config, catalog, Ledger(config.state_dir)


class FakeEngine:
    """Engine double recording every call.

    Args:
        fail: Node names whose operation fails
        outputs: Outputs returned per node name on apply
        on_call: Optional hook called with (op, name) before returning
    """

    def __init__(self, fail=(), outputs=None, on_call=None):
        self.fail = set(fail)
        self.outputs = outputs or {}
        self.on_call = on_call
        self.calls: list[tuple] = []
        self._lock = threading.Lock()

    def _record(self, op, name, directory, state_key, backend, input_variables):
        with self._lock:
            self.calls.append((op, name, state_key, dict(input_variables)))
        if self.on_call is not None:
            self.on_call(op, name)
        if name in self.fail:
            return ActionResult(success=False, message=f'{op} exploded')
        return None

    def apply(self, name, directory, state_key, backend, input_variables, cancel=None):
        failed = self._record('apply', name, directory, state_key, backend, input_variables)
        if failed:
            return failed
        outputs = self.outputs.get(name, {f'{name}_id': f'{name}-123'})
        return ActionResult(success=True, message='ok', outputs=dict(outputs),
                            resource_ids=[f'null_resource.{name}'])

    def destroy(self, name, directory, state_key, backend, input_variables, cancel=None):
        failed = self._record('destroy', name, directory, state_key, backend, input_variables)
        return failed or ActionResult(success=True, message='ok')

    def names(self, op):
        return [c[1] for c in self.calls if c[0] == op]


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def make_engine():
    """Factory for FakeEngine with custom failures or outputs."""
    return FakeEngine


@pytest.fixture
def seed_stable():
    """Record an applied stable entry, as a prior stable deploy would."""
    from env_opr.ledger import LedgerEntry, stable_scope

    def _seed(ledger, service, environment='sandbox', outputs=None, status='applied'):
        entry = LedgerEntry(
            merge_request_id=stable_scope(environment),
            service_name=service,
            kind='stable',
            state_key=f'stable/{environment}/{service}/terraform.tfstate',
            status=status,
            outputs=outputs if outputs is not None else {'url': f'{service}.{environment}.internal'},
        )
        return ledger.record(entry)

    return _seed

"""Terraform/OpenTofu engine adapter.

The engine is a dumb executor: the orchestrator owns state placement.
Before every run the adapter writes the node's remote-state descriptor
(envie_remote_state.tf) into the service directory, pointing the backend at
the node's state key, and leaves it in place for inspection. Input
variables travel in a temporary JSON var-file.
"""

import hashlib
import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

from common import ActionResult, CancelToken, run_command
from config import BackendConfig

logger = logging.getLogger(__name__)

REMOTE_STATE_FILE = 'envie_remote_state.tf'

# Files the adapter creates in service directories (removed by clean)
GENERATED_FILES = (REMOTE_STATE_FILE,)


def data_dir_for(state_dir: Path, state_key: str) -> Path:
    """Engine data dir (TF_DATA_DIR) for one state key."""
    digest = hashlib.sha256(state_key.encode('utf-8')).hexdigest()[:16]
    return Path(state_dir) / 'data' / digest


def render_backend(backend: BackendConfig, state_key: str, state_dir: Path) -> str:
    """Render the terraform backend block for one state key.

    The 'key' attribute is always the node's state key. A local backend
    stores state under {state_dir}/tfstate/{state_key}.
    """
    config = dict(backend.config)
    if backend.type == 'local':
        config['path'] = str(Path(state_dir) / 'tfstate' / state_key)
        config.pop('key', None)
    else:
        config['key'] = state_key

    width = max((len(k) for k in config), default=0)
    lines = [f'    {k.ljust(width)} = {json.dumps(str(v))}' for k, v in sorted(config.items())]
    body = '\n'.join(lines)
    return (
        "# Generated by envie. Do not edit.\n"
        "terraform {\n"
        f"  backend {json.dumps(backend.type)} {{\n"
        f"{body}\n"
        "  }\n"
        "}\n"
    )


def write_backend_file(directory: Path, backend: BackendConfig, state_key: str, state_dir: Path) -> Path:
    """Write the remote-state descriptor into a service directory."""
    path = Path(directory) / REMOTE_STATE_FILE
    path.write_text(render_backend(backend, state_key, state_dir), encoding='utf-8')
    logger.debug(f"Wrote backend descriptor {path} (key: {state_key})")
    return path


def create_temp_tfvars(node_name: str, variables: dict[str, Any]) -> Path:
    """Write input variables to a unique temporary var-file.

    Caller is responsible for cleanup.
    """
    fd, path = tempfile.mkstemp(prefix=f'tfvars-{node_name}-', suffix='.tfvars.json')
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        json.dump(variables, f, indent=2, sort_keys=True)
    return Path(path)


@dataclass
class TofuExecutor:
    """Runs init/apply/destroy for one node at a time.

    Attributes:
        state_dir: Orchestrator state directory (local backends, TF_DATA_DIR)
        binary: Engine executable ('terraform' or 'tofu')
        timeout_init: Seconds allowed for init
        timeout_apply: Seconds allowed for apply and destroy
    """
    state_dir: Path
    binary: str = 'terraform'
    timeout_init: int = 300
    timeout_apply: int = 1800

    def _env(self, state_key: str) -> dict:
        # Per-state data dir: two state keys sharing a service directory
        # must not share .terraform/ (backend config, providers)
        data_dir = data_dir_for(self.state_dir, state_key)
        data_dir.mkdir(parents=True, exist_ok=True)
        return {**os.environ, 'TF_DATA_DIR': str(data_dir), 'TF_IN_AUTOMATION': '1'}

    def _init(self, name: str, directory: Path, env: dict, cancel: Optional[CancelToken]) -> Optional[str]:
        logger.info(f"[{name}] Running {self.binary} init...")
        rc, _, err = run_command(
            [self.binary, 'init', '-reconfigure', '-input=false'],
            cwd=directory, timeout=self.timeout_init, env=env, cancel=cancel)
        if rc != 0:
            return f"{self.binary} init failed: {err.strip()}"
        return None

    def apply(
        self,
        name: str,
        directory: Path,
        state_key: str,
        backend: BackendConfig,
        input_variables: dict[str, Any],
        cancel: Optional[CancelToken] = None,
    ) -> ActionResult:
        """Apply one node and collect its outputs and resource ids."""
        start = time.time()
        directory = Path(directory)
        if not directory.is_dir():
            return ActionResult(
                success=False,
                message=f"Service directory not found: {directory}",
                duration=time.time() - start,
            )

        write_backend_file(directory, backend, state_key, self.state_dir)
        env = self._env(state_key)

        error = self._init(name, directory, env, cancel)
        if error:
            return ActionResult(success=False, message=error, duration=time.time() - start)

        tfvars_path = create_temp_tfvars(name, input_variables)
        try:
            logger.info(f"[{name}] Running {self.binary} apply (state: {state_key})...")
            cmd = [self.binary, 'apply', '-auto-approve', '-input=false', f'-var-file={tfvars_path}']
            rc, _, err = run_command(cmd, cwd=directory, timeout=self.timeout_apply, env=env, cancel=cancel)
        finally:
            tfvars_path.unlink(missing_ok=True)
            logger.debug(f"[{name}] Cleaned up temp tfvars: {tfvars_path}")

        if rc != 0:
            return ActionResult(
                success=False,
                message=f"{self.binary} apply failed: {err.strip()}",
                duration=time.time() - start,
            )

        try:
            outputs = self.read_outputs(directory, env, cancel)
            resource_ids = self.read_resource_ids(directory, env, cancel)
        except RuntimeError as e:
            return ActionResult(success=False, message=str(e), duration=time.time() - start)

        return ActionResult(
            success=True,
            message=f"{self.binary} apply completed for {name}",
            duration=time.time() - start,
            outputs=outputs,
            resource_ids=resource_ids,
        )

    def destroy(
        self,
        name: str,
        directory: Path,
        state_key: str,
        backend: BackendConfig,
        input_variables: dict[str, Any],
        cancel: Optional[CancelToken] = None,
    ) -> ActionResult:
        """Destroy everything recorded under a node's state key."""
        start = time.time()
        directory = Path(directory)
        if not directory.is_dir():
            return ActionResult(
                success=False,
                message=f"Service directory not found: {directory}",
                duration=time.time() - start,
            )

        write_backend_file(directory, backend, state_key, self.state_dir)
        env = self._env(state_key)

        error = self._init(name, directory, env, cancel)
        if error:
            return ActionResult(success=False, message=error, duration=time.time() - start)

        tfvars_path = create_temp_tfvars(name, input_variables)
        try:
            logger.info(f"[{name}] Running {self.binary} destroy (state: {state_key})...")
            cmd = [self.binary, 'destroy', '-auto-approve', '-input=false', f'-var-file={tfvars_path}']
            rc, _, err = run_command(cmd, cwd=directory, timeout=self.timeout_apply, env=env, cancel=cancel)
        finally:
            tfvars_path.unlink(missing_ok=True)

        if rc != 0:
            return ActionResult(
                success=False,
                message=f"{self.binary} destroy failed: {err.strip()}",
                duration=time.time() - start,
            )

        return ActionResult(
            success=True,
            message=f"{self.binary} destroy completed for {name}",
            duration=time.time() - start,
        )

    def read_outputs(self, directory: Path, env: dict, cancel: Optional[CancelToken] = None) -> dict[str, Any]:
        """Parse `output -json` into {name: value}."""
        rc, out, err = run_command(
            [self.binary, 'output', '-json'], cwd=directory, timeout=self.timeout_init, env=env, cancel=cancel)
        if rc != 0:
            raise RuntimeError(f"{self.binary} output failed: {err.strip()}")
        try:
            raw = json.loads(out or '{}')
        except json.JSONDecodeError as e:
            raise RuntimeError(f"{self.binary} output returned invalid JSON: {e}") from e
        return {k: v.get('value') if isinstance(v, dict) else v for k, v in raw.items()}

    def read_resource_ids(self, directory: Path, env: dict, cancel: Optional[CancelToken] = None) -> list[str]:
        """Resource addresses from `state list`."""
        rc, out, err = run_command(
            [self.binary, 'state', 'list'], cwd=directory, timeout=self.timeout_init, env=env, cancel=cancel)
        if rc != 0:
            raise RuntimeError(f"{self.binary} state list failed: {err.strip()}")
        return [line.strip() for line in out.splitlines() if line.strip()]


def clean(directory: Path, state_dir: Optional[Path] = None, state_keys: Iterable[str] = ()) -> list[Path]:
    """Remove .terraform/ and generated files from a service directory.

    With state_dir, the engine data dirs of the given state keys go too.
    """
    removed: list[Path] = []
    directory = Path(directory)
    terraform_dir = directory / '.terraform'
    if terraform_dir.is_dir():
        shutil.rmtree(terraform_dir)
        removed.append(terraform_dir)
    for name in GENERATED_FILES:
        path = directory / name
        if path.exists():
            path.unlink()
            removed.append(path)
    if state_dir is not None:
        for state_key in sorted(set(state_keys)):
            data_dir = data_dir_for(state_dir, state_key)
            if data_dir.is_dir():
                shutil.rmtree(data_dir)
                removed.append(data_dir)
    for path in removed:
        logger.debug(f"Removed {path}")
    return removed

"""State ledger for environment orchestration.

Durable record of what was created for each merge request (and for each
stable environment), so that `env list` and `destroy` work without the
create context.

Entries are keyed by (scope, service) where scope is a merge request id or
`stable.<env>`. Each scope is persisted to {state_dir}/ledger/{scope}.json
and rewritten atomically on every upsert.
"""

import fcntl
import json
import logging
import os
import re
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, List, Optional

from errors import LedgerError

logger = logging.getLogger(__name__)

STATUSES = ('pending', 'applied', 'failed', 'destroyed')

STABLE_SCOPE_PREFIX = 'stable.'

_SCOPE_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')


def stable_scope(environment: str) -> str:
    """Ledger scope holding a stable environment's entries."""
    return f'{STABLE_SCOPE_PREFIX}{environment}'


def is_stable_scope(scope: str) -> bool:
    return scope.startswith(STABLE_SCOPE_PREFIX)


@dataclass
class LedgerEntry:
    """Per-node record for one scope.

    Attributes:
        merge_request_id: Scope (MR id, or stable.<env>)
        service_name: Service name
        kind: 'ephemeral' or 'stable'
        state_key: Backend address of the node's infrastructure state
        status: pending, applied, failed or destroyed
        directory: Service directory the engine runs in
        dependencies: Dependency names at apply time (rebuilds the destroy graph)
        outputs: Engine outputs after apply
        resource_ids: Engine resource addresses after apply
        created_at: Timestamp of first record
        updated_at: Timestamp of last change
        error: Error message if failed
    """
    merge_request_id: str
    service_name: str
    kind: str
    state_key: str
    status: str = 'pending'
    directory: Optional[str] = None
    dependencies: list[str] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    resource_ids: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.merge_request_id, self.service_name)

    @property
    def is_stable(self) -> bool:
        return self.kind == 'stable'

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'merge_request_id': self.merge_request_id,
            'service_name': self.service_name,
            'kind': self.kind,
            'state_key': self.state_key,
            'status': self.status,
            'created_at': self.created_at,
        }
        if self.directory is not None:
            d['directory'] = self.directory
        if self.dependencies:
            d['dependencies'] = list(self.dependencies)
        if self.outputs:
            d['outputs'] = dict(self.outputs)
        if self.resource_ids:
            d['resource_ids'] = list(self.resource_ids)
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'LedgerEntry':
        return cls(
            merge_request_id=data['merge_request_id'],
            service_name=data['service_name'],
            kind=data['kind'],
            state_key=data['state_key'],
            status=data.get('status', 'pending'),
            directory=data.get('directory'),
            dependencies=list(data.get('dependencies', [])),
            outputs=dict(data.get('outputs', {})),
            resource_ids=list(data.get('resource_ids', [])),
            created_at=data.get('created_at', 0.0),
            updated_at=data.get('updated_at'),
            error=data.get('error'),
        )


class Ledger:
    """JSON-file ledger with atomic per-scope upserts.

    Writers to the same scope are serialized by an in-process lock and an
    fcntl lock on {scope}.lock, so concurrent node operations and
    concurrent processes never lose each other's updates.
    """

    def __init__(self, state_dir: Path):
        self.root = Path(state_dir) / 'ledger'
        self._lock = threading.Lock()

    def _scope_path(self, scope: str) -> Path:
        if not _SCOPE_RE.match(scope):
            raise LedgerError(f"Invalid ledger scope: {scope!r}")
        return self.root / f'{scope}.json'

    @contextmanager
    def _locked(self, scope: str) -> Iterator[Path]:
        path = self._scope_path(scope)
        with self._lock:
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                lock_file = open(path.with_suffix('.lock'), 'a+', encoding='utf-8')
            except OSError as e:
                raise LedgerError(f"Ledger unavailable at {self.root}: {e}") from e
            try:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                yield path
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)
                lock_file.close()

    def _read(self, path: Path) -> dict[str, dict]:
        if not path.exists():
            return {}
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LedgerError(f"Cannot read ledger {path}: {e}") from e
        return data.get('entries', {})

    def _write(self, path: Path, scope: str, entries: dict[str, dict]) -> None:
        data = {'scope': scope, 'entries': entries}
        try:
            fd, tmp = tempfile.mkstemp(prefix=f'.{scope}-', suffix='.json', dir=self.root)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except OSError as e:
            raise LedgerError(f"Cannot write ledger {path}: {e}") from e
        logger.debug(f"Saved ledger scope '{scope}' to {path}")

    def check_writable(self) -> None:
        """Verify the store accepts writes before anything is applied.

        Raises:
            LedgerError: If the ledger directory cannot be written
        """
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix='.writable-', dir=self.root)
            os.close(fd)
            os.unlink(tmp)
        except OSError as e:
            raise LedgerError(f"Ledger not writable at {self.root}: {e}") from e

    def record(self, entry: LedgerEntry) -> LedgerEntry:
        """Upsert an entry keyed by (scope, service).

        An existing entry keeps its original created_at.
        """
        if entry.status not in STATUSES:
            raise LedgerError(f"Invalid ledger status: {entry.status}")
        scope = entry.merge_request_id
        with self._locked(scope) as path:
            entries = self._read(path)
            existing = entries.get(entry.service_name)
            if existing is not None:
                entry.created_at = existing.get('created_at', entry.created_at)
                entry.updated_at = time.time()
            entries[entry.service_name] = entry.to_dict()
            self._write(path, scope, entries)
        return entry

    def update(
        self,
        key: tuple[str, str],
        status: str,
        error: Optional[str] = None,
        outputs: Optional[dict] = None,
        resource_ids: Optional[List[str]] = None,
    ) -> LedgerEntry:
        """Change an entry's status (and optionally its results).

        Raises:
            KeyError: If no entry exists for key
        """
        if status not in STATUSES:
            raise LedgerError(f"Invalid ledger status: {status}")
        scope, service = key
        with self._locked(scope) as path:
            entries = self._read(path)
            if service not in entries:
                raise KeyError(key)
            entry = LedgerEntry.from_dict(entries[service])
            entry.status = status
            entry.updated_at = time.time()
            entry.error = error
            if outputs is not None:
                entry.outputs = dict(outputs)
            if resource_ids is not None:
                entry.resource_ids = list(resource_ids)
            entries[service] = entry.to_dict()
            self._write(path, scope, entries)
        return entry

    def get(self, key: tuple[str, str]) -> Optional[LedgerEntry]:
        scope, service = key
        with self._locked(scope) as path:
            data = self._read(path).get(service)
        return LedgerEntry.from_dict(data) if data else None

    # List, not list: inside this class body "list" names the method below
    def scopes(self) -> List[str]:
        """All scopes that have a ledger file."""
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob('*.json') if not p.name.startswith('.'))

    def list(self, scope: Optional[str] = None) -> List[LedgerEntry]:
        """Entries for one scope, or for every scope when scope is None.

        Sorted by (scope, service) for stable output.
        """
        scopes = [scope] if scope is not None else self.scopes()
        entries: List[LedgerEntry] = []
        for s in scopes:
            with self._locked(s) as path:
                data = self._read(path)
            entries.extend(LedgerEntry.from_dict(v) for v in data.values())
        return sorted(entries, key=lambda e: e.key)

    def remove(self, key: tuple[str, str]) -> bool:
        """Delete an entry. Returns False if it did not exist.

        The scope file is removed once its last entry is gone.
        """
        scope, service = key
        with self._locked(scope) as path:
            entries = self._read(path)
            if service not in entries:
                return False
            del entries[service]
            if entries:
                self._write(path, scope, entries)
            else:
                try:
                    path.unlink(missing_ok=True)
                except OSError as e:
                    raise LedgerError(f"Cannot remove ledger {path}: {e}") from e
        return True

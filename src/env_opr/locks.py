"""Advisory locks around engine runs.

Two requests resolving to the same state key (e.g. both deploying into
one stable environment), or running the engine in the same service
directory, must not overlap. Each name gets a process-local lock plus an
fcntl lock on {state_dir}/locks/{digest}.lock for cross-process exclusion.
Names are always acquired in sorted order.

Waiting is cancellable: with a CancelToken the wait polls, and a fired
token (signal or deadline) raises CancelledError instead of blocking on.
"""

import fcntl
import hashlib
import logging
import threading
from contextlib import contextmanager, ExitStack
from pathlib import Path
from typing import IO, Iterator, Optional

from common import POLL_INTERVAL, CancelToken
from errors import CancelledError, LedgerError

logger = logging.getLogger(__name__)


class StateLocks:
    """Registry of named advisory locks."""

    def __init__(self, state_dir: Path):
        self.root = Path(state_dir) / 'locks'
        self._guard = threading.Lock()
        self._local: dict[str, threading.Lock] = {}

    def _local_lock(self, name: str) -> threading.Lock:
        with self._guard:
            return self._local.setdefault(name, threading.Lock())

    @staticmethod
    def _acquire_local(lock: threading.Lock, cancel: Optional[CancelToken], owner: str) -> None:
        if cancel is None:
            lock.acquire()
            return
        while not lock.acquire(timeout=POLL_INTERVAL):
            if cancel.cancelled:
                raise CancelledError(owner)

    @staticmethod
    def _acquire_file(handle: IO, cancel: Optional[CancelToken], owner: str) -> None:
        if cancel is None:
            fcntl.flock(handle, fcntl.LOCK_EX)
            return
        while True:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if cancel.wait(POLL_INTERVAL):
                    raise CancelledError(owner) from None

    @contextmanager
    def _hold_one(self, name: str, cancel: Optional[CancelToken], owner: str) -> Iterator[None]:
        digest = hashlib.sha256(name.encode('utf-8')).hexdigest()[:24]
        local = self._local_lock(name)
        logger.debug(f"Waiting for lock {name}")
        self._acquire_local(local, cancel, owner)
        try:
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                handle = open(self.root / f'{digest}.lock', 'a+', encoding='utf-8')
            except OSError as e:
                raise LedgerError(f"Cannot create lock for {name}: {e}") from e
            try:
                self._acquire_file(handle, cancel, owner)
                logger.debug(f"Acquired lock {name}")
                try:
                    yield
                finally:
                    fcntl.flock(handle, fcntl.LOCK_UN)
            finally:
                handle.close()
        finally:
            local.release()

    @contextmanager
    def hold(self, *names: str, cancel: Optional[CancelToken] = None,
             owner: Optional[str] = None) -> Iterator[None]:
        """Hold every named lock for the duration of the block.

        Raises:
            CancelledError: If cancel fires while waiting (named after owner)
        """
        with ExitStack() as stack:
            for name in sorted(set(names)):
                stack.enter_context(self._hold_one(name, cancel, owner or name))
            yield

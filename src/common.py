"""Common utilities and types for environment orchestration."""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Seconds an engine process gets to exit after SIGTERM before SIGKILL
TERMINATE_GRACE = 10.0

# Poll interval while waiting on a cancellable process
POLL_INTERVAL = 0.2


@dataclass
class ActionResult:
    """Result returned by an engine action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    outputs: dict = field(default_factory=dict)
    resource_ids: list = field(default_factory=list)


class CancelToken:
    """Cancellation signal shared by all node operations of a request.

    Combines an explicit cancel (e.g. from a signal handler) with an
    optional absolute deadline.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self.deadline: Optional[float] = time.monotonic() + timeout if timeout else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self._event.set()
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline (None = no deadline)."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds; return True if cancelled meanwhile."""
        if self.cancelled:
            return True
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(seconds)
        return self.cancelled


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    env: Optional[dict] = None,
    cancel: Optional[CancelToken] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    The wait is cancellable: when cancel fires, the process is terminated
    and given TERMINATE_GRACE seconds before being killed. A cancelled or
    timed-out command returns -1.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env,
        )
    except OSError as e:
        return -1, '', str(e)

    start = time.monotonic()
    while True:
        try:
            out, err = proc.communicate(timeout=POLL_INTERVAL)
            return proc.returncode, out, err
        except subprocess.TimeoutExpired:
            pass

        if cancel is not None and cancel.cancelled:
            _stop_process(proc)
            return -1, '', 'Command cancelled'
        if time.monotonic() - start > timeout:
            _stop_process(proc)
            return -1, '', f'Command timed out after {timeout}s'


def _stop_process(proc: subprocess.Popen) -> None:
    """Terminate a process, escalating to kill after the grace period."""
    proc.terminate()
    try:
        proc.communicate(timeout=TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {proc.pid} ignored SIGTERM, killing")
        proc.kill()
        proc.communicate()

#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. run_command execution and error handling
2. Timeout and cancellation of running processes
3. CancelToken deadline behavior
"""

import sys
import threading
import time
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import ActionResult, CancelToken, run_command


class TestRunCommand:
    """Test run_command utility."""

    def test_returns_success_tuple(self):
        """Should return (returncode, stdout, stderr) on success."""
        rc, stdout, stderr = run_command(['echo', 'hello'])
        assert rc == 0
        assert 'hello' in stdout
        assert stderr == ''

    def test_returns_failure_tuple(self):
        """Should return non-zero returncode on failure."""
        rc, _, _ = run_command(['false'])
        assert rc != 0

    def test_cwd_and_env(self, tmp_path):
        rc, stdout, _ = run_command(['sh', '-c', 'pwd; echo $ENVIE_TEST'], cwd=tmp_path,
                                    env={'ENVIE_TEST': 'yes', 'PATH': '/usr/bin:/bin'})
        assert rc == 0
        assert str(tmp_path) in stdout
        assert 'yes' in stdout

    def test_missing_binary(self):
        rc, _, stderr = run_command(['/nonexistent/terraform', 'init'])
        assert rc == -1
        assert stderr

    def test_timeout(self):
        start = time.monotonic()
        rc, _, stderr = run_command(['sleep', '30'], timeout=1)
        assert rc == -1
        assert 'timed out' in stderr
        assert time.monotonic() - start < 15

    def test_cancel(self):
        cancel = CancelToken()
        timer = threading.Timer(0.3, cancel.cancel)
        timer.start()
        try:
            rc, _, stderr = run_command(['sleep', '30'], cancel=cancel)
        finally:
            timer.cancel()
        assert rc == -1
        assert stderr == 'Command cancelled'

    def test_stubborn_process_killed(self):
        cancel = CancelToken()
        cancel.cancel()
        with patch('common.TERMINATE_GRACE', 0.5):
            rc, _, _ = run_command(['sh', '-c', 'trap "" TERM; exec sleep 30'], cancel=cancel)
        assert rc == -1


class TestCancelToken:
    """Test CancelToken."""

    def test_not_cancelled_by_default(self):
        token = CancelToken()
        assert token.cancelled is False
        assert token.remaining() is None

    def test_explicit_cancel(self):
        token = CancelToken()
        token.cancel()
        assert token.cancelled is True

    def test_deadline(self):
        token = CancelToken(timeout=0.05)
        assert token.remaining() <= 0.05
        time.sleep(0.1)
        assert token.cancelled is True
        assert token.remaining() == 0.0

    def test_wait_returns_early_on_cancel(self):
        token = CancelToken()
        threading.Timer(0.1, token.cancel).start()
        start = time.monotonic()
        assert token.wait(10) is True
        assert time.monotonic() - start < 5


class TestActionResult:
    """Test ActionResult defaults."""

    def test_defaults(self):
        result = ActionResult(success=True)
        assert result.outputs == {}
        assert result.resource_ids == []
        assert result.message == ''

    @pytest.mark.parametrize('success', [True, False])
    def test_success_flag(self, success):
        assert ActionResult(success=success).success is success

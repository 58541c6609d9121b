"""
Tests for cooperative cancellation tokens.
"""

import threading

import pytest

from mnemograph.core.cancellation import CancellationToken, check_cancelled
from mnemograph.core.exceptions import OperationCancelledError


class TestCancellationToken:

    def test_starts_active(self):
        token = CancellationToken()
        assert token.is_cancelled is False
        token.raise_if_cancelled("sweep")

    def test_cancel_raises_with_operation(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError) as exc_info:
            token.raise_if_cancelled("apply_decay")
        assert exc_info.value.operation == "apply_decay"
        assert exc_info.value.context["operation"] == "apply_decay"

    def test_check_cancelled_without_token(self):
        check_cancelled(None, "prune_graph")

    def test_wait_times_out(self):
        assert CancellationToken().wait(timeout=0.01) is False

    def test_cancel_from_another_thread(self):
        token = CancellationToken()
        thread = threading.Thread(target=token.cancel)
        thread.start()
        assert token.wait(timeout=5.0) is True
        thread.join()
        assert token.is_cancelled

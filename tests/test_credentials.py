"""
Unit tests for credential rotation.

Tests round-robin selection, disabling, attempt budgets and retry
delays using a recorded sleep.
"""

import threading
from unittest.mock import Mock

import pytest

from credit_guard.core.credentials import CredentialPool, TransientErrorKind
from credit_guard.core.errors import CredentialPoolExhausted


class KindError(Exception):
    """Test error that carries its own classification."""

    def __init__(self, kind: TransientErrorKind):
        super().__init__(kind.name)
        self.kind = kind


def classify(error: BaseException) -> TransientErrorKind:
    return getattr(error, "kind", TransientErrorKind.NOT_RETRYABLE)


class ScriptedOp:
    """Callable that replays a list of outcomes and records credentials."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.seen = []

    def __call__(self, credential):
        self.seen.append(credential)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestRotation:
    """Test round-robin selection."""

    def test_next_cycles_in_order(self):
        pool = CredentialPool(["a", "b", "c"])
        assert [pool.next() for _ in range(5)] == ["a", "b", "c", "a", "b"]

    def test_disabled_credentials_skipped(self):
        pool = CredentialPool(["a", "b", "c"])
        pool.disable("b")
        assert [pool.next() for _ in range(4)] == ["a", "c", "a", "c"]
        assert pool.enabled_count == 2
        assert pool.is_disabled("b")

    def test_all_disabled_raises(self):
        pool = CredentialPool(["a"])
        pool.disable("a")
        with pytest.raises(CredentialPoolExhausted):
            pool.next()

    def test_empty_pool_raises(self):
        pool = CredentialPool([])
        assert len(pool) == 0
        with pytest.raises(CredentialPoolExhausted):
            pool.execute(lambda c: c, classify)

    def test_concurrent_next_is_balanced(self):
        pool = CredentialPool(["a", "b"])
        seen = []
        lock = threading.Lock()

        def worker():
            for _ in range(50):
                credential = pool.next()
                with lock:
                    seen.append(credential)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert seen.count("a") == seen.count("b") == 100


class TestAttemptBudget:
    """Test how many attempts one execute call may make."""

    @pytest.mark.parametrize("keys,retries,budget", [
        (["a", "b"], 2, 3),
        (["a"], 5, 2),
        (["a", "b", "c"], 0, 1),
        (["a", "b", "c", "d"], 10, 8),
    ])
    def test_budget(self, keys, retries, budget):
        assert CredentialPool(keys, retries=retries).attempt_budget() == budget

    def test_budget_shrinks_with_disabled_credentials(self):
        pool = CredentialPool(["a", "b"], retries=10)
        pool.disable("a")
        assert pool.attempt_budget() == 2


class TestExecute:
    """Test retry behaviour per error kind."""

    def setup_method(self):
        self.sleep = Mock()

    def _pool(self, keys=("a", "b", "c"), retries=2):
        return CredentialPool(list(keys), retries=retries, base_delay=1.5, sleep=self.sleep)

    def test_success_first_try(self):
        op = ScriptedOp(["ok"])
        assert self._pool().execute(op, classify) == "ok"
        assert op.seen == ["a"]
        self.sleep.assert_not_called()

    def test_permanent_invalid_disables_and_retries_without_delay(self):
        pool = self._pool()
        op = ScriptedOp([KindError(TransientErrorKind.PERMANENT_INVALID), "ok"])

        assert pool.execute(op, classify) == "ok"
        assert op.seen == ["a", "b"]
        assert pool.is_disabled("a")
        self.sleep.assert_not_called()

    def test_permission_denied_retries_without_disabling(self):
        pool = self._pool()
        op = ScriptedOp([KindError(TransientErrorKind.PERMISSION_DENIED), "ok"])

        assert pool.execute(op, classify) == "ok"
        assert not pool.is_disabled("a")
        self.sleep.assert_not_called()

    def test_rate_limited_waits_twice_base_delay(self):
        op = ScriptedOp([KindError(TransientErrorKind.RATE_LIMITED), "ok"])
        assert self._pool().execute(op, classify) == "ok"
        self.sleep.assert_called_once_with(3.0)

    def test_transient_waits_base_delay(self):
        op = ScriptedOp([KindError(TransientErrorKind.TRANSIENT), "ok"])
        assert self._pool().execute(op, classify) == "ok"
        self.sleep.assert_called_once_with(1.5)

    def test_not_retryable_propagates_immediately(self):
        error = ValueError("bad prompt")
        op = ScriptedOp([error, "ok"])

        with pytest.raises(ValueError):
            self._pool().execute(op, classify)

        assert op.seen == ["a"]
        self.sleep.assert_not_called()

    def test_last_error_raised_when_budget_spent(self):
        errors = [KindError(TransientErrorKind.TRANSIENT) for _ in range(3)]
        op = ScriptedOp(errors)

        with pytest.raises(KindError) as exc_info:
            self._pool(retries=2).execute(op, classify)

        assert exc_info.value is errors[-1]
        assert op.seen == ["a", "b", "c"]
        assert self.sleep.call_count == 2

    def test_all_invalid_raises_exhausted_chained_to_last_error(self):
        last = KindError(TransientErrorKind.PERMANENT_INVALID)
        op = ScriptedOp([KindError(TransientErrorKind.PERMANENT_INVALID), last])
        pool = self._pool(keys=("a", "b"), retries=10)

        with pytest.raises(CredentialPoolExhausted) as exc_info:
            pool.execute(op, classify)

        assert exc_info.value.__cause__ is last
        assert pool.enabled_count == 0

    def test_rotation_continues_across_calls(self):
        pool = self._pool()
        op = ScriptedOp(["x", "y"])
        pool.execute(op, classify)
        pool.execute(op, classify)
        assert op.seen == ["a", "b"]

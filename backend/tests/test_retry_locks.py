"""Tests for provider call retries and per-lineage locks."""

import logging
import threading
import time

import httpx
import pytest

from app.core.errors import ProviderUnavailableError, VerificationError
from app.core.locks import LineageLocks
from app.core.retry import backoff_delay, call_with_retries, raise_for_transient_status


class Flaky:
    """Callable that fails with ``errors`` in order, then returns ``value``."""

    def __init__(self, *errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestBackoff:
    def test_doubles_each_attempt(self):
        assert [backoff_delay(n, 0.5) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 4.0]


class TestCallWithRetries:
    def test_success_after_transient_failures(self):
        delays = []
        func = Flaky(ProviderUnavailableError("503"), httpx.ConnectError("refused"))

        result = call_with_retries(
            func, operation="test", max_attempts=3, base_delay=1.0, sleep=delays.append
        )

        assert result == "ok"
        assert func.calls == 3
        assert delays == [1.0, 2.0]

    def test_exhausted_attempts(self):
        func = Flaky(*[httpx.ReadTimeout("slow")] * 3)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            call_with_retries(func, operation="Lookup", max_attempts=3, sleep=lambda _: None)

        assert func.calls == 3
        assert exc_info.value.details == {"attempts": 3}
        assert "Lookup failed after 3 attempts" in exc_info.value.message

    def test_other_errors_are_not_retried(self):
        func = Flaky(VerificationError("bad signature"))

        with pytest.raises(VerificationError):
            call_with_retries(func, operation="test", max_attempts=3, sleep=lambda _: None)

        assert func.calls == 1


    def test_retries_are_logged(self, caplog):
        func = Flaky(ProviderUnavailableError("503"))

        with caplog.at_level(logging.WARNING, logger="app.core.retry"):
            call_with_retries(
                func, operation="Lookup", max_attempts=2, base_delay=0.5, sleep=lambda _: None
            )

        assert "Lookup failed (attempt 1/2)" in caplog.text
        assert "retrying in 0.50s" in caplog.text

class TestTransientStatus:
    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_transient(self, status):
        with pytest.raises(ProviderUnavailableError) as exc_info:
            raise_for_transient_status(httpx.Response(status), "Lookup")
        assert exc_info.value.details == {"http_status": status}

    @pytest.mark.parametrize("status", [200, 404, 410])
    def test_not_transient(self, status):
        raise_for_transient_status(httpx.Response(status), "Lookup")


class TestLineageLocks:
    def test_registry_is_cleaned_up(self):
        locks = LineageLocks()
        with locks.hold("apple:1"):
            with locks.hold("apple:2"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_none_key_does_not_lock(self):
        locks = LineageLocks()
        with locks.hold(None):
            with locks.hold(None):
                assert len(locks) == 0

    def test_same_lineage_is_serialized(self):
        locks = LineageLocks()
        order = []

        def worker(name):
            with locks.hold("stripe:sub_1"):
                order.append(f"{name}-in")
                time.sleep(0.05)
                order.append(f"{name}-out")

        threads = [threading.Thread(target=worker, args=(n,)) for n in ("a", "b")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert order[0].split("-")[0] == order[1].split("-")[0]
        assert order[2].split("-")[0] == order[3].split("-")[0]
        assert len(locks) == 0

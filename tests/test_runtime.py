"""Bounded-concurrency map, retry with backoff and cancellation."""

from __future__ import annotations

import threading
import time

import pytest

from pdf2csv.errors import Cancelled, DecisionParseError, HttpError
from pdf2csv.runtime import (
    CancellationToken,
    ProgressCounter,
    backoff_delay,
    is_transient_error,
    map_with_concurrency,
    with_retries,
)


class Flaky:
    def __init__(self, failures: list[BaseException], result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestWithRetries:
    def test_two_503s_then_success_sleeps_twice(self):
        sleeps: list[float] = []
        op = Flaky([HttpError(503, "busy"), HttpError(503, "busy")], result="done")

        result = with_retries(op, retries=2, base_delay=0.01, sleep=sleeps.append)

        assert result == "done"
        assert op.calls == 3
        assert len(sleeps) == 2
        assert 0.01 <= sleeps[0] <= 0.01 + 0.22
        assert 0.02 <= sleeps[1] <= 0.02 + 0.22

    def test_client_error_is_not_retried(self):
        sleeps: list[float] = []
        op = Flaky([HttpError(400, "bad request")])
        with pytest.raises(HttpError) as excinfo:
            with_retries(op, retries=3, sleep=sleeps.append)
        assert excinfo.value.status == 400
        assert op.calls == 1
        assert sleeps == []

    def test_malformed_output_is_not_retried(self):
        op = Flaky([DecisionParseError("Missing keep array in model JSON response.")])
        with pytest.raises(DecisionParseError):
            with_retries(op, retries=3, sleep=lambda _: None)
        assert op.calls == 1

    def test_exhausted_retries_reraise_last_error(self):
        op = Flaky([HttpError(500, "first"), HttpError(502, "second"), HttpError(429, "third")])
        with pytest.raises(HttpError, match="third"):
            with_retries(op, retries=2, sleep=lambda _: None)
        assert op.calls == 3

    def test_transport_errors_are_transient(self):
        op = Flaky([ConnectionError("reset")], result=5)
        assert with_retries(op, retries=1, sleep=lambda _: None) == 5

    def test_cancellation_propagates_without_retry(self):
        op = Flaky([Cancelled()])
        with pytest.raises(Cancelled):
            with_retries(op, retries=5, sleep=lambda _: None)
        assert op.calls == 1

    def test_cancel_during_backoff_sleep(self):
        token = CancellationToken()
        op = Flaky([HttpError(503, "busy")])

        def cancel_soon():
            time.sleep(0.05)
            token.cancel()

        threading.Thread(target=cancel_soon).start()
        t0 = time.monotonic()
        with pytest.raises(Cancelled):
            with_retries(op, retries=1, base_delay=30.0, cancel=token)
        assert time.monotonic() - t0 < 5
        assert op.calls == 1

    def test_cancel_between_attempts_stops_retrying(self):
        token = CancellationToken()
        calls = []

        def op():
            calls.append(1)
            token.cancel()
            raise HttpError(503, "busy")

        with pytest.raises(Cancelled):
            with_retries(op, retries=3, base_delay=0.0, cancel=token, sleep=lambda _: None)
        assert len(calls) == 1

    def test_already_cancelled_token_skips_attempt(self):
        token = CancellationToken()
        token.cancel()
        op = Flaky([])
        with pytest.raises(Cancelled):
            with_retries(op, cancel=token)
        assert op.calls == 0


def test_error_classification():
    assert is_transient_error(HttpError(429, "slow down"))
    assert is_transient_error(HttpError(503, "unavailable"))
    assert is_transient_error(TimeoutError())
    assert not is_transient_error(HttpError(404, "missing"))
    assert not is_transient_error(Cancelled())
    assert not is_transient_error(DecisionParseError("bad"))


def test_backoff_grows_linearly_with_jitter():
    for attempt in range(4):
        delay = backoff_delay(attempt, 0.8)
        assert 0.8 * (attempt + 1) <= delay <= 0.8 * (attempt + 1) + 0.22


# ---------------------------------------------------------------------------
# Bounded-concurrency map
# ---------------------------------------------------------------------------


class TestMapWithConcurrency:
    def test_results_keep_input_order(self):
        def worker(item, index):
            time.sleep(0.01 * (5 - index))
            return item * 10

        assert map_with_concurrency([1, 2, 3, 4, 5], 3, worker) == [10, 20, 30, 40, 50]

    def test_never_exceeds_concurrency(self):
        active = 0
        peak = 0
        lock = threading.Lock()

        def worker(item, index):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return index

        assert map_with_concurrency(list(range(12)), 3, worker) == list(range(12))
        assert 1 <= peak <= 3

    def test_worker_count_is_min_of_limit_and_items(self):
        names: set[str] = set()

        def worker(item, index):
            names.add(threading.current_thread().name)
            time.sleep(0.01)
            return item

        map_with_concurrency(["a", "b"], 8, worker)
        assert len(names) <= 2

    def test_empty_input(self):
        assert map_with_concurrency([], 4, lambda item, index: item) == []

    def test_first_failure_is_raised(self):
        def worker(item, index):
            if item == 3:
                raise ValueError("boom")
            return item

        with pytest.raises(ValueError, match="boom"):
            map_with_concurrency([1, 2, 3, 4], 2, worker)

    def test_cancellation_aborts_map(self):
        token = CancellationToken()
        started: list[int] = []

        def worker(item, index):
            started.append(index)
            if index == 0:
                token.cancel()
            time.sleep(0.01)
            return item

        with pytest.raises(Cancelled):
            map_with_concurrency(list(range(20)), 1, worker, token)
        assert started == [0]


def test_progress_counter_is_thread_safe():
    counter = ProgressCounter()

    def bump():
        for _ in range(500):
            counter.increment()

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert counter.value == 2000


def test_token_sleep_returns_when_not_cancelled():
    token = CancellationToken()
    token.sleep(0.001)
    assert token.cancelled is False

"""Bounded concurrency, retry with backoff and cooperative cancellation.

Cancellation is a token passed explicitly to every call that may block.
Sleeps wait on the token, so a cancel request wakes them immediately.
"""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Callable, Optional, Sequence, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from .errors import (
    Cancelled,
    ConfigurationError,
    DecisionParseError,
    HttpError,
)

log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY_S = 0.8
MAX_JITTER_S = 0.22


class CancellationToken:
    """Shared, one-way cancellation signal for a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()

    def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, raising ``Cancelled`` as soon as the token fires."""
        if self._event.wait(max(0.0, seconds)):
            raise Cancelled()


def raise_if_cancelled(cancel: Optional[CancellationToken]) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


class ProgressCounter:
    """Thread-safe counter owned by the orchestrating caller."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value


# ---------------------------------------------------------------------------
# Bounded-concurrency map
# ---------------------------------------------------------------------------


def map_with_concurrency(
    items: Sequence[T],
    concurrency: int,
    worker: Callable[[T, int], R],
    cancel: Optional[CancellationToken] = None,
) -> list[R]:
    """Apply *worker* to every item with at most *concurrency* threads.

    Exactly ``min(concurrency, len(items))`` workers pull indexes from a
    shared cursor. Results keep input order. The first failure (including
    cancellation) stops the other workers from taking new items and is
    re-raised.
    """
    if not items:
        return []

    bounded = max(1, int(concurrency))
    results: list = [None] * len(items)
    lock = threading.Lock()
    cursor = 0
    failed = threading.Event()

    def run_worker() -> None:
        nonlocal cursor
        while True:
            raise_if_cancelled(cancel)
            if failed.is_set():
                return
            with lock:
                index = cursor
                cursor += 1
            if index >= len(items):
                return
            try:
                results[index] = worker(items[index], index)
            except BaseException:
                failed.set()
                raise

    worker_count = min(bounded, len(items))
    with ThreadPoolExecutor(
        max_workers=worker_count,
        thread_name_prefix="pdf2csv-worker",
    ) as executor:
        futures = [executor.submit(run_worker) for _ in range(worker_count)]
        done, _pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in done:
            error = future.exception()
            if error is not None:
                failed.set()
                wait(futures)
                raise error
        for future in futures:
            future.result()

    return results


# ---------------------------------------------------------------------------
# Retry with backoff
# ---------------------------------------------------------------------------


def is_transient_error(error: BaseException) -> bool:
    """Rate limits, server errors and transport failures are worth retrying.

    Cancellation, configuration problems and undecodable model output are
    permanent.
    """
    if isinstance(error, (Cancelled, ConfigurationError, DecisionParseError)):
        return False
    if isinstance(error, HttpError):
        return error.is_transient
    return True


def backoff_delay(attempt: int, base_delay: float = DEFAULT_BASE_DELAY_S) -> float:
    return base_delay * (attempt + 1) + random.uniform(0, MAX_JITTER_S)


def _log_retry(retry_state: RetryCallState) -> None:
    log.debug(
        "Attempt %s failed (%s); retrying in %.2fs",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
        retry_state.next_action.sleep,
    )


def with_retries(
    operation: Callable[[], T],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY_S,
    cancel: Optional[CancellationToken] = None,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run *operation*, retrying transient failures with linear backoff.

    Args:
        operation: Zero-argument callable to attempt.
        retries: Extra attempts after the first one.
        base_delay: Seconds multiplied by the attempt number, plus jitter.
        cancel: Token checked before each attempt and during sleeps.
        is_retryable: Classifier for caught exceptions.
        sleep: Override for the wait primitive (defaults to the token's sleep).

    Returns:
        The operation's result. The last error is re-raised once retries
        run out or a permanent error is hit.
    """
    retries = max(0, int(retries))
    if sleep is None:
        sleep = (cancel or CancellationToken()).sleep

    retrying = Retrying(
        stop=stop_after_attempt(retries + 1),
        wait=lambda rs: backoff_delay(rs.attempt_number - 1, base_delay),
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        before=lambda rs: raise_if_cancelled(cancel),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(operation)

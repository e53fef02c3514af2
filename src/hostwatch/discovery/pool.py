"""Bounded concurrency for probe sweeps."""

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class AdmissionGate:
    """
    Counting gate that admits at most `limit` probes at once.

    Used as a context manager around each probe. Tracks how many probes are
    in flight and the highest number observed.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        self.limit = limit
        self._semaphore = threading.BoundedSemaphore(limit)
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak = 0

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def peak(self) -> int:
        with self._lock:
            return self._peak

    def __enter__(self):
        self._semaphore.acquire()
        with self._lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
        return self

    def __exit__(self, exc_type, exc, tb):
        with self._lock:
            self._in_flight -= 1
        self._semaphore.release()
        return False


@dataclass
class PhaseResult:
    """Outcome of one bounded sweep."""

    submitted: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: bool = False
    cancelled: bool = False


def run_bounded(
    targets: Iterable[str],
    probe: Callable[[str], object],
    gate: AdmissionGate,
    timeout: float,
    should_continue: Callable[[], bool] = lambda: True,
    name: str = "probe",
) -> PhaseResult:
    """
    Run probe(target) for every target with at most gate.limit in flight.

    Waits for all work up to `timeout` seconds. On expiry, queued work is
    cancelled and probes still running are abandoned; the function returns
    with whatever completed. Workers skip their probe once should_continue()
    turns False. Exceptions raised by a probe are logged and counted.
    """
    result = PhaseResult()

    def worker(target: str):
        if not should_continue():
            result.cancelled = True
            return None
        with gate:
            if not should_continue():
                result.cancelled = True
                return None
            return probe(target)

    executor = ThreadPoolExecutor(max_workers=gate.limit, thread_name_prefix=name)
    try:
        futures = {executor.submit(worker, target): target for target in targets}
        result.submitted = len(futures)
        done, not_done = wait(futures, timeout=timeout)

        if not_done:
            result.timed_out = True
            for future in not_done:
                future.cancel()
            logger.warning(
                f"{name} phase reached its {timeout:.0f}s ceiling "
                f"with {len(not_done)} probes unfinished"
            )

        for future in done:
            error = future.exception()
            if error is not None:
                result.failed += 1
                logger.debug(f"{name} probe of {futures[future]} failed: {error}")
            else:
                result.completed += 1
        if result.failed:
            logger.warning(
                f"{name}: {result.failed} of {result.submitted} probes failed"
            )
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return result


def run_each(
    targets: Iterable[str], probe: Callable[[str], object], name: str = "refresh"
) -> dict[str, BaseException | None]:
    """
    Run probe(target) on its own worker for every target and join them all.

    Returns:
        Mapping of target to the exception its probe raised, or None
    """
    targets = list(targets)
    if not targets:
        return {}

    with ThreadPoolExecutor(
        max_workers=len(targets), thread_name_prefix=name
    ) as executor:
        futures = {executor.submit(probe, target): target for target in targets}
        wait(futures)

    return {target: future.exception() for future, target in futures.items()}

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import TypeVar

K = TypeVar("K")
V = TypeVar("V")


class CallLimiter:
    """Caps the number of in-flight external calls shared by every worker of a batch."""

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self._semaphore = threading.BoundedSemaphore(max_concurrent)
        self._lock = threading.Lock()
        self._active = 0
        self._peak = 0

    @contextmanager
    def slot(self):
        self._semaphore.acquire()
        with self._lock:
            self._active += 1
            self._peak = max(self._peak, self._active)
        try:
            yield
        finally:
            with self._lock:
                self._active -= 1
            self._semaphore.release()

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    @property
    def peak(self) -> int:
        with self._lock:
            return self._peak


def fan_out(
    keys: Iterable[K],
    fn: Callable[[K], V],
    *,
    limiter: CallLimiter,
) -> dict[K, Future[V]]:
    """Run ``fn`` for every key on a thread pool and wait until all futures settle.

    The returned futures are all done; callers inspect ``result()``/``exception()``.
    """
    unique = list(dict.fromkeys(keys))
    if not unique:
        return {}

    def _run(key: K) -> V:
        with limiter.slot():
            return fn(key)

    workers = min(limiter.max_concurrent, len(unique))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ledger-provider") as pool:
        futures = {key: pool.submit(_run, key) for key in unique}
        wait(list(futures.values()))
    return futures

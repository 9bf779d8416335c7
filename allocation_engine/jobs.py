"""
Background job runner.

Long-running work (batch processing, bulk reallocation) is submitted here
so HTTP requests can return immediately with a batch or job id.
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from threading import Lock
from typing import Any, Callable, Dict, Optional
import logging


logger = logging.getLogger(__name__)


class JobRunner:
    """Thread pool keyed by job or batch id"""

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="allocation-worker")
        self._futures: Dict[str, Future] = {}
        self._lock = Lock()

    def submit(self, key: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Run ``func`` in the background under ``key``"""
        def run():
            try:
                return func(*args, **kwargs)
            except Exception:
                logger.exception(f"Background job {key} failed")
                raise

        with self._lock:
            future = self._executor.submit(run)
            self._futures[key] = future
        # Registered outside the lock: an already finished future calls back at once
        future.add_done_callback(lambda done: self._forget(key, done))
        logger.debug(f"Submitted background job {key}")
        return future

    def _forget(self, key: str, future: Future) -> None:
        with self._lock:
            if self._futures.get(key) is future:
                del self._futures[key]

    def pending_count(self) -> int:
        with self._lock:
            return len(self._futures)

    def is_running(self, key: str) -> bool:
        with self._lock:
            future = self._futures.get(key)
        return future is not None and not future.done()

    def wait(self, key: Optional[str] = None, timeout: Optional[float] = None) -> None:
        """Block until one job, or every submitted job, has finished"""
        with self._lock:
            if key is not None:
                futures = [self._futures[key]] if key in self._futures else []
            else:
                futures = list(self._futures.values())
        wait_futures(futures, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

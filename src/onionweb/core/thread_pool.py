"""
=============================================================================
CONNECTION THREAD POOL
=============================================================================

Each accepted connection becomes one task. A worker thread runs the whole
keep-alive loop for that connection, so every request's middleware chain
runs start to finish on a single thread (within-request ordering), while
different connections run in parallel.

    accept loop ──submit(conn)──► ┌──────────────────────────┐
                                  │ bounded task queue       │
                                  └────────────┬─────────────┘
                                               │ get()
                         ┌─────────────┬───────┴─────┬─────────────┐
                         │  Worker-0   │  Worker-1   │  Worker-N   │
                         └─────────────┴─────────────┴─────────────┘

    min_workers   started up front
    max_workers   upper bound; a worker is added when all are busy and
                  tasks are waiting
    queue_size    submit(block=False) returns False when full, and the
                  server answers 503 Service Unavailable

Shutdown uses the poison pill pattern: one None per worker.

=============================================================================
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Job:
    """A queued call: func(*args, **kwargs)."""

    func: Callable[..., Any]
    args: tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    queued_at: float = field(default_factory=time.monotonic)


# sentinel telling one worker to exit
_STOP = None


class ThreadPool:
    """
    Bounded, growing pool of daemon worker threads.

    Usage:
        pool = ThreadPool(min_workers=4, max_workers=16, queue_size=100)
        pool.start()
        if not pool.submit(serve_connection, args=(conn,), block=False):
            reject(conn)
        pool.shutdown(wait=True, timeout=30.0)
    """

    def __init__(self, min_workers: int = 4, max_workers: int = 16, queue_size: int = 100):
        self.min_workers = min_workers
        self.max_workers = max_workers
        self.max_queue_size = queue_size

        self._jobs: "queue.Queue[Optional[Job]]" = queue.Queue(maxsize=queue_size)
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._running = False
        self._busy = 0
        self._completed = 0
        self._failed = 0
        self._spawned = 0

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            for _ in range(self.min_workers):
                self._add_thread()
        logger.info(f"Thread pool started ({self.min_workers}-{self.max_workers} workers)")

    def _add_thread(self) -> None:
        # caller holds self._lock
        thread = threading.Thread(target=self._work, name=f"onionweb-worker-{self._spawned}", daemon=True)
        self._spawned += 1
        self._threads.append(thread)
        thread.start()

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop accepting jobs and stop the workers.

        Args:
            wait: Let queued and running jobs finish first
            timeout: Bound on that wait; workers are signalled regardless
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            threads, self._threads = self._threads, []

        if wait and not self._wait_for_jobs(timeout):
            logger.warning(f"Thread pool still busy after {timeout}s, stopping anyway")

        for _ in threads:
            try:
                self._jobs.put(_STOP, block=False)
            except queue.Full:
                break
        for thread in threads:
            thread.join(timeout=2.0)

        logger.info(f"Thread pool stopped ({self._completed} jobs done, {self._failed} failed)")

    def _wait_for_jobs(self, timeout: Optional[float]) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._jobs.unfinished_tasks:
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.05)
        return True

    # =========================================================================
    # JOBS
    # =========================================================================

    def submit(
        self,
        func: Callable[..., Any],
        args: tuple = (),
        kwargs: Optional[Dict[str, Any]] = None,
        block: bool = True,
        queue_timeout: Optional[float] = None,
    ) -> bool:
        """
        Queue func(*args, **kwargs).

        Returns:
            False when the queue stayed full.

        Raises:
            RuntimeError: The pool is not running.
        """
        if not self._running:
            raise RuntimeError("Thread pool is not running")

        try:
            self._jobs.put(Job(func, args, kwargs or {}), block=block, timeout=queue_timeout)
        except queue.Full:
            return False

        with self._lock:
            saturated = self._busy >= len(self._threads)
            if self._running and saturated and len(self._threads) < self.max_workers:
                logger.debug(f"All {len(self._threads)} workers busy, adding one")
                self._add_thread()
        return True

    def _work(self) -> None:
        while True:
            job = self._jobs.get()
            if job is _STOP:
                self._jobs.task_done()
                return

            with self._lock:
                self._busy += 1
            try:
                job.func(*job.args, **job.kwargs)
            except Exception:
                elapsed = time.monotonic() - job.queued_at
                logger.exception(f"Job failed {elapsed:.3f}s after it was queued")
                with self._lock:
                    self._failed += 1
            else:
                with self._lock:
                    self._completed += 1
            finally:
                with self._lock:
                    self._busy -= 1
                self._jobs.task_done()

    # =========================================================================
    # MONITORING
    # =========================================================================

    @property
    def busy_workers(self) -> int:
        return self._busy

    @property
    def queue_size(self) -> int:
        return self._jobs.qsize()

    def stats(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            total = len(self._threads)
            busy = self._busy
            completed, failed = self._completed, self._failed
        return {
            "workers": {"total": total, "busy": busy, "idle": max(total - busy, 0)},
            "tasks": {"queued": self._jobs.qsize(), "completed": completed, "failed": failed},
        }

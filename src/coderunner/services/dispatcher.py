from __future__ import annotations

import queue
import threading
from typing import Callable, List, Optional

import structlog

log = structlog.get_logger(__name__)

_STOP = object()


class Dispatcher:
    """
    FIFO queue feeding a fixed pool of worker threads.

    pool_size bounds how many jobs are processed at once; every worker runs
    one job to a terminal state before taking the next one.
    """

    def __init__(self, process: Callable[[str], None], pool_size: int = 2, alert_depth: int = 100):
        if pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        self._process = process
        self.pool_size = pool_size
        self.alert_depth = alert_depth

        self._queue: "queue.Queue[object]" = queue.Queue()
        self._workers: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._running = 0
        self._peak = 0
        self._alerting = False

    # ---------- producer side ----------

    def enqueue(self, job_id: str) -> int:
        self._queue.put(job_id)
        depth = self._queue.qsize()
        with self._lock:
            crossed = depth > self.alert_depth and not self._alerting
            if crossed:
                self._alerting = True
        if crossed:
            log.warning("queue_depth_alert", depth=depth, threshold=self.alert_depth)
        return depth

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def over_threshold(self) -> bool:
        return self.depth > self.alert_depth

    @property
    def running(self) -> int:
        with self._lock:
            return self._running

    @property
    def peak_running(self) -> int:
        with self._lock:
            return self._peak

    # ---------- pool ----------

    @property
    def started(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        for i in range(self.pool_size):
            t = threading.Thread(target=self._worker, name=f"coderunner-worker-{i}", daemon=True)
            t.start()
            self._workers.append(t)
        log.info("dispatcher_started", pool_size=self.pool_size)

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Let queued jobs drain, then stop every worker."""
        if not self._workers:
            return
        for _ in self._workers:
            self._queue.put(_STOP)
        if wait:
            for t in self._workers:
                t.join(timeout)
        self._workers = []
        log.info("dispatcher_stopped")

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._run_one(item)
            finally:
                self._queue.task_done()

    def _run_one(self, job_id) -> None:
        with self._lock:
            self._running += 1
            self._peak = max(self._peak, self._running)
        try:
            self._process(job_id)
        except Exception:
            # one job's failure never takes a worker down
            log.exception("worker_job_crashed", job_id=job_id)
        finally:
            with self._lock:
                self._running -= 1
                if self._alerting and self._queue.qsize() <= self.alert_depth:
                    self._alerting = False

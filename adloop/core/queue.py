"""
In-process job queue - priority ordering, worker threads and retry backoff.

Lower priority numbers run first. The queue only carries job ids; the job
itself lives in the store, so anything lost on stop() is still 'queued'
there and can be picked up again after a restart.
"""

import heapq
import itertools
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from .config import JOB_BACKOFF_BASE_SEC, QUEUE_WORKERS, validate_queue_config
from .schema import Job
from ..util.logging import logger


class JobQueue:
    """Worker-thread transport for the job pipeline."""

    def __init__(self, workers: int = QUEUE_WORKERS, backoff_base_sec: float = JOB_BACKOFF_BASE_SEC,
                 poll_interval_sec: float = 0.5):
        if workers < 1:
            raise ValueError(f"workers must be >= 1: {workers}")

        self.workers = workers
        self.backoff_base_sec = backoff_base_sec
        self.poll_interval_sec = poll_interval_sec

        self._runner: Optional[Callable[[str], Optional[Job]]] = None
        self._ready: List[Tuple[int, int, str]] = []           # (priority, seq, job_id)
        self._delayed: List[Tuple[float, int, int, str]] = []  # (ready_at, seq, priority, job_id)
        self._waiting: Set[str] = set()
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._threads: List[threading.Thread] = []
        self._running = False
        self._processed = 0
        self._errors = 0

    def bind(self, runner: Callable[[str], Optional[Job]]):
        """Set the callable that runs one attempt of a job (JobPipeline.execute)."""
        if not callable(runner):
            raise ValueError(f"Runner must be callable: {runner}")
        self._runner = runner

    def start(self):
        """Start the worker threads."""
        if self._running:
            raise RuntimeError("Job queue already running")

        if self._runner is None:
            raise RuntimeError("Job queue has no runner bound")

        issues = validate_queue_config()
        if issues:
            raise ValueError(f"Queue configuration invalid: {issues}")

        self._running = True
        self._threads = [
            threading.Thread(target=self._worker_loop, name=f"adloop-queue-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for thread in self._threads:
            thread.start()

        logger.info(f"Job queue started with {self.workers} workers")

    def stop(self, timeout: float = 5.0):
        """Stop the workers. Jobs still waiting stay 'queued' in the store."""
        if not self._running:
            logger.info("Job queue not running")
            return

        with self._cond:
            self._running = False
            self._cond.notify_all()

        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

        with self._cond:
            dropped = len(self._waiting)
            self._ready.clear()
            self._delayed.clear()
            self._waiting.clear()

        logger.info(f"Job queue stopped ({dropped} waiting jobs left queued)")

    @property
    def running(self) -> bool:
        return self._running

    def enqueue(self, job_id: str, priority: int = 1, delay: float = 0) -> bool:
        """
        Add a job id to the queue.

        Returns False when the queue is not running, so the caller can fall
        back to inline execution. A job id that is already waiting is not
        added twice.
        """
        with self._cond:
            if not self._running:
                return False

            if job_id in self._waiting:
                return True

            self._waiting.add(job_id)
            seq = next(self._seq)
            if delay > 0:
                heapq.heappush(self._delayed, (time.monotonic() + delay, seq, priority, job_id))
            else:
                heapq.heappush(self._ready, (priority, seq, job_id))
            self._cond.notify()
            return True

    def discard(self, job_id: str) -> bool:
        """Forget a waiting job id. Returns False if it was not waiting."""
        with self._cond:
            if job_id not in self._waiting:
                return False
            self._waiting.discard(job_id)
            return True

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait before the next attempt: base * 2^(attempts-1)."""
        return self.backoff_base_sec * (2 ** max(0, attempts - 1))

    def get_status(self) -> Dict:
        """Return current queue status for monitoring."""
        with self._cond:
            return {
                "status": "running" if self._running else "stopped",
                "workers": len(self._threads),
                "waiting": len(self._waiting),
                "delayed": len(self._delayed),
                "processed": self._processed,
                "errors": self._errors
            }

    def _next_job(self) -> Optional[str]:
        with self._cond:
            while self._running:
                now = time.monotonic()
                while self._delayed and self._delayed[0][0] <= now:
                    _, seq, priority, job_id = heapq.heappop(self._delayed)
                    heapq.heappush(self._ready, (priority, seq, job_id))

                while self._ready:
                    _, _, job_id = heapq.heappop(self._ready)
                    if job_id in self._waiting:  # skip discarded ids
                        self._waiting.discard(job_id)
                        return job_id

                timeout = self.poll_interval_sec
                if self._delayed:
                    timeout = min(timeout, max(0.0, self._delayed[0][0] - now))
                self._cond.wait(timeout)
        return None

    def _worker_loop(self):
        while True:
            job_id = self._next_job()
            if job_id is None:
                return

            try:
                job = self._runner(job_id)
            except Exception as e:
                # Error isolation - log and keep the worker alive
                with self._cond:
                    self._errors += 1
                logger.error(f"Job queue runner failed for {job_id}: {e}")
                continue

            with self._cond:
                self._processed += 1

            if job is not None and job.status == 'failed' and not job.attempts_exhausted:
                delay = self.backoff_delay(job.attempts)
                if self.enqueue(job.id, job.priority, delay=delay):
                    logger.log_job_transition(job.id, job.type, "scheduled", job.attempts, {"delay_sec": delay})

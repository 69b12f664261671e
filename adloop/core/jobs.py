"""
Job pipeline - idempotent, retryable execution of side-effecting work.

A job is created at most once per idempotency key. New jobs go to the queue
transport; when the transport is missing or refuses the job, the job runs
inline on the caller's thread so it is never left stranded in 'queued'.
"""

import hashlib
import json
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from .config import JOB_MAX_ATTEMPTS
from .dao import JobStore
from .errors import InputError, InvalidTransitionError, NotFoundError
from .schema import Job
from ..util.logging import logger

EXECUTE_OPERATION = 'EXECUTE_OPERATION'


def build_idempotency_key(job_type: str, payload: Dict[str, Any] = None, policy_id: str = None) -> str:
    """sha256 over the canonical JSON of (type, policy, payload), first 40 hex chars."""
    raw = json.dumps(
        {"type": job_type, "policyId": policy_id, "payload": payload or {}},
        sort_keys=True, separators=(',', ':'), default=str
    )
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()[:40]


class IJobHandler(ABC):
    """Runs the side effect behind one job type."""

    @abstractmethod
    def handle(self, job: Job) -> Any:
        """Do the work. Raise to fail the attempt; the return value is stored as the job result."""
        pass

    def on_terminal_failure(self, job: Job, error: str) -> None:
        """Called once when a job has failed for the last time."""
        pass

    def on_cancel(self, job: Job) -> None:
        """Called after a job is cancelled. job.status is 'running' while an attempt may still be in progress."""
        pass

    def idempotency_key(self, payload: Dict[str, Any], policy_id: str = None) -> Optional[str]:
        """Key for a new job of this type, or None to hash the whole submission."""
        return None


class JobPipeline:
    """Creates, claims, runs, cancels and retries persisted jobs."""

    def __init__(self, store: JobStore, queue=None, max_attempts: int = JOB_MAX_ATTEMPTS):
        self.store = store
        self.queue = queue
        self.max_attempts = max_attempts
        self._handlers: Dict[str, IJobHandler] = {}

        if self.queue is not None:
            self.queue.bind(self.execute)

    def register_handler(self, job_type: str, handler: IJobHandler):
        """Register the handler for a job type (replaces any previous one)."""
        if not isinstance(handler, IJobHandler):
            raise ValueError(f"Handler must implement IJobHandler: {handler!r}")
        self._handlers[job_type] = handler

    def submit(
        self,
        job_type: str,
        payload: Dict[str, Any] = None,
        idempotency_key: str = None,
        priority: int = 1,
        policy_id: str = None,
        created_by: str = None,
    ) -> Job:
        """
        Create a job unless one with the same idempotency key exists.

        Returns the existing job unchanged on a duplicate submit. A new job is
        enqueued, or executed inline when the queue is unavailable.
        """
        if not job_type:
            raise InputError("Job type is required")
        if job_type not in self._handlers:
            raise InputError(f"Unsupported job type: {job_type}")

        payload = payload or {}
        key = (idempotency_key
               or self._handlers[job_type].idempotency_key(payload, policy_id)
               or build_idempotency_key(job_type, payload, policy_id))

        job, created = self.store.create_if_absent(Job(
            id=str(uuid.uuid4()),
            type=job_type,
            idempotency_key=key,
            payload=payload,
            max_attempts=self.max_attempts,
            priority=priority,
            policy_id=policy_id,
            created_by=created_by
        ))

        if not created:
            logger.log_job_transition(job.id, job.type, "deduplicated", job.attempts, {"status": job.status})
            return job

        logger.log_job_transition(job.id, job.type, "queued", 0, {"priority": priority})
        return self._dispatch(job)

    def execute(self, job_id: str, final_attempt: bool = False) -> Job:
        """
        Run one attempt of a job.

        Completed, cancelled and running jobs are returned untouched. Handler
        errors are recorded on the job and never raised to the caller.

        Args:
            job_id: Job to run
            final_attempt: Treat a failure as terminal regardless of attempts
                left (used by the inline fallback, which has nobody to retry it)
        """
        job = self.get(job_id)
        if job.status in ('completed', 'cancelled', 'running'):
            return job

        if not self.store.claim(job_id):
            # Someone else claimed or cancelled it first
            return self.get(job_id)

        job = self.get(job_id)
        logger.log_job_transition(job.id, job.type, "running", job.attempts)

        handler = self._handlers.get(job.type)
        try:
            if handler is None:
                raise InputError(f"Unsupported job type: {job.type}")
            result = handler.handle(job)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            return self._record_failure(job, handler, error, final_attempt)

        if self.store.complete(job_id, result):
            logger.log_job_transition(job.id, job.type, "completed", job.attempts)
        return self.get(job_id)

    def cancel(self, job_id: str) -> Job:
        """Cancel a job that has not completed. A completed remote action is never rolled back."""
        job = self.get(job_id)
        if job.status == 'cancelled':
            return job
        if job.status == 'completed' or not self.store.cancel(job_id):
            raise InvalidTransitionError('Job', job_id, self.get(job_id).status, 'cancelled')

        if self.queue is not None:
            self.queue.discard(job_id)

        logger.log_job_transition(job.id, job.type, "cancelled", job.attempts)
        self._notify_cancel(job)
        return self.get(job_id)

    def retry(self, job_id: str) -> Job:
        """Put a failed job back in the queue. Attempts keep counting."""
        job = self.get(job_id)
        if job.status != 'failed' or not self.store.reset_for_retry(job_id):
            raise InvalidTransitionError('Job', job_id, self.get(job_id).status, 'queued')

        job = self.get(job_id)
        logger.log_job_transition(job.id, job.type, "queued", job.attempts, {"retry": True})
        return self._dispatch(job)

    def get(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def list_jobs(self, status: str = None, job_type: str = None, policy_id: str = None,
                  page: int = 1, page_size: int = 20) -> Tuple[List[Job], int]:
        return self.store.list_jobs(status, job_type, policy_id, page, page_size)

    def resume_queued(self) -> int:
        """Re-enqueue jobs left 'queued' by a previous process. Returns how many were handed to the queue."""
        if self.queue is None:
            return 0

        resumed, page = 0, 1
        while True:
            jobs, total = self.store.list_jobs(status='queued', page=page, page_size=200)
            for job in jobs:
                if self.queue.enqueue(job.id, job.priority):
                    resumed += 1
            if page * 200 >= total or not jobs:
                break
            page += 1

        if resumed:
            logger.info(f"Resumed {resumed} queued jobs")
        return resumed

    def _dispatch(self, job: Job) -> Job:
        if self.queue is not None and self.queue.enqueue(job.id, job.priority):
            return job

        logger.warning(f"Queue unavailable, executing job {job.id} inline")
        return self.execute(job.id, final_attempt=True)

    def _notify_cancel(self, job: Job):
        handler = self._handlers.get(job.type)
        if handler is None:
            return
        try:
            handler.on_cancel(job)
        except Exception as e:
            logger.error(f"Cancel hook for job {job.id} failed: {e}")

    def _record_failure(self, job: Job, handler: Optional[IJobHandler], error: str, final_attempt: bool) -> Job:
        if not self.store.fail(job.id, error):
            # Cancelled while running; the cancellation stands
            job = self.get(job.id)
            if job.status == 'cancelled':
                self._notify_cancel(job)
            return job

        job = self.get(job.id)
        terminal = final_attempt or job.attempts_exhausted
        logger.log_job_transition(job.id, job.type, "failed", job.attempts, {
            "error": error[:200],
            "terminal": terminal
        })

        if terminal and handler is not None:
            try:
                handler.on_terminal_failure(job, error)
            except Exception as e:
                logger.error(f"Terminal failure hook for job {job.id} failed: {e}")

        return job

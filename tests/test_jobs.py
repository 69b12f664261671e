"""
Job pipeline tests - idempotent submit, claims, retries, cancellation and inline fallback.
"""

import threading
from unittest.mock import MagicMock

import pytest

from adloop.core.dao import JobStore
from adloop.core.errors import InputError, InvalidTransitionError, NotFoundError
from adloop.core.jobs import IJobHandler, JobPipeline, build_idempotency_key


class RecordingHandler(IJobHandler):
    """Counts calls; fails the first `fail_times` attempts."""

    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.calls = 0
        self.terminal_failures = []
        self.cancelled = []
        self._lock = threading.Lock()

    def handle(self, job):
        with self._lock:
            self.calls += 1
            call = self.calls
        if call <= self.fail_times:
            raise RuntimeError(f"attempt {call} failed")
        return {"handled": job.payload}

    def on_terminal_failure(self, job, error):
        self.terminal_failures.append((job.id, error))

    def on_cancel(self, job):
        self.cancelled.append((job.id, job.status))


@pytest.fixture
def store(tmp_path):
    return JobStore(str(tmp_path / "jobs.db"))


@pytest.fixture
def handler():
    return RecordingHandler()


@pytest.fixture
def pipeline(store, handler):
    pipeline = JobPipeline(store)
    pipeline.register_handler('TEST_JOB', handler)
    return pipeline


@pytest.fixture
def queue():
    """Queue stub that accepts every job and never runs it."""
    queue = MagicMock()
    queue.enqueue.return_value = True
    return queue


class TestIdempotencyKey:
    """Test idempotency key derivation."""

    def test_deterministic(self):
        key = build_idempotency_key('TEST_JOB', {'a': 1, 'b': 2}, 'p1')
        assert key == build_idempotency_key('TEST_JOB', {'b': 2, 'a': 1}, 'p1')
        assert len(key) == 40

    def test_inputs_change_key(self):
        base = build_idempotency_key('TEST_JOB', {'a': 1}, 'p1')
        assert base != build_idempotency_key('TEST_JOB', {'a': 2}, 'p1')
        assert base != build_idempotency_key('OTHER_JOB', {'a': 1}, 'p1')
        assert base != build_idempotency_key('TEST_JOB', {'a': 1}, 'p2')


class TestSubmit:
    """Test job submission."""

    def test_inline_when_no_queue(self, pipeline, handler):
        job = pipeline.submit('TEST_JOB', {'x': 1})

        assert job.status == 'completed'
        assert job.attempts == 1
        assert job.result == {'handled': {'x': 1}}
        assert handler.calls == 1

    def test_duplicate_submit_returns_existing(self, pipeline, handler):
        first = pipeline.submit('TEST_JOB', {'x': 1})
        second = pipeline.submit('TEST_JOB', {'x': 1})

        assert second.id == first.id
        assert second.status == 'completed'
        assert handler.calls == 1

    def test_concurrent_duplicate_submits(self, pipeline, handler):
        """Many callers submitting the same work yield one job and one attempt."""
        job_ids = []
        lock = threading.Lock()

        def submit():
            job = pipeline.submit('TEST_JOB', {'x': 'same'})
            with lock:
                job_ids.append(job.id)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(job_ids)) == 1
        assert handler.calls == 1
        assert pipeline.get(job_ids[0]).attempts == 1

    def test_explicit_idempotency_key(self, pipeline):
        first = pipeline.submit('TEST_JOB', {'x': 1}, idempotency_key='custom')
        second = pipeline.submit('TEST_JOB', {'x': 2}, idempotency_key='custom')
        assert second.id == first.id
        assert first.idempotency_key == 'custom'

    def test_enqueued_when_queue_accepts(self, store, handler, queue):
        pipeline = JobPipeline(store, queue=queue)
        pipeline.register_handler('TEST_JOB', handler)

        job = pipeline.submit('TEST_JOB', {'x': 1}, priority=3)

        assert job.status == 'queued'
        queue.enqueue.assert_called_once_with(job.id, 3)
        queue.bind.assert_called_once_with(pipeline.execute)
        assert handler.calls == 0

    def test_inline_fallback_when_queue_refuses(self, store, handler, queue):
        queue.enqueue.return_value = False
        pipeline = JobPipeline(store, queue=queue)
        pipeline.register_handler('TEST_JOB', handler)

        job = pipeline.submit('TEST_JOB', {'x': 1})

        assert job.status == 'completed'
        assert handler.calls == 1

    def test_unknown_job_type(self, pipeline):
        with pytest.raises(InputError, match="Unsupported job type"):
            pipeline.submit('NOPE', {})

    def test_register_handler_requires_interface(self, pipeline):
        with pytest.raises(ValueError):
            pipeline.register_handler('BAD', lambda job: None)


class TestExecute:
    """Test running job attempts."""

    def test_inline_failure_is_terminal(self, store):
        handler = RecordingHandler(fail_times=10)
        pipeline = JobPipeline(store)
        pipeline.register_handler('TEST_JOB', handler)

        job = pipeline.submit('TEST_JOB', {'x': 1})

        assert job.status == 'failed'
        assert job.attempts == 1
        assert job.last_error == 'attempt 1 failed'
        assert handler.terminal_failures == [(job.id, 'attempt 1 failed')]

    def test_queued_failures_are_terminal_only_when_exhausted(self, store, queue):
        handler = RecordingHandler(fail_times=10)
        pipeline = JobPipeline(store, queue=queue, max_attempts=3)
        pipeline.register_handler('TEST_JOB', handler)
        job = pipeline.submit('TEST_JOB', {'x': 1})

        for attempt in (1, 2):
            job = pipeline.execute(job.id)
            assert job.status == 'failed'
            assert job.attempts == attempt
            assert handler.terminal_failures == []

        job = pipeline.execute(job.id)
        assert job.attempts == 3
        assert job.attempts_exhausted
        assert len(handler.terminal_failures) == 1

    def test_succeeds_after_retryable_failure(self, store, queue):
        handler = RecordingHandler(fail_times=1)
        pipeline = JobPipeline(store, queue=queue)
        pipeline.register_handler('TEST_JOB', handler)
        job = pipeline.submit('TEST_JOB', {'x': 1})

        assert pipeline.execute(job.id).status == 'failed'
        job = pipeline.execute(job.id)

        assert job.status == 'completed'
        assert job.attempts == 2
        assert job.last_error is None

    def test_completed_job_is_not_rerun(self, pipeline, handler):
        job = pipeline.submit('TEST_JOB', {'x': 1})

        again = pipeline.execute(job.id)

        assert again.status == 'completed'
        assert handler.calls == 1

    def test_terminal_hook_errors_are_contained(self, store):
        handler = RecordingHandler(fail_times=1)
        handler.on_terminal_failure = MagicMock(side_effect=RuntimeError("hook broke"))
        pipeline = JobPipeline(store)
        pipeline.register_handler('TEST_JOB', handler)

        job = pipeline.submit('TEST_JOB', {'x': 1})

        assert job.status == 'failed'
        handler.on_terminal_failure.assert_called_once()

    def test_missing_job(self, pipeline):
        with pytest.raises(NotFoundError):
            pipeline.execute('missing')


class TestCancelAndRetry:
    """Test cancellation and manual retry."""

    def test_cancel_queued_job(self, store, handler, queue):
        pipeline = JobPipeline(store, queue=queue)
        pipeline.register_handler('TEST_JOB', handler)
        job = pipeline.submit('TEST_JOB', {'x': 1})

        cancelled = pipeline.cancel(job.id)

        assert cancelled.status == 'cancelled'
        assert cancelled.finished_at is not None
        queue.discard.assert_called_once_with(job.id)
        assert pipeline.execute(job.id).status == 'cancelled'
        assert handler.calls == 0
        assert handler.cancelled == [(job.id, 'queued')]

    def test_cancel_twice_is_harmless(self, store, handler, queue):
        pipeline = JobPipeline(store, queue=queue)
        pipeline.register_handler('TEST_JOB', handler)
        job = pipeline.submit('TEST_JOB', {'x': 1})

        pipeline.cancel(job.id)
        assert pipeline.cancel(job.id).status == 'cancelled'
        assert len(handler.cancelled) == 1

    def test_cancel_during_failing_attempt_notifies_handler(self, store):
        pipeline = JobPipeline(store)

        class CancelledMidRun(RecordingHandler):
            def handle(self, job):
                pipeline.cancel(job.id)
                raise RuntimeError("platform timeout")

        handler = CancelledMidRun()
        pipeline.register_handler('TEST_JOB', handler)

        job = pipeline.submit('TEST_JOB', {'x': 1})

        assert job.status == 'cancelled'
        assert handler.cancelled == [(job.id, 'running'), (job.id, 'cancelled')]
        assert handler.terminal_failures == []

    def test_handler_supplies_idempotency_key(self, store, queue):
        class KeyedHandler(RecordingHandler):
            def idempotency_key(self, payload, policy_id=None):
                return f"keyed-{payload['id']}"

        pipeline = JobPipeline(store, queue=queue)
        pipeline.register_handler('TEST_JOB', KeyedHandler())

        first = pipeline.submit('TEST_JOB', {'id': 7, 'note': 'a'}, policy_id='p1')
        second = pipeline.submit('TEST_JOB', {'id': 7, 'note': 'b'})

        assert first.idempotency_key == 'keyed-7'
        assert second.id == first.id

    def test_cancel_completed_job_refused(self, pipeline):
        job = pipeline.submit('TEST_JOB', {'x': 1})

        with pytest.raises(InvalidTransitionError):
            pipeline.cancel(job.id)

    def test_retry_failed_job(self, store, queue):
        handler = RecordingHandler(fail_times=1)
        pipeline = JobPipeline(store, queue=queue)
        pipeline.register_handler('TEST_JOB', handler)
        job = pipeline.submit('TEST_JOB', {'x': 1})
        pipeline.execute(job.id)

        retried = pipeline.retry(job.id)

        assert retried.status == 'queued'
        assert retried.attempts == 1
        assert queue.enqueue.call_count == 2

    def test_retry_runs_inline_without_queue(self, store):
        handler = RecordingHandler(fail_times=1)
        pipeline = JobPipeline(store)
        pipeline.register_handler('TEST_JOB', handler)
        job = pipeline.submit('TEST_JOB', {'x': 1})
        assert job.status == 'failed'

        retried = pipeline.retry(job.id)

        assert retried.status == 'completed'
        assert retried.attempts == 2

    def test_retry_requires_failed(self, pipeline):
        job = pipeline.submit('TEST_JOB', {'x': 1})

        with pytest.raises(InvalidTransitionError):
            pipeline.retry(job.id)

    def test_resume_queued(self, store, handler, queue):
        pipeline = JobPipeline(store, queue=queue)
        pipeline.register_handler('TEST_JOB', handler)
        pipeline.submit('TEST_JOB', {'x': 1})
        pipeline.submit('TEST_JOB', {'x': 2})
        queue.enqueue.reset_mock()

        assert pipeline.resume_queued() == 2
        assert queue.enqueue.call_count == 2


class TestListJobs:
    """Test job listing."""

    def test_page_size_clamped(self, pipeline):
        for i in range(3):
            pipeline.submit('TEST_JOB', {'i': i}, policy_id='p1')

        jobs, total = pipeline.list_jobs(page_size=1000)
        assert total == 3
        assert len(jobs) == 3

        jobs, total = pipeline.list_jobs(job_type='TEST_JOB', policy_id='p1', page=2, page_size=2)
        assert total == 3
        assert len(jobs) == 1

"""
Executor tests - parameter derivation, dry-run executor and the operation job handler.
"""

from unittest.mock import MagicMock

import pytest

from adloop.core.errors import ExecutionError, InputError, InvalidTransitionError
from adloop.core.executor import DryRunActionExecutor, OperationJobHandler, operation_params
from adloop.core.schema import ActionResult, BidValue, BudgetValue, Job, Operation, StatusValue


def make_operation(status='approved', **kwargs):
    data = dict(
        id='op-1',
        entity_id='camp-1',
        action='budget_increase',
        reason='test',
        status=status,
        account_id='act-9',
        before_value=BudgetValue(100.0),
        after_value=BudgetValue(130.0),
        change_percent=30
    )
    data.update(kwargs)
    return Operation(**data)


def make_job(payload=None):
    return Job(id='job-1', type='EXECUTE_OPERATION', idempotency_key='k',
               payload={'operation_id': 'op-1'} if payload is None else payload)


@pytest.fixture
def workflow():
    workflow = MagicMock()
    workflow.get.return_value = make_operation()
    return workflow


class TestOperationParams:
    """Test executor parameter derivation."""

    def test_budget(self):
        params = operation_params(make_operation())
        assert params == {'entity_type': 'campaign', 'account_id': 'act-9', 'budget': 130.0, 'change_percent': 30}

    def test_status(self):
        op = make_operation(action='pause', after_value=StatusValue('PAUSED'), change_percent=None, account_id=None)
        assert operation_params(op) == {'entity_type': 'campaign', 'status': 'PAUSED'}

    def test_bid(self):
        op = make_operation(action='bid_adjust', after_value=BidValue(1.25), change_percent=None)
        assert operation_params(op)['bid'] == 1.25


class TestDryRunExecutor:
    """Test the development executor."""

    def test_records_and_succeeds(self):
        executor = DryRunActionExecutor()

        result = executor.execute('pause', 'camp-1', {'status': 'PAUSED'})

        assert result.ok
        assert result.data['dry_run'] is True
        assert executor.calls == [('pause', 'camp-1', {'status': 'PAUSED'})]


class TestOperationJobHandler:
    """Test the EXECUTE_OPERATION job handler."""

    def test_executes_approved_operation(self, workflow):
        executor = MagicMock()
        executor.execute.return_value = ActionResult(ok=True, data={'id': 'camp-1'})
        handler = OperationJobHandler(workflow, executor)

        result = handler.handle(make_job())

        assert result == {'operation_id': 'op-1', 'data': {'id': 'camp-1'}}
        executor.execute.assert_called_once_with('budget_increase', 'camp-1', operation_params(make_operation()))
        workflow.on_execution_result.assert_called_once_with('op-1', True, result={'id': 'camp-1'})

    def test_failed_result_raises(self, workflow):
        executor = MagicMock()
        executor.execute.return_value = ActionResult(ok=False, error='rate limited')
        handler = OperationJobHandler(workflow, executor)

        with pytest.raises(ExecutionError, match='rate limited'):
            handler.handle(make_job())
        workflow.on_execution_result.assert_not_called()

    def test_executor_exception_propagates(self, workflow):
        executor = MagicMock()
        executor.execute.side_effect = TimeoutError("platform timeout")
        handler = OperationJobHandler(workflow, executor)

        with pytest.raises(TimeoutError):
            handler.handle(make_job())

    def test_already_executed_is_not_reapplied(self, workflow):
        workflow.get.return_value = make_operation(status='executed', result={'id': 'camp-1'})
        executor = MagicMock()
        handler = OperationJobHandler(workflow, executor)

        result = handler.handle(make_job())

        assert result == {'operation_id': 'op-1', 'data': {'id': 'camp-1'}}
        executor.execute.assert_not_called()

    @pytest.mark.parametrize("status", ['pending', 'rejected', 'failed'])
    def test_requires_approved(self, workflow, status):
        workflow.get.return_value = make_operation(status=status)
        handler = OperationJobHandler(workflow, MagicMock())

        with pytest.raises(InvalidTransitionError):
            handler.handle(make_job())

    def test_missing_operation_id(self, workflow):
        handler = OperationJobHandler(workflow, MagicMock())

        with pytest.raises(InputError, match='operation_id is required'):
            handler.handle(make_job(payload={}))

    def test_terminal_failure_marks_operation_failed(self, workflow):
        handler = OperationJobHandler(workflow, MagicMock())

        handler.on_terminal_failure(make_job(), 'rate limited')

        workflow.on_execution_result.assert_called_once_with('op-1', False, error='rate limited')


class TestExecutionClaim:
    """Test that only one job ever calls the executor for an operation."""

    def test_claim_is_taken_before_executing(self, workflow):
        executor = MagicMock()
        executor.execute.return_value = ActionResult(ok=True, data={'id': 'camp-1'})
        handler = OperationJobHandler(workflow, executor)

        handler.handle(make_job())

        workflow.claim_execution.assert_called_once_with('op-1', 'job-1')
        workflow.record_executor_result.assert_called_once_with('op-1', {'id': 'camp-1'})

    def test_operation_claimed_by_another_job(self, workflow):
        workflow.claim_execution.return_value = False
        workflow.get.side_effect = [make_operation(), make_operation(executing_job_id='job-0')]
        executor = MagicMock()
        handler = OperationJobHandler(workflow, executor)

        with pytest.raises(ExecutionError, match='claimed by job job-0'):
            handler.handle(make_job())
        executor.execute.assert_not_called()

    def test_failure_releases_claim(self, workflow):
        executor = MagicMock()
        executor.execute.side_effect = TimeoutError("platform timeout")
        handler = OperationJobHandler(workflow, executor)

        with pytest.raises(TimeoutError):
            handler.handle(make_job())
        workflow.release_execution.assert_called_once_with('op-1', 'job-1')

    def test_rerun_after_recorded_result_does_not_execute(self, workflow):
        workflow.get.return_value = make_operation(executing_job_id='job-1', result={'id': 'camp-1'})
        executor = MagicMock()
        handler = OperationJobHandler(workflow, executor)

        result = handler.handle(make_job())

        assert result == {'operation_id': 'op-1', 'data': {'id': 'camp-1'}}
        executor.execute.assert_not_called()
        workflow.on_execution_result.assert_called_once_with('op-1', True, result={'id': 'camp-1'})

    def test_rerun_with_unknown_outcome_refuses(self, workflow):
        workflow.get.return_value = make_operation(executing_job_id='job-1')
        executor = MagicMock()
        handler = OperationJobHandler(workflow, executor)

        with pytest.raises(ExecutionError, match='unknown'):
            handler.handle(make_job())
        executor.execute.assert_not_called()

    def test_terminal_failure_of_duplicate_job_leaves_operation(self, workflow):
        workflow.get.return_value = make_operation(executing_job_id='job-0')
        handler = OperationJobHandler(workflow, MagicMock())

        handler.on_terminal_failure(make_job(), 'claimed elsewhere')

        workflow.on_execution_result.assert_not_called()

    def test_idempotency_key_ignores_policy(self, workflow):
        handler = OperationJobHandler(workflow, MagicMock())

        with_policy = handler.idempotency_key({'operation_id': 'op-1'}, policy_id='policy-1')
        without_policy = handler.idempotency_key({'operation_id': 'op-1'})

        assert with_policy == without_policy
        assert handler.idempotency_key({}) is None


class TestCancelHook:
    """Test what cancelling an EXECUTE_OPERATION job does to its operation."""

    def test_queued_job_cancel_fails_operation(self, workflow):
        handler = OperationJobHandler(workflow, MagicMock())

        handler.on_cancel(make_job())

        workflow.on_execution_result.assert_called_once_with('op-1', False, error='Execution cancelled')

    def test_running_attempt_reports_its_own_outcome(self, workflow):
        workflow.get.return_value = make_operation(executing_job_id='job-1')
        job = make_job()
        job.status = 'running'
        handler = OperationJobHandler(workflow, MagicMock())

        handler.on_cancel(job)

        workflow.on_execution_result.assert_not_called()

    def test_cancelling_a_stray_job_leaves_operation(self, workflow):
        workflow.get.return_value = make_operation(job_id='job-approved')
        handler = OperationJobHandler(workflow, MagicMock())

        handler.on_cancel(make_job())

        workflow.on_execution_result.assert_not_called()

    def test_already_executed_operation_is_left_alone(self, workflow):
        workflow.get.return_value = make_operation(status='executed')
        handler = OperationJobHandler(workflow, MagicMock())

        handler.on_cancel(make_job())

        workflow.on_execution_result.assert_not_called()

"""
Action execution - the boundary to the ads platform and the job handler that crosses it.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .approval import ApprovalWorkflow
from .errors import ExecutionError, InputError, InvalidTransitionError
from .jobs import EXECUTE_OPERATION, IJobHandler, build_idempotency_key
from .schema import ActionResult, BidValue, BudgetValue, Job, Operation, StatusValue
from ..util.logging import logger


class IActionExecutor(ABC):
    """Applies one action to one advertising entity on the ads platform."""

    @abstractmethod
    def execute(self, action: str, target_entity_id: str, params: Dict[str, Any]) -> ActionResult:
        """Apply the action. Timeouts and transport errors may be raised or returned as ok=False."""
        pass


class DryRunActionExecutor(IActionExecutor):
    """Logs the action and reports success without touching any platform."""

    def __init__(self):
        self.calls = []

    def execute(self, action: str, target_entity_id: str, params: Dict[str, Any]) -> ActionResult:
        self.calls.append((action, target_entity_id, dict(params)))
        logger.log_operation("executor.dry_run", "success", {
            "action": action,
            "entity_id": target_entity_id,
            "params": params
        })
        return ActionResult(ok=True, data={"dry_run": True, "action": action, "entity_id": target_entity_id})


def operation_params(op: Operation) -> Dict[str, Any]:
    """Executor parameters derived from an operation's after-value."""
    params: Dict[str, Any] = {"entity_type": op.entity_type}
    if op.account_id:
        params["account_id"] = op.account_id

    value = op.after_value
    if isinstance(value, BudgetValue):
        params["budget"] = value.budget
    elif isinstance(value, StatusValue):
        params["status"] = value.status
    elif isinstance(value, BidValue):
        params["bid"] = value.bid

    if op.change_percent is not None:
        params["change_percent"] = op.change_percent
    return params


class OperationJobHandler(IJobHandler):
    """Runs EXECUTE_OPERATION jobs: approved operation -> executor -> executed.

    Only the job holding the operation's execution claim may call the
    executor, so a duplicate job can never apply the same change twice.
    """

    def __init__(self, workflow: ApprovalWorkflow, executor: IActionExecutor):
        self.workflow = workflow
        self.executor = executor

    def idempotency_key(self, payload: Dict[str, Any], policy_id: str = None) -> Optional[str]:
        """One job per operation, however it was submitted."""
        operation_id = payload.get('operation_id')
        if not operation_id:
            return None
        return build_idempotency_key(EXECUTE_OPERATION, {'operation_id': operation_id})

    def handle(self, job: Job) -> Dict[str, Any]:
        operation_id = job.payload.get('operation_id')
        if not operation_id:
            raise InputError("operation_id is required")

        op = self.workflow.get(operation_id)
        if op.status == 'executed':
            # Redelivered after a successful run; never apply twice
            return {"operation_id": op.id, "data": op.result or {}}
        if op.status != 'approved':
            raise InvalidTransitionError('Operation', op.id, op.status, 'executed')

        if op.executing_job_id == job.id:
            # An earlier attempt of this job got as far as the executor
            if op.result is None:
                raise ExecutionError(
                    f"Outcome of an earlier attempt on operation {op.id} is unknown; not executing again"
                )
            self.workflow.on_execution_result(op.id, True, result=op.result)
            return {"operation_id": op.id, "data": op.result}

        if not self.workflow.claim_execution(op.id, job.id):
            current = self.workflow.get(op.id)
            raise ExecutionError(
                f"Operation {op.id} is {current.status}, claimed by job {current.executing_job_id}"
            )

        try:
            result = self.executor.execute(op.action, op.entity_id, operation_params(op))
        except Exception:
            self.workflow.release_execution(op.id, job.id)
            raise
        if not result.ok:
            self.workflow.release_execution(op.id, job.id)
            raise ExecutionError(result.error or f"Executor reported failure for {op.action}")

        self.workflow.record_executor_result(op.id, result.data)
        self.workflow.on_execution_result(op.id, True, result=result.data)
        return {"operation_id": op.id, "data": result.data}

    def on_terminal_failure(self, job: Job, error: str) -> None:
        op = self._owned_operation(job)
        if op is not None:
            self.workflow.on_execution_result(op.id, False, error=error)

    def on_cancel(self, job: Job) -> None:
        op = self._owned_operation(job)
        if op is None:
            return
        if op.executing_job_id == job.id and job.status == 'running':
            return  # the running attempt reports the outcome
        self.workflow.on_execution_result(op.id, False, error="Execution cancelled")

    def _owned_operation(self, job: Job) -> Optional[Operation]:
        """The approved operation this job is responsible for, if any."""
        operation_id = job.payload.get('operation_id')
        if not operation_id:
            return None
        op = self.workflow.get(operation_id)
        if op.status != 'approved':
            return None
        if op.executing_job_id not in (None, job.id):
            return None
        if op.job_id not in (None, job.id) and op.executing_job_id != job.id:
            return None
        return op

"""
Approval workflow - the operation state machine between a proposal and its execution.

    pending --approve--> approved --execution ok--> executed
       |                     +--execution failed--> failed
       +--reject--> rejected

Every transition is a compare-and-set in the store and writes an audit event.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from .dao import AuditLog, OperationStore
from .errors import InvalidTransitionError, NotFoundError
from .jobs import EXECUTE_OPERATION, JobPipeline
from .policy import Policy
from .schema import Operation
from ..util.logging import logger, sanitize_payload

SYSTEM_ACTOR = 'system'

# Actors for decisions that arrived through the approval channel itself
CHANNEL_ACTOR_PREFIX = 'channel:'


class ApprovalWorkflow:
    """Moves operations through pending -> approved/rejected -> executed/failed."""

    def __init__(self, operations: OperationStore, pipeline: JobPipeline, channel=None, audit: AuditLog = None):
        self.operations = operations
        self.pipeline = pipeline
        self.channel = channel
        self.audit = audit or AuditLog(operations.db_path)

    def propose(self, operation: Operation, policy: Policy) -> Operation:
        """
        Persist a new pending operation and route it.

        auto mode with no approval needed -> approved and executed right away;
        observe mode -> left pending silently; otherwise the approval channel
        is notified and a human decides.
        """
        operation.status = 'pending'
        op = self.operations.create(operation)
        self._audit(SYSTEM_ACTOR, 'operation_proposed', op, {
            'action': op.action,
            'reason': op.reason
        })

        auto_approve = policy.mode == 'auto' and not policy.requires_approval(op.to_plan())
        logger.log_operation_proposed(op.id, op.entity_id, op.action, auto_approved=auto_approve)

        if auto_approve:
            logger.log_approval_bypass(op.id, reason=f"policy:{policy.policy_id}")
            return self.approve(op.id, SYSTEM_ACTOR)

        if policy.mode != 'observe':
            self._notify(op)

        return self.get(op.id)

    def approve(self, operation_id: str, approver: str) -> Operation:
        """pending -> approved, then submit the execution job."""
        op = self.get(operation_id)
        if not self.operations.transition(op.id, 'pending', 'approved', executed_by=approver):
            raise InvalidTransitionError('Operation', op.id, self.get(op.id).status, 'approved')

        logger.log_approval_decision(op.id, 'approved', approver)
        self._audit(approver, 'operation_approved', op)
        self._update_card(op, 'approved', approver)

        job = self.pipeline.submit(
            EXECUTE_OPERATION,
            {'operation_id': op.id},
            policy_id=op.policy_id,
            created_by=approver
        )
        self.operations.update_fields(op.id, job_id=job.id)

        return self.get(op.id)

    def reject(self, operation_id: str, approver: str, reason: str = "") -> Operation:
        """pending -> rejected. Terminal."""
        op = self.get(operation_id)
        reason = reason or 'Rejected by user'
        if not self.operations.transition(op.id, 'pending', 'rejected', executed_by=approver, error=reason):
            raise InvalidTransitionError('Operation', op.id, self.get(op.id).status, 'rejected')

        logger.log_approval_decision(op.id, 'rejected', approver, reason)
        self._audit(approver, 'operation_rejected', op, {'reason': reason})
        self._update_card(op, 'rejected', approver)

        return self.get(op.id)

    def on_execution_result(self, operation_id: str, ok: bool, result: Dict[str, Any] = None,
                            error: str = None) -> Operation:
        """
        approved -> executed / failed.

        Reporting the outcome the operation already has is a no-op, so a
        redelivered job cannot record a second execution.
        """
        target = 'executed' if ok else 'failed'
        op = self.get(operation_id)
        if op.status == target:
            return op

        if ok:
            fields = {'executed_at': datetime.now(), 'result': result or {}}
        else:
            fields = {'error': error or 'Execution failed'}

        if not self.operations.transition(op.id, 'approved', target, **fields):
            current = self.get(op.id)
            if current.status == target:
                return current
            raise InvalidTransitionError('Operation', op.id, current.status, target)

        logger.log_execution_result(op.id, target, error)
        self._audit(SYSTEM_ACTOR, f'operation_{target}', op, {'result': result, 'error': error})
        self._update_card(op, target, SYSTEM_ACTOR)

        return self.get(op.id)

    def claim_execution(self, operation_id: str, job_id: str) -> bool:
        return self.operations.claim_execution(operation_id, job_id)

    def release_execution(self, operation_id: str, job_id: str) -> bool:
        return self.operations.release_execution(operation_id, job_id)

    def record_executor_result(self, operation_id: str, result: Dict[str, Any]) -> bool:
        """Keep the executor's answer on the still-approved operation until the outcome is recorded."""
        return self.operations.update_fields(operation_id, result=result or {})

    def get(self, operation_id: str) -> Operation:
        op = self.operations.get(operation_id)
        if op is None:
            raise NotFoundError(f"Operation not found: {operation_id}")
        return op

    def list_pending(self, entity_id: str = None, limit: int = 100) -> List[Operation]:
        return self.operations.list_by_status('pending', entity_id=entity_id, limit=limit)

    def _notify(self, op: Operation):
        if self.channel is None:
            return
        try:
            message_ref = self.channel.notify(op)
        except Exception as e:
            logger.log_channel_failure(type(self.channel).__name__, 'notify', e, op.id)
            return
        if message_ref:
            self.operations.update_fields(op.id, message_ref=message_ref)

    def _update_card(self, op: Operation, outcome: str, actor: str):
        if self.channel is None or not op.message_ref:
            return
        if actor.startswith(CHANNEL_ACTOR_PREFIX):
            return  # the channel already shows the decision
        try:
            self.channel.update_status(op.message_ref, outcome, actor)
        except Exception as e:
            logger.log_channel_failure(type(self.channel).__name__, 'update_status', e, op.id)

    def _audit(self, actor: str, action: str, op: Operation, payload: Optional[Dict[str, Any]] = None):
        data = {'entity_id': op.entity_id, 'policy_id': op.policy_id}
        if payload:
            data.update(payload)
        self.audit.add_event(actor, action, op.id, sanitize_payload(data))

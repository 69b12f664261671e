"""
Decision service - composition root that wires stores, pipeline, workflow and orchestrator.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from . import config
from .approval import CHANNEL_ACTOR_PREFIX, ApprovalWorkflow
from .channels import IApprovalChannel, WebhookApprovalChannel
from .dao import AuditLog, JobStore, OperationStore
from .db import health_check
from .errors import InputError
from .executor import DryRunActionExecutor, IActionExecutor, OperationJobHandler
from .guardrails import GuardrailService
from .jobs import EXECUTE_OPERATION, JobPipeline
from .orchestrator import DecisionOrchestrator
from .policy import Policy
from .queue import JobQueue
from .schema import Decision, Job, Operation
from .scoring import LifecycleScorer
from ..util.logging import logger


class DecisionService:
    """Facade over the decision loop used by the HTTP adapter and scripts."""

    def __init__(
        self,
        db_path: str,
        executor: IActionExecutor,
        channel: Optional[IApprovalChannel] = None,
        queue: Optional[JobQueue] = None,
        scorer: LifecycleScorer = None,
        guardrails: GuardrailService = None,
    ):
        self.db_path = db_path
        self.operations = OperationStore(db_path)
        self.jobs = JobStore(db_path)
        self.audit = AuditLog(db_path)
        self.queue = queue
        self.channel = channel

        self.pipeline = JobPipeline(self.jobs, queue=queue)
        self.workflow = ApprovalWorkflow(self.operations, self.pipeline, channel=channel, audit=self.audit)
        self.pipeline.register_handler(EXECUTE_OPERATION, OperationJobHandler(self.workflow, executor))

        self.guardrails = guardrails or GuardrailService(self.operations)
        self.orchestrator = DecisionOrchestrator(self.operations, self.guardrails, self.workflow, scorer=scorer)

    def start(self):
        """Start the queue workers and pick up jobs left queued by a previous run."""
        if self.queue is not None and not self.queue.running:
            self.queue.start()
            self.pipeline.resume_queued()

    def shutdown(self):
        if self.queue is not None and self.queue.running:
            self.queue.stop()

    # Decisions

    def evaluate(self, entity_id: str, snapshot, history: Optional[Mapping[str, Sequence[float]]],
                 policy: Policy, entity_type: str = 'campaign', account_id: str = None) -> Decision:
        return self.orchestrator.evaluate(entity_id, snapshot, history, policy, entity_type, account_id)

    def evaluate_batch(self, items: List[Dict[str, Any]], max_workers: int = 4) -> List[Decision]:
        return self.orchestrator.evaluate_batch(items, max_workers=max_workers)

    # Operations

    def approve(self, operation_id: str, approver: str) -> Operation:
        return self.workflow.approve(operation_id, approver)

    def reject(self, operation_id: str, approver: str, reason: str = "") -> Operation:
        return self.workflow.reject(operation_id, approver, reason)

    def get_operation(self, operation_id: str) -> Operation:
        return self.workflow.get(operation_id)

    def list_pending(self, entity_id: str = None, limit: int = 100) -> List[Operation]:
        return self.workflow.list_pending(entity_id, limit)

    def list_operation_events(self, operation_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        self.workflow.get(operation_id)
        return self.audit.list_events(operation_id, limit)

    def handle_channel_action(self, operation_id: str, decision: str, user_id: str,
                              user_name: str = None, message_ref: str = None) -> Operation:
        """
        Apply an approve/reject click coming back from the approval channel.

        The decision is recorded with a 'channel:' actor; the clicked card is
        then updated here with the approver's display name and the
        operation's current status (inline execution may already have finished).
        """
        if decision not in ('approve', 'reject'):
            raise InputError(f"Invalid channel decision: {decision}")

        actor = f"{CHANNEL_ACTOR_PREFIX}{user_id or 'unknown'}"
        if decision == 'approve':
            op = self.workflow.approve(operation_id, actor)
        else:
            op = self.workflow.reject(operation_id, actor, 'Rejected via approval channel')

        card_ref = message_ref or op.message_ref
        if self.channel is not None and card_ref:
            try:
                self.channel.update_status(card_ref, op.status, user_name or actor)
            except Exception as e:
                logger.log_channel_failure(type(self.channel).__name__, 'update_status', e, op.id)

        return op

    # Jobs

    def submit_job(self, job_type: str, payload: Dict[str, Any] = None, idempotency_key: str = None,
                   priority: int = 1, policy_id: str = None, created_by: str = None) -> Job:
        return self.pipeline.submit(job_type, payload, idempotency_key, priority, policy_id, created_by)

    def cancel_job(self, job_id: str) -> Job:
        return self.pipeline.cancel(job_id)

    def retry_job(self, job_id: str) -> Job:
        return self.pipeline.retry(job_id)

    def get_job(self, job_id: str) -> Job:
        return self.pipeline.get(job_id)

    def list_jobs(self, status: str = None, job_type: str = None, policy_id: str = None,
                  page: int = 1, page_size: int = 20) -> Tuple[List[Job], int]:
        return self.pipeline.list_jobs(status, job_type, policy_id, page, page_size)

    def get_status(self) -> Dict[str, Any]:
        """Return service health for monitoring."""
        return {
            "db_ok": health_check(self.db_path),
            "queue": self.queue.get_status() if self.queue is not None else {"status": "disabled"},
            "channel": type(self.channel).__name__ if self.channel is not None else None,
            "version": config.VERSION
        }


def build_service(db_path: str = None, executor: IActionExecutor = None, channel: IApprovalChannel = None,
                  queue_enabled: bool = None) -> DecisionService:
    """Build a DecisionService from configuration. Call start() to run the queue workers."""
    db_path = db_path or config.DB_PATH

    for issue in config.validate_trend_config():
        logger.warning(f"Trend configuration issue: {issue}")

    if channel is None and config.APPROVAL_WEBHOOK_URL:
        channel = WebhookApprovalChannel(config.APPROVAL_WEBHOOK_URL)

    if queue_enabled is None:
        queue_enabled = config.is_queue_enabled()
    queue = JobQueue(workers=config.QUEUE_WORKERS, backoff_base_sec=config.JOB_BACKOFF_BASE_SEC) if queue_enabled else None

    if executor is None:
        logger.warning("No action executor configured, using dry-run executor")
        executor = DryRunActionExecutor()

    return DecisionService(db_path, executor, channel=channel, queue=queue)

"""
Decision orchestrator - one evaluation pass for one advertising entity.

    validate -> score -> plan -> in-flight check -> guardrail -> propose

Evaluations of different entities run in parallel; evaluations of the same
entity are serialised so two passes can never both propose an operation.
"""

import math
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .approval import ApprovalWorkflow
from .dao import OperationStore
from .errors import InputError, PolicyError
from .guardrails import GuardrailService
from .policy import Policy
from .schema import (
    ENTITY_TYPES,
    METRIC_NAMES,
    ActionPlan,
    Decision,
    GuardResult,
    MetricHistory,
    MetricSnapshot,
    Operation,
    ScoringResult,
)
from .scoring import LifecycleScorer, lifecycle_scorer
from ..util.logging import logger


def validate_history(history: Optional[Mapping[str, Sequence[float]]]) -> MetricHistory:
    """Check a metric history and return it as plain lists of floats."""
    if history is None:
        return {}
    if not isinstance(history, Mapping):
        raise InputError("History must be a mapping of metric name to series")

    clean: MetricHistory = {}
    for metric, series in history.items():
        if metric not in METRIC_NAMES:
            raise InputError(f"Unknown history metric '{metric}'")
        values = []
        for value in series:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise InputError(f"History for '{metric}' contains a non-finite value: {value!r}")
            values.append(float(value))
        clean[metric] = values
    return clean


def explain(score: ScoringResult, plan: ActionPlan = None, guard: GuardResult = None) -> str:
    """Human-readable reason for a decision."""
    parts = [
        f"Score {score.final_score:.1f} in {score.stage} stage "
        f"(base {score.base_score:.1f}, momentum {score.momentum_bonus:+.1%})"
    ]
    if plan is not None:
        change = f" {plan.change_percent:+g}%" if plan.change_percent is not None else ""
        parts.append(f"rule {plan.rule}: {plan.action}{change}")
    if guard is not None:
        parts.append("guardrail passed" if guard.allowed else f"guardrail denied: {guard.reason}")
    return "; ".join(parts)


class DecisionOrchestrator:
    """Turns a metric snapshot into a no-op, a denial or a proposed operation."""

    def __init__(
        self,
        operations: OperationStore,
        guardrails: GuardrailService,
        workflow: ApprovalWorkflow,
        scorer: LifecycleScorer = None,
    ):
        self.operations = operations
        self.guardrails = guardrails
        self.workflow = workflow
        self.scorer = scorer or lifecycle_scorer
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def evaluate(
        self,
        entity_id: str,
        snapshot: Union[MetricSnapshot, Dict[str, Any]],
        history: Optional[Mapping[str, Sequence[float]]],
        policy: Policy,
        entity_type: str = 'campaign',
        account_id: str = None,
    ) -> Decision:
        """
        Evaluate one entity against its policy.

        Raises:
            InputError: bad entity, snapshot or history (nothing is created)
            PolicyError: the policy failed validation (nothing is created)
        """
        if not entity_id or not str(entity_id).strip():
            raise InputError("entity_id cannot be empty")
        if entity_type not in ENTITY_TYPES:
            raise InputError(f"Invalid entity_type: {entity_type}")
        if not isinstance(snapshot, MetricSnapshot):
            snapshot = MetricSnapshot.from_dict(snapshot or {})
        history = validate_history(history)

        issues = policy.validate()
        if issues:
            raise PolicyError(issues)

        with self._entity_lock(entity_id):
            score = self.scorer.score(
                snapshot,
                history,
                policy.stages,
                baselines=policy.baselines,
                momentum_sensitivity=policy.momentum_sensitivity,
                platform=policy.platform
            )
            logger.log_score(entity_id, score.final_score, score.stage, score.momentum_bonus)

            plan = policy.map_score_to_action(score, snapshot)
            if plan is None:
                return Decision(entity_id, 'no_action', score, reason=explain(score))

            in_flight = self.operations.find_in_flight(entity_id)
            if in_flight is not None:
                return Decision(
                    entity_id, 'in_flight', score,
                    reason=f"Operation {in_flight.id} ({in_flight.action}) is still {in_flight.status}",
                    plan=plan,
                    operation=in_flight
                )

            guard = self.guardrails.check_momentum(
                entity_id,
                plan.action,
                cooldown_hours=policy.cooldown_hours,
                anti_oscillation_hours=policy.anti_oscillation_hours
            )
            logger.log_guardrail_decision(entity_id, plan.action, guard.allowed, guard.reason)
            if not guard.allowed:
                return Decision(entity_id, 'denied', score, reason=guard.reason, plan=plan, guard=guard)

            operation = Operation(
                id=str(uuid.uuid4()),
                entity_id=entity_id,
                entity_type=entity_type,
                account_id=account_id,
                policy_id=policy.policy_id,
                action=plan.action,
                before_value=plan.before_value,
                after_value=plan.after_value,
                change_percent=plan.change_percent,
                reason=explain(score, plan, guard),
                score_snapshot=score
            )
            operation = self.workflow.propose(operation, policy)

            return Decision(
                entity_id, 'proposed', score,
                reason=operation.reason,
                plan=plan,
                guard=guard,
                operation=operation
            )

    def evaluate_batch(self, items: Iterable[Dict[str, Any]], max_workers: int = 4) -> List[Decision]:
        """
        Evaluate many entities concurrently.

        Each item holds the keyword arguments of evaluate(). Results come back
        in input order; the first failing item's error is raised once all
        submitted evaluations have finished.
        """
        items = list(items)
        if not items:
            return []

        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as pool:
            futures = [pool.submit(self.evaluate, **item) for item in items]
        return [future.result() for future in futures]

    @contextmanager
    def _entity_lock(self, entity_id: str):
        with self._locks_guard:
            lock = self._locks.setdefault(entity_id, threading.Lock())
        with lock:
            yield

"""
Record types for the decision loop - snapshots, scores, operations and jobs.
"""

import math
from dataclasses import dataclass, asdict, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .errors import InputError


ACTION_KINDS = ['pause', 'resume', 'budget_increase', 'budget_decrease', 'bid_adjust', 'status_change']

OPERATION_STATUSES = ['pending', 'approved', 'rejected', 'executed', 'failed']
OPERATION_TRANSITIONS = {
    'pending': ('approved', 'rejected'),
    'approved': ('executed', 'failed'),
}

JOB_STATUSES = ['queued', 'running', 'completed', 'failed', 'cancelled']

ENTITY_TYPES = ['campaign', 'adset', 'ad']

METRIC_NAMES = ['spend', 'impressions', 'clicks', 'cpm', 'ctr', 'cpc', 'cpa', 'roas', 'hook_rate', 'atc_rate']


def _parse_dt(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class MetricSnapshot:
    """Metrics for one entity at one point in time."""
    spend: float
    impressions: float = 0.0
    clicks: float = 0.0
    cpm: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    cpa: float = 0.0
    roas: float = 0.0
    hook_rate: float = 0.0
    atc_rate: float = 0.0
    daily_budget: Optional[float] = None

    def __post_init__(self):
        for name in METRIC_NAMES + ['daily_budget']:
            value = getattr(self, name)
            if value is None and name == 'daily_budget':
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InputError(f"Metric '{name}' must be a number, got {value!r}")
            if not math.isfinite(value) or value < 0:
                raise InputError(f"Metric '{name}' must be finite and >= 0, got {value!r}")

    def get(self, metric: str) -> float:
        """Return a metric value by name (0 for metrics the snapshot does not carry)."""
        if metric not in METRIC_NAMES:
            return 0.0
        return float(getattr(self, metric))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MetricSnapshot':
        known = set(METRIC_NAMES) | {'daily_budget'}
        unknown = set(data) - known
        if unknown:
            raise InputError(f"Unknown snapshot fields: {sorted(unknown)}")
        if 'spend' not in data:
            raise InputError("Snapshot requires 'spend'")
        return cls(**data)


@dataclass
class LifecycleStage:
    """Spend band [min_spend, max_spend) with its own metric weighting."""
    name: str
    min_spend: float
    max_spend: float
    weights: Dict[str, float]

    def contains(self, spend: float) -> bool:
        return self.min_spend <= spend < self.max_spend

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LifecycleStage':
        return cls(
            name=data['name'],
            min_spend=float(data['min_spend']),
            max_spend=float(data['max_spend']),
            weights={k: float(v) for k, v in data.get('weights', {}).items()}
        )


@dataclass
class ScoringResult:
    final_score: float
    base_score: float
    momentum_bonus: float
    stage: str
    metric_contributions: Dict[str, float] = field(default_factory=dict)
    slopes: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScoringResult':
        return cls(**data)


# Action values: explicit tagged variants instead of free-form blobs

@dataclass(frozen=True)
class BudgetValue:
    budget: Optional[float]
    kind: str = field(default='budget', init=False)


@dataclass(frozen=True)
class StatusValue:
    status: str
    kind: str = field(default='status', init=False)


@dataclass(frozen=True)
class BidValue:
    bid: Optional[float]
    kind: str = field(default='bid', init=False)


ActionValue = Union[BudgetValue, StatusValue, BidValue]

_VALUE_KINDS = {'budget': BudgetValue, 'status': StatusValue, 'bid': BidValue}


def action_value_to_dict(value: Optional[ActionValue]) -> Optional[Dict[str, Any]]:
    return asdict(value) if value is not None else None


def action_value_from_dict(data: Optional[Dict[str, Any]]) -> Optional[ActionValue]:
    """Rebuild a tagged action value."""
    if data is None:
        return None
    data = dict(data)
    kind = data.pop('kind', None)
    if kind not in _VALUE_KINDS:
        raise InputError(f"Unknown action value kind: {kind!r}")
    return _VALUE_KINDS[kind](**data)


@dataclass
class ActionPlan:
    """An action the policy wants to take, before guardrails and approval."""
    action: str
    before_value: Optional[ActionValue] = None
    after_value: Optional[ActionValue] = None
    change_percent: Optional[float] = None
    rule: str = ""

    def budget_delta(self) -> Optional[float]:
        """Absolute budget change, or None when either side is unknown."""
        if not isinstance(self.before_value, BudgetValue) or not isinstance(self.after_value, BudgetValue):
            return None
        if self.before_value.budget is None or self.after_value.budget is None:
            return None
        return abs(self.after_value.budget - self.before_value.budget)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action,
            'before_value': action_value_to_dict(self.before_value),
            'after_value': action_value_to_dict(self.after_value),
            'change_percent': self.change_percent,
            'rule': self.rule,
        }


@dataclass
class GuardResult:
    allowed: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ActionResult:
    """Outcome reported by an ads platform action executor."""
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class Operation:
    """A proposed or executed change to one advertising entity."""
    id: str
    entity_id: str
    action: str
    reason: str
    status: str = 'pending'
    entity_type: str = 'campaign'
    account_id: Optional[str] = None
    policy_id: Optional[str] = None
    before_value: Optional[ActionValue] = None
    after_value: Optional[ActionValue] = None
    change_percent: Optional[float] = None
    score_snapshot: Optional[ScoringResult] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    executed_by: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    message_ref: Optional[str] = None
    job_id: Optional[str] = None
    executing_job_id: Optional[str] = None

    def to_plan(self) -> ActionPlan:
        return ActionPlan(
            action=self.action,
            before_value=self.before_value,
            after_value=self.after_value,
            change_percent=self.change_percent
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and API responses."""
        data = asdict(self)
        data['before_value'] = action_value_to_dict(self.before_value)
        data['after_value'] = action_value_to_dict(self.after_value)
        data['score_snapshot'] = self.score_snapshot.to_dict() if self.score_snapshot else None
        for key in ('created_at', 'updated_at', 'executed_at'):
            data[key] = _format_dt(getattr(self, key))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Operation':
        data = dict(data)
        data['before_value'] = action_value_from_dict(data.get('before_value'))
        data['after_value'] = action_value_from_dict(data.get('after_value'))
        if data.get('score_snapshot') is not None:
            data['score_snapshot'] = ScoringResult.from_dict(data['score_snapshot'])
        for key in ('created_at', 'updated_at', 'executed_at'):
            data[key] = _parse_dt(data.get(key))
        return cls(**data)


@dataclass
class Job:
    """Execution envelope around one side-effecting unit of work."""
    id: str
    type: str
    idempotency_key: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: str = 'queued'
    attempts: int = 0
    max_attempts: int = 5
    priority: int = 1
    policy_id: Optional[str] = None
    created_by: Optional[str] = None
    last_error: Optional[str] = None
    result: Optional[Any] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ('queued_at', 'started_at', 'finished_at', 'created_at', 'updated_at'):
            data[key] = _format_dt(getattr(self, key))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        data = dict(data)
        for key in ('queued_at', 'started_at', 'finished_at', 'created_at', 'updated_at'):
            data[key] = _parse_dt(data.get(key))
        return cls(**data)


@dataclass
class Decision:
    """What the orchestrator concluded for one entity evaluation."""
    entity_id: str
    outcome: str  # no_action, denied, in_flight, proposed
    score: ScoringResult
    reason: str = ""
    plan: Optional[ActionPlan] = None
    guard: Optional[GuardResult] = None
    operation: Optional[Operation] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity_id': self.entity_id,
            'outcome': self.outcome,
            'reason': self.reason,
            'score': self.score.to_dict(),
            'plan': self.plan.to_dict() if self.plan else None,
            'guard': self.guard.to_dict() if self.guard else None,
            'operation': self.operation.to_dict() if self.operation else None,
        }


MetricHistory = Dict[str, List[float]]

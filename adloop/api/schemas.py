"""
Request and response models for the decision loop HTTP API.
"""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

from ..core.policy import POLICY_MODES, PLATFORMS, Policy
from ..core.schema import ACTION_KINDS, ENTITY_TYPES, METRIC_NAMES


def _check_metric(v):
    if v is None:
        return v
    if not math.isfinite(v) or v < 0:
        raise ValueError('metric values must be finite and >= 0')
    return v


class SnapshotModel(BaseModel):
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

    @field_validator('spend', 'impressions', 'clicks', 'cpm', 'ctr', 'cpc', 'cpa', 'roas',
                     'hook_rate', 'atc_rate', 'daily_budget')
    @classmethod
    def metric_must_be_finite(cls, v):
        return _check_metric(v)


class StageModel(BaseModel):
    name: str
    min_spend: float
    max_spend: float
    weights: Dict[str, float]

    @field_validator('weights')
    @classmethod
    def weights_must_name_metrics(cls, v):
        unknown = [k for k in v if k not in METRIC_NAMES]
        if unknown:
            raise ValueError(f'unknown metrics in weights: {unknown}')
        return v


class ThresholdsModel(BaseModel):
    aggressive_min_score: float = 85
    aggressive_change_percent: float = 30
    moderate_min_score: float = 70
    moderate_change_percent: float = 15
    stop_loss_max_score: float = 30
    stop_loss_change_percent: float = -20
    kill_max_score: float = 15


class PolicyModel(BaseModel):
    policy_id: str
    name: str = ""
    mode: str = 'suggest'
    platform: str = 'facebook'
    stages: Optional[List[StageModel]] = None
    baselines: Optional[Dict[str, float]] = None
    momentum_sensitivity: Optional[float] = None
    thresholds: Optional[ThresholdsModel] = None
    cooldown_hours: Optional[float] = None
    anti_oscillation_hours: Optional[float] = None
    require_approval: bool = True
    approval_threshold: float = 100.0
    max_budget: Optional[float] = None
    allowed_actions: Optional[List[str]] = None

    @field_validator('policy_id')
    @classmethod
    def policy_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('policy_id cannot be empty')
        return v

    @field_validator('mode')
    @classmethod
    def mode_must_be_valid(cls, v):
        if v not in POLICY_MODES:
            raise ValueError(f'mode must be one of: {POLICY_MODES}')
        return v

    @field_validator('platform')
    @classmethod
    def platform_must_be_valid(cls, v):
        if v not in PLATFORMS:
            raise ValueError(f'platform must be one of: {PLATFORMS}')
        return v

    @field_validator('allowed_actions')
    @classmethod
    def actions_must_be_known(cls, v):
        if v is not None:
            unknown = [a for a in v if a not in ACTION_KINDS]
            if unknown:
                raise ValueError(f'unknown actions: {unknown}')
        return v

    def to_policy(self) -> Policy:
        """Build a Policy, keeping defaults for everything left unset."""
        data = self.model_dump(exclude_none=True)
        return Policy.from_dict(data)


class EvaluateRequest(BaseModel):
    entity_id: str
    entity_type: str = 'campaign'
    account_id: Optional[str] = None
    snapshot: SnapshotModel
    history: Dict[str, List[float]] = {}
    policy: PolicyModel

    @field_validator('entity_id')
    @classmethod
    def entity_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('entity_id cannot be empty')
        return v

    @field_validator('entity_type')
    @classmethod
    def entity_type_must_be_valid(cls, v):
        if v not in ENTITY_TYPES:
            raise ValueError(f'entity_type must be one of: {ENTITY_TYPES}')
        return v

    @field_validator('history')
    @classmethod
    def history_must_be_finite(cls, v):
        for metric, series in v.items():
            if metric not in METRIC_NAMES:
                raise ValueError(f'unknown history metric: {metric}')
            if any(not math.isfinite(x) for x in series):
                raise ValueError(f'history for {metric} contains non-finite values')
        return v


class OperationResponse(BaseModel):
    id: str
    entity_id: str
    entity_type: str
    account_id: Optional[str] = None
    policy_id: Optional[str] = None
    action: str
    before_value: Optional[Dict[str, Any]] = None
    after_value: Optional[Dict[str, Any]] = None
    change_percent: Optional[float] = None
    reason: str
    score_snapshot: Optional[Dict[str, Any]] = None
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    executed_by: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    message_ref: Optional[str] = None
    job_id: Optional[str] = None
    executing_job_id: Optional[str] = None


class OperationListResponse(BaseModel):
    operations: List[OperationResponse]


class DecisionResponse(BaseModel):
    entity_id: str
    outcome: str
    reason: str
    score: Dict[str, Any]
    plan: Optional[Dict[str, Any]] = None
    guard: Optional[Dict[str, Any]] = None
    operation: Optional[OperationResponse] = None


class ApprovalDecisionRequest(BaseModel):
    approver: str
    reason: str = ""

    @field_validator('approver')
    @classmethod
    def approver_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('approver cannot be empty')
        return v


class ChannelCallbackRequest(BaseModel):
    """Card interaction posted back by the approval channel."""
    type: Optional[str] = None
    challenge: Optional[str] = None
    action: Optional[Dict[str, Any]] = None
    user: Optional[Dict[str, Any]] = None
    open_message_id: Optional[str] = None


class JobCreateRequest(BaseModel):
    type: str
    payload: Dict[str, Any] = {}
    idempotency_key: Optional[str] = None
    priority: int = 1
    policy_id: Optional[str] = None
    created_by: Optional[str] = None

    @field_validator('type')
    @classmethod
    def type_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('type cannot be empty')
        return v

    @field_validator('priority')
    @classmethod
    def priority_must_be_positive(cls, v):
        if v < 1:
            raise ValueError('priority must be >= 1')
        return v


class JobResponse(BaseModel):
    id: str
    type: str
    idempotency_key: str
    payload: Dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    priority: int
    policy_id: Optional[str] = None
    created_by: Optional[str] = None
    last_error: Optional[str] = None
    result: Optional[Any] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    total: int
    page: int
    page_size: int


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    queue: Dict[str, Any]

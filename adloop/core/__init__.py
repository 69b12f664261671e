"""
Decision loop core - scoring, policy, guardrails, approvals and the job pipeline.
"""

# Package initialization for core module
from .errors import AdloopError, InputError, PolicyError, NotFoundError, InvalidTransitionError, ExecutionError
from .schema import MetricSnapshot, LifecycleStage, ScoringResult, ActionPlan, Operation, Job, Decision
from .policy import Policy, ActionThresholds
from .service import DecisionService, build_service

__all__ = [
    'AdloopError',
    'InputError',
    'PolicyError',
    'NotFoundError',
    'InvalidTransitionError',
    'ExecutionError',
    'MetricSnapshot',
    'LifecycleStage',
    'ScoringResult',
    'ActionPlan',
    'Operation',
    'Job',
    'Decision',
    'Policy',
    'ActionThresholds',
    'DecisionService',
    'build_service'
]

"""
Decision policy - lifecycle stages, score-to-action thresholds and approval rules for one owner.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Union

from .config import DEFAULT_ANTI_OSCILLATION_HOURS, DEFAULT_COOLDOWN_HOURS, MOMENTUM_SENSITIVITY
from .schema import (
    ACTION_KINDS,
    METRIC_NAMES,
    ActionPlan,
    BudgetValue,
    LifecycleStage,
    MetricSnapshot,
    ScoringResult,
    StatusValue,
)
from .scoring import DEFAULT_BASELINES

POLICY_MODES = ['observe', 'suggest', 'auto']
PLATFORMS = ['facebook', 'tiktok']

OPEN_ENDED_SPEND = 999999.0


def default_stages() -> List[LifecycleStage]:
    """Cold Start -> Exploration -> Scaling -> Maturity."""
    return [
        LifecycleStage('Cold Start', 0, 5, {
            'cpm': 0.4, 'ctr': 0.4, 'hook_rate': 0.2,
            'cpc': 0, 'cpa': 0, 'roas': 0, 'atc_rate': 0,
        }),
        LifecycleStage('Exploration', 5, 30, {
            'cpm': 0.1, 'ctr': 0.1, 'cpc': 0.1, 'atc_rate': 0.3,
            'cpa': 0.3, 'roas': 0.1, 'hook_rate': 0,
        }),
        LifecycleStage('Scaling', 30, 200, {
            'cpm': 0, 'ctr': 0.1, 'cpc': 0, 'atc_rate': 0.1,
            'cpa': 0.1, 'roas': 0.7, 'hook_rate': 0,
        }),
        LifecycleStage('Maturity', 200, OPEN_ENDED_SPEND, {
            'cpm': 0.1, 'ctr': 0.1, 'cpc': 0, 'atc_rate': 0.1,
            'cpa': 0.1, 'roas': 0.6, 'hook_rate': 0,
        }),
    ]


@dataclass
class ActionThresholds:
    """Score bands that trigger an action. Kill is checked before stop-loss."""
    aggressive_min_score: float = 85
    aggressive_change_percent: float = 30
    moderate_min_score: float = 70
    moderate_change_percent: float = 15
    stop_loss_max_score: float = 30
    stop_loss_change_percent: float = -20
    kill_max_score: float = 15


@dataclass
class Policy:
    policy_id: str
    name: str = ""
    mode: str = 'suggest'
    platform: str = 'facebook'
    stages: List[LifecycleStage] = field(default_factory=default_stages)
    baselines: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_BASELINES))
    momentum_sensitivity: float = MOMENTUM_SENSITIVITY
    thresholds: ActionThresholds = field(default_factory=ActionThresholds)
    cooldown_hours: float = DEFAULT_COOLDOWN_HOURS
    anti_oscillation_hours: float = DEFAULT_ANTI_OSCILLATION_HOURS
    require_approval: bool = True
    approval_threshold: float = 100.0
    max_budget: Optional[float] = None
    allowed_actions: List[str] = field(default_factory=lambda: ['pause', 'resume', 'budget_increase', 'budget_decrease'])

    def validate(self) -> List[str]:
        """Return a list of configuration issues (empty when valid)."""
        issues = []

        if not self.policy_id or not str(self.policy_id).strip():
            issues.append("policy_id cannot be empty")

        if self.mode not in POLICY_MODES:
            issues.append(f"Invalid mode: {self.mode}")

        if self.platform not in PLATFORMS:
            issues.append(f"Invalid platform: {self.platform}")

        if not self.stages:
            issues.append("At least one lifecycle stage is required")

        for i, stage in enumerate(self.stages):
            if stage.min_spend < 0 or stage.max_spend <= stage.min_spend:
                issues.append(f"Stage '{stage.name}' has an empty or negative spend range")
            for metric, weight in stage.weights.items():
                if metric not in METRIC_NAMES:
                    issues.append(f"Stage '{stage.name}' weights unknown metric '{metric}'")
                elif weight < 0:
                    issues.append(f"Stage '{stage.name}' has negative weight for '{metric}'")
            if i > 0 and self.stages[i - 1].max_spend != stage.min_spend:
                issues.append(f"Stage '{stage.name}' does not start where '{self.stages[i - 1].name}' ends")

        for metric, baseline in self.baselines.items():
            if metric not in DEFAULT_BASELINES:
                issues.append(f"Unknown baseline metric '{metric}'")
            elif baseline < 0:
                issues.append(f"Baseline for '{metric}' must be >= 0")

        if self.momentum_sensitivity < 0:
            issues.append("momentum_sensitivity must be >= 0")

        t = self.thresholds
        if not t.kill_max_score <= t.stop_loss_max_score < t.moderate_min_score <= t.aggressive_min_score:
            issues.append("Thresholds must satisfy kill <= stop_loss < moderate <= aggressive")
        if t.stop_loss_change_percent >= 0:
            issues.append("stop_loss_change_percent must be negative")
        if t.moderate_change_percent <= 0 or t.aggressive_change_percent <= 0:
            issues.append("Scale change percents must be positive")

        if self.cooldown_hours < 0 or self.anti_oscillation_hours < 0:
            issues.append("Guardrail windows must be >= 0 hours")

        if self.approval_threshold < 0:
            issues.append("approval_threshold must be >= 0")

        if self.max_budget is not None and self.max_budget <= 0:
            issues.append("max_budget must be > 0 when set")

        unknown_actions = [a for a in self.allowed_actions if a not in ACTION_KINDS]
        if unknown_actions:
            issues.append(f"Unknown allowed actions: {unknown_actions}")

        return issues

    def map_score_to_action(self, score: Union[ScoringResult, float], snapshot: MetricSnapshot = None) -> Optional[ActionPlan]:
        """Pick the action a score calls for, or None when the entity should be left alone."""
        final_score = score.final_score if isinstance(score, ScoringResult) else float(score)
        budget = snapshot.daily_budget if snapshot is not None else None
        t = self.thresholds

        if final_score <= t.kill_max_score:
            plan = ActionPlan(
                action='pause',
                before_value=StatusValue('ACTIVE'),
                after_value=StatusValue('PAUSED'),
                rule='kill'
            )
        elif final_score <= t.stop_loss_max_score:
            plan = self._budget_plan('budget_decrease', t.stop_loss_change_percent, budget, 'stop_loss')
        elif final_score >= t.aggressive_min_score:
            plan = self._budget_plan('budget_increase', t.aggressive_change_percent, budget, 'aggressive_scale')
        elif final_score >= t.moderate_min_score:
            plan = self._budget_plan('budget_increase', t.moderate_change_percent, budget, 'moderate_scale')
        else:
            return None

        if plan.action not in self.allowed_actions:
            return None

        if plan.action == 'budget_increase' and self.max_budget is not None:
            new_budget = plan.after_value.budget
            if new_budget is not None and new_budget > self.max_budget:
                return None

        return plan

    def requires_approval(self, plan: ActionPlan) -> bool:
        """Pauses always need a human; budget changes above the threshold (or of unknown size) do too."""
        if not self.require_approval:
            return False

        if plan.action == 'pause':
            return True

        if plan.action in ('budget_increase', 'budget_decrease'):
            delta = plan.budget_delta()
            return delta is None or delta > self.approval_threshold

        return False

    @staticmethod
    def _budget_plan(action: str, change_percent: float, budget: Optional[float], rule: str) -> ActionPlan:
        new_budget = round(budget * (1 + change_percent / 100.0), 2) if budget is not None else None
        return ActionPlan(
            action=action,
            before_value=BudgetValue(budget),
            after_value=BudgetValue(new_budget),
            change_percent=change_percent,
            rule=rule
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Policy':
        data = dict(data)
        if 'stages' in data:
            data['stages'] = [
                s if isinstance(s, LifecycleStage) else LifecycleStage.from_dict(s)
                for s in data['stages']
            ]
        if 'thresholds' in data and isinstance(data['thresholds'], dict):
            data['thresholds'] = ActionThresholds(**data['thresholds'])
        if 'baselines' in data:
            merged = dict(DEFAULT_BASELINES)
            merged.update(data['baselines'] or {})
            data['baselines'] = merged
        return cls(**data)

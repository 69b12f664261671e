"""
Momentum guardrails - stop the loop from repeating an action too soon or flip-flopping.

Only operations that were actually executed count; pending, rejected and
failed operations never block anything.
"""

from datetime import datetime
from typing import Callable

from .config import DEFAULT_ANTI_OSCILLATION_HOURS, DEFAULT_COOLDOWN_HOURS
from .dao import OperationStore
from .schema import GuardResult

# Pairs of actions that undo each other
REVERSE_PAIRS = (
    ('budget_increase', 'budget_decrease'),
    ('budget_increase', 'pause'),
    ('resume', 'pause'),
)


def is_reverse(previous_action: str, proposed_action: str) -> bool:
    """True when proposed_action undoes previous_action (in either order)."""
    return (previous_action, proposed_action) in REVERSE_PAIRS or \
        (proposed_action, previous_action) in REVERSE_PAIRS


class GuardrailService:
    """Checks a proposed action against an entity's executed operation history."""

    def __init__(self, operations: OperationStore, clock: Callable[[], datetime] = None):
        self.operations = operations
        self.clock = clock or datetime.now

    def check_momentum(
        self,
        entity_id: str,
        proposed_action: str,
        cooldown_hours: float = DEFAULT_COOLDOWN_HOURS,
        anti_oscillation_hours: float = DEFAULT_ANTI_OSCILLATION_HOURS,
    ) -> GuardResult:
        """
        Decide whether proposed_action may run on entity_id now.

        Same action within the cooldown window is denied; an action that
        reverses the last executed one within the anti-oscillation window is
        denied. Everything else is allowed.
        """
        last_op = self.operations.find_latest_executed(entity_id)
        if last_op is None or last_op.executed_at is None:
            return GuardResult(allowed=True)

        hours_since = self._hours_since(last_op.executed_at)

        if last_op.action == proposed_action and hours_since < cooldown_hours:
            return GuardResult(
                allowed=False,
                reason=(f"Momentum: Cooldown in progress. Last {proposed_action} was "
                        f"{hours_since:.1f}h ago (min {cooldown_hours:g}h).")
            )

        if is_reverse(last_op.action, proposed_action) and hours_since < anti_oscillation_hours:
            return GuardResult(
                allowed=False,
                reason=(f"Momentum: Anti-oscillation trigger. Last action was {last_op.action} "
                        f"{hours_since:.1f}h ago. Need {anti_oscillation_hours:g}h to stabilize.")
            )

        return GuardResult(allowed=True)

    def _hours_since(self, moment: datetime) -> float:
        return (self.clock() - moment).total_seconds() / 3600.0


"""
Approval channels - where pending operations are shown to a human approver.

Channels are best effort: a failed notification leaves the operation pending
and still approvable through the API.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from .config import APPROVAL_CHANNEL_TIMEOUT_SEC, APPROVAL_WEBHOOK_TOKEN
from .schema import Operation
from ..util.logging import logger

OUTCOME_LABELS = {
    'approved': 'Approved',
    'rejected': 'Rejected',
    'executed': 'Executed',
    'failed': 'Execution failed',
}


class IApprovalChannel(ABC):
    """Interactive approval cards for pending operations."""

    @abstractmethod
    def notify(self, operation: Operation) -> Optional[str]:
        """Post an approval card. Returns the channel's message reference, or None."""
        pass

    @abstractmethod
    def update_status(self, message_ref: str, outcome: str, actor: str) -> bool:
        """Replace a card's buttons with the final outcome."""
        pass


def build_approval_card(operation: Operation) -> Dict[str, Any]:
    """Card asking a human to approve or reject an operation."""
    snapshot = operation.score_snapshot
    return {
        "title": f"Approval needed: {operation.action.upper()}",
        "color": "red" if operation.action == 'pause' else "blue",
        "fields": {
            "policy": operation.policy_id,
            "entity": operation.entity_id,
            "entity_type": operation.entity_type,
            "score": f"{snapshot.final_score:.1f}" if snapshot else "N/A",
            "stage": snapshot.stage if snapshot else "Unknown",
        },
        "reason": operation.reason,
        "actions": [
            {"label": "Approve", "value": {"action": "approve", "operation_id": operation.id}},
            {"label": "Reject", "value": {"action": "reject", "operation_id": operation.id}},
        ],
    }


def build_finished_card(outcome: str, actor: str) -> Dict[str, Any]:
    label = OUTCOME_LABELS.get(outcome, outcome)
    return {
        "title": f"Operation {label.lower()}",
        "color": "green" if outcome in ('approved', 'executed') else "grey",
        "fields": {"status": label, "by": actor},
        "actions": [],
    }


class WebhookApprovalChannel(IApprovalChannel):
    """Posts JSON cards to a chat-bot webhook.

    POST {base_url}/messages          -> {"message_id": "..."}
    PATCH {base_url}/messages/{ref}   -> 2xx on success
    """

    def __init__(self, base_url: str, token: str = APPROVAL_WEBHOOK_TOKEN,
                 timeout: float = APPROVAL_CHANNEL_TIMEOUT_SEC):
        if not base_url:
            raise ValueError("Webhook base_url is required")
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout

    def notify(self, operation: Operation) -> Optional[str]:
        try:
            response = requests.post(
                f"{self.base_url}/messages",
                json={"card": build_approval_card(operation)},
                headers=self._headers(),
                timeout=self.timeout
            )
            response.raise_for_status()
            message_ref = response.json().get("message_id")
        except (requests.RequestException, ValueError) as e:
            logger.log_channel_failure("webhook", "notify", e, operation.id)
            return None

        logger.log_operation("channel.notify", "success", {
            "operation_id": operation.id,
            "message_ref": message_ref
        })
        return message_ref

    def update_status(self, message_ref: str, outcome: str, actor: str) -> bool:
        try:
            response = requests.patch(
                f"{self.base_url}/messages/{message_ref}",
                json={"card": build_finished_card(outcome, actor)},
                headers=self._headers(),
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.log_channel_failure("webhook", "update_status", e)
            return False
        return True

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

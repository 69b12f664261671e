"""
Structured logging for the decision loop - scoring, guardrails, approvals and jobs.
"""

import logging
from typing import Any, Dict, List, Optional


class StructuredLogger:
    """Structured logger for decision, approval and job pipeline operations."""

    def __init__(self, name: str = "adloop"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_score(self, entity_id: str, final_score: float, stage: str, momentum_bonus: float):
        """Log a computed lifecycle score."""
        self.log_operation("scoring.evaluated", "success", {
            "entity_id": entity_id,
            "final_score": round(final_score, 2),
            "stage": stage,
            "momentum_bonus": round(momentum_bonus, 4)
        })

    def log_guardrail_decision(self, entity_id: str, action: str, allowed: bool, reason: Optional[str] = None):
        """Log a guardrail verdict. Denials are normal outcomes, not failures."""
        details = {"entity_id": entity_id, "action": action}
        if reason:
            details["reason"] = reason
        self.log_operation("guardrail.check", "allowed" if allowed else "denied", details)

    def log_operation_proposed(self, operation_id: str, entity_id: str, action: str, auto_approved: bool = False):
        """Log creation of a pending operation."""
        self.log_operation("operation.proposed", "pending", {
            "operation_id": operation_id,
            "entity_id": entity_id,
            "action": action,
            "auto_approved": auto_approved
        })

    def log_approval_decision(self, operation_id: str, decision: str, approver: str, reason: str = ""):
        """Log an approval decision."""
        log_details = {
            "operation_id": operation_id,
            "decision": decision,
            "approver": approver,
            "reason": reason[:100] if reason else ""
        }
        self.log_operation("approval.decision", decision, log_details)

    def log_approval_bypass(self, operation_id: str, reason: str = "policy"):
        """Log an operation approved without human review."""
        self.log_operation("approval.bypass", "approved", {
            "operation_id": operation_id,
            "reason": reason
        })

    def log_execution_result(self, operation_id: str, outcome: str, error: Optional[str] = None):
        """Log the terminal outcome of an operation."""
        details = {"operation_id": operation_id}
        if error:
            details["error"] = error[:200]
        level = logging.ERROR if outcome == "failed" else logging.INFO
        self.log_operation("operation.result", outcome, details, level=level)

    def log_job_transition(self, job_id: str, job_type: str, status: str, attempts: int = 0, details: Dict[str, Any] = None):
        """Log a job status change."""
        log_details = {"job_id": job_id, "type": job_type, "attempts": attempts}
        if details:
            log_details.update(details)
        level = logging.WARNING if status == "failed" else logging.INFO
        self.log_operation(f"job.{status}", status, log_details, level=level)

    def log_channel_failure(self, channel: str, call: str, error: Exception, operation_id: Optional[str] = None):
        """Log an approval channel failure. Channel errors are never fatal."""
        details = {"channel": channel, "call": call, "error": str(error)[:200]}
        if operation_id:
            details["operation_id"] = operation_id
        self.log_operation("channel.failure", "ignored", details, level=logging.WARNING)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = ['access_token', 'token', 'secret', 'password', 'app_secret']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:200] + "..." if len(payload) > 200 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload

"""
Runtime configuration - every knob is read from the environment with a safe default.
"""

import os
from pathlib import Path

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/adloop.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Job pipeline / queue transport
QUEUE_ENABLED = os.getenv("QUEUE_ENABLED", "true").lower() == "true"
QUEUE_WORKERS = int(os.getenv("QUEUE_WORKERS", "2"))
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "5"))
JOB_BACKOFF_BASE_SEC = float(os.getenv("JOB_BACKOFF_BASE_SEC", "2"))

# Guardrail windows (hours)
DEFAULT_COOLDOWN_HOURS = float(os.getenv("DEFAULT_COOLDOWN_HOURS", "4"))
DEFAULT_ANTI_OSCILLATION_HOURS = float(os.getenv("DEFAULT_ANTI_OSCILLATION_HOURS", "12"))

# Trend analysis
EMA_ALPHA = float(os.getenv("EMA_ALPHA", "0.3"))
MOMENTUM_SENSITIVITY = float(os.getenv("MOMENTUM_SENSITIVITY", "0.1"))
TREND_WINDOW = int(os.getenv("TREND_WINDOW", "14"))

# Approval channel (chat-bot webhook)
APPROVAL_WEBHOOK_URL = os.getenv("APPROVAL_WEBHOOK_URL")
APPROVAL_WEBHOOK_TOKEN = os.getenv("APPROVAL_WEBHOOK_TOKEN")
APPROVAL_CHANNEL_TIMEOUT_SEC = float(os.getenv("APPROVAL_CHANNEL_TIMEOUT_SEC", "10"))

# Version string
VERSION = "0.4.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def is_queue_enabled():
    """Check if the background queue transport should be started."""
    return os.getenv("QUEUE_ENABLED", "true").lower() == "true"


def validate_queue_config():
    """Validate job pipeline configuration and return any issues."""
    issues = []

    if QUEUE_WORKERS < 1:
        issues.append("QUEUE_WORKERS must be >= 1")

    if JOB_MAX_ATTEMPTS < 1:
        issues.append("JOB_MAX_ATTEMPTS must be >= 1")

    if JOB_BACKOFF_BASE_SEC < 0:
        issues.append("JOB_BACKOFF_BASE_SEC must be >= 0")

    return issues


def validate_trend_config():
    """Validate trend analysis configuration and return any issues."""
    issues = []

    if not 0 < EMA_ALPHA <= 1:
        issues.append(f"Invalid EMA_ALPHA: {EMA_ALPHA} (must be in (0, 1])")

    if TREND_WINDOW < 2:
        issues.append("TREND_WINDOW must be >= 2")

    if DEFAULT_COOLDOWN_HOURS < 0 or DEFAULT_ANTI_OSCILLATION_HOURS < 0:
        issues.append("Guardrail windows must be >= 0 hours")

    return issues

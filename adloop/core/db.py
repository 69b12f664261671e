"""
SQLite entity store - connection handling and schema for operations, jobs and audit events.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from . import config


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path or config.DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    config.ensure_db_directory(db_path)

    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # WAL lets the queue workers read while the API thread writes
        cursor.execute('PRAGMA journal_mode=WAL')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS operations (
                id TEXT PRIMARY KEY,
                entity_id TEXT NOT NULL,
                entity_type TEXT NOT NULL DEFAULT 'campaign',
                account_id TEXT,
                policy_id TEXT,
                action TEXT NOT NULL,
                before_value TEXT,      -- JSON tagged action value
                after_value TEXT,       -- JSON tagged action value
                change_percent REAL,
                reason TEXT NOT NULL,
                score_snapshot TEXT,    -- JSON ScoringResult
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                executed_at TEXT,
                executed_by TEXT,
                result TEXT,            -- JSON
                error TEXT,
                message_ref TEXT,
                job_id TEXT,
                executing_job_id TEXT   -- job currently allowed to call the executor
            )
        ''')

        # Databases created before execution claims existed
        cursor.execute("PRAGMA table_info(operations)")
        operation_columns = [col[1] for col in cursor.fetchall()]
        if 'executing_job_id' not in operation_columns:
            cursor.execute('ALTER TABLE operations ADD COLUMN executing_job_id TEXT')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_operations_entity_status ON operations(entity_id, status, executed_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_operations_status_created ON operations(status, created_at DESC)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                idempotency_key TEXT NOT NULL UNIQUE,
                payload TEXT NOT NULL,  -- JSON
                status TEXT NOT NULL DEFAULT 'queued',
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 5,
                priority INTEGER NOT NULL DEFAULT 1,
                policy_id TEXT,
                created_by TEXT,
                last_error TEXT,
                result TEXT,            -- JSON
                queued_at TEXT,
                started_at TEXT,
                finished_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_jobs_policy_created ON jobs(policy_id, created_at DESC)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                actor TEXT NOT NULL,
                action TEXT NOT NULL,
                subject_id TEXT,
                payload TEXT
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_subject_ts ON audit_events(subject_id, ts DESC)')

        conn.commit()


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]

            required_tables = ['operations', 'jobs', 'audit_events']
            return all(table in table_names for table in required_tables)
    except sqlite3.Error:
        return False

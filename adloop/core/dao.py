"""
Data access for the entity store - operations, jobs and the audit trail.

Status changes are compare-and-set updates (``UPDATE ... WHERE status = ?``) so
concurrent writers can never apply two conflicting transitions.
"""

import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .db import get_db, init_db
from .schema import (
    Job,
    Operation,
    ScoringResult,
    action_value_from_dict,
    action_value_to_dict,
)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def _loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    return json.loads(value)


def _now() -> datetime:
    return datetime.now()


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class OperationStore:
    """Append-only operation history. Operations are never deleted."""

    _columns = (
        'id', 'entity_id', 'entity_type', 'account_id', 'policy_id', 'action',
        'before_value', 'after_value', 'change_percent', 'reason', 'score_snapshot',
        'status', 'created_at', 'updated_at', 'executed_at', 'executed_by',
        'result', 'error', 'message_ref', 'job_id', 'executing_job_id'
    )
    _updatable = ('executed_at', 'executed_by', 'result', 'error', 'message_ref', 'job_id')

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        init_db(db_path)

    def create(self, operation: Operation) -> Operation:
        """Persist a new operation."""
        now = _now()
        operation.id = operation.id or str(uuid.uuid4())
        operation.created_at = operation.created_at or now
        operation.updated_at = operation.updated_at or now

        with get_db(self.db_path) as conn:
            conn.execute(
                f"INSERT INTO operations ({', '.join(self._columns)}) "
                f"VALUES ({', '.join('?' for _ in self._columns)})",
                self._to_row(operation)
            )
            conn.commit()
        return operation

    def get(self, operation_id: str) -> Optional[Operation]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM operations WHERE id = ?", (operation_id,)).fetchone()
        return self._from_row(row) if row else None

    def transition(self, operation_id: str, from_status: str, to_status: str, **fields) -> bool:
        """Move an operation from one status to another. Returns False if it was not in from_status."""
        assignments, params = self._assignments(fields)
        assignments = ["status = ?", "updated_at = ?"] + assignments
        params = [to_status, _ts(_now())] + params

        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                f"UPDATE operations SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                params + [operation_id, from_status]
            )
            conn.commit()
            return cursor.rowcount == 1

    def update_fields(self, operation_id: str, **fields) -> bool:
        """Update non-status bookkeeping fields (message_ref, job_id, ...)."""
        assignments, params = self._assignments(fields)
        if not assignments:
            return False
        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                f"UPDATE operations SET {', '.join(assignments + ['updated_at = ?'])} WHERE id = ?",
                params + [_ts(_now()), operation_id]
            )
            conn.commit()
            return cursor.rowcount == 1

    def claim_execution(self, operation_id: str, job_id: str) -> bool:
        """Give job_id the exclusive right to execute an approved operation. False if another job holds it."""
        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE operations SET executing_job_id = ?, updated_at = ? "
                "WHERE id = ? AND status = 'approved' AND executing_job_id IS NULL",
                (job_id, _ts(_now()), operation_id)
            )
            conn.commit()
            return cursor.rowcount == 1

    def release_execution(self, operation_id: str, job_id: str) -> bool:
        """Drop job_id's claim after an attempt that did not change anything remotely."""
        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE operations SET executing_job_id = NULL, updated_at = ? "
                "WHERE id = ? AND status = 'approved' AND executing_job_id = ?",
                (_ts(_now()), operation_id, job_id)
            )
            conn.commit()
            return cursor.rowcount == 1

    def find_latest_executed(self, entity_id: str) -> Optional[Operation]:
        """Most recent operation with status=executed for an entity."""
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM operations WHERE entity_id = ? AND status = 'executed' "
                "ORDER BY executed_at DESC LIMIT 1",
                (entity_id,)
            ).fetchone()
        return self._from_row(row) if row else None

    def find_in_flight(self, entity_id: str) -> Optional[Operation]:
        """Oldest pending or approved operation for an entity, if any."""
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM operations WHERE entity_id = ? AND status IN ('pending', 'approved') "
                "ORDER BY created_at ASC LIMIT 1",
                (entity_id,)
            ).fetchone()
        return self._from_row(row) if row else None

    def list_by_status(self, status: str, entity_id: str = None, limit: int = 100) -> List[Operation]:
        query = "SELECT * FROM operations WHERE status = ?"
        params: List[Any] = [status]
        if entity_id:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with get_db(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._from_row(row) for row in rows]

    def _assignments(self, fields: Dict[str, Any]) -> Tuple[List[str], List[Any]]:
        assignments, params = [], []
        for name, value in fields.items():
            if name not in self._updatable:
                raise ValueError(f"Field '{name}' cannot be updated on an operation")
            assignments.append(f"{name} = ?")
            if name == 'executed_at':
                params.append(_ts(value))
            elif name == 'result':
                params.append(_dumps(value))
            else:
                params.append(value)
        return assignments, params

    @staticmethod
    def _to_row(op: Operation) -> Sequence[Any]:
        return (
            op.id, op.entity_id, op.entity_type, op.account_id, op.policy_id, op.action,
            _dumps(action_value_to_dict(op.before_value)),
            _dumps(action_value_to_dict(op.after_value)),
            op.change_percent, op.reason,
            _dumps(op.score_snapshot.to_dict() if op.score_snapshot else None),
            op.status, _ts(op.created_at), _ts(op.updated_at), _ts(op.executed_at),
            op.executed_by, _dumps(op.result), op.error, op.message_ref, op.job_id,
            op.executing_job_id
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Operation:
        snapshot = _loads(row['score_snapshot'])
        return Operation(
            id=row['id'],
            entity_id=row['entity_id'],
            entity_type=row['entity_type'],
            account_id=row['account_id'],
            policy_id=row['policy_id'],
            action=row['action'],
            before_value=action_value_from_dict(_loads(row['before_value'])),
            after_value=action_value_from_dict(_loads(row['after_value'])),
            change_percent=row['change_percent'],
            reason=row['reason'],
            score_snapshot=ScoringResult.from_dict(snapshot) if snapshot else None,
            status=row['status'],
            created_at=_parse_ts(row['created_at']),
            updated_at=_parse_ts(row['updated_at']),
            executed_at=_parse_ts(row['executed_at']),
            executed_by=row['executed_by'],
            result=_loads(row['result']),
            error=row['error'],
            message_ref=row['message_ref'],
            job_id=row['job_id'],
            executing_job_id=row['executing_job_id']
        )


class JobStore:
    """Persisted jobs keyed by a unique idempotency key."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        init_db(db_path)

    def create_if_absent(self, job: Job) -> Tuple[Job, bool]:
        """
        Atomically create a job unless its idempotency key already exists.

        Returns:
            (job, created) - the stored job and whether this call created it.
        """
        now = _now()
        job.id = job.id or str(uuid.uuid4())
        job.status = 'queued'
        job.queued_at = job.queued_at or now
        job.created_at = job.created_at or now
        job.updated_at = now

        with get_db(self.db_path) as conn:
            # BEGIN IMMEDIATE takes the write lock up front so insert + read see one state
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO jobs (id, type, idempotency_key, payload, status, attempts, "
                    "max_attempts, priority, policy_id, created_by, queued_at, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?)",
                    (job.id, job.type, job.idempotency_key, _dumps(job.payload or {}), job.status,
                     job.max_attempts, job.priority, job.policy_id, job.created_by,
                     _ts(job.queued_at), _ts(job.created_at), _ts(job.updated_at))
                )
                created = cursor.rowcount == 1
                row = conn.execute(
                    "SELECT * FROM jobs WHERE idempotency_key = ?", (job.idempotency_key,)
                ).fetchone()
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

        return self._from_row(row), created

    def get(self, job_id: str) -> Optional[Job]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._from_row(row) if row else None

    def claim(self, job_id: str) -> bool:
        """queued|failed -> running, counting one more attempt. False if another caller got there first."""
        now = _ts(_now())
        return self._update(
            "status = 'running', attempts = attempts + 1, started_at = COALESCE(started_at, ?), "
            "finished_at = NULL, updated_at = ?",
            [now, now], job_id, "status IN ('queued', 'failed')"
        )

    def complete(self, job_id: str, result: Any) -> bool:
        now = _ts(_now())
        return self._update(
            "status = 'completed', result = ?, last_error = NULL, finished_at = ?, updated_at = ?",
            [_dumps(result), now, now], job_id, "status = 'running'"
        )

    def fail(self, job_id: str, error: str) -> bool:
        now = _ts(_now())
        return self._update(
            "status = 'failed', last_error = ?, finished_at = ?, updated_at = ?",
            [error, now, now], job_id, "status = 'running'"
        )

    def cancel(self, job_id: str) -> bool:
        now = _ts(_now())
        return self._update(
            "status = 'cancelled', finished_at = ?, updated_at = ?",
            [now, now], job_id, "status NOT IN ('completed', 'cancelled')"
        )

    def reset_for_retry(self, job_id: str) -> bool:
        now = _ts(_now())
        return self._update(
            "status = 'queued', last_error = NULL, finished_at = NULL, queued_at = ?, updated_at = ?",
            [now, now], job_id, "status = 'failed'"
        )

    def list_jobs(self, status: str = None, job_type: str = None, policy_id: str = None,
                  page: int = 1, page_size: int = 20) -> Tuple[List[Job], int]:
        """List jobs newest first. Returns (jobs, total)."""
        page = max(1, int(page or 1))
        page_size = min(200, max(1, int(page_size or 20)))

        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if job_type:
            clauses.append("type = ?")
            params.append(job_type)
        if policy_id:
            clauses.append("policy_id = ?")
            params.append(policy_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with get_db(self.db_path) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM jobs {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                params + [page_size, (page - 1) * page_size]
            ).fetchall()
        return [self._from_row(row) for row in rows], total

    def _update(self, assignments: str, params: List[Any], job_id: str, condition: str) -> bool:
        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ? AND {condition}",
                params + [job_id]
            )
            conn.commit()
            return cursor.rowcount == 1

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Job:
        return Job(
            id=row['id'],
            type=row['type'],
            idempotency_key=row['idempotency_key'],
            payload=_loads(row['payload']) or {},
            status=row['status'],
            attempts=row['attempts'],
            max_attempts=row['max_attempts'],
            priority=row['priority'],
            policy_id=row['policy_id'],
            created_by=row['created_by'],
            last_error=row['last_error'],
            result=_loads(row['result']),
            queued_at=_parse_ts(row['queued_at']),
            started_at=_parse_ts(row['started_at']),
            finished_at=_parse_ts(row['finished_at']),
            created_at=_parse_ts(row['created_at']),
            updated_at=_parse_ts(row['updated_at'])
        )


class AuditLog:
    """Audit trail of state changes (who did what to which record)."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path
        init_db(db_path)

    def add_event(self, actor: str, action: str, subject_id: str = None, payload: Dict[str, Any] = None) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                "INSERT INTO audit_events (actor, action, subject_id, payload) VALUES (?, ?, ?, ?)",
                (actor, action, subject_id, _dumps(payload))
            )
            conn.commit()
            return cursor.lastrowid

    def list_events(self, subject_id: str = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = "SELECT id, ts, actor, action, subject_id, payload FROM audit_events"
        params: List[Any] = []
        if subject_id:
            query += " WHERE subject_id = ?"
            params.append(subject_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with get_db(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                "id": row['id'],
                "ts": row['ts'],
                "actor": row['actor'],
                "action": row['action'],
                "subject_id": row['subject_id'],
                "payload": _loads(row['payload'])
            }
            for row in rows
        ]

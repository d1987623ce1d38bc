"""Database operations for the milo scheduled-job store."""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

logger = logging.getLogger("milo.db")

# Columns a caller may change through update_scheduled_job()
UPDATABLE_JOB_COLUMNS = frozenset({
    "title",
    "description",
    "action_payload",
    "run_at",
    "cron_expression",
    "timezone",
    "max_runs",
})

_JOB_COLUMNS = """
    id, agent_id, title, description, job_type, action_type, action_payload,
    schedule_type, run_at, cron_expression, timezone, status, next_run_at,
    last_run_at, run_count, max_runs, consecutive_failures, last_error,
    locked_until, last_lock_at, task_id, project_id, conversation_id,
    created_at, updated_at
"""

_EXECUTION_COLUMNS = "id, job_id, agent_id, status, result, error, started_at, completed_at"


class LockContention(Exception):
    """The job is leased by an in-flight execution and cannot be modified now."""


@dataclass
class ScheduledJob:
    id: str
    agent_id: str
    title: str
    job_type: str
    action_type: str
    action_payload: dict
    schedule_type: str
    status: str
    timezone: str = "UTC"
    description: str | None = None
    run_at: str | None = None
    cron_expression: str | None = None
    next_run_at: str | None = None
    last_run_at: str | None = None
    run_count: int = 0
    max_runs: int | None = None
    consecutive_failures: int = 0
    last_error: str | None = None
    locked_until: str | None = None
    last_lock_at: str | None = None
    task_id: str | None = None
    project_id: str | None = None
    conversation_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until >= format_ts(now)


@dataclass
class JobExecution:
    id: str
    job_id: str
    agent_id: str
    status: str
    started_at: str
    result: dict | None = None
    error: str | None = None
    completed_at: str | None = None


@dataclass
class Conversation:
    id: str
    agent_id: str
    channel_type: str
    status: str
    title: str | None
    created_at: str


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    metadata: dict | None
    created_at: str


@dataclass
class LinkedTask:
    """A user task a job may point at (read-only here)."""
    id: str
    agent_id: str
    title: str
    description: str | None
    status: str
    due_date: str | None


def format_ts(dt: datetime) -> str:
    """Serialize to the stored form: UTC, second precision, explicit offset.

    Naive datetimes are taken to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def init_db(db_path: Path) -> None:
    """Initialize database with schema."""
    schema_path = Path(__file__).parent / "schema.sql"
    db_path = Path(db_path)
    if db_path.parent and not db_path.parent.exists():
        db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        conn.executescript(schema_path.read_text())


@contextmanager
def get_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Get database connection with row factory."""
    # timeout=30.0 waits up to 30s for locks instead of failing immediately
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# ============================================================================
# Scheduled jobs
# ============================================================================


def _row_to_scheduled_job(row: sqlite3.Row) -> ScheduledJob:
    """Convert a database row to a ScheduledJob object."""
    return ScheduledJob(
        id=row["id"],
        agent_id=row["agent_id"],
        title=row["title"],
        description=row["description"],
        job_type=row["job_type"],
        action_type=row["action_type"],
        action_payload=json.loads(row["action_payload"]) if row["action_payload"] else {},
        schedule_type=row["schedule_type"],
        run_at=row["run_at"],
        cron_expression=row["cron_expression"],
        timezone=row["timezone"],
        status=row["status"],
        next_run_at=row["next_run_at"],
        last_run_at=row["last_run_at"],
        run_count=row["run_count"],
        max_runs=row["max_runs"],
        consecutive_failures=row["consecutive_failures"],
        last_error=row["last_error"],
        locked_until=row["locked_until"],
        last_lock_at=row["last_lock_at"],
        task_id=row["task_id"],
        project_id=row["project_id"],
        conversation_id=row["conversation_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def insert_scheduled_job(
    conn: sqlite3.Connection,
    agent_id: str,
    title: str,
    job_type: str,
    action_type: str,
    action_payload: dict,
    schedule_type: str,
    next_run_at: datetime,
    now: datetime,
    run_at: datetime | None = None,
    cron_expression: str | None = None,
    timezone_name: str = "UTC",
    description: str | None = None,
    max_runs: int | None = None,
    task_id: str | None = None,
    project_id: str | None = None,
    conversation_id: str | None = None,
) -> str:
    """Insert an active scheduled job and return its ID."""
    job_id = new_id()
    stamp = format_ts(now)
    conn.execute(
        """
        INSERT INTO scheduled_jobs (
            id, agent_id, title, description, job_type, action_type,
            action_payload, schedule_type, run_at, cron_expression, timezone,
            status, next_run_at, max_runs, task_id, project_id,
            conversation_id, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            agent_id,
            title,
            description,
            job_type,
            action_type,
            json.dumps(action_payload),
            schedule_type,
            format_ts(run_at) if run_at else None,
            cron_expression,
            timezone_name,
            format_ts(next_run_at),
            max_runs,
            task_id,
            project_id,
            conversation_id,
            stamp,
            stamp,
        ),
    )
    logger.debug("Created scheduled job %s (%s/%s) for agent %s", job_id, job_type, action_type, agent_id)
    return job_id


def get_scheduled_job(conn: sqlite3.Connection, job_id: str) -> ScheduledJob | None:
    """Look up a scheduled job by ID."""
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs WHERE id = ?",
        (job_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_scheduled_job(row)


def list_scheduled_jobs(
    conn: sqlite3.Connection,
    agent_id: str | None = None,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 50,
) -> list[ScheduledJob]:
    """List jobs, soonest next run first (jobs with no next run last)."""
    filters = []
    params: list = []
    if agent_id is not None:
        filters.append("agent_id = ?")
        params.append(agent_id)
    if status is not None:
        filters.append("status = ?")
        params.append(status)
    if job_type is not None:
        filters.append("job_type = ?")
        params.append(job_type)
    where_clause = f"WHERE {' AND '.join(filters)}" if filters else ""
    params.append(limit)

    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS} FROM scheduled_jobs
        {where_clause}
        ORDER BY next_run_at IS NULL, next_run_at ASC, created_at ASC
        LIMIT ?
        """,
        params,
    )
    return [_row_to_scheduled_job(row) for row in cursor.fetchall()]


def get_due_jobs(conn: sqlite3.Connection, now: datetime, limit: int = 50) -> list[ScheduledJob]:
    """Active, unlocked jobs whose next run is at or before ``now``, oldest first."""
    stamp = format_ts(now)
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS} FROM scheduled_jobs
        WHERE status = 'active'
        AND next_run_at IS NOT NULL
        AND next_run_at <= ?
        AND (locked_until IS NULL OR locked_until < ?)
        ORDER BY next_run_at ASC
        LIMIT ?
        """,
        (stamp, stamp, limit),
    )
    return [_row_to_scheduled_job(row) for row in cursor.fetchall()]


def claim_job(
    conn: sqlite3.Connection,
    job_id: str,
    now: datetime,
    lease: timedelta,
) -> ScheduledJob | None:
    """Atomically lease a due job. Returns None if another cycle got there first.

    The due conditions are re-checked in the same statement, so a job that
    another cycle already ran (and whose next_run_at moved on) is not fired
    again. Commits immediately so the lease is visible to concurrent cycles.
    """
    stamp = format_ts(now)
    cursor = conn.execute(
        f"""
        UPDATE scheduled_jobs
        SET locked_until = ?, last_lock_at = ?, updated_at = ?
        WHERE id = ?
        AND status = 'active'
        AND next_run_at IS NOT NULL
        AND next_run_at <= ?
        AND (locked_until IS NULL OR locked_until < ?)
        RETURNING {_JOB_COLUMNS}
        """,
        (format_ts(now + lease), stamp, stamp, job_id, stamp, stamp),
    )
    row = cursor.fetchone()
    conn.commit()
    if not row:
        return None
    return _row_to_scheduled_job(row)


def shorten_job_lock(conn: sqlite3.Connection, job_id: str, until: datetime) -> None:
    """Pull a lease in to ``until`` so the job is retried soon after a fault."""
    conn.execute(
        "UPDATE scheduled_jobs SET locked_until = ?, updated_at = ? WHERE id = ?",
        (format_ts(until), format_ts(utcnow()), job_id),
    )


def record_job_success(
    conn: sqlite3.Connection,
    job_id: str,
    now: datetime,
    status: str,
    next_run_at: datetime | None,
) -> None:
    """Write a successful run. A job cancelled mid-run stays cancelled."""
    stamp = format_ts(now)
    conn.execute(
        """
        UPDATE scheduled_jobs
        SET run_count = run_count + 1,
            last_run_at = ?,
            consecutive_failures = 0,
            last_error = NULL,
            locked_until = NULL,
            status = CASE WHEN status = 'cancelled' THEN 'cancelled' ELSE ? END,
            next_run_at = CASE WHEN status = 'cancelled' THEN NULL ELSE ? END,
            updated_at = ?
        WHERE id = ?
        """,
        (stamp, status, format_ts(next_run_at) if next_run_at else None, stamp, job_id),
    )


def record_job_failure(
    conn: sqlite3.Connection,
    job_id: str,
    now: datetime,
    error: str,
    consecutive_failures: int,
    status: str,
    next_run_at: datetime | None,
) -> None:
    """Write a failed run. A job cancelled mid-run stays cancelled."""
    stamp = format_ts(now)
    conn.execute(
        """
        UPDATE scheduled_jobs
        SET consecutive_failures = ?,
            last_error = ?,
            locked_until = NULL,
            status = CASE WHEN status = 'cancelled' THEN 'cancelled' ELSE ? END,
            next_run_at = CASE WHEN status = 'cancelled' THEN NULL ELSE ? END,
            updated_at = ?
        WHERE id = ?
        """,
        (
            consecutive_failures,
            error[:500],
            status,
            format_ts(next_run_at) if next_run_at else None,
            stamp,
            job_id,
        ),
    )


def cancel_scheduled_job(conn: sqlite3.Connection, job_id: str, now: datetime) -> bool:
    """Cancel an active or paused job. Returns False if it was already terminal."""
    cursor = conn.execute(
        """
        UPDATE scheduled_jobs
        SET status = 'cancelled', next_run_at = NULL, updated_at = ?
        WHERE id = ? AND status IN ('active', 'paused')
        """,
        (format_ts(now), job_id),
    )
    return cursor.rowcount > 0


def pause_scheduled_job(conn: sqlite3.Connection, job_id: str, now: datetime) -> bool:
    """Pause an active, unlocked job. Returns False if the conditions did not hold."""
    stamp = format_ts(now)
    cursor = conn.execute(
        """
        UPDATE scheduled_jobs
        SET status = 'paused', next_run_at = NULL, updated_at = ?
        WHERE id = ? AND status = 'active'
        AND (locked_until IS NULL OR locked_until < ?)
        """,
        (stamp, job_id, stamp),
    )
    return cursor.rowcount > 0


def resume_scheduled_job(
    conn: sqlite3.Connection, job_id: str, next_run_at: datetime, now: datetime,
) -> bool:
    """Reactivate a paused, unlocked job. Failure count is left as is."""
    stamp = format_ts(now)
    cursor = conn.execute(
        """
        UPDATE scheduled_jobs
        SET status = 'active', next_run_at = ?, updated_at = ?
        WHERE id = ? AND status = 'paused'
        AND (locked_until IS NULL OR locked_until < ?)
        """,
        (format_ts(next_run_at), stamp, job_id, stamp),
    )
    return cursor.rowcount > 0


def update_scheduled_job(
    conn: sqlite3.Connection,
    job_id: str,
    fields: dict[str, Any],
    now: datetime,
    next_run_at: datetime | None = None,
) -> bool:
    """Apply column updates to a non-terminal, unlocked job.

    Datetime values are serialized and dict values JSON-encoded. A recomputed
    ``next_run_at`` is only written while the job is active. Returns False
    if the job is locked, terminal, or missing.
    """
    unknown = set(fields) - UPDATABLE_JOB_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update column(s): {', '.join(sorted(unknown))}")
    if not fields and next_run_at is None:
        return get_scheduled_job(conn, job_id) is not None

    assignments = []
    params: list = []
    if next_run_at is not None:
        assignments.append("next_run_at = CASE WHEN status = 'active' THEN ? ELSE next_run_at END")
        params.append(format_ts(next_run_at))
    for column, value in fields.items():
        if isinstance(value, datetime):
            value = format_ts(value)
        elif isinstance(value, dict):
            value = json.dumps(value)
        assignments.append(f"{column} = ?")
        params.append(value)

    stamp = format_ts(now)
    params.extend([stamp, job_id, stamp])
    cursor = conn.execute(
        f"""
        UPDATE scheduled_jobs
        SET {', '.join(assignments)}, updated_at = ?
        WHERE id = ? AND status IN ('active', 'paused')
        AND (locked_until IS NULL OR locked_until < ?)
        """,
        params,
    )
    return cursor.rowcount > 0


# ============================================================================
# Job executions
# ============================================================================


def _row_to_execution(row: sqlite3.Row) -> JobExecution:
    return JobExecution(
        id=row["id"],
        job_id=row["job_id"],
        agent_id=row["agent_id"],
        status=row["status"],
        result=json.loads(row["result"]) if row["result"] else None,
        error=row["error"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def create_job_execution(
    conn: sqlite3.Connection, job_id: str, agent_id: str, now: datetime,
) -> str:
    """Record a running execution and return its ID."""
    execution_id = new_id()
    conn.execute(
        """
        INSERT INTO job_executions (id, job_id, agent_id, status, started_at)
        VALUES (?, ?, ?, 'running', ?)
        """,
        (execution_id, job_id, agent_id, format_ts(now)),
    )
    return execution_id


def finish_job_execution(
    conn: sqlite3.Connection,
    execution_id: str,
    status: str,
    now: datetime,
    result: dict | None = None,
    error: str | None = None,
) -> bool:
    """Move a running execution to a terminal status. No-op if already finished."""
    cursor = conn.execute(
        """
        UPDATE job_executions
        SET status = ?, result = ?, error = ?, completed_at = ?
        WHERE id = ? AND status = 'running'
        """,
        (
            status,
            json.dumps(result) if result is not None else None,
            error,
            format_ts(now),
            execution_id,
        ),
    )
    return cursor.rowcount > 0


def get_job_execution(conn: sqlite3.Connection, execution_id: str) -> JobExecution | None:
    row = conn.execute(
        f"SELECT {_EXECUTION_COLUMNS} FROM job_executions WHERE id = ?",
        (execution_id,),
    ).fetchone()
    return _row_to_execution(row) if row else None


def get_running_execution(conn: sqlite3.Connection, job_id: str) -> JobExecution | None:
    """Most recent execution of a job still marked running (left behind by a crash)."""
    row = conn.execute(
        f"""
        SELECT {_EXECUTION_COLUMNS} FROM job_executions
        WHERE job_id = ? AND status = 'running'
        ORDER BY started_at DESC
        LIMIT 1
        """,
        (job_id,),
    ).fetchone()
    return _row_to_execution(row) if row else None


def list_job_executions(
    conn: sqlite3.Connection, job_id: str, limit: int = 20,
) -> list[JobExecution]:
    """Executions of a job, newest first."""
    cursor = conn.execute(
        f"""
        SELECT {_EXECUTION_COLUMNS} FROM job_executions
        WHERE job_id = ?
        ORDER BY started_at DESC, rowid DESC
        LIMIT ?
        """,
        (job_id, limit),
    )
    return [_row_to_execution(row) for row in cursor.fetchall()]


def get_execution_steps(conn: sqlite3.Connection, execution_id: str) -> dict[str, Any]:
    """Completed step results of an execution, keyed by step name."""
    cursor = conn.execute(
        "SELECT name, result FROM job_execution_steps WHERE execution_id = ?",
        (execution_id,),
    )
    return {
        row["name"]: json.loads(row["result"]) if row["result"] is not None else None
        for row in cursor.fetchall()
    }


def record_execution_step(
    conn: sqlite3.Connection, execution_id: str, name: str, result: Any, now: datetime,
) -> None:
    """Persist a completed step. The first recorded result wins."""
    conn.execute(
        """
        INSERT INTO job_execution_steps (execution_id, name, result, completed_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(execution_id, name) DO NOTHING
        """,
        (execution_id, name, json.dumps(result), format_ts(now)),
    )


# ============================================================================
# Conversations, messages, notifications, activity
# ============================================================================


def _row_to_conversation(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        agent_id=row["agent_id"],
        channel_type=row["channel_type"],
        status=row["status"],
        title=row["title"],
        created_at=row["created_at"],
    )


def create_conversation(
    conn: sqlite3.Connection,
    agent_id: str,
    title: str | None,
    channel_type: str = "app",
    now: datetime | None = None,
) -> str:
    conversation_id = new_id()
    conn.execute(
        """
        INSERT INTO conversations (id, agent_id, channel_type, status, title, created_at)
        VALUES (?, ?, ?, 'active', ?, ?)
        """,
        (conversation_id, agent_id, channel_type, title, format_ts(now or utcnow())),
    )
    return conversation_id


def get_conversation(conn: sqlite3.Connection, conversation_id: str) -> Conversation | None:
    row = conn.execute(
        """
        SELECT id, agent_id, channel_type, status, title, created_at
        FROM conversations WHERE id = ?
        """,
        (conversation_id,),
    ).fetchone()
    return _row_to_conversation(row) if row else None


def get_latest_active_conversation(conn: sqlite3.Connection, agent_id: str) -> Conversation | None:
    row = conn.execute(
        """
        SELECT id, agent_id, channel_type, status, title, created_at
        FROM conversations
        WHERE agent_id = ? AND status = 'active'
        ORDER BY created_at DESC, rowid DESC
        LIMIT 1
        """,
        (agent_id,),
    ).fetchone()
    return _row_to_conversation(row) if row else None


def insert_message(
    conn: sqlite3.Connection,
    conversation_id: str,
    role: str,
    content: str,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> str:
    message_id = new_id()
    conn.execute(
        """
        INSERT INTO messages (id, conversation_id, role, content, metadata, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            message_id,
            conversation_id,
            role,
            content,
            json.dumps(metadata) if metadata is not None else None,
            format_ts(now or utcnow()),
        ),
    )
    return message_id


def get_messages(conn: sqlite3.Connection, conversation_id: str) -> list[Message]:
    """Messages of a conversation in insertion order."""
    cursor = conn.execute(
        """
        SELECT id, conversation_id, role, content, metadata, created_at
        FROM messages WHERE conversation_id = ?
        ORDER BY created_at ASC, rowid ASC
        """,
        (conversation_id,),
    )
    return [
        Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            created_at=row["created_at"],
        )
        for row in cursor.fetchall()
    ]


def insert_notification(
    conn: sqlite3.Connection,
    agent_id: str,
    type: str,
    title: str,
    body: str | None = None,
    link_type: str | None = None,
    link_id: str | None = None,
    now: datetime | None = None,
) -> str:
    notification_id = new_id()
    conn.execute(
        """
        INSERT INTO notifications (id, agent_id, type, title, body, link_type, link_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (notification_id, agent_id, type, title, body, link_type, link_id, format_ts(now or utcnow())),
    )
    return notification_id


def list_notifications(conn: sqlite3.Connection, agent_id: str, limit: int = 50) -> list[dict]:
    cursor = conn.execute(
        """
        SELECT id, agent_id, type, title, body, link_type, link_id, read, created_at
        FROM notifications WHERE agent_id = ?
        ORDER BY created_at DESC, rowid DESC
        LIMIT ?
        """,
        (agent_id, limit),
    )
    return [dict(row) for row in cursor.fetchall()]


def insert_activity(
    conn: sqlite3.Connection,
    agent_id: str,
    activity_type: str,
    title: str,
    source: str | None = None,
    description: str | None = None,
    metadata: dict | None = None,
    job_id: str | None = None,
    conversation_id: str | None = None,
    status: str | None = None,
    now: datetime | None = None,
) -> str:
    activity_id = new_id()
    conn.execute(
        """
        INSERT INTO activity_log (
            id, agent_id, activity_type, source, title, description, metadata,
            job_id, conversation_id, status, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            activity_id,
            agent_id,
            activity_type,
            source,
            title,
            description,
            json.dumps(metadata) if metadata is not None else None,
            job_id,
            conversation_id,
            status,
            format_ts(now or utcnow()),
        ),
    )
    return activity_id


def list_activity(conn: sqlite3.Connection, agent_id: str, limit: int = 50) -> list[dict]:
    cursor = conn.execute(
        """
        SELECT id, agent_id, activity_type, source, title, description, metadata,
               job_id, conversation_id, status, created_at
        FROM activity_log WHERE agent_id = ?
        ORDER BY created_at DESC, rowid DESC
        LIMIT ?
        """,
        (agent_id, limit),
    )
    entries = []
    for row in cursor.fetchall():
        entry = dict(row)
        entry["metadata"] = json.loads(entry["metadata"]) if entry["metadata"] else None
        entries.append(entry)
    return entries


# ============================================================================
# Linked tasks
# ============================================================================


def create_task(
    conn: sqlite3.Connection,
    agent_id: str,
    title: str,
    description: str | None = None,
    status: str = "todo",
    due_date: str | None = None,
) -> str:
    task_id = new_id()
    conn.execute(
        """
        INSERT INTO tasks (id, agent_id, title, description, status, due_date, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (task_id, agent_id, title, description, status, due_date, format_ts(utcnow())),
    )
    return task_id


def get_task(conn: sqlite3.Connection, task_id: str) -> LinkedTask | None:
    row = conn.execute(
        "SELECT id, agent_id, title, description, status, due_date FROM tasks WHERE id = ?",
        (task_id,),
    ).fetchone()
    if not row:
        return None
    return LinkedTask(
        id=row["id"],
        agent_id=row["agent_id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        due_date=row["due_date"],
    )

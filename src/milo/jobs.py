"""Scheduled job lifecycle.

States: active <-> paused, active -> completed, active/paused -> cancelled.
The dispatcher owns a job while its lease (``locked_until``) is in the future;
during that window only the owner writes run bookkeeping and the only
concurrent change allowed is cancellation, which is never undone.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone

from . import db
from .actions import ACTION_TYPES, ActionExecutionError, parse_action_payload
from .cron import SCHEDULE_TYPES, ScheduleParseError, next_run, resolve_timezone
from .db import LockContention, ScheduledJob
from .failure_policy import FailurePolicy

logger = logging.getLogger("milo.jobs")

JOB_TYPES = ("reminder", "follow_up", "recurring", "one_time")
TERMINAL_STATUSES = ("completed", "cancelled")


class JobStateError(Exception):
    """Unknown job, or an operation not allowed in the job's current status."""


@dataclass
class JobSpec:
    """Everything needed to create a job."""
    agent_id: str
    title: str
    action_type: str
    schedule_type: str
    action_payload: dict = field(default_factory=dict)
    job_type: str = "one_time"
    run_at: datetime | None = None
    cron_expression: str | None = None
    timezone: str = "UTC"
    description: str | None = None
    max_runs: int | None = None
    task_id: str | None = None
    project_id: str | None = None
    conversation_id: str | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: str | datetime) -> datetime:
    """Parse an ISO-8601 datetime. Values without an offset are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ScheduleParseError(
                f"Invalid datetime format: {value}. Use ISO format like '2026-01-31T20:00:00Z'"
            ) from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _require_job(conn: sqlite3.Connection, job_id: str) -> ScheduledJob:
    job = db.get_scheduled_job(conn, job_id)
    if job is None:
        raise JobStateError(f"Scheduled job not found: {job_id}")
    return job


def _validate_spec(spec: JobSpec) -> None:
    if spec.job_type not in JOB_TYPES:
        raise ValueError(f"Unknown job type: {spec.job_type!r}")
    if spec.action_type not in ACTION_TYPES:
        raise ValueError(f"Unknown action type: {spec.action_type!r}")
    if spec.schedule_type not in SCHEDULE_TYPES:
        raise ScheduleParseError(f"Unknown schedule type: {spec.schedule_type!r}")
    if spec.max_runs is not None and spec.max_runs < 1:
        raise ValueError("max_runs must be at least 1")
    try:
        parse_action_payload(spec.action_type, spec.action_payload)
    except ActionExecutionError as e:
        raise ValueError(str(e)) from e


def create_job(
    conn: sqlite3.Connection,
    spec: JobSpec,
    now: datetime | None = None,
    use_job_timezone: bool = True,
) -> ScheduledJob:
    """Validate and insert a new active job.

    Raises ScheduleParseError (or ValueError for bad types/payloads) before
    anything is written.
    """
    now = now or _now()
    _validate_spec(spec)
    resolve_timezone(spec.timezone)

    run_at = parse_datetime(spec.run_at) if spec.run_at is not None else None
    first_run = next_run(
        spec.schedule_type,
        run_at=run_at,
        cron_expression=spec.cron_expression,
        timezone_name=spec.timezone,
        from_time=now,
        use_job_timezone=use_job_timezone,
    )

    job_id = db.insert_scheduled_job(
        conn,
        agent_id=spec.agent_id,
        title=spec.title,
        job_type=spec.job_type,
        action_type=spec.action_type,
        action_payload=spec.action_payload,
        schedule_type=spec.schedule_type,
        next_run_at=first_run,
        now=now,
        run_at=run_at,
        cron_expression=spec.cron_expression if spec.schedule_type == "cron" else None,
        timezone_name=spec.timezone,
        description=spec.description,
        max_runs=spec.max_runs,
        task_id=spec.task_id,
        project_id=spec.project_id,
        conversation_id=spec.conversation_id,
    )
    logger.info(
        "Scheduled %s job %s (%r), first run %s",
        spec.schedule_type, job_id, spec.title, db.format_ts(first_run),
    )
    return _require_job(conn, job_id)


def mark_executed(
    conn: sqlite3.Connection,
    job: ScheduledJob,
    now: datetime | None = None,
    use_job_timezone: bool = True,
) -> None:
    """Record a successful run and schedule the next one (or complete the job)."""
    now = now or _now()
    status = "active"
    upcoming: datetime | None = None

    if job.schedule_type == "once":
        status = "completed"
    elif job.max_runs is not None and job.run_count + 1 >= job.max_runs:
        status = "completed"
        logger.info("Job %s reached max_runs=%d, completing", job.id, job.max_runs)
    else:
        try:
            upcoming = next_run(
                "cron",
                cron_expression=job.cron_expression,
                timezone_name=job.timezone,
                from_time=now,
                use_job_timezone=use_job_timezone,
            )
        except ScheduleParseError as e:
            logger.warning("Job %s has no further occurrence, completing: %s", job.id, e)
            status = "completed"

    db.record_job_success(conn, job.id, now, status, upcoming)


def mark_failed(
    conn: sqlite3.Connection,
    job: ScheduledJob,
    error: str,
    now: datetime | None = None,
    policy: FailurePolicy | None = None,
) -> bool:
    """Record a failed run and apply backoff. Returns True if the job was paused."""
    now = now or _now()
    policy = policy or FailurePolicy()
    failures = job.consecutive_failures + 1
    decision = policy.evaluate(failures)

    if decision.pause:
        logger.warning(
            "Job %s (%r) paused after %d consecutive failures: %s",
            job.id, job.title, failures, error,
        )
        db.record_job_failure(conn, job.id, now, error, failures, "paused", None)
    else:
        retry_at = now + decision.retry_delay
        logger.warning(
            "Job %s (%r) failed (%d consecutive), retrying at %s: %s",
            job.id, job.title, failures, db.format_ts(retry_at), error,
        )
        db.record_job_failure(conn, job.id, now, error, failures, "active", retry_at)
    return decision.pause


def cancel_job(conn: sqlite3.Connection, job_id: str, now: datetime | None = None) -> bool:
    """Cancel a job. Returns False if it was already completed or cancelled.

    Allowed while an execution is in flight; that execution finishes but the
    job is never scheduled again.
    """
    _require_job(conn, job_id)
    cancelled = db.cancel_scheduled_job(conn, job_id, now or _now())
    if cancelled:
        logger.info("Cancelled job %s", job_id)
    return cancelled


def _raise_rejected(conn: sqlite3.Connection, job_id: str, now: datetime, action: str) -> None:
    job = _require_job(conn, job_id)
    if job.is_locked(now):
        raise LockContention(f"Job {job_id} is running; cannot {action} until it finishes")
    raise JobStateError(f"Cannot {action} job {job_id} in status {job.status!r}")


def pause_job(conn: sqlite3.Connection, job_id: str, now: datetime | None = None) -> ScheduledJob:
    now = now or _now()
    if not db.pause_scheduled_job(conn, job_id, now):
        _raise_rejected(conn, job_id, now, "pause")
    logger.info("Paused job %s", job_id)
    return _require_job(conn, job_id)


def resume_job(
    conn: sqlite3.Connection,
    job_id: str,
    now: datetime | None = None,
    use_job_timezone: bool = True,
) -> ScheduledJob:
    """Reactivate a paused job.

    The consecutive-failure count is kept, so a job paused by the failure
    policy is paused again by its next failure; a success resets it.
    """
    now = now or _now()
    job = _require_job(conn, job_id)
    if job.status != "paused":
        raise JobStateError(f"Cannot resume job {job_id} in status {job.status!r}")

    upcoming = next_run(
        job.schedule_type,
        run_at=db.parse_ts(job.run_at),
        cron_expression=job.cron_expression,
        timezone_name=job.timezone,
        from_time=now,
        use_job_timezone=use_job_timezone,
    )
    if not db.resume_scheduled_job(conn, job_id, upcoming, now):
        _raise_rejected(conn, job_id, now, "resume")
    logger.info("Resumed job %s, next run %s", job_id, db.format_ts(upcoming))
    return _require_job(conn, job_id)


def update_job(
    conn: sqlite3.Connection,
    job_id: str,
    fields: dict,
    now: datetime | None = None,
    use_job_timezone: bool = True,
) -> ScheduledJob:
    """Change a job's description, payload or schedule.

    Schedule changes recompute ``next_run_at`` for active jobs; paused jobs
    pick up the new schedule when resumed.

    Raises:
        JobStateError: unknown job, or job already completed/cancelled.
        LockContention: the job is running.
        ScheduleParseError: the new schedule is invalid.
    """
    now = now or _now()
    job = _require_job(conn, job_id)
    if job.status in TERMINAL_STATUSES:
        raise JobStateError(f"Cannot update job {job_id} in status {job.status!r}")

    updates = dict(fields)
    if "next_run_at" in updates:
        raise ValueError("next_run_at is derived from the schedule and cannot be set directly")
    if "max_runs" in updates and updates["max_runs"] is not None and updates["max_runs"] < 1:
        raise ValueError("max_runs must be at least 1")
    if "run_at" in updates:
        if job.schedule_type != "once":
            raise ScheduleParseError("run_at applies to one-time jobs only")
        updates["run_at"] = parse_datetime(updates["run_at"])
    if "cron_expression" in updates and job.schedule_type != "cron":
        raise ScheduleParseError("cron_expression applies to cron jobs only")
    if "timezone" in updates:
        resolve_timezone(updates["timezone"])
    if "action_payload" in updates:
        try:
            parse_action_payload(job.action_type, updates["action_payload"])
        except ActionExecutionError as e:
            raise ValueError(str(e)) from e

    upcoming = None
    if {"run_at", "cron_expression", "timezone"} & updates.keys():
        upcoming = next_run(
            job.schedule_type,
            run_at=updates.get("run_at") or db.parse_ts(job.run_at),
            cron_expression=updates.get("cron_expression", job.cron_expression),
            timezone_name=updates.get("timezone", job.timezone),
            from_time=now,
            use_job_timezone=use_job_timezone,
        )

    if not db.update_scheduled_job(conn, job_id, updates, now, next_run_at=upcoming):
        _raise_rejected(conn, job_id, now, "update")
    logger.info("Updated job %s: %s", job_id, ", ".join(sorted(fields)) or "no changes")
    return _require_job(conn, job_id)


def get_job(conn: sqlite3.Connection, job_id: str) -> ScheduledJob | None:
    return db.get_scheduled_job(conn, job_id)


def list_jobs(
    conn: sqlite3.Connection,
    agent_id: str | None = None,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 50,
) -> list[ScheduledJob]:
    return db.list_scheduled_jobs(conn, agent_id=agent_id, status=status, job_type=job_type, limit=limit)


def list_executions(conn: sqlite3.Connection, job_id: str, limit: int = 20) -> list[db.JobExecution]:
    return db.list_job_executions(conn, job_id, limit=limit)


# ============================================================================
# Scheduling helpers used by the assistant's tools
# ============================================================================


def _schedule_kind(run_at, cron_expression) -> str:
    if not run_at and not cron_expression:
        raise ScheduleParseError(
            "Must provide either run_at for a one-time job or cron_expression for a recurring job"
        )
    if run_at and cron_expression:
        raise ScheduleParseError("Provide only one of run_at or cron_expression")
    return "once" if run_at else "cron"


def schedule_reminder(
    conn: sqlite3.Connection,
    agent_id: str,
    title: str,
    message: str | None = None,
    run_at: str | datetime | None = None,
    cron_expression: str | None = None,
    timezone_name: str = "UTC",
    preferred_channel: str = "app",
    task_id: str | None = None,
    project_id: str | None = None,
    now: datetime | None = None,
    use_job_timezone: bool = True,
) -> ScheduledJob:
    """One-time reminder (``run_at``) or recurring reminder (``cron_expression``)."""
    kind = _schedule_kind(run_at, cron_expression)
    spec = JobSpec(
        agent_id=agent_id,
        title=title,
        description=message,
        job_type="reminder" if kind == "once" else "recurring",
        action_type="notify",
        action_payload={"message": message or title, "preferred_channel": preferred_channel},
        schedule_type=kind,
        run_at=parse_datetime(run_at) if run_at else None,
        cron_expression=cron_expression,
        timezone=timezone_name,
        task_id=task_id,
        project_id=project_id,
    )
    return create_job(conn, spec, now=now, use_job_timezone=use_job_timezone)


def schedule_agent_task(
    conn: sqlite3.Connection,
    agent_id: str,
    title: str,
    instruction: str,
    run_at: str | datetime | None = None,
    cron_expression: str | None = None,
    timezone_name: str = "UTC",
    preferred_channel: str = "app",
    task_id: str | None = None,
    project_id: str | None = None,
    max_runs: int | None = None,
    now: datetime | None = None,
    use_job_timezone: bool = True,
) -> ScheduledJob:
    """Have the agent carry out ``instruction`` once or on a recurring schedule."""
    kind = _schedule_kind(run_at, cron_expression)
    spec = JobSpec(
        agent_id=agent_id,
        title=title,
        description=instruction,
        job_type="one_time" if kind == "once" else "recurring",
        action_type="agent_task",
        action_payload={"instruction": instruction, "preferred_channel": preferred_channel},
        schedule_type=kind,
        run_at=parse_datetime(run_at) if run_at else None,
        cron_expression=cron_expression,
        timezone=timezone_name,
        max_runs=max_runs,
        task_id=task_id,
        project_id=project_id,
    )
    return create_job(conn, spec, now=now, use_job_timezone=use_job_timezone)


def schedule_follow_up(
    conn: sqlite3.Connection,
    agent_id: str,
    task_id: str,
    reason: str,
    check_at: str | datetime,
    instruction: str | None = None,
    now: datetime | None = None,
) -> ScheduledJob:
    """Check back on a task at ``check_at`` (e.g. waiting for an email reply)."""
    check_time = parse_datetime(check_at)
    task = db.get_task(conn, task_id)
    if task is None or task.agent_id != agent_id:
        raise JobStateError(f"Task not found: {task_id}")

    spec = JobSpec(
        agent_id=agent_id,
        title=f"Follow-up: {task.title}",
        description=reason,
        job_type="follow_up",
        action_type="agent_task",
        action_payload={
            "instruction": instruction or f'Follow up on task "{task.title}": {reason}',
            "task_id": task_id,
        },
        schedule_type="once",
        run_at=check_time,
        task_id=task_id,
    )
    return create_job(conn, spec, now=now)

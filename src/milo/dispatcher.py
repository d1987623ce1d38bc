"""Dispatch cycle: find due jobs, claim them, run their actions, record outcomes.

A cycle is safe to run while other cycles are in flight. The only
coordination is the atomic claim in ``db.claim_job``: a job whose lease is
held elsewhere is skipped, and the lease is released by writing the run's
outcome.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx

from . import db, jobs
from .actions import ActionContext, ActionResult, execute_action
from .agent import AgentExecutor, ClaudeCodeAgent
from .config import Config
from .db import ScheduledJob
from .failure_policy import FailurePolicy
from .logging_setup import job_context
from .messaging import DatabaseMessenger, Messenger

logger = logging.getLogger("milo.dispatcher")

RESUMABLE_ACTIONS = ("agent_task",)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobOutcome:
    job_id: str
    title: str
    success: bool
    error: str | None = None
    status: str | None = None  # "running" when still in flight at the end of the cycle budget

    def to_dict(self) -> dict:
        entry = {"jobId": self.job_id, "title": self.title, "success": self.success}
        if self.error is not None:
            entry["error"] = self.error
        if self.status is not None:
            entry["status"] = self.status
        return entry


@dataclass
class DispatchSummary:
    timestamp: datetime
    due_count: int = 0
    processed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    running_count: int = 0
    results: list[JobOutcome] = field(default_factory=list)

    @property
    def message(self) -> str:
        return "No jobs due" if self.due_count == 0 else "Dispatch cycle completed"

    def add(self, outcome: JobOutcome | None) -> None:
        if outcome is None:
            self.skipped_count += 1
            return
        self.processed_count += 1
        if outcome.status == "running":
            # Outcome unknown yet; the job reconciles itself when it finishes
            self.running_count += 1
        elif outcome.success:
            self.success_count += 1
        else:
            self.failure_count += 1
        self.results.append(outcome)

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "processedCount": self.processed_count,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "skippedCount": self.skipped_count,
            "runningCount": self.running_count,
            "results": [r.to_dict() for r in self.results],
            "timestamp": db.format_ts(self.timestamp),
        }


def job_summary(job: ScheduledJob) -> dict:
    """Compact view of a job for inspection output."""
    return {
        "id": job.id,
        "agentId": job.agent_id,
        "title": job.title,
        "jobType": job.job_type,
        "actionType": job.action_type,
        "scheduleType": job.schedule_type,
        "cronExpression": job.cron_expression,
        "nextRunAt": job.next_run_at,
        "lockedUntil": job.locked_until,
        "consecutiveFailures": job.consecutive_failures,
        "runCount": job.run_count,
    }


def inspect_due_jobs(conn, now: datetime | None = None, limit: int = 50) -> list[ScheduledJob]:
    """What the next cycle would pick up. Read-only: nothing is claimed."""
    return db.get_due_jobs(conn, now or _now(), limit=limit)


class Dispatcher:
    """Runs dispatch cycles against one database.

    Collaborators default to the production implementations built from
    ``config``; tests inject their own. ``clock`` supplies the completion
    time used for run bookkeeping.
    """

    def __init__(
        self,
        config: Config,
        messenger: Messenger | None = None,
        agent: AgentExecutor | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], datetime] = _now,
    ):
        self.config = config
        self.messenger = messenger or DatabaseMessenger(config.db_path, config.ntfy, http_client)
        self.agent = agent or ClaudeCodeAgent(config.agent)
        self.http_client = http_client
        self.policy = FailurePolicy.from_config(config.failure_policy)
        self.clock = clock
        self._pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()

    @property
    def lease(self) -> timedelta:
        return timedelta(minutes=self.config.dispatcher.lease_minutes)

    @property
    def use_job_timezone(self) -> bool:
        return self.config.dispatcher.cron_in_job_timezone

    def due_jobs(self, now: datetime) -> list[ScheduledJob]:
        with db.get_db(self.config.db_path) as conn:
            return db.get_due_jobs(conn, now, limit=self.config.dispatcher.due_job_limit)

    def run_cycle(self, now: datetime | None = None) -> DispatchSummary:
        """Process every due job in order, one at a time."""
        now = now or self.clock()
        due = self.due_jobs(now)
        summary = DispatchSummary(timestamp=now, due_count=len(due))
        if not due:
            logger.debug("No jobs due at %s", db.format_ts(now))
            return summary

        logger.info("Dispatch cycle: %d job(s) due", len(due))
        for job in due:
            summary.add(self._process_guarded(job, now))
        self._log_summary(summary)
        return summary

    def run_cycle_concurrent(self, now: datetime | None = None) -> DispatchSummary:
        """Process due jobs on the worker pool, waiting at most the cycle budget.

        Jobs still running when the budget runs out keep their lease and
        record their own outcome when they finish; they are reported with
        ``success: False, status: "running"`` and counted in ``running_count``
        only.
        """
        now = now or self.clock()
        due = self.due_jobs(now)
        summary = DispatchSummary(timestamp=now, due_count=len(due))
        if not due:
            logger.debug("No jobs due at %s", db.format_ts(now))
            return summary

        pool = self._get_pool()
        futures: list[tuple[ScheduledJob, Future]] = [
            (job, pool.submit(self._process_guarded, job, now)) for job in due
        ]
        wait([f for _, f in futures], timeout=self.config.dispatcher.cycle_budget_seconds)

        for job, future in futures:
            if future.done():
                summary.add(future.result())
            else:
                logger.info("Job %s still running at end of cycle budget", job.id)
                summary.add(JobOutcome(job.id, job.title, success=False, status="running"))
        self._log_summary(summary)
        return summary

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=max(1, self.config.dispatcher.max_workers),
                    thread_name_prefix="milo-job",
                )
            return self._pool

    def _log_summary(self, summary: DispatchSummary) -> None:
        logger.info(
            "Dispatch cycle completed: processed=%d success=%d failed=%d skipped=%d",
            summary.processed_count, summary.success_count,
            summary.failure_count, summary.skipped_count,
        )

    def _process_guarded(self, job: ScheduledJob, now: datetime) -> JobOutcome | None:
        try:
            return self.process_job(job, now)
        except Exception as e:
            logger.exception("Failed to dispatch job %s", job.id)
            return JobOutcome(job.id, job.title, success=False, error=str(e) or type(e).__name__)

    def process_job(self, job: ScheduledJob, now: datetime) -> JobOutcome | None:
        """Claim, execute and reconcile one job. Returns None if another cycle owns it."""
        with db.get_db(self.config.db_path) as conn:
            claimed = db.claim_job(conn, job.id, now, self.lease)
        if claimed is None:
            logger.debug("Job %s already claimed elsewhere, skipping", job.id)
            return None

        with job_context(claimed.id):
            return self._run_claimed(claimed, now)

    def _run_claimed(self, claimed: ScheduledJob, now: datetime) -> JobOutcome:
        # The lease is committed; any fault from here on must release it early
        execution_id = None
        try:
            with db.get_db(self.config.db_path) as conn:
                execution_id = self._open_execution(conn, claimed, now)
            logger.info(
                "Claimed job %s (%r, %s) as execution %s",
                claimed.id, claimed.title, claimed.action_type, execution_id,
            )

            with job_context(claimed.id, execution_id):
                result = self._execute(claimed, execution_id)
        except Exception as e:
            logger.exception("Unexpected error while running job %s", claimed.id)
            self._release_after_fault(claimed, execution_id, str(e) or type(e).__name__)
            return JobOutcome(claimed.id, claimed.title, success=False, error=str(e) or type(e).__name__)

        if result.success:
            logger.info("Job %s completed", claimed.id)
        return JobOutcome(claimed.id, claimed.title, success=result.success, error=result.error)

    def _execute(self, claimed: ScheduledJob, execution_id: str) -> ActionResult:
        """Run the action and write its outcome to the job and the execution."""
        ctx = ActionContext(
            config=self.config,
            messenger=self.messenger,
            agent=self.agent,
            execution_id=execution_id,
            http_client=self.http_client,
        )
        result = execute_action(claimed, ctx)
        finished = self.clock()

        with db.get_db(self.config.db_path) as conn:
            if result.success:
                jobs.mark_executed(conn, claimed, finished, self.use_job_timezone)
                db.finish_job_execution(conn, execution_id, "success", finished, result=result.data)
            else:
                error = result.error or "Unknown error"
                jobs.mark_failed(conn, claimed, error, finished, self.policy)
                db.finish_job_execution(conn, execution_id, "failed", finished, error=error)
        return result

    def _open_execution(self, conn, job: ScheduledJob, now: datetime) -> str:
        """Execution record for this run, re-entering an interrupted one where possible."""
        orphan = db.get_running_execution(conn, job.id)
        if orphan is not None:
            if job.action_type in RESUMABLE_ACTIONS:
                logger.info("Resuming interrupted execution %s of job %s", orphan.id, job.id)
                return orphan.id
            db.finish_job_execution(
                conn, orphan.id, "skipped", now,
                error="Superseded by a new execution after an interrupted run",
            )
            logger.warning("Execution %s of job %s was interrupted; marked skipped", orphan.id, job.id)
        return db.create_job_execution(conn, job.id, job.agent_id, now)

    def _release_after_fault(self, job: ScheduledJob, execution_id: str | None, error: str) -> None:
        """Retry soon instead of waiting out the full lease. Failures are not counted.

        ``execution_id`` is None when the fault happened before the execution
        record existed.
        """
        retry_at = self.clock() + timedelta(minutes=self.config.dispatcher.unlock_retry_minutes)
        try:
            with db.get_db(self.config.db_path) as conn:
                db.shorten_job_lock(conn, job.id, retry_at)
                if execution_id is not None:
                    db.finish_job_execution(conn, execution_id, "failed", self.clock(), error=error)
        except Exception:
            logger.exception("Could not release job %s after fault; lease expires normally", job.id)
        else:
            logger.warning("Job %s lock shortened to %s after fault", job.id, db.format_ts(retry_at))


def run_dispatch_cycle(config: Config, now: datetime | None = None, **kwargs) -> DispatchSummary:
    """Run one sequential cycle with default collaborators."""
    return Dispatcher(config, **kwargs).run_cycle(now)

"""Tests for milo.dispatcher (dispatch cycles)."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from milo import db, jobs
from milo.config import DispatcherConfig
from milo.dispatcher import DispatchSummary, Dispatcher, JobOutcome, inspect_due_jobs, run_dispatch_cycle


def utc(year, month, day, hour=0, minute=0, second=0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


NOW = utc(2026, 3, 2, 10, 0)


class SimClock:
    """Settable clock shared by the dispatcher and the test."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeAgent:
    def __init__(self, response="Done.", on_run=None):
        self.response = response
        self.on_run = on_run
        self.calls = 0

    def run(self, system_prompt, prompt, tools, max_steps):
        self.calls += 1
        if self.on_run:
            self.on_run()
        return self.response


@pytest.fixture
def clock():
    return SimClock(NOW)


@pytest.fixture
def make_dispatcher(make_config, clock):
    def _make_dispatcher(agent=None, **config_overrides):
        return Dispatcher(make_config(**config_overrides), agent=agent or FakeAgent(), clock=clock)
    return _make_dispatcher


def _executions(db_path, job_id):
    with db.get_db(db_path) as conn:
        return sorted(db.list_job_executions(conn, job_id), key=lambda e: e.started_at)


def _job(db_path, job_id):
    with db.get_db(db_path) as conn:
        return db.get_scheduled_job(conn, job_id)


class TestEndToEnd:
    def test_every_five_minutes_with_half_minute_trigger(self, db_path, make_job, make_dispatcher, clock):
        job = make_job(now=utc(2026, 3, 2, 9, 59, 30))
        dispatcher = make_dispatcher()

        tick = NOW
        while tick <= utc(2026, 3, 2, 10, 15, 30):
            clock.now = tick
            dispatcher.run_cycle(tick)
            tick += timedelta(seconds=30)

        executions = _executions(db_path, job.id)
        assert [e.started_at for e in executions] == [
            "2026-03-02T10:00:00+00:00",
            "2026-03-02T10:05:00+00:00",
            "2026-03-02T10:10:00+00:00",
            "2026-03-02T10:15:00+00:00",
        ]
        assert all(e.status == "success" for e in executions)

        after = _job(db_path, job.id)
        assert after.run_count == 4
        assert after.next_run_at == "2026-03-02T10:20:00+00:00"
        assert after.locked_until is None

    def test_once_job_runs_once(self, db_path, make_job, make_dispatcher, clock):
        job = make_job(schedule_type="once", job_type="reminder", cron_expression=None, run_at=NOW)
        dispatcher = make_dispatcher()
        for minutes in range(3):
            clock.now = NOW + timedelta(minutes=minutes)
            dispatcher.run_cycle(clock.now)

        assert len(_executions(db_path, job.id)) == 1
        assert _job(db_path, job.id).status == "completed"


class TestRunCycle:
    def test_no_jobs_due(self, make_dispatcher):
        summary = make_dispatcher().run_cycle(NOW)
        assert summary.message == "No jobs due"
        assert summary.to_dict() == {
            "message": "No jobs due",
            "processedCount": 0,
            "successCount": 0,
            "failureCount": 0,
            "skippedCount": 0,
            "results": [],
            "timestamp": "2026-03-02T10:00:00+00:00",
        }

    def test_summary_counts(self, insert_job, make_dispatcher):
        ok = insert_job(NOW - timedelta(minutes=2), title="ok")
        bad = insert_job(NOW - timedelta(minutes=1), title="bad", action_type="carrier_pigeon")
        insert_job(NOW + timedelta(minutes=1), title="later")

        summary = make_dispatcher().run_cycle(NOW)
        assert summary.message == "Dispatch cycle completed"
        assert (summary.processed_count, summary.success_count, summary.failure_count) == (2, 1, 1)
        assert [r.to_dict() for r in summary.results] == [
            {"jobId": ok.id, "title": "ok", "success": True},
            {"jobId": bad.id, "title": "bad", "success": False, "error": "Unknown action type: carrier_pigeon"},
        ]

    def test_job_claimed_elsewhere_is_skipped(self, db_path, insert_job, make_dispatcher):
        job = insert_job(NOW)
        dispatcher = make_dispatcher()
        with db.get_db(db_path) as conn:
            db.claim_job(conn, job.id, NOW, timedelta(minutes=30))

        with patch.object(dispatcher, "due_jobs", return_value=[job]):
            summary = dispatcher.run_cycle(NOW)

        assert summary.skipped_count == 1
        assert summary.processed_count == 0
        assert _executions(db_path, job.id) == []

    def test_process_job_twice_runs_once(self, db_path, insert_job, make_dispatcher):
        job = insert_job(NOW)
        dispatcher = make_dispatcher()
        assert dispatcher.process_job(job, NOW).success is True
        assert dispatcher.process_job(job, NOW) is None
        assert len(_executions(db_path, job.id)) == 1

    def test_run_dispatch_cycle(self, db_path, insert_job, make_config, clock):
        job = insert_job(NOW)
        summary = run_dispatch_cycle(make_config(), NOW, agent=FakeAgent(), clock=clock)
        assert summary.success_count == 1
        assert _job(db_path, job.id).status == "completed"


class TestFailures:
    def test_three_failures_pause_the_job(self, db_path, insert_job, make_dispatcher, clock):
        job = insert_job(NOW, action_type="carrier_pigeon")
        dispatcher = make_dispatcher()

        dispatcher.run_cycle(NOW)
        after = _job(db_path, job.id)
        assert after.consecutive_failures == 1
        assert after.next_run_at == "2026-03-02T10:05:00+00:00"

        # Not due again before the backoff expires
        clock.now = NOW + timedelta(minutes=4)
        assert dispatcher.run_cycle(clock.now).due_count == 0

        clock.now = NOW + timedelta(minutes=5)
        dispatcher.run_cycle(clock.now)
        after = _job(db_path, job.id)
        assert after.consecutive_failures == 2
        assert after.next_run_at == "2026-03-02T10:20:00+00:00"

        clock.now = NOW + timedelta(minutes=20)
        dispatcher.run_cycle(clock.now)
        after = _job(db_path, job.id)
        assert after.status == "paused"
        assert after.next_run_at is None
        assert after.consecutive_failures == 3

        executions = _executions(db_path, job.id)
        assert [e.status for e in executions] == ["failed", "failed", "failed"]
        assert executions[0].error == "Unknown action type: carrier_pigeon"

    def test_unexpected_fault_shortens_lock_without_counting(self, db_path, make_job, make_dispatcher, clock):
        job = make_job()
        dispatcher = make_dispatcher()

        with patch("milo.jobs.mark_executed", side_effect=RuntimeError("disk full")):
            summary = dispatcher.run_cycle(NOW)

        assert summary.failure_count == 1
        assert summary.results[0].error == "disk full"

        after = _job(db_path, job.id)
        assert after.consecutive_failures == 0
        assert after.status == "active"
        assert after.next_run_at == "2026-03-02T10:00:00+00:00"
        assert after.locked_until == "2026-03-02T10:05:00+00:00"

        execution = _executions(db_path, job.id)[0]
        assert execution.status == "failed"
        assert execution.error == "disk full"

        clock.now = NOW + timedelta(minutes=4)
        assert dispatcher.run_cycle(clock.now).due_count == 0

        clock.now = NOW + timedelta(minutes=6)
        summary = dispatcher.run_cycle(clock.now)
        assert summary.success_count == 1
        assert _job(db_path, job.id).next_run_at == "2026-03-02T10:10:00+00:00"

    def test_fault_before_claim_is_reported(self, insert_job, make_dispatcher):
        insert_job(NOW)
        dispatcher = make_dispatcher()
        with patch("milo.db.claim_job", side_effect=RuntimeError("locked database")):
            summary = dispatcher.run_cycle(NOW)
        assert summary.failure_count == 1
        assert summary.results[0].error == "locked database"

    def test_fault_opening_execution_releases_lease(self, db_path, make_job, make_dispatcher, clock):
        job = make_job()
        dispatcher = make_dispatcher()

        with patch("milo.db.create_job_execution", side_effect=RuntimeError("disk full")):
            summary = dispatcher.run_cycle(NOW)

        assert summary.failure_count == 1
        assert summary.results[0].error == "disk full"
        after = _job(db_path, job.id)
        assert after.locked_until == "2026-03-02T10:05:00+00:00"
        assert after.consecutive_failures == 0
        assert _executions(db_path, job.id) == []

        clock.now = NOW + timedelta(minutes=6)
        assert dispatcher.run_cycle(clock.now).success_count == 1


class TestCancellationDuringRun:
    def test_cancel_mid_run_wins(self, db_path, insert_job, make_dispatcher):
        job = insert_job(
            NOW, schedule_type="cron", job_type="recurring", run_at=None, cron_expression="*/5 * * * *",
            action_type="agent_task", action_payload={"instruction": "Tidy up"},
        )

        def _cancel():
            with db.get_db(db_path) as conn:
                jobs.cancel_job(conn, job.id, now=NOW)

        summary = make_dispatcher(agent=FakeAgent(on_run=_cancel)).run_cycle(NOW)
        assert summary.success_count == 1

        after = _job(db_path, job.id)
        assert after.status == "cancelled"
        assert after.next_run_at is None
        assert _executions(db_path, job.id)[0].status == "success"


class TestInterruptedExecutions:
    def test_agent_task_resumes_interrupted_execution(self, db_path, insert_job, make_dispatcher):
        job = insert_job(NOW, title="Resume", action_type="agent_task", action_payload={"instruction": "x"})
        with db.get_db(db_path) as conn:
            orphan = db.create_job_execution(conn, job.id, job.agent_id, NOW - timedelta(minutes=40))
            conversation_id = db.create_conversation(conn, job.agent_id, "Scheduled: Resume")
            db.record_execution_step(conn, orphan, "create_conversation", conversation_id, NOW)
            db.record_execution_step(conn, orphan, "save_user_message", "m1", NOW)
            db.record_execution_step(conn, orphan, "run_agent", "Recovered answer", NOW)

        agent = FakeAgent()
        summary = make_dispatcher(agent=agent).run_cycle(NOW)

        assert summary.success_count == 1
        assert agent.calls == 0
        executions = _executions(db_path, job.id)
        assert [(e.id, e.status) for e in executions] == [(orphan, "success")]
        assert executions[0].result["response"] == "Recovered answer"

    def test_other_actions_skip_interrupted_execution(self, db_path, insert_job, make_dispatcher):
        job = insert_job(NOW)
        with db.get_db(db_path) as conn:
            orphan = db.create_job_execution(conn, job.id, job.agent_id, NOW - timedelta(minutes=40))

        make_dispatcher().run_cycle(NOW)

        executions = _executions(db_path, job.id)
        assert [(e.id, e.status) for e in executions][0] == (orphan, "skipped")
        assert executions[1].status == "success"
        assert len(executions) == 2


class TestConcurrentCycle:
    def test_processes_all_due_jobs(self, insert_job, make_dispatcher):
        for i in range(3):
            insert_job(NOW, title=f"job {i}")
        dispatcher = make_dispatcher()
        try:
            summary = dispatcher.run_cycle_concurrent(NOW)
        finally:
            dispatcher.close()
        assert summary.processed_count == 3
        assert summary.success_count == 3

    def test_job_past_budget_reported_running(self, db_path, insert_job, make_dispatcher):
        started = threading.Event()
        release = threading.Event()

        def _block():
            started.set()
            release.wait(10)

        job = insert_job(NOW, title="slow", action_type="agent_task", action_payload={"instruction": "x"})
        dispatcher = make_dispatcher(
            agent=FakeAgent(on_run=_block),
            dispatcher=DispatcherConfig(cycle_budget_seconds=0),
        )

        try:
            summary = dispatcher.run_cycle_concurrent(NOW)
            assert summary.to_dict()["results"] == [
                {"jobId": job.id, "title": "slow", "success": False, "status": "running"},
            ]
            assert (summary.success_count, summary.failure_count, summary.running_count) == (0, 0, 1)
            assert summary.to_dict()["runningCount"] == 1
            assert started.wait(5)
            assert _job(db_path, job.id).locked_until is not None
        finally:
            release.set()
            dispatcher.close()

        after = _job(db_path, job.id)
        assert after.status == "completed"
        assert after.locked_until is None
        assert _executions(db_path, job.id)[0].status == "success"

    def test_concurrent_dispatchers_run_each_job_once(self, db_path, insert_job, make_config, clock):
        ids = [insert_job(NOW, title=f"job {i}").id for i in range(5)]
        dispatchers = [Dispatcher(make_config(), agent=FakeAgent(), clock=clock) for _ in range(3)]
        barrier = threading.Barrier(len(dispatchers))
        summaries = []

        def _cycle(dispatcher):
            barrier.wait()
            summaries.append(dispatcher.run_cycle(NOW))

        threads = [threading.Thread(target=_cycle, args=(d,)) for d in dispatchers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(s.processed_count for s in summaries) == 5
        for job_id in ids:
            assert len(_executions(db_path, job_id)) == 1


class TestInspect:
    def test_inspect_claims_nothing(self, db_conn, insert_job):
        due = insert_job(NOW - timedelta(minutes=1))
        insert_job(NOW + timedelta(minutes=1))

        found = inspect_due_jobs(db_conn, NOW)
        assert [j.id for j in found] == [due.id]
        assert db.get_scheduled_job(db_conn, due.id).locked_until is None


class TestSummary:
    def test_add_counts(self):
        summary = DispatchSummary(timestamp=NOW, due_count=3)
        summary.add(JobOutcome("a", "A", success=True))
        summary.add(JobOutcome("b", "B", success=False, error="x"))
        summary.add(None)
        assert (summary.processed_count, summary.success_count, summary.failure_count, summary.skipped_count) == (
            2, 1, 1, 1,
        )

    def test_running_outcome_counted_apart(self):
        summary = DispatchSummary(timestamp=NOW, due_count=2)
        summary.add(JobOutcome("a", "A", success=True))
        summary.add(JobOutcome("b", "B", success=False, status="running"))
        assert summary.processed_count == 2
        assert (summary.success_count, summary.failure_count, summary.running_count) == (1, 0, 1)

"""Shared test fixtures for milo tests."""

from datetime import datetime, timezone

import pytest

from milo import db, jobs
from milo.config import Config


def utc(year, month, day, hour=0, minute=0, second=0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    """Initialize a real SQLite database using schema.sql and return its path."""
    path = tmp_path / "test.db"
    db.init_db(path)
    return path


@pytest.fixture
def db_conn(db_path):
    """Yield a database connection with row factory set."""
    with db.get_db(db_path) as conn:
        yield conn


@pytest.fixture
def make_config(tmp_path, db_path):
    """Factory fixture that creates Config instances with tmp paths."""
    def _make_config(**overrides):
        defaults = {"db_path": db_path}
        defaults.update(overrides)
        config = Config(**defaults)
        config.agent.work_dir = tmp_path / "agent"
        return config
    return _make_config


@pytest.fixture
def make_job(db_path):
    """Factory fixture that inserts a job through jobs.create_job and returns it."""
    def _make_job(now=None, **overrides):
        defaults = {
            "agent_id": "agent-1",
            "title": "Water the plants",
            "action_type": "notify",
            "action_payload": {"message": "Water the plants"},
            "schedule_type": "cron",
            "job_type": "recurring",
            "cron_expression": "*/5 * * * *",
        }
        defaults.update(overrides)
        with db.get_db(db_path) as conn:
            return jobs.create_job(conn, jobs.JobSpec(**defaults), now=now or utc(2026, 3, 2, 9, 59, 30))
    return _make_job


@pytest.fixture
def insert_job(db_path):
    """Insert a job row directly, bypassing validation (e.g. unknown action types)."""
    def _insert_job(next_run_at, now=None, **overrides):
        defaults = {
            "agent_id": "agent-1",
            "title": "Raw job",
            "job_type": "one_time",
            "action_type": "notify",
            "action_payload": {},
            "schedule_type": "once",
            "run_at": next_run_at,
        }
        defaults.update(overrides)
        with db.get_db(db_path) as conn:
            job_id = db.insert_scheduled_job(
                conn, next_run_at=next_run_at, now=now or next_run_at, **defaults,
            )
            return db.get_scheduled_job(conn, job_id)
    return _insert_job

"""Tests for the HTTP dispatch endpoint."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from milo import db
from milo.config import ServerConfig
from milo.dispatcher import Dispatcher
from milo.server import DISPATCH_PATH, create_app

SECRET = "s3cret-token"
PAST = datetime(2020, 1, 6, 9, 0, tzinfo=timezone.utc)


class NoopAgent:
    def run(self, system_prompt, prompt, tools, max_steps):
        return "ok"


@pytest.fixture
def make_client(make_config):
    def _make_client(dispatcher=None, **server_overrides):
        server = {"cron_secret": SECRET}
        server.update(server_overrides)
        config = make_config(server=ServerConfig(**server))
        dispatcher = dispatcher or Dispatcher(config, agent=NoopAgent())
        app = create_app(config, dispatcher)
        app.config["TESTING"] = True
        return app.test_client()
    return _make_client


def _auth(token=SECRET):
    return {"Authorization": f"Bearer {token}"}


class TestAuth:
    def test_missing_header(self, make_client):
        response = make_client().get(DISPATCH_PATH)
        assert response.status_code == 401
        assert response.get_json() == {"error": "Unauthorized"}

    @pytest.mark.parametrize("header", [
        "Bearer wrong",
        "Bearer ",
        f"Basic {SECRET}",
        SECRET,
        f"bearer {SECRET}",
    ])
    def test_bad_credentials(self, make_client, header):
        response = make_client().get(DISPATCH_PATH, headers={"Authorization": header})
        assert response.status_code == 401

    def test_unauthorized_request_does_not_dispatch(self, make_client):
        dispatcher = MagicMock()
        make_client(dispatcher=dispatcher).post(DISPATCH_PATH, headers=_auth("nope"))
        dispatcher.run_cycle_concurrent.assert_not_called()

    def test_no_secret_configured_rejects(self, make_client):
        response = make_client(cron_secret="").get(DISPATCH_PATH, headers=_auth())
        assert response.status_code == 401

    def test_no_secret_allowed_in_dev_mode(self, make_client):
        response = make_client(cron_secret="", allow_unauthenticated=True).get(DISPATCH_PATH)
        assert response.status_code == 200


class TestDispatch:
    def test_no_jobs_due(self, make_client):
        response = make_client().get(DISPATCH_PATH, headers=_auth())
        assert response.status_code == 200
        body = response.get_json()
        assert body["message"] == "No jobs due"
        assert body["processedCount"] == 0
        assert "timestamp" in body

    def test_runs_due_jobs(self, make_client, insert_job):
        job = insert_job(PAST, title="Backup reminder")
        client = make_client()

        response = client.post(DISPATCH_PATH, headers=_auth())
        assert response.status_code == 200
        body = response.get_json()
        assert body["message"] == "Dispatch cycle completed"
        assert body["successCount"] == 1
        assert body["results"] == [{"jobId": job.id, "title": "Backup reminder", "success": True}]

    def test_cycle_failure_returns_500(self, make_client):
        dispatcher = MagicMock()
        dispatcher.run_cycle_concurrent.side_effect = RuntimeError("database is locked")
        response = make_client(dispatcher=dispatcher).post(DISPATCH_PATH, headers=_auth())
        assert response.status_code == 500
        assert response.get_json() == {"error": "Dispatch cycle failed"}


class TestInspect:
    def test_lists_due_jobs_without_claiming(self, make_client, insert_job, db_path):
        job = insert_job(PAST, title="Due one")
        response = make_client().get(f"{DISPATCH_PATH}?inspect=true", headers=_auth())

        assert response.status_code == 200
        body = response.get_json()
        assert body["count"] == 1
        assert body["jobs"][0]["id"] == job.id
        assert body["jobs"][0]["title"] == "Due one"
        assert body["jobs"][0]["nextRunAt"] == "2020-01-06T09:00:00+00:00"

        with db.get_db(db_path) as conn:
            after = db.get_scheduled_job(conn, job.id)
            assert after.locked_until is None
            assert db.list_job_executions(conn, job.id) == []

    def test_inspect_requires_auth(self, make_client):
        assert make_client().get(f"{DISPATCH_PATH}?inspect=true").status_code == 401


class TestHealth:
    def test_healthz(self, make_client):
        response = make_client().get("/healthz")
        assert response.status_code == 200
        assert response.get_json() == {"status": "ok"}

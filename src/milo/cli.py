"""CLI interface for local testing and administration."""

import argparse
import json
import sys
from pathlib import Path

from . import db, jobs
from .config import Config, load_config
from .cron import ScheduleParseError
from .db import LockContention
from .dispatcher import Dispatcher, inspect_due_jobs
from .jobs import JobSpec, JobStateError
from .logging_setup import setup_logging


def _load(args) -> Config:
    return load_config(Path(args.config) if args.config else None)


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def cmd_init(args):
    """Initialize the database."""
    config = _load(args)
    db.init_db(config.db_path)
    print(f"Database initialized at {config.db_path}")


def cmd_job_create(args):
    """Create a scheduled job."""
    config = _load(args)

    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as e:
        _fail(f"--payload is not valid JSON: {e}")

    if bool(args.run_at) == bool(args.cron):
        _fail("Provide exactly one of --run-at or --cron")

    schedule_type = "once" if args.run_at else "cron"
    job_type = args.job_type or ("one_time" if schedule_type == "once" else "recurring")

    try:
        spec = JobSpec(
            agent_id=args.agent,
            title=args.title,
            description=args.description,
            job_type=job_type,
            action_type=args.action,
            action_payload=payload,
            schedule_type=schedule_type,
            run_at=jobs.parse_datetime(args.run_at) if args.run_at else None,
            cron_expression=args.cron,
            timezone=args.timezone or config.default_timezone,
            max_runs=args.max_runs,
            task_id=args.task_id,
        )
        with db.get_db(config.db_path) as conn:
            job = jobs.create_job(conn, spec, use_job_timezone=config.dispatcher.cron_in_job_timezone)
    except ValueError as e:
        _fail(str(e))

    print(f"Job created: {job.id}")
    print(f"Next run: {job.next_run_at}")


def cmd_job_list(args):
    """List scheduled jobs."""
    config = _load(args)

    with db.get_db(config.db_path) as conn:
        found = jobs.list_jobs(
            conn,
            agent_id=args.agent,
            status=None if args.status == "all" else args.status,
            job_type=args.type,
            limit=args.limit,
        )

    if not found:
        print("No jobs found")
        return

    for j in found:
        schedule = j.cron_expression if j.schedule_type == "cron" else f"once {j.run_at}"
        title = j.title[:40] + "..." if len(j.title) > 40 else j.title
        print(f"[{j.id}] {j.status:10} {j.action_type:11} {schedule:24} next={j.next_run_at or '-':26} {title}")


def cmd_job_show(args):
    """Show job details."""
    config = _load(args)

    with db.get_db(config.db_path) as conn:
        job = jobs.get_job(conn, args.job_id)
        if not job:
            _fail(f"Job {args.job_id} not found")
        executions = jobs.list_executions(conn, job.id, limit=5)

    print(f"Job ID: {job.id}")
    print(f"Title: {job.title}")
    print(f"Agent: {job.agent_id}")
    print(f"Type: {job.job_type} / {job.action_type}")
    if job.schedule_type == "cron":
        print(f"Schedule: cron '{job.cron_expression}' ({job.timezone})")
    else:
        print(f"Schedule: once at {job.run_at}")
    print(f"Status: {job.status}")
    print(f"Next run: {job.next_run_at or '-'}")
    print(f"Last run: {job.last_run_at or '-'}")
    runs = f"{job.run_count}/{job.max_runs}" if job.max_runs else str(job.run_count)
    print(f"Runs: {runs}")
    print(f"Consecutive failures: {job.consecutive_failures}")
    if job.locked_until:
        print(f"Locked until: {job.locked_until}")
    if job.last_error:
        print(f"\nLast error:\n{job.last_error}")
    print(f"\nPayload:\n{json.dumps(job.action_payload, indent=2)}")

    if executions:
        print("\nRecent executions:")
        for e in executions:
            print(f"  {e.started_at} {e.status:8} {e.error or ''}")


def _job_control(args, operation):
    config = _load(args)
    try:
        with db.get_db(config.db_path) as conn:
            result = operation(conn, args.job_id)
    except (JobStateError, LockContention, ScheduleParseError) as e:
        _fail(str(e))
    return result


def cmd_job_cancel(args):
    if _job_control(args, jobs.cancel_job):
        print(f"Cancelled job {args.job_id}")
    else:
        print(f"Job {args.job_id} was already finished")


def cmd_job_pause(args):
    job = _job_control(args, jobs.pause_job)
    print(f"Paused job {job.id}")


def cmd_job_resume(args):
    config = _load(args)
    try:
        with db.get_db(config.db_path) as conn:
            job = jobs.resume_job(
                conn, args.job_id, use_job_timezone=config.dispatcher.cron_in_job_timezone,
            )
    except (JobStateError, LockContention, ScheduleParseError) as e:
        _fail(str(e))
    print(f"Resumed job {job.id}, next run {job.next_run_at}")


def cmd_executions(args):
    """List executions of a job."""
    config = _load(args)

    with db.get_db(config.db_path) as conn:
        executions = jobs.list_executions(conn, args.job_id, limit=args.limit)

    if not executions:
        print("No executions found")
        return

    for e in executions:
        detail = e.error or (json.dumps(e.result)[:60] if e.result else "")
        print(f"[{e.id}] {e.started_at} {e.status:8} {detail}")


def cmd_dispatch(args):
    """Run one dispatch cycle (or show what it would pick up)."""
    config = _load(args)

    if args.dry_run:
        with db.get_db(config.db_path) as conn:
            due = inspect_due_jobs(conn, db.utcnow(), limit=config.dispatcher.due_job_limit)
        if not due:
            print("No jobs due")
            return
        for j in due:
            print(f"[{j.id}] due {j.next_run_at} {j.action_type:11} {j.title}")
        print(f"{len(due)} job(s) due")
        return

    summary = Dispatcher(config).run_cycle()
    for r in summary.results:
        status = "ok" if r.success else f"failed: {r.error}"
        print(f"Job {r.job_id} ({r.title}): {status}")
    print(
        f"{summary.message}: processed {summary.processed_count}, "
        f"succeeded {summary.success_count}, skipped {summary.skipped_count}"
    )


def cmd_serve(args):
    """Run the HTTP dispatch endpoint."""
    from .server import serve

    config = _load(args)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    setup_logging(config, verbose=args.verbose, daemon_mode=True)
    serve(config)


def main():
    parser = argparse.ArgumentParser(description="Milo scheduled job CLI")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # init
    subparsers.add_parser("init", help="Initialize database")

    # job
    job_parser = subparsers.add_parser("job", help="Manage scheduled jobs")
    job_subparsers = job_parser.add_subparsers(dest="job_action", required=True)

    create_parser = job_subparsers.add_parser("create", help="Create a job")
    create_parser.add_argument("-a", "--agent", required=True, help="Owning agent ID")
    create_parser.add_argument("-t", "--title", required=True, help="Job title")
    create_parser.add_argument("--action", required=True, choices=["notify", "agent_task", "webhook"])
    create_parser.add_argument("--payload", help="Action payload as JSON")
    create_parser.add_argument("--run-at", help="One-time run (ISO datetime; no offset means UTC)")
    create_parser.add_argument("--cron", help="5-field cron expression for recurring runs")
    create_parser.add_argument("--timezone", help="IANA timezone for cron evaluation")
    create_parser.add_argument("--job-type", choices=list(jobs.JOB_TYPES))
    create_parser.add_argument("--max-runs", type=int, help="Complete after this many successful runs")
    create_parser.add_argument("--description")
    create_parser.add_argument("--task-id", help="Linked task ID")

    list_parser = job_subparsers.add_parser("list", help="List jobs")
    list_parser.add_argument("-a", "--agent", help="Filter by agent")
    list_parser.add_argument("-s", "--status", default="active",
                             choices=["active", "paused", "completed", "cancelled", "all"])
    list_parser.add_argument("--type", choices=list(jobs.JOB_TYPES), help="Filter by job type")
    list_parser.add_argument("-n", "--limit", type=int, default=50, help="Max results")

    for name, help_text in (
        ("show", "Show job details"),
        ("cancel", "Cancel a job"),
        ("pause", "Pause a job"),
        ("resume", "Resume a paused job"),
    ):
        p = job_subparsers.add_parser(name, help=help_text)
        p.add_argument("job_id", help="Job ID")

    # executions
    executions_parser = subparsers.add_parser("executions", help="List executions of a job")
    executions_parser.add_argument("job_id", help="Job ID")
    executions_parser.add_argument("-n", "--limit", type=int, default=20, help="Max results")

    # dispatch
    dispatch_parser = subparsers.add_parser("dispatch", help="Run one dispatch cycle")
    dispatch_parser.add_argument("--dry-run", action="store_true", help="Only list due jobs")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP dispatch endpoint")
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Port")

    args = parser.parse_args()

    # serve configures its own (daemon-style) logging
    if args.command not in ("init", "serve"):
        setup_logging(_load(args), verbose=args.verbose)

    commands = {
        "init": cmd_init,
        "executions": cmd_executions,
        "dispatch": cmd_dispatch,
        "serve": cmd_serve,
    }

    if args.command == "job":
        job_commands = {
            "create": cmd_job_create,
            "list": cmd_job_list,
            "show": cmd_job_show,
            "cancel": cmd_job_cancel,
            "pause": cmd_job_pause,
            "resume": cmd_job_resume,
        }
        job_commands[args.job_action](args)
    else:
        commands[args.command](args)


if __name__ == "__main__":
    main()

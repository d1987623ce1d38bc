"""HTTP dispatch endpoint: Flask app called by the periodic trigger."""

import atexit
import hmac
import logging

from flask import Flask, jsonify, request

from . import db
from .config import Config
from .dispatcher import Dispatcher, inspect_due_jobs, job_summary

logger = logging.getLogger("milo.server")

DISPATCH_PATH = "/api/cron/dispatcher"


def _authorized(config: Config) -> bool:
    secret = config.server.cron_secret
    if not secret:
        # No secret configured: reject everything unless explicitly in dev mode
        return config.server.allow_unauthenticated

    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme != "Bearer" or not token:
        return False
    return hmac.compare_digest(token.encode(), secret.encode())


def create_app(config: Config, dispatcher: Dispatcher | None = None) -> Flask:
    app = Flask(__name__)
    dispatcher = dispatcher or Dispatcher(config)
    app.extensions["milo_dispatcher"] = dispatcher

    if not config.server.cron_secret and not config.server.allow_unauthenticated:
        logger.warning("server.cron_secret is not set; all dispatch requests will be rejected")

    @app.route("/healthz", methods=["GET"])
    def healthz():
        return jsonify({"status": "ok"})

    @app.route(DISPATCH_PATH, methods=["GET", "POST"])
    def dispatch():
        if not _authorized(config):
            logger.warning("Unauthorized dispatch request from %s", request.remote_addr)
            return jsonify({"error": "Unauthorized"}), 401

        if request.args.get("inspect", "").lower() in ("1", "true", "yes"):
            now = db.utcnow()
            with db.get_db(config.db_path) as conn:
                due = inspect_due_jobs(conn, now, limit=config.dispatcher.due_job_limit)
            jobs = [job_summary(job) for job in due]
            return jsonify({"jobs": jobs, "count": len(jobs), "timestamp": db.format_ts(now)})

        try:
            summary = dispatcher.run_cycle_concurrent()
        except Exception:
            logger.exception("Dispatch cycle failed")
            return jsonify({"error": "Dispatch cycle failed"}), 500

        return jsonify(summary.to_dict())

    return app


def serve(config: Config) -> None:
    """Run the dispatch endpoint until interrupted."""
    dispatcher = Dispatcher(config)
    atexit.register(dispatcher.close)
    app = create_app(config, dispatcher)
    logger.info(
        "Serving dispatch endpoint on http://%s:%d%s",
        config.server.host, config.server.port, DISPATCH_PATH,
    )
    app.run(host=config.server.host, port=config.server.port, threaded=True)

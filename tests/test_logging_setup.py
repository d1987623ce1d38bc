"""Tests for milo.logging_setup."""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from milo.config import LoggingConfig
from milo.logging_setup import JobContextFilter, job_context, reset_logging, setup_logging


@pytest.fixture(autouse=True)
def _reset():
    reset_logging()
    yield
    reset_logging()


def _handlers():
    return logging.getLogger("milo").handlers


def _record(msg="hello") -> logging.LogRecord:
    return logging.LogRecord("milo.dispatcher", logging.INFO, __file__, 1, msg, None, None)


class TestSetupLogging:
    def test_cli_console_only(self, make_config, tmp_path):
        config = make_config(logging=LoggingConfig(file=str(tmp_path / "milo.log")))
        setup_logging(config)
        [handler] = _handlers()
        assert isinstance(handler, logging.StreamHandler)
        assert "%(asctime)s" not in handler.formatter._fmt
        assert not (tmp_path / "milo.log").exists()

    def test_daemon_mode_adds_timestamps_and_file(self, make_config, tmp_path):
        log_file = tmp_path / "logs" / "milo.log"
        config = make_config(logging=LoggingConfig(file=str(log_file)))
        setup_logging(config, daemon_mode=True)

        console, file_handler = _handlers()
        assert console.formatter._fmt.startswith("%(asctime)s")
        assert isinstance(file_handler, RotatingFileHandler)
        assert file_handler.maxBytes == 10 * 1024 * 1024
        assert file_handler.backupCount == 5
        assert log_file.parent.is_dir()

    def test_daemon_mode_without_file_is_console_only(self, make_config):
        setup_logging(make_config(), daemon_mode=True)
        assert len(_handlers()) == 1

    def test_file_output_without_rotation(self, make_config, tmp_path):
        config = make_config(logging=LoggingConfig(output="file", file=str(tmp_path / "milo.log"), rotate=False))
        setup_logging(config)
        [handler] = _handlers()
        assert type(handler) is logging.FileHandler

    def test_verbose_overrides_level(self, make_config):
        setup_logging(make_config(logging=LoggingConfig(level="WARNING")), verbose=True)
        assert logging.getLogger("milo").level == logging.DEBUG

    def test_second_call_is_ignored(self, make_config):
        setup_logging(make_config())
        setup_logging(make_config(logging=LoggingConfig(level="DEBUG")))
        assert len(_handlers()) == 1
        assert logging.getLogger("milo").level == logging.INFO

    def test_quiets_http_loggers(self, make_config):
        setup_logging(make_config())
        assert logging.getLogger("werkzeug").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING


class TestJobContext:
    def test_outside_a_job(self):
        record = _record()
        JobContextFilter().filter(record)
        assert record.job == ""

    def test_inside_a_job(self):
        record = _record()
        with job_context("job-1", "exec-9"):
            JobContextFilter().filter(record)
        assert record.job == " job=job-1 exec=exec-9"

    def test_nested_context_restores_outer(self):
        with job_context("job-1"):
            with job_context("job-1", "exec-9"):
                pass
            record = _record()
            JobContextFilter().filter(record)
        assert record.job == " job=job-1 exec=-"

    def test_file_lines_carry_job_ids(self, make_config, tmp_path):
        log_file = tmp_path / "milo.log"
        setup_logging(make_config(logging=LoggingConfig(output="file", file=str(log_file))))
        with job_context("job-1", "exec-9"):
            logging.getLogger("milo.dispatcher").info("Job completed")
        for handler in _handlers():
            handler.flush()
        assert "[milo.dispatcher] job=job-1 exec=exec-9 Job completed" in log_file.read_text()

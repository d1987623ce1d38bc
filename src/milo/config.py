"""Configuration loading for milo."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

logger = logging.getLogger("milo.config")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"           # INFO or DEBUG
    output: str = "console"       # console, file, or both
    file: str = ""                # log file path
    rotate: bool = True           # enable rotation
    max_size_mb: int = 10         # max file size before rotation
    backup_count: int = 5         # rotated files to keep


@dataclass
class DispatcherConfig:
    lease_minutes: int = 30  # must exceed the slowest action (agent_task)
    unlock_retry_minutes: int = 5  # lock shortened to this after an unexpected fault
    due_job_limit: int = 50  # max jobs claimed per cycle
    cycle_budget_seconds: int = 50  # server mode: how long a cycle waits for its jobs
    max_workers: int = 4  # server mode: concurrent job executions
    cron_in_job_timezone: bool = True  # False = evaluate cron fields in host local time


@dataclass
class FailurePolicyConfig:
    base_delay_minutes: int = 5
    cap_delay_minutes: int = 60
    pause_threshold: int = 3  # pause after N consecutive failures (0 = never)


@dataclass
class AgentConfig:
    """AI agent executor (agent CLI subprocess) configuration."""
    command: str = "claude"
    model: str = ""  # empty = CLI default
    max_steps: int = 25  # hard cap on tool invocations per run
    timeout_minutes: int = 20  # kill the agent after this; keep below lease_minutes
    allowed_tools: list[str] = field(default_factory=lambda: [
        "Read", "Grep", "Glob", "WebSearch", "WebFetch",
    ])
    system_prompt: str = (
        "You are Milo, a personal assistant. You are running a scheduled task "
        "without the user present. Do the work described, then reply with a "
        "concise summary of what you did and what you found."
    )
    work_dir: Path = field(default_factory=lambda: Path("/tmp/milo"))


@dataclass
class WebhookConfig:
    timeout_seconds: float = 30.0


@dataclass
class NtfyConfig:
    """ntfy push notification configuration."""
    enabled: bool = False
    server_url: str = "https://ntfy.sh"
    topic: str = ""
    token: str = ""       # bearer token auth
    priority: int = 3


@dataclass
class ServerConfig:
    """HTTP dispatch endpoint."""
    host: str = "127.0.0.1"
    port: int = 8040
    cron_secret: str = ""  # bearer token expected from the periodic trigger
    allow_unauthenticated: bool = False  # dev only: accept requests when no secret is set


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path("data/milo.db"))
    default_timezone: str = "UTC"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    failure_policy: FailurePolicyConfig = field(default_factory=FailurePolicyConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    ntfy: NtfyConfig = field(default_factory=NtfyConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file."""
    if config_path is None:
        # Look for config in standard locations
        candidates = [
            Path("config/config.toml"),
            Path.home() / ".config/milo/config.toml",
            Path("/etc/milo/config.toml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    config = Config()

    if config_path is not None and config_path.exists():
        with open(config_path, "rb") as f:
            data = tomli.load(f)
        _apply_toml(config, data)
        logger.debug("Loaded config from %s", config_path)

    # Environment variable overrides for secrets (allows EnvironmentFile= usage)
    _env_overrides = [
        ("MILO_CRON_SECRET", "server", "cron_secret"),
        ("MILO_NTFY_TOKEN", "ntfy", "token"),
    ]
    for env_var, section, field_name in _env_overrides:
        val = os.environ.get(env_var)
        if val:
            setattr(getattr(config, section), field_name, val)

    db_override = os.environ.get("MILO_DB_PATH")
    if db_override:
        config.db_path = Path(db_override)

    return config


def _apply_toml(config: Config, data: dict) -> None:
    if "db_path" in data:
        config.db_path = Path(data["db_path"])

    if "default_timezone" in data:
        config.default_timezone = data["default_timezone"]

    if "logging" in data:
        log = data["logging"]
        config.logging = LoggingConfig(
            level=log.get("level", "INFO"),
            output=log.get("output", "console"),
            file=log.get("file", ""),
            rotate=log.get("rotate", True),
            max_size_mb=log.get("max_size_mb", 10),
            backup_count=log.get("backup_count", 5),
        )

    if "dispatcher" in data:
        d = data["dispatcher"]
        config.dispatcher = DispatcherConfig(
            lease_minutes=d.get("lease_minutes", 30),
            unlock_retry_minutes=d.get("unlock_retry_minutes", 5),
            due_job_limit=d.get("due_job_limit", 50),
            cycle_budget_seconds=d.get("cycle_budget_seconds", 50),
            max_workers=d.get("max_workers", 4),
            cron_in_job_timezone=d.get("cron_in_job_timezone", True),
        )

    if "failure_policy" in data:
        fp = data["failure_policy"]
        config.failure_policy = FailurePolicyConfig(
            base_delay_minutes=fp.get("base_delay_minutes", 5),
            cap_delay_minutes=fp.get("cap_delay_minutes", 60),
            pause_threshold=fp.get("pause_threshold", 3),
        )

    if "agent" in data:
        a = data["agent"]
        defaults = AgentConfig()
        config.agent = AgentConfig(
            command=a.get("command", defaults.command),
            model=a.get("model", ""),
            max_steps=a.get("max_steps", 25),
            timeout_minutes=a.get("timeout_minutes", 20),
            allowed_tools=a.get("allowed_tools", defaults.allowed_tools),
            system_prompt=a.get("system_prompt", defaults.system_prompt),
            work_dir=Path(a["work_dir"]) if "work_dir" in a else defaults.work_dir,
        )

    if "webhook" in data:
        w = data["webhook"]
        config.webhook = WebhookConfig(
            timeout_seconds=w.get("timeout_seconds", 30.0),
        )

    if "ntfy" in data:
        n = data["ntfy"]
        config.ntfy = NtfyConfig(
            enabled=n.get("enabled", False),
            server_url=n.get("server_url", "https://ntfy.sh"),
            topic=n.get("topic", ""),
            token=n.get("token", ""),
            priority=n.get("priority", 3),
        )

    if "server" in data:
        s = data["server"]
        config.server = ServerConfig(
            host=s.get("host", "127.0.0.1"),
            port=s.get("port", 8040),
            cron_secret=s.get("cron_secret", ""),
            allow_unauthenticated=s.get("allow_unauthenticated", False),
        )

    if config.dispatcher.lease_minutes <= config.agent.timeout_minutes:
        logger.warning(
            "dispatcher.lease_minutes (%d) should exceed agent.timeout_minutes (%d)",
            config.dispatcher.lease_minutes, config.agent.timeout_minutes,
        )

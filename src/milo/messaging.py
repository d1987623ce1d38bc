"""Conversations, messages, notifications and activity log, plus push delivery.

Job actions talk to the rest of the product through the ``Messenger``
protocol; ``DatabaseMessenger`` is the SQLite-backed implementation, with
ntfy as the external push channel.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import httpx

from . import db

if TYPE_CHECKING:
    from .config import NtfyConfig

logger = logging.getLogger("milo.messaging")

APP_CHANNEL = "app"
PUSH_CHANNELS = ("ntfy",)
DEFAULT_CONVERSATION_TITLE = "Notifications"


@dataclass
class ActivityEntry:
    agent_id: str
    activity_type: str
    title: str
    source: str | None = None
    description: str | None = None
    metadata: dict | None = None
    job_id: str | None = None
    conversation_id: str | None = None
    status: str | None = None


class Messenger(Protocol):
    def find_or_create_conversation(self, agent_id: str, conversation_id: str | None = None) -> str: ...

    def create_conversation(self, agent_id: str, title: str, channel_type: str = APP_CHANNEL) -> str: ...

    def post_message(
        self, conversation_id: str, content: str, metadata: dict | None = None, role: str = "assistant",
    ) -> str: ...

    def create_notification(
        self,
        agent_id: str,
        type: str,
        title: str,
        body: str | None,
        link_type: str | None = None,
        link_id: str | None = None,
    ) -> str: ...

    def log_activity(self, entry: ActivityEntry) -> str: ...

    def push(self, channel: str, agent_id: str, title: str, message: str) -> bool: ...

    def get_task(self, task_id: str) -> db.LinkedTask | None: ...


class DatabaseMessenger:
    """Messenger over the milo SQLite database. Each call is its own transaction."""

    def __init__(
        self,
        db_path: Path,
        ntfy: "NtfyConfig | None" = None,
        http_client: httpx.Client | None = None,
    ):
        self.db_path = db_path
        self.ntfy = ntfy
        self._http = http_client

    def find_or_create_conversation(self, agent_id: str, conversation_id: str | None = None) -> str:
        """The given conversation if it exists, else the agent's latest active one, else a new one."""
        with db.get_db(self.db_path) as conn:
            if conversation_id and db.get_conversation(conn, conversation_id):
                return conversation_id
            latest = db.get_latest_active_conversation(conn, agent_id)
            if latest:
                return latest.id
            new_id = db.create_conversation(conn, agent_id, DEFAULT_CONVERSATION_TITLE, APP_CHANNEL)
            logger.debug("Created notification conversation %s for agent %s", new_id, agent_id)
            return new_id

    def create_conversation(self, agent_id: str, title: str, channel_type: str = APP_CHANNEL) -> str:
        with db.get_db(self.db_path) as conn:
            return db.create_conversation(conn, agent_id, title, channel_type)

    def post_message(
        self, conversation_id: str, content: str, metadata: dict | None = None, role: str = "assistant",
    ) -> str:
        with db.get_db(self.db_path) as conn:
            return db.insert_message(conn, conversation_id, role, content, metadata)

    def create_notification(
        self,
        agent_id: str,
        type: str,
        title: str,
        body: str | None,
        link_type: str | None = None,
        link_id: str | None = None,
    ) -> str:
        with db.get_db(self.db_path) as conn:
            return db.insert_notification(conn, agent_id, type, title, body, link_type, link_id)

    def log_activity(self, entry: ActivityEntry) -> str:
        with db.get_db(self.db_path) as conn:
            return db.insert_activity(
                conn,
                agent_id=entry.agent_id,
                activity_type=entry.activity_type,
                title=entry.title,
                source=entry.source,
                description=entry.description,
                metadata=entry.metadata,
                job_id=entry.job_id,
                conversation_id=entry.conversation_id,
                status=entry.status,
            )

    def get_task(self, task_id: str) -> db.LinkedTask | None:
        with db.get_db(self.db_path) as conn:
            return db.get_task(conn, task_id)

    def push(self, channel: str, agent_id: str, title: str, message: str) -> bool:
        """Deliver to an external channel. Returns True on success."""
        if channel == "ntfy":
            return self._send_ntfy(agent_id, message, title=title)
        logger.warning("Unsupported push channel %r (agent: %s)", channel, agent_id)
        return False

    def _send_ntfy(self, agent_id: str, message: str, title: str | None = None) -> bool:
        """Send a notification via ntfy. Returns True on success."""
        if self.ntfy is None or not self.ntfy.enabled:
            logger.warning("ntfy not configured for notifications")
            return False
        if not self.ntfy.topic:
            logger.warning("No ntfy topic for notification (agent: %s)", agent_id)
            return False

        url = f"{self.ntfy.server_url.rstrip('/')}/{self.ntfy.topic}"
        headers = {"Priority": str(self.ntfy.priority)}
        if self.ntfy.token:
            headers["Authorization"] = f"Bearer {self.ntfy.token}"
        if title:
            headers["Title"] = title

        try:
            if self._http is not None:
                response = self._http.post(url, content=message, headers=headers, timeout=10)
            else:
                response = httpx.post(url, content=message, headers=headers, timeout=10)
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error("Failed to send ntfy notification (agent: %s): %s", agent_id, e)
            return False

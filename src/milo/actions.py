"""Job actions: what a scheduled job does when it fires.

Every action type has a typed payload and a handler. ``execute_action`` never
raises; handler errors come back as a failed ``ActionResult`` so the
dispatcher can feed them to the failure policy.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import httpx

from .agent import AgentExecutionError, AgentExecutor, build_system_prompt
from .durable import DurableRun
from .messaging import APP_CHANNEL, PUSH_CHANNELS, ActivityEntry, Messenger

if TYPE_CHECKING:
    from .config import Config
    from .db import ScheduledJob

logger = logging.getLogger("milo.actions")

ACTION_TYPES = ("notify", "agent_task", "webhook")

NOTIFICATION_BODY_LIMIT = 200
RESPONSE_SUMMARY_LIMIT = 500

__all__ = [
    "ACTION_TYPES",
    "ActionContext",
    "ActionExecutionError",
    "ActionResult",
    "AgentExecutionError",
    "AgentTaskPayload",
    "NotifyPayload",
    "WebhookDeliveryError",
    "WebhookPayload",
    "execute_action",
    "parse_action_payload",
]


class ActionExecutionError(Exception):
    """A job action could not be carried out."""


class WebhookDeliveryError(ActionExecutionError):
    """Webhook answered with a non-2xx status or could not be reached."""


@dataclass
class NotifyPayload:
    message: str | None = None
    preferred_channel: str = APP_CHANNEL
    task_id: str | None = None


@dataclass
class AgentTaskPayload:
    instruction: str | None = None
    preferred_channel: str = APP_CHANNEL
    task_id: str | None = None


@dataclass
class WebhookPayload:
    url: str
    body: dict = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)


ActionPayload = NotifyPayload | AgentTaskPayload | WebhookPayload


@dataclass
class ActionResult:
    success: bool
    data: Any = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class ActionContext:
    """Collaborators and settings a handler may use."""
    config: "Config"
    messenger: Messenger
    agent: AgentExecutor
    execution_id: str
    http_client: httpx.Client | None = None

    @property
    def db_path(self) -> Path:
        return self.config.db_path


def _optional_str(raw: dict, *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ActionExecutionError(f"Payload field {key!r} must be a string")
        return value
    return None


def parse_action_payload(action_type: str, raw: Any) -> ActionPayload:
    """Turn a stored payload into its typed form.

    Accepts snake_case and camelCase keys (``task_id`` / ``taskId``).
    Raises ActionExecutionError for unknown types or malformed payloads.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ActionExecutionError(f"Action payload must be an object, got {type(raw).__name__}")

    if action_type == "notify":
        return NotifyPayload(
            message=_optional_str(raw, "message"),
            preferred_channel=_optional_str(raw, "preferred_channel", "preferredChannel") or APP_CHANNEL,
            task_id=_optional_str(raw, "task_id", "taskId"),
        )

    if action_type == "agent_task":
        return AgentTaskPayload(
            instruction=_optional_str(raw, "instruction"),
            preferred_channel=_optional_str(raw, "preferred_channel", "preferredChannel") or APP_CHANNEL,
            task_id=_optional_str(raw, "task_id", "taskId"),
        )

    if action_type == "webhook":
        url = _optional_str(raw, "url")
        if not url:
            raise ActionExecutionError("No webhook URL specified")
        body = raw.get("body") or {}
        headers = raw.get("headers") or {}
        if not isinstance(body, dict):
            raise ActionExecutionError("Webhook body must be an object")
        if not isinstance(headers, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
        ):
            raise ActionExecutionError("Webhook headers must map strings to strings")
        return WebhookPayload(url=url, body=body, headers=headers)

    raise ActionExecutionError(f"Unknown action type: {action_type}")


def _format_due_date(value: str) -> str:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return value


# ============================================================================
# Handlers
# ============================================================================


def execute_notify(job: "ScheduledJob", payload: NotifyPayload, ctx: ActionContext) -> ActionResult:
    """Post a reminder into a conversation and raise an in-app notification.

    An external ``preferred_channel`` is tried first; if it fails the
    reminder still lands in the app and the failure is reported in
    ``failedChannels``.
    """
    message = payload.message or job.title
    content = f"**Reminder:** {message}"

    task_id = payload.task_id or job.task_id
    if task_id:
        task = ctx.messenger.get_task(task_id)
        if task:
            content = f"**Reminder:** {job.title}\n**Task:** {task.title}"
            if task.due_date:
                content += f"\n**Due:** {_format_due_date(task.due_date)}"

    delivered: list[str] = []
    failed: list[str] = []

    channel = payload.preferred_channel
    if channel != APP_CHANNEL:
        if channel in PUSH_CHANNELS and ctx.messenger.push(channel, job.agent_id, job.title, content):
            delivered.append(channel)
        else:
            logger.warning("Reminder %s: delivery via %s failed, using app channel", job.id, channel)
            failed.append(channel)

    conversation_id = None
    try:
        conversation_id = ctx.messenger.find_or_create_conversation(job.agent_id, job.conversation_id)
        ctx.messenger.post_message(
            conversation_id,
            content,
            {"type": "scheduled_notification", "job_id": job.id},
        )
        ctx.messenger.create_notification(
            job.agent_id,
            "reminder",
            job.title,
            content[:NOTIFICATION_BODY_LIMIT],
            link_type="conversation",
            link_id=conversation_id,
        )
        delivered.append(APP_CHANNEL)
    except Exception as e:
        if not delivered:
            raise
        logger.warning("Reminder %s: app channel failed after %s delivery: %s", job.id, delivered[0], e)
        failed.append(APP_CHANNEL)

    data: dict[str, Any] = {
        "conversationId": conversation_id,
        "message": content,
        "deliveredChannels": delivered,
    }
    if failed:
        data["failedChannels"] = failed
    return ActionResult(success=True, data=data)


def execute_agent_task(job: "ScheduledJob", payload: AgentTaskPayload, ctx: ActionContext) -> ActionResult:
    """Run the agent on the job's instruction in a fresh conversation.

    Every side effect is a durable step, so a re-entered execution picks up
    after the last step that finished.
    """
    run = DurableRun(ctx.db_path, ctx.execution_id)
    messenger = ctx.messenger
    instruction = payload.instruction or job.description or "Execute scheduled task"
    user_message = f"[Scheduled Task: {job.title}]\n\n{instruction}"
    metadata = {"type": "scheduled_agent_task", "job_id": job.id}

    conversation_id = run.step(
        "create_conversation",
        lambda: messenger.create_conversation(job.agent_id, f"Scheduled: {job.title}"),
    )
    run.step(
        "save_user_message",
        lambda: messenger.post_message(conversation_id, user_message, metadata, role="user"),
    )

    task_title = None
    task_id = payload.task_id or job.task_id
    if task_id:
        task = messenger.get_task(task_id)
        task_title = task.title if task else None

    agent_config = ctx.config.agent
    system_prompt = build_system_prompt(agent_config.system_prompt, job.agent_id, task_title)

    try:
        response = run.step(
            "run_agent",
            lambda: ctx.agent.run(
                system_prompt, user_message, list(agent_config.allowed_tools), agent_config.max_steps,
            ),
        )
    except AgentExecutionError as e:
        logger.error("Agent error for job %s: %s", job.id, e)
        messenger.post_message(
            conversation_id,
            f"I encountered an error while executing this scheduled task: {e}",
            {**metadata, "error": True},
        )
        raise AgentExecutionError(f"Agent failed: {e}") from e

    response = (response or "").strip() or "Task completed."

    run.step("save_response", lambda: messenger.post_message(conversation_id, response, metadata))
    run.step(
        "log_activity",
        lambda: messenger.log_activity(_completion_activity(job, response, conversation_id)),
    )
    run.step(
        "notify",
        lambda: messenger.create_notification(
            job.agent_id,
            "task_update",
            f"Scheduled task completed: {job.title}",
            response[:NOTIFICATION_BODY_LIMIT],
            link_type="conversation",
            link_id=conversation_id,
        ),
    )
    if payload.preferred_channel in PUSH_CHANNELS:
        run.step(
            "push",
            lambda: messenger.push(
                payload.preferred_channel, job.agent_id,
                f"Scheduled task completed: {job.title}", response[:NOTIFICATION_BODY_LIMIT],
            ),
        )

    return ActionResult(
        success=True,
        data={
            "conversationId": conversation_id,
            "instruction": instruction,
            "response": response[:RESPONSE_SUMMARY_LIMIT],
        },
    )


def _completion_activity(job: "ScheduledJob", response: str, conversation_id: str) -> ActivityEntry:
    return ActivityEntry(
        agent_id=job.agent_id,
        activity_type="cron_execution",
        source="cron",
        title=f"Completed: {job.title}",
        description=response[:NOTIFICATION_BODY_LIMIT],
        job_id=job.id,
        conversation_id=conversation_id,
        status="completed",
    )


def execute_webhook(job: "ScheduledJob", payload: WebhookPayload, ctx: ActionContext) -> ActionResult:
    """POST a JSON envelope to the payload URL. Only a 2xx answer counts as success."""
    envelope = {
        "jobId": job.id,
        "jobType": job.job_type,
        "title": job.title,
        "agentId": job.agent_id,
        **payload.body,
    }
    headers = {"Content-Type": "application/json", **payload.headers}
    timeout = ctx.config.webhook.timeout_seconds

    try:
        if ctx.http_client is not None:
            response = ctx.http_client.post(
                payload.url, content=json.dumps(envelope), headers=headers, timeout=timeout,
            )
        else:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(payload.url, content=json.dumps(envelope), headers=headers)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise WebhookDeliveryError(f"Webhook delivery failed: {e}") from e

    if not response.is_success:
        raise WebhookDeliveryError(f"Webhook returned {response.status_code}")

    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {"response": data}
    return ActionResult(success=True, data=data)


ACTION_HANDLERS: dict[str, Callable[["ScheduledJob", Any, ActionContext], ActionResult]] = {
    "notify": execute_notify,
    "agent_task": execute_agent_task,
    "webhook": execute_webhook,
}


def execute_action(job: "ScheduledJob", ctx: ActionContext) -> ActionResult:
    """Run the job's action. Never raises."""
    handler = ACTION_HANDLERS.get(job.action_type)
    if handler is None:
        logger.warning("Job %s has unknown action type %r", job.id, job.action_type)
        return ActionResult(success=False, error=f"Unknown action type: {job.action_type}")

    try:
        payload = parse_action_payload(job.action_type, job.action_payload)
        return handler(job, payload, ctx)
    except (ActionExecutionError, AgentExecutionError) as e:
        logger.warning("Job %s (%s) failed: %s", job.id, job.action_type, e)
        return ActionResult(success=False, error=str(e))
    except Exception as e:
        logger.exception("Unexpected error running %s action for job %s", job.action_type, job.id)
        return ActionResult(success=False, error=str(e) or type(e).__name__)

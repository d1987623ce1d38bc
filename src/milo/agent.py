"""AI agent executor: runs the agent CLI as a subprocess with a hard step cap."""

import logging
import os
import subprocess
import threading
from typing import TYPE_CHECKING, Protocol

from .stream_parser import StreamTranscript, ToolUseEvent

if TYPE_CHECKING:
    from .config import AgentConfig

logger = logging.getLogger("milo.agent")

DEFAULT_MAX_STEPS = 25


class AgentExecutionError(Exception):
    """The agent executor itself faulted (crash, timeout, error result)."""


class AgentExecutor(Protocol):
    def run(self, system_prompt: str, prompt: str, tools: list[str], max_steps: int) -> str:
        """Run the agent to completion and return its final text."""
        ...


def build_system_prompt(base_prompt: str, agent_id: str, task_title: str | None = None) -> str:
    """System prompt for an unattended scheduled run."""
    prompt = base_prompt.strip()
    prompt += f"\n\nAgent ID: {agent_id}"
    if task_title:
        prompt += f"\nThis run is linked to the task: {task_title}"
    prompt += (
        "\n\nNobody is watching this run. Do not ask follow-up questions; "
        "if something is missing, say so in your final reply."
    )
    return prompt


class ClaudeCodeAgent:
    """Runs ``claude -p`` with stream-json output.

    The prompt goes in on stdin. Each tool_use block in the stream counts as
    one step; when the count passes ``max_steps`` the process is killed and
    whatever text the agent produced so far is returned. ``--max-turns``
    bounds the CLI's own loop as well.
    """

    def __init__(self, config: "AgentConfig"):
        self.config = config

    def build_command(self, system_prompt: str, tools: list[str], max_steps: int) -> list[str]:
        cmd = [self.config.command, "-p", "--output-format", "stream-json", "--verbose"]
        cmd += ["--max-turns", str(max_steps)]
        if tools:
            cmd += ["--allowedTools"] + list(tools)
        if self.config.model:
            cmd += ["--model", self.config.model]
        cmd += ["--append-system-prompt", system_prompt]
        return cmd

    def run(self, system_prompt: str, prompt: str, tools: list[str], max_steps: int = DEFAULT_MAX_STEPS) -> str:
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")

        cmd = self.build_command(system_prompt, tools, max_steps)
        work_dir = self.config.work_dir
        work_dir.mkdir(parents=True, exist_ok=True)

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=str(work_dir),
                env=dict(os.environ),
            )
        except OSError as e:
            raise AgentExecutionError(f"Could not start agent command {self.config.command!r}: {e}") from e

        try:
            process.stdin.write(prompt)
            process.stdin.close()
        except BrokenPipeError:
            pass  # process may have exited early

        # Capture stderr in a thread to avoid deadlock when both pipes are full
        stderr_lines = []

        def _read_stderr():
            for line in process.stderr:
                stderr_lines.append(line)

        stderr_thread = threading.Thread(target=_read_stderr, daemon=True)
        stderr_thread.start()

        timed_out = threading.Event()

        def _kill():
            timed_out.set()
            process.kill()

        timer = threading.Timer(self.config.timeout_minutes * 60, _kill)
        timer.start()

        transcript = StreamTranscript(max_steps)

        try:
            for line in process.stdout:
                for event in transcript.feed(line):
                    if isinstance(event, ToolUseEvent):
                        logger.debug(
                            "Agent step %d/%d: %s %s", transcript.steps, max_steps, event.tool_name, event.detail,
                        )
                if transcript.over_cap:
                    logger.warning("Agent exceeded %d tool steps, stopping it", max_steps)
                    process.kill()
                    break
            process.wait()
            stderr_thread.join(timeout=5)
        finally:
            timer.cancel()

        if timed_out.is_set():
            raise AgentExecutionError(
                f"Agent timed out after {self.config.timeout_minutes} minutes"
            )

        final_result = transcript.result
        capped = transcript.over_cap
        if capped or (final_result is not None and not final_result.success and transcript.steps >= max_steps):
            if transcript.last_text:
                return transcript.last_text
            raise AgentExecutionError(
                f"Agent reached the step limit ({max_steps}) without a response"
            )

        if final_result is not None:
            if final_result.success:
                return final_result.text.strip()
            stderr_output = "".join(stderr_lines).strip()
            raise AgentExecutionError(final_result.text.strip() or stderr_output or "Unknown error")

        stderr_output = "".join(stderr_lines).strip()
        if process.returncode == 0 and transcript.last_text:
            return transcript.last_text
        raise AgentExecutionError(
            stderr_output[:500] or f"Agent exited with code {process.returncode} and no result"
        )

"""Parse agent CLI --output-format stream-json events."""

import json
import logging
from dataclasses import dataclass

logger = logging.getLogger("milo.stream_parser")


@dataclass
class ToolUseEvent:
    tool_name: str
    detail: str = ""


@dataclass
class TextEvent:
    text: str


@dataclass
class ResultEvent:
    success: bool
    text: str
    num_turns: int | None = None


StreamEvent = ToolUseEvent | TextEvent | ResultEvent


# Input keys worth showing in a debug line, most telling first
_DETAIL_KEYS = ("description", "file_path", "pattern", "query", "url", "command")
_DETAIL_LIMIT = 80


def _tool_detail(input_data: dict) -> str:
    for key in _DETAIL_KEYS:
        value = input_data.get(key)
        if isinstance(value, str) and value:
            return value if len(value) <= _DETAIL_LIMIT else value[: _DETAIL_LIMIT - 3] + "..."
    return ""


def parse_stream_line(line: str) -> list[StreamEvent]:
    """
    Parse a single line of stream-json output.

    An assistant message can carry several tool_use blocks, so every one is
    returned (the step cap counts each of them). Lines that don't map to an
    event (system init, tool results, non-JSON noise) give an empty list.
    """
    line = line.strip()
    if not line:
        return []

    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON stream line: %s", line[:100])
        return []

    if not isinstance(data, dict):
        return []

    event_type = data.get("type")

    if event_type == "result":
        return [ResultEvent(
            success=data.get("subtype") == "success" and not data.get("is_error", False),
            text=data.get("result", "") or "",
            num_turns=data.get("num_turns"),
        )]

    if event_type != "assistant":
        return []

    events: list[StreamEvent] = []
    text_parts = []
    for block in data.get("message", {}).get("content", []):
        block_type = block.get("type")
        if block_type == "tool_use":
            events.append(ToolUseEvent(
                tool_name=block.get("name", ""),
                detail=_tool_detail(block.get("input") or {}),
            ))
        elif block_type == "text":
            text = block.get("text", "").strip()
            if text:
                text_parts.append(text)

    if text_parts:
        events.append(TextEvent(text="\n".join(text_parts)))
    return events


@dataclass
class StreamTranscript:
    """What the agent runner keeps from a stream: steps taken, last text, final result.

    Every tool_use block is one step. ``over_cap`` turns true on the first
    step past ``max_steps``.
    """
    max_steps: int
    steps: int = 0
    last_text: str | None = None
    result: ResultEvent | None = None

    @property
    def over_cap(self) -> bool:
        return self.steps > self.max_steps

    def feed(self, line: str) -> list[StreamEvent]:
        events = parse_stream_line(line)
        for event in events:
            if isinstance(event, ToolUseEvent):
                self.steps += 1
            elif isinstance(event, TextEvent):
                self.last_text = event.text
            elif isinstance(event, ResultEvent):
                self.result = event
        return events

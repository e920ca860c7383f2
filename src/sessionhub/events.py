"""Decoding of single transcript lines into typed events.

Every JSONL line becomes exactly one of the event classes below. The
discriminator is the event's tag fields (``type``, ``message.role``,
``hook_event``), never its position in the file. Shapes we do not know map
to ``UnrecognizedEvent`` so callers can skip them without failing the run.
"""

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Event:
    """Fields shared by every event kind."""

    timestamp: str = ""
    session_id: str | None = None
    cwd: str | None = None
    git_branch: str | None = None
    source_tool: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class UserEvent(Event):
    """A user turn: typed prompt text, images, or tool results."""

    content: str | list[Any] = ""
    tool_use_result: dict[str, Any] | None = None


@dataclass
class AssistantEvent(Event):
    content: list[Any] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    model: str | None = None


@dataclass
class ToolEvent(Event):
    """A hook-style tool record (``type: tool`` or ``hook_event: PreToolUse``)."""

    tool_name: str = "Unknown Tool"
    tool_input: dict[str, Any] | None = None
    tool_use_id: str | None = None
    hook_event: str = "PreToolUse"


@dataclass
class UnrecognizedEvent(Event):
    pass


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


# Per content-item type, fields that must be strings when present
_STRING_FIELDS = {
    "text": ("text",),
    "tool_use": ("id", "name"),
    "tool_result": ("tool_use_id",),
}


def _well_typed(item: Any) -> bool:
    if isinstance(item, str):
        return True
    if not isinstance(item, dict):
        return False
    fields = _STRING_FIELDS.get(item.get("type"), ())
    return all(item.get(key) is None or isinstance(item[key], str) for key in fields)


def _content_items(content: list[Any]) -> list[Any]:
    """Drop content items whose typed fields have the wrong JSON type."""
    return [item for item in content if _well_typed(item)]


def decode_event(line: str) -> Event:
    """Decode one JSONL line.

    Raises:
        ValueError: The line is not valid JSON.
    """
    record = json.loads(line)
    if not isinstance(record, dict):
        return UnrecognizedEvent()

    common = {
        "timestamp": record.get("timestamp") if isinstance(record.get("timestamp"), str) else "",
        "session_id": _as_str(record.get("sessionId")),
        "cwd": _as_str(record.get("cwd")),
        "git_branch": _as_str(record.get("gitBranch")),
        "source_tool": _as_str(record.get("tool")),
        "raw": record,
    }

    record_type = record.get("type")
    message = _as_dict(record.get("message"))
    role = message.get("role")

    if record_type == "user" and role == "user":
        content = message.get("content", "")
        if isinstance(content, list):
            content = _content_items(content)
        elif not isinstance(content, str):
            content = ""
        tool_use_result = record.get("toolUseResult")
        return UserEvent(
            **common,
            content=content,
            tool_use_result=tool_use_result if isinstance(tool_use_result, dict) else None,
        )

    if record_type == "assistant" and role == "assistant":
        content = message.get("content")
        return AssistantEvent(
            **common,
            content=_content_items(content) if isinstance(content, list) else [],
            usage=_as_dict(message.get("usage")),
            model=_as_str(message.get("model")),
        )

    if record_type == "tool" or record.get("hook_event") == "PreToolUse":
        tool = record.get("tool")
        tool_name = _as_str(record.get("tool_name")) or (
            _as_str(tool.get("name")) if isinstance(tool, dict) else None
        )
        tool_input = record.get("tool_input")
        return ToolEvent(
            **common,
            tool_name=tool_name or "Unknown Tool",
            tool_input=tool_input if isinstance(tool_input, dict) else None,
            tool_use_id=_as_str(record.get("tool_use_id")),
            hook_event=_as_str(record.get("hook_event")) or "PreToolUse",
        )

    return UnrecognizedEvent(**common)

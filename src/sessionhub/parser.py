"""Parse Claude Code JSONL transcripts into session aggregates."""

import logging
import os
import re
from collections import Counter
from datetime import datetime
from pathlib import Path, PurePath
from typing import Any, Iterable

from sessionhub.attachments import AttachmentExtractor, image_references
from sessionhub.events import AssistantEvent, ToolEvent, UserEvent, decode_event
from sessionhub.exchanges import apply_exchange_filter
from sessionhub.models import (
    TOKEN_FIELDS,
    AgentLink,
    AttachmentRecord,
    Interaction,
    ModelUsage,
    Plan,
    PlanningInfo,
    SessionAggregate,
    TodoSnapshot,
    TokenTotals,
)

logger = logging.getLogger("sessionhub.parser")

MAX_LOG_BYTES = 100 * 1024 * 1024
# Enough to get past huge first lines (pasted prompts) without a full parse
QUICK_READ_BYTES = 64 * 1024

_TIMESTAMP_PATTERN = re.compile(r'"timestamp"\s*:\s*"([^"]+)"')
_SESSION_ID_PATTERN = re.compile(r'"sessionId"\s*:\s*"([a-f0-9-]{36})"')

CODE_EDITING_TOOLS = frozenset({"Edit", "Write", "MultiEdit"})
# Tools recorded as snapshots/plans rather than generic tool calls
SNAPSHOT_TOOLS = frozenset({"TodoWrite", "ExitPlanMode"})

_SYSTEM_PREFIXES = (
    "<command-name>",
    "Caveat: The messages below were generated by the user while running local commands.",
)
_SYSTEM_MARKERS = (
    "<local-command-stdout>",
    "<local-command-stderr>",
    "<system-reminder>",
    "Error opening memory file",
    "Cancelled memory editing",
)

_LANGUAGE_BY_EXTENSION = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".java": "java",
    ".sol": "solidity",
    ".go": "go",
    ".rs": "rust",
    ".c": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".swift": "swift",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".php": "php",
    ".rb": "ruby",
    ".sh": "shell",
    ".bash": "shell",
    ".sql": "sql",
    ".html": "html",
    ".htm": "html",
    ".css": "css",
    ".scss": "css",
    ".sass": "css",
}

_GENERIC_LIMITS = {"description": 300, "prompt": 500, "command": None, "query": 500}
_GENERIC_PASSTHROUGH = ("questions", "subagent_type")
MCP_MAX_STRING = 1000
MCP_MAX_LIST = 10


def is_system_content(text: str) -> bool:
    """True for Claude Code's own meta messages (command echoes, reminders)."""
    return text.startswith(_SYSTEM_PREFIXES) or any(m in text for m in _SYSTEM_MARKERS)


def detect_language(file_path: str) -> str | None:
    return _LANGUAGE_BY_EXTENSION.get(PurePath(file_path.lower()).suffix)


def summarize_tool_input(tool_name: str, tool_input: dict[str, Any]) -> dict[str, Any] | None:
    """Keep only the input fields worth storing for a tool call.

    File-editing tools keep the path and diff fields, well-known tools keep
    their single key argument, and everything else keeps a capped set of
    common fields. MCP tools additionally keep small primitive values.
    """
    if tool_name in CODE_EDITING_TOOLS:
        summary: dict[str, Any] = {"file_path": tool_input.get("file_path")}
        if tool_name == "Write" and tool_input.get("content"):
            summary["content"] = tool_input["content"]
        if tool_name == "Edit":
            summary["old_string"] = tool_input.get("old_string")
            summary["new_string"] = tool_input.get("new_string")
        if tool_name == "MultiEdit" and tool_input.get("edits"):
            summary["edits"] = tool_input["edits"]
        return summary

    if tool_name == "Bash" and tool_input.get("command"):
        return {"command": tool_input["command"]}
    if tool_name in ("Grep", "Glob") and tool_input.get("pattern"):
        summary = {"pattern": tool_input["pattern"]}
        if tool_input.get("path"):
            summary["path"] = tool_input["path"]
        return summary
    if tool_name == "Read" and tool_input.get("file_path"):
        return {"file_path": tool_input["file_path"]}
    if tool_name == "WebSearch" and tool_input.get("query"):
        return {"query": tool_input["query"]}

    fields: dict[str, Any] = {}
    for key, limit in _GENERIC_LIMITS.items():
        value = tool_input.get(key)
        if not value:
            continue
        fields[key] = value[:limit] if limit and isinstance(value, str) else value
    for key in _GENERIC_PASSTHROUGH:
        if tool_input.get(key):
            fields[key] = tool_input[key]

    if tool_name.startswith("mcp__"):
        for key, value in tool_input.items():
            if fields.get(key):
                continue
            if isinstance(value, str) and len(value) < MCP_MAX_STRING:
                fields[key] = value
            elif isinstance(value, (bool, int, float)):
                fields[key] = value
            elif isinstance(value, list) and len(value) < MCP_MAX_LIST:
                fields[key] = value

    return fields or None


def extract_user_text(content: str | list[Any]) -> str:
    """Join the text parts of a user message, plus any image references."""
    if isinstance(content, str):
        return content

    parts: list[str] = []
    for item in content:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict) and item.get("type") == "text":
            parts.append(item.get("text") or "")
    parts.extend(f"[image #{index}]" for index in image_references(content))
    return "\n".join(parts).strip()


def _usage_metadata(usage: dict[str, Any]) -> dict[str, int]:
    result = {}
    for key in TOKEN_FIELDS:
        value = usage.get(key)
        result[key] = value if isinstance(value, int) and not isinstance(value, bool) else 0
    return result


def _add_usage(metadata: dict[str, Any], usage: dict[str, int]) -> None:
    for key, value in usage.items():
        metadata[key] = metadata.get(key, 0) + value


class _SessionBuilder:
    """Accumulates one parse. Lookup tables live and die with the instance."""

    def __init__(self, extractor: AttachmentExtractor | None = None):
        self.extractor = extractor
        self.interactions: list[Interaction] = []
        self.pending_tool_calls: dict[str, Interaction] = {}
        self.agent_links: dict[str, AgentLink] = {}
        self.plans: list[Plan] = []
        self.todo_snapshots: list[TodoSnapshot] = []
        self.attachments: list[AttachmentRecord] = []
        self.exit_plan_timestamps: list[str] = []
        self.model_counts: Counter[str] = Counter()
        self.last_model: str | None = None
        self.model_switches = 0
        self.languages: set[str] = set()
        self.messages: list[dict[str, str]] = []
        # Usage from assistant events that produced no interaction yet
        self.carried_usage = dict.fromkeys(TOKEN_FIELDS, 0)

        self.session_id = ""
        self.project_path = ""
        self.cwd = ""
        self.git_branch = ""
        self.tool = "claude-code"
        self.start_time = ""
        self.end_time = ""

    def feed(self, line: str) -> None:
        event = decode_event(line)

        if not self.session_id and event.session_id:
            self.session_id = event.session_id
            self.project_path = event.cwd or os.getcwd()
            self.cwd = self.project_path
            self.git_branch = event.git_branch or "main"
            self.start_time = event.timestamp
            if event.source_tool:
                self.tool = event.source_tool
        if not self.start_time and event.timestamp:
            self.start_time = event.timestamp
        if event.timestamp:
            self.end_time = event.timestamp

        if isinstance(event, UserEvent):
            self._on_user(event)
        elif isinstance(event, AssistantEvent):
            self._on_assistant(event)
        elif isinstance(event, ToolEvent):
            self._on_tool(event)

    def _note_file(self, file_path: Any) -> None:
        if isinstance(file_path, str) and file_path:
            language = detect_language(file_path)
            if language:
                self.languages.add(language)

    def _on_user(self, event: UserEvent) -> None:
        content = event.content
        if event.tool_use_result:
            self._note_file(event.tool_use_result.get("filePath"))

        if isinstance(content, list):
            if self.extractor and self.session_id:
                self.extractor.process(
                    content, self.session_id, len(self.interactions), self.attachments
                )
            for item in content:
                if isinstance(item, dict) and item.get("type") == "tool_result" and item.get("tool_use_id"):
                    self._on_tool_result(item["tool_use_id"], event)

        text = extract_user_text(content)
        if text and not is_system_content(text):
            self.interactions.append(Interaction("prompt", text, event.timestamp))
            self.messages.append({"role": "user", "content": text, "timestamp": event.timestamp})

    def _on_tool_result(self, tool_use_id: str, event: UserEvent) -> None:
        call = self.pending_tool_calls.pop(tool_use_id, None)
        if call is None:
            return

        tool_name = call.tool_name
        result = event.tool_use_result
        tool_input = call.metadata.get("tool_input") or {}

        if tool_name == "Task" and result and result.get("agentId"):
            agent_id = str(result["agentId"])
            self.agent_links[agent_id] = AgentLink(
                interaction_index=len(self.interactions),
                task_description=tool_input.get("description") or None,
                task_prompt=tool_input.get("prompt") or None,
            )
            logger.info("Detected sub-agent: %s", agent_id)

        if not result:
            return

        if tool_name in CODE_EDITING_TOOLS:
            response = {
                "filePath": result.get("filePath"),
                "structuredPatch": result.get("structuredPatch"),
            }
            if tool_name == "Edit":
                response["oldString"] = result.get("oldString")
                response["newString"] = result.get("newString")
            content = f"Tool completed: {tool_name}"
        elif tool_name == "WebSearch":
            response = {"query": result.get("query"), "results": result.get("results")}
            content = f"WebSearch completed: {tool_input.get('query') or 'query'}"
        else:
            return

        self.interactions.append(
            Interaction(
                "tool_call",
                content,
                event.timestamp,
                {"tool_name": tool_name, "hook_event": "PostToolUse", "tool_response": response},
            )
        )

    def _on_assistant(self, event: AssistantEvent) -> None:
        if event.model:
            self.model_counts[event.model] += 1
            if self.last_model and self.last_model != event.model:
                self.model_switches += 1
            self.last_model = event.model

        texts = [
            item["text"]
            for item in event.content
            if isinstance(item, dict) and item.get("type") == "text" and item.get("text")
        ]

        usage = _usage_metadata(event.usage)
        _add_usage(usage, self.carried_usage)
        self.carried_usage = dict.fromkeys(TOKEN_FIELDS, 0)

        response: Interaction | None = None
        tool_calls: list[Interaction] = []
        for item in event.content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "text" and item.get("text") and response is None:
                response_text = "\n".join(texts).strip()
                response = Interaction("response", response_text, event.timestamp, dict(usage))
                self.interactions.append(response)
                self.messages.append(
                    {"role": "assistant", "content": response_text, "timestamp": event.timestamp}
                )
            elif item.get("type") == "tool_use":
                interaction = self._on_tool_use(item, event.timestamp)
                if interaction is not None:
                    tool_calls.append(interaction)

        if response is None:
            if tool_calls:
                if any(usage.values()):
                    _add_usage(tool_calls[0].metadata, usage)
            else:
                self.carried_usage = usage

    def _on_tool_use(self, item: dict[str, Any], timestamp: str) -> Interaction | None:
        tool_name = item.get("name") or "Unknown Tool"
        tool_input = item.get("input") if isinstance(item.get("input"), dict) else {}
        self._note_file(tool_input.get("file_path"))

        if tool_name == "ExitPlanMode":
            self.exit_plan_timestamps.append(timestamp)
            if tool_input.get("plan"):
                self.plans.append(Plan(timestamp, tool_input["plan"]))
            return None
        if tool_name == "TodoWrite":
            todos = tool_input.get("todos")
            if isinstance(todos, list):
                self.todo_snapshots.append(TodoSnapshot(timestamp, todos))
            return None

        metadata: dict[str, Any] = {"tool_name": tool_name}
        summary = summarize_tool_input(tool_name, tool_input)
        if summary:
            metadata["tool_input"] = summary
        metadata["hook_event"] = "PreToolUse"

        interaction = Interaction("tool_call", f"Tool: {tool_name}", timestamp, metadata)
        self.interactions.append(interaction)
        if item.get("id"):
            self.pending_tool_calls[item["id"]] = interaction
        return interaction

    def _on_tool(self, event: ToolEvent) -> None:
        if event.tool_name in SNAPSHOT_TOOLS:
            return
        tool_input = event.tool_input or {}
        self._note_file(tool_input.get("file_path"))

        metadata: dict[str, Any] = {"tool_name": event.tool_name, "hook_event": event.hook_event}
        summary = summarize_tool_input(event.tool_name, tool_input) if tool_input else None
        if summary:
            metadata["tool_input"] = summary

        interaction = Interaction("tool_call", f"Tool: {event.tool_name}", event.timestamp, metadata)
        self.interactions.append(interaction)
        if event.tool_use_id:
            self.pending_tool_calls[event.tool_use_id] = interaction

    def build(self) -> SessionAggregate:
        if any(self.carried_usage.values()) and self.interactions:
            _add_usage(self.interactions[-1].metadata, self.carried_usage)

        model_usage = None
        if self.model_counts:
            usage = dict(self.model_counts)
            model_usage = ModelUsage(
                usage=usage,
                primary_model=max(usage, key=usage.__getitem__),
                switches=self.model_switches,
            )

        planning = None
        if self.exit_plan_timestamps:
            planning = PlanningInfo(tuple(self.exit_plan_timestamps))

        interactions = tuple(self.interactions)
        project_path = self.project_path or os.getcwd()
        return SessionAggregate(
            session_id=self.session_id,
            project_path=project_path,
            cwd=self.cwd or project_path,
            start_time=self.start_time,
            end_time=self.end_time,
            git_branch=self.git_branch or "main",
            interactions=interactions,
            tokens=TokenTotals.from_interactions(interactions),
            languages=tuple(sorted(self.languages)),
            model_usage=model_usage,
            planning=planning,
            plans=tuple(self.plans),
            todo_snapshots=tuple(self.todo_snapshots),
            attachments=tuple(self.attachments),
            agent_links=dict(self.agent_links),
            tool=self.tool,
        )


def parse_lines(
    lines: Iterable[str],
    extractor: AttachmentExtractor | None = None,
    source: str = "<transcript>",
) -> tuple[SessionAggregate, list[dict[str, str]]] | None:
    """Parse transcript lines.

    Returns the aggregate and the plain role/content message list, or None
    if there was not a single non-blank line.
    """
    builder = _SessionBuilder(extractor)
    seen_any = False

    for line_num, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        seen_any = True
        try:
            builder.feed(line)
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            # Partial or corrupt record; the rest of the log is still usable
            logger.warning("Skipping malformed line %d in %s: %s", line_num, source, e)

    if not seen_any:
        return None
    return builder.build(), builder.messages


def parse_session_log(
    path: Path,
    last_exchanges: int | None = None,
    extractor: AttachmentExtractor | None = None,
    max_bytes: int = MAX_LOG_BYTES,
) -> SessionAggregate | None:
    """Parse a transcript file into a SessionAggregate.

    Args:
        path: JSONL transcript.
        last_exchanges: Keep only the last N prompt/response exchanges.
        extractor: Uploads inline images when given.
        max_bytes: Files larger than this are refused.

    Returns:
        The aggregate, or None when the file is empty, unreadable or too large.
    """
    result = parse_transcript(path, extractor, max_bytes)
    if result is None:
        return None

    aggregate, _ = result
    if last_exchanges and last_exchanges > 0:
        aggregate = apply_exchange_filter(aggregate, last_exchanges)
        logger.info(
            "Filtered to last %d exchanges: %d interactions",
            last_exchanges,
            len(aggregate.interactions),
        )
    return aggregate


def parse_transcript(
    path: Path,
    extractor: AttachmentExtractor | None,
    max_bytes: int,
) -> tuple[SessionAggregate, list[dict[str, str]]] | None:
    try:
        size = path.stat().st_size
    except OSError as e:
        logger.error("Cannot read transcript %s: %s", path, e)
        return None

    if size > max_bytes:
        logger.error("Transcript file too large: %d bytes (max %d). Skipping.", size, max_bytes)
        return None

    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return parse_lines(f, extractor, source=str(path))
    except OSError as e:
        logger.error("Failed to parse transcript file %s: %s", path, e)
        return None


def _read_head(path: Path) -> str | None:
    try:
        with open(path, "rb") as f:
            head = f.read(QUICK_READ_BYTES)
    except OSError:
        return None
    return head.decode("utf-8", errors="ignore") if head else None


def quick_extract_timestamp(path: Path) -> datetime | None:
    """Find the first timestamp in a transcript without a full parse."""
    head = _read_head(path)
    if head is None:
        return None
    # Regex rather than JSON: the 64 KiB window may cut a line in half
    match = _TIMESTAMP_PATTERN.search(head)
    if not match:
        return None
    try:
        return datetime.fromisoformat(match.group(1).replace("Z", "+00:00"))
    except ValueError:
        return None


def quick_extract_session_id(path: Path) -> str | None:
    """Find the session id in a transcript without a full parse."""
    head = _read_head(path)
    if head is None:
        return None
    match = _SESSION_ID_PATTERN.search(head)
    return match.group(1) if match else None


def has_meaningful_content(path: Path) -> bool:
    """True if the transcript holds at least one real prompt and one assistant reply."""
    has_user = False
    has_assistant = False

    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = decode_event(line)
                except ValueError:
                    continue
                if event.raw.get("isMeta") is True:
                    continue

                if isinstance(event, UserEvent):
                    if isinstance(event.content, str):
                        has_user = has_user or _is_real_prompt(event.content)
                    else:
                        has_user = has_user or any(
                            isinstance(c, dict) and c.get("type") == "text"
                            and _is_real_prompt(c.get("text") or "")
                            for c in event.content
                        )
                elif isinstance(event, AssistantEvent) and event.content:
                    has_assistant = True

                if has_user and has_assistant:
                    return True
    except OSError as e:
        logger.debug("Cannot check transcript content %s: %s", path, e)
        return False

    return False


_META_PREFIXES = (
    "<local-command-caveat>",
    "<command-name>",
    "<local-command-stdout>",
    "<local-command-stderr>",
    "<system-reminder>",
    "[system",
    "<hook-",
    "<file-history-",
)


def _is_real_prompt(text: str) -> bool:
    trimmed = text.strip()
    return bool(trimmed) and not trimmed.startswith(_META_PREFIXES)

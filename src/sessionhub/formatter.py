"""Render stored observations as a markdown context block."""

import math
from collections import Counter
from datetime import datetime
from typing import Iterable

from sessionhub.models import Observation

TYPE_EMOJI = {
    "bugfix": "🔧",
    "feature": "✨",
    "decision": "📋",
    "discovery": "🔍",
    "refactor": "🔄",
    "change": "📝",
}

EMPTY_CONTEXT = "# Project Memory\n\nNo active observations recorded yet."
TRUNCATION_NOTICE = "\n\n*[Context truncated to fit token budget]*"
CHARS_PER_TOKEN = 4


def _scope(obs: Observation) -> str:
    return obs.scope or "session"


def _state(obs: Observation) -> str:
    return obs.lifecycle_state or "active"


def estimate_tokens(text: str) -> int:
    """Rough token count, one token per four characters."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def filter_observations(
    observations: Iterable[Observation],
    include_draft: bool = False,
    include_deprecated: bool = False,
) -> list[Observation]:
    """Drop observations that should not be injected.

    Superseded is always dropped; deprecated and draft only when asked for.
    Unknown states are dropped.
    """
    kept = []
    for obs in observations:
        state = _state(obs)
        if state == "superseded":
            continue
        if state == "deprecated" and not include_deprecated:
            continue
        if state == "draft" and not include_draft:
            continue
        if state not in ("active", "draft", "deprecated"):
            continue
        kept.append(obs)
    return kept


def _priority(obs: Observation) -> int:
    scope, state = _scope(obs), _state(obs)
    if scope == "project" and state == "active":
        return 0
    if scope == "session" and state == "active":
        return 1
    if state == "draft":
        return 2
    return 3


def sort_observations(observations: Iterable[Observation]) -> list[Observation]:
    """Project-scoped active first, then session active, then drafts. Stable."""
    return sorted(observations, key=_priority)


def _parse_date(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None


def _short_date(value: str) -> str:
    date = _parse_date(value)
    return f"{date:%b} {date.day}" if date else value


def _long_date(value: str) -> str:
    date = _parse_date(value)
    return f"{date:%b} {date.day}, {date.year}" if date else value


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def _table_row(obs: Observation, index: int) -> str:
    files = ", ".join(obs.files[:2]) if obs.files else "-"
    if len(obs.files) > 2:
        files = f"{files}, +{len(obs.files) - 2}"
    emoji = TYPE_EMOJI.get(obs.type, "•")
    return f"| {index + 1} | {emoji} {obs.type} | {obs.title} | {files} | {_short_date(obs.created_at)} |"


def _details(obs: Observation, index: int) -> str:
    parts = [f"### {index + 1}. {TYPE_EMOJI.get(obs.type, '•')} {obs.title}\n\n"]
    if obs.subtitle:
        parts.append(f"**{obs.subtitle}**\n\n")
    parts.append(f"{obs.narrative}\n\n")
    if obs.facts:
        parts.append("**Key Facts:**\n")
        parts.extend(f"- {fact}\n" for fact in obs.facts)
        parts.append("\n")
    if obs.files:
        parts.append(f"**Files:** {', '.join(obs.files)}\n\n")
    if obs.concepts:
        parts.append(f"**Tags:** {', '.join(obs.concepts)}\n\n")
    parts.append(f"*{_long_date(obs.created_at)}*\n\n")
    parts.append("---\n\n")
    return "".join(parts)


def format_observations(
    observations: list[Observation],
    project_name: str | None = None,
    top_n: int = 10,
    include_table: bool = True,
    include_full_details: bool = True,
    include_draft: bool = False,
    include_deprecated: bool = False,
) -> str:
    """Render observations as progressive-disclosure markdown.

    An overview table lists every observation and the first ``top_n`` get a
    full section. If nothing survives filtering, session-scoped active
    observations from the original list are shown instead.
    """
    shown = sort_observations(
        filter_observations(observations, include_draft, include_deprecated)
    )

    if not shown:
        fallback = [o for o in observations if _scope(o) == "session" and _state(o) == "active"]
        if not fallback:
            return EMPTY_CONTEXT
        return format_observations(
            fallback,
            project_name=project_name,
            top_n=top_n,
            include_table=include_table,
            include_full_details=include_full_details,
            include_draft=True,
            include_deprecated=include_deprecated,
        )

    project_title = f" ({project_name})" if project_name else ""
    scope_note = " (project-scoped)" if any(o.scope == "project" for o in shown) else ""
    out = [
        f"# Project Memory{project_title}{scope_note}\n\n",
        f"{_plural(len(shown), 'active observation')} for context.\n\n",
    ]

    if include_table:
        out.append("## Overview\n\n")
        out.append("| # | Type | Title | Files | Date |\n")
        out.append("|---|------|-------|-------|------|\n")
        out.extend(_table_row(obs, i) + "\n" for i, obs in enumerate(shown))
        out.append("\n")

    if include_full_details:
        detail_count = min(top_n, len(shown))
        out.append(f"## Recent Details (Top {detail_count})\n\n")
        out.extend(_details(obs, i) for i, obs in enumerate(shown[:detail_count]))
        remaining = len(shown) - detail_count
        if remaining > 0:
            out.append(
                f"*{_plural(remaining, 'more observation')} available (see overview table above)*\n\n"
            )

    return "".join(out)


def truncate_to_budget(context: str, max_tokens: int) -> str:
    """Cut the rendered context to ``max_tokens * 4`` characters plus a notice."""
    max_tokens = max(max_tokens, 0)
    if estimate_tokens(context) <= max_tokens:
        return context
    return context[: max_tokens * CHARS_PER_TOKEN] + TRUNCATION_NOTICE


def context_stats(observations: list[Observation]) -> dict:
    """Observation count, token estimate of the default rendering, and counts per type."""
    return {
        "observation_count": len(observations),
        "token_estimate": estimate_tokens(format_observations(observations)),
        "type_counts": dict(Counter(obs.type for obs in observations)),
    }

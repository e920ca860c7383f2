"""Attach spawned sub-agent transcripts to their parent session."""

import dataclasses
import logging
from pathlib import Path

from sessionhub.models import SessionAggregate, SubSession, TokenTotals
from sessionhub.parser import MAX_LOG_BYTES, parse_transcript
from sessionhub.project import CLAUDE_PROJECTS_DIR, claude_project_dir

logger = logging.getLogger("sessionhub.subagents")


def candidate_paths(project_dir: Path, session_id: str, agent_id: str) -> list[Path]:
    """Where a sub-agent transcript may live, newest layout first."""
    filename = f"agent-{agent_id}.jsonl"
    return [
        project_dir / session_id / "subagents" / filename,
        project_dir / filename,
    ]


class SubAgentLinker:
    """Resolves agent links to SubSessions and folds their tokens into the parent."""

    def __init__(self, projects_root: Path = CLAUDE_PROJECTS_DIR, max_bytes: int = MAX_LOG_BYTES):
        self.projects_root = projects_root
        self.max_bytes = max_bytes
        self.failures = 0

    def find_transcript(self, aggregate: SessionAggregate, agent_id: str) -> Path | None:
        project_dir = claude_project_dir(aggregate.project_path, self.projects_root)
        for path in candidate_paths(project_dir, aggregate.session_id, agent_id):
            if path.is_file():
                logger.info("Found sub-agent file: %s", path)
                return path
        return None

    def parse_sub_session(self, aggregate: SessionAggregate, agent_id: str) -> SubSession | None:
        link = aggregate.agent_links[agent_id]
        path = self.find_transcript(aggregate, agent_id)
        if path is None:
            # Missing sub-agent transcripts are expected (cleaned up, never written)
            logger.info("Sub-agent file not found for %s", agent_id)
            return None

        result = parse_transcript(path, None, self.max_bytes)
        if result is None:
            if path.stat().st_size > 0:
                self.failures += 1
                logger.warning("Could not parse sub-agent file %s", path)
            return None

        sub, messages = result
        return SubSession(
            agent_id=agent_id,
            task_description=link.task_description,
            task_prompt=link.task_prompt,
            interaction_index=link.interaction_index,
            interactions=sub.interactions,
            messages=tuple(messages),
            start_time=sub.start_time,
            end_time=sub.end_time or None,
            tokens=sub.tokens,
        )

    def link(self, aggregate: SessionAggregate) -> SessionAggregate:
        """Return a new aggregate with sub-sessions attached.

        Parent totals gain each sub-session's input and output tokens.
        """
        if not aggregate.agent_links:
            return aggregate

        logger.info("Checking for %d sub-agent files", len(aggregate.agent_links))
        sub_sessions = []
        tokens = aggregate.tokens
        for agent_id in aggregate.agent_links:
            sub = self.parse_sub_session(aggregate, agent_id)
            if sub is None:
                continue
            sub_sessions.append(sub)
            tokens = tokens + TokenTotals(input=sub.tokens.input, output=sub.tokens.output)

        if sub_sessions:
            logger.info("Discovered %d sub-agent conversations", len(sub_sessions))

        return dataclasses.replace(
            aggregate,
            sub_sessions=aggregate.sub_sessions + tuple(sub_sessions),
            tokens=tokens,
        )

"""Tests for sub-agent transcript linking."""

import pytest
from conftest import SESSION_ID, assistant, user, write_jsonl

from sessionhub.parser import parse_session_log
from sessionhub.subagents import SubAgentLinker, candidate_paths

AGENT_ID = "a1b2c3"


def _parent_records():
    return [
        user("look around", "2024-01-15T10:00:00Z"),
        assistant(
            [
                {
                    "type": "tool_use",
                    "id": "task_1",
                    "name": "Task",
                    "input": {"description": "Explore auth", "prompt": "Find the login flow"},
                }
            ],
            "2024-01-15T10:00:05Z",
            usage={"input_tokens": 100, "output_tokens": 10},
        ),
        user(
            [{"type": "tool_result", "tool_use_id": "task_1", "content": "done"}],
            "2024-01-15T10:01:00Z",
            toolUseResult={"agentId": AGENT_ID},
        ),
    ]


def _agent_records():
    return [
        user("Find the login flow", "2024-01-15T10:00:10Z"),
        assistant(
            [{"type": "text", "text": "It lives in auth.py"}],
            "2024-01-15T10:00:50Z",
            usage={"input_tokens": 200, "output_tokens": 25, "cache_read_input_tokens": 7},
        ),
    ]


@pytest.fixture
def projects_root(temp_dir):
    return temp_dir / "projects"


@pytest.fixture
def parent(temp_dir):
    return parse_session_log(write_jsonl(temp_dir / "parent.jsonl", _parent_records()))


def test_candidate_paths_prefer_new_layout(temp_dir):
    paths = candidate_paths(temp_dir, SESSION_ID, AGENT_ID)

    assert paths == [
        temp_dir / SESSION_ID / "subagents" / f"agent-{AGENT_ID}.jsonl",
        temp_dir / f"agent-{AGENT_ID}.jsonl",
    ]


def test_links_sub_session_from_new_layout(parent, projects_root):
    project_dir = projects_root / "-home-dev-my-app"
    write_jsonl(project_dir / SESSION_ID / "subagents" / f"agent-{AGENT_ID}.jsonl", _agent_records())
    linker = SubAgentLinker(projects_root)

    linked = linker.link(parent)

    assert len(linked.sub_sessions) == 1
    sub = linked.sub_sessions[0]
    assert sub.agent_id == AGENT_ID
    assert sub.task_description == "Explore auth"
    assert sub.interaction_index == 2
    assert [i.type for i in sub.interactions] == ["prompt", "response"]
    assert sub.messages[0] == {
        "role": "user",
        "content": "Find the login flow",
        "timestamp": "2024-01-15T10:00:10Z",
    }
    assert linked.tokens.input == 300
    assert linked.tokens.output == 35
    # Cache tokens stay with the sub-session
    assert linked.tokens.cache_read == 0
    assert linker.failures == 0


def test_links_sub_session_from_legacy_layout(parent, projects_root):
    write_jsonl(projects_root / "-home-dev-my-app" / f"agent-{AGENT_ID}.jsonl", _agent_records())

    linked = SubAgentLinker(projects_root).link(parent)

    assert [s.agent_id for s in linked.sub_sessions] == [AGENT_ID]


def test_missing_transcript_is_not_a_failure(parent, projects_root):
    linker = SubAgentLinker(projects_root)

    linked = linker.link(parent)

    assert linked.sub_sessions == ()
    assert linked.tokens == parent.tokens
    assert linker.failures == 0


def test_empty_transcript_is_not_a_failure(parent, projects_root):
    transcript = projects_root / "-home-dev-my-app" / SESSION_ID / "subagents" / f"agent-{AGENT_ID}.jsonl"
    transcript.parent.mkdir(parents=True)
    transcript.write_text("")
    linker = SubAgentLinker(projects_root)

    linked = linker.link(parent)

    assert linked.sub_sessions == ()
    assert linked.tokens == parent.tokens
    assert linker.failures == 0


def test_oversized_transcript_counts_as_failure(parent, projects_root):
    write_jsonl(projects_root / "-home-dev-my-app" / f"agent-{AGENT_ID}.jsonl", _agent_records())
    linker = SubAgentLinker(projects_root, max_bytes=10)

    linked = linker.link(parent)

    assert linked.sub_sessions == ()
    assert linker.failures == 1


def test_session_without_links_is_unchanged(sample_session_jsonl, projects_root):
    session = parse_session_log(sample_session_jsonl)

    assert SubAgentLinker(projects_root).link(session) is session

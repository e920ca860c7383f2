"""Pytest fixtures for sessionhub tests."""

import json
import tempfile
from pathlib import Path

import pytest

from sessionhub.config import Settings
from sessionhub.models import Observation, UploadResult, UpsertResult

SESSION_ID = "11111111-2222-3333-4444-555555555555"
PROJECT_PATH = "/home/dev/my_app"


def write_jsonl(path: Path, records: list) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for record in records:
            f.write((record if isinstance(record, str) else json.dumps(record)) + "\n")
    return path


def user(content, timestamp, **extra):
    return {
        "type": "user",
        "sessionId": SESSION_ID,
        "cwd": PROJECT_PATH,
        "gitBranch": "fix/login",
        "timestamp": timestamp,
        "message": {"role": "user", "content": content},
        **extra,
    }


def assistant(content, timestamp, usage=None, model="claude-sonnet-4"):
    message = {"role": "assistant", "content": content, "model": model}
    if usage is not None:
        message["usage"] = usage
    return {
        "type": "assistant",
        "sessionId": SESSION_ID,
        "timestamp": timestamp,
        "message": message,
    }


def bug_fix_records():
    """One prompt, one Bash call, one reply: 120 tokens in total."""
    return [
        user("fix the bug", "2024-01-15T10:00:00Z"),
        assistant(
            [
                {
                    "type": "tool_use",
                    "id": "toolu_1",
                    "name": "Bash",
                    "input": {"command": "pytest -x", "description": "Run tests"},
                }
            ],
            "2024-01-15T10:00:05Z",
            usage={"input_tokens": 40, "output_tokens": 10},
        ),
        user(
            [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "1 failed"}],
            "2024-01-15T10:00:08Z",
            toolUseResult={"stdout": "1 failed", "stderr": ""},
        ),
        assistant(
            [{"type": "text", "text": "Fixed the off-by-one in the login loop."}],
            "2024-01-15T10:00:20Z",
            usage={"input_tokens": 50, "output_tokens": 20, "cache_read_input_tokens": 5},
        ),
    ]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_session_jsonl(temp_dir):
    return write_jsonl(temp_dir / f"{SESSION_ID}.jsonl", bug_fix_records())


@pytest.fixture
def settings(temp_dir):
    return Settings(api_key="test-key", backend_url="http://localhost:8080", config_dir=temp_dir)


class FakeUploader:
    """Uploader that succeeds except for the call numbers listed in ``fail_on``."""

    def __init__(self, fail_on=(), raise_on=()):
        self.fail_on = set(fail_on)
        self.raise_on = set(raise_on)
        self.calls = []

    def upload_attachment(self, session_id, interaction_index, base64_data, media_type, filename=None):
        self.calls.append((session_id, interaction_index, media_type))
        n = len(self.calls)
        if n in self.raise_on:
            raise ConnectionError("upload connection reset")
        if n in self.fail_on:
            return UploadResult(success=False, error="storage unavailable")
        return UploadResult(
            success=True,
            storage_path=f"team/{session_id}/image-{n}.png",
            public_url=f"https://cdn.example.com/image-{n}.png",
        )


class FakeClient(FakeUploader):
    """In-memory stand-in for RemoteSessionClient."""

    def __init__(
        self,
        quota=None,
        public_key=None,
        projects=(),
        preferences=None,
        observations=None,
        upsert_error=None,
        quota_error=None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.quota = quota
        self.public_key = public_key
        self.projects = list(projects)
        self.preferences = preferences
        self.observations = observations
        self.upsert_error = upsert_error
        self.quota_error = quota_error
        self.upserts = []

    def get_public_key(self):
        return self.public_key

    def list_projects(self):
        return self.projects

    def get_quota(self):
        if self.quota_error:
            raise self.quota_error
        return self.quota

    def get_preferences(self):
        if isinstance(self.preferences, Exception):
            raise self.preferences
        return self.preferences

    def get_observations(self, project_id, limit=None):
        if self.observations is None:
            return None
        return self.observations, len(self.observations)

    def upsert_session(self, request):
        if self.upsert_error:
            raise self.upsert_error
        self.upserts.append(request)
        return UpsertResult(
            session_id=f"remote-{len(self.upserts)}",
            was_updated=False,
            new_interactions_count=len(request.get("interactions", [])),
        )


@pytest.fixture
def fake_client():
    return FakeClient()


def make_observation(id="obs-1", scope=None, state=None, **kwargs):
    defaults = {
        "session_id": "s1",
        "project_id": "p1",
        "type": "decision",
        "title": f"Observation {id}",
        "narrative": "Something we learned.",
        "created_at": "2024-03-05T10:00:00Z",
    }
    defaults.update(kwargs)
    return Observation(id=id, scope=scope, lifecycle_state=state, **defaults)

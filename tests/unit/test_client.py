"""Tests for the SessionHub backend client."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from sessionhub.client import (
    RemoteSessionClient,
    determine_session_type,
    serialize_metadata,
    shape_todo_snapshots,
)
from sessionhub.errors import (
    OnboardingRequiredError,
    QuotaExceededError,
    RemoteError,
    TransientError,
)
from sessionhub.models import Interaction

BASE = "http://localhost:8080/sessionhub.v1.SessionHubService"


def _response(status=200, body=None, reason="OK"):
    response = requests.Response()
    response.status_code = status
    response.reason = reason
    response._content = json.dumps(body).encode("utf-8") if body is not None else b""
    return response


@pytest.fixture
def http():
    session = requests.Session()
    session.post = MagicMock(return_value=_response(body={}))
    return session


@pytest.fixture
def client(http):
    return RemoteSessionClient("test-key", "http://localhost:8080/", session=http)


def test_serialize_metadata():
    assert serialize_metadata({"tool_name": "Bash", "tool_input": {"command": "ls"}, "input_tokens": 5}) == {
        "tool_name": "Bash",
        "tool_input": '{"command":"ls"}',
        "input_tokens": "5",
    }
    assert serialize_metadata(None) == {}


def test_determine_session_type():
    assert determine_session_type("Fix login", "main") == "bugfix"
    assert determine_session_type("cleanup", "refactor/db") == "refactor"
    assert determine_session_type("experiment with caching", None) == "exploration"
    assert determine_session_type("debug flaky test", "main") == "debugging"
    assert determine_session_type("add export", "main") == "feature"


def test_shape_todo_snapshots():
    snapshots = [
        {"timestamp": "t1", "todos": [{"content": "a", "status": "pending", "activeForm": "Doing a"}]},
        {"timestamp": "t2", "todos": []},
        {"timestamp": "", "todos": [{"content": "b"}]},
    ]

    assert shape_todo_snapshots(snapshots) == [
        {"timestamp": "t1", "todos": [{"content": "a", "status": "pending", "active_form": "Doing a"}]}
    ]


def test_client_sets_connect_headers(client):
    assert client.session.headers["Authorization"] == "Bearer test-key"
    assert client.session.headers["Connect-Protocol-Version"] == "1"
    assert client.base_url == "http://localhost:8080"


def test_upsert_posts_with_mutation_timeout(client, http):
    http.post.return_value = _response(
        body={"sessionId": "sess-1", "wasUpdated": True, "newInteractionsCount": "4"}
    )

    result = client.upsert_session({"project_name": "my_app", "interactions": []})

    http.post.assert_called_once_with(
        f"{BASE}/UpsertSession",
        json={"project_name": "my_app", "interactions": []},
        timeout=60.0,
    )
    assert result.session_id == "sess-1"
    assert result.was_updated
    assert result.new_interactions_count == 4
    assert not result.analysis_triggered


def test_validate_credential(client, http):
    http.post.return_value = _response(
        body={"userId": "u1", "email": "dev@example.com", "subscriptionTier": "pro"}
    )

    user = client.validate_credential()

    assert user.email == "dev@example.com"
    assert user.subscription_tier == "pro"
    assert http.post.call_args.kwargs["timeout"] == 30.0


def test_rejected_credential_is_none(client, http):
    http.post.return_value = _response(401, {"code": "unauthenticated", "message": "bad key"}, "Unauthorized")
    assert client.validate_credential() is None

    http.post.return_value = _response(404, None, "Not Found")
    assert client.validate_credential() is None


def test_not_found_lookups_are_empty(client, http):
    http.post.return_value = _response(404, {"code": "not_found", "message": "nothing"})

    assert client.list_projects() == []
    assert client.get_preferences() is None
    assert client.get_observations("p1") is None
    assert client.get_public_key() is None
    assert client.get_quota() is None


def test_quota_error_is_parsed(client, http):
    http.post.return_value = _response(
        429,
        {
            "code": "resource_exhausted",
            "message": "session_limit_exceeded:current=10:limit=10:upgrade_url=https://sessionhub.dev/pricing",
        },
    )

    with pytest.raises(QuotaExceededError) as exc_info:
        client.upsert_session({})

    assert exc_info.value.current_count == 10
    assert exc_info.value.limit == 10
    assert exc_info.value.upgrade_url == "https://sessionhub.dev/pricing"


def test_onboarding_error(client, http):
    http.post.return_value = _response(
        400, {"code": "failed_precondition", "message": "no team found, complete onboarding first"}
    )

    with pytest.raises(OnboardingRequiredError) as exc_info:
        client.upsert_session({})

    assert exc_info.value.onboarding_url.endswith("/onboarding")


def test_timeout_and_unavailable_are_transient(client, http):
    http.post.side_effect = requests.Timeout()
    with pytest.raises(TransientError) as exc_info:
        client.get_quota()
    assert exc_info.value.retryable
    assert exc_info.value.code == "deadline_exceeded"

    http.post.side_effect = None
    http.post.return_value = _response(503, None, "Service Unavailable")
    with pytest.raises(TransientError) as exc_info:
        client.get_quota()
    assert exc_info.value.code == "unavailable"


def test_unknown_error_is_remote_error(client, http):
    http.post.return_value = _response(500, {"code": "data_loss", "message": "disk on fire"})

    with pytest.raises(RemoteError, match="disk on fire"):
        client.create_project("my_app")


def test_transport_failures_are_mapped(client, http):
    http.post.side_effect = requests.exceptions.ChunkedEncodingError()
    with pytest.raises(TransientError) as exc_info:
        client.get_quota()
    assert exc_info.value.code == "unavailable"

    http.post.side_effect = requests.TooManyRedirects("redirect loop")
    with pytest.raises(RemoteError, match="redirect loop") as exc_info:
        client.get_quota()
    assert exc_info.value.code == "unknown"


def test_batch_continues_after_failed_chunk(client, http):
    http.post.side_effect = [
        _response(body={"processed": 2}),
        _response(500, {"code": "internal", "message": "boom"}),
        _response(body={"processed": 1}),
    ]
    interactions = [Interaction("prompt", f"p{i}", f"2024-01-15T10:00:0{i}Z") for i in range(5)]

    result = client.add_interactions_batch("sess-1", interactions, chunk_size=2)

    assert result.processed == 3
    assert result.failed == 2
    assert not result.success
    assert http.post.call_count == 3
    assert len(http.post.call_args_list[2].kwargs["json"]["interactions"]) == 1


def test_update_session_end_time(client, http):
    assert client.update_session_end_time("sess-1", "2024-01-15T11:00:00Z")

    http.post.assert_called_once_with(
        f"{BASE}/UpdateSession",
        json={"session_id": "sess-1", "end_time": "2024-01-15T11:00:00Z"},
        timeout=30.0,
    )


def test_create_project(client, http):
    http.post.return_value = _response(body={"id": "p9", "name": "my_app"})

    project = client.create_project("my_app", git_remote="git@github.com:acme/my_app.git")

    assert project.id == "p9"
    assert project.display_name == "my_app"
    assert http.post.call_args.kwargs["json"]["git_remote"] == "git@github.com:acme/my_app.git"


def test_upload_never_raises(client, http):
    http.post.side_effect = requests.ConnectionError("reset")

    result = client.upload_attachment("sess-1", 0, "aGVsbG8=", "image/png")

    assert not result.success
    assert result.error


def test_upload_success(client, http):
    http.post.return_value = _response(
        body={"success": True, "storagePath": "t/s/image.png", "publicUrl": "https://cdn/x.png"}
    )

    result = client.upload_attachment("sess-1", 0, "aGVsbG8=", "image/png")

    assert result.success
    assert result.storage_path == "t/s/image.png"


def test_get_observations(client, http):
    http.post.return_value = _response(
        body={
            "observations": [
                {
                    "id": "o1",
                    "sessionId": "s1",
                    "projectId": "p1",
                    "type": "bugfix",
                    "title": "Fixed login loop",
                    "narrative": "Off by one.",
                    "createdAt": "2024-03-05T10:00:00Z",
                    "files": ["auth.py"],
                    "scope": "project",
                    "lifecycleState": "active",
                }
            ],
            "totalCount": "7",
        }
    )

    observations, total = client.get_observations("p1", limit=50)

    assert total == 7
    assert observations[0].title == "Fixed login loop"
    assert observations[0].files == ["auth.py"]
    assert observations[0].lifecycle_state == "active"
    assert http.post.call_args.kwargs["json"] == {"project_id": "p1", "limit": 50}


def test_observation_scope_field_name(client, http):
    http.post.return_value = _response(
        body={"observations": [{"id": "o2", "title": "Cache key", "observationScope": "global"}]}
    )

    observations, _ = client.get_observations("p1")

    assert observations[0].scope == "global"


def test_preferences_default_to_auto_save(client, http):
    http.post.return_value = _response(body={"contextInjection": True})

    preferences = client.get_preferences()

    assert preferences.context_injection
    assert preferences.auto_save_session
    assert preferences.context_injection_max_tokens == 2500


def test_get_quota(client, http):
    http.post.return_value = _response(
        body={"currentCount": "7", "limit": "10", "remaining": "3", "subscriptionTier": "free"}
    )

    quota = client.get_quota()

    assert quota.remaining == 3
    assert not quota.unlimited

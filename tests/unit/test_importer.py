"""Tests for transcript discovery, capture and bulk import."""

import os
from pathlib import Path

import pytest
from conftest import (
    PROJECT_PATH,
    SESSION_ID,
    FakeClient,
    assistant,
    bug_fix_records,
    make_observation,
    user,
    write_jsonl,
)

from sessionhub.errors import (
    CaptureIntegrityError,
    OnboardingRequiredError,
    QuotaExceededError,
    RemoteError,
    SessionHubError,
)
from sessionhub.importer import (
    build_session_context,
    capture_session,
    find_latest_transcript,
    import_all,
    list_transcript_files,
    plan_import,
    should_auto_save,
)
from sessionhub.models import Preferences, Project, PublicKey, Quota

OTHER_SESSION_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"


@pytest.fixture
def projects_root(temp_dir):
    return temp_dir / "projects"


@pytest.fixture
def project_dir(projects_root):
    path = projects_root / "-home-dev-my-app"
    path.mkdir(parents=True)
    return path


def _set_mtime(path: Path, mtime: float) -> None:
    os.utime(path, (mtime, mtime))


def _candidates(n):
    return [Path(f"session-{i}.jsonl") for i in range(n)]


def test_plan_import_trims_to_remaining_quota():
    plan = plan_import(_candidates(10), Quota(current_count=7, limit=10, remaining=3))

    assert plan.to_import == _candidates(3)
    assert plan.skipped == 7
    assert plan.was_limited
    assert not plan.aborted


def test_plan_import_aborts_without_quota():
    plan = plan_import(_candidates(4), Quota(current_count=10, limit=10, remaining=0))

    assert plan.aborted
    assert plan.to_import == []
    assert plan.skipped == 4


def test_plan_import_unlimited_or_unknown_keeps_all():
    unlimited = Quota(current_count=500, limit=-1, remaining=-1, subscription_tier="pro")

    assert plan_import(_candidates(5), unlimited).to_import == _candidates(5)
    assert plan_import(_candidates(5), None).to_import == _candidates(5)
    assert not plan_import(_candidates(5), Quota(1, 10, 9)).was_limited


def test_list_transcripts_skips_agent_files(project_dir, projects_root):
    write_jsonl(project_dir / "b.jsonl", bug_fix_records())
    write_jsonl(project_dir / "a.jsonl", bug_fix_records())
    write_jsonl(project_dir / "agent-123.jsonl", bug_fix_records())
    (project_dir / "notes.txt").write_text("x")

    files = list_transcript_files(PROJECT_PATH, projects_root)

    assert [f.name for f in files] == ["a.jsonl", "b.jsonl"]


def test_latest_transcript_by_session_id(project_dir, projects_root):
    padding = "x" * 12_000
    wanted = write_jsonl(project_dir / "wanted.jsonl", bug_fix_records() + [user(padding, "2024-01-15T11:00:00Z")])
    newer = write_jsonl(
        project_dir / "newer.jsonl",
        [user("other", "2024-01-16T10:00:00Z", sessionId=OTHER_SESSION_ID)],
    )
    _set_mtime(wanted, 1_000_000)
    _set_mtime(newer, 2_000_000)

    assert find_latest_transcript(PROJECT_PATH, SESSION_ID, projects_root) == wanted
    assert find_latest_transcript(PROJECT_PATH, None, projects_root) == newer


def test_stub_transcript_falls_back_to_latest(project_dir, projects_root):
    stub = write_jsonl(project_dir / "stub.jsonl", [user("resume", "2024-01-15T10:00:00Z")])
    real = write_jsonl(
        project_dir / "real.jsonl",
        [user("work", "2024-01-15T09:00:00Z", sessionId=OTHER_SESSION_ID)],
    )
    _set_mtime(stub, 1_000_000)
    _set_mtime(real, 2_000_000)

    assert find_latest_transcript(PROJECT_PATH, SESSION_ID, projects_root) == real


def test_latest_transcript_prefers_files_with_data(project_dir, projects_root):
    data = write_jsonl(project_dir / "data.jsonl", bug_fix_records())
    empty = project_dir / "empty.jsonl"
    empty.write_text("{}\n")
    _set_mtime(data, 1_000_000)
    _set_mtime(empty, 2_000_000)

    assert find_latest_transcript(PROJECT_PATH, None, projects_root) == data


def test_no_transcripts(projects_root):
    assert find_latest_transcript(PROJECT_PATH, None, projects_root) is None


def test_capture_sends_plaintext_session(fake_client, settings, sample_session_jsonl, projects_root):
    report = capture_session(
        fake_client,
        settings,
        sample_session_jsonl,
        project_path=PROJECT_PATH,
        session_name="Fix login",
        projects_root=projects_root,
    )

    assert report["success"]
    assert report["sessionId"] == "remote-1"
    assert report["projectName"] == "my_app"
    assert report["totalInputTokens"] == 90
    assert report["totalOutputTokens"] == 30
    assert report["cacheReadTokens"] == 5
    assert not report["encrypted"]
    assert report["partialFailures"] == 0

    request = fake_client.upserts[0]
    assert request["project_name"] == "my_app"
    assert request["name"] == "Fix login"
    assert request["type"] == "bugfix"
    assert request["encryption_status"] == "plaintext"
    assert [i["interaction_type"] for i in request["interactions"]] == ["prompt", "tool_call", "response"]
    assert request["metadata"]["import_source"] == "cli"
    assert request["metadata"]["original_session_id"] == SESSION_ID


def test_capture_uses_explicit_project_and_last_exchanges(settings, temp_dir, projects_root):
    records = bug_fix_records() + [
        user("add a test", "2024-01-15T10:05:00Z"),
        assistant([{"type": "text", "text": "Done."}], "2024-01-15T10:05:09Z", usage={"input_tokens": 3}),
    ]
    transcript = write_jsonl(temp_dir / "t.jsonl", records)
    client = FakeClient(projects=[Project(id="p1", name="backend")])

    report = capture_session(
        client,
        settings,
        transcript,
        project_name="backend",
        last_exchanges=1,
        projects_root=projects_root,
    )

    assert report["projectName"] == "backend"
    assert report["totalInputTokens"] == 3
    assert report["sessionName"].startswith("Imported Session - ")
    assert len(client.upserts[0]["interactions"]) == 2


def test_capture_reports_quota_error(settings, sample_session_jsonl, projects_root):
    client = FakeClient(upsert_error=QuotaExceededError(10, 10, "https://sessionhub.dev/pricing"))

    report = capture_session(client, settings, sample_session_jsonl, projects_root=projects_root)

    assert report == {
        "success": False,
        "error": "session_limit_exceeded",
        "message": "Session limit reached (10/10 sessions used)",
        "currentCount": 10,
        "limit": 10,
        "upgradeUrl": "https://sessionhub.dev/pricing",
    }


def test_capture_reports_onboarding(settings, sample_session_jsonl, projects_root):
    client = FakeClient(upsert_error=OnboardingRequiredError())

    report = capture_session(client, settings, sample_session_jsonl, projects_root=projects_root)

    assert report["error"] == "onboarding_required"
    assert report["onboardingUrl"].endswith("/onboarding")


def test_capture_other_errors_propagate(settings, sample_session_jsonl, projects_root):
    client = FakeClient(upsert_error=RemoteError("boom", "internal"))

    with pytest.raises(RemoteError):
        capture_session(client, settings, sample_session_jsonl, projects_root=projects_root)


def test_capture_unparseable_transcript(fake_client, settings, temp_dir):
    empty = temp_dir / "empty.jsonl"
    empty.write_text("")

    with pytest.raises(SessionHubError, match="Failed to parse"):
        capture_session(fake_client, settings, empty)


def test_capture_aborts_over_failure_threshold(settings, sample_session_jsonl, projects_root):
    client = FakeClient(public_key=PublicKey("bad" * 50))
    strict = settings.model_copy(update={"max_partial_failures": 0})

    with pytest.raises(CaptureIntegrityError) as exc_info:
        capture_session(client, strict, sample_session_jsonl, projects_root=projects_root)

    assert exc_info.value.failures == 1
    assert client.upserts == []


def test_capture_within_failure_threshold_downgrades(settings, sample_session_jsonl, projects_root):
    client = FakeClient(public_key=PublicKey("bad" * 50))
    lenient = settings.model_copy(update={"max_partial_failures": 1})

    report = capture_session(client, lenient, sample_session_jsonl, projects_root=projects_root)

    assert report["success"]
    assert report["partialFailures"] == 1
    assert client.upserts[0]["encryption_status"] == "plaintext"


def test_import_all_respects_quota(settings, project_dir, projects_root):
    for i in range(10):
        write_jsonl(project_dir / f"session-{i:02d}.jsonl", bug_fix_records())
    client = FakeClient(quota=Quota(current_count=7, limit=10, remaining=3))

    report = import_all(client, settings, PROJECT_PATH, projects_root=projects_root)
    data = report.to_dict()

    assert len(client.upserts) == 3
    assert data["success"]
    assert data["projectName"] == "my_app"
    assert data["totalFiles"] == 10
    assert data["processedFiles"] == 3
    assert data["successCount"] == 3
    assert data["wasLimited"]
    assert data["limitInfo"]["skippedCount"] == 7
    assert data["limitInfo"]["error"] == "session_limit_exceeded"
    assert [r["file"] for r in data["results"]] == ["session-00.jsonl", "session-01.jsonl", "session-02.jsonl"]
    assert client.upserts[0]["metadata"]["import_source"] == "cli_bulk"


def test_import_all_aborts_when_quota_exhausted(settings, project_dir, projects_root):
    write_jsonl(project_dir / "one.jsonl", bug_fix_records())
    client = FakeClient(quota=Quota(current_count=10, limit=10, remaining=0))

    data = import_all(client, settings, PROJECT_PATH, projects_root=projects_root).to_dict()

    assert data["success"] is False
    assert data["error"] == "session_limit_exceeded"
    assert data["totalFiles"] == 1
    assert client.upserts == []


def test_import_all_continues_when_quota_check_fails(settings, project_dir, projects_root):
    write_jsonl(project_dir / "one.jsonl", bug_fix_records())
    client = FakeClient(quota_error=RemoteError("down", "internal"))

    data = import_all(client, settings, PROJECT_PATH, "renamed", projects_root=projects_root).to_dict()

    assert data["successCount"] == 1
    assert data["projectName"] == "renamed"
    assert not data["wasLimited"]


def test_import_all_records_per_file_errors(settings, project_dir, projects_root):
    write_jsonl(project_dir / "good.jsonl", bug_fix_records())
    (project_dir / "empty.jsonl").write_text("")

    data = import_all(FakeClient(), settings, PROJECT_PATH, projects_root=projects_root).to_dict()

    assert data["successCount"] == 1
    assert data["errorCount"] == 1
    assert not data["success"]
    assert data["results"][0]["file"] == "empty.jsonl"
    assert "Failed to parse" in data["results"][0]["error"]


class _FlakyClient(FakeClient):
    """Fails the first upsert with an error outside the SessionHubError tree."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.failed = False

    def upsert_session(self, request):
        if not self.failed:
            self.failed = True
            raise ValueError("boom")
        return super().upsert_session(request)


def test_import_all_isolates_unexpected_errors(settings, project_dir, projects_root):
    write_jsonl(project_dir / "a.jsonl", bug_fix_records())
    write_jsonl(project_dir / "b.jsonl", bug_fix_records())
    client = _FlakyClient()

    data = import_all(client, settings, PROJECT_PATH, projects_root=projects_root).to_dict()

    assert data["errorCount"] == 1
    assert data["successCount"] == 1
    assert [r["error"] for r in data["results"] if not r["success"]] == ["boom"]
    assert len(client.upserts) == 1


def test_import_all_without_files(settings, projects_root):
    with pytest.raises(SessionHubError, match="No transcript files"):
        import_all(FakeClient(), settings, PROJECT_PATH, projects_root=projects_root)


def test_session_context_renders_observations():
    client = FakeClient(
        preferences=Preferences(context_injection=True),
        projects=[Project(id="p1", name="my_app")],
        observations=[make_observation("obs-1", title="Use Redis for sessions")],
    )

    output = build_session_context(client, PROJECT_PATH)
    context = output["hookSpecificOutput"]["additionalContext"]

    assert output["hookSpecificOutput"]["hookEventName"] == "SessionStart"
    assert context.startswith("# Project Memory (my_app)")
    assert "Use Redis for sessions" in context


def test_session_context_respects_token_budget():
    client = FakeClient(
        preferences=Preferences(context_injection=True, context_injection_max_tokens=20),
        projects=[Project(id="p1", name="my_app")],
        observations=[make_observation(f"o{i}", narrative="n" * 200) for i in range(5)],
    )

    context = build_session_context(client, PROJECT_PATH)["hookSpecificOutput"]["additionalContext"]

    assert context.endswith("*[Context truncated to fit token budget]*")
    assert len(context) <= 80 + 50


@pytest.mark.parametrize(
    "client",
    [
        FakeClient(preferences=None),
        FakeClient(preferences=Preferences(context_injection=False)),
        FakeClient(preferences=Preferences(context_injection=True)),
        FakeClient(preferences=Preferences(context_injection=True), projects=[Project(id="p1", name="my_app")]),
        FakeClient(preferences=RemoteError("down", "internal")),
    ],
)
def test_session_context_empty_cases(client):
    assert build_session_context(client, PROJECT_PATH) == {
        "hookSpecificOutput": {"hookEventName": "SessionStart", "additionalContext": ""}
    }


def test_should_auto_save():
    assert should_auto_save(FakeClient(preferences=None))
    assert should_auto_save(FakeClient(preferences=Preferences()))
    assert not should_auto_save(FakeClient(preferences=Preferences(auto_save_session=False)))
    assert should_auto_save(FakeClient(preferences=RemoteError("down", "internal")))

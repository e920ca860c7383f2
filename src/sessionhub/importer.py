"""Transcript discovery, session capture and bulk import."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sessionhub.attachments import AttachmentExtractor
from sessionhub.client import RemoteSessionClient, build_upsert_request, session_field_groups
from sessionhub.config import Settings
from sessionhub.encryption import SessionEncryptor
from sessionhub.errors import (
    UPGRADE_URL,
    CaptureIntegrityError,
    OnboardingRequiredError,
    QuotaExceededError,
    SessionHubError,
)
from sessionhub.formatter import format_observations, truncate_to_budget
from sessionhub.models import Project, Quota, SessionAggregate
from sessionhub.parser import parse_session_log, quick_extract_session_id, quick_extract_timestamp
from sessionhub.project import CLAUDE_PROJECTS_DIR, claude_project_dir, detect_project
from sessionhub.subagents import SubAgentLinker

logger = logging.getLogger("sessionhub.importer")

# Transcripts below this size are resume/clear stubs, not the real session
STUB_TRANSCRIPT_BYTES = 10_000


def list_transcript_files(project_path: str | Path, projects_root: Path = CLAUDE_PROJECTS_DIR) -> list[Path]:
    """Main-session transcripts for a project, sub-agent files excluded."""
    project_dir = claude_project_dir(project_path, projects_root)
    if not project_dir.is_dir():
        return []
    return sorted(
        p for p in project_dir.glob("*.jsonl") if p.is_file() and not p.name.startswith("agent-")
    )


def find_latest_transcript(
    project_path: str | Path,
    session_id: str | None = None,
    projects_root: Path = CLAUDE_PROJECTS_DIR,
) -> Path | None:
    """Pick the transcript to capture.

    With a session id, the file holding that session wins unless it is a stub.
    Otherwise the most recently modified file with conversation data is used.
    """
    files = list_transcript_files(project_path, projects_root)
    logger.info("Found %d transcript files for %s", len(files), project_path)
    if not files:
        return None

    if session_id:
        for path in files:
            if quick_extract_session_id(path) != session_id:
                continue
            size = path.stat().st_size
            if size < STUB_TRANSCRIPT_BYTES:
                logger.warning(
                    "Session %s file is a stub (%d bytes). Falling back to latest by mtime.",
                    session_id,
                    size,
                )
                break
            logger.info("Found matching transcript for session %s: %s", session_id, path.name)
            return path
        else:
            logger.warning("No transcript found for session %s. Falling back to latest.", session_id)

    with_data = [p for p in files if quick_extract_timestamp(p) is not None]
    return max(with_data or files, key=lambda p: p.stat().st_mtime)


@dataclass
class ImportPlan:
    """Which candidates a bulk import submits, given the account quota."""

    to_import: list[Path]
    skipped: int = 0
    quota: Quota | None = None
    aborted: bool = False

    @property
    def was_limited(self) -> bool:
        return self.skipped > 0


def plan_import(candidates: list[Path], quota: Quota | None) -> ImportPlan:
    """Trim the candidate list to the remaining quota.

    Unknown or unlimited quota keeps everything; zero remaining aborts.
    """
    if quota is None or quota.unlimited:
        return ImportPlan(to_import=list(candidates), quota=quota)
    if quota.remaining <= 0:
        return ImportPlan(to_import=[], skipped=len(candidates), quota=quota, aborted=True)
    if quota.remaining < len(candidates):
        logger.warning(
            "Session limit: only importing %d of %d sessions (%d/%d used)",
            quota.remaining,
            len(candidates),
            quota.current_count,
            quota.limit,
        )
        return ImportPlan(
            to_import=list(candidates[: quota.remaining]),
            skipped=len(candidates) - quota.remaining,
            quota=quota,
        )
    return ImportPlan(to_import=list(candidates), quota=quota)


def query_quota(client: RemoteSessionClient) -> Quota | None:
    # The backend enforces the limit per session anyway, so a failed check is not fatal
    try:
        return client.get_quota()
    except SessionHubError as e:
        logger.warning("Could not check session quota: %s", e)
        return None


def find_project(client: RemoteSessionClient, project_name: str) -> Project | None:
    for project in client.list_projects():
        if project_name in (project.name, project.display_name):
            return project
    return None


def _session_name(aggregate: SessionAggregate) -> str:
    try:
        started = datetime.fromisoformat(aggregate.start_time.replace("Z", "+00:00"))
        label = started.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        label = aggregate.start_time or "unknown time"
    return f"Imported Session - {label}"


def session_metadata(aggregate: SessionAggregate, import_source: str) -> dict[str, Any]:
    return {
        "import_source": import_source,
        "original_session_id": aggregate.session_id,
        "total_input_tokens": aggregate.tokens.input,
        "total_output_tokens": aggregate.tokens.output,
        "interaction_count": len(aggregate.interactions),
        "model_info": aggregate.model_usage.to_dict() if aggregate.model_usage else None,
        "planning_mode_info": aggregate.planning.to_dict() if aggregate.planning else None,
        "languages": list(aggregate.languages),
        "sub_session_count": len(aggregate.sub_sessions),
    }


def quota_report(error: QuotaExceededError) -> dict[str, Any]:
    return {
        "success": False,
        "error": "session_limit_exceeded",
        "message": f"Session limit reached ({error.current_count}/{error.limit} sessions used)",
        "currentCount": error.current_count,
        "limit": error.limit,
        "upgradeUrl": error.upgrade_url,
    }


def onboarding_report(error: OnboardingRequiredError) -> dict[str, Any]:
    return {
        "success": False,
        "error": "onboarding_required",
        "message": error.message,
        "onboardingUrl": error.onboarding_url,
    }


def capture_session(
    client: RemoteSessionClient,
    settings: Settings,
    transcript: Path,
    *,
    project_path: str | None = None,
    project_name: str | None = None,
    session_name: str | None = None,
    last_exchanges: int | None = None,
    import_source: str = "cli",
    projects_root: Path = CLAUDE_PROJECTS_DIR,
) -> dict[str, Any]:
    """Parse a transcript and upsert it.

    Returns a JSON-ready report. Quota and onboarding failures are reported
    rather than raised; other errors propagate.

    Raises:
        SessionHubError: The transcript could not be parsed, or the backend
            call failed.
        CaptureIntegrityError: More partial failures than
            ``settings.max_partial_failures``.
    """
    logger.info("Processing transcript: %s", transcript)

    extractor = AttachmentExtractor(client)
    aggregate = parse_session_log(transcript, last_exchanges, extractor, settings.max_log_bytes)
    if aggregate is None:
        raise SessionHubError(f"Failed to parse transcript file: {transcript.name}")

    linker = SubAgentLinker(projects_root, settings.max_log_bytes)
    aggregate = linker.link(aggregate)

    encryptor = SessionEncryptor(client)
    encryption = encryptor.encrypt(session_field_groups(aggregate))

    failures = extractor.failures + linker.failures + encryptor.downgrades
    threshold = settings.max_partial_failures
    if threshold is not None and failures > threshold:
        raise CaptureIntegrityError(failures, threshold)

    project_path = project_path or aggregate.project_path
    if not project_name:
        path = Path(project_path)
        project_name = detect_project(path).name if path.is_dir() else path.name
    if find_project(client, project_name):
        logger.info("Using existing project: %s", project_name)
    else:
        logger.info("Project will be auto-created: %s", project_name)

    name = session_name or _session_name(aggregate)
    request = build_upsert_request(
        aggregate,
        name=name,
        project_name=project_name,
        project_path=project_path,
        metadata=session_metadata(aggregate, import_source),
        encryption=encryption,
    )

    try:
        result = client.upsert_session(request)
    except QuotaExceededError as e:
        return quota_report(e)
    except OnboardingRequiredError as e:
        return onboarding_report(e)

    if not result.session_id:
        raise SessionHubError("Failed to create session")

    return {
        "success": True,
        "sessionId": result.session_id,
        "wasUpdated": result.was_updated,
        "newInteractionsCount": result.new_interactions_count,
        "analysisTriggered": result.analysis_triggered,
        "observationsTriggered": result.observations_triggered,
        "projectName": project_name,
        "sessionName": name,
        "transcriptFile": transcript.name,
        "totalInputTokens": aggregate.tokens.input,
        "totalOutputTokens": aggregate.tokens.output,
        "cacheCreateTokens": aggregate.tokens.cache_create,
        "cacheReadTokens": aggregate.tokens.cache_read,
        "subSessionCount": len(aggregate.sub_sessions),
        "attachmentCount": len(aggregate.attachments),
        "encrypted": encryption.encrypted,
        "partialFailures": failures,
    }


@dataclass
class ImportResult:
    file: str
    success: bool
    session_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"file": self.file, "success": self.success}
        if self.session_id:
            data["sessionId"] = self.session_id
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ImportReport:
    project_name: str
    total_files: int
    plan: ImportPlan
    results: list[ImportResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> dict[str, Any]:
        if self.plan.aborted:
            quota = self.plan.quota
            return {
                "success": False,
                "error": "session_limit_exceeded",
                "message": (
                    f"Session limit reached ({quota.current_count}/{quota.limit} sessions). "
                    "Cannot import any sessions."
                ),
                "currentCount": quota.current_count,
                "limit": quota.limit,
                "upgradeUrl": UPGRADE_URL,
                "totalFiles": self.total_files,
            }

        data: dict[str, Any] = {
            "success": self.error_count == 0,
            "projectName": self.project_name,
            "totalFiles": self.total_files,
            "processedFiles": len(self.plan.to_import),
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "wasLimited": self.plan.was_limited,
            "results": [r.to_dict() for r in self.results],
        }
        if self.plan.was_limited:
            data["limitInfo"] = {
                "error": "session_limit_exceeded",
                "message": (
                    f"Session limit reached: imported {len(self.plan.to_import)} of "
                    f"{self.total_files} sessions"
                ),
                "skippedCount": self.plan.skipped,
                "upgradeUrl": UPGRADE_URL,
            }
        return data


def import_all(
    client: RemoteSessionClient,
    settings: Settings,
    project_path: str,
    project_name: str | None = None,
    projects_root: Path = CLAUDE_PROJECTS_DIR,
) -> ImportReport:
    """Import every transcript of a project, within the remaining quota.

    Raises:
        SessionHubError: No transcripts were found.
    """
    project_name = project_name or Path(project_path).name
    files = list_transcript_files(project_path, projects_root)
    if not files:
        raise SessionHubError("No transcript files found")
    logger.info("Importing %d transcript files for project %s", len(files), project_name)

    plan = plan_import(files, query_quota(client))
    report = ImportReport(project_name=project_name, total_files=len(files), plan=plan)
    if plan.aborted:
        return report

    for path in plan.to_import:
        try:
            result = capture_session(
                client,
                settings,
                path,
                project_path=project_path,
                project_name=project_name,
                import_source="cli_bulk",
                projects_root=projects_root,
            )
        except SessionHubError as e:
            report.results.append(ImportResult(file=path.name, success=False, error=e.message))
            continue
        except Exception as e:
            logger.exception("Unexpected error importing %s", path.name)
            report.results.append(ImportResult(file=path.name, success=False, error=str(e)))
            continue

        if result["success"]:
            report.results.append(ImportResult(file=path.name, success=True, session_id=result["sessionId"]))
        else:
            report.results.append(ImportResult(file=path.name, success=False, error=result["message"]))

    return report


def hook_output(context: str = "") -> dict[str, Any]:
    return {"hookSpecificOutput": {"hookEventName": "SessionStart", "additionalContext": context}}


def build_session_context(client: RemoteSessionClient, project_path: str) -> dict[str, Any]:
    """SessionStart hook payload with the project's observations as context.

    Never raises: anything going wrong yields an empty context so the
    session still starts.
    """
    project_name = Path(project_path).name
    try:
        prefs = client.get_preferences()
        if prefs is None or not prefs.context_injection:
            return hook_output()

        project = find_project(client, project_name)
        if project is None:
            return hook_output()

        fetched = client.get_observations(project.id, prefs.context_injection_limit)
        if not fetched or not fetched[0]:
            return hook_output()
        observations, _ = fetched

        context = format_observations(
            observations,
            project_name=project_name,
            top_n=min(prefs.context_injection_full_details_count, len(observations)),
        )
        return hook_output(truncate_to_budget(context, prefs.context_injection_max_tokens))
    except Exception as e:
        logger.debug("Context injection skipped: %s", e)
        return hook_output()


def should_auto_save(client: RemoteSessionClient) -> bool:
    """Whether the user wants sessions saved on exit. Defaults to yes."""
    try:
        prefs = client.get_preferences()
    except SessionHubError as e:
        logger.debug("Could not load preferences, auto-saving: %s", e)
        return True
    return True if prefs is None else prefs.auto_save_session

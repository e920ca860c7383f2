"""Client for the SessionHub backend.

Calls are Connect-protocol unary RPCs: a JSON body POSTed to
``<backend>/sessionhub.v1.SessionHubService/<Method>``. Failures come back as
``{"code": ..., "message": ...}`` and are raised as the types in
``sessionhub.errors``.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

import requests

from sessionhub.encryption import EncryptionResult
from sessionhub.errors import (
    AuthenticationError,
    OnboardingRequiredError,
    RemoteError,
    SessionHubError,
    TransientError,
    is_onboarding_message,
    parse_quota_error,
)
from sessionhub.models import (
    BatchResult,
    Interaction,
    Observation,
    Preferences,
    Project,
    PublicKey,
    Quota,
    SessionAggregate,
    UploadResult,
    UpsertResult,
    UserInfo,
)

logger = logging.getLogger("sessionhub.client")

SERVICE = "sessionhub.v1.SessionHubService"
DEFAULT_TIMEOUT = 30.0
MUTATION_TIMEOUT = 60.0
DEFAULT_CHUNK_SIZE = 500

# Connect error codes by HTTP status, for bodies without a code
_HTTP_STATUS_CODES = {
    400: "invalid_argument",
    401: "unauthenticated",
    403: "permission_denied",
    404: "not_found",
    408: "deadline_exceeded",
    429: "resource_exhausted",
    502: "unavailable",
    503: "unavailable",
    504: "deadline_exceeded",
}

_FRIENDLY_MESSAGES = {
    "unavailable": "Cannot reach SessionHub server. Check your internet connection and try again.",
    "deadline_exceeded": "Request timed out. The server may be busy - please try again.",
    "permission_denied": "Access denied. Your API key may not have permission for this operation.",
    "resource_exhausted": "Rate limit exceeded or quota exhausted. Please try again later.",
    "internal": "Server error. Please try again or contact support if the issue persists.",
}


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def _field(data: dict[str, Any], key: str, default: Any = None) -> Any:
    """Read a response field in either proto (snake) or JSON (camel) naming."""
    if key in data:
        return data[key]
    return data.get(_camel(key), default)


def _int(data: dict[str, Any], key: str, default: int = 0) -> int:
    # protojson encodes 64-bit integers as strings
    value = _field(data, key)
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def serialize_metadata(metadata: dict[str, Any] | None) -> dict[str, str]:
    """Flatten a metadata dict to the string map the backend stores."""
    serialized = {}
    for key, value in (metadata or {}).items():
        if isinstance(value, str):
            serialized[key] = value
        else:
            serialized[key] = json.dumps(value, separators=(",", ":"))
    return serialized


def determine_session_type(name: str | None, git_branch: str | None) -> str:
    text = f"{name or ''} {git_branch or ''}".lower()
    # "debug" contains "bug"
    if "debug" in text:
        return "debugging"
    if any(word in text for word in ("bug", "fix", "hotfix")):
        return "bugfix"
    if "refactor" in text:
        return "refactor"
    if "explore" in text or "experiment" in text:
        return "exploration"
    return "feature"


def shape_interaction(interaction: Interaction) -> dict[str, Any]:
    metadata = interaction.metadata
    return {
        "timestamp": interaction.timestamp,
        "interaction_type": interaction.type,
        "content": interaction.content,
        "tool_name": interaction.tool_name or "",
        "metadata": serialize_metadata(metadata),
        "input_tokens": metadata.get("input_tokens", 0),
        "output_tokens": metadata.get("output_tokens", 0),
    }


def shape_todo_snapshots(snapshots: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop empty snapshots and rename ``activeForm`` to ``active_form``."""
    return [
        {
            "timestamp": snapshot["timestamp"],
            "todos": [
                {
                    "content": todo.get("content"),
                    "status": todo.get("status"),
                    "active_form": todo.get("activeForm"),
                }
                for todo in snapshot["todos"]
                if isinstance(todo, dict)
            ],
        }
        for snapshot in snapshots
        if snapshot.get("timestamp") and isinstance(snapshot.get("todos"), list) and snapshot["todos"]
    ]


def shape_attachments(attachments: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": att.get("type") or "image",
            "storage_path": att.get("storagePath") or "",
            "public_url": att.get("publicUrl") or "",
            "media_type": att.get("mediaType") or "",
            "filename": att.get("filename") or "",
            "size_bytes": att.get("sizeBytes") or 0,
            "interaction_index": att.get("interactionIndex", 0),
            "uploaded_at": att.get("uploadedAt") or datetime.now(tz=timezone.utc).isoformat(),
        }
        for att in attachments
    ]


def session_field_groups(aggregate: SessionAggregate) -> dict[str, list[Any]]:
    """The sensitive field groups of a session, in their unencrypted wire form."""
    return {
        "interactions": [i.to_dict() for i in aggregate.interactions],
        "todo_snapshots": [
            {"timestamp": s.timestamp, "todos": s.todos} for s in aggregate.todo_snapshots
        ],
        "plans": [{"timestamp": p.timestamp, "plan": p.plan} for p in aggregate.plans],
        "sub_sessions": [s.to_dict() for s in aggregate.sub_sessions],
        "attachment_urls": [a.to_dict() for a in aggregate.attachments],
    }


def build_upsert_request(
    aggregate: SessionAggregate,
    *,
    name: str,
    project_name: str,
    project_path: str,
    metadata: dict[str, Any],
    encryption: EncryptionResult,
) -> dict[str, Any]:
    """Build the UpsertSession request body.

    When ``encryption`` is encrypted the plaintext groups are sent empty and
    the ``encrypted_*`` fields carry the content instead.
    """
    request: dict[str, Any] = {
        "project_name": project_name,
        "project_path": project_path,
        "start_time": aggregate.start_time,
        "end_time": aggregate.end_time,
        "name": name,
        "tool_name": aggregate.tool,
        "git_branch": aggregate.git_branch,
        "type": determine_session_type(name, aggregate.git_branch),
        "input_tokens": aggregate.tokens.input,
        "output_tokens": aggregate.tokens.output,
        "cache_create_tokens": aggregate.tokens.cache_create,
        "cache_read_tokens": aggregate.tokens.cache_read,
        "metadata": serialize_metadata(metadata),
    }

    if encryption.encrypted:
        request["encryption_status"] = "encrypted"
        request["encryption_version"] = encryption.key_version
        for group, payload in encryption.fields.items():
            request[f"encrypted_{group}"] = payload
        request["todo_snapshots"] = []
        request["plans"] = []
        request["attachment_urls"] = []
        request["interactions"] = []
        return request

    groups = session_field_groups(aggregate)
    request["encryption_status"] = "plaintext"
    request["encryption_version"] = 0
    request["todo_snapshots"] = shape_todo_snapshots(groups["todo_snapshots"])
    request["plans"] = groups["plans"]
    request["attachment_urls"] = shape_attachments(groups["attachment_urls"])
    if groups["sub_sessions"]:
        request["sub_sessions_json"] = json.dumps(groups["sub_sessions"])
    request["interactions"] = [shape_interaction(i) for i in aggregate.interactions]
    return request


def _observation_from(data: dict[str, Any]) -> Observation:
    return Observation(
        id=_field(data, "id", ""),
        session_id=_field(data, "session_id", ""),
        project_id=_field(data, "project_id", ""),
        type=_field(data, "type", "change"),
        title=_field(data, "title", ""),
        narrative=_field(data, "narrative", ""),
        created_at=_field(data, "created_at", ""),
        subtitle=_field(data, "subtitle") or None,
        facts=list(_field(data, "facts") or []),
        concepts=list(_field(data, "concepts") or []),
        files=list(_field(data, "files") or []),
        scope=_field(data, "scope") or _field(data, "observation_scope") or None,
        lifecycle_state=_field(data, "lifecycle_state") or None,
    )


class RemoteSessionClient:
    """Blocking client for the SessionHub service.

    Every method takes an optional ``timeout`` in seconds; lookups default to
    ``timeout`` and session-mutating calls to ``mutation_timeout``.
    """

    def __init__(
        self,
        api_key: str,
        backend_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        mutation_timeout: float = MUTATION_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        session: requests.Session | None = None,
    ):
        self.api_key = api_key
        self.base_url = backend_url.rstrip("/")
        self.timeout = timeout
        self.mutation_timeout = mutation_timeout
        self.chunk_size = chunk_size
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Connect-Protocol-Version": "1",
            }
        )

    @classmethod
    def from_settings(cls, settings, session: requests.Session | None = None) -> "RemoteSessionClient":
        return cls(
            api_key=settings.api_key,
            backend_url=settings.backend_url,
            timeout=settings.request_timeout,
            mutation_timeout=settings.mutation_timeout,
            chunk_size=settings.batch_chunk_size,
            session=session,
        )

    def _call(self, method: str, body: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        url = f"{self.base_url}/{SERVICE}/{method}"
        try:
            response = self.session.post(url, json=body, timeout=timeout or self.timeout)
        except requests.Timeout as e:
            raise TransientError(_FRIENDLY_MESSAGES["deadline_exceeded"], "deadline_exceeded") from e
        except (requests.ConnectionError, requests.exceptions.ChunkedEncodingError) as e:
            raise TransientError(_FRIENDLY_MESSAGES["unavailable"], "unavailable") from e
        except requests.RequestException as e:
            raise RemoteError(f"{method}: request failed: {e}", "unknown") from e

        if response.ok:
            if not response.content:
                return {}
            try:
                data = response.json()
            except ValueError as e:
                raise RemoteError(f"{method}: invalid response from server", "internal") from e
            return data if isinstance(data, dict) else {}

        raise self._error_from(response, method)

    def _error_from(self, response: requests.Response, method: str) -> SessionHubError:
        code = _HTTP_STATUS_CODES.get(response.status_code, "unknown")
        message = response.reason or ""
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            code = data.get("code") or code
            message = data.get("message") or message

        logger.debug("%s failed: %s %s", method, code, message)

        quota_error = parse_quota_error(message)
        if quota_error is not None:
            return quota_error
        if is_onboarding_message(message):
            return OnboardingRequiredError(code)
        if code == "unauthenticated":
            return AuthenticationError()
        if code in ("unavailable", "deadline_exceeded"):
            return TransientError(_FRIENDLY_MESSAGES[code], code)
        if code in _FRIENDLY_MESSAGES:
            return RemoteError(_FRIENDLY_MESSAGES[code], code)
        return RemoteError(f"{method} failed: {message}", code)

    def validate_credential(self, timeout: float | None = None) -> UserInfo | None:
        """Check the API key. Returns None when the key is unknown or rejected."""
        try:
            data = self._call("ValidateApiKey", {"api_key": self.api_key}, timeout)
        except AuthenticationError:
            return None
        except RemoteError as e:
            if e.code == "not_found":
                return None
            raise
        return UserInfo(
            user_id=_field(data, "user_id", ""),
            email=_field(data, "email", ""),
            subscription_tier=_field(data, "subscription_tier", "free"),
        )

    def list_projects(self, timeout: float | None = None) -> list[Project]:
        try:
            data = self._call("GetProjects", {}, timeout)
        except RemoteError as e:
            if e.code == "not_found":
                return []
            raise
        return [
            Project(
                id=_field(p, "id", ""),
                name=_field(p, "name", ""),
                display_name=_field(p, "display_name", "") or "",
                description=_field(p, "description", "") or "",
                git_remote=_field(p, "git_remote", "") or "",
            )
            for p in _field(data, "projects") or []
        ]

    def create_project(
        self,
        name: str,
        display_name: str | None = None,
        description: str = "",
        git_remote: str | None = None,
        timeout: float | None = None,
    ) -> Project:
        body = {"name": name, "display_name": display_name or name, "description": description}
        if git_remote:
            body["git_remote"] = git_remote
        data = self._call("CreateProject", body, timeout)
        return Project(
            id=_field(data, "id", ""),
            name=_field(data, "name", name),
            display_name=_field(data, "display_name", "") or display_name or name,
            description=_field(data, "description", "") or description,
            git_remote=_field(data, "git_remote", "") or git_remote or "",
        )

    def upsert_session(self, request: dict[str, Any], timeout: float | None = None) -> UpsertResult:
        """Create a session or merge new interactions into an existing one."""
        data = self._call("UpsertSession", request, timeout or self.mutation_timeout)
        result = UpsertResult(
            session_id=_field(data, "session_id") or None,
            was_updated=bool(_field(data, "was_updated", False)),
            new_interactions_count=_int(data, "new_interactions_count"),
            analysis_triggered=bool(_field(data, "analysis_triggered", False)),
            observations_triggered=bool(_field(data, "observations_triggered", False)),
        )

        action = "updated" if result.was_updated else "created"
        encrypted = " (encrypted)" if request.get("encryption_status") == "encrypted" else ""
        logger.info(
            "Session %s: %s (%d interactions)%s",
            action,
            result.session_id,
            result.new_interactions_count,
            encrypted,
        )
        if result.analysis_triggered:
            logger.info("Analysis triggered based on user preferences")
        if result.observations_triggered:
            logger.info("Observations extraction triggered based on user preferences")
        return result

    def update_session_end_time(self, session_id: str, end_time: str, timeout: float | None = None) -> bool:
        self._call("UpdateSession", {"session_id": session_id, "end_time": end_time}, timeout)
        logger.info("Session end time updated: %s", session_id)
        return True

    def add_interactions_batch(
        self,
        session_id: str,
        interactions: list[Interaction],
        chunk_size: int | None = None,
        timeout: float | None = None,
    ) -> BatchResult:
        """Send interactions in chunks. A failed chunk counts as failed and the rest still go."""
        chunk_size = chunk_size or self.chunk_size
        processed = 0
        failed = 0

        for start in range(0, len(interactions), chunk_size):
            chunk = interactions[start:start + chunk_size]
            batch_num = start // chunk_size + 1
            try:
                data = self._call(
                    "AddInteractionsBatch",
                    {"session_id": session_id, "interactions": [shape_interaction(i) for i in chunk]},
                    timeout or self.mutation_timeout,
                )
            except SessionHubError as e:
                logger.error("Batch %d failed: %s", batch_num, e)
                failed += len(chunk)
                continue

            logger.info("Batch %d: %d processed", batch_num, _int(data, "processed"))
            processed += _int(data, "processed")
            failed += _int(data, "failed")

        return BatchResult(processed=processed, failed=failed)

    def get_preferences(self, timeout: float | None = None) -> Preferences | None:
        try:
            data = self._call("GetUserPreferences", {}, timeout)
        except RemoteError as e:
            if e.code == "not_found":
                return None
            raise
        auto_save = _field(data, "auto_save_session")
        return Preferences(
            auto_analysis=bool(_field(data, "auto_analysis", False)),
            auto_observations=bool(_field(data, "auto_observations", False)),
            context_injection=bool(_field(data, "context_injection", False)),
            context_injection_limit=_int(data, "context_injection_limit") or 50,
            context_injection_max_tokens=_int(data, "context_injection_max_tokens") or 2500,
            context_injection_full_details_count=_int(data, "context_injection_full_details_count") or 5,
            auto_save_session=True if auto_save is None else bool(auto_save),
        )

    def upload_attachment(
        self,
        session_id: str,
        interaction_index: int,
        base64_data: str,
        media_type: str,
        filename: str | None = None,
        timeout: float | None = None,
    ) -> UploadResult:
        """Upload one attachment. Never raises; failures come back in the result."""
        body = {
            "session_id": session_id,
            "interaction_index": interaction_index,
            "base64_data": base64_data,
            "media_type": media_type,
        }
        if filename:
            body["filename"] = filename
        try:
            data = self._call("UploadAttachment", body, timeout or self.mutation_timeout)
        except SessionHubError as e:
            return UploadResult(success=False, error=e.message)

        if not _field(data, "success", False):
            return UploadResult(success=False, error=_field(data, "error") or "upload rejected")
        return UploadResult(
            success=True,
            storage_path=_field(data, "storage_path"),
            public_url=_field(data, "public_url"),
        )

    def get_observations(
        self, project_id: str, limit: int | None = None, timeout: float | None = None
    ) -> tuple[list[Observation], int] | None:
        """Fetch a project's observations and the total count, or None if there are none yet."""
        body: dict[str, Any] = {"project_id": project_id}
        if limit:
            body["limit"] = limit
        try:
            data = self._call("GetProjectObservations", body, timeout)
        except RemoteError as e:
            if e.code == "not_found":
                return None
            raise
        observations = [_observation_from(o) for o in _field(data, "observations") or []]
        return observations, _int(data, "total_count") or len(observations)

    def get_public_key(self, timeout: float | None = None) -> PublicKey | None:
        try:
            data = self._call("GetUserPublicKey", {}, timeout)
        except RemoteError as e:
            if e.code == "not_found":
                return None
            raise
        public_key = _field(data, "public_key")
        if not public_key:
            return None
        return PublicKey(public_key=public_key, key_version=_int(data, "key_version") or 1)

    def get_quota(self, timeout: float | None = None) -> Quota | None:
        try:
            data = self._call("GetSessionQuota", {}, timeout)
        except RemoteError as e:
            if e.code == "not_found":
                return None
            raise
        return Quota(
            current_count=_int(data, "current_count"),
            limit=_int(data, "limit"),
            remaining=_int(data, "remaining"),
            subscription_tier=_field(data, "subscription_tier") or "free",
        )

"""Data models for sessionhub."""

from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any

TOKEN_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
)


@dataclass
class Interaction:
    """One recorded unit of conversation."""

    type: str  # "prompt" | "response" | "tool_call"
    content: str
    timestamp: str  # ISO string, as found in the log
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_name(self) -> str | None:
        return self.metadata.get("tool_name")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "interaction_type": self.type,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.metadata:
            data["metadata"] = self.metadata
        return data


@dataclass(frozen=True)
class TokenTotals:
    """Token counts summed over a set of interactions."""

    input: int = 0
    output: int = 0
    cache_create: int = 0
    cache_read: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def __add__(self, other: "TokenTotals") -> "TokenTotals":
        return TokenTotals(
            input=self.input + other.input,
            output=self.output + other.output,
            cache_create=self.cache_create + other.cache_create,
            cache_read=self.cache_read + other.cache_read,
        )

    @classmethod
    def from_interactions(cls, interactions: "list[Interaction] | tuple[Interaction, ...]") -> "TokenTotals":
        """Sum the token fields carried in interaction metadata."""
        sums = dict.fromkeys(TOKEN_FIELDS, 0)
        for interaction in interactions:
            for key in TOKEN_FIELDS:
                value = interaction.metadata.get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    sums[key] += value
        return cls(
            input=sums["input_tokens"],
            output=sums["output_tokens"],
            cache_create=sums["cache_creation_input_tokens"],
            cache_read=sums["cache_read_input_tokens"],
        )


@dataclass(frozen=True)
class ModelUsage:
    """Per-model invocation statistics."""

    usage: dict[str, int]
    primary_model: str | None
    switches: int

    @property
    def models(self) -> list[str]:
        return list(self.usage)

    def to_dict(self) -> dict[str, Any]:
        return {
            "models": self.models,
            "primaryModel": self.primary_model,
            "modelUsage": self.usage,
            "modelSwitches": self.switches,
        }


@dataclass(frozen=True)
class PlanningInfo:
    """Plan-mode exits observed in a session."""

    exit_plan_timestamps: tuple[str, ...]

    @property
    def cycles(self) -> int:
        return len(self.exit_plan_timestamps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hasPlanningMode": self.cycles > 0,
            "planningCycles": self.cycles,
            "exitPlanTimestamps": list(self.exit_plan_timestamps),
        }


@dataclass(frozen=True)
class TodoSnapshot:
    timestamp: str
    todos: list[dict[str, Any]]


@dataclass(frozen=True)
class Plan:
    timestamp: str
    plan: str


@dataclass(frozen=True)
class AgentLink:
    """Where a sub-agent was spawned from in the parent session."""

    interaction_index: int
    task_description: str | None
    task_prompt: str | None


@dataclass(frozen=True)
class AttachmentRecord:
    """An uploaded attachment; its position in the session list is its reference index."""

    interaction_index: int
    type: str  # "image" | "file"
    storage_location: str
    public_url: str
    media_type: str
    filename: str
    size_bytes: int
    uploaded_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "interactionIndex": self.interaction_index,
            "type": self.type,
            "storagePath": self.storage_location,
            "publicUrl": self.public_url,
            "mediaType": self.media_type,
            "filename": self.filename,
            "sizeBytes": self.size_bytes,
            "uploadedAt": self.uploaded_at,
        }


@dataclass(frozen=True)
class SubSession:
    """The interaction thread of one spawned sub-agent."""

    agent_id: str
    task_description: str | None
    task_prompt: str | None
    interaction_index: int
    interactions: tuple[Interaction, ...]
    messages: tuple[dict[str, str], ...]
    start_time: str
    end_time: str | None
    tokens: TokenTotals

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "taskDescription": self.task_description,
            "taskPrompt": self.task_prompt,
            "interactionIndex": self.interaction_index,
            "interactions": [i.to_dict() for i in self.interactions],
            "messages": list(self.messages),
            "startTime": self.start_time,
            "endTime": self.end_time,
            "totalTokens": self.tokens.total,
            "inputTokens": self.tokens.input,
            "outputTokens": self.tokens.output,
        }


@dataclass(frozen=True)
class SessionAggregate:
    """A parsed session. Built once per parse; later stages derive new values."""

    session_id: str
    project_path: str
    cwd: str
    start_time: str
    end_time: str
    git_branch: str
    interactions: tuple[Interaction, ...]
    tokens: TokenTotals
    languages: tuple[str, ...] = ()
    model_usage: ModelUsage | None = None
    planning: PlanningInfo | None = None
    plans: tuple[Plan, ...] = ()
    todo_snapshots: tuple[TodoSnapshot, ...] = ()
    attachments: tuple[AttachmentRecord, ...] = ()
    agent_links: dict[str, AgentLink] = field(default_factory=dict)
    sub_sessions: tuple[SubSession, ...] = ()
    dropped_interactions: int = 0
    tool: str = "claude-code"

    @property
    def project_name(self) -> str:
        return PurePath(self.project_path).name


@dataclass(frozen=True)
class EncryptedPayload:
    """Hybrid-encrypted field group. All byte fields are base64 strings."""

    ciphertext: str
    wrapped_key: str
    iv: str
    version: int = 1

    def to_wire(self) -> dict[str, Any]:
        return {
            "encryptedContent": self.ciphertext,
            "encryptedKey": self.wrapped_key,
            "iv": self.iv,
            "version": self.version,
        }


@dataclass(frozen=True)
class PublicKey:
    public_key: str  # base64 SPKI DER
    key_version: int = 1


@dataclass
class Observation:
    """A distilled insight about a project, owned by the remote store."""

    id: str
    session_id: str
    project_id: str
    type: str  # decision | bugfix | feature | refactor | discovery | change
    title: str
    narrative: str
    created_at: str
    subtitle: str | None = None
    facts: list[str] = field(default_factory=list)
    concepts: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    scope: str | None = None  # "session" | "project"; absent on old records
    lifecycle_state: str | None = None  # draft | active | deprecated | superseded


@dataclass(frozen=True)
class Quota:
    current_count: int
    limit: int  # -1 means unlimited
    remaining: int
    subscription_tier: str = "free"

    @property
    def unlimited(self) -> bool:
        return self.limit == -1


@dataclass(frozen=True)
class UserInfo:
    user_id: str
    email: str
    subscription_tier: str


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    display_name: str = ""
    description: str = ""
    git_remote: str = ""


@dataclass(frozen=True)
class Preferences:
    auto_analysis: bool = False
    auto_observations: bool = False
    context_injection: bool = False
    context_injection_limit: int = 50
    context_injection_max_tokens: int = 2500
    context_injection_full_details_count: int = 5
    auto_save_session: bool = True


@dataclass(frozen=True)
class UploadResult:
    success: bool
    storage_path: str | None = None
    public_url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class UpsertResult:
    session_id: str | None
    was_updated: bool
    new_interactions_count: int
    analysis_triggered: bool = False
    observations_triggered: bool = False


@dataclass(frozen=True)
class BatchResult:
    processed: int
    failed: int

    @property
    def success(self) -> bool:
        return self.failed == 0

"""Data models for the team orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime

from team_orchestrator.core.roles import Role

TEAM_STATUSES = ("spawning", "ready", "working", "merging", "completed", "error", "stopped")
TEAM_TERMINAL_STATUSES = ("completed", "error", "stopped")

AGENT_STATUSES = (
    "initializing",
    "waiting",
    "working",
    "inferred_idle",
    "completed",
    "error",
    "stopped",
    "unhealthy",
)

SANDBOX_STATUSES = ("ready", "running", "error", "stopped")

PHASE_MODES = ("parallel", "sequential")


# ── Teams ─────────────────────────────────────────────────────────────────────


@dataclass
class TeamProgress:
    overall: int = 0
    planning: int = 0
    development: int = 0
    testing: int = 0
    deployment: int = 0


@dataclass
class Agent:
    id: str
    team_id: str
    role: Role
    name: str
    work_dir: str
    branch: str
    status: str = "initializing"
    current_task: str = ""
    progress: int = 0
    completed_tasks: list[str] = field(default_factory=list)
    last_activity: datetime | None = None
    pid: int | None = None
    sandbox_id: str | None = None
    files_changed: int = 0


@dataclass
class Team:
    id: str
    requirement: str
    workflow_id: str
    base_branch: str
    worktree_root: str
    status: str = "spawning"
    agents: list[Agent] = field(default_factory=list)
    progress: TeamProgress = field(default_factory=TeamProgress)
    session_id: str | None = None
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def get_agent(self, agent_id: str) -> Agent | None:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        return None


@dataclass
class TeamEvent:
    id: int | None = None
    team_id: str = ""
    event_type: str = ""
    payload: str | None = None
    created_at: datetime | None = None


# ── Workflows ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Phase:
    name: str
    roles: tuple[Role, ...]
    mode: str
    tasks: tuple[str, ...]


@dataclass(frozen=True)
class WorkflowTemplate:
    id: str
    name: str
    description: str
    estimated_minutes: int
    keywords: tuple[str, ...]
    phases: tuple[Phase, ...]


@dataclass
class WorkflowMatch:
    workflow_id: str
    confidence: float
    alternatives: list[tuple[str, float]] = field(default_factory=list)


@dataclass
class TaskResult:
    agent_id: str
    role: Role
    task: str
    prompt: str
    success: bool
    output: str = ""
    parsed: "ParsedContent | None" = None
    error: str | None = None
    execution_time: float = 0.0
    files: list[str] = field(default_factory=list)
    timestamp: datetime | None = None


@dataclass
class PhaseResult:
    name: str
    status: str = "starting"
    outputs: list[TaskResult] = field(default_factory=list)
    agents: list[str] = field(default_factory=list)
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None


@dataclass
class WorkflowSession:
    id: str
    workflow_id: str
    requirement: str
    work_root: str
    status: str = "starting"
    current_phase: str | None = None
    progress: float = 0.0
    phases: list[PhaseResult] = field(default_factory=list)
    agent_ids: dict[Role, str] = field(default_factory=dict)
    summary: str = ""
    errors: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    ended_at: datetime | None = None


# ── Sandboxes ─────────────────────────────────────────────────────────────────


@dataclass
class SandboxLimits:
    cpu_percent: float = 50.0
    memory_mb: int = 2048
    disk_mb: int = 5120
    time_limit: float = 3600.0


@dataclass
class ResourceSnapshot:
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    disk_mb: float = 0.0
    sampled_at: datetime | None = None


@dataclass
class PreviewServer:
    sandbox_id: str
    port: int
    url: str
    framework: str
    pid: int | None = None
    ready: bool = False
    started_at: datetime | None = None


@dataclass
class Sandbox:
    id: str
    owner: str
    path: str
    session_name: str
    status: str = "ready"
    limits: SandboxLimits = field(default_factory=SandboxLimits)
    resources: ResourceSnapshot = field(default_factory=ResourceSnapshot)
    pids: set[int] = field(default_factory=set)
    preview: PreviewServer | None = None
    created_at: datetime | None = None


@dataclass
class MetricsSnapshot:
    sandbox_id: str
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    disk_mb: float = 0.0
    process_count: int = 0
    response_ms: float | None = None
    build_dir: str | None = None
    build_size_kb: float | None = None
    build_age_seconds: float | None = None
    git_commit: str | None = None
    git_branch: str | None = None
    git_dirty_count: int = 0
    sampled_at: datetime | None = None


# ── Output classification ─────────────────────────────────────────────────────


@dataclass
class CodeBlock:
    language: str
    code: str
    index: int = 0


@dataclass
class FileOperation:
    kind: str
    path: str
    context: str = ""


@dataclass
class Diagnostic:
    message: str
    severity: str


@dataclass
class ProgressInfo:
    percentage: float | None = None
    step: int | None = None
    total: int | None = None


@dataclass
class ContentMetadata:
    word_count: int = 0
    line_count: int = 0
    has_code_blocks: bool = False
    has_urls: bool = False
    contains_thinking: bool = False
    contains_actions: bool = False
    estimated_read_time: int = 0


@dataclass
class ParsedContent:
    raw: str
    type: str
    text: str
    code_blocks: list[CodeBlock] = field(default_factory=list)
    files: list[FileOperation] = field(default_factory=list)
    errors: list[Diagnostic] = field(default_factory=list)
    warnings: list[Diagnostic] = field(default_factory=list)
    progress: ProgressInfo | None = None
    urls: list[str] = field(default_factory=list)
    metadata: ContentMetadata = field(default_factory=ContentMetadata)


@dataclass
class CompletionResult:
    is_complete: bool
    confidence: float = 0.0
    reason: str | None = None
    parsed: ParsedContent | None = None
    length: int = 0
    lines: int = 0
    silence: float = 0.0

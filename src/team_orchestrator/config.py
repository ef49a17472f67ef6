"""Configuration loading from environment variables."""

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}

# env var -> (attribute, type)
_NUMERIC_ENV = {
    "TMO_MAX_TEAMS": ("max_concurrent_teams", int),
    "TMO_MAX_AGENTS_PER_TEAM": ("max_agents_per_team", int),
    "TMO_TEAM_TIMEOUT": ("team_timeout", float),
    "TMO_RESPONSE_TIMEOUT": ("response_timeout", float),
    "TMO_FIRST_OUTPUT_TIMEOUT": ("first_output_timeout", float),
    "TMO_POLL_INTERVAL": ("poll_interval", float),
    "TMO_SILENCE_THRESHOLD": ("silence_threshold", float),
    "TMO_QUICK_SILENCE_THRESHOLD": ("quick_silence_threshold", float),
    "TMO_MAX_SANDBOXES": ("max_sandboxes_per_owner", int),
    "TMO_PREVIEW_BASE_PORT": ("preview_base_port", int),
    "TMO_PREVIEW_MAX_PORTS": ("preview_max_ports", int),
}


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".team_orchestrator" / "tmo.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    base_branch: str = "main"
    worktree_dir: str = ".team-orchestrator-parallel-dev"
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    server_url: str = "http://127.0.0.1:8787"

    # Agent processes
    agent_command: list[str] = field(default_factory=lambda: ["claude"])
    agent_model: str | None = None
    response_timeout: float = 120.0
    first_output_timeout: float = 90.0
    health_monitoring: bool = False
    auto_restart: bool = False
    health_check_interval: float = 30.0
    idle_threshold: float = 300.0
    probe_timeout: float = 5.0
    skip_validation: bool = False

    # Completion heuristics
    silence_threshold: float = 3.0
    quick_silence_threshold: float = 2.0

    # Teams
    max_concurrent_teams: int = 3
    max_agents_per_team: int = 5
    team_timeout: float = 30 * 60.0
    poll_interval: float = 10.0
    stale_after: float = 24 * 3600.0

    # Terminal hub
    terminal_buffer_size: int = 1000
    terminal_idle_timeout: float = 30.0

    # Sandboxes
    sandbox_root: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "team-orchestrator-workspaces"
    )
    max_sandboxes_per_owner: int = 5
    sandbox_cpu_percent: float = 50.0
    sandbox_memory_mb: int = 2048
    sandbox_disk_mb: int = 5120
    sandbox_time_limit: float = 3600.0
    metrics_interval: float = 5.0
    preview_base_port: int = 4001
    preview_max_ports: int = 10
    preview_ready_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("TMO_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("TMO_REPO_PATH"):
            config.repo_path = Path(repo)

        if branch := os.environ.get("TMO_BASE_BRANCH"):
            config.base_branch = branch

        if wt_dir := os.environ.get("TMO_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("TMO_SLACK_CHANNEL")

        if server_url := os.environ.get("TMO_SERVER_URL"):
            config.server_url = server_url

        if command := os.environ.get("TMO_AGENT_COMMAND"):
            config.agent_command = shlex.split(command)

        if model := os.environ.get("TMO_AGENT_MODEL"):
            config.agent_model = model

        if sandbox_root := os.environ.get("TMO_SANDBOX_ROOT"):
            config.sandbox_root = Path(sandbox_root)

        for name, (attr, cast) in _NUMERIC_ENV.items():
            if value := os.environ.get(name):
                setattr(config, attr, cast(value))

        config.health_monitoring = _flag("TMO_HEALTH_MONITORING", config.health_monitoring)
        config.auto_restart = _flag("TMO_AUTO_RESTART", config.auto_restart)
        config.skip_validation = _flag("TMO_SKIP_VALIDATION", config.skip_validation)

        return config

    @property
    def worktree_root(self) -> Path:
        return self.repo_path / self.worktree_dir


def _flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def get_config() -> Config:
    return Config.from_env()

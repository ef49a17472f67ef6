"""Git worktree lifecycle for agent teams.

Every agent of a team works in its own worktree on its own branch,
`claude-agent/<teamId>/<role>`, under `<repo>/<worktree_dir>/<teamId>-<ts>/`.
"""

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from team_orchestrator.core.roles import Role
from team_orchestrator.db.models import Team
from team_orchestrator.integrations.git import (
    GitError,
    branch_exists,
    checkout,
    delete_branch,
    get_current_branch,
    head_commit,
    is_repository,
    merge_abort,
    merge_no_ff,
    rev_list_count,
    status_porcelain,
    worktree_add,
    worktree_list,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "claude-agent"


class WorktreeCreationError(Exception):
    """Raised when an agent worktree cannot be created and verified."""

    def __init__(self, role: str, message: str):
        super().__init__(f"Worktree for {role} failed: {message}")
        self.role = role


class RepositoryError(Exception):
    """Raised when the project directory is not usable for parallel work."""


@dataclass
class WorktreeAgent:
    role: Role
    path: Path
    branch: str


@dataclass
class RepositoryState:
    is_repo: bool
    head: str
    dirty_files: list[str] = field(default_factory=list)
    worktrees: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class MergeReport:
    merged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def agent_branch(team_id: str, role: Role | str) -> str:
    return f"{BRANCH_PREFIX}/{team_id}/{Role(role).value}"


class WorkTreeIsolator:
    def __init__(self, repo_path: str | Path, worktree_dir: str = ".team-orchestrator-parallel-dev"):
        self.repo_path = Path(repo_path)
        self.root = self.repo_path / worktree_dir

    def team_root(self, team_id: str) -> Path:
        return self.root / f"{team_id}-{int(time.time() * 1000)}"

    # ── Preflight ─────────────────────────────────────────────────────────────

    def validate_repository_state(self) -> RepositoryState:
        """Check that the project is a git repo whose worktrees can be listed."""
        if not is_repository(self.repo_path):
            raise RepositoryError(f"{self.repo_path} is not a git repository")

        try:
            head = head_commit(self.repo_path)
            worktrees = worktree_list(self.repo_path)
        except GitError as e:
            raise RepositoryError(f"Repository at {self.repo_path} is not usable: {e}") from e

        state = RepositoryState(is_repo=True, head=head, worktrees=len(worktrees))
        dirty = [
            line for line in status_porcelain(self.repo_path)
            if self.root.name not in line
        ]
        if dirty:
            state.dirty_files = dirty
            warning = f"Working tree has {len(dirty)} uncommitted changes"
            state.warnings.append(warning)
            logger.warning("%s in %s", warning, self.repo_path)
        return state

    # ── Creation ──────────────────────────────────────────────────────────────

    def create_worktree_agent(
        self,
        team_id: str,
        role: Role | str,
        team_root: str | Path,
        base_branch: str = "main",
    ) -> WorktreeAgent:
        """Create and verify the worktree for one agent, rolling back on failure."""
        role = Role(role)
        path = Path(team_root) / role.value
        branch = agent_branch(team_id, role)
        path.parent.mkdir(parents=True, exist_ok=True)

        try:
            worktree_add(self.repo_path, path, branch, base_branch, create_branch=True)
        except GitError as e:
            self.remove_worktree(path, branch)
            raise WorktreeCreationError(role.value, str(e)) from e

        try:
            self._verify(path, branch)
        except (GitError, WorktreeCreationError) as e:
            self.remove_worktree(path, branch)
            if isinstance(e, WorktreeCreationError):
                raise
            raise WorktreeCreationError(role.value, str(e)) from e

        logger.info("Created worktree %s on %s", path, branch)
        return WorktreeAgent(role=role, path=path, branch=branch)

    def _verify(self, path: Path, branch: str):
        role = path.name
        if not (path / ".git").exists():
            raise WorktreeCreationError(role, f"{path} has no .git entry")
        current = get_current_branch(path)
        if current != branch:
            raise WorktreeCreationError(role, f"expected branch {branch}, found {current!r}")
        listed = {Path(wt.path).resolve() for wt in worktree_list(self.repo_path)}
        if path.resolve() not in listed:
            raise WorktreeCreationError(role, f"{path} missing from worktree list")

    def remove_worktree(self, path: str | Path, branch: str):
        path = Path(path)
        if path.exists():
            try:
                worktree_remove(self.repo_path, path, force=True)
            except GitError:
                shutil.rmtree(path, ignore_errors=True)
        if branch_exists(self.repo_path, branch):
            try:
                delete_branch(self.repo_path, branch, force=True)
            except GitError as e:
                logger.warning("Could not delete branch %s during rollback: %s", branch, e)

    # ── Merging ───────────────────────────────────────────────────────────────

    def merge_team_work(self, team: Team) -> MergeReport:
        """Merge every completed agent branch that has commits into the base branch."""
        report = MergeReport()
        completed = [a for a in team.agents if a.status == "completed"]
        if not completed:
            logger.info("Team %s has no completed agents to merge", team.id)
            return report

        checkout(self.repo_path, team.base_branch)
        for agent in completed:
            try:
                commits = rev_list_count(self.repo_path, agent.branch, team.base_branch)
            except GitError as e:
                report.failed[agent.branch] = str(e)
                logger.error("Cannot inspect %s: %s", agent.branch, e)
                continue
            if commits == 0:
                report.skipped.append(agent.branch)
                continue

            message = f"Merge {agent.role.value} work from {team.id} - {team.requirement[:100]}"
            try:
                merge_no_ff(self.repo_path, agent.branch, message)
                report.merged.append(agent.branch)
                logger.info("Merged %s (%d commits) into %s", agent.branch, commits, team.base_branch)
            except GitError as e:
                merge_abort(self.repo_path)
                report.failed[agent.branch] = str(e)
                logger.error("Merge of %s failed: %s", agent.branch, e)
        return report

    # ── Teardown ──────────────────────────────────────────────────────────────

    def teardown_team(self, team: Team):
        """Remove every worktree, branch and directory of a team. Safe to repeat."""
        for agent in team.agents:
            path = Path(agent.work_dir)
            if path.exists():
                try:
                    worktree_remove(self.repo_path, path, force=True)
                except GitError as e:
                    logger.warning("Worktree remove failed for %s: %s", path, e)
            if agent.branch and branch_exists(self.repo_path, agent.branch):
                try:
                    delete_branch(self.repo_path, agent.branch, force=True)
                except GitError as e:
                    logger.warning("Branch delete failed for %s: %s", agent.branch, e)

        if team.worktree_root:
            shutil.rmtree(team.worktree_root, ignore_errors=True)
        self._prune()

    def sweep_stale(self, max_age: float = 24 * 3600.0) -> list[str]:
        """Delete team directories older than `max_age` seconds."""
        if not self.root.exists():
            return []
        cutoff = time.time() - max_age
        removed = []
        for entry in self.root.iterdir():
            if entry.is_dir() and entry.stat().st_mtime < cutoff:
                shutil.rmtree(entry, ignore_errors=True)
                removed.append(str(entry))
        if removed:
            logger.info("Removed %d stale team directories", len(removed))
            self._prune()
        return removed

    def _prune(self):
        try:
            worktree_prune(self.repo_path)
        except GitError as e:
            logger.warning("worktree prune failed: %s", e)

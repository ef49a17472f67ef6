"""Git subprocess wrappers for worktree, branch, and merge operations."""

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(args: list[str], cwd: str | Path | None = None, timeout: float | None = 60) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {' '.join(args)} timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise GitError(f"git not available or bad cwd {cwd}: {e}") from e


def is_repository(path: str | Path) -> bool:
    try:
        return run_git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except GitError:
        return False


def head_commit(cwd: str | Path) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=cwd)


def short_head(cwd: str | Path) -> str:
    return run_git(["rev-parse", "--short", "HEAD"], cwd=cwd)


# ── Worktrees ─────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch]
    args += [str(worktree_path)]
    if not create_branch:
        args.append(branch)
    else:
        args.append(base_branch)
    return run_git(args, cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    def flush():
        if current:
            worktrees.append(
                WorktreeInfo(
                    path=current.get("worktree", ""),
                    branch=current.get("branch", "").replace("refs/heads/", ""),
                    head=current.get("HEAD", ""),
                    is_bare=current.get("bare", False),
                )
            )
            current.clear()

    for line in output.split("\n"):
        if not line:
            flush()
        elif line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True
    flush()

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


# ── Branches ──────────────────────────────────────────────────────────────────


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def checkout(cwd: str | Path, branch: str) -> str:
    return run_git(["checkout", branch], cwd=cwd)


def rev_list_count(cwd: str | Path, branch: str, base_branch: str) -> int:
    """Number of commits on `branch` that are not on `base_branch`."""
    output = run_git(["rev-list", "--count", branch, f"^{base_branch}"], cwd=cwd)
    return int(output or 0)


def last_commit_age(cwd: str | Path, ref: str = "HEAD") -> float:
    """Seconds since the committer date of `ref`."""
    output = run_git(["log", "-1", "--format=%ct", ref], cwd=cwd)
    return max(0.0, time.time() - int(output))


# ── Working tree state ────────────────────────────────────────────────────────


def status_porcelain(cwd: str | Path) -> list[str]:
    """Changed paths, one porcelain line each."""
    output = run_git(["status", "--porcelain"], cwd=cwd)
    return [line for line in output.split("\n") if line.strip()]


# ── Merging ───────────────────────────────────────────────────────────────────


def merge_no_ff(cwd: str | Path, branch: str, message: str) -> str:
    return run_git(["merge", "--no-ff", branch, "-m", message], cwd=cwd)


def merge_abort(cwd: str | Path):
    """Abort an in-progress merge, ignoring the case where none is active."""
    try:
        run_git(["merge", "--abort"], cwd=cwd)
    except GitError:
        pass


def changed_files(cwd: str | Path, base_branch: str, branch: str = "HEAD") -> list[str]:
    """Paths changed on `branch` since it diverged from `base_branch`."""
    output = run_git(["diff", "--name-only", f"{base_branch}...{branch}"], cwd=cwd)
    return [line for line in output.split("\n") if line.strip()]

"""tmux subprocess wrappers for sandbox terminal sessions."""

import shutil
import subprocess
from pathlib import Path


class TmuxError(Exception):
    """Raised when a tmux command fails."""


def is_available() -> bool:
    return shutil.which("tmux") is not None


def run_tmux(args: list[str], timeout: float = 15) -> str:
    """Run a tmux command and return stdout. Raises TmuxError on failure."""
    cmd = ["tmux"] + args
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise TmuxError(f"tmux {' '.join(args)} failed: {e.stderr.strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise TmuxError(f"tmux {' '.join(args)} timed out") from e
    except FileNotFoundError as e:
        raise TmuxError("tmux is not installed") from e


def new_session(name: str, cwd: str | Path, env: dict[str, str] | None = None) -> str:
    args = ["new-session", "-d", "-s", name, "-c", str(cwd)]
    for key, value in (env or {}).items():
        args += ["-e", f"{key}={value}"]
    return run_tmux(args)


def has_session(name: str) -> bool:
    try:
        run_tmux(["has-session", "-t", name])
        return True
    except TmuxError:
        return False


def kill_session(name: str):
    """Kill a session. A session that is already gone is not an error."""
    try:
        run_tmux(["kill-session", "-t", name])
    except TmuxError:
        if has_session(name):
            raise


def list_sessions() -> list[str]:
    try:
        output = run_tmux(["list-sessions", "-F", "#{session_name}"])
    except TmuxError:
        # No server running means no sessions
        return []
    return [line for line in output.split("\n") if line]


def send_keys(name: str, command: str) -> str:
    return run_tmux(["send-keys", "-t", name, command, "Enter"])


def session_pids(name: str) -> list[int]:
    try:
        output = run_tmux(["list-panes", "-t", name, "-F", "#{pane_pid}"])
    except TmuxError:
        return []
    return [int(p) for p in output.split("\n") if p.strip().isdigit()]

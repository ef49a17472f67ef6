"""Shared fixtures: temporary git repositories and fake agent commands."""

import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

from team_orchestrator.config import Config
from team_orchestrator.integrations import tmux

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Commits and merges made by the code under test need an identity."""
    for key, value in GIT_IDENTITY.items():
        monkeypatch.setenv(key, value)


def git(cwd, *args, env=None):
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True, env=env
    ).stdout.strip()


def commit_file(cwd, name, content="x\n", message=None, env=None):
    path = Path(cwd) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(cwd, "add", name, env=env)
    git(cwd, "commit", "-m", message or f"add {name}", env=env)


@pytest.fixture
def git_repo():
    """Create a temporary git repo with an initial commit on main."""
    with tempfile.TemporaryDirectory() as tmp:
        git(tmp, "init")
        git(tmp, "checkout", "-b", "main")
        commit_file(tmp, "README.md", "# Test\n", "init")
        yield Path(tmp)


@pytest.fixture
def config(git_repo, tmp_path):
    """Config pointing at the temp repo with a fake agent that echoes a JSON result."""
    return Config(
        db_path=tmp_path / "tmo.db",
        repo_path=git_repo,
        sandbox_root=tmp_path / "sandboxes",
        agent_command=fake_agent('print(json.dumps({"result": "Task complete. Done."}))'),
        response_timeout=10.0,
        first_output_timeout=5.0,
        poll_interval=60.0,
        skip_validation=True,
    )


def fake_agent(body: str) -> list[str]:
    """A command line that reads the prompt from stdin and then runs `body`."""
    script = "import json, sys, time\nprompt = sys.stdin.read()\n" + body
    return [sys.executable, "-c", script]


class FakeTmux:
    """Records tmux calls instead of talking to a tmux server."""

    def __init__(self, monkeypatch):
        self.sessions: dict[str, dict] = {}
        self.killed: list[str] = []
        self.keys: list[tuple[str, str]] = []
        self.fail_create = False
        monkeypatch.setattr(tmux, "new_session", self.new_session)
        monkeypatch.setattr(tmux, "kill_session", self.kill_session)
        monkeypatch.setattr(tmux, "list_sessions", lambda: list(self.sessions))
        monkeypatch.setattr(tmux, "send_keys", self.send_keys)
        monkeypatch.setattr(tmux, "session_pids", lambda name: [])

    def new_session(self, name, cwd, env=None):
        if self.fail_create:
            raise tmux.TmuxError("no server")
        self.sessions[name] = {"cwd": str(cwd), "env": env}
        return ""

    def kill_session(self, name):
        self.sessions.pop(name, None)
        self.killed.append(name)

    def send_keys(self, name, command):
        self.keys.append((name, command))
        return ""


@pytest.fixture
def fake_tmux(monkeypatch):
    return FakeTmux(monkeypatch)

"""Tests for the CLI."""

import json
import shlex

import pytest
from click.testing import CliRunner

from conftest import fake_agent
from team_orchestrator.cli import main
from team_orchestrator.core import history as history_mod
from team_orchestrator.core.roles import Role
from team_orchestrator.core.workflows import TEMPLATES
from team_orchestrator.db.engine import init_db
from team_orchestrator.db.models import Agent, Team, TeamProgress


@pytest.fixture
def cli_env(git_repo, tmp_path, monkeypatch):
    """Point the CLI at a temp repo, database and an address nothing listens on."""
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("TMO_DB_PATH", str(db_path))
    monkeypatch.setenv("TMO_REPO_PATH", str(git_repo))
    monkeypatch.setenv("TMO_SANDBOX_ROOT", str(tmp_path / "sandboxes"))
    monkeypatch.setenv("TMO_SERVER_URL", "http://127.0.0.1:9")
    monkeypatch.setenv("TMO_AGENT_COMMAND", shlex.join(fake_agent("print('Done.')")))
    monkeypatch.setenv("TMO_SKIP_VALIDATION", "1")
    return CliRunner(), db_path


@pytest.fixture
def recorded_team(cli_env):
    _, db_path = cli_env
    db = init_db(db_path)
    team = Team(
        id="team-42",
        requirement="Build the billing API",
        workflow_id="api-development",
        base_branch="main",
        worktree_root="/tmp/wt/team-42",
        status="completed",
        progress=TeamProgress(overall=100),
        agents=[Agent(id="team-42-backend", team_id="team-42", role=Role.BACKEND,
                      name="Backend Developer", work_dir="/tmp/wt/team-42/backend",
                      branch="claude-agent/team-42/backend", status="completed")],
    )
    history_mod.save_team(db, team)
    history_mod.log_team_event(db, "team-42", "team:spawned", {"teamId": "team-42"})
    db.close()
    return team


class TestHelp:
    def test_groups_are_listed(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for name in ("team", "workflow", "sandbox", "health", "emergency-stop", "classify", "serve", "mcp"):
            assert name in result.output


class TestClassify:
    def test_complete_output(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["classify"], input="Done! ```js\nconsole.log(1)\n```")
        assert result.exit_code == 0
        assert result.output.startswith("complete (confidence")
        assert "code_block_complete" in result.output

    def test_json(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["classify", "--json"], input="Done! ```js\nconsole.log(1)\n```")
        data = json.loads(result.output)
        assert data["isComplete"] is True
        assert data["parsed"]["codeBlocks"][0]["language"] == "js"

    def test_silence_option(self, cli_env):
        runner, _ = cli_env
        text = "Working on the component and wiring up the styles"
        assert runner.invoke(main, ["classify"], input=text).output.startswith("incomplete")
        assert runner.invoke(main, ["classify", "--silence", "6"], input=text).output.startswith("complete")


class TestWorkflowCommands:
    def test_analyze(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(
            main, ["workflow", "analyze", "Build a full-stack dashboard with authentication and a database"]
        )
        assert result.exit_code == 0
        assert "Best match: full-stack-feature (confidence 1.00)" in result.output
        assert "ui-dashboard" in result.output

    def test_list(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["workflow", "list"])
        for template in TEMPLATES:
            assert template.id in result.output

    def test_run_unknown_template(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["workflow", "run", "Anything", "--workflow", "nope"])
        assert result.exit_code == 1
        assert "Error" in result.output


class TestTeamCommands:
    def test_list_empty(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["team", "list"])
        assert result.exit_code == 0
        assert "No teams found." in result.output

    def test_list_and_status(self, cli_env, recorded_team):
        runner, _ = cli_env
        result = runner.invoke(main, ["team", "list"])
        assert "team-42" in result.output
        assert "Build the billing API" in result.output

        as_json = json.loads(runner.invoke(main, ["team", "list", "--json"]).output)
        assert as_json[0]["status"] == "completed"
        assert runner.invoke(main, ["team", "list", "--status", "working"]).output.strip() == "No teams found."

        status = runner.invoke(main, ["team", "status", "team-42"])
        assert "Workflow: api-development" in status.output
        assert "Agents: 1" in status.output

    def test_status_unknown(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["team", "status", "team-0"])
        assert result.exit_code == 1
        assert "Team not found" in result.output

    def test_events(self, cli_env, recorded_team):
        runner, _ = cli_env
        result = runner.invoke(main, ["team", "events", "team-42"])
        assert result.exit_code == 0
        assert "team:spawned" in result.output

    def test_spawn_rejects_empty_requirement(self, cli_env, fake_tmux):
        runner, _ = cli_env
        result = runner.invoke(main, ["team", "spawn", "   "])
        assert result.exit_code == 1
        assert "Requirement must not be empty" in result.output


class TestServerCommands:
    @pytest.mark.parametrize("args", [["health"], ["team", "stop", "team-1"], ["sandbox", "list"]])
    def test_no_server(self, cli_env, args):
        runner, _ = cli_env
        result = runner.invoke(main, args)
        assert result.exit_code == 1
        assert "No server reachable" in result.output

    def test_sandbox_sweep_runs_locally(self, cli_env, fake_tmux):
        runner, _ = cli_env
        fake_tmux.sessions["sandbox_leftover"] = {}
        result = runner.invoke(main, ["sandbox", "sweep"])
        assert result.exit_code == 0
        assert "Killed 1 sessions, removed 0 directories" in result.output

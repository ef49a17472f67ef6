"""Tests for sqlite history of teams and workflows."""

import json
from datetime import datetime

import pytest

from team_orchestrator.core import events
from team_orchestrator.core import history as history_mod
from team_orchestrator.core.events import EventBus
from team_orchestrator.core.history import HistoryRecorder
from team_orchestrator.core.roles import Role
from team_orchestrator.db.engine import SharedConnection, init_db
from team_orchestrator.db.models import Agent, TaskResult, Team, TeamProgress, WorkflowSession


@pytest.fixture
def db(tmp_path):
    conn = init_db(tmp_path / "history.db")
    yield conn
    conn.close()


def _team(status="working", progress=40):
    return Team(
        id="team-1",
        requirement="Build login",
        workflow_id="full-stack-feature",
        base_branch="main",
        worktree_root="/tmp/wt/team-1",
        status=status,
        progress=TeamProgress(overall=progress),
        agents=[
            Agent(id="team-1-frontend", team_id="team-1", role=Role.FRONTEND,
                  name="Frontend Developer", work_dir="/tmp/wt/team-1/frontend",
                  branch="claude-agent/team-1/frontend"),
        ],
    )


class TestTeamRecords:
    def test_save_and_update(self, db):
        history_mod.save_team(db, _team())
        history_mod.save_team(db, _team(status="completed", progress=100))
        record = history_mod.get_team_record(db, "team-1")
        assert record["status"] == "completed"
        assert record["progress"] == 100
        assert record["agent_count"] == 1
        assert len(history_mod.list_team_records(db)) == 1

    def test_filter_by_status(self, db):
        history_mod.save_team(db, _team())
        assert history_mod.list_team_records(db, "working")
        assert history_mod.list_team_records(db, "stopped") == []

    def test_missing_record(self, db):
        assert history_mod.get_team_record(db, "nope") is None

    def test_events_in_order(self, db):
        history_mod.log_team_event(db, "team-1", "team:spawned", {"agents": 2})
        history_mod.log_team_event(db, "team-1", "team:stopped")
        evts = history_mod.get_team_events(db, "team-1")
        assert [e.event_type for e in evts] == ["team:spawned", "team:stopped"]
        assert json.loads(evts[0].payload) == {"agents": 2}
        assert evts[1].payload is None


class TestWorkflowRecords:
    def test_session_with_tasks(self, db):
        session = WorkflowSession(
            id="workflow-1", workflow_id="api-development", requirement="An API", work_root="/tmp/w",
            status="running", started_at=datetime.now(),
        )
        history_mod.save_workflow_session(db, session)
        history_mod.record_workflow_task(db, "workflow-1", "design", TaskResult(
            agent_id="workflow-1-backend", role=Role.BACKEND, task="design API endpoints",
            prompt="p", success=True, output="done",
        ))
        session.status = "failed"
        session.errors.append("Phase 'testing' failed")
        history_mod.save_workflow_session(db, session)

        record = history_mod.get_workflow_session(db, "workflow-1")
        assert record["status"] == "failed"
        assert record["error"] == "Phase 'testing' failed"
        assert record["tasks"][0]["role"] == "backend"
        assert record["tasks"][0]["success"] == 1
        assert [r["id"] for r in history_mod.list_workflow_sessions(db)] == ["workflow-1"]


class TestHistoryRecorder:
    def test_logs_team_events_from_bus(self, tmp_path):
        shared = SharedConnection(tmp_path / "rec.db")
        recorder = HistoryRecorder(shared)
        bus = EventBus()
        recorder.attach(bus)

        bus.publish(events.TEAM_SPAWNED, teamId="team-9", agents=["a"])
        bus.publish(events.METRICS_UPDATED, sandboxId="sb")
        recorder.detach()
        bus.publish(events.TEAM_STOPPED, teamId="team-9")

        evts = recorder.team_events("team-9")
        assert [e.event_type for e in evts] == ["team:spawned"]
        shared.close()

    def test_snapshot_roundtrip(self, tmp_path):
        shared = SharedConnection(tmp_path / "rec.db")
        recorder = HistoryRecorder(shared)
        recorder.save_team(_team())
        assert recorder.team_record("team-1")["requirement"] == "Build login"
        assert recorder.team_records()[0]["id"] == "team-1"
        shared.close()

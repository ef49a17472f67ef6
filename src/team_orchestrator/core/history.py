"""Persistent log of teams, their events, and workflow sessions."""

import json
import logging
import sqlite3
from datetime import datetime

from team_orchestrator.core.events import WILDCARD, Event, EventBus
from team_orchestrator.db.engine import SharedConnection
from team_orchestrator.db.models import Team, TeamEvent, TaskResult, WorkflowSession

logger = logging.getLogger(__name__)


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _iso(val: datetime | None) -> str | None:
    return val.isoformat(sep=" ", timespec="seconds") if val else None


# ── Teams ─────────────────────────────────────────────────────────────────────


def save_team(db: sqlite3.Connection, team: Team):
    """Insert or refresh the stored snapshot of a team."""
    db.execute(
        """INSERT INTO teams
           (id, requirement, workflow_id, base_branch, worktree_root, status,
            progress, agent_count, session_id, error, completed_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
             status = excluded.status,
             progress = excluded.progress,
             agent_count = excluded.agent_count,
             error = excluded.error,
             completed_at = excluded.completed_at,
             updated_at = datetime('now')""",
        (
            team.id,
            team.requirement,
            team.workflow_id,
            team.base_branch,
            team.worktree_root,
            team.status,
            team.progress.overall,
            len(team.agents),
            team.session_id,
            team.error,
            _iso(team.completed_at),
        ),
    )
    db.commit()


def list_team_records(db: sqlite3.Connection, status: str | None = None) -> list[dict]:
    """List stored team snapshots, newest first."""
    query = "SELECT * FROM teams"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, id DESC"
    return [dict(r) for r in db.execute(query, params).fetchall()]


def get_team_record(db: sqlite3.Connection, team_id: str) -> dict | None:
    row = db.execute("SELECT * FROM teams WHERE id = ?", (team_id,)).fetchone()
    return dict(row) if row else None


def log_team_event(db: sqlite3.Connection, team_id: str, event_type: str, payload: dict | None = None):
    db.execute(
        "INSERT INTO team_events (team_id, event_type, payload) VALUES (?, ?, ?)",
        (team_id, event_type, json.dumps(payload, default=str) if payload is not None else None),
    )
    db.commit()


def get_team_events(db: sqlite3.Connection, team_id: str) -> list[TeamEvent]:
    """Get the event history for a team."""
    rows = db.execute(
        "SELECT * FROM team_events WHERE team_id = ? ORDER BY id",
        (team_id,),
    ).fetchall()
    return [
        TeamEvent(
            id=r["id"],
            team_id=r["team_id"],
            event_type=r["event_type"],
            payload=r["payload"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


# ── Workflow sessions ─────────────────────────────────────────────────────────


def save_workflow_session(db: sqlite3.Connection, session: WorkflowSession):
    error = session.errors[-1] if session.errors else None
    db.execute(
        """INSERT INTO workflow_sessions
           (id, workflow_id, requirement, status, current_phase, progress, summary, error, ended_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
             status = excluded.status,
             current_phase = excluded.current_phase,
             progress = excluded.progress,
             summary = excluded.summary,
             error = excluded.error,
             ended_at = excluded.ended_at""",
        (
            session.id,
            session.workflow_id,
            session.requirement,
            session.status,
            session.current_phase,
            session.progress,
            session.summary,
            error,
            _iso(session.ended_at),
        ),
    )
    db.commit()


def record_workflow_task(db: sqlite3.Connection, session_id: str, phase: str, result: TaskResult):
    db.execute(
        """INSERT INTO workflow_tasks
           (session_id, phase, agent_id, role, task, success, output, error, execution_time)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            session_id,
            phase,
            result.agent_id,
            str(result.role),
            result.task,
            int(result.success),
            result.output,
            result.error,
            result.execution_time,
        ),
    )
    db.commit()


def get_workflow_session(db: sqlite3.Connection, session_id: str) -> dict | None:
    row = db.execute("SELECT * FROM workflow_sessions WHERE id = ?", (session_id,)).fetchone()
    if not row:
        return None
    record = dict(row)
    tasks = db.execute(
        "SELECT * FROM workflow_tasks WHERE session_id = ? ORDER BY id",
        (session_id,),
    ).fetchall()
    record["tasks"] = [dict(t) for t in tasks]
    return record


def list_workflow_sessions(db: sqlite3.Connection) -> list[dict]:
    rows = db.execute("SELECT * FROM workflow_sessions ORDER BY started_at DESC, id DESC").fetchall()
    return [dict(r) for r in rows]


# ── Recorder ──────────────────────────────────────────────────────────────────


class HistoryRecorder:
    """Writes bus events and snapshots to sqlite from any thread."""

    def __init__(self, shared: SharedConnection):
        self.shared = shared
        self._unsubscribe = None

    def attach(self, bus: EventBus):
        self._unsubscribe = bus.subscribe(WILDCARD, self._on_event)

    def detach(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_event(self, event: Event):
        team_id = event.payload.get("teamId")
        if not team_id:
            return
        with self.shared.cursor() as db:
            log_team_event(db, team_id, event.topic, dict(event.payload))

    def save_team(self, team: Team):
        with self.shared.cursor() as db:
            save_team(db, team)

    def save_workflow_session(self, session: WorkflowSession):
        with self.shared.cursor() as db:
            save_workflow_session(db, session)

    def record_workflow_task(self, session_id: str, phase: str, result: TaskResult):
        with self.shared.cursor() as db:
            record_workflow_task(db, session_id, phase, result)

    def team_events(self, team_id: str) -> list[TeamEvent]:
        with self.shared.cursor() as db:
            return get_team_events(db, team_id)

    def team_records(self, status: str | None = None) -> list[dict]:
        with self.shared.cursor() as db:
            return list_team_records(db, status)

    def workflow_session(self, session_id: str) -> dict | None:
        with self.shared.cursor() as db:
            return get_workflow_session(db, session_id)

    def team_record(self, team_id: str) -> dict | None:
        with self.shared.cursor() as db:
            return get_team_record(db, team_id)

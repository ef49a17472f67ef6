"""Parallel agent teams: spawn, monitor, merge and stop.

A team is one requirement split across role agents. Each agent works in its
own git worktree and runs a single task through the puppet. Progress is read
back from git state by a monitor thread, since the agents offer no structured
completion signal.
"""

import copy
import json
import logging
import shutil
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from datetime import datetime
from pathlib import Path

from team_orchestrator.config import Config
from team_orchestrator.core import events
from team_orchestrator.core.events import EventBus
from team_orchestrator.core.history import HistoryRecorder
from team_orchestrator.core.puppet import AgentError, AgentStoppedError, ProcessPuppet
from team_orchestrator.core.roles import Role, determine_agent_roles, profile
from team_orchestrator.core.sandbox import SandboxLifecycleManager
from team_orchestrator.core.workflows import WorkflowCoordinator
from team_orchestrator.core.worktrees import WorkTreeIsolator
from team_orchestrator.db.models import TEAM_TERMINAL_STATUSES, Agent, Team, TeamProgress
from team_orchestrator.integrations.git import (
    GitError,
    changed_files,
    last_commit_age,
    rev_list_count,
    status_porcelain,
)
from team_orchestrator.integrations.slack import SlackError, format_team_notification, send_message

logger = logging.getLogger(__name__)

MAX_REQUIREMENT_LENGTH = 1000
OUTPUT_PROGRESS_CAP = 85
COMMIT_PROGRESS_CAP = 90
IDLE_AFTER_COMMIT = 60.0
SETTLED_STATUSES = ("completed", "inferred_idle", "error", "stopped")


class ValidationError(Exception):
    """Raised for a malformed requirement or an empty role set."""


class CapacityError(Exception):
    """Raised when the concurrent team ceiling is reached."""


class EmergencyStopError(Exception):
    """Raised while the emergency stop is engaged."""


class TeamNotFoundError(Exception):
    """Raised for an unknown team id."""


class TeamStoppedError(Exception):
    """Raised when a team is stopped, or the emergency stop engages, while it spawns."""


class TeamSpawnError(Exception):
    """Raised when spawning a team fails after its resources were rolled back."""

    def __init__(self, team_id: str, role: str | None, cause: Exception):
        where = f" while creating the {role} agent" if role else ""
        super().__init__(f"Team {team_id} failed to spawn{where}: {cause}")
        self.team_id = team_id
        self.role = role
        self.cause = cause


def validate_requirement(requirement: str) -> str:
    requirement = (requirement or "").strip()
    if not requirement:
        raise ValidationError("Requirement must not be empty")
    if len(requirement) > MAX_REQUIREMENT_LENGTH:
        raise ValidationError(
            f"Requirement is {len(requirement)} chars (max {MAX_REQUIREMENT_LENGTH})"
        )
    return requirement


def compute_progress(agents: list[Agent]) -> TeamProgress:
    if not agents:
        return TeamProgress()
    overall = round(sum(a.progress for a in agents) / len(agents))
    return TeamProgress(
        overall=overall,
        planning=min(overall, 25),
        development=max(0, min(overall - 25, 50)),
        testing=max(0, min(overall - 75, 20)),
        deployment=max(0, overall - 95),
    )


def build_agent_prompt(agent: Agent) -> str:
    role = profile(agent.role)
    focus = "\n".join(f"- {item}" for item in role.focus)
    return (
        f"You are a {agent.name} working on: {agent.current_task}\n"
        f"Working directory: {agent.work_dir}\n"
        f"Git branch: {agent.branch}\n\n"
        f"Please implement the {agent.role.value} aspects of this requirement. "
        "Work directly in the provided directory and commit your changes when complete.\n\n"
        f"Focus on:\n{focus}"
    )


def agent_payload(team_id: str, agent: Agent) -> dict:
    return {
        "teamId": team_id,
        "agentId": agent.id,
        "role": agent.role.value,
        "progress": agent.progress,
        "currentTask": agent.current_task,
        "status": agent.status,
    }


class ProgressMonitor:
    """Background thread that calls `check` every `poll_interval` seconds."""

    def __init__(self, check: Callable[[], None], poll_interval: float = 10.0, name: str = "team-progress"):
        self.check = check
        self.poll_interval = poll_interval
        self.name = name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Monitor %s started", self.name)

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        self._thread = None

    def _run(self):
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.check()
            except Exception:
                logger.exception("Error in %s monitor loop", self.name)


class TeamOrchestrator:
    def __init__(
        self,
        config: Config,
        puppet: ProcessPuppet,
        isolator: WorkTreeIsolator,
        workflows: WorkflowCoordinator,
        bus: EventBus | None = None,
        history: HistoryRecorder | None = None,
        sandboxes: SandboxLifecycleManager | None = None,
    ):
        self.config = config
        self.puppet = puppet
        self.isolator = isolator
        self.workflows = workflows
        self.bus = bus or EventBus()
        self.history = history
        self.sandboxes = sandboxes
        self.monitor = ProgressMonitor(self.poll_progress, config.poll_interval)

        self._teams: dict[str, Team] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._calls: dict[str, Future] = {}
        self._released: set[str] = set()
        self._lock = threading.RLock()
        self._emergency = False
        self._started = time.monotonic()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self):
        """Sweep leftovers from earlier runs and start polling."""
        try:
            self.isolator.sweep_stale(self.config.stale_after)
        except OSError as e:
            logger.warning("Stale worktree sweep failed: %s", e)
        self.monitor.start()

    def shutdown(self):
        """Stop unfinished teams. Finished, unmerged teams keep their branches."""
        self.monitor.stop()
        for team in self.list_teams():
            if team.status in TEAM_TERMINAL_STATUSES:
                logger.info("Leaving branches of %s team %s in place", team.status, team.id)
                continue
            self.stop_team(team.id, reason="Orchestrator shutdown")
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _publish(self, topic: str, **payload):
        self.bus.publish(topic, **payload)

    def _save(self, team: Team):
        if self.history:
            try:
                self.history.save_team(team)
            except Exception:
                logger.exception("Could not persist team %s", team.id)

    def _active_count(self) -> int:
        return sum(1 for t in self._teams.values() if t.status not in TEAM_TERMINAL_STATUSES)

    def _new_team_id(self) -> str:
        with self._lock:
            stamp = int(time.time() * 1000)
            while f"team-{stamp}" in self._teams:
                stamp += 1
            return f"team-{stamp}"

    # ── Spawning ──────────────────────────────────────────────────────────────

    def spawn_parallel_team(self, requirement: str, session_id: str | None = None) -> Team:
        """Create worktrees and agents for every role, then start their tasks.

        Every resource created is recorded; on failure they are released in
        reverse order and TeamSpawnError names the role being created.
        """
        if self._emergency:
            raise EmergencyStopError("Emergency stop is active; reset it before spawning teams")
        requirement = validate_requirement(requirement)
        roles = determine_agent_roles(requirement, self.config.max_agents_per_team)
        if not roles:
            raise ValidationError("No agent roles could be derived from the requirement")

        team_id = self._new_team_id()
        team_root = self.isolator.team_root(team_id)
        team = Team(
            id=team_id,
            requirement=requirement,
            workflow_id=self.workflows.analyze_requirement(requirement).workflow_id,
            base_branch=self.config.base_branch,
            worktree_root=str(team_root),
            session_id=session_id,
            created_at=datetime.now(),
        )

        with self._lock:
            if self._active_count() >= self.config.max_concurrent_teams:
                raise CapacityError(
                    f"Maximum concurrent teams ({self.config.max_concurrent_teams}) reached"
                )
            self._teams[team_id] = team

        try:
            self.isolator.validate_repository_state()
        except Exception:
            with self._lock:
                self._teams.pop(team_id, None)
            raise

        rollback: list[tuple[str, Callable[[], None]]] = [
            ("team directory", lambda: shutil.rmtree(team_root, ignore_errors=True)),
        ]
        role: Role | None = None
        try:
            for role in roles:
                agent = self._create_agent(team, role, team_root, rollback)
                with self._lock:
                    self._check_not_halted(team_id)
                    team.agents.append(agent)
            role = None
            with self._lock:
                self._check_not_halted(team_id)
                team.status = "ready"
        except Exception as e:
            logger.error("Spawn of %s failed at %s: %s", team_id, role, e)
            self._rollback(rollback)
            with self._lock:
                # A team stopped mid-spawn keeps its "stopped" record
                if team_id not in self._released:
                    self._teams.pop(team_id, None)
            raise TeamSpawnError(team_id, role.value if role else None, e) from e

        logger.info("Team %s spawned with %s", team_id, ", ".join(r.value for r in roles))
        self._save(team)
        self._publish(
            events.TEAM_SPAWNED,
            teamId=team_id,
            requirement=requirement,
            workflowId=team.workflow_id,
            agents=[a.id for a in team.agents],
        )
        self._start_execution(team)
        return self.get_team_status(team_id)

    def _create_agent(self, team: Team, role: Role, team_root: Path, rollback: list) -> Agent:
        worktree = self.isolator.create_worktree_agent(team.id, role, team_root, team.base_branch)
        rollback.append((
            f"{role.value} worktree",
            lambda: self.isolator.remove_worktree(worktree.path, worktree.branch),
        ))

        agent_id = f"{team.id}-{role.value}"
        self.puppet.spawn_agent(
            agent_id, role, team.requirement, worktree.path, exact_dir=True, persistent=False
        )
        rollback.append((f"{role.value} agent", lambda: self.puppet.stop_agent(agent_id)))

        return Agent(
            id=agent_id,
            team_id=team.id,
            role=role,
            name=profile(role).title,
            work_dir=str(worktree.path),
            branch=worktree.branch,
            status="waiting",
            current_task=f"{profile(role).title} work for: {team.requirement}",
            last_activity=datetime.now(),
        )

    def _check_not_halted(self, team_id: str):
        if team_id in self._released:
            raise TeamStoppedError(f"Team {team_id} was stopped while spawning")
        if self._emergency:
            raise TeamStoppedError("Emergency stop engaged while spawning")

    def _rollback(self, rollback: list[tuple[str, Callable[[], None]]]):
        for name, undo in reversed(rollback):
            try:
                undo()
            except Exception:
                logger.exception("Rollback of %s failed", name)

    def _start_execution(self, team: Team):
        with self._lock:
            if team.id in self._released or team.status in TEAM_TERMINAL_STATUSES:
                logger.info("Team %s was stopped before its tasks started", team.id)
                return
            team.status = "working"
            team.started_at = datetime.now()
            agents = list(team.agents)

        started = 0
        for agent in agents:
            try:
                future = self.puppet.submit(
                    agent.id,
                    build_agent_prompt(agent),
                    timeout=self.config.team_timeout,
                    on_output=self._handle_output,
                )
            except AgentError as e:
                logger.error("Could not start %s: %s", agent.id, e)
                with self._lock:
                    if team.id in self._released:
                        continue
                    agent.status = "error"
                    agent.current_task = f"Failed to start: {e}"[:100]
                continue
            with self._lock:
                if team.id in self._released:
                    continue
                self._calls[agent.id] = future
                agent.status = "working"
                agent.progress = 5
            future.add_done_callback(lambda f, agent_id=agent.id: self._on_call_done(team.id, agent_id, f))
            started += 1

        timer = threading.Timer(self.config.team_timeout, self._on_team_timeout, args=(team.id,))
        timer.daemon = True
        with self._lock:
            if team.id in self._released:
                return
            self._timers[team.id] = timer
        timer.start()

        self._save(team)
        self._publish(
            events.TEAM_EXECUTION_STARTED,
            teamId=team.id,
            agentCount=len(agents),
            automatedProcesses=started,
        )

    # ── Agent output and progress ─────────────────────────────────────────────

    def _find_agent(self, agent_id: str) -> tuple[Team | None, Agent | None]:
        for team in self._teams.values():
            agent = team.get_agent(agent_id)
            if agent:
                return team, agent
        return None, None

    def _handle_output(self, agent_id: str, chunk: str):
        with self._lock:
            team, agent = self._find_agent(agent_id)
            if agent is None or agent.status != "working":
                return
            try:
                data = json.loads(chunk)
            except (json.JSONDecodeError, ValueError):
                data = None
            if isinstance(data, dict) and data.get("type") == "progress":
                agent.current_task = data.get("message") or agent.current_task
                agent.progress = min(agent.progress + 10, OUTPUT_PROGRESS_CAP)
            else:
                lines = [line for line in chunk.split("\n") if line.strip()]
                if not lines:
                    return
                agent.current_task = lines[-1].strip()[:100]
                agent.progress = min(agent.progress + 2, OUTPUT_PROGRESS_CAP)
            agent.last_activity = datetime.now()
            payload = agent_payload(team.id, agent)
        self._publish(events.AGENT_PROGRESS, **payload)

    def _on_call_done(self, team_id: str, agent_id: str, future: Future):
        with self._lock:
            self._calls.pop(agent_id, None)
            team = self._teams.get(team_id)
            agent = team.get_agent(agent_id) if team else None
            if agent is None or agent.status in SETTLED_STATUSES:
                return
            error = future.exception() if not future.cancelled() else None
            if future.cancelled() or isinstance(error, AgentStoppedError):
                return
            if error is not None:
                agent.status = "error"
                agent.current_task = f"Failed: {error}"[:100]
                logger.warning("Agent %s failed: %s", agent_id, error)
            else:
                agent.current_task = f"{agent.role.value} process finished, waiting for commits"
                logger.info("Agent %s process finished", agent_id)
            payload = agent_payload(team_id, agent)
        self._publish(events.AGENT_PROGRESS, **payload)
        self._update_team_progress(team_id)

    def poll_progress(self):
        """Read git state of every working agent and update progress."""
        with self._lock:
            targets = [
                (team.id, team.base_branch, agent.id, agent.work_dir, agent.branch)
                for team in self._teams.values()
                if team.status == "working"
                for agent in team.agents
                if agent.status not in SETTLED_STATUSES
            ]
        touched = set()
        for team_id, base, agent_id, work_dir, branch in targets:
            try:
                if self._check_agent(team_id, base, agent_id, work_dir, branch):
                    touched.add(team_id)
            except GitError as e:
                logger.warning("Progress check failed for %s: %s", agent_id, e)
        for team_id in touched:
            self._update_team_progress(team_id)

    def _check_agent(self, team_id: str, base: str, agent_id: str, work_dir: str, branch: str) -> bool:
        if not Path(work_dir).exists():
            return False
        dirty = bool(status_porcelain(work_dir))
        commits = rev_list_count(work_dir, branch, base)
        files = len(changed_files(work_dir, base, branch)) if commits else 0
        idle_for = last_commit_age(work_dir, branch) if commits else 0.0

        with self._lock:
            team = self._teams.get(team_id)
            agent = team.get_agent(agent_id) if team else None
            if agent is None or agent.status in SETTLED_STATUSES:
                return False
            before = (agent.status, agent.progress)

            if dirty or commits:
                agent.status = "working"
                agent.progress = max(agent.progress, 10)
                if not commits:
                    agent.current_task = f"Working on {agent.role.value} tasks"
            if commits:
                agent.progress = min(10 + commits * 15, COMMIT_PROGRESS_CAP)
                agent.current_task = f"{commits} commits completed"
                agent.files_changed = files
                if idle_for > IDLE_AFTER_COMMIT:
                    agent.status = "inferred_idle"
                    agent.progress = 100
                    agent.current_task = f"{agent.role.value} idle {int(idle_for)}s after last commit"

            changed = before != (agent.status, agent.progress)
            payload = agent_payload(team_id, agent)
        if changed:
            self._publish(events.AGENT_PROGRESS, commits=commits, files=files, **payload)
        return changed

    def _update_team_progress(self, team_id: str):
        with self._lock:
            team = self._teams.get(team_id)
            if team is None or team.status != "working":
                return
            team.progress = compute_progress(team.agents)
            if not all(a.status in SETTLED_STATUSES for a in team.agents):
                self._save(team)
                return

            failed = [a for a in team.agents if a.status == "error"]
            for agent in team.agents:
                if agent.status == "inferred_idle":
                    agent.status = "completed"
            team.completed_at = datetime.now()
            if failed:
                team.status = "error"
                team.error = f"{len(failed)} agents failed: " + ", ".join(a.role.value for a in failed)
            else:
                team.status = "completed"
            timer = self._timers.pop(team_id, None)
            snapshot = copy.deepcopy(team)

        if timer:
            timer.cancel()
        duration = (snapshot.completed_at - (snapshot.started_at or snapshot.created_at)).total_seconds()
        self._save(snapshot)
        if snapshot.status == "completed":
            logger.info("Team %s completed in %.0fs", team_id, duration)
            self._publish(
                events.TEAM_COMPLETED,
                teamId=team_id,
                totalFiles=sum(a.files_changed for a in snapshot.agents),
                duration=duration,
            )
        else:
            logger.warning("Team %s finished with errors: %s", team_id, snapshot.error)
            self._publish(events.TEAM_ERROR, teamId=team_id, error=snapshot.error)
        self._notify(snapshot, duration)

    def _notify(self, team: Team, duration: float | None = None):
        if not (self.config.slack_bot_token and self.config.slack_channel):
            return
        agents = [
            {"role": a.role.value, "status": a.status, "progress": a.progress} for a in team.agents
        ]
        try:
            send_message(
                self.config.slack_bot_token,
                self.config.slack_channel,
                f"Team {team.id} {team.status}",
                blocks=format_team_notification(team.id, team.requirement, team.status, agents, duration),
            )
        except SlackError as e:
            logger.warning("Slack notification for %s failed: %s", team.id, e)

    # ── Timeouts ──────────────────────────────────────────────────────────────

    def _on_team_timeout(self, team_id: str):
        with self._lock:
            team = self._teams.get(team_id)
            self._timers.pop(team_id, None)
            if team is None or team.status in TEAM_TERMINAL_STATUSES:
                return
            team.status = "error"
            team.error = f"Team timed out after {self.config.team_timeout:.0f}s"
            team.completed_at = datetime.now()
        logger.error("Team %s timed out", team_id)
        self._publish(events.TEAM_ERROR, teamId=team_id, error=team.error)
        try:
            self.stop_team(team_id, reason=team.error)
        except Exception:
            logger.exception("Error stopping timed out team %s", team_id)

    # ── Merge and stop ────────────────────────────────────────────────────────

    def merge_team_work(self, team_id: str) -> dict:
        """Merge completed agent branches into the base branch and tear the team down."""
        with self._lock:
            team = self._teams.get(team_id)
            if team is None:
                raise TeamNotFoundError(f"Team {team_id} not found")
            if team.status in ("merging", "stopped") or team_id in self._released:
                raise ValidationError(f"Team {team_id} cannot be merged (status: {team.status})")
            team.status = "merging"
            for agent in team.agents:
                if agent.status == "inferred_idle":
                    agent.status = "completed"
            self._released.add(team_id)
            timer = self._timers.pop(team_id, None)
            snapshot = copy.deepcopy(team)

        if timer:
            timer.cancel()
        for agent in snapshot.agents:
            self.puppet.stop_agent(agent.id)
        self._close_terminals(snapshot, "team merged")

        try:
            report = self.isolator.merge_team_work(snapshot)
        except GitError as e:
            self.isolator.teardown_team(snapshot)
            with self._lock:
                team.status = "error"
                team.error = f"Merge failed: {e}"
                team.completed_at = datetime.now()
            self._save(team)
            self._publish(events.TEAM_ERROR, teamId=team_id, error=team.error)
            raise
        self.isolator.teardown_team(snapshot)

        with self._lock:
            team.status = "completed"
            team.completed_at = team.completed_at or datetime.now()
            team.error = (
                f"Merge failed for {', '.join(report.failed)}" if report.failed else team.error
            )
        self._save(team)
        result = {
            "teamId": team_id,
            "success": report.ok,
            "mergedBranches": report.merged,
            "skipped": report.skipped,
            "failed": report.failed,
        }
        logger.info("Team %s merged %d branches", team_id, len(report.merged))
        self._publish(events.TEAM_MERGED, **result)
        return result

    def _close_terminals(self, team: Team, reason: str):
        if self.puppet.hub is None:
            return
        for agent in team.agents:
            self.puppet.hub.close(agent.id, reason=reason)

    def stop_team(self, team_id: str, reason: str = "Stopped by user") -> bool:
        """Stop agents, cancel timers and remove worktrees. Returns False if nothing was left to stop."""
        with self._lock:
            team = self._teams.get(team_id)
            if team is None or team_id in self._released:
                return False
            self._released.add(team_id)
            if team.status not in TEAM_TERMINAL_STATUSES:
                team.status = "stopped"
                team.completed_at = datetime.now()
            for agent in team.agents:
                if agent.status not in ("completed", "error"):
                    agent.status = "stopped"
            timer = self._timers.pop(team_id, None)
            snapshot = copy.deepcopy(team)

        if timer:
            timer.cancel()
        for agent in snapshot.agents:
            self.puppet.stop_agent(agent.id)
        self._close_terminals(snapshot, reason)
        self.isolator.teardown_team(snapshot)
        self._save(snapshot)
        logger.info("Team %s stopped: %s", team_id, reason)
        self._publish(events.TEAM_STOPPED, teamId=team_id, reason=reason, status=snapshot.status)
        return True

    # ── Emergency stop ────────────────────────────────────────────────────────

    def emergency_stop(self, reason: str = "Manual trigger") -> dict:
        """Stop every team and process and refuse new teams until reset."""
        with self._lock:
            self._emergency = True
            team_ids = list(self._teams)
        logger.critical("EMERGENCY STOP: %s", reason)

        stopped = [tid for tid in team_ids if self.stop_team(tid, reason=f"Emergency stop: {reason}")]
        self.puppet.stop_all(grace=2.0)
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if self.sandboxes:
            self.sandboxes.destroy_all()

        timestamp = datetime.now().isoformat()
        self._publish(events.EMERGENCY_STOP, reason=reason, timestamp=timestamp)
        return {"reason": reason, "timestamp": timestamp, "stoppedTeams": stopped}

    def reset_emergency_stop(self):
        with self._lock:
            self._emergency = False
        logger.warning("Emergency stop reset")

    @property
    def emergency_active(self) -> bool:
        return self._emergency

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_team_status(self, team_id: str) -> Team | None:
        with self._lock:
            team = self._teams.get(team_id)
            return copy.deepcopy(team) if team else None

    def list_teams(self) -> list[Team]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._teams.values()]

    def get_service_health(self) -> dict:
        with self._lock:
            active = self._active_count()
        if self._emergency:
            status = "emergency"
        elif active >= self.config.max_concurrent_teams:
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "teams": active,
            "maxTeams": self.config.max_concurrent_teams,
            "emergencyStop": self._emergency,
            "processes": self.puppet.process_count(),
            "uptime": round(time.monotonic() - self._started, 1),
        }


def team_to_dict(team: Team) -> dict:
    return {
        "teamId": team.id,
        "requirement": team.requirement,
        "workflowId": team.workflow_id,
        "status": team.status,
        "baseBranch": team.base_branch,
        "worktreeRoot": team.worktree_root,
        "sessionId": team.session_id,
        "error": team.error,
        "progress": {
            "overall": team.progress.overall,
            "planning": team.progress.planning,
            "development": team.progress.development,
            "testing": team.progress.testing,
            "deployment": team.progress.deployment,
        },
        "agents": [
            {
                "id": a.id,
                "role": a.role.value,
                "name": a.name,
                "status": a.status,
                "progress": a.progress,
                "currentTask": a.current_task,
                "workDir": a.work_dir,
                "branch": a.branch,
                "filesChanged": a.files_changed,
            }
            for a in team.agents
        ],
        "createdAt": team.created_at.isoformat() if team.created_at else None,
        "startedAt": team.started_at.isoformat() if team.started_at else None,
        "completedAt": team.completed_at.isoformat() if team.completed_at else None,
    }

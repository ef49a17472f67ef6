"""Workflow templates and their phase-by-phase execution on puppet agents."""

import logging
import threading
import time
import uuid
from concurrent.futures import wait
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from team_orchestrator.core import events
from team_orchestrator.core.classifier import parse_content
from team_orchestrator.core.events import EventBus
from team_orchestrator.core.history import HistoryRecorder
from team_orchestrator.core.puppet import AgentError, ProcessPuppet
from team_orchestrator.core.roles import Role, profile
from team_orchestrator.db.models import (
    Phase,
    PhaseResult,
    TaskResult,
    WorkflowMatch,
    WorkflowSession,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)

PREVIOUS_OUTPUT_CHARS = 1000


class WorkflowNotFoundError(Exception):
    """Raised for an unknown workflow template id."""


class WorkflowPhaseError(Exception):
    """Raised when any task of a phase fails."""

    def __init__(self, phase: str, failures: list[TaskResult]):
        details = "; ".join(f"{r.role}: {r.error}" for r in failures)
        super().__init__(f"Phase '{phase}' failed ({len(failures)} tasks): {details}")
        self.phase = phase
        self.failures = failures


def _phase(name: str, roles: tuple[Role, ...], mode: str, tasks: tuple[str, ...]) -> Phase:
    return Phase(name=name, roles=roles, mode=mode, tasks=tasks)


# ── Templates ─────────────────────────────────────────────────────────────────

TEMPLATES: tuple[WorkflowTemplate, ...] = (
    WorkflowTemplate(
        id="simple-component",
        name="Simple Component Development",
        description="Create a single React component with styling",
        estimated_minutes=10,
        keywords=("component", "react", "simple", "ui element"),
        phases=(
            _phase("analysis", (Role.FRONTEND,), "sequential",
                   ("analyze requirements", "design component architecture")),
            _phase("implementation", (Role.FRONTEND,), "sequential",
                   ("implement component", "add styling", "create documentation")),
        ),
    ),
    WorkflowTemplate(
        id="full-stack-feature",
        name="Full-Stack Feature Development",
        description="Complete feature with frontend, backend, and database",
        estimated_minutes=45,
        keywords=("full stack", "feature", "frontend", "backend", "database", "complete"),
        phases=(
            _phase("planning", (Role.ARCHITECT,), "sequential",
                   ("analyze requirements", "design system architecture",
                    "create technical specification")),
            _phase("parallel-development", (Role.FRONTEND, Role.BACKEND), "parallel",
                   ("implement frontend", "implement backend API", "design database schema")),
            _phase("integration", (Role.FULLSTACK,), "sequential",
                   ("integrate frontend with backend", "test integration", "optimize performance")),
            _phase("quality-assurance", (Role.TESTING,), "sequential",
                   ("create test suite", "run comprehensive tests", "validate functionality")),
        ),
    ),
    WorkflowTemplate(
        id="api-development",
        name="API Development",
        description="Backend API with database integration",
        estimated_minutes=30,
        keywords=("api", "backend", "server", "database", "endpoint"),
        phases=(
            _phase("design", (Role.BACKEND,), "sequential",
                   ("design API endpoints", "model database schema", "plan authentication")),
            _phase("implementation", (Role.BACKEND,), "sequential",
                   ("implement API routes", "add database integration", "implement authentication")),
            _phase("testing", (Role.TESTING,), "sequential",
                   ("create API tests", "test error handling", "validate security")),
        ),
    ),
    WorkflowTemplate(
        id="ui-dashboard",
        name="UI Dashboard Development",
        description="Complex UI dashboard with charts and data visualization",
        estimated_minutes=35,
        keywords=("dashboard", "chart", "visualization", "admin panel", "analytics"),
        phases=(
            _phase("design", (Role.FRONTEND,), "sequential",
                   ("design dashboard layout", "plan component hierarchy",
                    "select visualization libraries")),
            _phase("implementation", (Role.FRONTEND,), "sequential",
                   ("create dashboard components", "implement data visualization",
                    "add responsive design")),
            _phase("enhancement", (Role.FRONTEND,), "sequential",
                   ("add interactions", "optimize performance", "improve accessibility")),
        ),
    ),
    WorkflowTemplate(
        id="deployment-setup",
        name="Deployment and CI/CD Setup",
        description="Complete deployment pipeline with monitoring",
        estimated_minutes=25,
        keywords=("deploy", "ci/cd", "pipeline", "infrastructure", "hosting"),
        phases=(
            _phase("planning", (Role.DEVOPS,), "sequential",
                   ("analyze deployment requirements", "design CI/CD pipeline", "plan infrastructure")),
            _phase("implementation", (Role.DEVOPS,), "sequential",
                   ("setup deployment scripts", "configure CI/CD", "implement monitoring")),
            _phase("testing", (Role.DEVOPS, Role.TESTING), "parallel",
                   ("test deployment process", "validate monitoring", "create documentation")),
        ),
    ),
)

TEMPLATES_BY_ID = {t.id: t for t in TEMPLATES}


def keyword_score(requirement: str, keywords: tuple[str, ...]) -> float:
    """+0.2 per keyword contained in the text, +0.1 per token overlapping it, capped at 1."""
    text = requirement.lower()
    words = text.split()
    score = 0.0
    for keyword in keywords:
        if keyword in text:
            score += 0.2
        for word in words:
            if word in keyword or keyword in word:
                score += 0.1
    return min(score, 1.0)


def analyze_requirement(requirement: str) -> WorkflowMatch:
    scored = [(t.id, keyword_score(requirement, t.keywords)) for t in TEMPLATES]
    # sorted() is stable, so equal scores keep declaration order
    ranked = sorted(scored, key=lambda item: -item[1])
    best_id, best_score = ranked[0]
    return WorkflowMatch(workflow_id=best_id, confidence=best_score, alternatives=ranked[1:3])


def get_template(workflow_id: str) -> WorkflowTemplate:
    template = TEMPLATES_BY_ID.get(workflow_id)
    if template is None:
        raise WorkflowNotFoundError(f"Workflow template '{workflow_id}' not found")
    return template


def new_session_id() -> str:
    return f"workflow-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


class WorkflowCoordinator:
    def __init__(
        self,
        puppet: ProcessPuppet,
        work_root: str | Path,
        bus: EventBus | None = None,
        history: HistoryRecorder | None = None,
        default_timeout: float | None = None,
    ):
        self.puppet = puppet
        self.work_root = Path(work_root)
        self.bus = bus
        self.history = history
        self.default_timeout = default_timeout
        self._sessions: dict[str, WorkflowSession] = {}
        self._lock = threading.Lock()
        self.stats = {
            "total_workflows": 0,
            "completed": 0,
            "failed": 0,
            "tasks_completed": 0,
            "total_time": 0.0,
        }

    def _publish(self, topic: str, **payload):
        if self.bus:
            self.bus.publish(topic, **payload)

    def _persist(self, session: WorkflowSession):
        if self.history:
            self.history.save_workflow_session(session)

    # ── Matching ──────────────────────────────────────────────────────────────

    def analyze_requirement(self, requirement: str) -> WorkflowMatch:
        return analyze_requirement(requirement)

    def list_workflows(self) -> list[dict]:
        return [
            {
                "id": t.id,
                "name": t.name,
                "description": t.description,
                "estimatedMinutes": t.estimated_minutes,
                "phases": len(t.phases),
                "roles": sorted({r.value for p in t.phases for r in p.roles}),
            }
            for t in TEMPLATES
        ]

    # ── Execution ─────────────────────────────────────────────────────────────

    def execute_workflow(
        self,
        workflow_id: str,
        requirement: str,
        timeout: float | None = None,
        work_root: str | Path | None = None,
        session_id: str | None = None,
    ) -> WorkflowSession:
        """Run every phase of a template in order and return the finished session.

        Raises WorkflowPhaseError after recording the failed phase when any of
        its tasks fails.
        """
        template = get_template(workflow_id)
        session_id = session_id or new_session_id()
        root = Path(work_root) if work_root else self.work_root / session_id
        session = WorkflowSession(
            id=session_id,
            workflow_id=workflow_id,
            requirement=requirement,
            work_root=str(root),
            started_at=datetime.now(),
        )
        with self._lock:
            self._sessions[session_id] = session
        self.stats["total_workflows"] += 1
        timeout = timeout or self.default_timeout

        logger.info(
            "Starting workflow %s (%s, %d phases, ~%d min)",
            session_id, template.name, len(template.phases), template.estimated_minutes,
        )
        root.mkdir(parents=True, exist_ok=True)
        session.status = "running"
        self._persist(session)

        try:
            for i, phase in enumerate(template.phases):
                session.current_phase = phase.name
                logger.info(
                    "Phase %d/%d: %s (%s, roles: %s)",
                    i + 1, len(template.phases), phase.name, phase.mode,
                    ", ".join(r.value for r in phase.roles),
                )
                result = self._execute_phase(session, phase, timeout)
                session.phases.append(result)
                if result.status == "failed":
                    failures = [o for o in result.outputs if not o.success]
                    raise WorkflowPhaseError(phase.name, failures)

                session.progress = (i + 1) / len(template.phases) * 100
                self._persist(session)
                self._publish(
                    events.PHASE_COMPLETED,
                    sessionId=session_id,
                    phaseIndex=i,
                    phase=phase.name,
                    outputs=len(result.outputs),
                )
        except (WorkflowPhaseError, AgentError) as e:
            session.status = "failed"
            session.ended_at = datetime.now()
            session.errors.append(str(e))
            self._persist(session)
            self.stats["failed"] += 1
            logger.error("Workflow %s failed in phase %s: %s", session_id, session.current_phase, e)
            self._publish(events.WORKFLOW_FAILED, sessionId=session_id, phase=session.current_phase, error=str(e))
            self._cleanup_agents(session)
            raise

        session.summary = self.synthesize_results(session)
        session.status = "completed"
        session.ended_at = datetime.now()
        self._persist(session)
        self.stats["completed"] += 1
        self.stats["total_time"] += (session.ended_at - session.started_at).total_seconds()
        logger.info("Workflow %s completed", session_id)
        self._publish(events.WORKFLOW_COMPLETED, sessionId=session_id, workflowId=workflow_id)
        self._cleanup_agents(session)
        return session

    def _execute_phase(self, session: WorkflowSession, phase: Phase, timeout: float | None) -> PhaseResult:
        result = PhaseResult(name=phase.name, started_at=datetime.now())
        agents = []
        for role in phase.roles:
            agent_id = session.agent_ids.get(role)
            if agent_id is None or self.puppet.get_session(agent_id) is None:
                agent_id = f"{session.id}-{role.value}"
                context = f"{session.requirement}\n\nPhase: {phase.name}"
                self.puppet.spawn_agent(agent_id, role, context, session.work_root)
                session.agent_ids[role] = agent_id
                logger.info("Spawned %s for phase %s", agent_id, phase.name)
            agents.append((agent_id, role))
            result.agents.append(agent_id)

        result.status = "running"
        if phase.mode == "parallel":
            result.outputs = self._run_parallel(agents, phase.tasks, session.requirement, timeout)
        else:
            result.outputs = self._run_sequential(agents, phase.tasks, session.requirement, timeout)

        for output in result.outputs:
            if self.history:
                self.history.record_workflow_task(session.id, phase.name, output)
            logger.info(
                "  %s %s: %s (%.1fs)",
                output.role, "ok" if output.success else "FAILED", output.task, output.execution_time,
            )

        failures = [o for o in result.outputs if not o.success]
        result.status = "failed" if failures else "completed"
        result.error = failures[0].error if failures else None
        result.ended_at = datetime.now()
        return result

    def _prompt(self, task: str, requirement: str, role: Role, previous: TaskResult | None = None) -> str:
        prompt = f"Task: {task}\nContext: {requirement}\nRole: {profile(role).persona}"
        if previous is not None:
            prompt += f"\n\nPrevious work completed: {previous.output[:PREVIOUS_OUTPUT_CHARS]}"
        prompt += (
            "\n\nPlease complete this task with your expertise. Provide clear, actionable "
            "output including any code, configurations, or recommendations."
        )
        return prompt

    def _run_parallel(self, agents, tasks, requirement, timeout) -> list[TaskResult]:
        started = time.monotonic()
        jobs = []
        for i, (agent_id, role) in enumerate(agents):
            task = tasks[i % len(tasks)]
            prompt = self._prompt(task, requirement, role)
            future = self.puppet.submit(agent_id, prompt, timeout)
            jobs.append((agent_id, role, task, prompt, future))

        wait([job[-1] for job in jobs])
        results = []
        for agent_id, role, task, prompt, future in jobs:
            try:
                output = future.result()
            except AgentError as e:
                results.append(self._failed(agent_id, role, task, prompt, e, started))
            else:
                results.append(self._succeeded(agent_id, role, task, prompt, output, started))
        return results

    def _run_sequential(self, agents, tasks, requirement, timeout) -> list[TaskResult]:
        results = []
        previous = None
        for i, task in enumerate(tasks):
            agent_id, role = agents[i % len(agents)]
            prompt = self._prompt(task, requirement, role, previous)
            started = time.monotonic()
            try:
                output = self.puppet.send_to_agent(agent_id, prompt, timeout)
            except AgentError as e:
                results.append(self._failed(agent_id, role, task, prompt, e, started))
                continue
            result = self._succeeded(agent_id, role, task, prompt, output, started)
            results.append(result)
            previous = result
        return results

    def _succeeded(self, agent_id, role, task, prompt, output, started) -> TaskResult:
        self.stats["tasks_completed"] += 1
        parsed = parse_content(output)
        agent = self.puppet.get_session(agent_id)
        return TaskResult(
            agent_id=agent_id,
            role=role,
            task=task,
            prompt=prompt,
            success=True,
            output=output,
            parsed=parsed,
            execution_time=time.monotonic() - started,
            files=list(agent.created_files) if agent else [],
            timestamp=datetime.now(),
        )

    def _failed(self, agent_id, role, task, prompt, error, started) -> TaskResult:
        logger.warning("Task '%s' failed on %s: %s", task, agent_id, error)
        return TaskResult(
            agent_id=agent_id,
            role=role,
            task=task,
            prompt=prompt,
            success=False,
            error=str(error),
            execution_time=time.monotonic() - started,
            timestamp=datetime.now(),
        )

    # ── Results ───────────────────────────────────────────────────────────────

    def synthesize_results(self, session: WorkflowSession) -> str:
        template = get_template(session.workflow_id)
        outputs = [o for p in session.phases for o in p.outputs if o.success]
        files = [f for o in outputs if o.parsed for f in o.parsed.files]
        elapsed = (datetime.now() - session.started_at).total_seconds() if session.started_at else 0.0

        phase_lines = "\n".join(f"{i + 1}. {p.name} - {p.status}" for i, p in enumerate(session.phases))
        summary = (
            f"Workflow completed: {template.name}\n\n"
            f"Requirement: {session.requirement}\n\n"
            f"Phases executed:\n{phase_lines}\n\n"
            f"Total outputs: {len(outputs)}\n"
            f"Files modified: {len(files)}\n"
            f"Execution time: {elapsed:.1f}s"
        )

        summarizer = session.agent_ids.get(Role.ARCHITECT) or session.agent_ids.get(Role.FULLSTACK)
        if summarizer is None or self.puppet.get_session(summarizer) is None:
            return summary

        key_outputs = "\n".join(f"- {o.task}: {o.output[:200]}..." for o in outputs[:3])
        prompt = (
            "Please provide a comprehensive summary of this completed workflow:\n\n"
            f"Original requirement: {session.requirement}\n"
            f"Workflow: {template.name}\n\n"
            f"Key outputs:\n{key_outputs}\n\n"
            "Please provide:\n"
            "1. What was accomplished\n"
            "2. Key technical decisions made\n"
            "3. Files and components created\n"
            "4. Next steps or recommendations\n"
            "5. Overall assessment"
        )
        try:
            return self.puppet.send_to_agent(summarizer, prompt)
        except AgentError as e:
            logger.warning("Detailed summary failed, using basic summary: %s", e)
            return summary

    # ── Status ────────────────────────────────────────────────────────────────

    def get_session(self, session_id: str) -> WorkflowSession | None:
        with self._lock:
            session = self._sessions.get(session_id)
        return replace(session) if session else None

    def get_workflow_status(self, session_id: str) -> dict | None:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            if self.history:
                return self.history.workflow_session(session_id)
            return None

        template = get_template(session.workflow_id)
        agents = []
        for role, agent_id in session.agent_ids.items():
            status = self.puppet.get_agent_status(agent_id)
            agents.append({
                "agentId": agent_id,
                "role": role.value,
                "status": status["status"] if status else "stopped",
                "currentTask": status["currentTask"] if status else "",
            })
        end = session.ended_at or datetime.now()
        return {
            "sessionId": session.id,
            "workflowId": session.workflow_id,
            "template": template.name,
            "requirement": session.requirement,
            "status": session.status,
            "progress": round(session.progress, 1),
            "currentPhase": session.current_phase,
            "phases": [
                {"name": p.name, "status": p.status, "outputs": len(p.outputs), "error": p.error}
                for p in session.phases
            ],
            "agents": agents,
            "errors": list(session.errors),
            "executionTime": round((end - session.started_at).total_seconds(), 1),
        }

    def stop_workflow(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or session.status in ("stopped", "completed", "failed"):
            return False
        self._cleanup_agents(session)
        session.status = "stopped"
        session.ended_at = datetime.now()
        self._persist(session)
        logger.info("Workflow %s stopped", session_id)
        return True

    def _cleanup_agents(self, session: WorkflowSession):
        for agent_id in session.agent_ids.values():
            self.puppet.stop_agent(agent_id)

    def get_stats(self) -> dict:
        finished = self.stats["completed"] + self.stats["failed"]
        with self._lock:
            active = sum(1 for s in self._sessions.values() if s.status == "running")
        return {
            "totalWorkflows": self.stats["total_workflows"],
            "activeWorkflows": active,
            "completed": self.stats["completed"],
            "failed": self.stats["failed"],
            "tasksCompleted": self.stats["tasks_completed"],
            "averageWorkflowTime": round(self.stats["total_time"] / self.stats["completed"], 1)
            if self.stats["completed"] else 0,
            "successRate": round(self.stats["completed"] / finished, 2) if finished else 0,
            "templates": len(TEMPLATES),
        }

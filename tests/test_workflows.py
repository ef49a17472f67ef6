"""Tests for workflow matching and phased execution."""

import pytest

from conftest import fake_agent
from team_orchestrator.core import events, workflows
from team_orchestrator.core.events import EventBus
from team_orchestrator.core.puppet import ProcessPuppet
from team_orchestrator.core.roles import Role
from team_orchestrator.core.workflows import (
    TEMPLATES,
    WorkflowCoordinator,
    WorkflowNotFoundError,
    WorkflowPhaseError,
    analyze_requirement,
    get_template,
    keyword_score,
)
from team_orchestrator.db.models import Phase, WorkflowTemplate


@pytest.fixture
def coordinator(config, tmp_path):
    bus = EventBus()
    puppet = ProcessPuppet(config, bus=bus)
    coordinator = WorkflowCoordinator(puppet, tmp_path / "workflows", bus=bus)
    yield coordinator
    puppet.shutdown()


class TestMatching:
    def test_full_stack_wins_tie_by_declaration_order(self):
        match = analyze_requirement("Build a full-stack dashboard with authentication and a database")
        assert match.workflow_id == "full-stack-feature"
        assert match.confidence == 1.0
        assert match.alternatives[0] == ("ui-dashboard", 1.0)
        assert match.alternatives[1][0] == "api-development"
        assert match.alternatives[1][1] == pytest.approx(0.9)

    def test_deployment(self):
        assert analyze_requirement("deploy with ci/cd pipeline").workflow_id == "deployment-setup"

    def test_no_keywords_falls_back_to_first_template(self):
        match = analyze_requirement("zzz qqq")
        assert match.workflow_id == TEMPLATES[0].id
        assert match.confidence == 0.0

    def test_score_is_capped(self):
        assert keyword_score("api api api backend server database endpoint", ("api", "backend", "server")) == 1.0

    def test_contained_keyword_scores(self):
        assert keyword_score("add an endpoint", ("endpoint",)) == pytest.approx(0.3)

    def test_get_template(self):
        assert get_template("api-development").name == "API Development"
        with pytest.raises(WorkflowNotFoundError):
            get_template("nope")

    def test_list_workflows(self, coordinator):
        listed = coordinator.list_workflows()
        assert [w["id"] for w in listed] == [t.id for t in TEMPLATES]
        full_stack = listed[1]
        assert full_stack["phases"] == 4
        assert "architect" in full_stack["roles"]


class TestExecution:
    def test_simple_component_runs_every_task(self, coordinator):
        seen = []
        coordinator.bus.subscribe(events.PHASE_COMPLETED, lambda e: seen.append(e.payload["phase"]))

        session = coordinator.execute_workflow("simple-component", "A button", session_id="workflow-test")

        assert session.id == "workflow-test"
        assert session.status == "completed"
        assert session.progress == 100
        assert [p.name for p in session.phases] == ["analysis", "implementation"]
        assert sum(len(p.outputs) for p in session.phases) == 5
        assert all(o.output == "Task complete. Done." for p in session.phases for o in p.outputs)
        assert seen == ["analysis", "implementation"]
        assert "Simple Component Development" in session.summary
        assert coordinator.puppet.list_agents() == []

    def test_relay_passes_previous_output(self, coordinator):
        session = coordinator.execute_workflow("simple-component", "A button")
        second = session.phases[0].outputs[1]
        assert "Previous work completed: Task complete. Done." in second.prompt

    def test_parallel_phase_gives_each_agent_its_own_task(self, coordinator):
        session = coordinator.execute_workflow("full-stack-feature", "A profile page")

        assert session.status == "completed"
        development = session.phases[1]
        assert development.name == "parallel-development"
        assert [(o.role, o.task) for o in development.outputs] == [
            (Role.FRONTEND, "implement frontend"),
            (Role.BACKEND, "implement backend API"),
        ]
        assert len(set(development.agents)) == 2
        assert all("Previous work completed" not in o.prompt for o in development.outputs)

    def test_parallel_tasks_wrap_when_agents_outnumber_them(self, coordinator, monkeypatch):
        wide = WorkflowTemplate(
            id="wide-review",
            name="Wide Review",
            description="Three reviewers, two tasks",
            estimated_minutes=5,
            keywords=("review",),
            phases=(
                Phase(name="review", roles=(Role.FRONTEND, Role.BACKEND, Role.TESTING),
                      mode="parallel", tasks=("write code", "review code")),
            ),
        )
        monkeypatch.setitem(workflows.TEMPLATES_BY_ID, wide.id, wide)

        session = coordinator.execute_workflow("wide-review", "A settings form")

        outputs = session.phases[0].outputs
        assert [o.task for o in outputs] == ["write code", "review code", "write code"]
        assert [o.role for o in outputs] == [Role.FRONTEND, Role.BACKEND, Role.TESTING]
        assert all(o.success for o in outputs)

    def test_failed_phase_raises_and_is_recorded(self, config, tmp_path):
        config.agent_command = fake_agent("sys.exit(1)")
        bus = EventBus()
        failures = []
        bus.subscribe(events.WORKFLOW_FAILED, lambda e: failures.append(e.payload))
        puppet = ProcessPuppet(config, bus=bus)
        coordinator = WorkflowCoordinator(puppet, tmp_path / "wf", bus=bus)
        try:
            with pytest.raises(WorkflowPhaseError) as exc:
                coordinator.execute_workflow("simple-component", "A button", session_id="workflow-fail")
        finally:
            puppet.shutdown()

        assert exc.value.phase == "analysis"
        assert len(exc.value.failures) == 2
        session = coordinator.get_session("workflow-fail")
        assert session.status == "failed"
        assert session.phases[0].status == "failed"
        assert failures[0]["phase"] == "analysis"

    def test_status_and_unknown_session(self, coordinator):
        coordinator.execute_workflow("simple-component", "A button", session_id="workflow-s")
        status = coordinator.get_workflow_status("workflow-s")
        assert status["status"] == "completed"
        assert status["template"] == "Simple Component Development"
        assert coordinator.get_workflow_status("missing") is None

    def test_unknown_template(self, coordinator):
        with pytest.raises(WorkflowNotFoundError):
            coordinator.execute_workflow("nope", "anything")

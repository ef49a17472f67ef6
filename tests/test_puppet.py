"""Tests for driving agent processes."""

import time

import pytest

from conftest import fake_agent
from team_orchestrator.core import events
from team_orchestrator.core.broadcast import TerminalBroadcastHub
from team_orchestrator.core.events import EventBus
from team_orchestrator.core.puppet import (
    AgentExistsError,
    AgentNotFoundError,
    AgentProcessError,
    AgentStoppedError,
    AgentTimeoutError,
    ProcessPuppet,
    extract_response,
)
from team_orchestrator.core.roles import Role


@pytest.fixture
def puppet(config):
    hub = TerminalBroadcastHub()
    puppet = ProcessPuppet(config, hub=hub, bus=EventBus(), check_interval=0.05)
    yield puppet
    puppet.shutdown()


class TestSessions:
    def test_spawn_creates_role_directory(self, puppet, tmp_path):
        session = puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path / "work")
        assert session.work_dir == tmp_path / "work" / "backend"
        assert session.work_dir.is_dir()
        assert session.status == "ready"
        assert session.process is not None

    def test_exact_dir_without_session_process(self, puppet, tmp_path):
        session = puppet.spawn_agent("a1", "frontend", "ctx", tmp_path, exact_dir=True, persistent=False)
        assert session.work_dir == tmp_path
        assert session.process is None
        assert session.role is Role.FRONTEND

    def test_duplicate_id_rejected(self, puppet, tmp_path):
        puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path, persistent=False)
        with pytest.raises(AgentExistsError):
            puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path, persistent=False)

    def test_missing_binary_only_warns(self, config, tmp_path):
        config.agent_command = ["definitely-not-an-agent-binary"]
        puppet = ProcessPuppet(config)
        try:
            session = puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path)
            assert session.status == "ready"
            with pytest.raises(AgentProcessError):
                puppet.send_to_agent("a1", "do it")
        finally:
            puppet.shutdown()

    def test_unknown_agent(self, puppet):
        with pytest.raises(AgentNotFoundError):
            puppet.send_to_agent("ghost", "hello")
        assert puppet.get_agent_status("ghost") is None

    def test_status_dict(self, puppet, tmp_path):
        puppet.spawn_agent("a1", Role.DOCS, "ctx", tmp_path, persistent=False)
        status = puppet.get_agent_status("a1")
        assert status["role"] == "docs"
        assert status["status"] == "ready"
        assert status["conversationLength"] == 1


class TestSend:
    def test_json_result_is_extracted(self, puppet, tmp_path):
        puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path, persistent=False)
        assert puppet.send_to_agent("a1", "write the API") == "Task complete. Done."
        session = puppet.get_session("a1")
        assert session.status == "ready"
        assert [t.role for t in session.history] == ["system", "user", "assistant"]
        assert puppet.get_stats()["responsesReceived"] == 1

    def test_output_reaches_hub_and_callback(self, puppet, tmp_path):
        puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path, persistent=False)
        chunks = []
        puppet.send_to_agent("a1", "go", on_output=lambda agent_id, text: chunks.append((agent_id, text)))
        assert chunks and chunks[0][0] == "a1"
        assert "Task complete" in "".join(puppet.hub.get_buffer("a1"))

    def test_prompt_arrives_on_stdin_with_environment(self, config, tmp_path):
        config.agent_command = fake_agent(
            "import os\n"
            "open('seen.txt', 'w').write(os.environ['CLAUDE_AGENT_ROLE'] + '|' + prompt)\n"
            "print('Wrote seen.txt for you.')"
        )
        puppet = ProcessPuppet(config, check_interval=0.05)
        try:
            puppet.spawn_agent("a1", Role.TESTING, "the context", tmp_path, exact_dir=True, persistent=False)
            puppet.send_to_agent("a1", "run the tests")
        finally:
            puppet.shutdown()
        seen = (tmp_path / "seen.txt").read_text()
        assert seen.startswith("testing|run the tests")
        assert "Context: the context" in seen
        assert puppet.get_session("a1") is None

    def test_created_files_are_tracked(self, config, tmp_path):
        config.agent_command = fake_agent("open('app.js', 'w').write('x')\nprint('Created file app.js.')")
        puppet = ProcessPuppet(config, check_interval=0.05)
        try:
            session = puppet.spawn_agent("a1", Role.FRONTEND, "ctx", tmp_path, exact_dir=True, persistent=False)
            puppet.send_to_agent("a1", "make it")
            assert session.created_files == ["app.js"]
        finally:
            puppet.shutdown()

    def test_exit_without_output_fails(self, config, tmp_path):
        config.agent_command = fake_agent("sys.exit(3)")
        puppet = ProcessPuppet(config, check_interval=0.05)
        try:
            puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path, persistent=False)
            with pytest.raises(AgentProcessError, match="code 3"):
                puppet.send_to_agent("a1", "go")
            assert puppet.get_session("a1").status == "ready"
            assert puppet.get_stats()["errors"] == 1
        finally:
            puppet.shutdown()

    def test_no_first_output_times_out(self, config, tmp_path):
        config.agent_command = fake_agent("time.sleep(30)")
        config.first_output_timeout = 0.5
        puppet = ProcessPuppet(config, check_interval=0.05)
        try:
            puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path, persistent=False)
            started = time.monotonic()
            with pytest.raises(AgentTimeoutError, match="no output"):
                puppet.send_to_agent("a1", "go")
            assert time.monotonic() - started < 10
            assert puppet.process_count() == 0
        finally:
            puppet.shutdown()

    def test_stop_interrupts_a_running_call(self, config, tmp_path):
        config.agent_command = fake_agent("time.sleep(30)")
        puppet = ProcessPuppet(config, check_interval=0.05)
        try:
            puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path, persistent=False)
            future = puppet.submit("a1", "go")
            time.sleep(0.3)
            puppet.stop_agent("a1", grace=1.0)
            with pytest.raises(AgentStoppedError):
                future.result(timeout=10)
            assert puppet.get_session("a1") is None
        finally:
            puppet.shutdown()


class TestHealth:
    def test_silent_idle_agent_is_marked_unhealthy(self, config, tmp_path):
        config.agent_command = fake_agent("time.sleep(30)")
        config.idle_threshold = 0.0
        config.probe_timeout = 0.3
        bus = EventBus()
        unhealthy = []
        bus.subscribe(events.AGENT_UNHEALTHY, lambda e: unhealthy.append(e.payload["agentId"]))
        puppet = ProcessPuppet(config, bus=bus)
        try:
            puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path)
            assert puppet.check_health() == ["a1"]
            assert puppet.get_session("a1").status == "unhealthy"
            assert unhealthy == ["a1"]
        finally:
            puppet.shutdown()

    def test_agents_without_session_process_are_not_probed(self, config, tmp_path):
        config.idle_threshold = 0.0
        config.auto_restart = True
        puppet = ProcessPuppet(config)
        try:
            session = puppet.spawn_agent("a1", Role.FRONTEND, "ctx", tmp_path, exact_dir=True, persistent=False)
            assert puppet.check_health() == []
            assert session.status == "ready"
            assert session.process is None
            assert session.restarts == 0
        finally:
            puppet.shutdown()

    def test_restart_replaces_session_process(self, puppet, tmp_path):
        session = puppet.spawn_agent("a1", Role.BACKEND, "ctx", tmp_path)
        old_pid = session.pid
        puppet.restart_agent("a1")
        assert session.pid != old_pid
        assert session.restarts == 1
        assert session.status == "ready"


class TestExtractResponse:
    def test_json_result(self):
        assert extract_response('{"type": "result", "result": "hi"}') == "hi"

    def test_last_json_line(self):
        assert extract_response('noise\n{"result": "final"}\n') == "final"

    def test_plain_text(self):
        assert extract_response("\x1b[1mplain\x1b[0m answer\n") == "plain answer"


def test_executor_runs_calls_concurrently(config, tmp_path):
    config.agent_command = fake_agent("time.sleep(0.5)\nprint('Finished the work here.')")
    puppet = ProcessPuppet(config, check_interval=0.05)
    try:
        for i in range(3):
            puppet.spawn_agent(f"a{i}", Role.BACKEND, "ctx", tmp_path / str(i), persistent=False)
        started = time.monotonic()
        futures = [puppet.submit(f"a{i}", "go") for i in range(3)]
        results = [f.result(timeout=20) for f in futures]
        assert results == ["Finished the work here."] * 3
        assert time.monotonic() - started < 1.4
    finally:
        puppet.shutdown()

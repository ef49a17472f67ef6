"""Tests for sandbox lifecycle, preview ports and metrics sampling."""

import os
import socket
import sys
import threading
import time

import pytest

from conftest import commit_file
from team_orchestrator.core import events
from team_orchestrator.core.events import EventBus
from team_orchestrator.core.metrics import MetricsSampler, build_info
from team_orchestrator.core.preview import (
    PortExhaustedError,
    PreviewServerPool,
    detect_framework,
    is_web_project,
)
from team_orchestrator.core.sandbox import (
    SandboxError,
    SandboxLifecycleManager,
    SandboxLimitError,
    SandboxNotFoundError,
)
from team_orchestrator.db.models import MetricsSnapshot, PreviewServer, SandboxLimits
from team_orchestrator.integrations import tmux


class FakePreviews:
    def __init__(self):
        self.started: list[str] = []
        self.stopped: list[str] = []

    def start(self, sandbox_id, path, wait=True):
        self.started.append(sandbox_id)
        return PreviewServer(sandbox_id=sandbox_id, port=4001, url="http://localhost:4001",
                             framework=detect_framework(path), ready=True)

    def stop(self, sandbox_id):
        self.stopped.append(sandbox_id)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def previews():
    return FakePreviews()


@pytest.fixture
def manager(config, bus, previews, fake_tmux):
    manager = SandboxLifecycleManager(config, bus=bus, previews=previews)
    yield manager
    manager.destroy_all()


def collect(bus, topic):
    received = []
    bus.subscribe(topic, lambda e: received.append(e.payload))
    return received


class TestCreate:
    def test_creates_directory_and_session(self, manager, fake_tmux, bus, config):
        created = collect(bus, events.SANDBOX_CREATED)
        sandbox = manager.create_sandbox("alice")

        assert sandbox.id.startswith("sandbox_")
        assert sandbox.session_name == f"sandbox_{sandbox.id}"
        assert os.path.isdir(sandbox.path)
        assert sandbox.path.startswith(str(config.sandbox_root / "alice" / "sandboxes"))
        session = fake_tmux.sessions[sandbox.session_name]
        assert session["env"] == {"SANDBOX_ID": sandbox.id, "SANDBOX_PATH": sandbox.path}
        assert created == [{"sandboxId": sandbox.id, "owner": "alice", "path": sandbox.path}]
        assert manager.list_sandboxes("alice") == [sandbox]
        assert manager.list_sandboxes("bob") == []

    def test_copies_base_without_git_or_node_modules(self, manager, git_repo):
        (git_repo / "node_modules" / "dep").mkdir(parents=True)
        commit_file(git_repo, "src/app.js", "console.log(1)\n")

        sandbox = manager.create_sandbox("alice", base_from=git_repo)

        assert os.path.exists(os.path.join(sandbox.path, "src", "app.js"))
        assert not os.path.exists(os.path.join(sandbox.path, ".git"))
        assert not os.path.exists(os.path.join(sandbox.path, "node_modules"))

    def test_owner_limit(self, manager, config):
        config.max_sandboxes_per_owner = 2
        manager.create_sandbox("alice")
        manager.create_sandbox("alice")
        with pytest.raises(SandboxLimitError):
            manager.create_sandbox("alice")
        assert manager.create_sandbox("bob").owner == "bob"

    def test_tmux_failure_cleans_up(self, manager, fake_tmux, config):
        fake_tmux.fail_create = True
        with pytest.raises(SandboxError, match="alice"):
            manager.create_sandbox("alice")
        assert manager.list_sandboxes() == []
        assert not list((config.sandbox_root / "alice" / "sandboxes").glob("*"))

    def test_preview_only_for_web_projects(self, manager, previews, tmp_path):
        site = tmp_path / "site"
        site.mkdir()
        (site / "index.html").write_text("<h1>hi</h1>")

        web = manager.create_sandbox("alice", base_from=site, preview=True)
        plain = manager.create_sandbox("alice", preview=True)

        assert web.preview.framework == "static"
        assert plain.preview is None
        assert previews.started == [web.id]


class TestRunning:
    def test_execute_sets_sandbox_environment(self, manager):
        sandbox = manager.create_sandbox("alice")
        proc = manager.execute_in_sandbox(
            sandbox.id, [sys.executable, "-c", "import os; print(os.environ['SANDBOX_ID'], os.getcwd())"]
        )
        out, _ = proc.communicate(timeout=10)
        assert proc.pid in sandbox.pids
        sandbox_id, cwd = out.split()
        assert sandbox_id == sandbox.id
        assert os.path.samefile(cwd, sandbox.path)

    def test_run_types_into_session(self, manager, fake_tmux):
        sandbox = manager.create_sandbox("alice")
        manager.run_in_sandbox(sandbox.id, "ls")
        assert fake_tmux.keys == [(sandbox.session_name, f"cd {sandbox.path} && ls")]
        assert sandbox.status == "ready"

    def test_unknown_sandbox(self, manager):
        with pytest.raises(SandboxNotFoundError):
            manager.run_in_sandbox("sandbox_missing", "ls")

    def test_nothing_to_test(self, manager):
        sandbox = manager.create_sandbox("alice")
        assert manager.test_sandbox(sandbox.id) == {
            "passed": True,
            "kind": "syntax check",
            "results": "Nothing to test",
        }


class TestResources:
    def test_each_crossed_ceiling_is_published(self, manager, bus):
        exceeded = collect(bus, events.LIMIT_EXCEEDED)
        sandbox = manager.create_sandbox(
            "alice", limits=SandboxLimits(cpu_percent=50, memory_mb=100, disk_mb=10, time_limit=3600)
        )
        snapshot = MetricsSnapshot(sandbox_id=sandbox.id, cpu_percent=10, memory_mb=150, disk_mb=20)

        assert manager.check_resources(sandbox.id, snapshot) == ["memory", "disk"]
        assert [e["type"] for e in exceeded] == ["memory", "disk"]
        assert sandbox.resources.memory_mb == 150

    def test_time_limit_destroys_sandbox(self, manager, bus):
        done = threading.Event()
        destroyed = collect(bus, events.SANDBOX_DESTROYED)
        bus.subscribe(events.SANDBOX_DESTROYED, lambda e: done.set())
        sandbox = manager.create_sandbox("alice", limits=SandboxLimits(time_limit=0.1))

        assert done.wait(5)
        assert manager.get_sandbox(sandbox.id) is None
        assert not os.path.exists(sandbox.path)
        assert destroyed == [{"sandboxId": sandbox.id, "owner": "alice"}]


class TestTeardown:
    def test_destroy_releases_everything(self, manager, fake_tmux, previews, tmp_path):
        site = tmp_path / "site"
        site.mkdir()
        (site / "index.html").write_text("ok")
        sandbox = manager.create_sandbox("alice", base_from=site, preview=True)

        manager.destroy_sandbox(sandbox.id)
        manager.destroy_sandbox(sandbox.id)

        assert fake_tmux.killed == [sandbox.session_name]
        assert previews.stopped == [sandbox.id]
        assert not os.path.exists(sandbox.path)
        assert sandbox.status == "stopped"

    def test_record_outlives_teardown(self, manager, fake_tmux, monkeypatch):
        sandbox = manager.create_sandbox("alice")
        seen = []
        kill = tmux.kill_session

        def kill_and_look(name):
            seen.append((manager.get_sandbox(sandbox.id), os.path.isdir(sandbox.path)))
            kill(name)

        monkeypatch.setattr(tmux, "kill_session", kill_and_look)
        manager.destroy_sandbox(sandbox.id)

        assert seen == [(sandbox, True)]
        assert manager.get_sandbox(sandbox.id) is None

    def test_promote_backs_up_existing_target(self, manager, tmp_path):
        sandbox = manager.create_sandbox("alice")
        with open(os.path.join(sandbox.path, "app.js"), "w") as f:
            f.write("new")
        target = tmp_path / "live"
        target.mkdir()
        (target / "app.js").write_text("old")

        promoted = manager.promote_sandbox(sandbox.id, target)

        assert (promoted / "app.js").read_text() == "new"
        backups = list(tmp_path.glob("live.backup.*"))
        assert len(backups) == 1 and (backups[0] / "app.js").read_text() == "old"
        assert manager.get_sandbox(sandbox.id) is None

    def test_sweep_orphans(self, manager, fake_tmux, config):
        kept = manager.create_sandbox("alice")
        fake_tmux.sessions["sandbox_orphan"] = {}
        fake_tmux.sessions["unrelated"] = {}
        stale = config.sandbox_root / "bob" / "sandboxes" / "sandbox_old"
        stale.mkdir(parents=True)
        old = time.time() - 48 * 3600
        os.utime(stale, (old, old))

        result = manager.sweep_orphans()

        assert result == {"sessions": ["sandbox_orphan"], "directories": [str(stale)]}
        assert kept.session_name in fake_tmux.sessions
        assert "unrelated" in fake_tmux.sessions
        assert os.path.isdir(kept.path)


class TestPreviewPool:
    def test_skips_bound_ports_and_exhausts(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen()
            port = busy.getsockname()[1]
            pool = PreviewServerPool(base_port=port, max_ports=2)
            allocated = pool.allocate_port()
            assert allocated == port + 1
            with pytest.raises(PortExhaustedError):
                pool.allocate_port()
            pool.release_port(allocated)
            assert pool.allocate_port() == allocated

    def test_framework_detection(self, tmp_path):
        assert not is_web_project(tmp_path)
        (tmp_path / "package.json").write_text('{"dependencies": {"next": "14.0.0"}}')
        assert is_web_project(tmp_path)
        assert detect_framework(tmp_path) == "nextjs"
        (tmp_path / "package.json").write_text("not json")
        assert detect_framework(tmp_path) == "static"

    def test_commands(self):
        pool = PreviewServerPool()
        assert pool.command_for("nextjs", 4001) == ["npm", "run", "dev"]
        assert pool.command_for("static", 4002) == ["npx", "http-server", "-p", "4002", "-c-1"]


class TestMetricsSampler:
    def test_sample_reports_processes_disk_and_git(self, git_repo):
        (git_repo / "dist").mkdir()
        (git_repo / "dist" / "bundle.js").write_text("x" * 2048)
        (git_repo / "scratch.txt").write_text("dirty")
        bus = EventBus()
        published = collect(bus, events.METRICS_UPDATED)
        seen = []
        sampler = MetricsSampler("sb-1", git_repo, pids=lambda: {os.getpid()}, bus=bus, on_sample=seen.append)

        snapshot = sampler.sample()

        assert snapshot.process_count >= 1
        assert snapshot.memory_mb > 0
        assert snapshot.build_dir == "dist"
        assert snapshot.git_branch == "main"
        assert snapshot.git_dirty_count == 2
        assert seen == [snapshot]
        assert published[0]["sandboxId"] == "sb-1"

    def test_build_info_without_artifacts(self, tmp_path):
        assert build_info(tmp_path) == (None, None, None)

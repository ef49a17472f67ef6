"""Disposable per-owner workspaces backed by tmux sessions.

A sandbox is a copied directory with its own tmux session, a set of tracked
processes, soft resource ceilings checked by a metrics sampler, an optional
preview server and a hard wall-clock expiry.
"""

import logging
import os
import shutil
import subprocess
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path

from team_orchestrator.config import Config
from team_orchestrator.core import events
from team_orchestrator.core.events import EventBus
from team_orchestrator.core.metrics import MetricsSampler
from team_orchestrator.core.preview import PortExhaustedError, PreviewServerPool, is_web_project
from team_orchestrator.core.processes import pid_alive, terminate_processes
from team_orchestrator.db.models import MetricsSnapshot, ResourceSnapshot, Sandbox, SandboxLimits
from team_orchestrator.integrations import tmux

logger = logging.getLogger(__name__)

COPY_IGNORE = shutil.ignore_patterns(".git", "node_modules")
SESSION_PREFIX = "sandbox_"
ORPHAN_AGE = 24 * 3600.0


class SandboxError(Exception):
    """Raised when a sandbox operation fails."""


class SandboxLimitError(SandboxError):
    """Raised when an owner already holds the maximum number of sandboxes."""


class SandboxNotFoundError(SandboxError):
    """Raised for operations on an unknown sandbox id."""


def new_sandbox_id() -> str:
    return f"sandbox_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class SandboxLifecycleManager:
    def __init__(
        self,
        config: Config,
        bus: EventBus | None = None,
        previews: PreviewServerPool | None = None,
    ):
        self.config = config
        self.bus = bus
        self.root = Path(config.sandbox_root)
        self.previews = previews or PreviewServerPool(
            base_port=config.preview_base_port,
            max_ports=config.preview_max_ports,
            ready_timeout=config.preview_ready_timeout,
        )
        self._sandboxes: dict[str, Sandbox] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._samplers: dict[str, MetricsSampler] = {}
        self._lock = threading.RLock()

    def _publish(self, topic: str, **payload):
        if self.bus:
            self.bus.publish(topic, **payload)

    # ── Creation ──────────────────────────────────────────────────────────────

    def create_sandbox(
        self,
        owner: str,
        base_from: str | Path | None = None,
        limits: SandboxLimits | None = None,
        preview: bool = False,
    ) -> Sandbox:
        limits = limits or SandboxLimits(
            cpu_percent=self.config.sandbox_cpu_percent,
            memory_mb=self.config.sandbox_memory_mb,
            disk_mb=self.config.sandbox_disk_mb,
            time_limit=self.config.sandbox_time_limit,
        )
        sandbox_id = new_sandbox_id()
        path = self.root / owner / "sandboxes" / sandbox_id

        with self._lock:
            owned = sum(1 for s in self._sandboxes.values() if s.owner == owner)
            if owned >= self.config.max_sandboxes_per_owner:
                raise SandboxLimitError(
                    f"{owner} already has {owned} sandboxes "
                    f"(max {self.config.max_sandboxes_per_owner})"
                )
            sandbox = Sandbox(
                id=sandbox_id,
                owner=owner,
                path=str(path),
                session_name=f"{SESSION_PREFIX}{sandbox_id}",
                limits=limits,
                created_at=datetime.now(),
            )
            self._sandboxes[sandbox_id] = sandbox

        try:
            if base_from:
                shutil.copytree(base_from, path, ignore=COPY_IGNORE)
            else:
                path.mkdir(parents=True, exist_ok=True)
            tmux.new_session(
                sandbox.session_name,
                path,
                env={"SANDBOX_ID": sandbox_id, "SANDBOX_PATH": str(path)},
            )
        except (OSError, tmux.TmuxError) as e:
            with self._lock:
                self._sandboxes.pop(sandbox_id, None)
            shutil.rmtree(path, ignore_errors=True)
            raise SandboxError(f"Failed to create sandbox for {owner}: {e}") from e

        sandbox.pids.update(tmux.session_pids(sandbox.session_name))
        self._apply_cpu_limit(sandbox)
        self._schedule_expiry(sandbox)
        self._start_sampler(sandbox)

        if preview and is_web_project(path):
            try:
                sandbox.preview = self.previews.start(sandbox_id, path)
            except (PortExhaustedError, OSError) as e:
                logger.warning("No preview for %s: %s", sandbox_id, e)

        logger.info("Created sandbox %s for %s at %s", sandbox_id, owner, path)
        self._publish(events.SANDBOX_CREATED, sandboxId=sandbox_id, owner=owner, path=str(path))
        return sandbox

    def _apply_cpu_limit(self, sandbox: Sandbox):
        if shutil.which("cpulimit") is None:
            logger.warning("cpulimit not available; CPU limit for %s not enforced", sandbox.id)
            return
        for pid in list(sandbox.pids):
            try:
                proc = subprocess.Popen(
                    ["cpulimit", "-l", str(int(sandbox.limits.cpu_percent)), "-p", str(pid), "-i"],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except OSError as e:
                logger.warning("Could not apply CPU limit to %s: %s", sandbox.id, e)
                return
            sandbox.pids.add(proc.pid)

    def _schedule_expiry(self, sandbox: Sandbox):
        timer = threading.Timer(sandbox.limits.time_limit, self._expire, args=(sandbox.id,))
        timer.daemon = True
        timer.start()
        with self._lock:
            self._timers[sandbox.id] = timer

    def _expire(self, sandbox_id: str):
        logger.info("Sandbox %s reached its time limit", sandbox_id)
        try:
            self.destroy_sandbox(sandbox_id)
        except Exception:
            logger.exception("Error destroying expired sandbox %s", sandbox_id)

    def _start_sampler(self, sandbox: Sandbox):
        def preview_url():
            return sandbox.preview.url if sandbox.preview and sandbox.preview.ready else None

        sampler = MetricsSampler(
            sandbox.id,
            sandbox.path,
            pids=lambda: set(sandbox.pids),
            bus=self.bus,
            preview_url=preview_url,
            interval=self.config.metrics_interval,
            on_sample=lambda snapshot: self.check_resources(sandbox.id, snapshot),
        )
        sampler.start()
        with self._lock:
            self._samplers[sandbox.id] = sampler

    # ── Resource ceilings ─────────────────────────────────────────────────────

    def check_resources(self, sandbox_id: str, snapshot: MetricsSnapshot) -> list[str]:
        """Record a sample and publish one limit-exceeded event per crossed ceiling."""
        sandbox = self.get_sandbox(sandbox_id)
        if sandbox is None:
            return []
        sandbox.resources = ResourceSnapshot(
            cpu_percent=snapshot.cpu_percent,
            memory_mb=snapshot.memory_mb,
            disk_mb=snapshot.disk_mb,
            sampled_at=snapshot.sampled_at,
        )
        sandbox.pids = {pid for pid in sandbox.pids if pid_alive(pid)}

        exceeded = []
        checks = (
            ("cpu", snapshot.cpu_percent, sandbox.limits.cpu_percent),
            ("memory", snapshot.memory_mb, sandbox.limits.memory_mb),
            ("disk", snapshot.disk_mb, sandbox.limits.disk_mb),
        )
        for kind, used, limit in checks:
            if used > limit:
                exceeded.append(kind)
                logger.warning("Sandbox %s exceeds %s limit (%.1f > %.1f)", sandbox_id, kind, used, limit)
                self._publish(events.LIMIT_EXCEEDED, sandboxId=sandbox_id, type=kind, used=used, limit=limit)
        return exceeded

    # ── Running commands ──────────────────────────────────────────────────────

    def _require(self, sandbox_id: str) -> Sandbox:
        sandbox = self.get_sandbox(sandbox_id)
        if sandbox is None:
            raise SandboxNotFoundError(f"Sandbox {sandbox_id} not found")
        return sandbox

    def run_in_sandbox(self, sandbox_id: str, command: str):
        """Type a command into the sandbox's tmux session."""
        sandbox = self._require(sandbox_id)
        sandbox.status = "running"
        try:
            tmux.send_keys(sandbox.session_name, f"cd {sandbox.path} && {command}")
        except tmux.TmuxError as e:
            sandbox.status = "error"
            raise SandboxError(f"Command failed in {sandbox_id}: {e}") from e
        sandbox.status = "ready"

    def execute_in_sandbox(self, sandbox_id: str, command: list[str]) -> subprocess.Popen:
        """Start a tracked process in the sandbox directory."""
        sandbox = self._require(sandbox_id)
        env = {
            **os.environ,
            "SANDBOX_ID": sandbox_id,
            "SANDBOX_PATH": sandbox.path,
            "NODE_OPTIONS": f"--max-old-space-size={sandbox.limits.memory_mb}",
        }
        proc = subprocess.Popen(
            command,
            cwd=sandbox.path,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        sandbox.pids.add(proc.pid)
        return proc

    def test_sandbox(self, sandbox_id: str, timeout: float = 300) -> dict:
        """Run the project's tests (npm test) or a syntax check of its JS files."""
        sandbox = self._require(sandbox_id)
        path = Path(sandbox.path)
        if (path / "package.json").exists():
            commands = [["npm", "test"]]
            kind = "npm test"
        else:
            scripts = [p for p in path.rglob("*.js") if "node_modules" not in p.parts]
            commands = [["node", "--check", str(p)] for p in scripts]
            kind = "syntax check"
        if not commands:
            return {"passed": True, "kind": kind, "results": "Nothing to test"}

        outputs = []
        passed = True
        for command in commands:
            proc = self.execute_in_sandbox(sandbox_id, command)
            try:
                stdout, stderr = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                terminate_processes([proc.pid], grace=2.0)
                return {"passed": False, "kind": kind, "results": f"Timed out after {timeout}s"}
            finally:
                sandbox.pids.discard(proc.pid)
            passed = passed and proc.returncode == 0
            outputs.append((stdout + stderr).strip())
        return {"passed": passed, "kind": kind, "results": "\n".join(o for o in outputs if o)}

    def promote_sandbox(self, sandbox_id: str, target: str | Path | None = None) -> Path:
        """Move the sandbox directory into place, backing up whatever was there."""
        sandbox = self._require(sandbox_id)
        target = Path(target) if target else self.root / sandbox.owner / "projects" / sandbox_id
        if target.exists():
            backup = target.with_name(f"{target.name}.backup.{int(time.time() * 1000)}")
            target.rename(backup)
            logger.info("Backed up %s to %s", target, backup)
        target.parent.mkdir(parents=True, exist_ok=True)
        self._release(sandbox)
        shutil.move(sandbox.path, target)
        sandbox.path = str(target)
        sandbox.status = "stopped"
        with self._lock:
            self._sandboxes.pop(sandbox_id, None)
        logger.info("Promoted sandbox %s to %s", sandbox_id, target)
        return target

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_sandbox(self, sandbox_id: str) -> Sandbox | None:
        with self._lock:
            return self._sandboxes.get(sandbox_id)

    def list_sandboxes(self, owner: str | None = None) -> list[Sandbox]:
        with self._lock:
            sandboxes = list(self._sandboxes.values())
        if owner:
            sandboxes = [s for s in sandboxes if s.owner == owner]
        return sandboxes

    # ── Teardown ──────────────────────────────────────────────────────────────

    def _release(self, sandbox: Sandbox):
        with self._lock:
            timer = self._timers.pop(sandbox.id, None)
            sampler = self._samplers.pop(sandbox.id, None)
        if timer:
            timer.cancel()
        if sampler:
            sampler.stop()
        self.previews.stop(sandbox.id)
        sandbox.preview = None
        terminate_processes(list(sandbox.pids), grace=5.0)
        sandbox.pids.clear()
        try:
            tmux.kill_session(sandbox.session_name)
        except tmux.TmuxError as e:
            logger.warning("Could not kill tmux session %s: %s", sandbox.session_name, e)

    def destroy_sandbox(self, sandbox_id: str):
        """Tear down everything a sandbox owns. Unknown ids are ignored.

        The record stays registered as "destroying" until the session and
        directory are gone.
        """
        with self._lock:
            sandbox = self._sandboxes.get(sandbox_id)
            if sandbox is None or sandbox.status == "destroying":
                return
            sandbox.status = "destroying"
        self._release(sandbox)
        shutil.rmtree(sandbox.path, ignore_errors=True)
        sandbox.status = "stopped"
        with self._lock:
            self._sandboxes.pop(sandbox_id, None)
        logger.info("Destroyed sandbox %s", sandbox_id)
        self._publish(events.SANDBOX_DESTROYED, sandboxId=sandbox_id, owner=sandbox.owner)

    def destroy_all(self):
        for sandbox in self.list_sandboxes():
            self.destroy_sandbox(sandbox.id)

    def sweep_orphans(self, max_age: float = ORPHAN_AGE) -> dict:
        """Kill unknown sandbox tmux sessions and delete old untracked sandbox directories."""
        with self._lock:
            known_sessions = {s.session_name for s in self._sandboxes.values()}
            known_paths = {Path(s.path) for s in self._sandboxes.values()}

        killed = []
        for name in tmux.list_sessions():
            if name.startswith(SESSION_PREFIX) and name not in known_sessions:
                try:
                    tmux.kill_session(name)
                    killed.append(name)
                except tmux.TmuxError as e:
                    logger.warning("Could not kill orphan session %s: %s", name, e)

        removed = []
        cutoff = time.time() - max_age
        if self.root.exists():
            for directory in self.root.glob("*/sandboxes/*"):
                if directory in known_paths or not directory.is_dir():
                    continue
                if directory.stat().st_mtime < cutoff:
                    shutil.rmtree(directory, ignore_errors=True)
                    removed.append(str(directory))

        if killed or removed:
            logger.info("Swept %d orphan sessions and %d stale sandbox dirs", len(killed), len(removed))
        return {"sessions": killed, "directories": removed}

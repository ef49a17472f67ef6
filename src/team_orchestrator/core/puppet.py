"""Driving external coding-agent processes.

Each agent gets a persistent session process bound to its working directory,
used only for liveness probes. Every task runs in a fresh one-shot process:
the prompt goes in over stdin, stdout is pumped by a reader thread into a
buffer (and the terminal hub), and the call resolves when the output
classifier decides the turn is over or the process exits with real output.
"""

import codecs
import json
import logging
import os
import shutil
import subprocess
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from team_orchestrator.config import Config
from team_orchestrator.core import events
from team_orchestrator.core.broadcast import TerminalBroadcastHub
from team_orchestrator.core.classifier import ClassifierConfig, classify, clean_output
from team_orchestrator.core.events import EventBus
from team_orchestrator.core.processes import terminate_processes
from team_orchestrator.core.roles import Role, profile

logger = logging.getLogger(__name__)

MIN_EXIT_OUTPUT = 10
HEALTH_PROBE = "Health check: reply with the single word alive."
CREDENTIAL_ENV = ("CLAUDE_CODE_OAUTH_TOKEN", "ANTHROPIC_API_KEY")
IGNORED_DIRS = {".git", "node_modules", "__pycache__"}

OutputCallback = Callable[[str, str], None]


class AgentError(Exception):
    """Base class for agent process failures."""


class AgentNotFoundError(AgentError):
    """Raised when an agent id is not registered."""


class AgentExistsError(AgentError):
    """Raised when spawning an agent id that is already registered."""


class AgentProcessError(AgentError):
    """Raised when an agent process cannot start or exits without usable output."""


class AgentTimeoutError(AgentError):
    """Raised when an agent does not finish its turn in time."""


class AgentStoppedError(AgentError):
    """Raised for calls still in flight when their agent is stopped."""


@dataclass
class ConversationTurn:
    role: str
    content: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AgentSession:
    agent_id: str
    role: Role
    context: str
    work_dir: Path
    status: str = "initializing"
    current_task: str = ""
    history: list[ConversationTurn] = field(default_factory=list)
    last_activity: float = field(default_factory=time.monotonic)
    process: subprocess.Popen | None = None
    calls: set = field(default_factory=set)
    created_files: list[str] = field(default_factory=list)
    restarts: int = 0
    stopped: bool = False
    _probe_output: threading.Event = field(default_factory=threading.Event)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None


class _StreamReader:
    """Pumps a process's stdout into a buffer from a daemon thread."""

    def __init__(self, proc: subprocess.Popen, on_chunk: Callable[[str], None] | None = None):
        self.proc = proc
        self.on_chunk = on_chunk
        self.chunks: list[str] = []
        self.last_byte_at = time.monotonic()
        self.eof = threading.Event()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._pump, name=f"agent-reader-{proc.pid}", daemon=True)
        self._thread.start()

    def _pump(self):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        fd = self.proc.stdout.fileno()
        try:
            while True:
                data = os.read(fd, 4096)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self._push(text)
            tail = decoder.decode(b"", final=True)
            if tail:
                self._push(tail)
        except OSError:
            logger.debug("Reader for PID %s closed", self.proc.pid)
        finally:
            self.eof.set()

    def _push(self, text: str):
        with self._lock:
            self.chunks.append(text)
            self.last_byte_at = time.monotonic()
        if self.on_chunk:
            try:
                self.on_chunk(text)
            except Exception:
                logger.exception("Output callback failed for PID %s", self.proc.pid)

    def snapshot(self) -> tuple[str, float]:
        with self._lock:
            return "".join(self.chunks), self.last_byte_at


class ProcessPuppet:
    """Registry of agent sessions and the processes behind them."""

    def __init__(
        self,
        config: Config,
        hub: TerminalBroadcastHub | None = None,
        bus: EventBus | None = None,
        classifier_config: ClassifierConfig | None = None,
        max_workers: int | None = None,
        check_interval: float = 0.25,
    ):
        self.config = config
        self.hub = hub
        self.bus = bus
        self.classifier_config = classifier_config or ClassifierConfig(
            silence_threshold=config.silence_threshold,
            quick_silence_threshold=config.quick_silence_threshold,
        )
        self.check_interval = check_interval
        self._sessions: dict[str, AgentSession] = {}
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.max_concurrent_teams * config.max_agents_per_team,
            thread_name_prefix="agent-call",
        )
        self._health_stop = threading.Event()
        self._health_thread: threading.Thread | None = None
        self._started = time.monotonic()
        self.stats = {
            "agents_spawned": 0,
            "commands_sent": 0,
            "responses_received": 0,
            "errors": 0,
            "total_response_time": 0.0,
        }

    # ── Validation ────────────────────────────────────────────────────────────

    def validate_cli(self) -> list[str]:
        """Check the agent binary and credentials. Returns warnings, never raises."""
        if self.config.skip_validation:
            return []
        warnings = []
        binary = self.config.agent_command[0]
        if shutil.which(binary) is None and not Path(binary).exists():
            warnings.append(f"Agent CLI '{binary}' not found on PATH; agents will fail on first use")
        if not any(os.environ.get(name) for name in CREDENTIAL_ENV):
            warnings.append(
                "No agent credentials in environment (CLAUDE_CODE_OAUTH_TOKEN or ANTHROPIC_API_KEY)"
            )
        for warning in warnings:
            logger.warning(warning)
        return warnings

    # ── Sessions ──────────────────────────────────────────────────────────────

    def spawn_agent(
        self,
        agent_id: str,
        role: Role,
        context: str,
        work_root: str | Path,
        exact_dir: bool = False,
        persistent: bool = True,
    ) -> AgentSession:
        """Create the agent's directory, register it, and start its session process."""
        role = Role(role)
        work_dir = Path(work_root) if exact_dir else Path(work_root) / role.value
        work_dir.mkdir(parents=True, exist_ok=True)

        session = AgentSession(
            agent_id=agent_id,
            role=role,
            context=context,
            work_dir=work_dir,
            current_task=f"Setting up {role.value} environment",
        )
        with self._lock:
            if agent_id in self._sessions:
                raise AgentExistsError(f"Agent {agent_id} already exists")
            self._sessions[agent_id] = session

        if persistent:
            try:
                self._start_session_process(session)
            except AgentProcessError:
                with self._lock:
                    self._sessions.pop(agent_id, None)
                raise

        session.history.append(
            ConversationTurn("system", f"{profile(role).persona} Context: {context}")
        )
        session.status = "ready"
        session.current_task = f"Ready to work as {profile(role).title}"
        self.stats["agents_spawned"] += 1
        logger.info("Agent %s (%s) ready in %s", agent_id, role.value, work_dir)
        return session

    def _start_session_process(self, session: AgentSession):
        try:
            proc = subprocess.Popen(
                list(self.config.agent_command),
                cwd=session.work_dir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=self._agent_env(session),
            )
        except FileNotFoundError:
            logger.warning(
                "Agent CLI %s not found; %s runs without a session process",
                self.config.agent_command[0], session.agent_id,
            )
            return
        except OSError as e:
            raise AgentProcessError(f"Failed to start session for {session.agent_id}: {e}") from e

        session.process = proc

        def on_chunk(text: str):
            session.last_activity = time.monotonic()
            session._probe_output.set()

        _StreamReader(proc, on_chunk)

    def _agent_env(self, session: AgentSession) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            CLAUDE_AGENT_ID=session.agent_id,
            CLAUDE_AGENT_ROLE=session.role.value,
            CLAUDE_WORK_TREE=str(session.work_dir),
        )
        return env

    def get_session(self, agent_id: str) -> AgentSession | None:
        with self._lock:
            return self._sessions.get(agent_id)

    def _require(self, agent_id: str) -> AgentSession:
        session = self.get_session(agent_id)
        if session is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return session

    def list_agents(self) -> list[dict]:
        with self._lock:
            ids = list(self._sessions)
        return [s for s in (self.get_agent_status(i) for i in ids) if s]

    def get_agent_status(self, agent_id: str) -> dict | None:
        session = self.get_session(agent_id)
        if session is None:
            return None
        return {
            "agentId": session.agent_id,
            "role": session.role.value,
            "status": session.status,
            "currentTask": session.current_task,
            "workDir": str(session.work_dir),
            "pid": session.pid,
            "conversationLength": len(session.history),
            "createdFiles": list(session.created_files),
            "idleSeconds": round(time.monotonic() - session.last_activity, 1),
            "restarts": session.restarts,
        }

    def process_count(self) -> int:
        with self._lock:
            sessions = list(self._sessions.values())
        count = 0
        for session in sessions:
            if session.process and session.process.poll() is None:
                count += 1
            count += sum(1 for p in list(session.calls) if p.poll() is None)
        return count

    # ── Task calls ────────────────────────────────────────────────────────────

    def build_prompt(self, session: AgentSession, message: str) -> str:
        role = profile(session.role)
        return "\n".join([
            message,
            "",
            "IMPORTANT: Create real files in the working directory using your file tools. "
            "Do not only describe the code; write it to disk.",
            "",
            f"Working directory: {session.work_dir}",
            f"Role: {role.title}",
            f"Context: {session.context}",
        ])

    def agent_command(self, model: str | None = None) -> list[str]:
        cmd = list(self.config.agent_command) + [
            "--print",
            "--output-format", "json",
            "--session-id", str(uuid.uuid4()),
            "--dangerously-skip-permissions",
        ]
        if model := model or self.config.agent_model:
            cmd += ["--model", model]
        return cmd

    def send_to_agent(
        self,
        agent_id: str,
        message: str,
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
    ) -> str:
        """Run one task in a fresh agent process and return its response text."""
        session = self._require(agent_id)
        if session.status not in ("ready", "working", "unhealthy"):
            raise AgentProcessError(f"Agent {agent_id} is not ready (status: {session.status})")

        timeout = timeout or self.config.response_timeout
        prompt = self.build_prompt(session, message)
        before = _list_files(session.work_dir)

        session.status = "working"
        session.current_task = message.strip().splitlines()[0][:100] if message.strip() else ""
        session.last_activity = time.monotonic()
        self.stats["commands_sent"] += 1
        started = time.monotonic()

        try:
            proc = subprocess.Popen(
                self.agent_command(),
                cwd=session.work_dir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=self._agent_env(session),
            )
        except OSError as e:
            self._finish(session, failed=True)
            raise AgentProcessError(f"Failed to start agent process for {agent_id}: {e}") from e

        session.calls.add(proc)

        def on_chunk(text: str):
            session.last_activity = time.monotonic()
            if self.hub:
                self.hub.append(agent_id, text)
            if on_output:
                on_output(agent_id, text)

        reader = _StreamReader(proc, on_chunk)
        try:
            proc.stdin.write(prompt.encode("utf-8"))
            proc.stdin.close()
        except (BrokenPipeError, OSError) as e:
            logger.warning("Agent %s closed stdin early: %s", agent_id, e)

        try:
            raw = self._await_response(session, proc, reader, timeout)
        except AgentError:
            self._finish(session, failed=True)
            terminate_processes([proc.pid], grace=2.0)
            session.calls.discard(proc)
            raise

        self._reap_when_done(session, proc)
        response = extract_response(raw)
        elapsed = time.monotonic() - started

        session.history.append(ConversationTurn("user", message))
        session.history.append(ConversationTurn("assistant", response))
        created = sorted(_list_files(session.work_dir) - before)
        if created:
            session.created_files.extend(created)
            logger.info("Agent %s created %d files: %s", agent_id, len(created), ", ".join(created[:5]))
        else:
            logger.info("Agent %s finished without creating files", agent_id)

        self.stats["responses_received"] += 1
        self.stats["total_response_time"] += elapsed
        self._finish(session, failed=False)
        return response

    def _await_response(
        self,
        session: AgentSession,
        proc: subprocess.Popen,
        reader: _StreamReader,
        timeout: float,
    ) -> str:
        started = time.monotonic()
        deadline = started + timeout
        first_output_deadline = started + min(self.config.first_output_timeout, timeout)

        while True:
            if session.stopped:
                raise AgentStoppedError(f"Agent {session.agent_id} stopped")

            now = time.monotonic()
            text, last_byte_at = reader.snapshot()
            exited = reader.eof.is_set() and proc.poll() is not None

            if text and not exited:
                result = classify(text, now - last_byte_at, self.classifier_config, quick=True)
                if result.is_complete:
                    logger.debug(
                        "Agent %s turn complete (%s, %.2f)",
                        session.agent_id, result.reason, result.confidence,
                    )
                    return text

            if exited:
                if len(text.strip()) > MIN_EXIT_OUTPUT:
                    return text
                raise AgentProcessError(
                    f"Agent {session.agent_id} exited with code {proc.returncode} "
                    f"and no usable output: {text.strip()[:200]!r}"
                )

            if not text and now >= first_output_deadline:
                raise AgentTimeoutError(
                    f"Agent {session.agent_id} produced no output within "
                    f"{first_output_deadline - started:.0f}s"
                )
            if now >= deadline:
                raise AgentTimeoutError(f"Response timeout for agent {session.agent_id} after {timeout:.0f}s")

            reader.eof.wait(self.check_interval)

    def _reap_when_done(self, session: AgentSession, proc: subprocess.Popen):
        if proc.poll() is not None:
            session.calls.discard(proc)
            return

        def reap():
            proc.wait()
            session.calls.discard(proc)

        threading.Thread(target=reap, name=f"agent-reaper-{proc.pid}", daemon=True).start()

    def _finish(self, session: AgentSession, failed: bool):
        session.last_activity = time.monotonic()
        if failed:
            self.stats["errors"] += 1
        if not session.stopped and session.status == "working":
            session.status = "ready"

    def submit(
        self,
        agent_id: str,
        message: str,
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
    ) -> Future:
        """Queue a task call on the worker pool."""
        self._require(agent_id)
        return self._executor.submit(self.send_to_agent, agent_id, message, timeout, on_output)

    # ── Health ────────────────────────────────────────────────────────────────

    def probe_agent(self, agent_id: str, timeout: float | None = None) -> bool:
        """Ask the session process for any output within `timeout` seconds."""
        session = self._require(agent_id)
        proc = session.process
        if proc is None or proc.poll() is not None:
            return False
        timeout = timeout or self.config.probe_timeout
        session._probe_output.clear()
        try:
            proc.stdin.write((HEALTH_PROBE + "\n").encode("utf-8"))
            proc.stdin.flush()
        except (BrokenPipeError, OSError):
            return False
        return session._probe_output.wait(timeout)

    def check_health(self) -> list[str]:
        """Probe idle agents that own a session process. Returns the ids marked unhealthy."""
        now = time.monotonic()
        with self._lock:
            idle = [
                s for s in self._sessions.values()
                if s.process is not None
                and s.status == "ready"
                and now - s.last_activity > self.config.idle_threshold
            ]
        unhealthy = []
        for session in idle:
            if self.probe_agent(session.agent_id):
                session.last_activity = time.monotonic()
                continue
            session.status = "unhealthy"
            unhealthy.append(session.agent_id)
            logger.warning("Agent %s failed its health probe", session.agent_id)
            if self.bus:
                self.bus.publish(events.AGENT_UNHEALTHY, agentId=session.agent_id, role=session.role.value)
            if self.config.auto_restart:
                self.restart_agent(session.agent_id)
        return unhealthy

    def restart_agent(self, agent_id: str) -> AgentSession:
        """Kill the session process and start a new one with the same role and context."""
        session = self._require(agent_id)
        if session.process:
            terminate_processes([session.process.pid], grace=2.0)
            session.process = None
        session.status = "initializing"
        self._start_session_process(session)
        session.restarts += 1
        session.status = "ready"
        session.last_activity = time.monotonic()
        logger.info("Agent %s restarted (%d restarts)", agent_id, session.restarts)
        return session

    def start_health_monitor(self):
        if self._health_thread and self._health_thread.is_alive():
            return
        self._health_stop.clear()
        self._health_thread = threading.Thread(
            target=self._health_loop, name="agent-health", daemon=True
        )
        self._health_thread.start()
        logger.info("Agent health monitor started")

    def stop_health_monitor(self):
        self._health_stop.set()
        if self._health_thread:
            self._health_thread.join(timeout=10)
        self._health_thread = None

    def _health_loop(self):
        while not self._health_stop.wait(self.config.health_check_interval):
            try:
                self.check_health()
            except Exception:
                logger.exception("Error in agent health monitor loop")

    # ── Stopping ──────────────────────────────────────────────────────────────

    def stop_agent(self, agent_id: str, grace: float = 5.0):
        """Terminate every process of an agent and drop it from the registry."""
        with self._lock:
            session = self._sessions.pop(agent_id, None)
        if session is None:
            return
        session.stopped = True
        session.status = "stopped"
        pids = [p.pid for p in list(session.calls)]
        if session.process:
            pids.append(session.process.pid)
        terminate_processes(pids, grace=grace)
        session.calls.clear()
        logger.info("Agent %s stopped", agent_id)

    def stop_all(self, grace: float = 5.0):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        pids = []
        for session in sessions:
            session.stopped = True
            session.status = "stopped"
            pids.extend(p.pid for p in list(session.calls))
            if session.process:
                pids.append(session.process.pid)
        terminate_processes(pids, grace=grace)
        if sessions:
            logger.info("Stopped %d agents", len(sessions))

    def shutdown(self):
        self.stop_health_monitor()
        self.stop_all()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def get_stats(self) -> dict:
        received = self.stats["responses_received"]
        with self._lock:
            active = len(self._sessions)
        return {
            "agentsSpawned": self.stats["agents_spawned"],
            "commandsSent": self.stats["commands_sent"],
            "responsesReceived": received,
            "errors": self.stats["errors"],
            "averageResponseTime": round(self.stats["total_response_time"] / received, 2) if received else 0,
            "activeAgents": active,
            "processes": self.process_count(),
            "uptime": round(time.monotonic() - self._started, 1),
        }


def extract_response(raw: str) -> str:
    """Pull the result text out of JSON output, falling back to cleaned text."""
    stripped = raw.strip()
    candidates = [stripped] + [line for line in reversed(stripped.splitlines()) if line.strip()]
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(data, dict) and "result" in data:
            return str(data["result"])
    return clean_output(raw).strip()


def _list_files(root: Path) -> set[str]:
    files = set()
    if not root.exists():
        return files
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRS]
        for name in filenames:
            files.add(str((Path(dirpath) / name).relative_to(root)))
    return files

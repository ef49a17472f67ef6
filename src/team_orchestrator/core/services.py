"""Wiring of the long-lived services shared by the web, MCP and CLI surfaces."""

import logging
from dataclasses import dataclass

from team_orchestrator.config import Config, get_config
from team_orchestrator.core.broadcast import TerminalBroadcastHub
from team_orchestrator.core.events import EventBus
from team_orchestrator.core.history import HistoryRecorder
from team_orchestrator.core.orchestrator import ProgressMonitor, TeamOrchestrator
from team_orchestrator.core.puppet import ProcessPuppet
from team_orchestrator.core.sandbox import SandboxLifecycleManager
from team_orchestrator.core.workflows import WorkflowCoordinator
from team_orchestrator.core.worktrees import WorkTreeIsolator
from team_orchestrator.db.engine import SharedConnection

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Config
    bus: EventBus
    hub: TerminalBroadcastHub
    history: HistoryRecorder
    puppet: ProcessPuppet
    isolator: WorkTreeIsolator
    workflows: WorkflowCoordinator
    sandboxes: SandboxLifecycleManager
    orchestrator: TeamOrchestrator
    terminal_sweeper: ProgressMonitor
    db: SharedConnection

    def start(self):
        """Attach persistence, clear leftovers of earlier runs and start monitors."""
        self.history.attach(self.bus)
        self.puppet.validate_cli()
        if self.config.health_monitoring:
            self.puppet.start_health_monitor()
        try:
            self.sandboxes.sweep_orphans()
        except OSError as e:
            logger.warning("Orphan sandbox sweep failed: %s", e)
        self.orchestrator.start()
        self.terminal_sweeper.start()
        logger.info("Services started (repo %s)", self.config.repo_path)

    def shutdown(self):
        self.terminal_sweeper.stop()
        self.orchestrator.shutdown()
        self.sandboxes.destroy_all()
        self.puppet.shutdown()
        self.history.detach()
        self.db.close()
        logger.info("Services stopped")


def build_services(config: Config | None = None) -> Services:
    config = config or get_config()
    bus = EventBus()
    hub = TerminalBroadcastHub(
        buffer_size=config.terminal_buffer_size,
        idle_timeout=config.terminal_idle_timeout,
    )
    db = SharedConnection(config.db_path)
    history = HistoryRecorder(db)
    puppet = ProcessPuppet(config, hub=hub, bus=bus)
    isolator = WorkTreeIsolator(config.repo_path, config.worktree_dir)
    workflows = WorkflowCoordinator(
        puppet,
        config.worktree_root / "workflows",
        bus=bus,
        history=history,
        default_timeout=config.response_timeout,
    )
    sandboxes = SandboxLifecycleManager(config, bus=bus)
    orchestrator = TeamOrchestrator(
        config,
        puppet,
        isolator,
        workflows,
        bus=bus,
        history=history,
        sandboxes=sandboxes,
    )
    return Services(
        config=config,
        bus=bus,
        hub=hub,
        history=history,
        puppet=puppet,
        isolator=isolator,
        workflows=workflows,
        sandboxes=sandboxes,
        orchestrator=orchestrator,
        terminal_sweeper=ProgressMonitor(hub.sweep_idle, config.terminal_idle_timeout, name="terminal-sweep"),
        db=db,
    )

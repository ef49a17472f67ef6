"""Periodic resource, build and git sampling for sandboxes."""

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import httpx
import psutil

from team_orchestrator.core import events
from team_orchestrator.core.events import EventBus
from team_orchestrator.core.processes import process_usage
from team_orchestrator.db.models import MetricsSnapshot
from team_orchestrator.integrations.git import (
    GitError,
    get_current_branch,
    is_repository,
    short_head,
    status_porcelain,
)

logger = logging.getLogger(__name__)

BUILD_DIRS = (".next", "dist", "build", "out")


def directory_size_mb(path: str | Path) -> float:
    total = 0
    for dirpath, _, filenames in os.walk(path):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError:
                continue
    return total / (1024 * 1024)


def build_info(path: Path) -> tuple[str | None, float | None, float | None]:
    """(dir, size KB, age seconds) of the first build artifact directory found."""
    for name in BUILD_DIRS:
        build_dir = path / name
        if build_dir.is_dir():
            size_kb = directory_size_mb(build_dir) * 1024
            age = time.time() - build_dir.stat().st_mtime
            return name, round(size_kb, 1), round(age, 1)
    return None, None, None


class MetricsSampler:
    """Samples one sandbox every `interval` seconds on a daemon thread."""

    def __init__(
        self,
        sandbox_id: str,
        path: str | Path,
        pids: Callable[[], set[int]],
        bus: EventBus | None = None,
        preview_url: Callable[[], str | None] | None = None,
        interval: float = 5.0,
        on_sample: Callable[[MetricsSnapshot], None] | None = None,
    ):
        self.sandbox_id = sandbox_id
        self.path = Path(path)
        self.pids = pids
        self.bus = bus
        self.preview_url = preview_url
        self.interval = interval
        self.on_sample = on_sample
        self.latest: MetricsSnapshot | None = None
        self._cache: dict[int, psutil.Process] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"metrics-{self.sandbox_id}", daemon=True
        )
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=10)
        self._thread = None

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.sample()
            except Exception:
                logger.exception("Error sampling metrics for %s", self.sandbox_id)

    def sample(self) -> MetricsSnapshot:
        cpu, memory_mb, count = process_usage(self.pids(), self._cache)
        snapshot = MetricsSnapshot(
            sandbox_id=self.sandbox_id,
            cpu_percent=round(cpu, 1),
            memory_mb=round(memory_mb, 1),
            disk_mb=round(directory_size_mb(self.path), 1) if self.path.exists() else 0.0,
            process_count=count,
            sampled_at=datetime.now(),
        )

        if self.preview_url and (url := self.preview_url()):
            started = time.monotonic()
            try:
                httpx.head(url, timeout=2.0)
                snapshot.response_ms = round((time.monotonic() - started) * 1000, 1)
            except httpx.HTTPError:
                snapshot.response_ms = None

        if self.path.exists():
            snapshot.build_dir, snapshot.build_size_kb, snapshot.build_age_seconds = build_info(self.path)

        if self.path.exists() and is_repository(self.path):
            try:
                snapshot.git_commit = short_head(self.path)
                snapshot.git_branch = get_current_branch(self.path)
                snapshot.git_dirty_count = len(status_porcelain(self.path))
            except GitError as e:
                logger.debug("Git metrics unavailable for %s: %s", self.sandbox_id, e)

        self.latest = snapshot
        if self.on_sample:
            self.on_sample(snapshot)
        if self.bus:
            self.bus.publish(
                events.METRICS_UPDATED,
                sandboxId=self.sandbox_id,
                cpu=snapshot.cpu_percent,
                memoryMb=snapshot.memory_mb,
                diskMb=snapshot.disk_mb,
                processes=snapshot.process_count,
                responseMs=snapshot.response_ms,
            )
        return snapshot

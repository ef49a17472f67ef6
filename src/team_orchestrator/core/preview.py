"""Live preview servers for web-shaped sandboxes."""

import json
import logging
import os
import socket
import subprocess
import threading
import time
from datetime import datetime
from pathlib import Path

import httpx

from team_orchestrator.core.processes import terminate_processes
from team_orchestrator.db.models import PreviewServer

logger = logging.getLogger(__name__)

READY_STATUSES = (200, 404)


class PortExhaustedError(Exception):
    """Raised when every preview port is reserved or bound."""


def port_free(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def is_web_project(path: str | Path) -> bool:
    return (Path(path) / "package.json").exists() or (Path(path) / "index.html").exists()


def detect_framework(path: str | Path) -> str:
    package_json = Path(path) / "package.json"
    if not package_json.exists():
        return "static"
    try:
        package = json.loads(package_json.read_text())
    except (OSError, json.JSONDecodeError):
        return "static"
    deps = {**package.get("dependencies", {}), **package.get("devDependencies", {})}
    return "nextjs" if "next" in deps else "static"


class PreviewServerPool:
    def __init__(self, base_port: int = 4001, max_ports: int = 10, ready_timeout: float = 30.0):
        self.base_port = base_port
        self.max_ports = max_ports
        self.ready_timeout = ready_timeout
        self._reserved: set[int] = set()
        self._servers: dict[str, PreviewServer] = {}
        self._procs: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def allocate_port(self) -> int:
        """Reserve the first port that is neither reserved nor bound."""
        with self._lock:
            for port in range(self.base_port, self.base_port + self.max_ports):
                if port in self._reserved:
                    continue
                if not port_free(port):
                    continue
                self._reserved.add(port)
                return port
        raise PortExhaustedError(
            f"No free preview port in {self.base_port}-{self.base_port + self.max_ports - 1}"
        )

    def release_port(self, port: int):
        with self._lock:
            self._reserved.discard(port)

    def command_for(self, framework: str, port: int) -> list[str]:
        if framework == "nextjs":
            return ["npm", "run", "dev"]
        return ["npx", "http-server", "-p", str(port), "-c-1"]

    def start(self, sandbox_id: str, path: str | Path, wait: bool = True) -> PreviewServer:
        """Start a preview server for a sandbox directory on a fresh port."""
        with self._lock:
            existing = self._servers.get(sandbox_id)
        if existing:
            return existing

        port = self.allocate_port()
        framework = detect_framework(path)
        env = {**os.environ, "PORT": str(port)}
        try:
            proc = subprocess.Popen(
                self.command_for(framework, port),
                cwd=path,
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError:
            self.release_port(port)
            raise

        server = PreviewServer(
            sandbox_id=sandbox_id,
            port=port,
            url=f"http://localhost:{port}",
            framework=framework,
            pid=proc.pid,
            started_at=datetime.now(),
        )
        with self._lock:
            self._servers[sandbox_id] = server
            self._procs[sandbox_id] = proc
        logger.info("Preview for %s (%s) starting on port %d", sandbox_id, framework, port)

        if wait:
            server.ready = self.wait_until_ready(server.url, proc)
            if not server.ready:
                logger.warning("Preview for %s not ready after %.0fs", sandbox_id, self.ready_timeout)
        return server

    def wait_until_ready(self, url: str, proc: subprocess.Popen | None = None, interval: float = 0.5) -> bool:
        deadline = time.monotonic() + self.ready_timeout
        while time.monotonic() < deadline:
            if proc is not None and proc.poll() is not None:
                return False
            try:
                response = httpx.get(url, timeout=2.0)
                if response.status_code in READY_STATUSES:
                    return True
            except httpx.HTTPError:
                pass
            time.sleep(interval)
        return False

    def get(self, sandbox_id: str) -> PreviewServer | None:
        with self._lock:
            return self._servers.get(sandbox_id)

    def stop(self, sandbox_id: str):
        with self._lock:
            server = self._servers.pop(sandbox_id, None)
            proc = self._procs.pop(sandbox_id, None)
        if server is None:
            return
        if proc is not None:
            terminate_processes([proc.pid], grace=5.0)
        self.release_port(server.port)
        logger.info("Preview for %s stopped", sandbox_id)

    def list(self) -> list[PreviewServer]:
        with self._lock:
            return list(self._servers.values())

    def stop_all(self):
        for server in self.list():
            self.stop(server.sandbox_id)

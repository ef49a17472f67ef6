"""OS process helpers: liveness checks and graceful-then-forced termination."""

import logging

import psutil

logger = logging.getLogger(__name__)


def pid_alive(pid: int | None) -> bool:
    if pid is None:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def terminate_processes(pids: list[int], grace: float = 5.0) -> list[int]:
    """SIGTERM every pid and its children, SIGKILL whatever survives `grace` seconds.

    Returns the pids that had to be force-killed.
    """
    procs: list[psutil.Process] = []
    for pid in pids:
        try:
            root = psutil.Process(pid)
        except psutil.NoSuchProcess:
            continue
        try:
            children = root.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        procs.extend(children)
        procs.append(root)

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            logger.warning("No permission to terminate PID %s", proc.pid)

    if not procs:
        return []

    _, alive = psutil.wait_procs(procs, timeout=grace)
    killed = []
    for proc in alive:
        try:
            proc.kill()
            killed.append(proc.pid)
        except psutil.NoSuchProcess:
            pass
    if killed:
        logger.warning("Force-killed PIDs %s after %.1fs grace", killed, grace)
    return killed


def process_usage(
    pids: set[int] | list[int],
    cache: dict[int, psutil.Process] | None = None,
) -> tuple[float, float, int]:
    """Total (cpu percent, rss MB, process count) across pids and their children.

    cpu_percent is measured since the previous call on the same Process
    object, so callers sampling periodically should pass a persistent cache.
    """
    cache = {} if cache is None else cache
    cpu = 0.0
    rss = 0
    count = 0
    for pid in pids:
        try:
            root = cache.get(pid) or cache.setdefault(pid, psutil.Process(pid))
            members = [root] + [cache.setdefault(c.pid, c) for c in root.children(recursive=True)]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            cache.pop(pid, None)
            continue
        for proc in members:
            try:
                cpu += proc.cpu_percent(interval=None)
                rss += proc.memory_info().rss
                count += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
    return cpu, rss / (1024 * 1024), count

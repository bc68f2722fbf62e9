# ezhost/services/server_metrics.py
"""
Process usage sampling for running servers.

CPU% and resident memory of a launcher script's process tree (the script
itself plus the Java process it starts).
"""

import logging
import time
from typing import Dict, Optional

import psutil

logger = logging.getLogger(__name__)

# psutil.Process handles by pid; cpu_percent() needs the previous sample
_handles: Dict[int, psutil.Process] = {}


def empty_usage() -> dict:
    return {
        "running": False,
        "pid": None,
        "cpu_percent": None,
        "ram_mb": None,
        "timestamp": time.time(),
    }


def _handle(pid: int) -> Optional[psutil.Process]:
    proc = _handles.get(pid)
    if proc is not None and proc.is_running():
        return proc
    _handles.pop(pid, None)
    try:
        proc = psutil.Process(pid)
        # Prime the cpu_percent counter (first call always returns 0)
        proc.cpu_percent(interval=None)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
    _handles[pid] = proc
    return proc


def sample_process_tree(pid: int) -> dict:
    """CPU% and RAM of *pid* and all of its children."""
    root = _handle(pid)
    if root is None:
        return empty_usage()

    cpu = 0.0
    rss = 0
    try:
        members = [root] + [_handle(child.pid) for child in root.children(recursive=True)]
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        _handles.pop(pid, None)
        return empty_usage()

    for proc in members:
        if proc is None:
            continue
        try:
            cpu += proc.cpu_percent(interval=None)
            rss += proc.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            logger.debug(f"Process {proc.pid} vanished while sampling")

    return {
        "running": True,
        "pid": pid,
        "cpu_percent": round(cpu, 1),
        "ram_mb": round(rss / (1024 * 1024), 1),
        "timestamp": time.time(),
    }

"""Thread-safe registry of running terraform processes, keyed by deployment id.

Used to force-terminate a process that exceeded its timeout and to stop every
running process on shutdown.
"""
import os
import signal
import threading
import subprocess
import logging
from typing import Dict, List

logger = logging.getLogger(__name__)
_lock = threading.Lock()
_registry: Dict[str, subprocess.Popen] = {}


def register(key: str, process: subprocess.Popen) -> None:
    with _lock:
        _registry[key] = process
        logger.debug(f"Registered terraform process {process.pid} for {key}")


def unregister(key: str, process: subprocess.Popen = None) -> None:
    """Drop the entry for key; when process is given, only if it is still the registered one."""
    with _lock:
        current = _registry.get(key)
        if current is None:
            return
        if process is not None and current is not process:
            return
        _registry.pop(key, None)
        logger.debug(f"Unregistered terraform process for {key}")


def get_process(key: str) -> subprocess.Popen | None:
    with _lock:
        return _registry.get(key)


def active_keys() -> List[str]:
    with _lock:
        return list(_registry)


def stop_process(process: subprocess.Popen, grace_seconds: float = 5.0) -> None:
    """SIGTERM first so terraform can release its state lock, SIGKILL after the grace period."""
    if process.poll() is not None:
        return
    try:
        _signal(process, signal.SIGTERM)
        try:
            process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            _signal(process, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)
            process.wait()
    except OSError as e:
        logger.warning(f"Error terminating terraform process {process.pid}: {e}")


def _signal(process: subprocess.Popen, sig: int) -> None:
    # terraform runs provider plugins as child processes; signal the whole group when we own one
    if hasattr(os, "killpg"):
        try:
            if os.getpgid(process.pid) == process.pid:
                os.killpg(process.pid, sig)
                return
        except ProcessLookupError:
            return
    if sig == signal.SIGTERM:
        process.terminate()
    else:
        process.kill()


def terminate(key: str, grace_seconds: float = 5.0) -> bool:
    """Terminate the process for key. Returns True if a process was found."""
    with _lock:
        proc = _registry.get(key)
    if proc is None:
        return False
    try:
        stop_process(proc, grace_seconds)
    finally:
        unregister(key, proc)
    return True


def terminate_all(grace_seconds: float = 5.0) -> int:
    """Terminate every registered process; returns how many were found."""
    count = 0
    for key in active_keys():
        if terminate(key, grace_seconds):
            count += 1
    if count:
        logger.warning(f"Terminated {count} running terraform process(es)")
    return count

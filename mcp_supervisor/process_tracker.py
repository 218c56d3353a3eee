"""
Process tracker for spawned MCP server subprocesses.

Keeps a small JSON file of server name -> PID so servers left behind by a
crashed or force-killed host can be reaped on the next start.
"""
from __future__ import annotations

import json
import logging
import os
import signal
import time
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_FILE = Path.home() / ".mcp_supervisor" / "mcp-processes.json"


class ProcessTracker:
    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else DEFAULT_PROCESS_FILE
        self._pids: Dict[str, int] = self._load()

    @property
    def pids(self) -> Dict[str, int]:
        return dict(self._pids)

    def register(self, server_name: str, pid: int) -> None:
        self._pids[server_name] = pid
        self._persist()
        logger.info(f"Tracking MCP server {server_name} (pid {pid})")

    def unregister(self, server_name: str) -> None:
        pid = self._pids.pop(server_name, None)
        if pid is None:
            return
        self._persist()
        logger.info(f"Untracked MCP server {server_name} (pid {pid})")

    def cleanup_orphaned_processes(self) -> int:
        """Terminate every recorded PID that is still alive. Returns how many were signalled."""
        if not self._pids:
            return 0
        orphans, self._pids = self._pids, {}
        logger.info(f"Cleaning up {len(orphans)} orphaned MCP process(es)")

        signalled = 0
        for server, pid in orphans.items():
            if self._terminate(server, pid):
                signalled += 1
        self._persist()
        return signalled

    # ---------------------------------------------------------------- internals
    def _terminate(self, server: str, pid: int) -> bool:
        if pid <= 0 or not _alive(pid):
            logger.info(f"{server}: pid {pid} already gone")
            return False
        logger.info(f"{server}: sending SIGTERM to orphaned pid {pid}")
        os.kill(pid, signal.SIGTERM)
        _wait_for_exit(pid)
        if _alive(pid):
            logger.warning(f"{server}: SIGTERM ignored, sending SIGKILL to pid {pid}")
            os.kill(pid, signal.SIGKILL)
            _wait_for_exit(pid)
        return True

    def _load(self) -> Dict[str, int]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable process file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): int(v) for k, v in data.items() if isinstance(v, int)}

    def _persist(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(self._pids, indent=2))
            os.replace(tmp, self.path)
        except OSError as e:
            logger.error(f"Failed to persist MCP process tracker: {e}")


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, PermissionError):
        return False
    return True


def _wait_for_exit(pid: int, attempts: int = 10, interval: float = 0.05) -> None:
    for _ in range(attempts):
        if not _alive(pid):
            return
        # reap it if it happens to be our own child
        try:
            os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            pass
        time.sleep(interval)

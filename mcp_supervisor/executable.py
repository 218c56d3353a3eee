# executable.py – resolve MCP server commands and build their launch environment
from __future__ import annotations

import asyncio
import glob
import logging
import os
import shlex
from typing import Dict, Iterable, Mapping, Optional, Sequence

from .errors import ExecutableNotFound

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------- constants
SEARCH_PATHS: Sequence[str] = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
)
LOGIN_SHELL   = "/bin/bash"
WHICH_TIMEOUT = 5          # s – login shells can be slow to source profiles


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def tool_path_dirs() -> list:
    """Directories prepended to PATH so npx/uvx style launchers resolve their own children."""
    dirs = list(SEARCH_PATHS) + ["/opt/homebrew/opt/node/bin"]
    dirs += sorted(glob.glob(os.path.expanduser("~/.nvm/versions/node/*/bin")))
    return dirs


def build_environment(overrides: Mapping[str, str], base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ if base is None else base)
    parts = tool_path_dirs()
    if env.get("PATH"):
        parts.append(env["PATH"])
    env["PATH"] = os.pathsep.join(parts)
    # explicit config entries win, PATH included
    env.update(overrides)
    return env


async def find_executable(command: str,
                          search_paths: Iterable[str] = SEARCH_PATHS,
                          shell: str = LOGIN_SHELL) -> str:
    search_paths = list(search_paths)
    if not command:
        raise ExecutableNotFound(command)

    if os.path.isabs(command) or os.sep in command:
        path = os.path.abspath(command)
        if _is_executable(path):
            return path
        raise ExecutableNotFound(command)

    for directory in search_paths:
        candidate = os.path.join(directory, command)
        if _is_executable(candidate):
            logger.debug(f"Found executable {command} at {candidate}")
            return candidate

    resolved = await _which_via_shell(command, shell, search_paths)
    if resolved:
        logger.info(f"Found executable {command} via shell: {resolved}")
        return resolved
    raise ExecutableNotFound(command, search_paths)


async def _which_via_shell(command: str, shell: str, search_paths: Sequence[str]) -> Optional[str]:
    if not _is_executable(shell):
        return None
    env = dict(os.environ)
    env["PATH"] = os.pathsep.join(list(search_paths) + ([env["PATH"]] if env.get("PATH") else []))
    try:
        proc = await asyncio.create_subprocess_exec(
            shell, "-l", "-c", f"command -v {shlex.quote(command)}",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            env=env,
        )
    except OSError as e:
        logger.warning(f"Shell lookup for {command} failed to start: {e}")
        return None

    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=WHICH_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning(f"Shell lookup for {command} timed out after {WHICH_TIMEOUT}s")
        proc.kill()
        await proc.wait()
        return None

    if proc.returncode != 0:
        return None
    lines = out.decode("utf-8", errors="replace").strip().splitlines()
    path = lines[-1].strip() if lines else ""
    return path if path and _is_executable(path) else None

"""
Thin synchronous client for a running mcp-supervisor service.
Every CLI verb except `serve` goes through here.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
LIST_TIMEOUT    = 5

# base url -> (grouped tools, fetched at)
_list_tools_cache: Dict[str, Tuple[Dict[str, Any], float]] = {}
_CACHE_DURATION = 30


def server_url(port: int, host: str = "127.0.0.1") -> str:
    return f"http://{host}:{port}"


def clear_cache(server: Optional[str] = None):
    """Clear cache for a specific server or all servers."""
    if server:
        _list_tools_cache.pop(server, None)
    else:
        _list_tools_cache.clear()


def list_tools(server: str, refresh: bool = False) -> Dict[str, Any]:
    """
    Tools grouped by MCP server name, as served by /list_tools.

    Responses are reused for _CACHE_DURATION seconds. If the service cannot
    be reached and an older response exists, that response is returned.
    """
    entry = _list_tools_cache.get(server)
    now = time.time()
    if entry is not None and not refresh and now - entry[1] < _CACHE_DURATION:
        return entry[0]

    try:
        grouped = _get(server, "/list_tools", timeout=LIST_TIMEOUT)
    except requests.RequestException as e:
        if entry is None:
            raise
        logger.warning(f"list_tools failed ({e}), using response from {now - entry[1]:.0f}s ago")
        return entry[0]
    _list_tools_cache[server] = (grouped, now)
    return grouped


def _get(server: str, path: str, timeout: float = DEFAULT_TIMEOUT) -> Any:
    r = requests.get(f"{server.rstrip('/')}{path}", timeout=timeout)
    r.raise_for_status()
    return r.json()


def _post(server: str, path: str, payload: Optional[dict] = None) -> Any:
    r = requests.post(f"{server.rstrip('/')}{path}", json=payload or {}, timeout=DEFAULT_TIMEOUT)
    r.raise_for_status()
    return r.json()


def status(server: str) -> Dict[str, Any]:
    return _get(server, "/status")


def call_tool(server: str, name: str, args: Dict[str, Any], mcp_server: Optional[str] = None) -> Dict[str, Any]:
    """Returns {"result": text} or {"error": message}; HTTP error codes are not raised."""
    payload: Dict[str, Any] = {"name": name, "arguments": args}
    if mcp_server:
        payload["server"] = mcp_server
    r = requests.post(f"{server.rstrip('/')}/call_tool", json=payload, timeout=DEFAULT_TIMEOUT)
    return r.json()


def start(server: str, name: str) -> Dict[str, Any]:
    clear_cache(server)
    return _post(server, f"/start/{name}")


def stop(server: str, name: str) -> Dict[str, Any]:
    clear_cache(server)
    return _post(server, f"/stop/{name}")


def kill(server: str) -> Dict[str, Any]:
    clear_cache(server)
    return _post(server, "/kill")

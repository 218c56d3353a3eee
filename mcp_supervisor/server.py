#!/usr/bin/env python3
# server.py – aiohttp façade + CLI for the MCP supervisor
#
# CLI -----------------------------------------------------
#   mcp-supervisor serve                  [--port 5859]
#   mcp-supervisor status                 [--port 5859]
#   mcp-supervisor tools                  [--port 5859]
#   mcp-supervisor start NAME             [--port 5859]
#   mcp-supervisor stop  NAME             [--port 5859]
#   mcp-supervisor kill                   [--port 5859]
#   mcp-supervisor call TOOL [JSON] [--server NAME]
#   mcp-supervisor tools-dump FILE [NAME] [--port 5859]
# ---------------------------------------------------------
from __future__ import annotations

import argparse, asyncio, dataclasses, datetime, enum, functools, json, logging, signal, sys
from pathlib import Path
from typing import Any, Dict, Optional

import requests
import tiktoken
from aiohttp import web
from aiohttp_cors import setup as cors_setup, ResourceOptions

from . import client
from .config import Settings, JsonConfigStore, SETTINGS_FILE
from .errors import ExecutionFailed, ExecutionTimedOut, ToolNotFound
from .models import ServerConfig
from .process_tracker import ProcessTracker
from .supervisor import Supervisor, exponential_backoff, fixed_delay

logger = logging.getLogger(__name__)

LOG_FORMAT   = "[%(asctime)s] %(message)s"
LOG_DATEFMT  = "%H:%M:%S"
KILL_GRACE   = 0.1     # s – let the /kill response leave before shutting down
SHUTDOWN_MAX = 10      # s


# -------------------------------------------------------------------- JSON encoding
class MCPEncoder(json.JSONEncoder):
    def default(self, obj):
        # pydantic models (Tool, Resource)
        if hasattr(obj, "model_dump"):
            return obj.model_dump(by_alias=True)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        if dataclasses.is_dataclass(obj):
            return dataclasses.asdict(obj)
        if isinstance(obj, enum.Enum):
            return obj.value
        if isinstance(obj, datetime.datetime):
            return obj.isoformat()
        return super().default(obj)


def _dumps(obj) -> str:
    return json.dumps(obj, cls=MCPEncoder)


def _json(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def _error(message: str, status: int) -> web.Response:
    return _json({"success": False, "error": message}, status=status)


# -------------------------------------------------------------------- token counting
@functools.lru_cache(maxsize=1)
def _tokenizer():
    return tiktoken.get_encoding("cl100k_base")


@functools.lru_cache(maxsize=256)
def _count_tokens(schema_json: str) -> int:
    return len(_tokenizer().encode(schema_json))


def tools_info(sup: Supervisor, name: str) -> Dict[str, int]:
    """Tool count and token size of one server's tool schema."""
    tools = sup.tools_for_server(name)
    if not tools:
        return {"tool_count": 0, "token_count": 0}
    schema_json = json.dumps([t.to_dict() for t in tools])
    return {"tool_count": len(tools), "token_count": _count_tokens(schema_json)}


def status_report(sup: Supervisor) -> Dict[str, Any]:
    out = {}
    for status in sup.get_server_statuses():
        entry = status.to_dict()
        connection = sup.connections.get(status.name)
        entry["connected"] = sup.is_server_connected(status.name)
        entry["pid"]       = getattr(connection, "pid", None) if connection else None
        entry.update(tools_info(sup, status.name))
        out[status.name] = entry
    return out


def tools_report(sup: Supervisor) -> Dict[str, Any]:
    grouped = sup.get_tools_by_server()
    out = {}
    for status in sup.get_server_statuses():
        name = status.name
        if not sup.is_server_connected(name):
            out[name] = {"error": status.last_error or f"MCP state is {status.state.value}", "tools": []}
            continue
        out[name] = {"tools": [t.to_dict() for t in grouped.get(name, [])]}
    return out


# ==================================================================== aiohttp façade
def build_app(sup: Supervisor, stop_event: asyncio.Event) -> web.Application:
    app = web.Application()

    cors = cors_setup(app, defaults={
        "*": ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers="*",
            allow_methods="*"
        ),
    })

    app.router.add_get ("/status",        lambda r: _status(r, sup))
    app.router.add_get ("/tools",         lambda r: _tools(r, sup))
    app.router.add_get ("/list_tools",    lambda r: _tools(r, sup))
    app.router.add_post("/start/{n}",     lambda r: _start(r, sup))
    app.router.add_post("/stop/{n}",      lambda r: _stop(r, sup))
    app.router.add_post("/call_tool",     lambda r: _call(r, sup))
    app.router.add_post("/add_server",    lambda r: _add_server(r, sup))
    app.router.add_post("/delete_server", lambda r: _delete_server(r, sup))
    app.router.add_post("/kill",          lambda r: _kill(r, sup, stop_event))

    for route in list(app.router.routes()):
        cors.add(route)
    return app


async def _status(_, sup: Supervisor):
    return _json(status_report(sup))


async def _tools(req, sup: Supervisor):
    """Per-server tool listing, or `?format=openai[&sanitize=1]` for the function-call schema."""
    if req.query.get("format") == "openai":
        sanitize = req.query.get("sanitize", "").lower() in ("1", "true", "yes")
        return _json(sup.get_enabled_tools_as_function_schema(sanitize=sanitize))
    return _json(tools_report(sup))


async def _start(req, sup: Supervisor):
    name = req.match_info["n"]
    config = sup.get_config(name)
    if config is None:
        return _error(f"{name} unknown", 404)
    if not config.enabled:
        await sup.update_server_config(config.with_enabled(True))
    else:
        await sup.connect_to_server(config)
    return _json(status_report(sup))


async def _stop(req, sup: Supervisor):
    name = req.match_info["n"]
    if sup.get_config(name) is None:
        return _error(f"{name} unknown", 404)
    await sup.disconnect_server(name)
    return _json(status_report(sup))


async def _read_body(req) -> Optional[dict]:
    try:
        body = await req.json()
    except json.JSONDecodeError:
        return None
    return body if isinstance(body, dict) else None


async def _call(req, sup: Supervisor):
    body = await _read_body(req)
    if body is None:
        return _error("Invalid JSON body", 400)
    name = body.get("name")
    if not name:
        return _error("Tool name is required", 400)
    arguments = body.get("arguments") or {}
    if not isinstance(arguments, dict):
        return _error("arguments must be an object", 400)

    try:
        result = await sup.execute_tool(name, arguments, server=body.get("server"))
    except ToolNotFound as e:
        return _error(str(e), 404)
    except ExecutionTimedOut as e:
        return _error(str(e), 504)
    except ExecutionFailed as e:
        return _error(str(e), 502)
    return _json({"result": result})


def _parse_server_body(body: dict) -> ServerConfig:
    """
    Accepts `{"name": ..., "command": ...}`, the single-entry
    `{"mcpServers": {name: {...}}}` form, or either one as a JSON string in
    `jsonConfig`.
    """
    if isinstance(body.get("jsonConfig"), str):
        try:
            body = json.loads(body["jsonConfig"])
        except json.JSONDecodeError:
            raise ValueError("Invalid JSON in jsonConfig field") from None
        if not isinstance(body, dict):
            raise ValueError("jsonConfig must be an object")

    if isinstance(body.get("mcpServers"), dict):
        servers = body["mcpServers"]
        if len(servers) != 1:
            raise ValueError("When using mcpServers format, exactly one server must be provided")
        name, spec = next(iter(servers.items()))
    else:
        name = body.get("name")
        spec = body.get("config", body)

    if not name:
        raise ValueError("Server name is required")
    if not isinstance(spec, dict) or not spec.get("command"):
        raise ValueError("Server command is required")
    return ServerConfig.from_dict(name, spec)


async def _add_server(req, sup: Supervisor):
    body = await _read_body(req)
    if body is None:
        return _error("Invalid JSON body", 400)
    try:
        config = _parse_server_body(body)
    except ValueError as e:
        return _error(str(e), 400)
    if sup.get_config(config.name) is not None:
        return _error(f"Server '{config.name}' already exists", 409)

    await sup.add_server_config(config)
    logger.info(f"Added MCP server '{config.name}'")
    return _json({
        "success": True,
        "message": "Server added successfully",
        "server": {"name": config.name, "config": config.to_dict(),
                   "added_at": datetime.datetime.now().isoformat()},
        "status": sup.get_server_status(config.name),
    })


async def _delete_server(req, sup: Supervisor):
    body = await _read_body(req)
    if body is None:
        return _error("Invalid JSON body", 400)
    name = body.get("name")
    if not name:
        return _error("Server name is required", 400)
    config = sup.get_config(name)
    if config is None:
        return _error(f"Server '{name}' not found", 404)

    await sup.remove_server_config(config.id)
    logger.info(f"Deleted MCP server '{name}'")
    return _json({
        "success": True,
        "message": "Server deleted successfully",
        "server": {"name": name, "config": config.to_dict(),
                   "deleted_at": datetime.datetime.now().isoformat()},
    })


async def _kill(_, sup: Supervisor, stop_ev: asyncio.Event):
    async def delayed_shutdown():
        await asyncio.sleep(KILL_GRACE)
        await sup.aclose()
        stop_ev.set()

    asyncio.create_task(delayed_shutdown())
    return _json({"status": "shutting-down"})


# ==================================================================== runners
def build_supervisor(settings: Settings) -> Supervisor:
    tracker = ProcessTracker(Path(settings.process_file) if settings.process_file else None)
    store = JsonConfigStore(settings.config_path)
    return Supervisor(
        store.load(),
        config_store=store,
        process_tracker=tracker,
        retry_delay=exponential_backoff(settings.backoff_unit),
        reconnect_delay=fixed_delay(settings.reconnect_delay),
        max_attempts=settings.max_connect_attempts,
        handshake_timeout=settings.handshake_timeout,
        execution_timeout=settings.execution_timeout,
    )


async def run_serve(settings: Settings, port: Optional[int] = None):
    port = port or settings.port
    sup = build_supervisor(settings)
    sup.process_tracker.cleanup_orphaned_processes()

    stop_ev = asyncio.Event()
    runner = web.AppRunner(build_app(sup, stop_ev)); await runner.setup()
    site   = web.TCPSite(runner, "127.0.0.1", port); await site.start()
    logger.info(f"API http://127.0.0.1:{port}  – Ctrl-C to quit")

    # servers come up in the background so the API answers even if some fail
    connecting = asyncio.create_task(sup.connect_to_all_enabled_servers())

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_ev.set)

    await stop_ev.wait()
    logger.info("shutting down …")
    connecting.cancel()
    try:
        await asyncio.wait_for(sup.aclose(), timeout=SHUTDOWN_MAX)
    except asyncio.TimeoutError:
        logger.warning("Shutdown timed out, some MCP servers may still be running")
    await runner.cleanup()
    logger.info("Shutdown complete")


def client_call(port: int, verb: str, tgt: Optional[str] = None, arguments: Optional[str] = None,
                mcp_server: Optional[str] = None):
    url = client.server_url(port)
    try:
        if verb == "status":
            print(json.dumps(client.status(url), indent=2))
        elif verb == "tools":
            print(json.dumps(client.list_tools(url), indent=2))
        elif verb == "call":
            try:
                args = json.loads(arguments or "{}")
            except json.JSONDecodeError as e:
                raise SystemExit(f"arguments must be a JSON object: {e}")
            print(json.dumps(client.call_tool(url, tgt, args, mcp_server=mcp_server), indent=2))
        elif verb == "start":
            client.start(url, tgt)
        elif verb == "stop":
            client.stop(url, tgt)
        elif verb == "kill":
            client.kill(url)
        else:
            raise SystemExit(f"unknown verb {verb}")
    except requests.ConnectionError:
        print("Error: Could not connect to server (is it running?)")


def dump_tools(port: int, output_file: str, target: str = "all"):
    all_tools = client.list_tools(client.server_url(port), refresh=True)
    if target == "all":
        tools = all_tools
    else:
        tools = {target: all_tools.get(target, {"error": "Not found", "tools": []})}
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(tools, f, indent=2)
    print(f"Tools schema dumped to {output_file}")


# ==================================================================== CLI
def _parser():
    p = argparse.ArgumentParser(prog="mcp-supervisor")
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--settings", default=SETTINGS_FILE, help="TOML settings file ([mcp] table)")
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="cmd", required=True)
    sub.add_parser("serve"); sub.add_parser("status"); sub.add_parser("tools")
    sub.add_parser("kill")
    for v in ("start", "stop"):
        sc = sub.add_parser(v); sc.add_argument("target")
    call = sub.add_parser("call")
    call.add_argument("target", help="tool name")
    call.add_argument("arguments", nargs="?", default="{}", help="JSON object of tool arguments")
    call.add_argument("--server", dest="mcp_server", default=None, help="route to this MCP server")
    dump = sub.add_parser("tools-dump")
    dump.add_argument("output_file", help="Path to output JSON file")
    dump.add_argument("target", nargs="?", default="all", help="Optional: server name (default: all)")
    return p


def main(argv=None):
    a = _parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if a.verbose else logging.INFO,
                        format=LOG_FORMAT, datefmt=LOG_DATEFMT, stream=sys.stderr)
    settings = Settings.load(a.settings)
    port = a.port or settings.port

    if a.cmd == "serve":
        asyncio.run(run_serve(settings, port))
    elif a.cmd == "tools-dump":
        dump_tools(port, a.output_file, a.target)
    else:
        client_call(port, a.cmd, getattr(a, "target", None),
                    getattr(a, "arguments", None), getattr(a, "mcp_server", None))


if __name__ == "__main__":
    main()

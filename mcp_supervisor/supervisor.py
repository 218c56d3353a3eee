# supervisor.py – multi-server MCP orchestration (retry, auto-disable, reconnect, catalog)
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .connection import HANDSHAKE_TIMEOUT, Connection
from .errors import ExecutionFailed, ExecutionTimedOut, MCPError, ToolNotFound
from .models import ConnectionTerminated, ServerConfig, ServerState, ServerStatus, StderrAlert
from .process_tracker import ProcessTracker
from .protocol import Resource, Tool
from .schema import function_schema
from .timeout import with_timeout

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------- constants
MAX_CONNECT_ATTEMPTS = 3
BACKOFF_BASE         = 2
BACKOFF_UNIT         = 0.5     # s – first retry waits one unit
RECONNECT_DELAY      = 2       # s – after an unexpected process exit
EXECUTION_TIMEOUT    = 30      # s – tools/call deadline

RetryDelay      = Callable[[int], float]
ReconnectDelay  = Callable[[], float]
StatusListener  = Callable[[ServerStatus], Any]


def exponential_backoff(unit: float = BACKOFF_UNIT, base: float = BACKOFF_BASE) -> RetryDelay:
    """attempt (1-based) -> seconds to wait before the next attempt"""
    return lambda attempt: unit * base ** (attempt - 1)


def fixed_delay(seconds: float = RECONNECT_DELAY) -> ReconnectDelay:
    return lambda: seconds


class Supervisor:
    """
    Owns every Connection, keyed by server name.

    All mutation happens on the event loop that runs the Supervisor, so the
    catalog, status map and caches need no locking. Connections report
    unexpected exits through a queue drained by a single dispatcher task.
    """

    def __init__(self, configs: Iterable[ServerConfig] = (), *,
                 config_store: Any = None,
                 connection_factory: Optional[Callable[..., Connection]] = None,
                 process_tracker: Optional[ProcessTracker] = None,
                 retry_delay: Optional[RetryDelay] = None,
                 reconnect_delay: Optional[ReconnectDelay] = None,
                 max_attempts: int = MAX_CONNECT_ATTEMPTS,
                 handshake_timeout: float = HANDSHAKE_TIMEOUT,
                 execution_timeout: float = EXECUTION_TIMEOUT):
        self.config_store       = config_store
        self.connection_factory = connection_factory or Connection
        self.process_tracker    = process_tracker
        self.retry_delay        = retry_delay or exponential_backoff()
        self.reconnect_delay    = reconnect_delay or fixed_delay()
        self.max_attempts       = max(1, max_attempts)
        self.handshake_timeout  = handshake_timeout
        self.execution_timeout  = execution_timeout

        self.configs     : Dict[str, ServerConfig] = {}     # id -> config
        self.connections : Dict[str, Connection]   = {}     # name -> connection
        self.tools       : List[Tool]     = []
        self.resources   : List[Resource] = []
        self.discovering = False

        self._statuses   : Dict[str, ServerStatus] = {}
        self._listeners  : List[StatusListener] = []
        self._connecting : set = set()
        self._reconnects : Dict[str, asyncio.Task] = {}
        self._reconnect_again : set = set()
        self._closing    = False
        self._events     : asyncio.Queue = asyncio.Queue()
        self._dispatcher : Optional[asyncio.Task] = None

        self._enabled_tools    : Optional[List[Tool]] = None
        self._tool_lookup      : Dict[str, Tool] = {}
        self._function_schemas : Dict[bool, List[Dict[str, Any]]] = {}

        for config in configs:
            if self.get_config(config.name) is not None:
                raise ValueError(f"Duplicate MCP server name '{config.name}'")
            self.configs[config.id] = config
            self._statuses[config.name] = ServerStatus(
                config.id, config.name, ServerState.IDLE if config.enabled else ServerState.DISABLED)

    async def __aenter__(self) -> "Supervisor":
        self._ensure_dispatcher()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self._closing = True
        pending = [t for t in self._reconnects.values() if t is not asyncio.current_task()]
        for name in list(self._reconnects):
            self._cancel_reconnect(name)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.disconnect_all_servers()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatcher
            self._dispatcher = None

    # ================================================================ configs
    def get_config(self, name: str) -> Optional[ServerConfig]:
        for config in self.configs.values():
            if config.name == name:
                return config
        return None

    def _is_enabled(self, name: str) -> bool:
        config = self.get_config(name)
        return config is not None and config.enabled

    def _persist_configs(self) -> None:
        if self.config_store is None:
            return
        try:
            self.config_store.save(list(self.configs.values()))
        except OSError as e:
            logger.error(f"Failed to persist MCP server configs: {e}")

    async def add_server_config(self, config: ServerConfig) -> None:
        if self.get_config(config.name) is not None:
            raise ValueError(f"MCP server '{config.name}' already exists")
        self.configs[config.id] = config
        self._persist_configs()
        self._invalidate_caches()
        if config.enabled:
            self._set_status(config.name, ServerState.IDLE)
            await self.connect_to_server(config)
        else:
            self._set_status(config.name, ServerState.DISABLED)

    async def update_server_config(self, config: ServerConfig) -> None:
        old = self.configs.get(config.id)
        if old is None:
            logger.warning(f"Ignoring update for unknown MCP server config {config.id}")
            return
        clash = self.get_config(config.name)
        if clash is not None and clash.id != config.id:
            raise ValueError(f"MCP server '{config.name}' already exists")

        self.configs[config.id] = config
        self._persist_configs()
        self._invalidate_caches()
        renamed = old.name != config.name

        if old.enabled and not config.enabled:
            await self._disconnect(old.name, "disabled")
            if renamed:
                self._statuses.pop(old.name, None)
            self._set_status(config.name, ServerState.DISABLED)
        elif not old.enabled and config.enabled:
            if renamed:
                self._statuses.pop(old.name, None)
            self._set_status(config.name, ServerState.IDLE)
            await self.connect_to_server(config)
        elif config.enabled and old.launch_signature() != config.launch_signature():
            logger.info(f"{old.name}: launch parameters changed, restarting")
            await self._disconnect(old.name, "config changed")
            if renamed:
                self._statuses.pop(old.name, None)
            await self.connect_to_server(config, auto_disable=False)
        else:
            if renamed:
                self._statuses.pop(old.name, None)
            if config.enabled:
                self._refresh_status(config.name)
            else:
                self._set_status(config.name, ServerState.DISABLED)

    async def remove_server_config(self, config_id: str) -> None:
        config = self.configs.pop(config_id, None)
        if config is None:
            logger.warning(f"Ignoring removal of unknown MCP server config {config_id}")
            return
        self._persist_configs()
        await self._disconnect(config.name, "removed")
        self._invalidate_caches()
        self._statuses.pop(config.name, None)
        logger.info(f"{config.name}: removed")

    # ================================================================ connect / disconnect
    async def connect_to_server(self, config: ServerConfig, auto_disable: bool = True) -> bool:
        """
        Connect and discover, retrying with backoff. Returns True once the
        server is connected; failures end up in the server's status rather
        than being raised.
        """
        if self._closing:
            logger.debug(f"{config.name}: supervisor is closing, not connecting")
            return False
        self._ensure_dispatcher()
        name = config.name
        if config.id not in self.configs:
            if self.get_config(name) is not None:
                logger.warning(f"{name}: a different config already uses this name, not connecting")
                return False
            self.configs[config.id] = config

        if not config.enabled:
            self._set_status(name, ServerState.DISABLED)
            return False

        existing = self.connections.get(name)
        if existing is not None and existing.is_connected:
            if not self.tools_for_server(name):
                await self.discover_tools(name)
            else:
                self._set_status(name, ServerState.CONNECTED)
            return True

        if name in self._connecting:
            logger.info(f"{name}: connect already in progress")
            return False
        self._connecting.add(name)
        try:
            return await self._connect_with_retry(config, auto_disable)
        finally:
            self._connecting.discard(name)

    async def _connect_with_retry(self, config: ServerConfig, auto_disable: bool) -> bool:
        name = config.name
        stale = self.connections.pop(name, None)
        if stale is not None:
            await stale.disconnect("replaced")

        self._set_status(name, ServerState.CONNECTING)
        last_error = "unknown error"
        for attempt in range(1, self.max_attempts + 1):
            connection = self._new_connection(config)
            self.connections[name] = connection
            try:
                await connection.connect()
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning(f"{name}: connect attempt {attempt}/{self.max_attempts} failed: {last_error}")
                await connection.disconnect("connect attempt failed")
                if self.connections.get(name) is connection:
                    del self.connections[name]
                if self._abandoned(config):
                    return False
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay(attempt))
                    if self._abandoned(config):
                        return False
                    if not self._is_enabled(name):
                        logger.info(f"{name}: disabled while retrying, giving up")
                        self._set_status(name, ServerState.DISABLED)
                        return False
                continue

            if self._abandoned(config) or self.connections.get(name) is not connection:
                await connection.disconnect("abandoned")
                if self.connections.get(name) is connection:
                    del self.connections[name]
                return False
            self._set_status(name, ServerState.CONNECTED)
            await self.discover_tools(name)
            logger.info(f"{name}: connected after {attempt} attempt(s)")
            return True

        self._give_up(config, last_error, auto_disable)
        return False

    def _abandoned(self, config: ServerConfig) -> bool:
        """True once the supervisor is closing or the config was removed mid-connect."""
        if self._closing:
            logger.debug(f"{config.name}: supervisor closing, stopping connect")
            return True
        if config.id not in self.configs:
            logger.info(f"{config.name}: removed while connecting, giving up")
            return True
        return False

    def _give_up(self, config: ServerConfig, last_error: str, auto_disable: bool) -> None:
        name = config.name
        self.connections.pop(name, None)
        self._strip_catalog(name)
        self._invalidate_caches()
        if config.id not in self.configs:
            return
        self._set_status(name, ServerState.ERROR, last_error)
        logger.error(f"{name}: giving up after {self.max_attempts} attempts: {last_error}")
        if not auto_disable:
            return

        disabled = self.configs[config.id].with_enabled(False)
        self.configs[disabled.id] = disabled
        self._persist_configs()
        self._invalidate_caches()
        self._set_status(name, ServerState.DISABLED, last_error)
        logger.warning(f"{name}: auto-disabled")

    def _new_connection(self, config: ServerConfig) -> Connection:
        return self.connection_factory(
            config, self._events,
            process_tracker=self.process_tracker,
            handshake_timeout=self.handshake_timeout,
        )

    async def disconnect_server(self, name: str) -> None:
        await self._disconnect(name, "disconnected")
        if self.get_config(name) is not None:
            self._set_status(name, ServerState.IDLE if self._is_enabled(name) else ServerState.DISABLED)

    async def _disconnect(self, name: str, reason: str) -> None:
        self._cancel_reconnect(name)
        connection = self.connections.pop(name, None)
        if connection is not None:
            await connection.disconnect(reason)
        self._strip_catalog(name)
        self._invalidate_caches()

    async def connect_to_all_enabled_servers(self) -> None:
        enabled = [c for c in self.configs.values() if c.enabled]
        await asyncio.gather(*(self.connect_to_server(c) for c in enabled))

    async def disconnect_all_servers(self) -> None:
        for name in list(self.connections):
            await self.disconnect_server(name)

    # ================================================================ events
    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_events(), name="mcp-supervisor-events")

    async def _dispatch_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                if isinstance(event, ConnectionTerminated):
                    self._on_terminated(event)
                elif isinstance(event, StderrAlert):
                    self._on_stderr_alert(event)
            except Exception:
                logger.exception(f"Failed to handle {event!r}")

    def _on_terminated(self, event: ConnectionTerminated) -> None:
        name = event.server_name
        if self.connections.get(name) is not event.connection:
            logger.debug(f"{name}: ignoring termination of a stale connection")
            return
        del self.connections[name]
        self._strip_catalog(name)
        self._invalidate_caches()

        if not self._is_enabled(name):
            self._set_status(name, ServerState.DISABLED, event.reason)
            return
        self._set_status(name, ServerState.RECONNECTING, event.reason)
        self._schedule_reconnect(name)

    def _on_stderr_alert(self, event: StderrAlert) -> None:
        name = event.server_name
        if self.connections.get(name) is not event.connection:
            return
        status = self._statuses.get(name)
        if status is not None:
            self._set_status(name, status.state, event.message)

    def _schedule_reconnect(self, name: str) -> None:
        if self._closing:
            return
        task = self._reconnects.get(name)
        if task is not None and not task.done():
            # the running reconnect picks this up once its connect returns
            self._reconnect_again.add(name)
            return
        delay = self.reconnect_delay()
        logger.info(f"{name}: reconnecting in {delay:g}s …")
        self._reconnects[name] = asyncio.create_task(self._reconnect_later(name, delay), name=f"mcp-reconnect:{name}")

    async def _reconnect_later(self, name: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            config = self.get_config(name)
            if config is None:
                return
            if not config.enabled:
                self._set_status(name, ServerState.DISABLED)
                return
            self._reconnect_again.discard(name)
            await self.connect_to_server(config, auto_disable=False)
        finally:
            if self._reconnects.get(name) is asyncio.current_task():
                del self._reconnects[name]
                if name in self._reconnect_again:
                    self._reconnect_again.discard(name)
                    if name not in self.connections and self._is_enabled(name):
                        self._schedule_reconnect(name)

    def _cancel_reconnect(self, name: str) -> None:
        self._reconnect_again.discard(name)
        task = self._reconnects.pop(name, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ================================================================ discovery
    async def _collect(self, connection: Connection) -> Tuple[List[Tool], List[Resource]]:
        tools, resources = await asyncio.gather(
            self._fetch(connection, "tools"),
            self._fetch(connection, "resources"),
        )
        return tools, resources

    async def _fetch(self, connection: Connection, what: str) -> list:
        try:
            if what == "tools":
                return await connection.list_tools()
            return await connection.list_resources()
        except MCPError as e:
            logger.warning(f"{connection.name}: failed to list {what}: {e}")
            return []

    def _apply_discovery(self, name: str, tools: List[Tool], resources: List[Resource]) -> None:
        self._strip_catalog(name)
        self.tools.extend(tools)
        self.resources.extend(resources)
        logger.info(f"{name}: discovered {len(tools)} tool(s), {len(resources)} resource(s)")

    async def discover_tools(self, name: str) -> None:
        connection = self.connections.get(name)
        if connection is None or not connection.is_connected:
            logger.warning(f"{name}: not connected, skipping discovery")
            return
        tools, resources = await self._collect(connection)
        if self.connections.get(name) is not connection:
            logger.info(f"{name}: connection replaced during discovery, discarding results")
            return
        self._apply_discovery(name, tools, resources)
        self._invalidate_caches()
        self._refresh_status(name)

    async def discover_all_tools(self) -> None:
        targets = [(name, c) for name, c in self.connections.items() if c.is_connected]
        self.discovering = True
        try:
            results = await asyncio.gather(*(self._collect(c) for _, c in targets))
        finally:
            self.discovering = False

        for (name, connection), (tools, resources) in zip(targets, results):
            if self.connections.get(name) is connection:
                self._apply_discovery(name, tools, resources)
        self._invalidate_caches()
        for name, _ in targets:
            if name in self.connections:
                self._refresh_status(name)

    def _strip_catalog(self, name: str) -> None:
        self.tools     = [t for t in self.tools if t.server_name != name]
        self.resources = [r for r in self.resources if r.server_name != name]

    # ================================================================ tool access
    def _invalidate_caches(self) -> None:
        self._enabled_tools    = None
        self._tool_lookup      = {}
        self._function_schemas = {}

    def _rebuild_caches(self) -> None:
        enabled = {c.name for c in self.configs.values() if c.enabled}
        tools   = [t for t in self.tools if t.server_name in enabled]
        lookup: Dict[str, Tool] = {}
        for tool in tools:
            previous = lookup.get(tool.name)
            if previous is not None and previous.server_name != tool.server_name:
                logger.warning(f"Tool name collision: '{tool.name}' from {tool.server_name} "
                               f"shadows the one from {previous.server_name}")
            lookup[tool.name] = tool
        self._enabled_tools = tools
        self._tool_lookup   = lookup

    def get_enabled_tools(self) -> List[Tool]:
        if self._enabled_tools is None:
            self._rebuild_caches()
        return list(self._enabled_tools)

    def get_enabled_tools_as_function_schema(self, sanitize: bool = False) -> List[Dict[str, Any]]:
        if sanitize not in self._function_schemas:
            self._function_schemas[sanitize] = function_schema(self.get_enabled_tools(), sanitize=sanitize)
        return self._function_schemas[sanitize]

    def get_tools_by_server(self) -> Dict[str, List[Tool]]:
        """Catalog grouped by server name; servers without tools are absent."""
        grouped: Dict[str, List[Tool]] = {}
        for tool in self.tools:
            grouped.setdefault(tool.server_name, []).append(tool)
        return grouped

    def get_resources_by_server(self) -> Dict[str, List[Resource]]:
        grouped: Dict[str, List[Resource]] = {}
        for resource in self.resources:
            grouped.setdefault(resource.server_name, []).append(resource)
        return grouped

    def tools_for_server(self, name: str) -> List[Tool]:
        return [t for t in self.tools if t.server_name == name]

    def resources_for_server(self, name: str) -> List[Resource]:
        return [r for r in self.resources if r.server_name == name]

    def _resolve_tool(self, name: str, server: Optional[str]) -> Optional[Tool]:
        if server is not None:
            if not self._is_enabled(server):
                return None
            for tool in self.tools:
                if tool.server_name == server and tool.name == name:
                    return tool
            return None

        self.get_enabled_tools()
        tool = self._tool_lookup.get(name)
        if tool is not None:
            return tool
        # stale cache: fall back to the catalog itself, last registration wins
        for candidate in reversed(self.tools):
            if candidate.name == name and self._is_enabled(candidate.server_name):
                return candidate
        return None

    async def execute_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None,
                           server: Optional[str] = None) -> str:
        tool = self._resolve_tool(name, server)
        if tool is None:
            raise ToolNotFound(name)
        connection = self.connections.get(tool.server_name)
        if connection is None or not connection.is_connected:
            raise ToolNotFound(name)

        logger.info(f"{tool.server_name}: calling tool '{name}' (timeout {self.execution_timeout:g}s)")
        try:
            return await with_timeout(connection.call_tool(name, arguments or {}),
                                      self.execution_timeout, tool=name)
        except ExecutionTimedOut:
            logger.warning(f"{tool.server_name}: tool '{name}' timed out")
            raise
        except Exception as e:
            logger.warning(f"{tool.server_name}: tool '{name}' failed: {e}")
            raise ExecutionFailed(name, str(e) or e.__class__.__name__) from e

    # ================================================================ status
    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def _set_status(self, name: str, state: ServerState, last_error: Optional[str] = None) -> None:
        config = self.get_config(name)
        previous = self._statuses.get(name)
        status = ServerStatus(
            config_id=config.id if config else (previous.config_id if previous else ""),
            name=name,
            state=state,
            last_error=last_error,
            tools_count=len(self.tools_for_server(name)),
        )
        self._statuses[name] = status
        if previous is None or previous.state != state:
            logger.info(f"{name}: {state.value}" + (f" ({last_error})" if last_error else ""))
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception(f"Status listener failed for {name}")

    def _refresh_status(self, name: str) -> None:
        current = self._statuses.get(name)
        if current is None:
            state = ServerState.IDLE if self._is_enabled(name) else ServerState.DISABLED
            self._set_status(name, state)
        else:
            self._set_status(name, current.state, current.last_error)

    def get_server_status(self, name: str) -> Optional[ServerStatus]:
        return self._statuses.get(name)

    def get_server_statuses(self) -> List[ServerStatus]:
        return list(self._statuses.values())

    def is_server_connected(self, name: str) -> bool:
        connection = self.connections.get(name)
        return connection is not None and connection.is_connected

    def get_connected_server_count(self) -> int:
        return sum(1 for c in self.connections.values() if c.is_connected)

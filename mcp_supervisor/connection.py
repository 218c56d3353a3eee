# connection.py – one MCP server subprocess: spawn, handshake, JSON-RPC over stdio
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import ExecutionTimedOut, InitializationFailed, NotConnected
from .executable import build_environment, find_executable
from .models import ConnectionTerminated, ServerConfig, StderrAlert
from .process_tracker import ProcessTracker
from .protocol import (JSONRPCResponse, Resource, Tool, decode_message, encode_notification,
                       encode_request, initialize_params, parse_resources, parse_tools,
                       render_tool_result)
from .timeout import with_timeout

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------- constants
HANDSHAKE_TIMEOUT = 5          # s – initialize + initialized
TERMINATE_GRACE   = 5          # s – SIGTERM → SIGKILL
STDOUT_CHUNK      = 64 * 1024
STREAM_LIMIT      = 1024 * 1024
EXIT_DRAIN        = 0.5        # s – let stdout drain after the process exits
STDERR_KEYWORDS   = ("error", "failed")


class Connection:
    """
    Owns exactly one MCP server subprocess and correlates JSON-RPC requests
    with their responses by id.

    Asynchronous failures (the process exiting on its own, suspicious stderr
    output) are posted as events on `events`; the Connection never calls
    back into whoever owns it.
    """

    def __init__(self, config: ServerConfig, events: Optional[asyncio.Queue] = None, *,
                 process_tracker: Optional[ProcessTracker] = None,
                 handshake_timeout: float = HANDSHAKE_TIMEOUT,
                 terminate_grace: float = TERMINATE_GRACE):
        self.config    = config.snapshot()
        self.events    = events
        self.tracker   = process_tracker
        self.handshake_timeout = handshake_timeout
        self.terminate_grace   = terminate_grace

        self.connected   = False
        self.pid         : Optional[int] = None
        self.server_info : Dict[str, Any] = {}

        self._proc         : Optional[asyncio.subprocess.Process] = None
        self._stdout_task  : Optional[asyncio.Task] = None
        self._stderr_task  : Optional[asyncio.Task] = None
        self._exit_watcher : Optional[asyncio.Task] = None
        self._request_id   = 0
        self._pending      : Dict[int, asyncio.Future] = {}
        self._buffer       = bytearray()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_connected(self) -> bool:
        return self.connected and self._proc is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def __repr__(self) -> str:
        return f"<Connection {self.name} connected={self.connected} pid={self.pid}>"

    # ================================================================ lifecycle
    async def connect(self) -> None:
        if self._proc is not None:
            await self.disconnect("reconnecting")

        executable = await find_executable(self.config.command)
        env = build_environment(self.config.env)
        logger.info(f"{self.name}: launching {executable} {' '.join(self.config.args)}".rstrip())
        try:
            proc = await asyncio.create_subprocess_exec(
                executable, *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LIMIT,
                start_new_session=True,
            )
        except OSError as e:
            raise InitializationFailed(f"Failed to start process: {e}") from e

        self._proc = proc
        self.pid   = proc.pid
        if self.tracker is not None:
            self.tracker.register(self.name, proc.pid)

        self._stdout_task  = asyncio.create_task(self._read_stdout(proc), name=f"mcp-stdout:{self.name}")
        self._stderr_task  = asyncio.create_task(self._read_stderr(proc), name=f"mcp-stderr:{self.name}")
        self._exit_watcher = asyncio.create_task(self._watch_exit(proc), name=f"mcp-exit:{self.name}")

        try:
            await with_timeout(self._handshake(), self.handshake_timeout)
        except ExecutionTimedOut:
            await self.disconnect("handshake timed out")
            raise InitializationFailed(f"handshake timed out after {self.handshake_timeout:g}s") from None
        except (Exception, asyncio.CancelledError):
            await self.disconnect("handshake failed")
            raise

        self.connected = True
        logger.info(f"{self.name} ↑ (pid {proc.pid})")

    async def _handshake(self) -> None:
        try:
            response = await self.send_request("initialize", initialize_params())
        except NotConnected as e:
            raise InitializationFailed(str(e)) from e
        if response.error is not None:
            raise InitializationFailed(response.error.message)
        if isinstance(response.result, dict):
            info = response.result.get("serverInfo")
            self.server_info = info if isinstance(info, dict) else {}
        await self.send_notification("notifications/initialized")

    async def disconnect(self, reason: str = "connection closed") -> None:
        """Tear everything down. Safe to call any number of times."""
        proc, self._proc = self._proc, None
        self.connected = False

        current = asyncio.current_task()
        readers = [t for t in (self._stdout_task, self._stderr_task) if t is not None]
        self._stdout_task = self._stderr_task = None
        for task in readers:
            if task is not current:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        self._fail_pending(reason)
        self._buffer.clear()

        if proc is not None:
            await self._terminate(proc)
            if self.tracker is not None:
                self.tracker.unregister(self.name)
            logger.info(f"{self.name} ↓ ({reason})")
        self.pid = None

        watcher, self._exit_watcher = self._exit_watcher, None
        if watcher is not None and watcher is not current:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace)
            except asyncio.TimeoutError:
                logger.warning(f"{self.name}: pid {proc.pid} ignored SIGTERM, killing")
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass  # already gone
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(NotConnected(f"Not connected to MCP server ({reason})"))

    # ================================================================ requests
    async def send_request(self, method: str, params: Optional[Dict[str, Any]] = None) -> JSONRPCResponse:
        """
        Send one request and wait for the response carrying the same id.

        The returned response may hold a protocol-level `error`; interpreting
        it is up to the caller. There is no per-request deadline here.
        """
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise NotConnected()

        self._request_id += 1
        request_id = self._request_id
        payload = encode_request(request_id, method, params)

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._write(payload)
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def send_notification(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        await self._write(encode_notification(method, params))

    async def _write(self, payload: bytes) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.stdin.is_closing():
            raise NotConnected()
        try:
            proc.stdin.write(payload)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise NotConnected(f"Failed to write to MCP server: {e}") from e

    # ================================================================ discovery / calls
    async def list_tools(self) -> List[Tool]:
        return parse_tools(await self.send_request("tools/list"), self.name)

    async def list_resources(self) -> List[Resource]:
        return parse_resources(await self.send_request("resources/list"), self.name)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        response = await self.send_request("tools/call", {"name": name, "arguments": arguments or {}})
        return render_tool_result(response)

    # ================================================================ inbound
    def handle_data(self, data: bytes) -> None:
        """Append stdout bytes and dispatch every complete line."""
        self._buffer.extend(data)
        while True:
            end = self._buffer.find(b"\n")
            if end < 0:
                return
            line = bytes(self._buffer[:end]).strip()
            del self._buffer[:end + 1]
            if line:
                self._process_message(line)

    def _process_message(self, line: bytes) -> None:
        try:
            message = decode_message(line)
        except ValidationError:
            logger.warning(f"{self.name}: dropping unparseable line: {line[:200]!r}")
            return

        if message.method is not None:
            logger.debug(f"{self.name}: ignoring server message {message.method}")
            return
        if message.id is None:
            logger.warning(f"{self.name}: dropping response without id")
            return

        future = self._pending.pop(message.id, None)
        if future is None:
            logger.warning(f"{self.name}: dropping response for unknown request id {message.id!r}")
            return
        if not future.done():
            future.set_result(message)

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        while True:
            chunk = await proc.stdout.read(STDOUT_CHUNK)
            if not chunk:
                return
            self.handle_data(chunk)

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        while True:
            try:
                raw = await proc.stderr.readline()
            except ValueError:
                logger.warning(f"{self.name}: stderr line over {STREAM_LIMIT} bytes dropped")
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            logger.info(f"[{self.name}:stderr] {line}")
            lowered = line.lower()
            if any(word in lowered for word in STDERR_KEYWORDS):
                self._post(StderrAlert(self.name, line, self))

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        returncode = await proc.wait()
        if proc is not self._proc:
            return
        stdout_task = self._stdout_task
        if stdout_task is not None:
            await asyncio.wait({stdout_task}, timeout=EXIT_DRAIN)
        if proc is not self._proc:
            return

        was_connected = self.connected
        reason = f"process exited with code {returncode}"
        logger.warning(f"{self.name}: {reason}")
        await self.disconnect(reason)
        if was_connected:
            self._post(ConnectionTerminated(self.name, reason, self))

    def _post(self, event: Any) -> None:
        if self.events is not None:
            self.events.put_nowait(event)

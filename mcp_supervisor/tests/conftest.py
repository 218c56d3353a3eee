"""Shared fixtures: a scripted stand-in for Connection and the fake MCP server script."""

import asyncio
import sys
from pathlib import Path

import pytest

from mcp_supervisor.errors import InitializationFailed
from mcp_supervisor.models import ConnectionTerminated, ServerConfig
from mcp_supervisor.protocol import Resource, Tool

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_mcp_server.py"


def make_tool(name, server="", description=None, properties=None):
    return Tool(
        name=name,
        description=description or f"{name} tool",
        input_schema={"type": "object", "properties": properties or {}},
        server_name=server,
    )


def make_resource(uri, server=""):
    return Resource(uri=uri, name=uri.rsplit("/", 1)[-1], server_name=server)


class StubConnection:
    """Behaves like Connection, driven by a StubBackend instead of a subprocess."""

    def __init__(self, backend, config, events, **kwargs):
        self.backend   = backend
        self.config    = config
        self.events    = events
        self.kwargs    = kwargs
        self.connected = False
        self.pid       = 4242
        self.disconnect_reasons = []

    @property
    def name(self):
        return self.config.name

    @property
    def is_connected(self):
        return self.connected

    async def connect(self):
        self.backend.connect_calls.append(self.name)
        if self.backend.connect_delay:
            await asyncio.sleep(self.backend.connect_delay)
        remaining = self.backend.failures.get(self.name, 0)
        if remaining:
            self.backend.failures[self.name] = remaining - 1
            raise InitializationFailed(f"{self.name} refused to start")
        self.connected = True

    async def disconnect(self, reason="connection closed"):
        self.connected = False
        self.disconnect_reasons.append(reason)

    async def list_tools(self):
        error = self.backend.tool_errors.get(self.name)
        if error is not None:
            raise error
        return [make_tool(n, self.name) for n in self.backend.tools.get(self.name, [])]

    async def list_resources(self):
        return [make_resource(u, self.name) for u in self.backend.resources.get(self.name, [])]

    async def call_tool(self, name, arguments):
        self.backend.calls.append((self.name, name, arguments))
        handler = self.backend.handlers.get(name)
        if handler is not None:
            return await handler(self.name, arguments)
        return f"{self.name}:{name}"

    def crash(self, reason="process exited with code 1"):
        self.connected = False
        self.events.put_nowait(ConnectionTerminated(self.name, reason, self))


class StubBackend:
    def __init__(self):
        self.failures      = {}    # name -> number of connect() calls that fail
        self.tools         = {}    # name -> [tool names]
        self.resources     = {}    # name -> [uris]
        self.tool_errors   = {}    # name -> exception raised by list_tools
        self.handlers      = {}    # tool name -> async (server, args) -> str
        self.connect_delay = 0
        self.connect_calls = []
        self.calls         = []
        self.instances     = []

    def factory(self, config, events, **kwargs):
        connection = StubConnection(self, config, events, **kwargs)
        self.instances.append(connection)
        return connection

    def latest(self, name):
        return [c for c in self.instances if c.name == name][-1]


@pytest.fixture
def backend():
    return StubBackend()


@pytest.fixture
def fake_server_config():
    def build(mode="normal", name="fake"):
        return ServerConfig(name=name, command=sys.executable, args=[str(FAKE_SERVER), mode])
    return build

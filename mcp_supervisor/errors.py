# errors.py – error taxonomy shared by the connection and supervisor layers
from __future__ import annotations

from typing import Optional


class MCPError(Exception):
    """Base class for everything the MCP layer raises on purpose."""


class ExecutableNotFound(MCPError):
    def __init__(self, command: str, searched: Optional[list] = None):
        self.command  = command
        self.searched = searched or []
        where = f" (searched: {', '.join(self.searched)})" if self.searched else ""
        super().__init__(f"Could not find executable '{command}'{where}")


class NotConnected(MCPError):
    def __init__(self, message: str = "Not connected to MCP server"):
        super().__init__(message)


class EncodingFailed(MCPError):
    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__(f"Failed to encode request{': ' + reason if reason else ''}")


class InitializationFailed(MCPError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to initialize MCP server: {reason}")


class InvalidResponse(MCPError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid response from MCP server: {reason}")


class ExecutionTimedOut(MCPError):
    def __init__(self, timeout: float, tool: Optional[str] = None):
        self.timeout = timeout
        self.tool    = tool
        subject = f"Tool '{tool}'" if tool else "Operation"
        super().__init__(f"{subject} timed out after {timeout:g}s")


class ExecutionFailed(MCPError):
    def __init__(self, tool: str, reason: str):
        self.tool   = tool
        self.reason = reason
        super().__init__(f"Failed to execute tool '{tool}': {reason}")


class ToolNotFound(MCPError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool '{name}' not found or server not connected")

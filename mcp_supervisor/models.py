"""
Data models for the MCP supervisor: server launch recipes, derived status
snapshots and the events a Connection posts to its owner.
"""
from __future__ import annotations

import datetime
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass
class ServerConfig:
    """Identity and launch recipe for one MCP server"""
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def launch_signature(self) -> tuple:
        """Everything that forces a restart when it changes under a live connection."""
        return (self.name, self.command, tuple(self.args), tuple(sorted(self.env.items())))

    def with_enabled(self, enabled: bool) -> "ServerConfig":
        return replace(self, enabled=enabled)

    def snapshot(self) -> "ServerConfig":
        return replace(self, args=list(self.args), env=dict(self.env))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, name: str, spec: Dict[str, Any]) -> "ServerConfig":
        enabled = spec.get("enabled")
        if enabled is None:
            enabled = not spec.get("disabled", False)
        kwargs = {}
        if spec.get("id"):
            kwargs["id"] = str(spec["id"])
        return cls(
            name=name,
            command=spec.get("command", ""),
            args=[str(a) for a in spec.get("args", [])],
            env={str(k): str(v) for k, v in (spec.get("env") or {}).items()},
            enabled=bool(enabled),
            **kwargs,
        )


class ServerState(Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class ServerStatus:
    """Projection of one server's state for observers; never the source of truth"""
    config_id: str
    name: str
    state: ServerState
    last_error: Optional[str] = None
    tools_count: int = 0
    last_updated: datetime.datetime = field(default_factory=datetime.datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.config_id,
            "name": self.name,
            "state": self.state.value,
            "last_error": self.last_error,
            "tools_count": self.tools_count,
            "last_updated": self.last_updated.isoformat(),
        }


# -------------------------------------------------------------------- connection events
@dataclass(frozen=True)
class ConnectionTerminated:
    server_name: str
    reason: str
    connection: Any = field(compare=False, repr=False)


@dataclass(frozen=True)
class StderrAlert:
    server_name: str
    message: str
    connection: Any = field(compare=False, repr=False)

# config.py – settings.toml loading and the mcp_servers.json config store
from __future__ import annotations

import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from .models import ServerConfig

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.toml"
CONF_PATH     = Path("mcp_servers.json")
DEFAULT_PORT  = 5859


@dataclasses.dataclass
class Settings:
    config_path: str = str(CONF_PATH)
    port: int = DEFAULT_PORT
    handshake_timeout: float = 5.0
    execution_timeout: float = 30.0
    max_connect_attempts: int = 3
    reconnect_delay: float = 2.0
    backoff_unit: float = 0.5
    process_file: Optional[str] = None

    @classmethod
    def load(cls, settings_file: str = SETTINGS_FILE) -> "Settings":
        """Read the [mcp] table of a TOML settings file. Missing or broken files fall back to defaults."""
        try:
            with open(settings_file, "r", encoding="utf-8") as f:
                data = toml.load(f)
        except FileNotFoundError:
            logger.warning(f"Settings file {settings_file} not found. Using defaults.")
            return cls()
        except toml.TomlDecodeError as e:
            logger.error(f"Error parsing {settings_file}: {e}")
            return cls()
        return cls.from_dict(data.get("mcp", {}))

    @classmethod
    def from_dict(cls, section: Dict[str, Any]) -> "Settings":
        known = {f.name: f for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in section.items():
            if key not in known:
                logger.warning(f"Unknown [mcp] setting '{key}' ignored")
                continue
            kwargs[key] = value
        return cls(**kwargs)


class JsonConfigStore:
    """
    Reads and writes the `{"mcpServers": {name: {...}}}` document.

    Entries are `command`, `args`, `env`, `enabled` and `id`; a legacy
    `"disabled": true` is still honoured on load.
    """

    def __init__(self, path: os.PathLike = CONF_PATH):
        self.path = Path(path)

    def load(self) -> List[ServerConfig]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            logger.warning(f"{self.path} not found, starting with no MCP servers")
            return []
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {self.path}: {e}")
            return []

        servers = data.get("mcpServers", {}) if isinstance(data, dict) else {}
        configs = []
        for name, spec in servers.items():
            if not isinstance(spec, dict) or not spec.get("command"):
                logger.warning(f"Skipping MCP server '{name}': no command")
                continue
            configs.append(ServerConfig.from_dict(name, spec))
        return configs

    def save(self, configs: List[ServerConfig]) -> None:
        document = {"mcpServers": {c.name: c.to_dict() for c in configs}}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(document, indent=2))
        os.replace(tmp, self.path)

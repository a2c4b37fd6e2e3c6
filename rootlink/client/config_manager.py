"""
Client state file for Rootlink

Handles ~/.rootlink.conf, which remembers the relay the user last talked
to and the last tunnel id it issued.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import aiofiles

from ..core.config import DEFAULT_SERVER_URL

logger = logging.getLogger(__name__)


@dataclass
class StoredConfig:
    """Remembered client settings"""

    server_url: str = DEFAULT_SERVER_URL
    tunnel_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoredConfig":
        """Create config from dictionary, ignoring unknown keys"""
        return cls(
            server_url=data.get("server_url") or DEFAULT_SERVER_URL,
            tunnel_id=data.get("tunnel_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_url": self.server_url,
            "tunnel_id": self.tunnel_id,
        }


class ConfigManager:
    """Manages the client state file"""

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize config manager

        Args:
            config_path: Path to config file. Defaults to ~/.rootlink.conf
        """
        if config_path is None:
            config_path = Path.home() / ".rootlink.conf"

        self.config_path = config_path
        self._config: Optional[StoredConfig] = None

    async def load(self) -> StoredConfig:
        """Load configuration from file

        A missing or unreadable file yields the defaults.
        """
        if self._config is not None:
            return self._config

        if not self.config_path.exists():
            self._config = StoredConfig()
            return self._config

        try:
            async with aiofiles.open(self.config_path, "r") as f:
                data = json.loads(await f.read())
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
            self._config = StoredConfig.from_dict(data)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable {self.config_path}: {e}")
            self._config = StoredConfig()

        return self._config

    async def save(self) -> None:
        """Save configuration to file with owner-only permissions"""
        if self._config is None:
            return

        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(self.config_path, "w") as f:
            await f.write(json.dumps(self._config.to_dict(), indent=2))

        os.chmod(self.config_path, 0o600)

    async def get_server_url(self) -> str:
        config = await self.load()
        return config.server_url

    async def set_server_url(self, url: str) -> None:
        config = await self.load()
        config.server_url = url
        await self.save()

    async def get_tunnel_id(self) -> Optional[str]:
        config = await self.load()
        return config.tunnel_id

    async def set_tunnel_id(self, tunnel_id: str) -> None:
        config = await self.load()
        config.tunnel_id = tunnel_id
        await self.save()


# Global config manager instance
config_manager = ConfigManager()

"""
Persistent client settings for sshwire.
Stored in ~/.sshwire/config.yaml
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# Default config location
DEFAULT_CONFIG_DIR = Path.home() / ".sshwire"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_KNOWN_HOSTS = str(Path.home() / ".ssh" / "known_hosts")


@dataclass
class ClientSettings:
    """
    Client defaults that persist across processes.
    """
    # Agent
    known_hosts_path: Optional[str] = DEFAULT_KNOWN_HOSTS
    use_system_agent: bool = True
    identities: list[str] = field(default_factory=list)

    # Session defaults, e.g. {"strict-host-key-checking": "no"}
    session_options: dict[str, str] = field(default_factory=dict)
    connect_timeout: Optional[float] = None

    # Channel I/O
    piped_stream_buffer_size: int = 10 * 1024
    poll_interval: float = 0.1

    def to_dict(self) -> dict:
        """Serialize to dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> ClientSettings:
        """Deserialize from dict, ignoring unknown keys."""
        valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**filtered)


class SettingsManager:
    """
    Manages loading and saving client settings.

    Usage:
        manager = SettingsManager()
        settings = manager.settings

        settings.session_options["strict-host-key-checking"] = "no"
        manager.save()
    """

    def __init__(self, config_path: Path = None):
        self._config_path = Path(config_path) if config_path else DEFAULT_CONFIG_FILE
        self._settings: Optional[ClientSettings] = None

    @property
    def settings(self) -> ClientSettings:
        """Get current settings, loading from disk if needed."""
        if self._settings is None:
            self._settings = self.load()
        return self._settings

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> ClientSettings:
        """Load settings from disk, or return defaults."""
        if not self._config_path.exists():
            logger.debug("No settings file found, using defaults")
            return ClientSettings()

        try:
            data = yaml.safe_load(self._config_path.read_text()) or {}
            if not isinstance(data, dict):
                raise TypeError(f"expected a mapping, got {type(data).__name__}")
            logger.debug(f"Loaded settings from {self._config_path}")
            return ClientSettings.from_dict(data)
        except (yaml.YAMLError, TypeError, OSError) as e:
            logger.warning(f"Failed to load settings: {e}, using defaults")
            return ClientSettings()

    def save(self) -> None:
        """Save current settings to disk."""
        if self._settings is None:
            return

        self._config_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._config_path.write_text(
                yaml.safe_dump(self._settings.to_dict(), default_flow_style=False, sort_keys=False)
            )
            logger.debug(f"Saved settings to {self._config_path}")
        except OSError as e:
            logger.error(f"Failed to save settings: {e}")

    def reset(self) -> ClientSettings:
        """Reset to default settings (does not save automatically)."""
        self._settings = ClientSettings()
        return self._settings


# Global instance for convenience
_manager: Optional[SettingsManager] = None


def get_settings_manager() -> SettingsManager:
    """Get the global settings manager instance."""
    global _manager
    if _manager is None:
        _manager = SettingsManager()
    return _manager


def get_settings() -> ClientSettings:
    """Convenience function to get current settings."""
    return get_settings_manager().settings

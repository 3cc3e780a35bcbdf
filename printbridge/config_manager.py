"""Configuration manager for the persisted bridge credentials and runtime settings."""

from __future__ import annotations

import json
import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)

DEFAULT_API_URL = "https://vafrum-core.de"
DEFAULT_GATEWAY_PORT = 8765
DEFAULT_RELAY_API_PORT = 1984


def _resolveHomeDirectory() -> Path:
    override = os.getenv("PRINTBRIDGE_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".printbridge"


CONFIG_DIR = _resolveHomeDirectory()
CONFIG_FILE = CONFIG_DIR / "config.json"


def _resolveIntEnv(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        log.warning("Ignoring invalid %s value, using %s", name, default)
        return default


class ConfigManager:
    """Manages the persisted credentials file (API key and last public base URL)."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """
        Initialize the configuration manager.

        Args:
            config_path: Optional path to the config file. Defaults to
                ``PRINTBRIDGE_CONFIG`` or ~/.printbridge/config.json
        """
        envPath = os.getenv("PRINTBRIDGE_CONFIG", "").strip()
        self.config_path = Path(config_path or envPath or CONFIG_FILE).expanduser()
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from disk."""
        if not self.config_path.exists():
            log.info("Configuration file %s does not exist, using defaults", self.config_path)
            self._config = {}
            return

        try:
            with self.config_path.open("r", encoding="utf-8") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                self._config = loaded
                log.info("Configuration loaded from %s", self.config_path)
            else:
                log.warning("Invalid config format in %s, using defaults", self.config_path)
                self._config = {}
        except (OSError, json.JSONDecodeError) as error:
            log.error("Failed to load configuration: %s", error)
            self._config = {}

    def save(self) -> bool:
        """
        Save configuration to disk with owner-only permissions.

        Returns:
            True if save was successful, False otherwise
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with self.config_path.open("w", encoding="utf-8") as f:
                json.dump(self._config, f, indent=2, sort_keys=True)

            # The file carries the API key
            if os.name != "nt":
                os.chmod(self.config_path, stat.S_IRUSR | stat.S_IWUSR)

            log.debug("Configuration saved to %s", self.config_path)
            return True
        except (OSError, TypeError) as error:
            log.error("Failed to save configuration: %s", error)
            return False

    def get_api_key(self) -> Optional[str]:
        """
        Get the API key from configuration.

        Returns:
            API key if set, None otherwise
        """
        api_key = self._config.get("apiKey")
        if isinstance(api_key, str) and api_key.strip():
            return api_key.strip()
        return None

    def set_api_key(self, api_key: str) -> None:
        self._config["apiKey"] = api_key.strip()

    def get_tunnel_url(self) -> Optional[str]:
        """Return the last known externally reachable base URL, if any."""
        tunnel_url = self._config.get("tunnelUrl")
        if isinstance(tunnel_url, str) and tunnel_url.strip():
            return tunnel_url.strip().rstrip("/")
        return None

    def set_tunnel_url(self, tunnel_url: str) -> None:
        self._config["tunnelUrl"] = tunnel_url.strip()

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._config[key] = value

    def is_configured(self) -> bool:
        return bool(self.get_api_key())

    def get_masked_api_key(self) -> str:
        """
        Get a masked version of the API key for display.

        Returns:
            Masked API key (e.g., "vfk_1234...") or empty string if not set
        """
        api_key = self.get_api_key()
        if not api_key:
            return ""
        if len(api_key) <= 8:
            return "***"
        return f"{api_key[:8]}..."


@dataclass
class BridgeSettings:
    """Runtime settings resolved from the environment with fixed defaults."""

    apiUrl: str = DEFAULT_API_URL
    gatewayHost: str = "0.0.0.0"
    gatewayPort: int = DEFAULT_GATEWAY_PORT
    relayApiPort: int = DEFAULT_RELAY_API_PORT
    dataDirectory: Path = field(default_factory=lambda: CONFIG_DIR)
    binDirectory: Optional[Path] = None

    @property
    def logsDirectory(self) -> Path:
        return self.dataDirectory / "logs"

    @classmethod
    def fromEnvironment(cls) -> "BridgeSettings":
        binDirectory = os.getenv("PRINTBRIDGE_BIN_DIR", "").strip()
        return cls(
            apiUrl=(os.getenv("PRINTBRIDGE_API_URL", "").strip() or DEFAULT_API_URL).rstrip("/"),
            gatewayPort=_resolveIntEnv("PRINTBRIDGE_GATEWAY_PORT", DEFAULT_GATEWAY_PORT),
            relayApiPort=_resolveIntEnv("PRINTBRIDGE_RELAY_PORT", DEFAULT_RELAY_API_PORT),
            dataDirectory=_resolveHomeDirectory(),
            binDirectory=Path(binDirectory).expanduser() if binDirectory else None,
        )


# Global instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[Path] = None) -> ConfigManager:
    """
    Get the global ConfigManager instance.

    Returns:
        Global ConfigManager instance
    """
    global _config_manager
    if _config_manager is None or (config_path is not None and _config_manager.config_path != Path(config_path)):
        _config_manager = ConfigManager(config_path)
    return _config_manager

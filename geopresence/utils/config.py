"""
GeoPresence - Configuration Management

Handles loading, saving, and validating relay settings.
Settings persist to ~/.config/geopresence/settings.json. The ``PORT``
environment variable overrides the HTTP port so the relay can be deployed
on platforms that assign the port at runtime.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .paths import get_app_dir

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3001
DEFAULT_ROOM = "default"

# Environment variable that overrides http_port
PORT_ENV_VAR = "PORT"

DEFAULT_CONFIG: Dict[str, Any] = {
    "http_host": "0.0.0.0",
    "http_port": DEFAULT_PORT,
    # True: fan out only to room peers. False: fan out to every connection.
    "room_scoped": True,
    "default_room": DEFAULT_ROOM,
    # Reject malformed send-location payloads instead of relaying them
    "validate_payloads": True,
    # WebSocket Origin allow-list; None accepts any origin
    "allowed_origins": None,
    "cors_allowed_origin": "*",
}

# Map view defaults shared with the browser client
MAP_DEFAULT_ZOOM = 16
SELF_TRAIL_COLOR = "#007bff"
PEER_TRAIL_COLOR = "red"
DEFAULT_USER_COLOR = "#3498db"


def port_from_env(environ: Optional[Mapping[str, str]] = None) -> Optional[int]:
    """Return the port from the PORT environment variable, or None.

    Invalid values are logged and ignored.
    """
    env = os.environ if environ is None else environ
    raw = env.get(PORT_ENV_VAR)
    if not raw:
        return None
    try:
        port = int(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", PORT_ENV_VAR, raw)
        return None
    if not 0 < port < 65536:
        logger.warning("Ignoring out-of-range %s=%d", PORT_ENV_VAR, port)
        return None
    return port


class RelayConfig:
    """Configuration manager for the GeoPresence relay."""

    def __init__(self, config_path: Optional[Path] = None,
                 environ: Optional[Mapping[str, str]] = None):
        if config_path:
            self._config_path = config_path
        else:
            self._config_path = get_app_dir("config") / "settings.json"
        self._environ = environ
        self._settings: Dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    @property
    def path(self) -> Path:
        return self._config_path

    def load(self) -> None:
        """Load settings from disk, falling back to defaults, then apply env."""
        if self._config_path.exists():
            try:
                with open(self._config_path, "r") as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    if key in DEFAULT_CONFIG:
                        self._settings[key] = value
                logger.info("Loaded settings from %s", self._config_path)
            except (json.JSONDecodeError, OSError, AttributeError) as e:
                logger.warning("Failed to load settings: %s, using defaults", e)
        else:
            logger.info("No settings file found, using defaults")

        env_port = port_from_env(self._environ)
        if env_port is not None:
            self._settings["http_port"] = env_port

    def save(self) -> None:
        """Persist current settings to disk."""
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self._config_path, "w") as f:
                json.dump(self._settings, f, indent=2)
            logger.info("Saved settings to %s", self._config_path)
        except OSError as e:
            logger.error("Failed to save settings: %s", e)

    def get(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if key in DEFAULT_CONFIG:
            self._settings[key] = value

    def update(self, settings: Dict[str, Any]) -> None:
        for key, value in settings.items():
            self.set(key, value)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._settings)

    def client_settings(self) -> Dict[str, Any]:
        """Subset of settings that is safe to hand to browser clients."""
        return {
            "default_room": self._settings.get("default_room") or DEFAULT_ROOM,
            "room_scoped": bool(self._settings.get("room_scoped")),
            "default_zoom": MAP_DEFAULT_ZOOM,
            "default_color": DEFAULT_USER_COLOR,
        }

"""
Preferences Service - Unified persistence for link and control configuration
Stores the MAVProxy link settings and operator-input tuning in one JSON file
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .link_config import DEFAULT_CHANNEL_MAP, DEFAULT_HOST, LEGACY_KEYS, LinkConfig, ScalingMode

logger = logging.getLogger(__name__)

# Top-level keys of the legacy flat picar-cfg.json that belong to the link
_LEGACY_LINK_KEYS = (
    "mavproxy_mode",
    "mavproxy_host",
    "mavproxy_port",
    "mavproxy_target_system",
    "mavproxy_target_component",
    "mavproxy_rate_hz",
    "pwm_min_us",
    "pwm_max_us",
    "pwm_scaling",
)


@dataclass
class ControlConfig:
    """Operator input handling."""

    neutral_input: Optional[float] = None  # None = neutral of the link's scaling mode
    watchdog_timeout_s: float = 2.0  # 0 disables the emergency stop
    throttle_ramp_up: float = 0.0  # max increase per sample, 0 = no ramp
    throttle_ramp_down: float = 0.0  # max decrease per sample, 0 = no ramp


@dataclass
class ServerConfig:
    """HTTP server bind settings."""

    host: str = "0.0.0.0"
    port: int = 8443


class PreferencesService:
    """
    Configuration persistence.
    Single source of truth for the link, control and server settings.
    """

    PREFERENCES_FILE = "preferences.json"
    ENV_PATH = "RCLINK_CONFIG"

    def __init__(self, config_path: str = None):
        self._lock = threading.RLock()  # RLock allows re-entrant locking from same thread
        self._preferences: Dict[str, Any] = self._default_preferences()
        self._config_path = config_path if config_path else self._get_config_path()
        self._load()

    @property
    def config_path(self) -> str:
        return self._config_path

    def _get_config_path(self) -> str:
        """Get path to preferences file."""
        env_path = os.environ.get(self.ENV_PATH)
        if env_path:
            return env_path
        # Store in the repository root, next to the rclink package
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        return os.path.join(base_dir, "..", self.PREFERENCES_FILE)

    def _default_preferences(self) -> Dict[str, Any]:
        """Return default preferences structure."""
        return {
            "link": {
                "mode": "udp",
                "host": DEFAULT_HOST,
                "port": None,  # Mode default: 14550 udp, 5760 tcp
                "target_system": 1,
                "target_component": 1,
                "pwm_min_us": 1000,
                "pwm_max_us": 2000,
                "override_rate_hz": 20,
                "scaling": ScalingMode.SYMMETRIC.value,
                "channel_map": dict(DEFAULT_CHANNEL_MAP),
                "retry_delay_s": 3.0,
            },
            "control": {
                "neutral_input": None,
                "watchdog_timeout_s": 2.0,
                "throttle_ramp_up": 0.0,
                "throttle_ramp_down": 0.0,
            },
            "server": {"host": "0.0.0.0", "port": 8443},
        }

    def _load(self):
        """Load preferences from file."""
        try:
            if os.path.exists(self._config_path):
                with open(self._config_path, "r") as f:
                    loaded = json.load(f)

                # Merge with defaults (to add any new fields)
                defaults = self._default_preferences()
                self._deep_merge(defaults, self._migrate_legacy(loaded))
                self._preferences = defaults

                logger.info(f"Loaded preferences from {self._config_path}")
            else:
                # First run - create preferences file with defaults
                logger.info("First run detected - creating preferences file")
                self._preferences = self._default_preferences()
                self._save()
                logger.info(f"Created default preferences at {self._config_path}")
        except Exception as e:
            logger.warning(f"Failed to load preferences: {e}")
            self._preferences = self._default_preferences()

    def _migrate_legacy(self, loaded: Dict[str, Any]) -> Dict[str, Any]:
        """Fold flat picar-cfg.json keys into the 'link' / 'control' sections."""
        legacy = {key: loaded[key] for key in _LEGACY_LINK_KEYS if key in loaded}
        if not legacy and "pwm_neutral" not in loaded:
            return loaded

        migrated = {key: value for key, value in loaded.items() if key not in legacy and key != "pwm_neutral"}
        link = dict(migrated.get("link", {}))
        for key, value in legacy.items():
            # Sectioned values win over the flat ones
            link.setdefault(LEGACY_KEYS.get(key, key), value)
        migrated["link"] = link

        if "pwm_neutral" in loaded:
            control = dict(migrated.get("control", {}))
            control.setdefault("neutral_input", loaded["pwm_neutral"])
            migrated["control"] = control

        return migrated

    def _deep_merge(self, base: dict, override: dict):
        """Deep merge override into base (modifies base in place)."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _save(self):
        """Save preferences to file with synchronization."""
        try:
            with self._lock:
                with open(self._config_path, "w") as f:
                    json.dump(self._preferences, f, indent=2)
                    # Force OS to write to disk while file is still open
                    f.flush()
                    os.fsync(f.fileno())
        except Exception as e:
            logger.warning(f"Failed to save preferences: {e}")

    # ==================== Link Configuration ====================

    def get_link_config(self) -> LinkConfig:
        """
        Build the link configuration.

        Raises:
            ValueError: the stored settings are inconsistent (e.g. min >= max).
        """
        with self._lock:
            section = dict(self._preferences.get("link", {}))
        return LinkConfig.from_dict(section)

    def set_link_config(self, values: Dict[str, Any]):
        """Update link settings. Values are validated before they are stored."""
        with self._lock:
            merged = dict(self._preferences.get("link", {}))
            merged.update(values)
            LinkConfig.from_dict(merged)
            self._preferences["link"] = merged
            self._save()

    # ==================== Control Configuration ====================

    def get_control_config(self) -> ControlConfig:
        with self._lock:
            cfg = self._preferences.get("control", {})
            return ControlConfig(
                neutral_input=cfg.get("neutral_input"),
                watchdog_timeout_s=float(cfg.get("watchdog_timeout_s", 2.0)),
                throttle_ramp_up=float(cfg.get("throttle_ramp_up", 0.0)),
                throttle_ramp_down=float(cfg.get("throttle_ramp_down", 0.0)),
            )

    # ==================== Server Configuration ====================

    def get_server_config(self) -> ServerConfig:
        with self._lock:
            cfg = self._preferences.get("server", {})
            return ServerConfig(host=cfg.get("host", "0.0.0.0"), port=int(cfg.get("port", 8443)))

    def get_all(self) -> Dict[str, Any]:
        with self._lock:
            return json.loads(json.dumps(self._preferences))


# Global instance
_preferences_instance: Optional[PreferencesService] = None


def get_preferences() -> PreferencesService:
    """Get or create the global preferences instance."""
    global _preferences_instance
    if _preferences_instance is None:
        _preferences_instance = PreferencesService()
    return _preferences_instance

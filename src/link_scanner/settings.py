"""
Configuration loading and saving.

Builds `ScannerConfig` from defaults, a JSON config file, the environment
(including a `.env` file via python-dotenv), and the persisted `settings`
and `autoTrack` keys of the key/value store.
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from .config import (
    DEFAULT_API_BASE_URL,
    DEFAULT_HMAC_SECRET,
    DEFAULT_THRESHOLD,
    ApiConfig,
    AutoTrackConfig,
    LoggingConfig,
    PersistenceConfig,
    RateLimitConfig,
    ScannerConfig,
    SchedulerConfig,
)
from .persistence import KeyValueStore


STORE_NAMESPACE = "link_scanner"
SETTINGS_KEY = "settings"
AUTO_TRACK_KEY = "autoTrack"
COLLECTIONS_KEY = "collections"
GRAPHS_KEY = "graphs"

DEFAULT_STATE_FILE = Path.home() / ".link_scanner" / "state.json"


def normalize_threshold(value: Any) -> int:
    """Missing, non-numeric or non-positive thresholds fall back to the default."""
    try:
        threshold = int(value)
    except (TypeError, ValueError):
        return DEFAULT_THRESHOLD
    return threshold if threshold > 0 else DEFAULT_THRESHOLD


def create_default_config(
    api_key: str = "",
    state_file: Optional[Path] = None,
    hmac_secret: str = DEFAULT_HMAC_SECRET,
) -> ScannerConfig:
    """
    Create a default scanner configuration.

    Args:
        api_key: VirusTotal API key
        state_file: Path to state file for persistence
        hmac_secret: Secret for HMAC protection

    Returns:
        ScannerConfig with default settings
    """
    if state_file is None:
        state_file = DEFAULT_STATE_FILE

    return ScannerConfig(
        api=ApiConfig(api_key=api_key),
        rate_limit=RateLimitConfig(max_requests=4, window_seconds=60.0),
        scheduler=SchedulerConfig(tick_seconds=15.0, requeue_delay_seconds=30.0),
        auto_track=AutoTrackConfig(),
        persistence=PersistenceConfig(
            state_file_path=state_file,
            hmac_secret=hmac_secret,
        ),
        logging=LoggingConfig(level="info", output_format="text"),
    )


def load_config_from_file(config_path: Path) -> Optional[ScannerConfig]:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to the configuration file

    Returns:
        ScannerConfig if successful, None otherwise
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        api_data = data.get("api", {})
        api = ApiConfig(
            api_key=api_data.get("api_key", ""),
            base_url=api_data.get("base_url", DEFAULT_API_BASE_URL),
            timeout_seconds=float(api_data.get("timeout_seconds", 15.0)),
        )

        rate_data = data.get("rate_limit", {})
        rate_limit = RateLimitConfig(
            max_requests=int(rate_data.get("max_requests", 4)),
            window_seconds=float(rate_data.get("window_seconds", 60.0)),
        )

        scheduler_data = data.get("scheduler", {})
        scheduler = SchedulerConfig(
            tick_seconds=float(scheduler_data.get("tick_seconds", 15.0)),
            requeue_delay_seconds=float(scheduler_data.get("requeue_delay_seconds", 30.0)),
        )

        auto_track_data = data.get("auto_track", {})
        auto_track = AutoTrackConfig(
            collections_enabled=bool(auto_track_data.get("collections_enabled", False)),
            graphs_enabled=bool(auto_track_data.get("graphs_enabled", False)),
        )

        persistence_data = data.get("persistence", {})
        state_file_path = persistence_data.get("state_file_path")
        persistence = PersistenceConfig(
            state_file_path=Path(state_file_path) if state_file_path else DEFAULT_STATE_FILE,
            hmac_secret=persistence_data.get("hmac_secret", DEFAULT_HMAC_SECRET),
        )

        logging_data = data.get("logging", {})
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            output_format=logging_data.get("output_format", "text"),
        )

        return ScannerConfig(
            api=api,
            rate_limit=rate_limit,
            scheduler=scheduler,
            auto_track=auto_track,
            persistence=persistence,
            logging=logging_config,
            enabled=bool(data.get("enabled", True)),
            debug=bool(data.get("debug", False)),
            threshold=normalize_threshold(data.get("threshold")),
            auto_scan=bool(data.get("auto_scan", True)),
        )

    except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return None
    except FileNotFoundError:
        return None


def config_to_dict(config: ScannerConfig) -> dict:
    """Serialize a config to the JSON file layout."""
    return {
        "api": {
            "api_key": config.api.api_key,
            "base_url": config.api.base_url,
            "timeout_seconds": config.api.timeout_seconds,
        },
        "rate_limit": {
            "max_requests": config.rate_limit.max_requests,
            "window_seconds": config.rate_limit.window_seconds,
        },
        "scheduler": {
            "tick_seconds": config.scheduler.tick_seconds,
            "requeue_delay_seconds": config.scheduler.requeue_delay_seconds,
        },
        "auto_track": {
            "collections_enabled": config.auto_track.collections_enabled,
            "graphs_enabled": config.auto_track.graphs_enabled,
        },
        "persistence": {
            "state_file_path": str(config.persistence.state_file_path),
            "hmac_secret": config.persistence.hmac_secret,
        } if config.persistence else None,
        "logging": {
            "level": config.logging.level,
            "output_format": config.logging.output_format,
        },
        "enabled": config.enabled,
        "debug": config.debug,
        "threshold": config.threshold,
        "auto_scan": config.auto_scan,
    }


def save_config_to_file(config: ScannerConfig, config_path: Path) -> bool:
    """
    Save configuration to a JSON file.

    Returns:
        True if successful, False otherwise
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(config_to_dict(config), f, indent=2, ensure_ascii=False)
        return True
    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env(
    base: Optional[ScannerConfig] = None,
    dotenv_path: Optional[Path] = None,
) -> ScannerConfig:
    """
    Overlay environment variables onto a config.

    Reads a `.env` file first (existing variables win). Recognized names:
    VT_API_KEY, VT_ENABLED, VT_DEBUG, VT_THRESHOLD, VT_STATE_FILE.
    """
    load_dotenv(dotenv_path=dotenv_path)
    config = base or create_default_config()

    api_key = os.getenv("VT_API_KEY")
    if api_key is not None:
        config.api.api_key = api_key.strip()

    config.enabled = _bool_env("VT_ENABLED", config.enabled)
    config.debug = _bool_env("VT_DEBUG", config.debug)

    threshold = os.getenv("VT_THRESHOLD")
    if threshold is not None:
        config.threshold = normalize_threshold(threshold)

    state_file = os.getenv("VT_STATE_FILE")
    if state_file:
        hmac_secret = config.persistence.hmac_secret if config.persistence else DEFAULT_HMAC_SECRET
        config.persistence = PersistenceConfig(
            state_file_path=Path(state_file),
            hmac_secret=hmac_secret,
        )

    return config


def load_settings_from_store(store: KeyValueStore, config: ScannerConfig) -> ScannerConfig:
    """
    Apply the persisted `settings` record (`api_key`, `enabled`, `debug`,
    `threshold`) onto a config. Absent fields leave the config untouched.
    """
    settings = store.get(STORE_NAMESPACE, SETTINGS_KEY) or {}
    if not isinstance(settings, dict):
        return config

    if settings.get("api_key"):
        config.api.api_key = str(settings["api_key"])
    if "enabled" in settings:
        config.enabled = bool(settings["enabled"])
    if "debug" in settings:
        config.debug = bool(settings["debug"])
    if "threshold" in settings:
        config.threshold = normalize_threshold(settings["threshold"])

    config.auto_track = load_auto_track(store, config.auto_track)
    return config


def save_settings_to_store(store: KeyValueStore, config: ScannerConfig) -> None:
    store.set(STORE_NAMESPACE, SETTINGS_KEY, {
        "api_key": config.api.api_key,
        "enabled": config.enabled,
        "debug": config.debug,
        "threshold": config.threshold,
    })
    save_auto_track(store, config.auto_track)


def load_auto_track(
    store: KeyValueStore,
    default: Optional[AutoTrackConfig] = None,
) -> AutoTrackConfig:
    """Read the `autoTrack` flags (`{collections, graphs}`)."""
    default = default or AutoTrackConfig()
    data = store.get(STORE_NAMESPACE, AUTO_TRACK_KEY)
    if not isinstance(data, dict):
        return default
    return AutoTrackConfig(
        collections_enabled=bool(data.get("collections", default.collections_enabled)),
        graphs_enabled=bool(data.get("graphs", default.graphs_enabled)),
    )


def save_auto_track(store: KeyValueStore, auto_track: AutoTrackConfig) -> None:
    store.set(STORE_NAMESPACE, AUTO_TRACK_KEY, {
        "collections": auto_track.collections_enabled,
        "graphs": auto_track.graphs_enabled,
    })

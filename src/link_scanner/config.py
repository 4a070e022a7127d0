"""
Configuration dataclasses for the link scanner.

This module defines all configuration structures used throughout the system,
including API access, rate limiting, scheduler cadence, auto-tracking,
persistence, and logging configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


DEFAULT_API_BASE_URL = "https://www.virustotal.com/api/v3"
DEFAULT_HMAC_SECRET = "default-secret-change-me"
DEFAULT_THRESHOLD = 5


@dataclass
class ApiConfig:
    """VirusTotal API access configuration."""

    api_key: str = ""
    base_url: str = DEFAULT_API_BASE_URL
    timeout_seconds: float = 15.0


@dataclass
class RateLimitConfig:
    """Sliding-window limit for remote calls (free tier: 4 per minute)."""

    max_requests: int = 4
    window_seconds: float = 60.0


@dataclass
class SchedulerConfig:
    """Queue drain cadence and re-queue delay for freshly submitted URLs."""

    tick_seconds: float = 15.0
    requeue_delay_seconds: float = 30.0


@dataclass
class AutoTrackConfig:
    """Toggles for pushing threats into the first collection/graph."""

    collections_enabled: bool = False
    graphs_enabled: bool = False


@dataclass
class PersistenceConfig:
    """Persistence and state storage configuration."""

    state_file_path: Path
    hmac_secret: str = DEFAULT_HMAC_SECRET


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class ScannerConfig:
    """Main configuration combining all sub-configurations."""

    api: ApiConfig = field(default_factory=ApiConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    auto_track: AutoTrackConfig = field(default_factory=AutoTrackConfig)
    persistence: Optional[PersistenceConfig] = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    enabled: bool = True
    debug: bool = False
    threshold: int = DEFAULT_THRESHOLD
    auto_scan: bool = True

    @property
    def has_api_key(self) -> bool:
        return bool(self.api.api_key and self.api.api_key.strip())

"""
Link Scanner - Rate-limited VirusTotal URL scanning with result fan-out.

This package correlates URLs seen in a live message stream with VirusTotal
reputation data under the free-tier rate limit, deduplicates scan work,
delivers each verdict to every place the URL is shown, and keeps local-first
collections and graphs of flagged items.
"""

__version__ = "0.1.0"
__author__ = "Link Scanner Team"

from link_scanner.exceptions import (
    LinkScannerError,
    ConfigurationError,
    ProtocolError,
    RemoteTrackingError,
    PersistenceError,
    TamperingError,
)
from link_scanner.enums import (
    ScanStatus,
    LogLevel,
    LookupStatus,
    ApiErrorCode,
    ItemType,
    TickOutcome,
)
from link_scanner.config import (
    ApiConfig,
    RateLimitConfig,
    SchedulerConfig,
    AutoTrackConfig,
    PersistenceConfig,
    LoggingConfig,
    ScannerConfig,
)
from link_scanner.models import (
    ScanResult,
    StatusEntry,
    Relationship,
    Collection,
    Graph,
    LocalRef,
    RemoteRef,
    Capability,
    LocalPlan,
    RemotePlan,
    AddResult,
    DeletionResult,
    TrackingOutcome,
)
from link_scanner.url_normalizer import (
    UrlNormalizer,
    DEFAULT_IGNORE_PATTERNS,
)
from link_scanner.rate_limiter import (
    RateLimiter,
    RateLimitStatus,
)
from link_scanner.status_store import (
    ScanStatusStore,
)
from link_scanner.occurrences import (
    OccurrenceRegistry,
    Site,
)
from link_scanner.fanout import (
    FanoutDispatcher,
)
from link_scanner.scan_queue import (
    ScanQueue,
)
from link_scanner.scheduler import (
    Scheduler,
    IntervalTask,
)
from link_scanner.virustotal_client import (
    VirusTotalClient,
    ApiResponse,
    ApiError,
    LookupResponse,
)
from link_scanner.classifier import (
    classify,
    build_scan_result,
)
from link_scanner.persistence import (
    KeyValueStore,
    MemoryStore,
    JsonFileStore,
)
from link_scanner.settings import (
    load_config_from_env,
    load_settings_from_store,
    save_settings_to_store,
    load_auto_track,
    save_auto_track,
)
from link_scanner.event_logger import (
    EventLogger,
    LogEntry,
)
from link_scanner.tracking_store import (
    TrackingStore,
)
from link_scanner.auto_tracker import (
    AutoTracker,
)
from link_scanner.orchestrator import (
    ScanOrchestrator,
)
from link_scanner.self_test import (
    SelfTest,
    SelfTestResult,
    EndpointTestResult,
    ConfigValidationResult,
    run_self_test,
)
from link_scanner.cli import (
    main as cli_main,
    create_parser,
)
from link_scanner.settings import (
    create_default_config,
    load_config_from_file,
    save_config_to_file,
)

__all__ = [
    # Exceptions
    "LinkScannerError",
    "ConfigurationError",
    "ProtocolError",
    "RemoteTrackingError",
    "PersistenceError",
    "TamperingError",
    # Enums
    "ScanStatus",
    "LogLevel",
    "LookupStatus",
    "ApiErrorCode",
    "ItemType",
    "TickOutcome",
    # Configuration
    "ApiConfig",
    "RateLimitConfig",
    "SchedulerConfig",
    "AutoTrackConfig",
    "PersistenceConfig",
    "LoggingConfig",
    "ScannerConfig",
    # Models
    "ScanResult",
    "StatusEntry",
    "Relationship",
    "Collection",
    "Graph",
    "LocalRef",
    "RemoteRef",
    "Capability",
    "LocalPlan",
    "RemotePlan",
    "AddResult",
    "DeletionResult",
    "TrackingOutcome",
    # URL Normalizer
    "UrlNormalizer",
    "DEFAULT_IGNORE_PATTERNS",
    # Rate Limiter
    "RateLimiter",
    "RateLimitStatus",
    # Status, occurrences and fan-out
    "ScanStatusStore",
    "OccurrenceRegistry",
    "Site",
    "FanoutDispatcher",
    # Queue and scheduler
    "ScanQueue",
    "Scheduler",
    "IntervalTask",
    # VirusTotal Client
    "VirusTotalClient",
    "ApiResponse",
    "ApiError",
    "LookupResponse",
    "classify",
    "build_scan_result",
    # Persistence and settings
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "load_config_from_env",
    "load_settings_from_store",
    "save_settings_to_store",
    "load_auto_track",
    "save_auto_track",
    # Event Logger
    "EventLogger",
    "LogEntry",
    # Tracking
    "TrackingStore",
    "AutoTracker",
    # Orchestrator
    "ScanOrchestrator",
    # CLI
    "cli_main",
    "create_parser",
    "create_default_config",
    "load_config_from_file",
    "save_config_to_file",
    # Self-Test
    "SelfTest",
    "SelfTestResult",
    "EndpointTestResult",
    "ConfigValidationResult",
    "run_self_test",
]

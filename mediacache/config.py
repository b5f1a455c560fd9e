"""
Configuration management for media-cache.
Handles loading, validation, migration and defaults of application settings.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Get the directory where config.py is located
_SCRIPT_DIR = Path(os.path.dirname(os.path.abspath(__file__)))
_PROJECT_ROOT = _SCRIPT_DIR.parent

DEFAULT_SETTINGS_FILE = str(_PROJECT_ROOT / "media_cache_settings.json")
SETTINGS_ENV_VAR = "MEDIA_CACHE_SETTINGS"

CATEGORY_NAMES = ("movies", "tv", "doc", "recent", "popular", "downloads")

JOB_POPULAR = "popular-sweep"
JOB_RECENT = "recent-sweep"
JOB_DOWNLOADS = "download-sync"
JOB_MONITOR = "monitor"
SWEEP_JOBS = (JOB_POPULAR, JOB_RECENT, JOB_DOWNLOADS)

RANKING_POPULARITY = "popularity"
RANKING_SIZE = "size"

GB = 1024 ** 3
MB = 1024 ** 2

# Defaults mirror the limits the shell tooling shipped with
DEFAULT_CATEGORIES: Dict[str, Dict[str, Any]] = {
    "popular": {
        "budget": "200GB", "retention_days": 30, "max_file_size": "0",
        "min_file_size": "100MB", "source_folders": ["movies", "tv"],
        "ranking": RANKING_POPULARITY, "job": JOB_POPULAR,
    },
    "movies": {
        "budget": "100GB", "retention_days": 60, "max_file_size": "20GB",
        "min_file_size": "100MB", "source_folders": ["movies"],
        "ranking": RANKING_POPULARITY, "max_entries": 100, "job": JOB_POPULAR,
    },
    "tv": {
        "budget": "100GB", "retention_days": 30, "max_file_size": "10GB",
        "max_age_days": 60, "source_folders": ["tv"],
        "ranking": RANKING_POPULARITY, "max_entries": 200, "job": JOB_POPULAR,
    },
    "recent": {
        "budget": "150GB", "retention_days": 30, "max_file_size": "20GB",
        "max_age_days": 30, "source_folders": ["movies", "tv", "doc"],
        "ranking": RANKING_SIZE, "job": JOB_RECENT,
    },
    "doc": {
        "budget": "50GB", "retention_days": 60, "max_file_size": "20GB",
        "max_age_days": 7, "source_folders": ["doc"],
        "ranking": RANKING_SIZE, "job": JOB_DOWNLOADS,
    },
    "downloads": {
        "budget": "100GB", "retention_days": 7, "max_file_size": "0",
        "max_age_days": 7, "source_folders": ["downloads"],
        "ranking": RANKING_SIZE, "job": JOB_DOWNLOADS,
    },
}

DEFAULT_SCHEDULES = {
    JOB_POPULAR: "0 3 * * *",
    JOB_RECENT: "0 4 * * *",
    JOB_DOWNLOADS: "15 * * * *",
    JOB_MONITOR: "*/30 * * * *",
}

# Flat keys used by older settings files, folded into the categories table
LEGACY_BUDGET_KEYS = {
    "MAX_POPULAR_CACHE_GB": "popular",
    "MAX_MOVIES_CACHE_GB": "movies",
    "MAX_TV_CACHE_GB": "tv",
    "MAX_RECENT_CACHE_GB": "recent",
}


@dataclass
class PathConfig:
    """Configuration for file paths and directories."""
    cache_dir: str = ""
    library_root: str = ""
    data_folder: str = str(_PROJECT_ROOT / "data")
    logs_folder: str = str(_PROJECT_ROOT / "logs")
    lock_dir: str = "/tmp"
    require_mountpoint: bool = True


@dataclass
class CategoryConfig:
    """Budget and sourcing rules for one cache category.

    Attributes:
        name: Category name, also the subdirectory under the cache root.
        budget_bytes: Maximum aggregate size of entries in this category.
        retention_days: Entries older than this (by admission time) are evicted.
        max_file_size_bytes: Files above this are never admitted (0 = no cap).
        min_file_size_bytes: Scanner ignores files smaller than this.
        max_age_days: Scanner ignores files modified longer ago than this.
        source_folders: Library folders (relative to library_root) feeding this category.
        ranking: "popularity" to prefer the popularity provider, "size" for scanner only.
        max_entries: Maximum number of entries (0 = unlimited).
        job: The sweep job that owns this category.
    """
    name: str = ""
    budget_bytes: int = 0
    retention_days: float = 30
    max_file_size_bytes: int = 0
    min_file_size_bytes: int = 0
    max_age_days: Optional[float] = None
    source_folders: List[str] = field(default_factory=list)
    ranking: str = RANKING_SIZE
    max_entries: int = 0
    job: str = JOB_POPULAR


@dataclass
class NotificationConfig:
    """Configuration for notification settings."""
    notification_type: str = "none"  # "telegram", "webhook", "both" or "none"
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    webhook_url: str = ""
    level: str = "summary"
    max_retries: int = 3
    retry_delay: float = 2
    timeout: float = 30


@dataclass
class PopularityConfig:
    """Configuration for the popularity provider."""
    provider: str = "none"  # "jellyfin", "plex" or "none"
    playback_db: str = ""
    library_db: str = ""
    plex_url: str = ""
    plex_token: str = ""
    # Maps media-server path prefixes to real library prefixes
    path_mappings: Dict[str, str] = field(default_factory=dict)
    limit: int = 200
    timeout: float = 10


@dataclass
class ConsumerConfig:
    """Configuration for the media server consuming the cache mount."""
    container: str = "jellyfin"
    mount_target: str = "/media-cache"
    detach_command: List[str] = field(default_factory=list)
    command_timeout: float = 15


@dataclass
class MonitorConfig:
    """Thresholds for monitor recommendations."""
    underutilized_links: int = 50
    broken_links_warning: int = 10
    recent_access_hours: float = 24


@dataclass
class ScheduleConfig:
    """Cron schedules for the periodic jobs."""
    schedules: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SCHEDULES))
    command: str = f"python3 {_PROJECT_ROOT / 'media_cache.py'}"


@dataclass
class LoggingConfig:
    """Configuration for log files."""
    log_level: str = ""
    max_log_bytes: int = 10 * MB
    max_log_files: int = 5


def parse_size(size_str: Any) -> int:
    """Parse a size string and return bytes.

    Supports formats:
    - "250GB" or "250gb" -> 250 * 1024^3 bytes
    - "500MB" or "500mb" -> 500 * 1024^2 bytes
    - "2TB" -> 2 * 1024^4 bytes
    - "250" or 250 -> defaults to GB (250 * 1024^3 bytes)
    - "" or "0" -> 0

    Raises:
        ValueError: If the value cannot be parsed.
    """
    if isinstance(size_str, bool):
        raise ValueError(f"Invalid size value: {size_str!r}")
    if isinstance(size_str, (int, float)):
        return int(size_str * GB)
    if not size_str or size_str.strip() == "0":
        return 0

    value = size_str.strip().upper()
    try:
        if value.endswith('TB'):
            return int(float(value[:-2]) * 1024 * GB)
        elif value.endswith('GB'):
            return int(float(value[:-2]) * GB)
        elif value.endswith('MB'):
            return int(float(value[:-2]) * MB)
        elif value.endswith('KB'):
            return int(float(value[:-2]) * 1024)
        else:
            # No unit specified, default to GB
            return int(float(value) * GB)
    except ValueError:
        raise ValueError(f"Invalid size value: {size_str!r}")


def migrate_legacy_settings(settings: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Fold flat legacy keys (MAX_*_CACHE_GB, RECENT_DAYS, ...) into the categories table.

    Args:
        settings: The raw settings dictionary from JSON file.

    Returns:
        Tuple of (updated_settings, was_migrated).
    """
    legacy_keys = set(LEGACY_BUDGET_KEYS) | {"RECENT_DAYS", "MAX_FILE_SIZE_GB", "CACHE_BASE", "NAS_BASE"}
    if not legacy_keys & set(settings):
        return settings, False

    logging.info("Migrating legacy settings to the categories format...")
    categories = settings.setdefault("categories", {})

    for key, category in LEGACY_BUDGET_KEYS.items():
        if key in settings:
            categories.setdefault(category, {})["budget"] = f"{settings.pop(key)}GB"

    if "RECENT_DAYS" in settings:
        days = settings.pop("RECENT_DAYS")
        recent = categories.setdefault("recent", {})
        recent["retention_days"] = days
        recent["max_age_days"] = days

    if "MAX_FILE_SIZE_GB" in settings:
        categories.setdefault("recent", {})["max_file_size"] = f"{settings.pop('MAX_FILE_SIZE_GB')}GB"

    if "CACHE_BASE" in settings:
        settings.setdefault("cache_dir", settings.pop("CACHE_BASE"))
    if "NAS_BASE" in settings:
        settings.setdefault("library_root", settings.pop("NAS_BASE"))

    return settings, True


def resolve_settings_file(explicit: Optional[str] = None) -> str:
    """Pick the settings file: explicit path, environment variable, then project default."""
    if explicit:
        return explicit
    return os.environ.get(SETTINGS_ENV_VAR, DEFAULT_SETTINGS_FILE)


class ConfigManager:
    """Manages application configuration loading and validation."""

    REQUIRED_FIELDS = ['cache_dir', 'library_root']

    TYPE_CHECKS = {
        'cache_dir': str,
        'library_root': str,
        'extensions': list,
        'categories': dict,
        'require_mountpoint': bool,
        'dry_run': bool,
        'notification': dict,
        'popularity': dict,
        'consumer': dict,
        'monitor': dict,
        'schedules': dict,
    }

    def __init__(self, config_file: str):
        self.config_file = Path(config_file)
        self.settings_data: Dict[str, Any] = {}
        self.paths = PathConfig()
        self.categories: Dict[str, CategoryConfig] = {}
        self.extensions: List[str] = [".mkv", ".mp4", ".avi"]
        self.notification = NotificationConfig()
        self.popularity = PopularityConfig()
        self.consumer = ConsumerConfig()
        self.monitor = MonitorConfig()
        self.schedule = ScheduleConfig()
        self.logging = LoggingConfig()
        self.dry_run = False
        self._migrated = False

    def load_config(self) -> None:
        """Load configuration from file and validate."""
        logging.debug(f"Loading configuration from: {self.config_file}")

        if not self.config_file.exists():
            logging.error(f"Settings file not found: {self.config_file}")
            raise FileNotFoundError(f"Settings file not found: {self.config_file}")

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                self.settings_data = json.load(f)
        except json.JSONDecodeError as e:
            logging.error(f"Invalid JSON in settings file: {type(e).__name__}: {e}")
            raise ValueError(f"Invalid JSON in settings file: {e}")

        self.load_dict(self.settings_data)

        if self._migrated:
            self._save_updated_config()

        logging.debug("Configuration loaded and validated successfully")

    def load_dict(self, settings: Dict[str, Any]) -> None:
        """Load configuration from an already-parsed settings dictionary."""
        self.settings_data, self._migrated = migrate_legacy_settings(settings)

        self._validate_required_fields()
        self._validate_types()
        self._load_path_config()
        self._load_category_config()
        self._load_notification_config()
        self._load_popularity_config()
        self._load_consumer_config()
        self._load_monitor_config()
        self._load_schedule_config()
        self._load_logging_config()
        self._validate_values()

    def _validate_required_fields(self) -> None:
        """Validate that all required fields exist in the configuration."""
        missing_fields = [f for f in self.REQUIRED_FIELDS if f not in self.settings_data]
        if missing_fields:
            logging.error(f"Missing required fields in settings: {missing_fields}")
            raise ValueError(f"Missing required fields in settings: {missing_fields}")

    def _validate_types(self) -> None:
        """Validate that configuration values have correct types."""
        type_errors = []
        for field_name, expected_type in self.TYPE_CHECKS.items():
            if field_name in self.settings_data:
                value = self.settings_data[field_name]
                if not isinstance(value, expected_type):
                    type_errors.append(
                        f"'{field_name}' expected {expected_type.__name__}, got {type(value).__name__}"
                    )

        if type_errors:
            error_msg = "Type validation errors: " + "; ".join(type_errors)
            logging.error(error_msg)
            raise TypeError(error_msg)

    def _load_path_config(self) -> None:
        data = self.settings_data
        self.paths.cache_dir = os.path.normpath(data['cache_dir']) if data['cache_dir'] else ""
        self.paths.library_root = os.path.normpath(data['library_root']) if data['library_root'] else ""
        self.paths.data_folder = data.get('data_folder', self.paths.data_folder)
        self.paths.logs_folder = data.get('logs_folder', self.paths.logs_folder)
        self.paths.lock_dir = data.get('lock_dir', self.paths.lock_dir)
        self.paths.require_mountpoint = data.get('require_mountpoint', True)
        self.dry_run = data.get('dry_run', os.environ.get('DRY_RUN', '').lower() == 'true')

        extensions = data.get('extensions')
        if extensions:
            self.extensions = [ext.lower() if ext.startswith('.') else f".{ext.lower()}" for ext in extensions]

    def _load_category_config(self) -> None:
        """Merge configured categories over the defaults."""
        configured = self.settings_data.get('categories', {})
        unknown = [name for name in configured if name not in CATEGORY_NAMES]
        if unknown:
            raise ValueError(f"Unknown categories in settings: {unknown}")

        self.categories = {}
        for name in CATEGORY_NAMES:
            raw = dict(DEFAULT_CATEGORIES[name])
            overrides = configured.get(name, {})
            if not isinstance(overrides, dict):
                raise TypeError(f"Category '{name}' expected dict, got {type(overrides).__name__}")
            raw.update(overrides)

            max_age = raw.get('max_age_days')
            self.categories[name] = CategoryConfig(
                name=name,
                budget_bytes=parse_size(raw.get('budget', "0")),
                retention_days=raw.get('retention_days', 30),
                max_file_size_bytes=parse_size(raw.get('max_file_size', "0")),
                min_file_size_bytes=parse_size(raw.get('min_file_size', "0")),
                max_age_days=max_age if max_age else None,
                source_folders=[f.strip('/\\') for f in raw.get('source_folders', [])],
                ranking=raw.get('ranking', RANKING_SIZE),
                max_entries=raw.get('max_entries', 0),
                job=raw.get('job', JOB_POPULAR),
            )
            logging.debug(f"Loaded category: {name} ({self.categories[name].budget_bytes} bytes, "
                          f"{self.categories[name].retention_days}d, job={self.categories[name].job})")

    def _load_notification_config(self) -> None:
        data = self.settings_data.get('notification', {})
        self.notification.notification_type = data.get('type', 'none').lower()
        self.notification.telegram_bot_token = data.get('telegram_bot_token', os.environ.get('BOT_TOKEN', ''))
        self.notification.telegram_chat_id = str(data.get('telegram_chat_id', os.environ.get('CHAT_ID', '')))
        self.notification.webhook_url = data.get('webhook_url', '')
        self.notification.level = data.get('level', 'summary')
        self.notification.max_retries = data.get('max_retries', 3)
        self.notification.retry_delay = data.get('retry_delay', 2)
        self.notification.timeout = data.get('timeout', 30)

    def _load_popularity_config(self) -> None:
        data = self.settings_data.get('popularity', {})
        self.popularity.provider = data.get('provider', 'none').lower()
        self.popularity.playback_db = data.get('playback_db', '')
        self.popularity.library_db = data.get('library_db', '')
        self.popularity.plex_url = data.get('plex_url', '')
        self.popularity.plex_token = data.get('plex_token', '')
        self.popularity.path_mappings = data.get('path_mappings', {})
        self.popularity.limit = data.get('limit', 200)
        self.popularity.timeout = data.get('timeout', 10)

    def _load_consumer_config(self) -> None:
        data = self.settings_data.get('consumer', {})
        self.consumer.container = data.get('container', 'jellyfin')
        self.consumer.mount_target = data.get('mount_target', '/media-cache')
        self.consumer.detach_command = data.get('detach_command', [])
        self.consumer.command_timeout = data.get('command_timeout', 15)

    def _load_monitor_config(self) -> None:
        data = self.settings_data.get('monitor', {})
        self.monitor.underutilized_links = data.get('underutilized_links', 50)
        self.monitor.broken_links_warning = data.get('broken_links_warning', 10)
        self.monitor.recent_access_hours = data.get('recent_access_hours', 24)

    def _load_schedule_config(self) -> None:
        schedules = dict(DEFAULT_SCHEDULES)
        schedules.update(self.settings_data.get('schedules', {}))
        self.schedule.schedules = schedules
        self.schedule.command = self.settings_data.get('schedule_command', self.schedule.command)

    def _load_logging_config(self) -> None:
        self.logging.log_level = self.settings_data.get('log_level', '')
        self.logging.max_log_bytes = parse_size(self.settings_data.get('max_log_size', "10MB"))
        self.logging.max_log_files = self.settings_data.get('max_log_files', 5)

    def _validate_values(self) -> None:
        """Validate configuration value ranges and constraints."""
        errors = []

        for field_name in ('cache_dir', 'library_root'):
            if not self.settings_data.get(field_name, '').strip():
                errors.append(f"'{field_name}' cannot be empty")

        if self.paths.cache_dir and self.paths.library_root:
            cache = os.path.abspath(self.paths.cache_dir)
            library = os.path.abspath(self.paths.library_root)
            if cache == library or cache.startswith(library + os.sep):
                errors.append("'cache_dir' must not be inside 'library_root'")

        for name, category in self.categories.items():
            if category.budget_bytes < 0:
                errors.append(f"category '{name}': budget must be non-negative")
            if category.retention_days <= 0:
                errors.append(f"category '{name}': retention_days must be positive")
            if category.ranking not in (RANKING_POPULARITY, RANKING_SIZE):
                errors.append(f"category '{name}': invalid ranking '{category.ranking}'")
            if category.job not in SWEEP_JOBS:
                errors.append(f"category '{name}': unknown job '{category.job}'")

        if self.notification.notification_type not in ("telegram", "webhook", "both", "none"):
            errors.append(f"invalid notification type '{self.notification.notification_type}'")
        if self.popularity.provider not in ("jellyfin", "plex", "none"):
            errors.append(f"invalid popularity provider '{self.popularity.provider}'")
        if self.notification.max_retries < 1:
            errors.append("notification max_retries must be at least 1")

        if errors:
            error_msg = "Configuration validation errors: " + "; ".join(errors)
            logging.error(error_msg)
            raise ValueError(error_msg)

    def _save_updated_config(self) -> None:
        """Save migrated configuration back to file."""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.settings_data, f, indent=4)
            logging.info(f"Saved migrated settings to {self.config_file}")
        except OSError as e:
            logging.error(f"Error saving settings: {type(e).__name__}: {e}")
            raise

    def categories_for_job(self, job_name: str) -> List[CategoryConfig]:
        """Categories owned by a sweep job, in configuration order."""
        return [c for c in self.categories.values() if c.job == job_name]

    def get_manifest_file(self) -> Path:
        return Path(self.paths.data_folder) / "CACHE_MANIFEST.json"

    def get_entries_folder(self) -> Path:
        return Path(self.paths.data_folder) / "entries"

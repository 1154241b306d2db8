"""
Configuration loading and validation with .env file support.

Provides centralized configuration management for the stream monitor with
support for environment variables, .env files, per-platform settings and
runtime validation.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional, List, Union, Tuple
from dataclasses import dataclass, field
from enum import Enum

from dotenv import dotenv_values

from .retry import RetryConfig

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = ("youtube", "twitch")

ENV_PREFIXES = ('STREAMWATCH_', 'REDIS_', 'MONITOR_', 'SYSTEM_') + tuple(
    f"{platform.upper()}_" for platform in SUPPORTED_PLATFORMS
)

SENSITIVE_MARKERS = ('secret', 'password', 'token', 'credentials')


class ConfigurationError(Exception):
    """Configuration related errors."""
    pass


class ValidationLevel(str, Enum):
    """Configuration validation levels."""
    STRICT = "strict"      # Missing required settings are errors
    LENIENT = "lenient"    # Missing required settings are warnings


@dataclass
class ConfigValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    missing_required: List[str] = field(default_factory=list)
    invalid_values: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0 or len(self.missing_required) > 0 or len(self.invalid_values) > 0

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_missing_required(self, key: str) -> None:
        self.missing_required.append(key)
        self.is_valid = False

    def add_invalid_value(self, key: str, reason: str) -> None:
        self.invalid_values.append(f"{key}: {reason}")
        self.is_valid = False


@dataclass
class PlatformConfig:
    """Per-platform monitoring settings."""
    platform: str
    enabled: bool = True
    credentials: List[str] = field(default_factory=list)
    quota_limit: int = 10000
    poll_interval: float = 30.0
    schedule_interval: float = 21600.0
    title_interval: float = 3600.0
    subscription_interval: float = 3600.0
    quota_reset_interval: float = 300.0
    lease_seconds: int = 864000
    renewal_buffer: float = 86400.0
    max_retry_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 60.0
    debounce_seconds: float = 180.0
    batch_size: int = 50
    discovery_reserve: int = 2000
    callback_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    offline_grace_seconds: float = 180.0

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the settings are usable."""
        problems = []
        for name in ('poll_interval', 'schedule_interval', 'title_interval',
                     'subscription_interval', 'quota_reset_interval'):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive")
        if self.quota_limit <= 0:
            problems.append("quota_limit must be positive")
        if self.max_retry_attempts < 1:
            problems.append("max_retry_attempts must be at least 1")
        if self.renewal_buffer >= self.lease_seconds:
            problems.append("renewal_buffer must be shorter than lease_seconds")
        if not 1 <= self.batch_size <= 100:
            problems.append("batch_size must be between 1 and 100")
        if self.debounce_seconds < 0:
            problems.append("debounce_seconds cannot be negative")
        if self.discovery_reserve < 0:
            problems.append("discovery_reserve cannot be negative")
        return problems


@dataclass
class ServiceConfig:
    """Settings shared by every platform."""
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "streamwatch"
    channel_prefix: str = "streams"
    dedup_capacity: int = 10000
    dedup_ttl: float = 3600.0
    snapshot_capacity: int = 50000
    snapshot_ttl: float = 604800.0
    record_triggers: bool = False
    health_check_interval: float = 60.0
    shutdown_grace: float = 10.0


class ConfigurationManager:
    """
    Centralized configuration management system.

    Handles loading configuration from multiple sources with priority order:
    1. Explicit overrides (``set``)
    2. Environment variables
    3. .env file
    4. Default values
    """

    def __init__(
        self,
        env_file: Optional[Union[str, Path]] = None,
        validation_level: ValidationLevel = ValidationLevel.STRICT,
        auto_load: bool = True,
        environ: Optional[Dict[str, str]] = None
    ):
        self.env_file = Path(env_file) if env_file else None
        self.validation_level = validation_level
        self._environ = environ if environ is not None else os.environ

        self._config: Dict[str, Any] = {}
        self._config_sources: Dict[str, str] = {}
        self._overrides: Dict[str, Any] = {}
        self._is_loaded = False

        self._optional_settings: Dict[str, Tuple[str, type, str]] = {
            # Service
            'REDIS_URL': ('redis://localhost:6379/0', str, 'Redis connection URL for the event bus'),
            'REDIS_KEY_PREFIX': ('streamwatch', str, 'Prefix for follow/unfollow channels'),
            'STREAMWATCH_CHANNEL_PREFIX': ('streams', str, 'Prefix for published event channels'),
            'STREAMWATCH_DEDUP_CAPACITY': ('10000', int, 'Recently-seen transition keys kept'),
            'STREAMWATCH_DEDUP_TTL': ('3600', float, 'Seconds a transition key suppresses duplicates'),
            'STREAMWATCH_SNAPSHOT_CAPACITY': ('50000', int, 'Stream snapshots kept in memory'),
            'STREAMWATCH_SNAPSHOT_TTL': ('604800', float, 'Seconds an idle snapshot is retained'),
            'STREAMWATCH_RECORD_TRIGGERS': ('false', bool, 'Publish recording triggers for online events'),
            'MONITOR_HEALTH_CHECK_INTERVAL': ('60', float, 'Seconds between poller health checks'),
            'MONITOR_SHUTDOWN_GRACE': ('10', float, 'Seconds to wait for in-flight work on shutdown'),

            # System
            'SYSTEM_LOG_LEVEL': ('INFO', str, 'Application log level'),
            'SYSTEM_LOG_FILE': ('', str, 'JSON log file path'),
            'SYSTEM_LOG_JSON': ('true', bool, 'JSON console logging'),
        }

        platform_defaults = {
            'ENABLED': ('false', bool, 'Monitor this platform'),
            'CREDENTIALS': ('', list, 'Comma separated API keys'),
            'QUOTA_LIMIT': ('10000', int, 'Daily quota units per API key'),
            'POLL_INTERVAL': ('30', float, 'Seconds between status rechecks'),
            'SCHEDULE_INTERVAL': ('21600', float, 'Seconds between schedule discovery passes'),
            'DISCOVERY_RESERVE': ('2000', int, 'Quota units schedule discovery leaves for status rechecks'),
            'TITLE_INTERVAL': ('3600', float, 'Seconds between channel title refreshes'),
            'SUBSCRIPTION_INTERVAL': ('3600', float, 'Seconds between subscription sweeps'),
            'QUOTA_RESET_INTERVAL': ('300', float, 'Seconds between quota window checks'),
            'LEASE_SECONDS': ('864000', int, 'Requested webhook lease duration'),
            'RENEWAL_BUFFER': ('86400', float, 'Renew leases this many seconds before expiry'),
            'MAX_RETRY_ATTEMPTS': ('3', int, 'Attempts per external call'),
            'RETRY_BASE_DELAY': ('2', float, 'Initial retry backoff in seconds'),
            'RETRY_MAX_DELAY': ('60', float, 'Retry backoff ceiling in seconds'),
            'DEBOUNCE_SECONDS': ('180', float, 'Quiet window for metadata changes'),
            'BATCH_SIZE': ('50', int, 'Items per API lookup'),
            'CALLBACK_URL': ('', str, 'Public webhook callback URL'),
            'WEBHOOK_SECRET': ('', str, 'Shared webhook signing secret'),
        }
        for platform in SUPPORTED_PLATFORMS:
            for suffix, spec in platform_defaults.items():
                self._optional_settings[f"{platform.upper()}_{suffix}"] = spec

        self._optional_settings['YOUTUBE_ENABLED'] = ('true', bool, 'Monitor YouTube')
        self._optional_settings['TWITCH_CLIENT_ID'] = ('', str, 'Twitch application client id')
        self._optional_settings['TWITCH_CLIENT_SECRET'] = ('', str, 'Twitch application client secret')
        self._optional_settings['TWITCH_BATCH_SIZE'] = ('100', int, 'Logins per helix lookup')
        self._optional_settings['TWITCH_OFFLINE_GRACE_SECONDS'] = ('180', float, 'Absence before a stream is ended')

        if auto_load:
            self.load_configuration()

    def load_configuration(self) -> None:
        """Load configuration from all sources."""
        logger.info("Loading application configuration")

        self._config.clear()
        self._config_sources.clear()

        self._load_defaults()

        if self.env_file and self.env_file.exists():
            self._load_from_env_file()
        elif self.env_file:
            raise ConfigurationError(f"Configuration file not found: {self.env_file}")
        else:
            self._load_from_auto_detected_env_file()

        self._load_from_environment()
        self._apply_overrides()

        self._is_loaded = True
        logger.info(f"Configuration loaded from {len(set(self._config_sources.values()))} sources")

    def _load_defaults(self) -> None:
        for key, (default_val, _, _) in self._optional_settings.items():
            self._config[key] = default_val
            self._config_sources[key] = "defaults"

    def _load_from_env_file(self) -> None:
        logger.info(f"Loading configuration from: {self.env_file}")

        try:
            values = dotenv_values(self.env_file)
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Failed to load .env file: {e}") from e

        for key, value in values.items():
            if value is None:
                continue
            self._config[key] = value
            self._config_sources[key] = str(self.env_file)

    def _load_from_auto_detected_env_file(self) -> None:
        possible_locations = [
            Path('.env'),
            Path('.env.local'),
            Path('config/.env'),
        ]

        for env_path in possible_locations:
            if env_path.exists():
                logger.info(f"Auto-detected .env file: {env_path}")
                self.env_file = env_path
                self._load_from_env_file()
                break

    def _load_from_environment(self) -> None:
        env_count = 0

        for key, value in self._environ.items():
            if key.startswith(ENV_PREFIXES) or key in self._optional_settings:
                self._config[key] = value
                self._config_sources[key] = "environment"
                env_count += 1

        if env_count > 0:
            logger.debug(f"Loaded {env_count} settings from environment variables")

    def _apply_overrides(self) -> None:
        for key, value in self._overrides.items():
            self._config[key] = value
            self._config_sources[key] = "programmatic"

    def _required_settings(self) -> Dict[str, str]:
        """Settings required by the platforms that are enabled."""
        required = {}
        if self.get_bool('YOUTUBE_ENABLED'):
            required['YOUTUBE_CREDENTIALS'] = 'YouTube Data API keys'
        if self.get_bool('TWITCH_ENABLED'):
            required['TWITCH_CLIENT_ID'] = 'Twitch application client id'
            required['TWITCH_CLIENT_SECRET'] = 'Twitch application client secret'
        return required

    def validate_configuration(self) -> ConfigValidationResult:
        """Validate the loaded configuration."""
        result = ConfigValidationResult(is_valid=True)

        if not self._is_loaded:
            result.add_error("Configuration not loaded")
            return result

        for key, description in self._required_settings().items():
            if not self.get(key):
                if self.validation_level == ValidationLevel.STRICT:
                    result.add_missing_required(key)
                    result.add_error(f"Missing required setting: {key} ({description})")
                else:
                    result.add_warning(f"Missing required setting: {key} ({description})")

        for key, (_, expected_type, _) in self._optional_settings.items():
            value = self.get(key)
            if value in (None, ''):
                continue
            try:
                if expected_type == int:
                    int(value)
                elif expected_type == float:
                    float(value)
            except (TypeError, ValueError):
                result.add_invalid_value(key, f"Expected {expected_type.__name__}, got: {value}")

        if not self.enabled_platforms():
            result.add_warning("No platform is enabled")

        for platform in self.enabled_platforms():
            try:
                problems = self.get_platform_config(platform).validate()
            except ConfigurationError as e:
                result.add_error(str(e))
                continue
            for problem in problems:
                result.add_invalid_value(platform.upper(), problem)

            if not self.get(f"{platform.upper()}_CALLBACK_URL"):
                result.add_warning(
                    f"{platform.upper()}_CALLBACK_URL not set - {platform} will rely on polling only"
                )

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key."""
        return self._config.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        """Get configuration value as integer."""
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid integer value for {key}: {value}, using default: {default}")
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Get configuration value as float."""
        value = self.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid float value for {key}: {value}, using default: {default}")
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get configuration value as boolean."""
        return self._parse_bool(self.get(key, default))

    def _parse_bool(self, value: Any) -> bool:
        if isinstance(value, bool):
            return value

        if isinstance(value, str):
            return value.strip().lower() in ('true', '1', 'yes', 'on', 'enabled')

        return bool(value)

    def get_list(self, key: str, separator: str = ',', default: Optional[List[str]] = None) -> List[str]:
        """Get configuration value as list."""
        value = self.get(key)
        if not value:
            return default or []

        if isinstance(value, list):
            return value

        return [item.strip() for item in str(value).split(separator) if item.strip()]

    def set(self, key: str, value: Any, source: str = "programmatic") -> None:
        """Set configuration value programmatically; survives reload."""
        self._overrides[key] = value
        self._config[key] = value
        self._config_sources[key] = source

    def get_source(self, key: str) -> Optional[str]:
        return self._config_sources.get(key)

    def get_all_config(self, include_sources: bool = False, mask_secrets: bool = True) -> Dict[str, Any]:
        """Get all configuration as dictionary."""
        config = {}
        for key, value in self._config.items():
            if mask_secrets and value and any(marker in key.lower() for marker in SENSITIVE_MARKERS):
                config[key] = "********"
            else:
                config[key] = value

        if include_sources:
            return {'config': config, 'sources': self._config_sources.copy()}
        return config

    def enabled_platforms(self) -> List[str]:
        return [p for p in SUPPORTED_PLATFORMS if self.get_bool(f"{p.upper()}_ENABLED")]

    def get_platform_config(self, platform: str) -> PlatformConfig:
        """Build the settings object for one platform."""
        platform = platform.lower()
        if platform not in SUPPORTED_PLATFORMS:
            raise ConfigurationError(f"Unsupported platform: {platform}")

        prefix = platform.upper()
        return PlatformConfig(
            platform=platform,
            enabled=self.get_bool(f"{prefix}_ENABLED"),
            credentials=self.get_list(f"{prefix}_CREDENTIALS"),
            quota_limit=self.get_int(f"{prefix}_QUOTA_LIMIT", 10000),
            poll_interval=self.get_float(f"{prefix}_POLL_INTERVAL", 30.0),
            schedule_interval=self.get_float(f"{prefix}_SCHEDULE_INTERVAL", 21600.0),
            title_interval=self.get_float(f"{prefix}_TITLE_INTERVAL", 3600.0),
            subscription_interval=self.get_float(f"{prefix}_SUBSCRIPTION_INTERVAL", 3600.0),
            quota_reset_interval=self.get_float(f"{prefix}_QUOTA_RESET_INTERVAL", 300.0),
            lease_seconds=self.get_int(f"{prefix}_LEASE_SECONDS", 864000),
            renewal_buffer=self.get_float(f"{prefix}_RENEWAL_BUFFER", 86400.0),
            max_retry_attempts=self.get_int(f"{prefix}_MAX_RETRY_ATTEMPTS", 3),
            retry_base_delay=self.get_float(f"{prefix}_RETRY_BASE_DELAY", 2.0),
            retry_max_delay=self.get_float(f"{prefix}_RETRY_MAX_DELAY", 60.0),
            debounce_seconds=self.get_float(f"{prefix}_DEBOUNCE_SECONDS", 180.0),
            batch_size=self.get_int(f"{prefix}_BATCH_SIZE", 50),
            discovery_reserve=self.get_int(f"{prefix}_DISCOVERY_RESERVE", 2000),
            callback_url=self.get(f"{prefix}_CALLBACK_URL") or None,
            webhook_secret=self.get(f"{prefix}_WEBHOOK_SECRET") or None,
            client_id=self.get(f"{prefix}_CLIENT_ID") or None,
            client_secret=self.get(f"{prefix}_CLIENT_SECRET") or None,
            offline_grace_seconds=self.get_float(f"{prefix}_OFFLINE_GRACE_SECONDS", 180.0),
        )

    def get_service_config(self) -> ServiceConfig:
        """Build the settings shared across platforms."""
        return ServiceConfig(
            redis_url=self.get('REDIS_URL', 'redis://localhost:6379/0'),
            key_prefix=self.get('REDIS_KEY_PREFIX', 'streamwatch'),
            channel_prefix=self.get('STREAMWATCH_CHANNEL_PREFIX', 'streams'),
            dedup_capacity=self.get_int('STREAMWATCH_DEDUP_CAPACITY', 10000),
            dedup_ttl=self.get_float('STREAMWATCH_DEDUP_TTL', 3600.0),
            snapshot_capacity=self.get_int('STREAMWATCH_SNAPSHOT_CAPACITY', 50000),
            snapshot_ttl=self.get_float('STREAMWATCH_SNAPSHOT_TTL', 604800.0),
            record_triggers=self.get_bool('STREAMWATCH_RECORD_TRIGGERS'),
            health_check_interval=self.get_float('MONITOR_HEALTH_CHECK_INTERVAL', 60.0),
            shutdown_grace=self.get_float('MONITOR_SHUTDOWN_GRACE', 10.0),
        )

    def reload(self) -> None:
        """Reload configuration from all sources."""
        self.load_configuration()

    @property
    def is_loaded(self) -> bool:
        return self._is_loaded

    def __repr__(self) -> str:
        source_count = len(set(self._config_sources.values()))
        return f"<ConfigurationManager(loaded={self._is_loaded}, settings={len(self._config)}, sources={source_count})>"

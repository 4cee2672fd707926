"""
Configuration for the SwitchBot BLE Ingester.
Settings come from the process environment, optionally seeded from a .env file.
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar, Union

import pytz
from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
TRUE_VALUES = ('true', '1', 'yes', 'on', 'enabled')
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

T = TypeVar("T")

_REQUIRED = object()


class ConfigurationError(Exception):
    """Raised when a setting is missing or invalid."""
    pass


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in TRUE_VALUES


class Config:
    """
    Typed access to environment settings.

    Values are read on every property access, so tests can change the
    environment between reads.
    """

    def __init__(self, env_file: Optional[Union[str, Path]] = None):
        """
        Args:
            env_file: Path to a .env file (defaults to .env in the project root).
                Variables already set in the environment take precedence.
        """
        self.logger = logging.getLogger(__name__)

        self.env_file = Path(env_file) if env_file is not None else PROJECT_ROOT / ".env"
        if self.env_file.exists():
            load_dotenv(self.env_file)
            self.logger.info(f"Loaded configuration from {self.env_file}")
        else:
            self.logger.debug(f"No environment file at {self.env_file}, using process environment")

    def _read(self, key: str, default: Any, cast: Callable[[str], T], kind: str) -> T:
        raw = os.getenv(key)
        if raw is None:
            if default is _REQUIRED or default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default
        try:
            return cast(raw)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be {kind}, got '{raw}'")

    def get_str(self, key: str, default: Optional[str] = None) -> str:
        return self._read(key, default, str, "a string")

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        return self._read(key, default, int, "an integer")

    def get_float(self, key: str, default: Optional[float] = None) -> float:
        return self._read(key, default, float, "a number")

    def get_bool(self, key: str, default: Optional[bool] = None) -> bool:
        return self._read(key, default, _parse_bool, "a boolean")

    def get_path(self, key: str, default: Optional[Union[str, Path]] = None) -> Path:
        """Path setting; relative values are anchored at the project root."""
        path = Path(self._read(key, None if default is None else str(default), str, "a path"))
        return path if path.is_absolute() else PROJECT_ROOT / path

    # Timezone
    @property
    def timezone_name(self) -> str:
        """IANA timezone used for display and for naive CSV timestamps."""
        return self.get_str("TIMEZONE", "UTC")

    @property
    def timezone(self) -> pytz.BaseTzInfo:
        name = self.timezone_name
        try:
            return pytz.timezone(name)
        except pytz.UnknownTimeZoneError:
            raise ConfigurationError(f"TIMEZONE '{name}' is not a valid IANA timezone")

    # InfluxDB
    @property
    def influxdb_url(self) -> str:
        return self.get_str("INFLUXDB_URL", "http://localhost:8086")

    @property
    def influxdb_token(self) -> str:
        return self.get_str("INFLUXDB_TOKEN")

    @property
    def influxdb_org(self) -> str:
        return self.get_str("INFLUXDB_ORG")

    @property
    def influxdb_bucket(self) -> str:
        return self.get_str("INFLUXDB_BUCKET", "home_environments")

    @property
    def influxdb_timeout(self) -> int:
        """Request timeout in seconds."""
        return self.get_int("INFLUXDB_TIMEOUT", 30)

    @property
    def influxdb_verify_ssl(self) -> bool:
        return self.get_bool("INFLUXDB_VERIFY_SSL", True)

    @property
    def influxdb_enable_gzip(self) -> bool:
        return self.get_bool("INFLUXDB_ENABLE_GZIP", True)

    @property
    def influxdb_retry_attempts(self) -> int:
        return self.get_int("INFLUXDB_RETRY_ATTEMPTS", 3)

    @property
    def influxdb_retry_delay(self) -> float:
        return self.get_float("INFLUXDB_RETRY_DELAY", 2.0)

    @property
    def influxdb_retry_exponential_base(self) -> float:
        return self.get_float("INFLUXDB_RETRY_EXPONENTIAL_BASE", 2.0)

    # Bluetooth
    @property
    def ble_adapter(self) -> str:
        """Adapter name such as ``hci0``, or ``auto`` for the system default."""
        return self.get_str("BLE_ADAPTER", "auto")

    # Ingestion
    @property
    def dedup_tolerance_seconds(self) -> float:
        """Maximum distance between an observation and its minute boundary."""
        return self.get_float("DEDUP_TOLERANCE_SECONDS", 20.0)

    @property
    def flush_interval(self) -> float:
        return self.get_float("FLUSH_INTERVAL", 10.0)

    @property
    def buffer_lock_timeout(self) -> float:
        return self.get_float("BUFFER_LOCK_TIMEOUT", 5.0)

    @property
    def import_batch_size(self) -> int:
        return self.get_int("IMPORT_BATCH_SIZE", 1000)

    # Logging
    @property
    def log_level(self) -> str:
        return self.get_str("LOG_LEVEL", "INFO").upper()

    @property
    def log_dir(self) -> Path:
        return self.get_path("LOG_DIR", "./logs")

    @property
    def log_max_file_size(self) -> int:
        return self.get_int("LOG_MAX_FILE_SIZE", 10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return self.get_int("LOG_BACKUP_COUNT", 5)

    @property
    def log_enable_console(self) -> bool:
        return self.get_bool("LOG_ENABLE_CONSOLE", True)

    def _check_timezone(self):
        self.timezone

    def _check_influxdb(self):
        if not self.influxdb_url.startswith(("http://", "https://")):
            yield "INFLUXDB_URL must start with http:// or https://"
        if self.influxdb_token in ("", "your_influxdb_token_here"):
            yield "INFLUXDB_TOKEN must be set to a valid token"
        if not self.influxdb_org:
            yield "INFLUXDB_ORG cannot be empty"
        if not self.influxdb_bucket:
            yield "INFLUXDB_BUCKET cannot be empty"
        if self.influxdb_retry_attempts < 1:
            yield "INFLUXDB_RETRY_ATTEMPTS must be at least 1"

    def _check_ingestion(self):
        if not 0 < self.dedup_tolerance_seconds < 30:
            yield "DEDUP_TOLERANCE_SECONDS must be between 0 and 30 (exclusive)"
        if self.flush_interval <= 0:
            yield "FLUSH_INTERVAL must be positive"
        if self.buffer_lock_timeout <= 0:
            yield "BUFFER_LOCK_TIMEOUT must be positive"
        if self.import_batch_size < 1:
            yield "IMPORT_BATCH_SIZE must be at least 1"

    def _check_logging(self):
        if self.log_level not in LOG_LEVELS:
            yield f"LOG_LEVEL must be one of {list(LOG_LEVELS)}"

    def validate_configuration(self) -> bool:
        """
        Check every setting and report all problems at once.

        Returns:
            bool: True if the configuration is valid

        Raises:
            ConfigurationError: Listing each invalid or missing setting
        """
        errors = []
        for check in (self._check_timezone, self._check_influxdb,
                      self._check_ingestion, self._check_logging):
            try:
                errors.extend(check() or ())
            except ConfigurationError as e:
                errors.append(str(e))

        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors)
            )
        return True

    def get_summary(self) -> dict:
        """Settings for startup logging. The token is never included."""
        return {
            'timezone': self.timezone_name,
            'influxdb': {
                'url': self.influxdb_url,
                'org': self.influxdb_org,
                'bucket': self.influxdb_bucket,
                'verify_ssl': self.influxdb_verify_ssl,
                'retry_attempts': self.influxdb_retry_attempts,
            },
            'ble': {'adapter': self.ble_adapter},
            'ingest': {
                'dedup_tolerance_seconds': self.dedup_tolerance_seconds,
                'flush_interval': self.flush_interval,
                'buffer_lock_timeout': self.buffer_lock_timeout,
                'import_batch_size': self.import_batch_size,
            },
            'logging': {
                'level': self.log_level,
                'dir': str(self.log_dir),
                'enable_console': self.log_enable_console,
            },
        }

"""
Runtime configuration for the Ruuvi collector.
Loads settings from environment variables (optionally via a .env file) with
type conversion, validation and defaults.
"""

import os
from pathlib import Path
from typing import Optional, Union
from dotenv import load_dotenv
import logging


PROJECT_ROOT = Path(__file__).parent.parent.parent

VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class Config:
    """
    Configuration manager that loads settings from environment variables.
    Provides validation and type conversion for configuration values.
    """

    def __init__(self, env_file: Optional[Union[str, Path]] = None):
        """
        Initialize configuration manager.

        Args:
            env_file: Path to .env file (defaults to .env in project root)
        """
        self.logger = logging.getLogger(__name__)

        if env_file is None:
            env_file = PROJECT_ROOT / ".env"

        if Path(env_file).exists():
            load_dotenv(env_file)
            self.logger.info(f"Loaded configuration from {env_file}")
        else:
            self.logger.debug(f"Environment file {env_file} not found, using system environment")

    def get_str(self, key: str, default: Optional[str] = None) -> str:
        """Get string configuration value."""
        value = os.getenv(key, default)
        if value is None:
            raise ConfigurationError(f"Required configuration key '{key}' not found")
        return value

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        """Get integer configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be an integer, got '{value}'")

    def get_float(self, key: str, default: Optional[float] = None) -> float:
        """Get float configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        try:
            return float(value)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be a float, got '{value}'")

    def get_bool(self, key: str, default: Optional[bool] = None) -> bool:
        """Get boolean configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        return value.lower() in ('true', '1', 'yes', 'on', 'enabled')

    def get_path(self, key: str, default: Optional[Union[str, Path]] = None) -> Path:
        """Get path configuration value, relative paths resolve against the project root."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            value = str(default)

        path = Path(value)
        if not path.is_absolute():
            path = PROJECT_ROOT / path

        return path

    # Collector configuration file
    @property
    def collector_config_file(self) -> Path:
        return self.get_path("COLLECTOR_CONFIG_FILE", "./config.json")

    # BLE Configuration
    @property
    def ble_adapter(self) -> str:
        return self.get_str("BLE_ADAPTER", "auto")

    @property
    def ble_scan_duration(self) -> float:
        return self.get_float("BLE_SCAN_DURATION", 5.0)

    @property
    def ble_connect_timeout(self) -> float:
        return self.get_float("BLE_CONNECT_TIMEOUT", 20.0)

    @property
    def ble_read_timeout(self) -> float:
        return self.get_float("BLE_READ_TIMEOUT", 5.0)

    @property
    def ble_retry_delay(self) -> float:
        return self.get_float("BLE_RETRY_DELAY", 1.0)

    @property
    def ble_retry_backoff_max(self) -> float:
        """Upper bound for the reconnect delay; equal to the retry delay disables backoff."""
        return self.get_float("BLE_RETRY_BACKOFF_MAX", 30.0)

    @property
    def ble_adapter_retry_attempts(self) -> int:
        return self.get_int("BLE_ADAPTER_RETRY_ATTEMPTS", 3)

    # Polling and discovery
    @property
    def poll_max_concurrency(self) -> int:
        return self.get_int("POLL_MAX_CONCURRENCY", 4)

    @property
    def discovery_startup_timeout(self) -> Optional[float]:
        """Seconds to wait for all devices at startup; 0 waits forever."""
        value = self.get_float("DISCOVERY_STARTUP_TIMEOUT", 60.0)
        return None if value == 0 else value

    @property
    def reconcile_interval(self) -> float:
        return self.get_float("RECONCILE_INTERVAL", 30.0)

    @property
    def status_interval(self) -> int:
        return self.get_int("STATUS_INTERVAL", 300)

    # InfluxDB Configuration
    @property
    def influxdb_timeout(self) -> int:
        return self.get_int("INFLUXDB_TIMEOUT", 30)

    @property
    def influxdb_verify_ssl(self) -> bool:
        return self.get_bool("INFLUXDB_VERIFY_SSL", True)

    @property
    def influxdb_enable_gzip(self) -> bool:
        return self.get_bool("INFLUXDB_ENABLE_GZIP", True)

    # Logging Configuration
    @property
    def log_level(self) -> str:
        return self.get_str("LOG_LEVEL", "INFO").upper()

    @property
    def log_dir(self) -> Path:
        return self.get_path("LOG_DIR", "./logs")

    @property
    def log_max_file_size(self) -> int:
        return self.get_int("LOG_MAX_FILE_SIZE", 10 * 1024 * 1024)  # 10MB

    @property
    def log_backup_count(self) -> int:
        return self.get_int("LOG_BACKUP_COUNT", 5)

    @property
    def log_enable_console(self) -> bool:
        return self.get_bool("LOG_ENABLE_CONSOLE", True)

    @property
    def log_enable_syslog(self) -> bool:
        return self.get_bool("LOG_ENABLE_SYSLOG", False)

    def validate_configuration(self) -> bool:
        """
        Validate all configuration values.

        Returns:
            bool: True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors = []

        try:
            if self.ble_scan_duration <= 0:
                errors.append("BLE_SCAN_DURATION must be positive")
            if self.ble_connect_timeout <= 0:
                errors.append("BLE_CONNECT_TIMEOUT must be positive")
            if self.ble_read_timeout <= 0:
                errors.append("BLE_READ_TIMEOUT must be positive")
            if self.ble_retry_delay <= 0:
                errors.append("BLE_RETRY_DELAY must be positive")
            if self.ble_retry_backoff_max < 0:
                errors.append("BLE_RETRY_BACKOFF_MAX cannot be negative")
            if self.ble_adapter_retry_attempts < 1:
                errors.append("BLE_ADAPTER_RETRY_ATTEMPTS must be at least 1")
        except ConfigurationError as e:
            errors.append(str(e))

        try:
            if self.poll_max_concurrency < 1:
                errors.append("POLL_MAX_CONCURRENCY must be at least 1")
            if self.discovery_startup_timeout is not None and self.discovery_startup_timeout < 0:
                errors.append("DISCOVERY_STARTUP_TIMEOUT cannot be negative")
            if self.reconcile_interval <= 0:
                errors.append("RECONCILE_INTERVAL must be positive")
            if self.status_interval <= 0:
                errors.append("STATUS_INTERVAL must be positive")
        except ConfigurationError as e:
            errors.append(str(e))

        try:
            if self.influxdb_timeout <= 0:
                errors.append("INFLUXDB_TIMEOUT must be positive")
        except ConfigurationError as e:
            errors.append(str(e))

        try:
            if self.log_level not in VALID_LOG_LEVELS:
                errors.append(f"LOG_LEVEL must be one of {VALID_LOG_LEVELS}")
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors))

        return True

    def get_summary(self) -> dict:
        """Get configuration summary for logging/debugging."""
        return {
            'config_file': str(self.collector_config_file),
            'ble': {
                'adapter': self.ble_adapter,
                'scan_duration': self.ble_scan_duration,
                'connect_timeout': self.ble_connect_timeout,
                'read_timeout': self.ble_read_timeout,
                'retry_delay': self.ble_retry_delay,
                'retry_backoff_max': self.ble_retry_backoff_max,
            },
            'polling': {
                'max_concurrency': self.poll_max_concurrency,
                'startup_timeout': self.discovery_startup_timeout,
                'reconcile_interval': self.reconcile_interval,
                'status_interval': self.status_interval,
            },
            'influxdb': {
                'timeout': self.influxdb_timeout,
                'verify_ssl': self.influxdb_verify_ssl,
                'enable_gzip': self.influxdb_enable_gzip,
            },
            'logging': {
                'level': self.log_level,
                'dir': str(self.log_dir),
                'enable_console': self.log_enable_console,
                'enable_syslog': self.log_enable_syslog,
            },
        }

"""
Lineflux Configuration Loader

Loads configuration from multiple sources with precedence:
1. Environment variables (highest priority)
2. lineflux.conf file (TOML format)
3. Built-in defaults (lowest priority)

Example lineflux.conf:

    [client]
    host = "https://us-east-1-1.aws.cloud2.influxdata.com"
    token = "my-token"
    database = "telemetry"
    timeout = 10

    [client.headers]
    X-Tenant = "acme"

    [write]
    precision = "ms"
    gzip_threshold = 4096
    batch_size = 1048576
    flush_interval = 1.0

    [write.default_tags]
    region = "eu-west"

    [logging]
    level = "INFO"
    format = "structured"
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from lineflux.config import ClientConfig
from lineflux.exceptions import ConfigurationError
from lineflux.logging_config import setup_logging

logger = logging.getLogger(__name__)


def _to_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


# Environment variable -> (section, key[, converter])
ENV_MAPPINGS = {
    # Client
    "INFLUX_HOST": ("client", "host"),
    "INFLUX_TOKEN": ("client", "token"),
    "INFLUX_ORG": ("client", "org"),
    "INFLUX_DATABASE": ("client", "database"),
    "INFLUX_TIMEOUT": ("client", "timeout", float),
    "INFLUX_ALLOW_REDIRECTS": ("client", "allow_redirects", _to_bool),
    "INFLUX_DISABLE_CERT_VALIDATION": ("client", "disable_certificate_validation", _to_bool),
    "INFLUX_PROXY": ("client", "proxy"),

    # Write
    "INFLUX_PRECISION": ("write", "precision"),
    "INFLUX_GZIP_THRESHOLD": ("write", "gzip_threshold", int),
    "INFLUX_BATCH_SIZE": ("write", "batch_size", int),
    "INFLUX_FLUSH_INTERVAL": ("write", "flush_interval", float),
    "INFLUX_MAX_RETRIES": ("write", "max_retries", int),
    "INFLUX_MAX_INFLIGHT_BATCHES": ("write", "max_inflight_batches", int),

    # Logging
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FORMAT": ("logging", "format"),
    "LOG_INCLUDE_TRACE": ("logging", "include_trace", _to_bool),
}


class LinefluxConfigLoader:
    """Layered configuration loader"""

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration

        Args:
            config_file: Path to lineflux.conf (default: $LINEFLUX_CONFIG_FILE or ./lineflux.conf)
            environ: Environment mapping (default: os.environ)
        """
        self.environ = os.environ if environ is None else environ
        self.config_file = config_file or self.environ.get("LINEFLUX_CONFIG_FILE", "lineflux.conf")
        self.config: Dict[str, Any] = {}

        # Load configuration in order of precedence
        self._load_defaults()
        self._load_config_file()
        self._load_env_overrides()

    def _load_defaults(self):
        """Load built-in default configuration"""
        self.config = {
            "client": {
                "host": "",
                "timeout": 10.0,
                "allow_redirects": False,
                "disable_certificate_validation": False,
                "headers": {},
            },
            "write": {
                "gzip_threshold": 1000,
                "batch_size": 1024 * 1024,
                "flush_interval": 1.0,
                "default_tags": {},
            },
            "logging": {
                "level": "INFO",
                "format": "structured",
                "include_trace": False,
            },
        }

    def _load_config_file(self):
        """Load configuration from the TOML file, if present"""
        config_path = Path(self.config_file)

        if not config_path.exists():
            logger.info(f"Config file not found: {self.config_file}, using defaults")
            return

        try:
            file_config = toml.load(config_path)
        except (toml.TomlDecodeError, OSError) as e:
            raise ConfigurationError(f"Failed to load config file {self.config_file}: {e}") from e

        logger.info(f"Loaded configuration from: {self.config_file}")
        self._deep_merge(self.config, file_config)

    def _load_env_overrides(self):
        """Load environment variable overrides"""
        for env_var, mapping in ENV_MAPPINGS.items():
            value = self.environ.get(env_var)
            if value is None:
                continue

            *path, converter = mapping if len(mapping) > 2 else (*mapping, None)

            if converter is not None:
                try:
                    value = converter(value)
                except ValueError as e:
                    raise ConfigurationError(f"Invalid value for {env_var}={value!r}: {e}") from e

            self._set_nested(self.config, path, value)
            # Never log secrets
            shown = "***" if env_var == "INFLUX_TOKEN" else value
            logger.debug(f"Environment override: {env_var}={shown}")

    def _deep_merge(self, base: Dict, override: Dict):
        """Deep merge override dict into base dict"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _set_nested(self, config: Dict, path: list, value: Any):
        """Set nested dictionary value"""
        for key in path[:-1]:
            if key not in config:
                config[key] = {}
            config = config[key]
        config[path[-1]] = value

    def get(self, *path, default=None) -> Any:
        """
        Get configuration value by path

        Args:
            *path: Path to config value (e.g., "write", "precision")
            default: Default value if not found
        """
        value = self.config
        for key in path:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def to_client_config(self) -> ClientConfig:
        """Build a validated ClientConfig from the merged settings"""
        client = copy.deepcopy(self.config.get("client", {}))
        client["write_options"] = copy.deepcopy(self.config.get("write", {}))
        return ClientConfig.build(**client)

    def setup_logging(self):
        """Configure logging from the [logging] section"""
        setup_logging(
            level=str(self.get("logging", "level", default="INFO")),
            structured=self.get("logging", "format", default="structured") == "structured",
            include_trace=bool(self.get("logging", "include_trace", default=False))
        )

    def dump(self) -> Dict[str, Any]:
        """Get complete configuration with the token masked (for debugging)"""
        dumped = copy.deepcopy(self.config)
        if dumped.get("client", {}).get("token"):
            dumped["client"]["token"] = "***"
        return dumped


def load_config(config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> ClientConfig:
    """
    Load a client configuration from defaults, file and environment

    Raises:
        ConfigurationError: unreadable file, bad value, or empty host
    """
    return LinefluxConfigLoader(config_file=config_file, environ=environ).to_client_config()

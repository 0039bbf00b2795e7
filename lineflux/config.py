"""
Lineflux client configuration

Immutable pydantic models consumed by every stage of the write pipeline.
"""

from enum import Enum
from typing import Dict, Optional
from urllib.parse import parse_qs, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from lineflux.exceptions import ConfigurationError


class WritePrecision(str, Enum):
    """Time unit of timestamp integers"""

    NS = "ns"
    US = "us"
    MS = "ms"
    S = "s"

    @property
    def nanoseconds(self) -> int:
        """Number of nanoseconds in one unit"""
        return _NANOS_PER_UNIT[self]

    @classmethod
    def parse(cls, value) -> "WritePrecision":
        """Accept enum members, short codes (ns, us...) and long names (nanosecond...)"""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        if key in _PRECISION_ALIASES:
            return _PRECISION_ALIASES[key]
        raise ConfigurationError(f"Unsupported write precision: {value!r}")


_NANOS_PER_UNIT = {
    WritePrecision.NS: 1,
    WritePrecision.US: 1_000,
    WritePrecision.MS: 1_000_000,
    WritePrecision.S: 1_000_000_000,
}

_PRECISION_ALIASES = {
    "ns": WritePrecision.NS,
    "nanosecond": WritePrecision.NS,
    "us": WritePrecision.US,
    "microsecond": WritePrecision.US,
    "ms": WritePrecision.MS,
    "millisecond": WritePrecision.MS,
    "s": WritePrecision.S,
    "second": WritePrecision.S,
}


class WriteOptions(BaseModel):
    """Batching, compression and retry options for writes"""

    model_config = ConfigDict(frozen=True)

    precision: Optional[WritePrecision] = None
    gzip_threshold: int = Field(default=1000, ge=0)  # bytes, 0 disables gzip
    batch_size: int = Field(default=1024 * 1024, gt=0)  # bytes per request
    flush_interval: float = Field(default=1.0, gt=0)  # seconds
    default_tags: Dict[str, str] = Field(default_factory=dict)

    # Retry
    max_retries: int = Field(default=5, ge=0)
    retry_interval: float = Field(default=1.0, ge=0)  # first backoff delay, seconds
    max_retry_delay: float = Field(default=30.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)
    retry_jitter: float = Field(default=0.2, ge=0)  # max random seconds added

    # Backpressure
    max_inflight_batches: int = Field(default=4, gt=0)

    @field_validator("precision", mode="before")
    @classmethod
    def _parse_precision(cls, value):
        if value is None or value == "":
            return None
        try:
            return WritePrecision.parse(value)
        except ConfigurationError as e:
            raise ValueError(str(e))


class ClientConfig(BaseModel):
    """
    Configuration of a write client.

    The host is normalized to end with '/'. An empty host is accepted by the
    model itself and rejected by ensure_valid(), which the client calls at
    construction. Instances are frozen: assigning an attribute raises.
    """

    model_config = ConfigDict(frozen=True)

    host: str = ""
    token: Optional[str] = None
    org: Optional[str] = None
    database: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=10.0, gt=0)  # seconds
    allow_redirects: bool = False
    disable_certificate_validation: bool = False
    proxy: Optional[str] = None
    write_options: WriteOptions = Field(default_factory=WriteOptions)

    @field_validator("host", mode="before")
    @classmethod
    def _normalize_host(cls, value):
        if value is None:
            return ""
        value = str(value).strip()
        if value and not value.endswith("/"):
            value = f"{value}/"
        return value

    def ensure_valid(self) -> "ClientConfig":
        """Check the settings that are fatal for a client"""
        if not self.host:
            raise ConfigurationError("The URL of the server has to be defined (host is empty)")
        return self

    @property
    def write_precision(self) -> WritePrecision:
        """Effective write precision: explicit option, else nanoseconds"""
        return self.write_options.precision or WritePrecision.NS

    @classmethod
    def build(cls, **kwargs) -> "ClientConfig":
        """Construct and validate, reporting bad values as ConfigurationError"""
        write_options = kwargs.get("write_options")
        if isinstance(write_options, dict):
            kwargs["write_options"] = build_write_options(**write_options)
        try:
            config = cls(**kwargs)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid client configuration: {e}") from e
        return config.ensure_valid()

    @classmethod
    def from_connection_string(cls, connection_string: str) -> "ClientConfig":
        """
        Build a config from a single URL.

        Example:
            https://us-east-1-1.aws.cloud2.influxdata.com?token=my-token&database=db&precision=s&gzipThreshold=4096

        Recognized parameters: token, org, database, precision, gzipThreshold,
        timeout (seconds).
        """
        parts = urlsplit(connection_string)
        if not parts.scheme or not parts.netloc:
            raise ConfigurationError(f"Invalid connection string: {connection_string!r}")

        params = {key: values[-1] for key, values in parse_qs(parts.query).items()}
        host = urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))

        write_options = {}
        if "precision" in params:
            write_options["precision"] = params["precision"]
        if "gzipThreshold" in params:
            write_options["gzip_threshold"] = params["gzipThreshold"]

        kwargs = {
            "host": host,
            "token": params.get("token"),
            "org": params.get("org"),
            "database": params.get("database"),
            "write_options": write_options,
        }
        if "timeout" in params:
            kwargs["timeout"] = params["timeout"]
        return cls.build(**kwargs)


def build_write_options(**kwargs) -> WriteOptions:
    """Construct WriteOptions, reporting bad values as ConfigurationError"""
    try:
        return WriteOptions(**kwargs)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid write options: {e}") from e

"""
Lineflux

Batching, retrying line protocol write client for time-series databases.
"""

__version__ = "0.1.0"

from lineflux.config import ClientConfig, WriteOptions, WritePrecision
from lineflux.exceptions import (
    ClientClosedError,
    ConfigurationError,
    EncodingError,
    LinefluxError,
    RetryExhaustedError,
    ServerRejectionError,
    TransportError,
    WriteError,
)
from lineflux.ingest.point import FieldKind, FieldValue, Point
from lineflux.logging_config import setup_logging
from lineflux.client import WriteClient

__all__ = [
    'ClientConfig',
    'WriteOptions',
    'WritePrecision',
    'Point',
    'FieldKind',
    'FieldValue',
    'WriteClient',
    'LinefluxError',
    'ConfigurationError',
    'EncodingError',
    'ClientClosedError',
    'WriteError',
    'TransportError',
    'ServerRejectionError',
    'RetryExhaustedError',
    'setup_logging',
]

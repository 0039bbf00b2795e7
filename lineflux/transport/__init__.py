"""
Lineflux Transport Module

Compression, retry policy and the HTTP write client.
"""

from lineflux.transport.compression import CompressedPayload, GzipCompressor
from lineflux.transport.http_writer import HttpWriter
from lineflux.transport.retry import RetryPolicy, WriteResult, WriteState

__all__ = ['CompressedPayload', 'GzipCompressor', 'HttpWriter', 'RetryPolicy', 'WriteResult', 'WriteState']

"""
Lineflux Ingestion Module

Point model, line protocol encoding and write buffering.
"""

from .line_protocol import LineProtocolEncoder, LineProtocolParser
from .point import Point
from .write_buffer import Batch, Destination, WriteBuffer

__all__ = ['LineProtocolEncoder', 'LineProtocolParser', 'Point', 'Batch', 'Destination', 'WriteBuffer']

"""
Batch compression

Gzip-encodes a batch once its payload reaches the configured threshold.
"""

import gzip
import logging
from typing import NamedTuple

from lineflux.ingest.write_buffer import Batch

logger = logging.getLogger(__name__)


class CompressedPayload(NamedTuple):
    body: bytes
    compressed: bool


class GzipCompressor:
    """Compresses payloads at or above `threshold` bytes; a threshold of 0 disables gzip"""

    def __init__(self, threshold: int, compresslevel: int = 6):
        self.threshold = threshold
        self.compresslevel = compresslevel

    def should_compress(self, size: int) -> bool:
        return self.threshold > 0 and size >= self.threshold

    def compress(self, batch: Batch) -> CompressedPayload:
        """
        Compress a batch for sending

        Returns:
            CompressedPayload; `compressed` tells the transport whether to
            send Content-Encoding: gzip
        """
        payload = batch.payload
        if not self.should_compress(len(payload)):
            return CompressedPayload(payload, False)

        body = gzip.compress(payload, compresslevel=self.compresslevel)
        logger.debug(f"Compressed batch {batch.batch_id}: {len(payload)} -> {len(body)} bytes")
        return CompressedPayload(body, True)

"""
Write Buffer

Buffers encoded line protocol in memory and hands it off as batches.
Designed to decouple the rate at which an application produces points from
the rate at which batches are sent to the server.

A batch is handed off when, for its destination, whichever comes first:
- accumulated payload size >= batch_size bytes
- the oldest buffered line is flush_interval seconds old
- the caller flushes or closes explicitly
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from lineflux.config import WritePrecision

logger = logging.getLogger(__name__)


class Destination(NamedTuple):
    """Where a batch is written to"""
    database: Optional[str]
    precision: WritePrecision


@dataclass(frozen=True)
class Batch:
    """Ordered encoded lines bound for one destination"""

    lines: Tuple[str, ...]
    size: int  # bytes of the newline-joined UTF-8 payload
    destination: Destination
    batch_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def payload(self) -> bytes:
        return '\n'.join(self.lines).encode('utf-8')

    def __len__(self) -> int:
        return len(self.lines)


class _PendingBatch:
    """Mutable accumulator for one destination; only touched under the buffer lock"""

    __slots__ = ('lines', 'size', 'started_at')

    def __init__(self, started_at: float):
        self.lines: List[str] = []
        self.size = 0
        self.started_at = started_at

    def add(self, line: str):
        # +1 for the newline separator between lines
        self.size += len(line.encode('utf-8')) + (1 if self.lines else 0)
        self.lines.append(line)


class WriteBuffer:
    """
    Coroutine-safe buffer for batching line protocol

    Features:
    - Size and age flush triggers
    - Per-destination (database, precision) buffering
    - Atomic hand-off: a given buffer state is consumed by exactly one flush

    All mutation and swapping happens under a single asyncio.Lock. Nothing
    here does network I/O, so the lock is never held across a send.
    """

    def __init__(self, batch_size: int, flush_interval: float, clock=time.monotonic):
        """
        Initialize buffer

        Args:
            batch_size: Payload bytes at which a destination is flushed
            flush_interval: Max seconds a line may wait before its batch is flushed
            clock: Monotonic time source (seconds)
        """
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self._clock = clock

        self._pending: Dict[Destination, _PendingBatch] = {}
        self._lock = asyncio.Lock()
        self._data_event = asyncio.Event()

        # Metrics
        self.total_lines_buffered = 0
        self.total_batches = 0

    async def append(self, destination: Destination, lines: Sequence[str]) -> List[Batch]:
        """
        Add encoded lines to the buffer

        Returns:
            Batches that reached the size limit and were handed off
        """
        if not lines:
            return []

        ready = []

        async with self._lock:
            pending = self._pending.get(destination)
            if pending is None:
                pending = self._pending[destination] = _PendingBatch(self._clock())

            for line in lines:
                pending.add(line)
                self.total_lines_buffered += 1

                if pending.size >= self.batch_size:
                    logger.debug(
                        f"Buffer for {self._describe(destination)} reached size limit "
                        f"({pending.size} >= {self.batch_size} bytes), flushing"
                    )
                    ready.append(self._take(destination))
                    pending = self._pending[destination] = _PendingBatch(self._clock())

            if not pending.lines:
                del self._pending[destination]

            if self._pending:
                self._data_event.set()

        return ready

    async def drain_expired(self) -> List[Batch]:
        """Hand off batches whose oldest line is at least flush_interval old"""
        async with self._lock:
            now = self._clock()
            expired = [
                destination for destination, pending in self._pending.items()
                if now - pending.started_at >= self.flush_interval
            ]
            batches = []
            for destination in expired:
                logger.debug(f"Buffer for {self._describe(destination)} reached age limit, flushing")
                batches.append(self._take(destination))
            return batches

    async def drain_all(self) -> List[Batch]:
        """Hand off everything buffered (explicit flush / close)"""
        async with self._lock:
            return [self._take(destination) for destination in list(self._pending)]

    def seconds_until_deadline(self) -> Optional[float]:
        """Seconds until the oldest pending batch expires (<= 0 if due), None when empty"""
        if not self._pending:
            return None
        oldest = min(pending.started_at for pending in self._pending.values())
        return oldest + self.flush_interval - self._clock()

    async def wait_for_data(self):
        """Wait until something is buffered"""
        await self._data_event.wait()

    def _take(self, destination: Destination) -> Batch:
        """Swap out a destination's pending lines; caller must hold the lock"""
        pending = self._pending.pop(destination)
        if not self._pending:
            self._data_event.clear()
        self.total_batches += 1
        return Batch(lines=tuple(pending.lines), size=pending.size, destination=destination)

    @staticmethod
    def _describe(destination: Destination) -> str:
        return f"'{destination.database or '<default>'}' ({destination.precision.value})"

    @property
    def is_empty(self) -> bool:
        return not self._pending

    def get_stats(self) -> Dict[str, Any]:
        """Get buffer statistics"""
        return {
            'total_lines_buffered': self.total_lines_buffered,
            'total_batches': self.total_batches,
            'current_buffer_sizes': {
                self._describe(destination): {'lines': len(pending.lines), 'bytes': pending.size}
                for destination, pending in self._pending.items()
            },
            'oldest_buffer_age_seconds': self._get_oldest_buffer_age()
        }

    def _get_oldest_buffer_age(self) -> Optional[float]:
        """Get age of oldest pending batch in seconds"""
        if not self._pending:
            return None
        oldest = min(pending.started_at for pending in self._pending.values())
        return self._clock() - oldest

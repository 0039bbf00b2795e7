"""
Lineflux Write Client

Accepts points from the application and delivers them to the server:

    Point -> LineProtocolEncoder -> WriteBuffer -> GzipCompressor -> HttpWriter -> server

Usage:

    async with WriteClient(host="http://localhost:8181", token="my-token", database="sensors") as client:
        await client.write(Point("temperature").tag("room", "kitchen").field("celsius", 21.5))

Batches handed off by the buffer are sent by background tasks, so write()
only waits on the network when max_inflight_batches sends are already
running (backpressure). Failures of batches sent in the background are
reported by the next flush() or close(), and through error_callback.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from lineflux.config import ClientConfig, WritePrecision
from lineflux.config_loader import LinefluxConfigLoader
from lineflux.exceptions import (
    ClientClosedError,
    ConfigurationError,
    EncodingError,
    LinefluxError,
)
from lineflux.ingest.line_protocol import LineProtocolEncoder, LineProtocolParser
from lineflux.ingest.point import Point
from lineflux.ingest.write_buffer import Batch, Destination, WriteBuffer
from lineflux.transport.compression import GzipCompressor
from lineflux.transport.http_writer import HttpWriter
from lineflux.transport.retry import WriteResult

logger = logging.getLogger(__name__)

Record = Union[Point, str, bytes, Dict[str, Any]]


class WriteClient:
    """
    Batching, retrying write client

    Configuration is validated once here and never changes afterwards: the
    client keeps its own deep copy, and the pydantic models are frozen.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        success_callback: Optional[Callable[[Batch, WriteResult], Any]] = None,
        error_callback: Optional[Callable[[Batch, LinefluxError], Any]] = None,
        **settings
    ):
        """
        Initialize client

        Args:
            config: Client configuration; alternatively pass its fields as keyword settings
            success_callback: Called with (batch, result) after each successful batch
            error_callback: Called with (batch, error) after each failed batch

        Raises:
            ConfigurationError: empty host or invalid settings
        """
        if config is None:
            config = ClientConfig.build(**settings)
        elif settings:
            raise ConfigurationError("Pass either a ClientConfig or keyword settings, not both")
        else:
            config = config.model_copy(deep=True).ensure_valid()

        self.config = config
        self.success_callback = success_callback
        self.error_callback = error_callback

        options = config.write_options
        self._default_tags = dict(options.default_tags)
        self._buffer = WriteBuffer(batch_size=options.batch_size, flush_interval=options.flush_interval)
        self._compressor = GzipCompressor(threshold=options.gzip_threshold)
        self._writer = HttpWriter(config)

        # Backpressure: at most max_inflight_batches sends at a time
        self._inflight = asyncio.Semaphore(options.max_inflight_batches)
        self._tasks: Set[asyncio.Task] = set()
        self._errors: List[LinefluxError] = []

        self._flush_task: Optional[asyncio.Task] = None
        self._running = False
        self._closing = False
        self._closed = False
        self._start_lock = asyncio.Lock()
        self._close_lock = asyncio.Lock()
        self._active_writes = 0
        self._writes_idle = asyncio.Event()
        self._writes_idle.set()

        # Metrics
        self.total_points_accepted = 0
        self.total_points_rejected = 0
        self.total_batches_sent = 0
        self.total_batches_failed = 0

    @classmethod
    def from_connection_string(cls, connection_string: str, **kwargs) -> "WriteClient":
        """Create a client from a URL such as https://host?token=...&database=..."""
        return cls(ClientConfig.from_connection_string(connection_string), **kwargs)

    @classmethod
    def from_config_file(
        cls,
        config_file: Optional[str] = None,
        configure_logging: bool = False,
        **kwargs
    ) -> "WriteClient":
        """
        Create a client from lineflux.conf and INFLUX_* environment variables

        Args:
            config_file: Path to the TOML file (default: $LINEFLUX_CONFIG_FILE or ./lineflux.conf)
            configure_logging: Also install the root log handler described by the
                [logging] section (level, structured or plain format)
        """
        loader = LinefluxConfigLoader(config_file=config_file)
        if configure_logging:
            loader.setup_logging()
        return cls(loader.to_client_config(), **kwargs)

    async def __aenter__(self) -> "WriteClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self):
        """Open the HTTP session and start the flush-interval timer"""
        if self._closing:
            raise ClientClosedError("Client is closed")
        if self._running:
            return

        async with self._start_lock:
            if self._running:
                return
            await self._writer.open()
            self._running = True
            self._flush_task = asyncio.create_task(self._periodic_flush())

        options = self.config.write_options
        logger.info(
            f"WriteClient started (host={self.config.host}, batch_size={options.batch_size}B, "
            f"flush_interval={options.flush_interval}s, gzip_threshold={options.gzip_threshold}B)"
        )

    async def write(
        self,
        records: Union[Record, Iterable[Record]],
        database: Optional[str] = None,
        precision: Optional[Union[WritePrecision, str]] = None
    ):
        """
        Buffer points for writing

        Args:
            records: A Point, a line protocol string (may hold several lines),
                a dict in Point.from_dict() shape, or an iterable of those
            database: Target database (default: config.database)
            precision: Timestamp precision (default: configured precision)

        Raises:
            EncodingError: some records were rejected; all others were buffered
            ClientClosedError: the client is closing or closed
        """
        if self._closing:
            raise ClientClosedError("Cannot write: client is closed")

        self._active_writes += 1
        self._writes_idle.clear()
        try:
            await self.start()

            precision = WritePrecision.parse(precision) if precision is not None else self.config.write_precision
            destination = Destination(database or self.config.database, precision)

            lines, rejected = self._encode(records, precision)
            self.total_points_accepted += len(lines)
            self.total_points_rejected += len(rejected)

            ready = await self._buffer.append(destination, lines)
            if ready:
                await self._dispatch(ready)
        finally:
            self._active_writes -= 1
            if self._active_writes == 0:
                self._writes_idle.set()

        if rejected:
            first_record, first_error = rejected[0]
            raise EncodingError(
                f"Rejected {len(rejected)} of {len(lines) + len(rejected)} records "
                f"(others were buffered): {first_error}",
                point=first_record,
                rejected=rejected
            )

    async def flush(self):
        """
        Send everything buffered and wait for all in-flight batches

        Raises:
            WriteError: the first batch failure since the last flush()/close()
        """
        batches = await self._buffer.drain_all()
        if batches:
            await self._dispatch(batches)
        await self._wait_inflight()
        self._raise_pending_errors()

    async def close(self):
        """
        Flush remaining points, wait for in-flight sends and release the HTTP session

        New writes are rejected as soon as close() starts. Safe to call more than once.

        Raises:
            WriteError: the first batch failure not yet reported
        """
        async with self._close_lock:
            if self._closed:
                return
            self._closing = True

            await self._writes_idle.wait()
            await self._stop_timer()

            try:
                batches = await self._buffer.drain_all()
                if batches:
                    await self._dispatch(batches)
                await self._wait_inflight()
            finally:
                await self._writer.close()
                self._running = False
                self._closed = True
                logger.info(
                    f"WriteClient closed. Points accepted: {self.total_points_accepted}, "
                    f"batches sent: {self.total_batches_sent}, failed: {self.total_batches_failed}"
                )

        self._raise_pending_errors()

    def _encode(
        self,
        records: Union[Record, Iterable[Record]],
        precision: WritePrecision
    ) -> Tuple[List[str], List[Tuple[Any, EncodingError]]]:
        """
        Encode records into lines; bad records are collected, not raised

        Consecutive points are encoded together with encode_batch; raw line
        protocol is validated and kept in its position among them.
        """
        if isinstance(records, (Point, str, bytes, dict)):
            records = [records]

        lines = []
        rejected = []
        points = []

        def encode_points():
            encoded, failed = LineProtocolEncoder.encode_batch(points, precision)
            lines.extend(encoded)
            rejected.extend(failed)
            points.clear()

        for record in records:
            try:
                if isinstance(record, (str, bytes)):
                    raw_lines = self._validate_raw(record)
                    encode_points()
                    lines.extend(raw_lines)
                    continue
                if isinstance(record, dict):
                    point = Point.from_dict(record)
                elif isinstance(record, Point):
                    point = record
                else:
                    raise EncodingError(f"Unsupported record type {type(record).__name__}")
                points.append(point.with_default_tags(self._default_tags))
            except EncodingError as e:
                logger.warning(f"Rejected record: {e}")
                rejected.append((record, e))

        encode_points()
        return lines, rejected

    @staticmethod
    def _validate_raw(record: Union[str, bytes]) -> List[str]:
        """Split raw line protocol into records, rejecting malformed input"""
        if isinstance(record, bytes):
            try:
                record = record.decode('utf-8')
            except UnicodeDecodeError as e:
                raise EncodingError(f"Line protocol is not valid UTF-8: {e}") from e

        raw_lines = LineProtocolParser.split_records(record)
        for raw in raw_lines:
            LineProtocolParser.parse_line(raw)
        return raw_lines

    async def _dispatch(self, batches: List[Batch]):
        """Start a send task per batch, waiting while max_inflight_batches are running"""
        for batch in batches:
            await self._inflight.acquire()
            task = asyncio.create_task(self._send_batch(batch))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _send_batch(self, batch: Batch):
        try:
            if self._compressor.should_compress(batch.size):
                # Compress in the thread pool to keep the event loop responsive
                loop = asyncio.get_running_loop()
                payload = await loop.run_in_executor(None, self._compressor.compress, batch)
            else:
                payload = self._compressor.compress(batch)

            result = await self._writer.send(
                payload.body,
                payload.compressed,
                database=batch.destination.database,
                precision=batch.destination.precision,
                batch_id=batch.batch_id
            )
        except LinefluxError as e:
            self.total_batches_failed += 1
            self._errors.append(e)
            logger.error(f"Batch {batch.batch_id} ({len(batch)} lines, {batch.size}B) failed: {e}")
            await self._run_callback(self.error_callback, batch, e)
        else:
            self.total_batches_sent += 1
            logger.debug(f"Batch {batch.batch_id} written ({len(batch)} lines, {result.attempts} attempts)")
            await self._run_callback(self.success_callback, batch, result)
        finally:
            self._inflight.release()

    @staticmethod
    async def _run_callback(callback, *args):
        if callback is None:
            return
        try:
            outcome = callback(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Write callback {callback!r} raised: {e}", exc_info=True)

    async def _wait_inflight(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def _raise_pending_errors(self):
        if not self._errors:
            return
        errors, self._errors = self._errors, []
        if len(errors) > 1:
            logger.error(f"{len(errors)} batches failed since the last flush; raising the first")
        raise errors[0]

    async def _periodic_flush(self):
        """Background task that flushes batches once they reach flush_interval"""
        while self._running:
            try:
                delay = self._buffer.seconds_until_deadline()
                if delay is None:
                    await self._buffer.wait_for_data()
                    continue
                if delay > 0:
                    await asyncio.sleep(delay)
                    continue

                batches = await self._buffer.drain_expired()
                if batches:
                    dispatch = asyncio.create_task(self._dispatch(batches))
                    try:
                        await asyncio.shield(dispatch)
                    except asyncio.CancelledError:
                        # Drained batches are no longer in the buffer; close() must still see them
                        await dispatch
                        break

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic flush: {e}", exc_info=True)
                await asyncio.sleep(self.config.write_options.flush_interval)

    async def _stop_timer(self):
        if self._flush_task is None:
            return
        self._flush_task.cancel()
        try:
            await self._flush_task
        except asyncio.CancelledError:
            pass
        self._flush_task = None

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics"""
        return {
            'total_points_accepted': self.total_points_accepted,
            'total_points_rejected': self.total_points_rejected,
            'total_batches_sent': self.total_batches_sent,
            'total_batches_failed': self.total_batches_failed,
            'inflight_batches': len(self._tasks),
            'buffer': self._buffer.get_stats(),
            'transport': self._writer.get_stats(),
        }

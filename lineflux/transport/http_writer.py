"""
HTTP Writer

Sends line protocol payloads to the server's write endpoint:

    POST {host}api/v2/write?org={org}&bucket={database}&precision={precision}
    Authorization: Token {token}

Classifies responses and retries transient failures (HTTP 429, 5xx,
timeouts, connection errors) with exponential backoff.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional

import aiohttp

from lineflux import __version__
from lineflux.config import ClientConfig, WritePrecision
from lineflux.exceptions import (
    ClientClosedError,
    RetryExhaustedError,
    ServerRejectionError,
    TransportError,
)
from lineflux.logging_config import batch_id_context, log_write_attempt
from lineflux.transport.retry import (
    RetryPolicy,
    WriteResult,
    WriteState,
    is_retryable_status,
    parse_retry_after,
)

logger = logging.getLogger(__name__)

WRITE_PATH = "api/v2/write"


def extract_error_message(body: str, headers: Mapping[str, str], reason: Optional[str] = None) -> str:
    """
    Pull the server's diagnostic out of an error response

    Understands the v2 JSON shape {"code": ..., "message": ...}, the v3 shape
    {"error": ..., "data": [{"error_message": ...}]} and the X-Influxdb-Error
    header; falls back to the raw body, then the HTTP reason.
    """
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, str) and message:
            return message

        error = payload.get("error")
        if isinstance(error, str) and error:
            data = payload.get("data")
            details = []
            if isinstance(data, list):
                details = [
                    item["error_message"] for item in data
                    if isinstance(item, dict) and item.get("error_message")
                ]
            elif isinstance(data, dict) and data.get("error_message"):
                details = [data["error_message"]]
            if details:
                return error + ":\n\t" + "\n\t".join(details)
            return error

    header_error = headers.get("X-Influxdb-Error")
    if header_error:
        return header_error

    if body and body.strip():
        return body.strip()
    return reason or "no diagnostic from server"


class HttpWriter:
    """
    Owns the HTTP session used for writes

    The session (and its connection pool) is created by open() and released
    by close(); it is never shared between writers.
    """

    def __init__(
        self,
        config: ClientConfig,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Any] = asyncio.sleep
    ):
        """
        Initialize writer

        Args:
            config: Validated client configuration
            retry_policy: Backoff policy (default: built from config.write_options)
            sleep: Coroutine used to wait between retries
        """
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy.from_options(config.write_options)
        self._sleep = sleep
        # Private copy; later changes to config.headers must not reach requests
        self._headers = dict(config.headers)
        self._session: Optional[aiohttp.ClientSession] = None

        # Metrics
        self.total_requests = 0
        self.total_retries = 0
        self.total_bytes_sent = 0

    @property
    def write_url(self) -> str:
        return f"{self.config.host}{WRITE_PATH}"

    @property
    def is_open(self) -> bool:
        return self._session is not None and not self._session.closed

    def ssl_setting(self):
        """
        aiohttp `ssl` argument for the connector

        False skips server certificate verification. That is an explicit,
        insecure opt-in meant for trusted or test environments only.
        """
        if self.config.disable_certificate_validation:
            return False
        return True

    async def open(self):
        """Create the HTTP session"""
        if self.is_open:
            return

        if self.config.disable_certificate_validation:
            logger.warning(f"Server certificate validation is DISABLED for writes to {self.config.host}")

        connector = aiohttp.TCPConnector(ssl=self.ssl_setting())
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            connector=connector
        )
        logger.debug(f"HTTP session opened for {self.write_url}")

    async def close(self):
        """Release the HTTP session"""
        if self._session is None:
            return
        session = self._session
        self._session = None
        await session.close()
        logger.debug("HTTP session closed")

    def build_params(self, database: Optional[str] = None, precision: Optional[WritePrecision] = None) -> Dict[str, str]:
        """Query parameters of the write request"""
        params = {}
        if self.config.org:
            params["org"] = self.config.org
        database = database or self.config.database
        if database:
            params["bucket"] = database
        params["precision"] = (precision or self.config.write_precision).value
        return params

    def build_headers(self, compressed: bool) -> Dict[str, str]:
        """
        Request headers: library defaults first, then configured headers,
        which win on key collision
        """
        headers = {
            "Content-Type": "text/plain; charset=utf-8",
            "Accept": "application/json",
            "User-Agent": f"lineflux/{__version__}",
        }
        if self.config.token:
            headers["Authorization"] = f"Token {self.config.token}"
        if compressed:
            headers["Content-Encoding"] = "gzip"

        headers.update(self._headers)
        return headers

    async def send(
        self,
        body: bytes,
        compressed: bool,
        database: Optional[str] = None,
        precision: Optional[WritePrecision] = None,
        batch_id: Optional[str] = None
    ) -> WriteResult:
        """
        Write one payload, retrying transient failures

        Args:
            body: Line protocol payload (gzip bytes when compressed)
            compressed: Whether body is gzip-encoded
            database: Target database (default: config.database)
            precision: Timestamp precision of the payload (default: config precision)
            batch_id: Identifier used in logs and errors

        Returns:
            WriteResult in the SUCCESS state

        Raises:
            ServerRejectionError: non-retryable response, raised immediately
            RetryExhaustedError: retryable failures persisted past max_retries
            TransportError: non-retryable network failure (TLS certificate, invalid URL)
        """
        result = WriteResult(batch_id=batch_id)
        token = batch_id_context.set(batch_id)
        try:
            while True:
                result.transition(WriteState.SENDING)
                try:
                    result.status = await self._post(body, compressed, database, precision, result)
                except TransportError as e:
                    e.batch_id = batch_id
                    result.status = e.status
                    if not e.retryable:
                        result.transition(WriteState.FAILED)
                        logger.error(f"Non-retryable transport failure for batch {batch_id}: {e}")
                        raise
                    if not self.retry_policy.can_retry(result.retries):
                        result.transition(WriteState.FAILED)
                        logger.error(f"Giving up on batch {batch_id} after {result.attempts} attempts: {e}")
                        raise RetryExhaustedError(result.attempts, e, batch_id=batch_id) from e

                    delay = self.retry_policy.delay_for(result.attempts, retry_after=e.retry_after)
                    result.transition(WriteState.RETRY_SCHEDULED)
                    self.total_retries += 1
                    logger.warning(
                        f"Retryable write failure for batch {batch_id} "
                        f"(attempt {result.attempts}/{self.retry_policy.max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                    continue
                except ServerRejectionError as e:
                    e.batch_id = batch_id
                    result.status = e.status
                    result.transition(WriteState.FAILED)
                    logger.error(f"Server rejected batch {batch_id}: {e}")
                    raise

                result.transition(WriteState.SUCCESS)
                return result
        finally:
            batch_id_context.reset(token)

    async def _post(
        self,
        body: bytes,
        compressed: bool,
        database: Optional[str],
        precision: Optional[WritePrecision],
        result: WriteResult
    ) -> int:
        """Issue one HTTP request; returns the status on 2xx, raises otherwise"""
        if not self.is_open:
            raise ClientClosedError("HTTP session is not open")

        self.total_requests += 1
        start = time.perf_counter()

        try:
            async with self._session.post(
                self.write_url,
                params=self.build_params(database, precision),
                data=body,
                headers=self.build_headers(compressed),
                proxy=self.config.proxy,
                allow_redirects=self.config.allow_redirects
            ) as response:
                status = response.status
                reason = response.reason
                headers = response.headers
                text = await response.text(errors="replace")

        except aiohttp.TooManyRedirects as e:
            raise ServerRejectionError(e.status or 0, f"Too many redirects: {e.message}")
        except (aiohttp.ClientSSLError, aiohttp.InvalidURL) as e:
            self._log_attempt(result, None, start, False, error=type(e).__name__)
            raise TransportError(
                f"Cannot write to {self.write_url}: {type(e).__name__}: {e}",
                retryable=False
            ) from e
        except asyncio.TimeoutError as e:
            self._log_attempt(result, None, start, False, error="timeout")
            raise TransportError(f"Timed out after {self.config.timeout}s writing to {self.write_url}") from e
        except aiohttp.ClientError as e:
            self._log_attempt(result, None, start, False, error=type(e).__name__)
            raise TransportError(f"Network error writing to {self.write_url}: {e}") from e

        success = 200 <= status < 300
        self._log_attempt(result, status, start, success)

        if success:
            self.total_bytes_sent += len(body)
            return status

        message = extract_error_message(text, headers, reason)
        if is_retryable_status(status):
            raise TransportError(
                f"HTTP {status}: {message}",
                status=status,
                retry_after=parse_retry_after(headers.get("Retry-After"))
            )
        raise ServerRejectionError(status, message, body=text, headers=dict(headers))

    def _log_attempt(self, result: WriteResult, status: Optional[int], start: float, success: bool, **kwargs):
        duration_ms = (time.perf_counter() - start) * 1000
        log_write_attempt(logger, result.batch_id, result.attempts, status, duration_ms, success, **kwargs)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'total_requests': self.total_requests,
            'total_retries': self.total_retries,
            'total_bytes_sent': self.total_bytes_sent,
        }

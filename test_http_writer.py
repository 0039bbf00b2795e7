"""
Tests for the HTTP writer against a scripted mock server
"""

import gzip
import json
import types

import aiohttp
import pytest
import pytest_asyncio
from aiohttp.test_utils import unused_port

from lineflux import (
    ClientClosedError,
    ClientConfig,
    RetryExhaustedError,
    ServerRejectionError,
    TransportError,
    WritePrecision,
)
from lineflux.transport.http_writer import HttpWriter, extract_error_message
from lineflux.transport.retry import WriteState


class RecordingSleep:
    """Stand-in for asyncio.sleep that returns immediately"""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest_asyncio.fixture
async def make_writer(sleep):
    writers = []

    async def factory(host: str, **settings) -> HttpWriter:
        settings.setdefault("token", "my-token")
        settings.setdefault("org", "my-org")
        settings.setdefault("database", "my-db")
        writer = HttpWriter(ClientConfig.build(host=host, **settings), sleep=sleep)
        await writer.open()
        writers.append(writer)
        return writer

    yield factory

    for writer in writers:
        await writer.close()


@pytest.mark.asyncio
async def test_successful_write(mock_server, make_writer):
    writer = await make_writer(mock_server.url)

    result = await writer.send(b"m v=1i", False, batch_id="b1")

    assert result.state is WriteState.SUCCESS
    assert result.attempts == 1
    assert result.status == 204

    [request] = mock_server.requests
    assert request.method == "POST"
    assert request.path == "/api/v2/write"
    assert request.query == {"org": "my-org", "bucket": "my-db", "precision": "ns"}
    assert request.headers["Authorization"] == "Token my-token"
    assert request.headers["Content-Type"] == "text/plain; charset=utf-8"
    assert request.headers["User-Agent"].startswith("lineflux/")
    assert "Content-Encoding" not in request.headers
    assert request.body == b"m v=1i"
    assert writer.get_stats()["total_bytes_sent"] == 6


@pytest.mark.asyncio
async def test_database_and_precision_per_request(mock_server, make_writer):
    writer = await make_writer(mock_server.url, org=None)

    await writer.send(b"m v=1i 1", False, database="other", precision=WritePrecision.S)

    assert mock_server.requests[0].query == {"bucket": "other", "precision": "s"}


@pytest.mark.asyncio
async def test_configured_headers_override_defaults(mock_server, make_writer):
    writer = await make_writer(mock_server.url, headers={"User-Agent": "custom/1.0", "X-Trace": "abc"})

    await writer.send(b"m v=1i", False)

    headers = mock_server.requests[0].headers
    assert headers["User-Agent"] == "custom/1.0"
    assert headers["X-Trace"] == "abc"
    assert headers["Authorization"] == "Token my-token"


@pytest.mark.asyncio
async def test_gzip_body_is_labelled(mock_server, make_writer):
    writer = await make_writer(mock_server.url)
    payload = "\n".join(f"m v={i}i" for i in range(100))

    await writer.send(gzip.compress(payload.encode()), True)

    request = mock_server.requests[0]
    assert request.headers["Content-Encoding"] == "gzip"
    assert request.text == payload


@pytest.mark.asyncio
async def test_retries_transient_failures(mock_server, make_writer, sleep, fast_retries):
    for _ in range(3):
        mock_server.enqueue(503, "unavailable")
    writer = await make_writer(mock_server.url, write_options=fast_retries)

    result = await writer.send(b"m v=1i\nm v=2i", False, batch_id="retry-me")

    assert result.state is WriteState.SUCCESS
    assert result.attempts == 4
    assert result.retries == 3
    assert len(mock_server.requests) == 4
    assert {request.body for request in mock_server.requests} == {b"m v=1i\nm v=2i"}
    assert sleep.delays == pytest.approx([0.01, 0.02, 0.04])
    assert writer.get_stats()["total_retries"] == 3


@pytest.mark.asyncio
async def test_retries_exhausted(mock_server, make_writer, fast_retries):
    mock_server.default_response.status = 500
    writer = await make_writer(mock_server.url, write_options={**fast_retries, "max_retries": 2})

    with pytest.raises(RetryExhaustedError) as exc_info:
        await writer.send(b"m v=1i", False, batch_id="doomed")

    error = exc_info.value
    assert error.attempts == 3
    assert error.batch_id == "doomed"
    assert isinstance(error.last_error, TransportError)
    assert error.last_error.status == 500
    assert len(mock_server.requests) == 3


@pytest.mark.asyncio
async def test_retry_after_header_sets_delay(mock_server, make_writer, sleep, fast_retries):
    mock_server.enqueue(429, "slow down", headers={"Retry-After": "7"})
    writer = await make_writer(mock_server.url, write_options=fast_retries)

    result = await writer.send(b"m v=1i", False)

    assert result.attempts == 2
    assert sleep.delays == [7.0]


@pytest.mark.asyncio
async def test_client_error_is_not_retried(mock_server, make_writer, fast_retries):
    mock_server.enqueue(
        400,
        json.dumps({"code": "invalid", "message": "unable to parse 'bad': missing fields"}),
        headers={"Content-Type": "application/json"}
    )
    writer = await make_writer(mock_server.url, write_options=fast_retries)

    with pytest.raises(ServerRejectionError) as exc_info:
        await writer.send(b"bad", False, batch_id="b400")

    error = exc_info.value
    assert error.status == 400
    assert error.message == "unable to parse 'bad': missing fields"
    assert str(error) == "HTTP 400: unable to parse 'bad': missing fields"
    assert error.batch_id == "b400"
    assert len(mock_server.requests) == 1


@pytest.mark.asyncio
async def test_partial_write_error_details(mock_server, make_writer):
    mock_server.enqueue(400, json.dumps({
        "error": "partial write of line protocol occurred",
        "data": [
            {"original_line": "m v=x", "line_number": 2, "error_message": "invalid column type"},
            {"original_line": "n", "line_number": 3, "error_message": "missing fields"},
        ]
    }))
    writer = await make_writer(mock_server.url)

    with pytest.raises(ServerRejectionError) as exc_info:
        await writer.send(b"m v=1i\nm v=x\nn", False)

    assert exc_info.value.message == (
        "partial write of line protocol occurred:\n\tinvalid column type\n\tmissing fields"
    )


@pytest.mark.asyncio
async def test_unauthorized(mock_server, make_writer):
    mock_server.enqueue(401, "", headers={"X-Influxdb-Error": "authorization failed"})
    writer = await make_writer(mock_server.url)

    with pytest.raises(ServerRejectionError) as exc_info:
        await writer.send(b"m v=1i", False)

    assert exc_info.value.status == 401
    assert exc_info.value.message == "authorization failed"


@pytest.mark.asyncio
async def test_connection_refused_is_retried_then_exhausted(make_writer, sleep, fast_retries):
    writer = await make_writer(f"http://127.0.0.1:{unused_port()}", write_options={**fast_retries, "max_retries": 1})

    with pytest.raises(RetryExhaustedError) as exc_info:
        await writer.send(b"m v=1i", False)

    assert exc_info.value.attempts == 2
    assert exc_info.value.last_error.status is None
    assert len(sleep.delays) == 1


@pytest.mark.asyncio
async def test_invalid_url_fails_without_retry(make_writer, sleep, fast_retries):
    writer = await make_writer("http:///", write_options=fast_retries)

    with pytest.raises(TransportError) as exc_info:
        await writer.send(b"m v=1i", False, batch_id="b1")

    assert not exc_info.value.retryable
    assert exc_info.value.batch_id == "b1"
    assert sleep.delays == []
    assert writer.total_requests == 1


@pytest.mark.asyncio
async def test_certificate_error_fails_without_retry(mock_server, make_writer, sleep, fast_retries, monkeypatch):
    writer = await make_writer(mock_server.url, write_options=fast_retries)
    connection = types.SimpleNamespace(host="db.example.com", port=443, ssl=True)

    def failing_post(*args, **kwargs):
        raise aiohttp.ClientSSLError(connection, OSError(1, "certificate verify failed"))

    monkeypatch.setattr(aiohttp.ClientSession, "post", failing_post)

    with pytest.raises(TransportError) as exc_info:
        await writer.send(b"m v=1i", False)

    assert not exc_info.value.retryable
    assert not isinstance(exc_info.value, RetryExhaustedError)
    assert sleep.delays == []
    assert writer.total_retries == 0
    assert mock_server.requests == []

@pytest.mark.asyncio
async def test_timeout_is_transport_error(mock_server, make_writer, fast_retries):
    mock_server.enqueue(204, delay=2.0)
    writer = await make_writer(mock_server.url, timeout=0.2, write_options={**fast_retries, "max_retries": 0})

    with pytest.raises(RetryExhaustedError) as exc_info:
        await writer.send(b"m v=1i", False)

    assert "Timed out" in str(exc_info.value.last_error)


@pytest.mark.asyncio
async def test_redirect_rejected_by_default(mock_server, make_writer):
    mock_server.enqueue(307, headers={"Location": "/redirected/api/v2/write"})
    writer = await make_writer(mock_server.url)

    with pytest.raises(ServerRejectionError) as exc_info:
        await writer.send(b"m v=1i", False)

    assert exc_info.value.status == 307
    assert [request.path for request in mock_server.requests] == ["/api/v2/write"]


@pytest.mark.asyncio
async def test_redirect_followed_when_allowed(mock_server, make_writer):
    mock_server.enqueue(307, headers={"Location": "/redirected/api/v2/write"})
    writer = await make_writer(mock_server.url, allow_redirects=True)

    result = await writer.send(b"m v=1i", False)

    assert result.succeeded
    assert [request.path for request in mock_server.requests] == ["/api/v2/write", "/redirected/api/v2/write"]
    assert mock_server.requests[1].body == b"m v=1i"


@pytest.mark.asyncio
async def test_requests_go_through_proxy(mock_server, mock_proxy, make_writer):
    writer = await make_writer(mock_server.url, proxy=mock_proxy.url)

    await writer.send(b"m v=1i", False)

    assert mock_server.requests == []
    [request] = mock_proxy.requests
    assert request.path == "/api/v2/write"
    assert request.body == b"m v=1i"


def test_certificate_validation_setting():
    assert HttpWriter(ClientConfig.build(host="https://db")).ssl_setting() is True
    insecure = ClientConfig.build(host="https://db", disable_certificate_validation=True)
    assert HttpWriter(insecure).ssl_setting() is False


@pytest.mark.asyncio
async def test_send_requires_open_session():
    writer = HttpWriter(ClientConfig.build(host="http://localhost:8181"))

    with pytest.raises(ClientClosedError):
        await writer.send(b"m v=1i", False)


def test_extract_error_message_fallbacks():
    assert extract_error_message('{"message": "bad"}', {}) == "bad"
    assert extract_error_message('{"error": "oops"}', {}) == "oops"
    assert extract_error_message("plain failure\n", {}) == "plain failure"
    assert extract_error_message("", {"X-Influxdb-Error": "from header"}) == "from header"
    assert extract_error_message("", {}, "Bad Gateway") == "Bad Gateway"

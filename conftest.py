"""
Shared pytest fixtures

MockWriteServer is a scripted aiohttp server standing in for the database:
queue responses with enqueue(), then inspect the recorded requests. A second
instance doubles as an HTTP proxy in the proxy tests.
"""

import asyncio
import gzip
import sys
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

GZIP_MAGIC = b"\x1f\x8b"


@dataclass
class RecordedRequest:
    method: str
    path: str
    url: str
    query: Dict[str, str]
    headers: Dict[str, str]
    body: bytes

    @property
    def text(self) -> str:
        """Body as text; gzip bodies are decompressed unless the server already did"""
        if self.body[:2] == GZIP_MAGIC:
            return gzip.decompress(self.body).decode("utf-8")
        return self.body.decode("utf-8")

    @property
    def lines(self) -> List[str]:
        return self.text.split("\n")


@dataclass
class ScriptedResponse:
    status: int = 204
    body: str = ""
    headers: Optional[Dict[str, str]] = None
    delay: float = 0.0


class MockWriteServer:
    """Records every request and answers from a queue of scripted responses (default 204)"""

    def __init__(self):
        self.requests: List[RecordedRequest] = []
        self.responses: deque = deque()
        self.default_response = ScriptedResponse()
        self.gate = asyncio.Event()
        self.gate.set()

        self.app = web.Application()
        self.app.router.add_route("*", "/{tail:.*}", self._handle)
        self.server = TestServer(self.app)

    async def start(self):
        await self.server.start_server()

    async def close(self):
        self.gate.set()
        await self.server.close()

    @property
    def url(self) -> str:
        return str(self.server.make_url(""))

    def enqueue(self, status: int = 204, body: str = "", headers: Optional[Dict[str, str]] = None, delay: float = 0.0):
        self.responses.append(ScriptedResponse(status, body, headers, delay))

    async def wait_for_requests(self, count: int, timeout: float = 3.0):
        """Poll until `count` requests were recorded"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self.requests) < count:
            if loop.time() > deadline:
                raise AssertionError(f"Expected {count} requests, got {len(self.requests)}")
            await asyncio.sleep(0.01)

    async def _handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        self.requests.append(RecordedRequest(
            method=request.method,
            path=request.path,
            url=str(request.url),
            query=dict(request.query),
            headers=request.headers.copy(),
            body=body
        ))

        await self.gate.wait()
        response = self.responses.popleft() if self.responses else self.default_response
        if response.delay:
            await asyncio.sleep(response.delay)
        return web.Response(status=response.status, text=response.body, headers=response.headers)


@pytest_asyncio.fixture
async def mock_server():
    server = MockWriteServer()
    await server.start()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def mock_proxy():
    server = MockWriteServer()
    await server.start()
    yield server
    await server.close()


@pytest.fixture
def fast_retries():
    """Write options that retry immediately"""
    return {
        "max_retries": 5,
        "retry_interval": 0.01,
        "max_retry_delay": 0.05,
        "retry_jitter": 0.0,
    }

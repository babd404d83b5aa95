"""
pytest configuration for harness self-tests

Local probe targets (a plain HTTP server from pytest-httpserver, an HTTPS one
with a trustme certificate and an aiohttp WebSocket echo server) so the
probe clients can be exercised without Docker.
"""

import asyncio
import socket
import ssl
import threading
from typing import List

import pytest
import trustme
from aiohttp import WSMsgType, web
from pytest_httpserver import HTTPServer

# ============================================================================
# Test configuration
# ============================================================================

def pytest_collection_modifyitems(config, items):
    """All tests under tests/unit/ get the unit marker"""
    for item in items:
        if "tests/unit/" in str(item.fspath).replace("\\", "/"):
            item.add_marker(pytest.mark.unit)


# ============================================================================
# Utility fixtures
# ============================================================================

def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


@pytest.fixture
def free_port():
    """Get a free port for testing"""
    return _free_port()


class FakeClock:
    """Deterministic clock whose sleep advances time"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================================
# Test server fixtures (HTTPS and WebSocket probe targets)
# ============================================================================

@pytest.fixture(scope="session")
def https_test_server():
    """HTTPS test server with a trustme certificate for localhost"""
    ca = trustme.CA()
    cert = ca.issue_cert("localhost", "127.0.0.1")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    cert.configure_cert(context)

    server = HTTPServer(host="127.0.0.1", port=_free_port(), ssl_context=context)
    server.start()
    yield server
    server.clear()
    server.stop()


class WebSocketEchoServer:
    """aiohttp echo server running on its own event loop thread

    Text frames come back prefixed with ``Echo: ``, binary frames verbatim.
    ``/reject`` refuses the upgrade with a 503, and the text ``bye`` makes the
    server close the connection.
    """

    def __init__(self):
        self.port = _free_port()
        self.hosts: List[str] = []
        self.app = web.Application()
        self.app.router.add_get("/reject", self.handle_reject)
        self.app.router.add_get("/{path:.*}", self.handle_websocket)
        self.loop = asyncio.new_event_loop()
        self.started = threading.Event()
        self.thread = threading.Thread(target=self._run, daemon=True)

    async def handle_reject(self, request):
        return web.Response(status=503, text="no upstream for this host")

    async def handle_websocket(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.hosts.append(request.host)

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                if msg.data == "bye":
                    await ws.close(code=1000, message=b"bye")
                    break
                await ws.send_str(f"Echo: {msg.data}")
            elif msg.type == WSMsgType.BINARY:
                await ws.send_bytes(msg.data)
        return ws

    def _run(self):
        asyncio.set_event_loop(self.loop)
        runner = web.AppRunner(self.app)
        self.loop.run_until_complete(runner.setup())
        site = web.TCPSite(runner, "127.0.0.1", self.port)
        self.loop.run_until_complete(site.start())
        self.started.set()
        self.loop.run_forever()
        self.loop.run_until_complete(runner.cleanup())
        self.loop.close()

    def start(self):
        self.thread.start()
        if not self.started.wait(10):
            raise RuntimeError("WebSocket echo server did not start")

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(10)


@pytest.fixture(scope="session")
def ws_echo_server():
    server = WebSocketEchoServer()
    server.start()
    yield server
    server.stop()

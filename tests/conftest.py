"""Pytest configuration and fixtures for dwr-client tests.

This file provides:
- FakeDWRServer: In-process DWR endpoint for httpx.MockTransport
- PortReservation: Race-free port allocation for test servers
- MockServer: Subprocess management for the mock DWR server
- Fixtures: Shared test infrastructure (fake server, mock server, clients)
"""

from __future__ import annotations

import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Callable, Generator

import httpx
import pytest

from dwr_client.client import DWRClient

# Project root for fixture paths
PROJECT_ROOT = Path(__file__).parent.parent
MOCK_SERVER_MODULE = "tests.integration.mock_server"

BASE_URL = "http://dwr.example.com"
SERVER_TOKEN = "wfpAFVlyUnpW9EclMjKcxVXUr7n"

HANDSHAKE_PATH = "/dwr/call/plaincall/__System.generateId.dwr"


def dwr_reply(payload: str) -> str:
    """Wrap a callback payload the way a DWR 3 server frames a plain-call reply."""
    return (
        "throw 'allowScriptTagRemoting is false.';\n"
        "(function(){\n"
        "var r=window.dwr._[1];\n"
        "//#DWR-INSERT\n"
        "//#DWR-REPLY\n"
        f'r.handleCallback("0","0",{payload});\n'
        "})();"
    )


def parse_body(content: bytes | str) -> dict[str, str]:
    """Parse a plain-call body into a dict.

    Line order is not part of the protocol, so tests compare dicts.
    """
    if isinstance(content, bytes):
        content = content.decode("utf-8")
    assert content == "" or content.endswith("\n"), "every line must be newline-terminated"
    result: dict[str, str] = {}
    for line in content.split("\n")[:-1]:
        key, sep, value = line.partition("=")
        assert sep, f"line without '=': {line!r}"
        result[key] = value
    return result


class FakeDWRServer:
    """Callable handler for httpx.MockTransport that speaks enough DWR.

    Answers the handshake with ``token`` and every other call with
    ``replies[(script, method)]`` (or a 404). All received requests are
    recorded in ``requests`` so tests can inspect bodies and cookies.

    Usage:
        server = FakeDWRServer()
        client = DWRClient(BASE_URL, transport=httpx.MockTransport(server))
    """

    def __init__(
        self,
        token: str | None = SERVER_TOKEN,
        handshake_body: str | None = None,
        replies: dict[tuple[str, str], str | bytes] | None = None,
    ) -> None:
        self.token = token
        self.handshake_body = handshake_body
        self.replies = replies or {}
        self.requests: list[httpx.Request] = []
        # Raised instead of answering, once, when set.
        self.fail_next: Exception | None = None

    @property
    def bodies(self) -> list[dict[str, str]]:
        return [parse_body(r.content) for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

        self.requests.append(request)
        path = request.url.path
        # Ignore any application prefix in front of the DWR servlet.
        if "/dwr/" in path:
            path = path[path.index("/dwr/"):]

        if path == HANDSHAKE_PATH:
            if self.handshake_body is not None:
                return httpx.Response(200, text=self.handshake_body)
            return httpx.Response(200, text=dwr_reply(f'"{self.token}"'))

        prefix = "/dwr/call/plaincall/"
        if path.startswith(prefix) and path.endswith(".dwr"):
            script, _, method = path[len(prefix):-len(".dwr")].partition(".")
            reply = self.replies.get((script, method))
            if isinstance(reply, bytes):
                return httpx.Response(200, content=reply)
            if reply is not None:
                return httpx.Response(200, text=reply)

        return httpx.Response(404, text="not found")


@pytest.fixture
def fake_server() -> FakeDWRServer:
    return FakeDWRServer(
        replies={("MySvcAjax", "getData"): dwr_reply('{foo:"bar"}')},
    )


@pytest.fixture
def make_client(fake_server: FakeDWRServer) -> Generator[Callable[..., DWRClient], None, None]:
    """Factory building DWRClients wired to ``fake_server``; all are closed afterwards."""
    clients: list[DWRClient] = []

    def factory(base_params: dict[str, str] | None = None, **kwargs: Any) -> DWRClient:
        kwargs.setdefault("transport", httpx.MockTransport(fake_server))
        client = DWRClient(kwargs.pop("base_url", BASE_URL), base_params, **kwargs)
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.close()


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    WHY this exists: find_free_port() has a race window - another process can
    grab the port between when we find it and when our server binds. This class
    keeps the socket open until just before the server starts.

    Usage:
        reservation = PortReservation()
        server = MockServer(reservation)
        server.start()  # calls release() internally, then binds
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except (ConnectionRefusedError, socket.timeout, OSError):
            time.sleep(0.1)
    return False


class MockServer:
    """Manages the mock DWR server subprocess for integration tests.

    Runs tests/integration/mock_server.py as a subprocess. The server answers
    the handshake with a fixed token and serves a couple of demo methods.
    """

    def __init__(self, port: int | PortReservation, token: str = SERVER_TOKEN) -> None:
        """Initialize mock server configuration.

        Args:
            port: Either a port number or PortReservation. Using PortReservation
                  is preferred as it eliminates port allocation races.
            token: Session token the handshake hands out.
        """
        if isinstance(port, PortReservation):
            self._reservation = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.token = token
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the mock server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
                "--token", self.token,
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"MockServer failed to start on port {self.port}. "
                f"stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the mock server subprocess with graceful shutdown.

        Uses SIGTERM first, then SIGKILL after 5s if process doesn't exit.
        Safe to call multiple times or if server was never started.
        """
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                try:
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    pass  # Unkillable; nothing more to do
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def mock_dwr_server() -> Generator[MockServer, None, None]:
    """Start the mock DWR server once per test session."""
    with MockServer(PortReservation()) as server:
        yield server


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Automatically apply markers based on test location.

    Enables running subsets via:
        pytest -m integration  # only integration tests
        pytest -m unit         # only unit tests
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)

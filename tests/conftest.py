"""Shared test fixtures for rsa_http tests."""

import asyncio
import contextlib
import logging
import os
import signal
import socket
import subprocess
import sys
import tempfile
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import IO, Any

import aiohttp
import pytest
import pytest_asyncio

from rsa_http.constants import DISCOVERY_PATH
from rsa_http.discovery import RetryPolicy
from rsa_http.keys import KeyStore

# Enable rsa_http debug logging during tests
logging.getLogger("rsa_http").setLevel(logging.DEBUG)
logging.getLogger("rsa_http").addHandler(logging.StreamHandler())

# 1024-bit keys keep generation fast; size-specific tests build their own
TEST_BITS = 1024

# Discovery retries are fast in tests
FAST_RETRY = RetryPolicy(delay=0.05)


# === Key Fixtures ===


@pytest.fixture(scope="session")
def server_key_store() -> KeyStore:
    """Server keypair for testing.

    Session-scoped: generated once and shared across all tests.
    """
    return KeyStore(bits=TEST_BITS)


@pytest.fixture
def client_key_store() -> KeyStore:
    """Client keypair for testing."""
    return KeyStore(bits=TEST_BITS)


@pytest.fixture
def stranger_key_store() -> KeyStore:
    """A keypair unrelated to both server and client.

    Use for testing decryption failures due to the wrong key.
    """
    return KeyStore(bits=TEST_BITS)


# === E2E Server Fixtures ===


@dataclass
class E2EServer:
    """E2E test server info with log capture."""

    host: str
    port: int
    public_key: str
    _log_file: IO[bytes]

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def get_logs(self) -> str:
        """Read captured server logs."""
        self._log_file.seek(0)
        return self._log_file.read().decode("utf-8", errors="replace")


def get_free_port() -> int:
    """Get a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


async def wait_for_server(host: str, port: int, timeout: float = 10.0) -> None:
    """Wait for server to be ready (the key endpoint needs no client key)."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://{host}:{port}{DISCOVERY_PATH}") as resp:
                    if resp.status == 200:
                        return
        except (aiohttp.ClientError, OSError):
            pass
        await asyncio.sleep(0.1)
    raise TimeoutError(f"Server not ready after {timeout}s")


# Server module path for granian
TEST_SERVER_MODULE = "tests.e2e_server:app"


async def _start_granian_server(
    key_store: KeyStore,
    *,
    allow_unencrypted_in: bool = False,
) -> AsyncIterator[E2EServer]:
    """Start granian server with RSA middleware.

    Args:
        key_store: Server keypair (passed to the subprocess as PEM text)
        allow_unencrypted_in: Let non-envelope bodies through

    Yields:
        E2EServer with host, port, public_key, and log access
    """
    material = key_store.material
    port = get_free_port()
    host = "127.0.0.1"

    # Start granian as subprocess with env vars for config
    env = {
        **dict(os.environ),
        "TEST_RSA_PUBLIC_KEY": material.public,
        "TEST_RSA_PRIVATE_KEY": material.private,
        "TEST_RSA_PUBLIC_FORMAT": material.format.public.value,
        "TEST_RSA_PRIVATE_FORMAT": material.format.private.value,
    }
    if allow_unencrypted_in:
        env["TEST_ALLOW_UNENCRYPTED"] = "true"

    # Capture server logs to temp file for per-test debugging
    # Note: intentionally not using context manager - file must stay open across yield
    log_file = tempfile.TemporaryFile(mode="w+b")

    # Use start_new_session=True to create a new process group.
    # This allows us to kill granian and all its child workers together.
    proc = subprocess.Popen(
        [
            sys.executable,
            "-m",
            "granian",
            TEST_SERVER_MODULE,
            "--interface",
            "asgi",
            "--host",
            host,
            "--port",
            str(port),
            "--workers",
            "1",
            "--log-level",
            "info",
        ],
        env=env,
        stdout=log_file,
        stderr=log_file,
        start_new_session=True,
    )

    def _kill_process_group(sig: int) -> None:
        """Kill the entire process group (granian + workers)."""
        with contextlib.suppress(ProcessLookupError, OSError):
            os.killpg(os.getpgid(proc.pid), sig)

    try:
        await wait_for_server(host, port)
        yield E2EServer(host=host, port=port, public_key=material.public, _log_file=log_file)
    finally:
        # Kill entire process group to avoid orphaned workers
        _kill_process_group(signal.SIGTERM)
        try:
            proc.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            _kill_process_group(signal.SIGKILL)
            proc.wait()
        log_file.close()


def _dump_logs(server: E2EServer, test_name: str, label: str = "") -> None:
    logs = server.get_logs()
    if not logs.strip():
        return
    sys.stdout.write(f"\n{'=' * 60}\n")
    sys.stdout.write(f"Server logs for: {test_name}{label}\n")
    sys.stdout.write(f"{'=' * 60}\n")
    sys.stdout.write(logs)
    sys.stdout.write(f"\n{'=' * 60}\n\n")
    sys.stdout.flush()


@pytest_asyncio.fixture
async def granian_server(
    server_key_store: KeyStore,
    request: pytest.FixtureRequest,
) -> AsyncIterator[E2EServer]:
    """Start granian server with RSA middleware (unencrypted bodies refused).

    Function-scoped: each test gets its own server with isolated logs.
    Server logs are printed to console after each test.
    """
    async for server in _start_granian_server(server_key_store):
        yield server
        _dump_logs(server, request.node.name)  # type: ignore[attr-defined]


@pytest_asyncio.fixture
async def granian_server_permissive(
    server_key_store: KeyStore,
    request: pytest.FixtureRequest,
) -> AsyncIterator[E2EServer]:
    """Start granian server that passes unencrypted bodies through."""
    async for server in _start_granian_server(server_key_store, allow_unencrypted_in=True):
        yield server
        _dump_logs(server, request.node.name, " (permissive)")  # type: ignore[attr-defined]


# === RSA Client Fixtures ===

_TEST_TIMEOUT_SECS = 30.0


@pytest_asyncio.fixture
async def rsa_client(
    granian_server: E2EServer,
    client_key_store: KeyStore,
) -> AsyncIterator[Any]:
    """Connected RSAClientSession talking to the test server."""
    from rsa_http.middleware.aiohttp import RSAClientSession

    async with RSAClientSession(
        base_url=granian_server.base_url,
        key_store=client_key_store,
        retry_policy=FAST_RETRY,
        timeout=aiohttp.ClientTimeout(total=_TEST_TIMEOUT_SECS),
    ) as client:
        client.connect()
        await asyncio.wait_for(client.wait_connected(), timeout=_TEST_TIMEOUT_SECS)
        yield client

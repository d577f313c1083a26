"""
Client-side public key discovery.

The client GETs the server's publication endpoint until it returns a
well-formed ``{"key": ..., "format": ...}`` document, sleeping a fixed delay
between attempts. By default there is no attempt limit: a permanently
unreachable endpoint keeps the handshake pending, and callers who need a
deadline wrap ``wait()`` in ``asyncio.wait_for``.

State machine (per discovery cycle):

    idle ──connect()──> discovering ──success──> discovered

A new ``connect()`` cancels the in-flight cycle. Waiters of a cycle that had
not resolved yet are handed over to the new one.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import itertools
from collections.abc import Iterator
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

import aiohttp

from rsa_http._logging import get_logger
from rsa_http.constants import DISCOVERY_RETRY_DELAY
from rsa_http.events import DiscoveryEvent, EventBus
from rsa_http.exceptions import ConfigurationError, KeyDiscoveryError
from rsa_http.keys import KeyFormat, load_public_key

__all__ = [
    "DiscoveryState",
    "PeerDiscovery",
    "PeerRecord",
    "RetryPolicy",
    "parse_peer_record",
]

_logger = get_logger(__name__)


@dataclass(frozen=True)
class PeerRecord:
    """Discovered public key of the remote party."""

    key: str
    format: KeyFormat


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-delay retry schedule for discovery attempts."""

    delay: float = DISCOVERY_RETRY_DELAY
    """Seconds to wait between attempts."""

    max_attempts: int | None = None
    """Attempt limit; None retries forever."""

    def attempts(self) -> Iterator[int]:
        """Yield attempt numbers starting at 1."""
        if self.max_attempts is None:
            return itertools.count(1)
        return iter(range(1, self.max_attempts + 1))

    def has_more(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt < self.max_attempts


class DiscoveryState(str, enum.Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    DISCOVERED = "discovered"


def parse_peer_record(data: Any) -> PeerRecord:
    """
    Validate a discovery document.

    Both fields must be present and the key must load as an RSA public key in
    the advertised format.

    Raises:
        KeyDiscoveryError: Missing fields, unknown format or unusable key
    """
    if not isinstance(data, dict):
        raise KeyDiscoveryError(f"Discovery response must be a JSON object, got {type(data).__name__}")

    key = data.get("key")
    fmt = data.get("format")
    if not isinstance(key, str) or not key or not isinstance(fmt, str) or not fmt:
        raise KeyDiscoveryError("Discovery response is missing key or format")

    try:
        key_format = KeyFormat.parse(fmt)
        load_public_key(key, key_format)
    except ConfigurationError as e:
        raise KeyDiscoveryError(f"Discovery response carries an unusable key: {e}") from e
    return PeerRecord(key=key, format=key_format)


class PeerDiscovery:
    """
    Retrying fetch of a peer's public key.

    Emits ``connecting`` once per ``connect()`` call and ``connected`` once
    per successful cycle on the given EventBus.
    """

    def __init__(self, events: EventBus, retry_policy: RetryPolicy | None = None) -> None:
        self.events = events
        self.retry_policy = retry_policy or RetryPolicy()

        self._peer: PeerRecord | None = None
        self._state = DiscoveryState.IDLE
        self._ready: asyncio.Future[PeerRecord] | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def peer(self) -> PeerRecord | None:
        """Last discovered record (None until the first success)."""
        return self._peer

    @property
    def state(self) -> DiscoveryState:
        return self._state

    def connect(
        self,
        session: aiohttp.ClientSession,
        endpoint: str,
        **request_kwargs: Any,
    ) -> asyncio.Task[None]:
        """
        Start a discovery cycle against ``endpoint``.

        Must be called from a running event loop. Returns immediately; use
        ``wait()`` to suspend until the key is known.

        Args:
            session: aiohttp session used for the probes
            endpoint: URL of the key publication endpoint
            **request_kwargs: Extra arguments for ``session.get``

        Returns:
            The background task running the retry loop
        """
        loop = asyncio.get_running_loop()

        if self._task is not None and not self._task.done():
            _logger.debug("Superseding in-flight discovery: endpoint=%s", endpoint)
            self._task.cancel()

        if self._ready is None or self._ready.done():
            self._ready = loop.create_future()

        self._state = DiscoveryState.DISCOVERING
        self._task = loop.create_task(self._run(session, endpoint, self._ready, request_kwargs))

        # The task has not run yet, so this still precedes every attempt
        self.events.emit(DiscoveryEvent.CONNECTING)
        return self._task

    async def wait(self) -> PeerRecord:
        """
        Suspend until the current discovery cycle has succeeded.

        Raises:
            RuntimeError: ``connect()`` was never called
            KeyDiscoveryError: The retry policy gave up
        """
        if self._ready is None:
            raise RuntimeError("Discovery not started. Call connect() first.")
        return await asyncio.shield(self._ready)

    async def close(self) -> None:
        """Cancel the running discovery task, if any."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()

    async def _run(
        self,
        session: aiohttp.ClientSession,
        endpoint: str,
        ready: asyncio.Future[PeerRecord],
        request_kwargs: dict[str, Any],
    ) -> None:
        last_error: Exception | None = None
        attempt = 0
        for attempt in self.retry_policy.attempts():
            try:
                record = await self._probe(session, endpoint, request_kwargs)
            except (aiohttp.ClientError, asyncio.TimeoutError, KeyDiscoveryError) as e:
                last_error = e
                _logger.warning("Can't reach RSA key endpoint: endpoint=%s attempt=%d error=%s", endpoint, attempt, e)
                if self.retry_policy.has_more(attempt):
                    await asyncio.sleep(self.retry_policy.delay)
                continue

            self._peer = record
            self._state = DiscoveryState.DISCOVERED
            _logger.debug("Peer key discovered: endpoint=%s attempt=%d format=%s", endpoint, attempt, record.format.value)
            if not ready.done():
                ready.set_result(record)
            self.events.emit(DiscoveryEvent.CONNECTED)
            return

        self._state = DiscoveryState.IDLE
        error = KeyDiscoveryError(f"Key discovery gave up after {attempt} attempts: {last_error}")
        if not ready.done():
            ready.set_exception(error)

    async def _probe(
        self,
        session: aiohttp.ClientSession,
        endpoint: str,
        request_kwargs: dict[str, Any],
    ) -> PeerRecord:
        async with session.get(endpoint, **request_kwargs) as resp:
            if resp.status != HTTPStatus.OK:
                raise KeyDiscoveryError(f"Discovery endpoint returned {resp.status}")
            try:
                # Publication endpoints may declare text/plain
                data = await resp.json(content_type=None)
            except ValueError as e:
                raise KeyDiscoveryError(f"Discovery response is not JSON: {e}") from e
        return parse_peer_record(data)

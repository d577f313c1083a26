"""
aiohttp client session with transparent RSA body encryption.

Wraps aiohttp.ClientSession and automatically:
- Discovers the server public key from its publication endpoint (retrying)
- Encrypts request bodies with the server key
- Sends its own public key so the server can encrypt the reply
- Decrypts response envelopes

Usage:
    async with RSAClientSession(base_url="https://api.example.com", bits=2048) as session:
        session.on("connected", lambda client: print("key discovered"))
        session.connect()
        result = await session.fetch("/hi", data="hi")
        print(result.body)  # decrypted reply text
"""

import json as json_module
import types
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin

import aiohttp
from typing_extensions import Self

from rsa_http._logging import get_logger
from rsa_http.constants import DEFAULT_BITS, DISCOVERY_PATH, ENVELOPE_FIELD, HEADER_CLIENT_KEY
from rsa_http.discovery import PeerDiscovery, PeerRecord, RetryPolicy
from rsa_http.envelope import encode_envelope, is_envelope
from rsa_http.events import DiscoveryEvent, EventBus, EventCallback, Subscription
from rsa_http.exceptions import EnvelopeError, ProtocolRefusalError
from rsa_http.keys import KeyStore

__all__ = [
    "RSAClientSession",
    "RSAResponse",
]

_logger = get_logger(__name__)

_HTTP_ERROR_STATUS = 400


@dataclass
class RSAResponse:
    """Result of an encrypted fetch."""

    body: str | None
    """Decrypted reply text; None when the reply carried no envelope."""

    status: int
    headers: Mapping[str, str]

    def json(self) -> Any:
        """Parse the decrypted body as JSON."""
        if self.body is None:
            return None
        return json_module.loads(self.body)


class RSAClientSession:
    """
    aiohttp-compatible client session with transparent RSA encryption.

    Features:
    - Retrying key discovery with connecting/connected notifications
    - Request body encryption with the discovered server key
    - Response envelope decryption with this client's private key
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        bits: int = DEFAULT_BITS,
        key_store: KeyStore | None = None,
        retry_policy: RetryPolicy | None = None,
        discovery_url: str | None = None,
        **aiohttp_kwargs: Any,
    ) -> None:
        """
        Initialize RSA-enabled client session.

        Args:
            base_url: Base URL for relative request paths
            bits: Size of the generated client keypair (ignored with key_store)
            key_store: Existing client keypair
            retry_policy: Discovery retry schedule (default: forever, 1s apart)
            discovery_url: Override discovery endpoint URL
            **aiohttp_kwargs: Additional arguments passed to aiohttp.ClientSession
        """
        self.base_url = base_url.rstrip("/") if base_url else None
        self.key_store = key_store or KeyStore(bits=bits)
        self.discovery_url = discovery_url
        if self.discovery_url is None and self.base_url:
            self.discovery_url = urljoin(self.base_url + "/", DISCOVERY_PATH.lstrip("/"))

        self.events = EventBus(scope=self)
        self._discovery = PeerDiscovery(self.events, retry_policy)
        self._session: aiohttp.ClientSession | None = None
        self._aiohttp_kwargs = aiohttp_kwargs

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        self._session = aiohttp.ClientSession(**self._aiohttp_kwargs)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        """Async context manager exit."""
        await self._discovery.close()
        if self._session:
            await self._session.close()
            self._session = None

    @property
    def peer(self) -> PeerRecord | None:
        """Discovered server key (None until discovery succeeds)."""
        return self._discovery.peer

    @property
    def discovery(self) -> PeerDiscovery:
        return self._discovery

    def on(self, event: DiscoveryEvent | str, callback: EventCallback) -> Subscription:
        """Subscribe once to ``connecting`` or ``connected``; callback receives this session."""
        return self.events.on(event, callback)

    def connect(self, endpoint: str | None = None, **request_kwargs: Any) -> None:
        """
        Start discovering the server key.

        Returns immediately. ``fetch()`` suspends until the key is known.

        Args:
            endpoint: Publication endpoint URL (defaults to the discovery URL)
            **request_kwargs: Extra arguments for the discovery GET
        """
        session = self._require_session()
        endpoint = endpoint or self.discovery_url
        if not endpoint:
            raise ValueError("No discovery endpoint: pass endpoint or base_url")
        self._discovery.connect(session, self._resolve(endpoint), **request_kwargs)

    async def wait_connected(self) -> PeerRecord:
        """Suspend until the server key is known."""
        return await self._discovery.wait()

    async def fetch(
        self,
        url: str,
        *,
        method: str | None = None,
        json: Any = None,
        data: str | bytes | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> RSAResponse:
        """
        Make an encrypted HTTP request.

        Args:
            url: URL (relative to base_url or absolute)
            method: HTTP method (POST with a body, GET without by default)
            json: JSON body (serialized, then encrypted)
            data: Text body (encrypted as-is)
            headers: Extra request headers
            **kwargs: Additional arguments passed to aiohttp

        Returns:
            RSAResponse with the decrypted body

        Raises:
            RuntimeError: Session not entered or connect() not called
            ProtocolRefusalError: Server answered with a plain-text refusal
            EnvelopeError: Reply is neither an envelope nor a refusal
            DecryptionError: Reply envelope does not decrypt with our key
        """
        session = self._require_session()
        peer = await self._discovery.wait()

        url = self._resolve(url)

        body: str | None = None
        if json is not None:
            body = json_module.dumps(json)
        elif data is not None:
            body = data.decode("utf-8") if isinstance(data, bytes) else data

        request_headers = dict(headers or {})
        request_headers[HEADER_CLIENT_KEY] = self.key_store.public_key(encoding="base64")
        if body is not None:
            ciphertext = self.key_store.encrypt_with_key(peer.key, body, peer.format)
            kwargs["data"] = encode_envelope(ciphertext)
            request_headers["Content-Type"] = "application/json"

        method = method or ("POST" if body is not None else "GET")
        _logger.debug("Request encrypted: method=%s url=%s body_size=%d", method, url, len(body or ""))

        async with session.request(method, url, headers=request_headers, **kwargs) as response:
            text = await response.text()
            result = RSAResponse(
                body=self._open_response(response.status, text),
                status=response.status,
                headers=response.headers,
            )
        _logger.debug("Response decrypted: url=%s status=%d has_body=%s", url, result.status, result.body is not None)
        return result

    # Convenience methods
    async def get(self, url: str, **kwargs: Any) -> RSAResponse:
        """GET request."""
        return await self.fetch(url, method="GET", **kwargs)

    async def post(self, url: str, **kwargs: Any) -> RSAResponse:
        """POST request."""
        return await self.fetch(url, method="POST", **kwargs)

    async def put(self, url: str, **kwargs: Any) -> RSAResponse:
        """PUT request."""
        return await self.fetch(url, method="PUT", **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> RSAResponse:
        """DELETE request."""
        return await self.fetch(url, method="DELETE", **kwargs)

    def _open_response(self, status: int, text: str) -> str | None:
        """
        Decrypt a reply body.

        - empty body or JSON object without the reserved field: None
        - JSON string, or non-JSON text on an error status: refusal
        - non-JSON text otherwise: EnvelopeError
        """
        if not text:
            return None
        try:
            payload = json_module.loads(text)
        except ValueError as e:
            if status >= _HTTP_ERROR_STATUS:
                raise ProtocolRefusalError(status, text) from e
            raise EnvelopeError(f"Response is not a JSON envelope: {e}") from e

        if isinstance(payload, str):
            raise ProtocolRefusalError(status, payload)
        if not is_envelope(payload):
            return None
        return self.key_store.decrypt(payload[ENVELOPE_FIELD])

    def _require_session(self) -> aiohttp.ClientSession:
        if not self._session:
            raise RuntimeError("Session not initialized. Use 'async with' context manager.")
        return self._session

    def _resolve(self, url: str) -> str:
        if self.base_url and not url.startswith(("http://", "https://")):
            return urljoin(self.base_url + "/", url.lstrip("/"))
        return url

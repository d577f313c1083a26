"""
FastAPI/Starlette ASGI middleware for transparent RSA body encryption.

Provides:
- Automatic request body decryption with the server's private key
- Automatic response encryption with the caller's public key (transparent -
  handlers keep returning ordinary responses)
- Built-in key publication endpoint (/.well-known/rsa-public-key)

Usage:
    from rsa_http.keys import KeyStore
    from rsa_http.middleware.fastapi import RSAMiddleware

    app = FastAPI()
    app.add_middleware(RSAMiddleware, key_store=KeyStore(bits=2048))

    @app.post("/hi")
    async def hi(request: Request):
        body = await request.body()  # Decrypted by middleware
        return PlainTextResponse("hello")  # Encrypted by middleware

Or compose explicitly:
    server = RSAServer(KeyStore(bits=2048), allow_unencrypted_in=False)
    api = server.gate(api_app)  # also answers /.well-known/rsa-public-key
    app = Starlette(routes=[Route("/publickey", server.propagate_key()), Mount("/api", api)])
"""

import json
from collections.abc import Awaitable, Callable
from typing import Any

from rsa_http._logging import get_logger
from rsa_http.codec import transcode
from rsa_http.constants import (
    DISCOVERY_PATH,
    ENCRYPTION_FAILURE_MESSAGE,
    HEADER_CLIENT_KEY,
    REFUSAL_MESSAGE,
    SCOPE_CLIENT_KEY,
)
from rsa_http.envelope import decode_envelope, encode_envelope
from rsa_http.exceptions import CryptoError, DecryptionError, EncryptionError, EnvelopeError
from rsa_http.keys import KeyStore

__all__ = [
    "KeyPublicationEndpoint",
    "RSAMiddleware",
    "RSAServer",
    "encrypting_sender",
]

_logger = get_logger(__name__)

Scope = dict[str, Any]
Receive = Callable[[], Awaitable[dict[str, Any]]]
Send = Callable[[dict[str, Any]], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]


class _ClientDisconnected(Exception):
    """Client went away before the request body was complete."""


async def _send_plain(send: Send, status: int, message: str) -> None:
    """Send a plain-text response (refusals and diagnostics)."""
    body = message.encode("utf-8")
    await send(
        {
            "type": "http.response.start",
            "status": status,
            "headers": [
                (b"content-type", b"text/plain; charset=utf-8"),
                (b"content-length", str(len(body)).encode()),
            ],
        }
    )
    await send(
        {
            "type": "http.response.body",
            "body": body,
            "more_body": False,
        }
    )


def _replace_headers(headers: list[tuple[bytes, bytes]], **updates: bytes) -> list[tuple[bytes, bytes]]:
    """Drop the named headers (underscores map to dashes) and append new values."""
    names = {name.replace("_", "-").encode() for name in updates}
    kept = [(n, v) for n, v in headers if n.lower() not in names]
    kept.extend((name.replace("_", "-").encode(), value) for name, value in updates.items())
    return kept


def _decode_client_key(header_value: str) -> str:
    """Header value (base64 of PEM text) -> PEM text."""
    try:
        return transcode(header_value, "base64", "utf8")
    except ValueError as e:
        raise EncryptionError(f"Caller key header is not base64 text: {e}") from e


def encrypting_sender(send: Send, key_store: KeyStore, client_key: str) -> Send:
    """
    Wrap an ASGI ``send`` so the response body is encrypted for the caller.

    The wrapper buffers the response start and every body chunk, then emits a
    single envelope once the handler signals the end of the body. The
    handler's status is kept; content-type becomes application/json.

    If encryption fails the response becomes a 500 with a fixed diagnostic
    body and the handler's payload is discarded.

    Args:
        send: The next sender in the chain
        key_store: Server key store (provides the encryption primitive)
        client_key: Caller public key as sent in the header (base64 of PEM)

    Returns:
        A new sender with the same signature
    """
    start: dict[str, Any] | None = None
    body = bytearray()
    completed = False

    async def _flush() -> None:
        status = start["status"] if start else 200
        headers = list(start.get("headers", [])) if start else []
        try:
            try:
                text = bytes(body).decode("utf-8")
            except UnicodeDecodeError as e:
                raise EncryptionError("Response body is not UTF-8 text") from e
            ciphertext = key_store.encrypt_with_key(_decode_client_key(client_key), text)
            payload = encode_envelope(ciphertext)
            content_type = b"application/json"
        except CryptoError as e:
            # Never fall back to the plaintext payload
            _logger.warning("Response encryption failed: error_type=%s error=%s", type(e).__name__, e)
            status = 500
            payload = ENCRYPTION_FAILURE_MESSAGE.encode("utf-8")
            content_type = b"text/plain; charset=utf-8"
        body.clear()

        await send(
            {
                "type": "http.response.start",
                "status": status,
                "headers": _replace_headers(
                    headers,
                    content_type=content_type,
                    content_length=str(len(payload)).encode(),
                ),
            }
        )
        await send({"type": "http.response.body", "body": payload, "more_body": False})

    async def encrypting_send(message: dict[str, Any]) -> None:
        nonlocal start, completed
        msg_type = message["type"]

        if msg_type == "http.response.start":
            start = message
        elif msg_type == "http.response.body":
            if completed:
                return
            body.extend(message.get("body", b""))
            if not message.get("more_body", False):
                completed = True
                await _flush()
        else:
            await send(message)

    return encrypting_send


class KeyPublicationEndpoint:
    """
    ASGI app answering every request with the server's public key.

    Response: 200, ``{"key": <public key text>, "format": <format name>}``.
    Being a class instance (not a function), Starlette's ``Route`` mounts it
    as a raw ASGI app.
    """

    def __init__(self, key_store: KeyStore) -> None:
        self.key_store = key_store

    def document(self) -> dict[str, str]:
        return {
            "key": self.key_store.public_key(),
            "format": self.key_store.formats.public.value,
        }

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        _logger.debug("Key publication requested: path=%s", scope.get("path", ""))
        body = json.dumps(self.document()).encode()
        await send(
            {
                "type": "http.response.start",
                "status": 200,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body)).encode()),
                ],
            }
        )
        await send(
            {
                "type": "http.response.body",
                "body": body,
                "more_body": False,
            }
        )


class RSAMiddleware:
    """
    Pure ASGI middleware for transparent RSA encryption.

    Features:
    - Refuses requests without the caller's public key (x-client-key)
    - Decrypts envelope request bodies before the app reads them
    - Encrypts every response for the caller's public key
    - Auto-registers the key publication endpoint

    Failure handling:
    - Missing caller key: 400, always
    - Malformed or undecipherable envelope: 400, unless
      ``allow_unencrypted_in`` is set (raw body is then passed through)
    - Response encryption failure: 500 with a fixed diagnostic body
    """

    def __init__(
        self,
        app: ASGIApp,
        key_store: KeyStore,
        *,
        allow_unencrypted_in: bool = False,
        discovery_path: str | None = DISCOVERY_PATH,
    ) -> None:
        """
        Initialize RSA middleware.

        Args:
            app: ASGI application
            key_store: Server keypair
            allow_unencrypted_in: Pass non-envelope request bodies through
                instead of refusing them
            discovery_path: Path answered with the public key (None disables it)
        """
        self.app = app
        self.key_store = key_store
        self.allow_unencrypted_in = allow_unencrypted_in
        self.discovery_path = discovery_path
        self._publisher = KeyPublicationEndpoint(key_store)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI interface."""
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        method = scope.get("method", "")
        if self.discovery_path is not None and path == self.discovery_path:
            await self._publisher(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        client_key = headers.get(HEADER_CLIENT_KEY.encode())
        if not client_key:
            # No key to encrypt a reply with, whatever the plaintext policy
            _logger.debug("Refused request without caller key: method=%s path=%s", method, path)
            await _send_plain(send, 400, REFUSAL_MESSAGE)
            return

        try:
            raw_body = await self._read_body(receive)
        except _ClientDisconnected:
            _logger.debug("Client disconnected during request: method=%s path=%s", method, path)
            return

        try:
            plaintext = self._open_request(raw_body)
        except (EnvelopeError, DecryptionError) as e:
            if not self.allow_unencrypted_in:
                _logger.debug("Refused request: method=%s path=%s error_type=%s", method, path, type(e).__name__)
                await _send_plain(send, 400, REFUSAL_MESSAGE)
                return
            _logger.debug("Passing unencrypted request through: method=%s path=%s", method, path)
            plaintext = raw_body

        client_key_text = client_key.decode("latin-1")
        app_scope = {
            **scope,
            "headers": _replace_headers(
                list(scope.get("headers", [])),
                content_length=str(len(plaintext)).encode(),
            ),
        }
        try:
            app_scope[SCOPE_CLIENT_KEY] = _decode_client_key(client_key_text)
        except EncryptionError:
            # Reported as a 500 once the reply cannot be encrypted
            app_scope[SCOPE_CLIENT_KEY] = None

        await self.app(
            app_scope,
            self._replay_receive(plaintext, receive),
            encrypting_sender(send, self.key_store, client_key_text),
        )

    def _open_request(self, raw_body: bytes) -> bytes:
        """Decrypt an envelope body; an empty body stays empty."""
        if not raw_body:
            return raw_body
        ciphertext = decode_envelope(raw_body)
        return self.key_store.decrypt(ciphertext).encode("utf-8")

    @staticmethod
    async def _read_body(receive: Receive) -> bytes:
        """Coalesce ``http.request`` chunks until the body is complete."""
        body = bytearray()
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                raise _ClientDisconnected
            body.extend(message.get("body", b""))
            if not message.get("more_body", False):
                return bytes(body)

    @staticmethod
    def _replay_receive(body: bytes, receive: Receive) -> Receive:
        """Receive that yields ``body`` once, then defers to the transport."""
        body_returned = False

        async def replay_receive() -> dict[str, Any]:
            nonlocal body_returned
            if not body_returned:
                body_returned = True
                return {"type": "http.request", "body": body, "more_body": False}
            # Subsequent calls: wait for disconnect
            return await receive()

        return replay_receive


class RSAServer:
    """
    Server-side bridge built around a KeyStore.

    ``propagate_key()`` returns the publication endpoint; ``gate(app)`` wraps
    an ASGI app with RSAMiddleware.
    """

    def __init__(self, key_store: KeyStore, *, allow_unencrypted_in: bool = False) -> None:
        self.key_store = key_store
        self.allow_unencrypted_in = allow_unencrypted_in

    def propagate_key(self) -> KeyPublicationEndpoint:
        """Handler that publishes this server's public key."""
        return KeyPublicationEndpoint(self.key_store)

    def gate(self, app: ASGIApp, *, discovery_path: str | None = DISCOVERY_PATH) -> RSAMiddleware:
        """
        Wrap ``app`` so its traffic is encrypted.

        Args:
            app: Downstream ASGI app
            discovery_path: Path inside the gate that publishes the public key
                (None when ``propagate_key()`` is routed outside the gate)
        """
        return RSAMiddleware(
            app,
            self.key_store,
            allow_unencrypted_in=self.allow_unencrypted_in,
            discovery_path=discovery_path,
        )

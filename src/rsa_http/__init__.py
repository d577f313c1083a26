"""
RSA body encryption for HTTP transport.

This library lets an HTTP client and server exchange request/response bodies
that only the holder of the matching private key can read. The client
discovers the server's public key at runtime, so no keys are provisioned out
of band.

Usage (Server - FastAPI):
    from rsa_http.keys import KeyStore
    from rsa_http.middleware.fastapi import RSAMiddleware

    app = FastAPI()
    app.add_middleware(RSAMiddleware, key_store=KeyStore(bits=2048))

Usage (Client - aiohttp):
    from rsa_http.middleware.aiohttp import RSAClientSession

    async with RSAClientSession(base_url="https://api.example.com") as session:
        session.connect()
        result = await session.fetch("/hi", data="hi")
        print(result.body)
"""

from rsa_http.constants import DISCOVERY_PATH, ENVELOPE_FIELD, HEADER_CLIENT_KEY, SUPPORTED_BITS
from rsa_http.exceptions import (
    ConfigurationError,
    CryptoError,
    DecryptionError,
    EncryptionError,
    EnvelopeError,
    KeyDiscoveryError,
    ProtocolRefusalError,
)
from rsa_http.keys import KeyFormat, KeyFormats, KeyMaterial, KeyStore

__all__ = [
    # Constants
    "DISCOVERY_PATH",
    "ENVELOPE_FIELD",
    "HEADER_CLIENT_KEY",
    "SUPPORTED_BITS",
    # Exceptions
    "ConfigurationError",
    "CryptoError",
    "DecryptionError",
    "EncryptionError",
    "EnvelopeError",
    "KeyDiscoveryError",
    "ProtocolRefusalError",
    # Keys
    "KeyFormat",
    "KeyFormats",
    "KeyMaterial",
    "KeyStore",
]

__version__ = "0.1.0"

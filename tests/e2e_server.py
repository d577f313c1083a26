"""E2E test server for granian.

This module is loaded by granian via `tests.e2e_server:app`.
Reads configuration from environment variables set by the test fixtures.
"""

import json
import logging
import os

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.routing import Route

from rsa_http.constants import SCOPE_CLIENT_KEY
from rsa_http.keys import KeyStore
from rsa_http.middleware.fastapi import RSAServer

_logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")


async def echo(request: Request) -> PlainTextResponse:
    """Echo endpoint - returns the decrypted body as text."""
    _logger.debug("%s /echo: reading body...", request.method)
    body = await request.body()
    _logger.debug("%s /echo: body read, %d bytes", request.method, len(body))
    return PlainTextResponse(body.decode("utf-8", errors="replace"))


async def greet(request: Request) -> PlainTextResponse:
    """Replies hello to a hi."""
    body = await request.body()
    if body != b"hi":
        return PlainTextResponse("expected hi", status_code=422)
    return PlainTextResponse("hello")


async def echo_json(request: Request) -> JSONResponse:
    """Parses the decrypted JSON body and describes what the app saw."""
    body = await request.body()
    return JSONResponse(
        {
            "method": request.method,
            "received": json.loads(body) if body else None,
            "content_length": request.headers.get("content-length"),
            "has_client_key": bool(request.scope.get(SCOPE_CLIENT_KEY)),
        }
    )


async def created(_request: Request) -> PlainTextResponse:
    """Non-200 status survives encryption."""
    return PlainTextResponse("created", status_code=201)


async def chunked(_request: Request) -> StreamingResponse:
    """Response body sent in several ASGI messages."""

    async def parts():
        for part in ("alpha ", "beta ", "gamma"):
            yield part.encode()

    return StreamingResponse(parts(), media_type="text/plain")


def _key_store_from_env() -> KeyStore:
    return KeyStore(
        keys={
            "public": os.environ["TEST_RSA_PUBLIC_KEY"],
            "private": os.environ["TEST_RSA_PRIVATE_KEY"],
            "format": {
                "public": os.environ.get("TEST_RSA_PUBLIC_FORMAT", "pkcs8-pem"),
                "private": os.environ.get("TEST_RSA_PRIVATE_FORMAT", "pkcs1-pem"),
            },
        }
    )


routes = [
    Route("/echo", echo, methods=["GET", "POST", "PUT"]),
    Route("/greet", greet, methods=["POST"]),
    Route("/json", echo_json, methods=["GET", "POST", "PUT", "DELETE"]),
    Route("/created", created, methods=["POST"]),
    Route("/chunked", chunked, methods=["GET"]),
]

server = RSAServer(
    _key_store_from_env(),
    allow_unencrypted_in=os.environ.get("TEST_ALLOW_UNENCRYPTED") == "true",
)
app = server.gate(Starlette(routes=routes))

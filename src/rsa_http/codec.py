"""
Text encoding conversion for keys and headers.

Keys travel as PEM text in JSON bodies and as base64 in HTTP headers, where
newlines are not allowed. ``transcode`` converts between the two.
"""

import base64
import binascii

from rsa_http.exceptions import ConfigurationError

__all__ = [
    "ENCODINGS",
    "from_bytes",
    "to_bytes",
    "transcode",
]

_ALIASES = {
    "utf8": "utf8",
    "utf-8": "utf8",
    "ascii": "ascii",
    "latin1": "latin1",
    "latin-1": "latin1",
    "binary": "latin1",
    "base64": "base64",
    "hex": "hex",
}

ENCODINGS: frozenset[str] = frozenset(_ALIASES)


def _normalize(encoding: str) -> str:
    try:
        return _ALIASES[encoding.lower()]
    except KeyError:
        raise ConfigurationError(f"Unsupported text encoding: {encoding!r}") from None


def to_bytes(text: str, encoding: str) -> bytes:
    """Decode ``text`` written in ``encoding`` to raw bytes.

    Raises:
        ConfigurationError: Unknown encoding name
        ValueError: ``text`` is not valid in ``encoding``
    """
    name = _normalize(encoding)
    if name == "base64":
        try:
            return base64.b64decode(text, validate=True)
        except binascii.Error as e:
            raise ValueError(f"Invalid base64 text: {e}") from e
    if name == "hex":
        return bytes.fromhex(text)
    return text.encode(name)


def from_bytes(data: bytes, encoding: str) -> str:
    """Render raw bytes as text in ``encoding``."""
    name = _normalize(encoding)
    if name == "base64":
        return base64.b64encode(data).decode("ascii")
    if name == "hex":
        return data.hex()
    return data.decode(name)


def transcode(text: str, source: str, target: str) -> str:
    """
    Convert text from one encoding to another.

    Example:
        transcode(pem, "utf8", "base64")     # PEM -> header-safe value
        transcode(header, "base64", "utf8")  # header value -> PEM

    Args:
        text: Input text
        source: Encoding ``text`` is written in
        target: Encoding of the returned text

    Returns:
        ``text`` re-encoded in ``target``

    Raises:
        ConfigurationError: Unknown encoding name
        ValueError: ``text`` cannot be decoded
    """
    return from_bytes(to_bytes(text, source), target)

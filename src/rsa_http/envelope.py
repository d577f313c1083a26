"""
Wire format for encrypted bodies.

Envelope format (sent as the HTTP body in both directions):

    {"___RSADATA": "<base64 RSA-OAEP ciphertext>"}

Anything else (a plain-text refusal such as ``refused by rsa service``) is
not an envelope. The caller's public key travels separately in the
``x-client-key`` header.
"""

import json

from rsa_http.constants import ENVELOPE_FIELD
from rsa_http.exceptions import EnvelopeError

__all__ = [
    "decode_envelope",
    "encode_envelope",
    "is_envelope",
]


def encode_envelope(ciphertext: str) -> bytes:
    """
    Encode base64 ciphertext into an envelope body.

    Args:
        ciphertext: base64 ciphertext produced by a KeyStore

    Returns:
        JSON body bytes
    """
    return json.dumps({ENVELOPE_FIELD: ciphertext}).encode("utf-8")


def decode_envelope(body: bytes | str) -> str:
    """
    Extract the ciphertext from an envelope body.

    Args:
        body: Raw HTTP body

    Returns:
        base64 ciphertext

    Raises:
        EnvelopeError: Body is not JSON, not an object, or lacks the reserved field
    """
    try:
        payload = json.loads(body)
    except (ValueError, TypeError) as e:
        raise EnvelopeError(f"Body is not JSON: {e}") from e

    if not isinstance(payload, dict):
        raise EnvelopeError(f"Envelope must be a JSON object, got {type(payload).__name__}")

    ciphertext = payload.get(ENVELOPE_FIELD)
    if not isinstance(ciphertext, str) or not ciphertext:
        raise EnvelopeError(f"Envelope is missing the {ENVELOPE_FIELD} field")
    return ciphertext


def is_envelope(payload: object) -> bool:
    """Whether an already-parsed JSON value is an envelope."""
    return isinstance(payload, dict) and isinstance(payload.get(ENVELOPE_FIELD), str)

"""
Wire names and defaults shared by the client and server bridges.
"""

from enum import IntEnum

# =============================================================================
# Key sizes
# =============================================================================


class KeyBits(IntEnum):
    """RSA modulus sizes accepted for generated keypairs."""

    RSA_512 = 512
    RSA_1024 = 1024
    RSA_2048 = 2048
    RSA_4096 = 4096


SUPPORTED_BITS: tuple[int, ...] = tuple(int(b) for b in KeyBits)
DEFAULT_BITS: int = KeyBits.RSA_2048

# cryptography refuses to generate keys below this size
NATIVE_MIN_BITS: int = 1024

RSA_PUBLIC_EXPONENT: int = 65537

# OAEP with SHA-1: 2 * digest size + 2
OAEP_SHA1_OVERHEAD: int = 42

# =============================================================================
# Wire format
# =============================================================================

ENVELOPE_FIELD: str = "___RSADATA"
"""Reserved JSON field carrying base64 ciphertext in both directions."""

HEADER_CLIENT_KEY: str = "x-client-key"
"""Request header carrying the caller's public key (base64 of the PEM text)."""

DISCOVERY_PATH: str = "/.well-known/rsa-public-key"

SCOPE_CLIENT_KEY: str = "rsa_http.client_key"
"""ASGI scope key exposing the caller's PEM public key to downstream apps."""

# =============================================================================
# Refusals
# =============================================================================

REFUSAL_MESSAGE: str = "refused by rsa service"
ENCRYPTION_FAILURE_MESSAGE: str = "Error trying to encrypt response data"

# =============================================================================
# Discovery
# =============================================================================

DISCOVERY_RETRY_DELAY: float = 1.0
"""Fixed delay in seconds between discovery attempts."""

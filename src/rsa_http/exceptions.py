"""
Exception hierarchy for rsa_http.

All errors inherit from CryptoError for easy catching.
"""


class CryptoError(Exception):
    """Base exception for all rsa_http errors."""


class ConfigurationError(CryptoError):
    """Invalid key material, key format or key size.

    Raised at construction time; never retried.
    """


class DecryptionError(CryptoError):
    """Failed to decrypt ciphertext.

    Possible causes:
    - Ciphertext was produced for another keypair
    - Corrupted or tampered ciphertext
    - Invalid base64 or block length
    """


class EncryptionError(CryptoError):
    """Failed to encrypt an outbound payload (bad recipient key, undecodable body)."""


class EnvelopeError(CryptoError):
    """Body is not a well-formed encrypted envelope."""


class KeyDiscoveryError(CryptoError):
    """Failed to fetch or parse the peer public key from the discovery endpoint."""


class ProtocolRefusalError(CryptoError):
    """The peer refused the exchange at the HTTP level.

    Carries the HTTP status and the plain-text refusal body.
    """

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(f"Request refused (status={status}): {message}")

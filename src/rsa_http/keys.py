"""
RSA keypair holder with text-in, text-out encryption.

A KeyStore owns one keypair. Ciphertext is always base64 text; plaintext is
always UTF-8 text. Padding is RSA-OAEP (SHA-1 hash and MGF1), and payloads
longer than a single OAEP block are split into blocks:

┌──────────────────┬──────────────────┬─────┬──────────────────┐
│ OAEP block 1 (k) │ OAEP block 2 (k) │ ... │ OAEP block n (k) │
└──────────────────┴──────────────────┴─────┴──────────────────┘

where k is the modulus size in bytes and each block carries at most k - 42
plaintext bytes.

Usage:
    store = KeyStore(bits=2048)
    ciphertext = store.encrypt("hello")
    assert store.decrypt(ciphertext) == "hello"

    # Encrypt for somebody else
    ciphertext = store.encrypt_with_key(peer_pem, "hello")
"""

from __future__ import annotations

import base64
import binascii
import enum
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import rsa as pure_rsa
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric import rsa as rsa_crypto

from rsa_http._logging import get_logger
from rsa_http.codec import from_bytes
from rsa_http.constants import (
    DEFAULT_BITS,
    NATIVE_MIN_BITS,
    OAEP_SHA1_OVERHEAD,
    RSA_PUBLIC_EXPONENT,
    SUPPORTED_BITS,
)
from rsa_http.exceptions import ConfigurationError, DecryptionError

__all__ = [
    "KeyFormat",
    "KeyFormats",
    "KeyMaterial",
    "KeyStore",
    "load_public_key",
]

_logger = get_logger(__name__)


class KeyFormat(str, enum.Enum):
    """Text encoding of a single key half."""

    PKCS1_PEM = "pkcs1-pem"
    PKCS8_PEM = "pkcs8-pem"
    PKCS1_DER = "pkcs1-der"
    PKCS8_DER = "pkcs8-der"

    @classmethod
    def parse(cls, value: KeyFormat | str) -> KeyFormat:
        """
        Resolve a format name, accepting the common aliases.

        ``public`` -> pkcs8-pem, ``private``/``pkcs1`` -> pkcs1-pem,
        ``pkcs8`` -> pkcs8-pem, and long names such as ``pkcs8-public-pem``.

        Raises:
            ConfigurationError: Unknown format name
        """
        if isinstance(value, KeyFormat):
            return value
        if not isinstance(value, str):
            raise ConfigurationError(f"Key format must be a string, got {type(value).__name__}")

        name = value.strip().lower()
        aliases = {"public": "pkcs8-pem", "private": "pkcs1-pem", "pkcs1": "pkcs1-pem", "pkcs8": "pkcs8-pem"}
        name = aliases.get(name, name)

        parts = [p for p in name.split("-") if p not in ("public", "private")]
        if len(parts) == 1:
            parts.append("pem")
        try:
            return cls("-".join(parts))
        except ValueError:
            raise ConfigurationError(f"Unsupported key format: {value!r}") from None

    @property
    def is_pem(self) -> bool:
        return self.value.endswith("-pem")

    @property
    def is_pkcs1(self) -> bool:
        return self.value.startswith("pkcs1")


@dataclass(frozen=True)
class KeyFormats:
    """Formats for the public and private halves of a keypair."""

    public: KeyFormat = KeyFormat.PKCS8_PEM
    private: KeyFormat = KeyFormat.PKCS1_PEM

    @classmethod
    def parse(cls, value: KeyFormats | KeyFormat | str | Mapping[str, Any]) -> KeyFormats:
        """
        Build formats from a single name (applied to both halves) or a mapping.

        A mapping must name both ``public`` and ``private``.

        Raises:
            ConfigurationError: Missing half or unknown format name
        """
        if isinstance(value, KeyFormats):
            return value
        if isinstance(value, str):
            fmt = KeyFormat.parse(value)
            return cls(public=fmt, private=fmt)
        if isinstance(value, Mapping):
            missing = [half for half in ("public", "private") if not value.get(half)]
            if missing:
                raise ConfigurationError(f"Key format object is missing: {', '.join(missing)}")
            return cls(public=KeyFormat.parse(value["public"]), private=KeyFormat.parse(value["private"]))
        raise ConfigurationError(f"Invalid key format descriptor: {value!r}")


@dataclass(frozen=True)
class KeyMaterial:
    """Exported text of a keypair plus the format of each half."""

    public: str
    private: str
    format: KeyFormats

    @classmethod
    def parse(cls, value: KeyMaterial | Mapping[str, Any]) -> KeyMaterial:
        """
        Build key material from a ``{public, private, format}`` mapping.

        Raises:
            ConfigurationError: Any of the three entries is missing
        """
        if isinstance(value, KeyMaterial):
            return value
        if not isinstance(value, Mapping):
            raise ConfigurationError(f"Invalid key material: {type(value).__name__}")
        missing = [name for name in ("public", "private", "format") if not value.get(name)]
        if missing:
            raise ConfigurationError(f"Key material is missing: {', '.join(missing)}")
        return cls(public=value["public"], private=value["private"], format=KeyFormats.parse(value["format"]))


# =============================================================================
# Key loading / export
# =============================================================================


def _key_bytes(text: str, fmt: KeyFormat) -> bytes:
    if fmt.is_pem:
        return text.encode("ascii")
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error as e:
        raise ConfigurationError(f"DER key is not valid base64: {e}") from e


def load_public_key(key: str, fmt: KeyFormat | str | None = None) -> rsa_crypto.RSAPublicKey:
    """
    Load an RSA public key from text.

    PEM input is recognised in both PKCS#1 and SubjectPublicKeyInfo wrapping;
    DER input is base64 text.

    Raises:
        ConfigurationError: Invalid key text or not an RSA key
    """
    key_format = KeyFormat.parse(fmt) if fmt is not None else KeyFormat.PKCS8_PEM
    try:
        data = _key_bytes(key, key_format)
        if key_format.is_pem:
            loaded = serialization.load_pem_public_key(data)
        else:
            loaded = serialization.load_der_public_key(data)
    except (ValueError, TypeError, UnicodeError) as e:
        raise ConfigurationError(f"Invalid public key ({key_format.value}): {e}") from e
    if not isinstance(loaded, rsa_crypto.RSAPublicKey):
        raise ConfigurationError(f"Public key is not an RSA key: {type(loaded).__name__}")
    return loaded


def _load_private_key(key: str, fmt: KeyFormat) -> rsa_crypto.RSAPrivateKey:
    try:
        data = _key_bytes(key, fmt)
        if fmt.is_pem:
            loaded = serialization.load_pem_private_key(data, password=None)
        else:
            loaded = serialization.load_der_private_key(data, password=None)
    except (ValueError, TypeError, UnicodeError) as e:
        raise ConfigurationError(f"Invalid private key ({fmt.value}): {e}") from e
    if not isinstance(loaded, rsa_crypto.RSAPrivateKey):
        raise ConfigurationError(f"Private key is not an RSA key: {type(loaded).__name__}")
    return loaded


def _export_public_key(key: rsa_crypto.RSAPublicKey, fmt: KeyFormat) -> str:
    public_format = (
        serialization.PublicFormat.PKCS1 if fmt.is_pkcs1 else serialization.PublicFormat.SubjectPublicKeyInfo
    )
    if fmt.is_pem:
        return key.public_bytes(serialization.Encoding.PEM, public_format).decode("ascii")
    return from_bytes(key.public_bytes(serialization.Encoding.DER, public_format), "base64")


def _export_private_key(key: rsa_crypto.RSAPrivateKey, fmt: KeyFormat) -> str:
    private_format = (
        serialization.PrivateFormat.TraditionalOpenSSL if fmt.is_pkcs1 else serialization.PrivateFormat.PKCS8
    )
    encoding = serialization.Encoding.PEM if fmt.is_pem else serialization.Encoding.DER
    data = key.private_bytes(encoding, private_format, serialization.NoEncryption())
    return data.decode("ascii") if fmt.is_pem else from_bytes(data, "base64")


def _generate_private_key(bits: int) -> rsa_crypto.RSAPrivateKey:
    """Generate a keypair, falling back to the pure-Python generator below 1024 bits."""
    if bits >= NATIVE_MIN_BITS:
        return rsa_crypto.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=bits)

    _pub, priv = pure_rsa.newkeys(bits, exponent=RSA_PUBLIC_EXPONENT)
    numbers = rsa_crypto.RSAPrivateNumbers(
        p=priv.p,
        q=priv.q,
        d=priv.d,
        dmp1=priv.exp1,
        dmq1=priv.exp2,
        iqmp=priv.coef,
        public_numbers=rsa_crypto.RSAPublicNumbers(e=priv.e, n=priv.n),
    )
    return numbers.private_key()


# =============================================================================
# Block encryption
# =============================================================================


def _oaep() -> padding.OAEP:
    return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA1()), algorithm=hashes.SHA1(), label=None)


def _modulus_bytes(key_size: int) -> int:
    return (key_size + 7) // 8


def _encrypt_blocks(key: rsa_crypto.RSAPublicKey, plaintext: bytes) -> str:
    block_size = _modulus_bytes(key.key_size) - OAEP_SHA1_OVERHEAD
    if block_size <= 0:
        raise ConfigurationError(f"Key too small for OAEP: {key.key_size} bits")
    blocks = [plaintext[i : i + block_size] for i in range(0, len(plaintext), block_size)] or [b""]
    ciphertext = b"".join(key.encrypt(block, _oaep()) for block in blocks)
    return base64.b64encode(ciphertext).decode("ascii")


def _decrypt_blocks(key: rsa_crypto.RSAPrivateKey, ciphertext: str) -> str:
    try:
        data = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionError("Ciphertext is not valid base64") from e

    block_size = _modulus_bytes(key.key_size)
    if not data or len(data) % block_size:
        raise DecryptionError(f"Ciphertext length {len(data)} is not a multiple of {block_size}")

    try:
        plaintext = b"".join(key.decrypt(data[i : i + block_size], _oaep()) for i in range(0, len(data), block_size))
    except ValueError as e:
        # Don't expose padding details
        raise DecryptionError("Ciphertext does not match this keypair") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted payload is not UTF-8 text") from e


# =============================================================================
# KeyStore
# =============================================================================


class KeyStore:
    """
    Single RSA keypair with base64/UTF-8 text encryption.

    Construct either from existing key material or by generating a new pair:

        KeyStore(bits=1024)
        KeyStore(keys=KeyMaterial(public=pem, private=pem, format=KeyFormats()))
        KeyStore.from_config({"bits": 2048, "keys": {...}})
    """

    __slots__ = ("_formats", "_private_key", "_public_key")

    def __init__(
        self,
        bits: int = DEFAULT_BITS,
        keys: KeyMaterial | Mapping[str, Any] | None = None,
    ) -> None:
        """
        Args:
            bits: Modulus size for a generated pair (512, 1024, 2048 or 4096)
            keys: Existing ``{public, private, format}`` material to import

        Raises:
            ConfigurationError: Unsupported size, partial material or invalid keys
        """
        if keys is not None:
            material = KeyMaterial.parse(keys)
            self._formats = material.format
            self._public_key = load_public_key(material.public, material.format.public)
            self._private_key = _load_private_key(material.private, material.format.private)
            if self._private_key.public_key().public_numbers() != self._public_key.public_numbers():
                raise ConfigurationError("Public key does not match private key")
            _logger.debug("Key material imported: bits=%d formats=%s", self.bits, self._formats)
            return

        if bits not in SUPPORTED_BITS:
            raise ConfigurationError(f"Unsupported key size: {bits} (expected one of {SUPPORTED_BITS})")
        self._formats = KeyFormats()
        self._private_key = _generate_private_key(bits)
        self._public_key = self._private_key.public_key()
        _logger.debug("Keypair generated: bits=%d", bits)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> KeyStore:
        """Build from a ``{"bits": int, "keys": {public, private, format}}`` mapping."""
        keys = config.get("keys")
        return cls(bits=config.get("bits", DEFAULT_BITS), keys=keys)

    @property
    def bits(self) -> int:
        return self._private_key.key_size

    @property
    def formats(self) -> KeyFormats:
        return self._formats

    @property
    def material(self) -> KeyMaterial:
        """Exported key text in this store's formats (suitable for ``keys=``)."""
        return KeyMaterial(
            public=_export_public_key(self._public_key, self._formats.public),
            private=_export_private_key(self._private_key, self._formats.private),
            format=self._formats,
        )

    def encrypt(self, data: str) -> str:
        """Encrypt UTF-8 text with this store's public key; returns base64."""
        return _encrypt_blocks(self._public_key, data.encode("utf-8"))

    def decrypt(self, data: str) -> str:
        """
        Decrypt base64 ciphertext with this store's private key.

        Raises:
            DecryptionError: Malformed, tampered or foreign ciphertext
        """
        return _decrypt_blocks(self._private_key, data)

    def encrypt_with_key(self, key: str, data: str, format: KeyFormat | str | None = None) -> str:  # noqa: A002
        """
        Encrypt UTF-8 text for the holder of another public key.

        The key is loaded for this call only and not retained.

        Raises:
            ConfigurationError: ``key`` is not a valid RSA public key
        """
        return _encrypt_blocks(load_public_key(key, format), data.encode("utf-8"))

    def public_key(self, format: KeyFormat | str | None = None, encoding: str | None = None) -> str:  # noqa: A002
        """
        Export the public key.

        Args:
            format: Key format (defaults to this store's public format)
            encoding: Optional text encoding to transcode the export into,
                e.g. ``"base64"`` for use in an HTTP header

        Returns:
            Exported public key text
        """
        fmt = KeyFormat.parse(format) if format is not None else self._formats.public
        exported = _export_public_key(self._public_key, fmt)
        if encoding is None:
            return exported
        return from_bytes(exported.encode("ascii"), encoding)

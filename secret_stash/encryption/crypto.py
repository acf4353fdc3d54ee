"""
Stash Crypto Core — passphrase key derivation and AEAD encrypt/decrypt.

Passphrase → PBKDF2-HMAC-SHA256(salt, iterations) → AES-GCM or
ChaCha20-Poly1305 → envelope:

    [version 1B][iterations 4B uint32 BE][salt 16B][nonce 12B][payload + tag 16B]

Salt and nonce are random per encryption, so encrypting the same content
twice never yields the same envelope.

Security Note:
    Never log plaintext, ciphertext or passphrases.
"""
import os
import struct
import logging
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..config import DEFAULT_KDF_ITERATIONS, MAX_KDF_ITERATIONS
from ..exceptions import DecryptionFailed

logger = logging.getLogger("secret_stash")

FORMAT_VERSION = 1
SALT_SIZE = 16
NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
KEY_LENGTH = 32  # 256-bit keys

_HEADER = struct.Struct("!BI")  # version, kdf iterations
_PREFIX_SIZE = _HEADER.size + SALT_SIZE + NONCE_SIZE

_SCHEME_SUFFIX = "-pbkdf2-sha256"

_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}

Passphrase = Union[str, bytes]


def get_cipher_cls(backend: str) -> type:
    """Return the AEAD cipher class for a backend name."""
    try:
        return _CIPHERS[backend]
    except KeyError:
        raise ValueError(f"Unsupported cipher backend: {backend}") from None


def scheme_tag(backend: str) -> str:
    """Scheme tag recorded in the encrypted-state marker."""
    get_cipher_cls(backend)
    return f"{backend}{_SCHEME_SUFFIX}"


def backend_from_scheme(tag: str) -> str:
    """Inverse of :func:`scheme_tag`.

    Raises:
        DecryptionFailed: If the tag names an unknown scheme.
    """
    tag = tag.strip()
    backend = tag[:-len(_SCHEME_SUFFIX)] if tag.endswith(_SCHEME_SUFFIX) else ""
    if backend not in _CIPHERS:
        raise DecryptionFailed(f"Unknown encryption scheme: {tag!r}")
    return backend


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(passphrase: Passphrase, salt: bytes, iterations: int) -> bytes:
    """Derive a 32-byte encryption key from a passphrase using PBKDF2-HMAC-SHA256.

    Args:
        passphrase: Secret passphrase (str is UTF-8 encoded).
        salt: Random per-encryption salt.
        iterations: PBKDF2 work factor.

    Returns:
        32-byte derived key.
    """
    if isinstance(passphrase, str):
        passphrase = passphrase.encode("utf-8")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase)


# ---------------------------------------------------------------------------
# Content encryption
# ---------------------------------------------------------------------------

def encrypt_content(
    plaintext: bytes,
    passphrase: Passphrase,
    *,
    backend: str = "aesgcm",
    iterations: int = DEFAULT_KDF_ITERATIONS,
) -> bytes:
    """Encrypt item content under a passphrase.

    Args:
        plaintext: Data to encrypt.
        passphrase: Passphrase used for key derivation.
        backend: ``aesgcm`` or ``chacha20``.
        iterations: PBKDF2 work factor, recorded in the envelope.

    Returns:
        Envelope bytes.
    """
    if not 1 <= iterations <= MAX_KDF_ITERATIONS:
        raise ValueError(
            f"kdf iterations must be between 1 and {MAX_KDF_ITERATIONS}"
        )
    cipher_cls = get_cipher_cls(backend)
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    key = derive_key(passphrase, salt, iterations)
    ct = cipher_cls(key).encrypt(nonce, plaintext, None)
    return _HEADER.pack(FORMAT_VERSION, iterations) + salt + nonce + ct


def decrypt_content(
    envelope: bytes,
    passphrase: Passphrase,
    *,
    backend: str = "aesgcm",
) -> bytes:
    """Decrypt an envelope produced by :func:`encrypt_content`.

    Args:
        envelope: Envelope bytes.
        passphrase: Passphrase used for key derivation.
        backend: Cipher the envelope was produced with.

    Returns:
        Decrypted plaintext bytes.

    Raises:
        DecryptionFailed: On a wrong passphrase, a tampered payload or a
            malformed envelope.
    """
    _min = _PREFIX_SIZE + TAG_SIZE
    if len(envelope) < _min:
        raise DecryptionFailed(
            f"Ciphertext too short: {len(envelope)} bytes (minimum {_min})"
        )
    version, iterations = _HEADER.unpack_from(envelope)
    if version != FORMAT_VERSION:
        raise DecryptionFailed(f"Unsupported envelope version: {version}")
    if not 1 <= iterations <= MAX_KDF_ITERATIONS:
        raise DecryptionFailed(
            f"Invalid key derivation parameters: {iterations} iterations"
        )
    offset = _HEADER.size
    salt = envelope[offset:offset + SALT_SIZE]
    offset += SALT_SIZE
    nonce = envelope[offset:offset + NONCE_SIZE]
    ct = envelope[offset + NONCE_SIZE:]
    key = derive_key(passphrase, salt, iterations)
    try:
        return get_cipher_cls(backend)(key).decrypt(nonce, ct, None)
    except InvalidTag as err:
        raise DecryptionFailed(
            "Wrong passphrase or corrupted ciphertext"
        ) from err

"""Encryption at rest — passphrase encryption of stored items.

Security Note (Threat Model):
    Plaintext and passphrases live in process memory while an item is
    encrypted, decrypted or re-keyed. A memory dump of the process during
    those operations could expose them. The AEAD tag detects wrong
    passphrases and tampering, nothing more.
"""

from .crypto import encrypt_content, decrypt_content, derive_key, scheme_tag
from .layer import EncryptionLayer
from .key_rotation import rotate_container_passphrase

__all__ = [
    "EncryptionLayer",
    "rotate_container_passphrase",
    "encrypt_content",
    "decrypt_content",
    "derive_key",
    "scheme_tag",
]

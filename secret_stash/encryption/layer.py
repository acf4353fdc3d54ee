"""
EncryptionLayer — passphrase encryption of an item's content at rest.

The marker ``P.enc`` exists exactly when ``P`` holds ciphertext. It stores
the scheme tag, never secret material. Every operation runs in a single lock
span over the item: the content is rewritten through the crash-safe write
protocol first, and the marker is flipped as the last step.

Security Note:
    Never log plaintext, ciphertext or passphrases.
"""
import os
import logging
from pathlib import Path
from typing import Optional

from ..config import DEFAULT_KDF_ITERATIONS, StashConfig
from ..exceptions import AlreadyEncrypted, NotEncrypted
from ..store import SecretFile
from .crypto import (
    Passphrase,
    backend_from_scheme,
    decrypt_content,
    encrypt_content,
    scheme_tag,
)

logger = logging.getLogger("secret_stash")

ENC_SUFFIX = ".enc"


class EncryptionLayer:
    """Encrypt, decrypt and re-key one item.

    Args:
        store: The item to operate on.
        cipher_backend: Cipher used for new encryptions.
        kdf_iterations: PBKDF2 work factor for new encryptions.
    """

    def __init__(
        self,
        store: SecretFile,
        *,
        cipher_backend: str = "aesgcm",
        kdf_iterations: int = DEFAULT_KDF_ITERATIONS,
    ) -> None:
        self.store = store
        self.cipher_backend = cipher_backend
        self.kdf_iterations = kdf_iterations
        self.marker_path: Path = store.path.with_name(store.path.name + ENC_SUFFIX)

    @classmethod
    def from_config(cls, store: SecretFile, config: StashConfig) -> "EncryptionLayer":
        return cls(
            store,
            cipher_backend=config.cipher_backend,
            kdf_iterations=config.kdf_iterations,
        )

    def __repr__(self) -> str:
        return (
            f"<EncryptionLayer {self.store.identifier!r} "
            f"encrypted={self.is_encrypted()}>"
        )

    # ------------------------------------------------------------------
    # Marker
    # ------------------------------------------------------------------

    def is_encrypted(self) -> bool:
        return self.marker_path.exists()

    def scheme(self) -> Optional[str]:
        """Scheme tag recorded in the marker, or None when not encrypted."""
        try:
            return self.marker_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None

    def ensure_unencrypted(self) -> None:
        """Raise :class:`AlreadyEncrypted` if the content is ciphertext."""
        if self.is_encrypted():
            raise AlreadyEncrypted(
                f"Contents of {self.store.identifier} are encrypted"
            )

    def _ensure_encrypted(self) -> None:
        if not self.is_encrypted():
            raise NotEncrypted(
                f"Contents of {self.store.identifier} are not encrypted"
            )

    def _write_marker(self) -> None:
        fd = os.open(
            self.marker_path,
            os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
            self.store.file_mode,
        )
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(scheme_tag(self.cipher_backend))
            fh.flush()
            os.fsync(fh.fileno())

    def _remove_marker(self) -> None:
        self.marker_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def _encrypt(self, plaintext: bytes, passphrase: Passphrase) -> bytes:
        return encrypt_content(
            plaintext,
            passphrase,
            backend=self.cipher_backend,
            iterations=self.kdf_iterations,
        )

    def _decrypt(self, ciphertext: bytes, passphrase: Passphrase) -> bytes:
        tag = self.scheme()
        backend = backend_from_scheme(tag) if tag else self.cipher_backend
        return decrypt_content(ciphertext, passphrase, backend=backend)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encrypt(self, passphrase: Passphrase) -> None:
        """Encrypt the current content in place.

        Raises:
            AlreadyEncrypted: If the item is already encrypted.
        """
        with self.store.lock.hold(exclusive=True):
            self.ensure_unencrypted()
            plaintext = self.store.read()
            self.store.write(self._encrypt(plaintext, passphrase))
            self._write_marker()
        logger.info("Encrypted item %s", self.store.identifier)

    def decrypt(self, passphrase: Passphrase) -> None:
        """Decrypt the current content in place.

        A wrong passphrase leaves the item encrypted and unchanged.

        Raises:
            NotEncrypted: If the item is not encrypted.
            DecryptionFailed: On a wrong passphrase or corrupted ciphertext.
        """
        with self.store.lock.hold(exclusive=True):
            self._ensure_encrypted()
            plaintext = self._decrypt(self.store.read(), passphrase)
            self.store.write(plaintext)
            self._remove_marker()
        logger.info("Decrypted item %s", self.store.identifier)

    def rotate_passphrase(self, old: Passphrase, new: Passphrase) -> None:
        """Re-encrypt the content under a new passphrase.

        Decryption, re-encryption and the write happen under one exclusive
        lock, and plaintext never reaches the disk.

        Raises:
            NotEncrypted: If the item is not encrypted.
            DecryptionFailed: If ``old`` is wrong.
        """
        with self.store.lock.hold(exclusive=True):
            self._ensure_encrypted()
            plaintext = self._decrypt(self.store.read(), old)
            self.store.write(self._encrypt(plaintext, new))
            self._write_marker()
        logger.info("Rotated passphrase for item %s", self.store.identifier)

    def peek_encrypted_view(self, passphrase: Passphrase) -> bytes:
        """Ciphertext of the item without changing what is stored.

        Returns stored content unchanged when it is already encrypted.
        """
        with self.store.lock.hold(exclusive=False):
            content = self.store.read()
            if self.is_encrypted():
                return content
            return self._encrypt(content, passphrase)

    def peek_decrypted_view(self, passphrase: Passphrase) -> bytes:
        """Plaintext of the item without changing what is stored.

        Raises:
            DecryptionFailed: On a wrong passphrase.
        """
        with self.store.lock.hold(exclusive=False):
            content = self.store.read()
            if not self.is_encrypted():
                return content
            return self._decrypt(content, passphrase)

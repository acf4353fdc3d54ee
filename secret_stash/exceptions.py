"""
Secret Stash errors.

Every error raised by the package derives from :class:`SecretStashError`.
Most also derive from the closest builtin so callers can catch them
generically (``KeyError`` for a missing item, ``TimeoutError`` for a lock
wait, and so on).
"""


class SecretStashError(Exception):
    """Base class for all secret_stash errors."""


class InvalidContent(SecretStashError, TypeError):
    """Raised when a value that is not bytes or str is written to an item."""


class FileUnwritable(SecretStashError, PermissionError):
    """Raised when an existing item file is not writable by this process."""


class LockTimeout(SecretStashError, TimeoutError):
    """Raised when waiting for an item lock exceeds the timeout."""


class EncryptionStateError(SecretStashError):
    """Base class for encrypted-state precondition failures."""


class AlreadyEncrypted(EncryptionStateError):
    """Raised when encrypting an item that is already encrypted."""


class NotEncrypted(EncryptionStateError):
    """Raised when decrypting an item that is not encrypted."""


class DecryptionFailed(SecretStashError, ValueError):
    """Raised on a wrong passphrase or a corrupted ciphertext envelope."""


class CorruptRecoveryState(SecretStashError):
    """Raised when crash-recovery artifacts are inconsistent.

    Either the staging and backup files exist at the same time, or the
    backup is present but cannot be read.
    """


class ItemNotFound(SecretStashError, KeyError):
    """Raised when looking up an item that has no content file."""


class ContainerError(SecretStashError, OSError):
    """Raised when a container directory is missing or unusable."""

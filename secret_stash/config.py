"""
Stash Configuration — validated settings for containers and items.

Settings are built explicitly and passed to :func:`open_container`; there is
no process-wide default. ``StashConfig.from_env`` reads:

    SECRET_STASH_DIR = <path to the root container>
    SECRET_STASH_LOCK_TIMEOUT_MS = <integer, negative waits forever>
    SECRET_STASH_POLL_INTERVAL_MS = <integer>
    SECRET_STASH_CIPHER = aesgcm | chacha20
    SECRET_STASH_KDF_ITERATIONS = <integer>

Security Note:
    Passphrases are never part of the configuration. Never log them.
"""
import os
import secrets
import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("secret_stash")

DEFAULT_LOCK_WAIT_MS = 5000
DEFAULT_POLL_INTERVAL_MS = 100
DEFAULT_KDF_ITERATIONS = 480000
MIN_KDF_ITERATIONS = 1000
# Upper bound also applied to envelope headers, which are not authenticated.
MAX_KDF_ITERATIONS = 10_000_000

SUPPORTED_CIPHERS = ("aesgcm", "chacha20")


def generate_passphrase(nbytes: int = 32) -> str:
    """Generate a random URL-safe passphrase.

    This is a utility for operators to create new passphrases.

    Args:
        nbytes: Number of random bytes behind the passphrase.

    Returns:
        URL-safe text passphrase.
    """
    return secrets.token_urlsafe(nbytes)


class StashConfig(BaseModel):
    """Validated stash configuration."""

    directory: Path
    auto_create: bool = True
    file_mode: int = Field(default=0o600)
    dir_mode: int = Field(default=0o700)
    lock_timeout_ms: int = Field(default=DEFAULT_LOCK_WAIT_MS)
    poll_interval_ms: int = Field(default=DEFAULT_POLL_INTERVAL_MS, ge=1, le=60000)
    cipher_backend: str = Field(default="aesgcm")
    kdf_iterations: int = Field(
        default=DEFAULT_KDF_ITERATIONS,
        ge=MIN_KDF_ITERATIONS,
        le=MAX_KDF_ITERATIONS,
    )

    @field_validator("file_mode", "dir_mode")
    @classmethod
    def validate_mode(cls, v: int) -> int:
        """Permission bits only; no setuid/setgid/sticky."""
        if not 0 <= v <= 0o777:
            raise ValueError(f"Invalid permission mode: {oct(v)}")
        return v

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in SUPPORTED_CIPHERS:
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @classmethod
    def from_env(cls) -> "StashConfig":
        """Create StashConfig by loading values from environment.

        Returns:
            Populated StashConfig instance.

        Raises:
            RuntimeError: If SECRET_STASH_DIR is not set.
        """
        directory = os.environ.get("SECRET_STASH_DIR")
        if not directory:
            raise RuntimeError(
                "SECRET_STASH_DIR environment variable is not set"
            )
        config = cls(
            directory=Path(directory).expanduser(),
            lock_timeout_ms=int(
                os.environ.get("SECRET_STASH_LOCK_TIMEOUT_MS", DEFAULT_LOCK_WAIT_MS)
            ),
            poll_interval_ms=int(
                os.environ.get("SECRET_STASH_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS)
            ),
            cipher_backend=os.environ.get("SECRET_STASH_CIPHER", "aesgcm"),
            kdf_iterations=int(
                os.environ.get("SECRET_STASH_KDF_ITERATIONS", DEFAULT_KDF_ITERATIONS)
            ),
        )
        logger.debug(
            "Loaded stash config: directory=%s cipher=%s",
            config.directory, config.cipher_backend,
        )
        return config

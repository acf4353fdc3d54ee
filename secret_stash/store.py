"""
SecretFile — crash-safe content storage for a single item.

Write protocol for an item at ``P``, all under one exclusive lock:

1. touch ``P``
2. write the new content to ``P.tmp`` (fsynced)
3. rename ``P.tmp`` to ``P.bak``; the backup holds the *new* content
4. truncate ``P`` and write the new content into it (fsynced)
5. delete ``P.bak``
6. re-apply restrictive permissions to ``P``

A crash before step 3 leaves ``P`` untouched plus a stray ``P.tmp``. A crash
after step 3 leaves a complete ``P.bak``, which :meth:`SecretFile.restore_backup`
promotes over ``P``. Either way exactly one of old or new content survives.

Security Note:
    Never log item content. Only log paths and identifiers.
"""
import os
import errno
import base64
import logging
from pathlib import Path
from contextlib import contextmanager
from typing import IO, Any, Iterator, Optional, Union

import orjson

from .config import DEFAULT_LOCK_WAIT_MS, DEFAULT_POLL_INTERVAL_MS, StashConfig
from .exceptions import CorruptRecoveryState, FileUnwritable, InvalidContent
from .locking import LockCoordinator

logger = logging.getLogger("secret_stash")

TMP_SUFFIX = ".tmp"
BAK_SUFFIX = ".bak"

_BYTES_WRAPPER_KEY = "__stash_bytes_b64__"

Content = Union[bytes, bytearray, memoryview, str]


def coerce_content(content: Any) -> bytes:
    """Return ``content`` as bytes; str is UTF-8 encoded.

    Raises:
        InvalidContent: For anything that is not bytes-like or str.
    """
    if isinstance(content, str):
        return content.encode("utf-8")
    if isinstance(content, (bytes, bytearray, memoryview)):
        return bytes(content)
    raise InvalidContent(
        f"Content must be bytes or str (was of type {type(content).__name__})"
    )


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> bytes:
    """Serialize a Python value to bytes for storage.

    Supports: str, int, float, dict, list, bytes, bool, None.
    bytes values are wrapped as {"__stash_bytes_b64__": "<base64>"} for a
    safe JSON round-trip.

    Args:
        value: Python value to serialize.

    Returns:
        orjson-encoded bytes.
    """
    if isinstance(value, bytes):
        wrapped = {_BYTES_WRAPPER_KEY: base64.b64encode(value).decode("ascii")}
        return orjson.dumps(wrapped)
    try:
        return orjson.dumps(value)
    except TypeError as err:
        raise InvalidContent(
            f"Value of type {type(value).__name__} is not serializable"
        ) from err


def deserialize_value(data: bytes) -> Any:
    """Deserialize bytes produced by :func:`serialize_value`.

    Empty content deserializes to None.
    """
    if not data:
        return None
    parsed = orjson.loads(data)
    if isinstance(parsed, dict) and _BYTES_WRAPPER_KEY in parsed and len(parsed) == 1:
        return base64.b64decode(parsed[_BYTES_WRAPPER_KEY])
    return parsed


class SecretFile:
    """One stored item: its content file plus lock, staging and backup files.

    Creating a SecretFile touches nothing on disk; the content file appears on
    first read or write.

    Args:
        path: Path of the content file.
        identifier: Name of the item inside its container.
        file_mode: Permission bits applied to the content file.
        lock_timeout_ms: Default lock wait for content operations.
        poll_interval_ms: Delay between two lock polls.
    """

    def __init__(
        self,
        path: Path,
        *,
        identifier: Optional[str] = None,
        file_mode: int = 0o600,
        lock_timeout_ms: int = DEFAULT_LOCK_WAIT_MS,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    ) -> None:
        self.path = Path(path)
        self.identifier = identifier or self.path.name
        self.file_mode = file_mode
        self.tmp_path = self.path.with_name(self.path.name + TMP_SUFFIX)
        self.backup_path = self.path.with_name(self.path.name + BAK_SUFFIX)
        self.lock = LockCoordinator(
            self.path,
            timeout_ms=lock_timeout_ms,
            poll_interval_ms=poll_interval_ms,
            mode=file_mode,
        )

    @classmethod
    def from_config(
        cls, path: Path, config: StashConfig, identifier: Optional[str] = None,
    ) -> "SecretFile":
        return cls(
            path,
            identifier=identifier,
            file_mode=config.file_mode,
            lock_timeout_ms=config.lock_timeout_ms,
            poll_interval_ms=config.poll_interval_ms,
        )

    def __repr__(self) -> str:
        return f"<SecretFile {self.identifier!r} at {self.path}>"

    @property
    def lock_timeout_ms(self) -> int:
        return self.lock.timeout_ms

    @lock_timeout_ms.setter
    def lock_timeout_ms(self, value: int) -> None:
        self.lock.timeout_ms = value

    # ------------------------------------------------------------------
    # File state
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.path.exists()

    def touch(self) -> bool:
        """Create an empty, restrictively permissioned content file if missing.

        Returns:
            True if the file was created, False if it already existed.

        Raises:
            FileUnwritable: If the file exists but this process cannot write it.
        """
        created = False
        if not self.exists():
            try:
                fd = os.open(
                    self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, self.file_mode,
                )
            except FileExistsError:
                pass
            else:
                os.close(fd)
                self.secure()
                created = True
                logger.debug("Created item file %s", self.path)
        if not os.access(self.path, os.W_OK):
            raise FileUnwritable(
                f"Item file {self.path} exists but is not writable by this process"
            )
        return created

    def secure(self) -> None:
        """Re-apply the restrictive permissions to the content file.

        Raises:
            FileNotFoundError: If the content file does not exist.
        """
        if not self.exists():
            raise FileNotFoundError(
                errno.ENOENT, "Item file doesn't exist", str(self.path),
            )
        os.chmod(self.path, self.file_mode)

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def read(self) -> bytes:
        """Return the full content, read under a shared lock.

        Raises:
            LockTimeout: If a writer holds the item past the lock timeout.
        """
        self.touch()
        with self.lock.hold(exclusive=False):
            return self.path.read_bytes()

    def write(self, content: Content) -> None:
        """Replace the content using the crash-safe write protocol.

        Args:
            content: New content; str is stored UTF-8 encoded.

        Raises:
            InvalidContent: If ``content`` is not bytes-like or str.
            LockTimeout: If the item stays locked past the lock timeout.
        """
        data = coerce_content(content)
        with self.lock.hold(exclusive=True):
            self.touch()
            self._stage(data)
            os.replace(self.tmp_path, self.backup_path)
            self._sync_directory()
            self._commit(data)
            self.backup_path.unlink()
            self.secure()
        logger.debug("Wrote %d byte(s) to %s", len(data), self.identifier)

    def _stage(self, data: bytes) -> None:
        fd = os.open(
            self.tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, self.file_mode,
        )
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())

    def _commit(self, data: bytes) -> None:
        with open(self.path, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())

    def _sync_directory(self) -> None:
        # a rename is durable only once its directory entry is flushed
        dir_fd = os.open(self.path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def read_value(self) -> Any:
        """Read the content and deserialize it with orjson."""
        return deserialize_value(self.read())

    def write_value(self, value: Any) -> None:
        """Serialize ``value`` with orjson and write it.

        Supported types: str, int, float, dict, list, bytes, bool, None.
        """
        self.write(serialize_value(value))

    @contextmanager
    def stream(self, mode: str = "r+b") -> Iterator[IO]:
        """Yield an open file object while holding an exclusive lock.

        Writes through the stream bypass the crash-safe protocol; prefer
        :meth:`write` for replacing content.
        """
        self.touch()
        with self.lock.hold(exclusive=True):
            with open(self.path, mode) as fh:
                yield fh

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    def restore_backup(self) -> bool:
        """Finish a write interrupted after its content was staged.

        The backup always holds complete new content, so it replaces the
        live file.

        Returns:
            False if the item is locked or has no backup, True once the
            backup has been promoted.

        Raises:
            CorruptRecoveryState: If the staging file coexists with the
                backup, or the backup cannot be read.
        """
        if self.lock.is_locked():
            return False
        if not self.backup_path.exists():
            return False
        with self.lock.hold(exclusive=True):
            if not self.backup_path.exists():
                return False
            if self.tmp_path.exists():
                raise CorruptRecoveryState(
                    f"Both {self.tmp_path.name} and {self.backup_path.name} "
                    f"exist for {self.identifier}"
                )
            if not os.access(self.backup_path, os.R_OK):
                raise CorruptRecoveryState(
                    f"Backup {self.backup_path} is not readable"
                )
            os.replace(self.backup_path, self.path)
            self._sync_directory()
            self.secure()
        logger.info("Restored backup for %s", self.identifier)
        return True

    def discard_staging(self) -> bool:
        """Remove a staging file left by a write that crashed before commit.

        Returns:
            True if a stray staging file was removed.
        """
        if not self.tmp_path.exists() or self.backup_path.exists():
            return False
        with self.lock.hold(exclusive=True):
            if not self.tmp_path.exists():
                return False
            self.tmp_path.unlink()
        logger.warning("Discarded stray staging file for %s", self.identifier)
        return True

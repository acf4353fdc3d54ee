"""
Advisory Locking — cooperative, cross-process locks backed by marker files.

A lock over ``P`` is the marker file ``P.lock`` whose content is
``<exclusive-bit>:<pid>`` (``1`` exclusive, ``0`` shared). Its mere presence
means "locked". Ownership is tracked by the :class:`LockCoordinator` instance
that created the marker, never re-derived from the pid stored on disk.

The lock is honored only by code going through this module. A process that
writes to ``P`` directly is not stopped by it.

Any existing marker blocks a new acquisition by another instance, shared or
not. Shared locks only differ in what :meth:`LockCoordinator.wait_until_unlocked`
waits for when no action is given.
"""
import os
import time
import logging
import threading
from pathlib import Path
from dataclasses import dataclass
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from .config import DEFAULT_LOCK_WAIT_MS, DEFAULT_POLL_INTERVAL_MS
from .exceptions import LockTimeout

logger = logging.getLogger("secret_stash")

LOCK_SUFFIX = ".lock"

_EXCLUSIVE_BIT = "1"
_SHARED_BIT = "0"


@dataclass(frozen=True)
class LockInfo:
    """Decoded content of a lock marker."""
    exclusive: bool
    pid: int


def encode_marker(exclusive: bool, pid: int) -> str:
    """Encode a lock marker as ``<exclusive-bit>:<pid>``."""
    bit = _EXCLUSIVE_BIT if exclusive else _SHARED_BIT
    return f"{bit}:{pid}"


def decode_marker(raw: str) -> LockInfo:
    """Decode a lock marker.

    Raises:
        ValueError: If the marker is not ``<0|1>:<pid>``.
    """
    bit, sep, pid = raw.strip().partition(":")
    if not sep or bit not in (_EXCLUSIVE_BIT, _SHARED_BIT):
        raise ValueError(f"Malformed lock marker: {raw!r}")
    return LockInfo(exclusive=bit == _EXCLUSIVE_BIT, pid=int(pid))


class LockCoordinator:
    """Advisory lock over one item path.

    Args:
        path: Path of the content file being guarded.
        timeout_ms: Default wait timeout; negative waits forever.
        poll_interval_ms: Default delay between two lock polls.
        mode: Permission bits for the marker file.
    """

    def __init__(
        self,
        path: Path,
        *,
        timeout_ms: int = DEFAULT_LOCK_WAIT_MS,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        mode: int = 0o600,
    ) -> None:
        self.path = Path(path)
        self.marker_path = self.path.with_name(self.path.name + LOCK_SUFFIX)
        self.timeout_ms = timeout_ms
        self.poll_interval_ms = poll_interval_ms
        self._mode = mode
        self._owns_lock = False
        self._exclusive = False
        # serializes threads sharing this instance; re-entrant for the holder
        self._mutex = threading.RLock()

    def __repr__(self) -> str:
        return (
            f"<LockCoordinator {self.marker_path} "
            f"owned={self._owns_lock} exclusive={self._exclusive}>"
        )

    @property
    def owns_lock(self) -> bool:
        """True if this instance created the lock currently held."""
        return self._owns_lock

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def acquire(self, exclusive: bool = False) -> bool:
        """Take the lock without waiting.

        Re-acquiring a lock this instance already owns returns True and keeps
        the holder; asking for ``exclusive`` upgrades a shared lock.

        Returns:
            True if the lock is now held by this instance. False if another
            holder's marker is present, or another thread is inside a
            :meth:`hold` block of this instance.
        """
        if not self._mutex.acquire(blocking=False):
            return False
        try:
            if self._owns_lock and self.marker_path.exists():
                if exclusive and not self._exclusive:
                    self.marker_path.write_text(
                        encode_marker(True, os.getpid()), encoding="ascii",
                    )
                    self._exclusive = True
                    logger.debug("Lock upgraded to exclusive: %s", self.marker_path)
                return True
            try:
                fd = os.open(
                    self.marker_path,
                    os.O_WRONLY | os.O_CREAT | os.O_EXCL,
                    self._mode,
                )
            except FileExistsError:
                return False
            with os.fdopen(fd, "w", encoding="ascii") as fh:
                fh.write(encode_marker(exclusive, os.getpid()))
            self._owns_lock = True
            self._exclusive = exclusive
            logger.debug(
                "Lock acquired (exclusive=%s): %s", exclusive, self.marker_path,
            )
            return True
        finally:
            self._mutex.release()

    def is_locked(self, require_exclusive: bool = False) -> bool:
        """Check the marker, regardless of who owns it.

        Args:
            require_exclusive: Only report exclusive locks.

        Returns:
            True if locked. Unreadable markers count as unlocked.
        """
        try:
            if not self.marker_path.exists():
                return False
            if not require_exclusive:
                return True
            raw = self.marker_path.read_text(encoding="ascii")
            return decode_marker(raw).exclusive
        except (OSError, ValueError):
            return False

    def release(self) -> bool:
        """Release a lock owned by this instance.

        Returns:
            False if the item is not locked or the lock belongs to someone
            else, True once the marker is removed.
        """
        with self._mutex:
            if not self.is_locked():
                return False
            if not self._owns_lock:
                return False
            self.marker_path.unlink(missing_ok=True)
            self._owns_lock = False
            self._exclusive = False
            logger.debug("Lock released: %s", self.marker_path)
            return True

    def force_release(self) -> bool:
        """Remove the marker whoever holds it.

        Only meant for startup recovery of locks left by crashed processes.

        Returns:
            True if a marker was removed, False if the item was not locked.
        """
        with self._mutex:
            if not self.is_locked():
                return False
            info = self.lock_info()
            self.marker_path.unlink(missing_ok=True)
            self._owns_lock = False
            self._exclusive = False
            logger.warning(
                "Forcibly removed lock %s (holder pid=%s)",
                self.marker_path, info.pid if info else "unknown",
            )
            return True

    def lock_info(self) -> Optional[LockInfo]:
        """Best-effort decode of the current marker; None if absent or unreadable."""
        if not self.is_locked():
            return None
        try:
            return decode_marker(self.marker_path.read_text(encoding="ascii"))
        except (OSError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def wait_until_unlocked(
        self,
        exclusive: bool = False,
        timeout_ms: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
        on_acquired: Optional[Callable[[], Any]] = None,
    ) -> Any:
        """Poll until the lock can be taken, optionally running an action under it.

        Without ``on_acquired`` a shared wait only blocks on exclusive locks
        and an exclusive wait blocks on any lock. With ``on_acquired`` the
        lock is acquired, the action runs, and the lock is released even if
        the action raises. An instance that already owns the lock returns at
        once, and runs the action inside its existing lock span.

        Args:
            exclusive: Wait for (and take) an exclusive lock.
            timeout_ms: Maximum wait; negative waits forever. Defaults to
                ``self.timeout_ms``.
            poll_interval_ms: Delay between polls. Defaults to
                ``self.poll_interval_ms``.
            on_acquired: Action to run while holding the lock.

        Returns:
            The action's return value, or None when no action is given.

        Raises:
            LockTimeout: If the lock stays held past the timeout.
        """
        if on_acquired is None:
            deadline = self._deadline(timeout_ms)
            self._poll(not exclusive, deadline, poll_interval_ms)
            return None
        with self.hold(exclusive, timeout_ms, poll_interval_ms):
            return on_acquired()

    @contextmanager
    def hold(
        self,
        exclusive: bool = False,
        timeout_ms: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
    ) -> Iterator["LockCoordinator"]:
        """Context manager holding the lock for the duration of the block.

        Nested use by the owning instance is re-entrant: the inner block runs
        under the outer lock (upgraded if it asks for exclusive) and leaves
        releasing to the outermost block.

        Raises:
            LockTimeout: If the lock cannot be taken in time.
        """
        deadline = self._deadline(timeout_ms)
        if not self._mutex.acquire(timeout=self._remaining(deadline)):
            raise LockTimeout(
                f"Timeout of {self._timeout(timeout_ms)} ms exceeded while "
                f"waiting for lock on {self.path}"
            )
        try:
            if self._owns_lock and self.marker_path.exists():
                if exclusive:
                    self.acquire(True)
                yield self
            else:
                while True:
                    self._poll(False, deadline, poll_interval_ms)
                    if self.acquire(exclusive):
                        break
                try:
                    yield self
                finally:
                    self.release()
        finally:
            self._mutex.release()

    def _timeout(self, timeout_ms: Optional[int]) -> int:
        return self.timeout_ms if timeout_ms is None else timeout_ms

    def _deadline(self, timeout_ms: Optional[int]) -> Optional[float]:
        timeout = self._timeout(timeout_ms)
        if timeout < 0:
            return None
        return time.monotonic() + timeout / 1000.0

    @staticmethod
    def _remaining(deadline: Optional[float]) -> float:
        if deadline is None:
            return -1
        return max(0.0, deadline - time.monotonic())

    def _poll(
        self,
        only_exclusive: bool,
        deadline: Optional[float],
        poll_interval_ms: Optional[int],
    ) -> None:
        interval = (
            self.poll_interval_ms if poll_interval_ms is None else poll_interval_ms
        ) / 1000.0
        while self.is_locked(require_exclusive=only_exclusive):
            if self._owns_lock:
                return
            if deadline is not None and time.monotonic() >= deadline:
                raise LockTimeout(
                    f"Timeout exceeded while waiting for lock on {self.path}"
                )
            time.sleep(interval)

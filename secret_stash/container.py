"""
Container — a directory of items and nested containers.

Items are plain files named after their identifier; nested containers are
sub-directories. Handles are created lazily and cached per container.
"""
import os
import logging
from pathlib import Path

from .config import StashConfig
from .encryption.layer import ENC_SUFFIX, EncryptionLayer
from .exceptions import ContainerError, ItemNotFound
from .locking import LOCK_SUFFIX
from .store import BAK_SUFFIX, TMP_SUFFIX, SecretFile

logger = logging.getLogger("secret_stash")

COMPANION_SUFFIXES = (LOCK_SUFFIX, TMP_SUFFIX, BAK_SUFFIX, ENC_SUFFIX)

_MAX_IDENTIFIER_LENGTH = 255


def validate_identifier(identifier: str) -> str:
    """Validate an item or container name.

    Raises:
        ValueError: If the name is empty, too long, contains a path
            separator, starts with '.', or ends with a companion suffix.
    """
    if not isinstance(identifier, str) or not identifier:
        raise ValueError("Identifier cannot be empty")
    if len(identifier) > _MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Identifier cannot exceed {_MAX_IDENTIFIER_LENGTH} characters"
        )
    if any(sep and sep in identifier for sep in ("/", os.sep, os.altsep)):
        raise ValueError("Identifier cannot contain path separators")
    if identifier.startswith("."):
        raise ValueError("Identifier cannot start with '.'")
    if identifier.endswith(COMPANION_SUFFIXES):
        raise ValueError(
            f"Identifier cannot end with any of {', '.join(COMPANION_SUFFIXES)}"
        )
    return identifier


class Container:
    """Registry of the items stored in one directory.

    Args:
        directory: Directory backing this container.
        config: Settings shared by every item and nested container.

    Raises:
        ContainerError: If the directory is a file, is missing while
            ``config.auto_create`` is off, or is not writable.
    """

    def __init__(self, directory: Path, config: StashConfig) -> None:
        self.directory = Path(directory)
        self.config = config
        self._files: dict[str, SecretFile] = {}
        self._layers: dict[str, EncryptionLayer] = {}
        self._containers: dict[str, "Container"] = {}
        self._prepare_directory()

    def __repr__(self) -> str:
        return f"<Container {self.directory}>"

    def __contains__(self, identifier: object) -> bool:
        try:
            validate_identifier(identifier)  # type: ignore[arg-type]
        except ValueError:
            return False
        return (self.directory / identifier).is_file()  # type: ignore[operator]

    def _prepare_directory(self) -> None:
        if self.directory.exists():
            if not self.directory.is_dir():
                raise ContainerError(
                    f"Specified directory '{self.directory}' is actually a file"
                )
        else:
            if not self.config.auto_create:
                raise ContainerError(
                    f"Specified directory '{self.directory}' does not exist"
                )
            self.directory.mkdir(mode=self.config.dir_mode, parents=True)
            os.chmod(self.directory, self.config.dir_mode)
            logger.debug("Created container directory %s", self.directory)
        if not os.access(self.directory, os.W_OK):
            raise ContainerError(
                f"Directory '{self.directory}' is not writable"
            )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def file(self, identifier: str) -> SecretFile:
        """Handle for an item; the item does not need to exist yet."""
        validate_identifier(identifier)
        item = self._files.get(identifier)
        if item is None:
            item = SecretFile.from_config(
                self.directory / identifier, self.config, identifier=identifier,
            )
            self._files[identifier] = item
        return item

    def lookup(self, identifier: str) -> SecretFile:
        """Handle for an existing item.

        Raises:
            ItemNotFound: If the item has no content file.
        """
        item = self.file(identifier)
        if not item.exists():
            raise ItemNotFound(identifier)
        return item

    def encryption(self, identifier: str) -> EncryptionLayer:
        """Encryption view over an item."""
        layer = self._layers.get(identifier)
        if layer is None:
            layer = EncryptionLayer.from_config(self.file(identifier), self.config)
            self._layers[identifier] = layer
        return layer

    def container(self, name: str) -> "Container":
        """Nested container, created on first access."""
        validate_identifier(name)
        child = self._containers.get(name)
        if child is None:
            child = Container(self.directory / name, self.config)
            self._containers[name] = child
        return child

    def identifiers(self) -> list[str]:
        """Identifiers of the items stored in this container."""
        return sorted(
            entry.name for entry in self.directory.iterdir()
            if entry.is_file() and self._is_item_name(entry.name)
        )

    def containers(self) -> list[str]:
        """Names of the nested containers."""
        return sorted(
            entry.name for entry in self.directory.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    @staticmethod
    def _is_item_name(name: str) -> bool:
        return not name.startswith(".") and not name.endswith(COMPANION_SUFFIXES)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def delete(self, identifier: str) -> bool:
        """Remove an item and its companion files under an exclusive lock.

        Returns:
            True if the item's content file existed.
        """
        item = self.file(identifier)
        existed = item.exists()
        with item.lock.hold(exclusive=True):
            for path in (
                item.path,
                item.tmp_path,
                item.backup_path,
                self.encryption(identifier).marker_path,
            ):
                path.unlink(missing_ok=True)
        self._files.pop(identifier, None)
        self._layers.pop(identifier, None)
        logger.debug("Deleted item %s from %s", identifier, self.directory)
        return existed

    def uncache(self) -> None:
        """Drop all cached item and container handles."""
        self._files = {}
        self._layers = {}
        self._containers = {}

    def destroy_all_locks(self) -> int:
        """Remove every lock marker in this container and nested ones.

        Only safe when no other process is using the tree.

        Returns:
            Number of markers removed.
        """
        count = 0
        for marker in self.directory.rglob(f"*{LOCK_SUFFIX}"):
            if marker.is_file():
                marker.unlink(missing_ok=True)
                count += 1
        if count:
            logger.warning(
                "Destroyed %d stale lock(s) under %s", count, self.directory,
            )
        return count

    def recover(self) -> list[str]:
        """Repair items left mid-write by crashed processes.

        Promotes staged backups and discards stray staging files, in this
        container and nested ones.

        Returns:
            Identifiers (relative paths for nested items) whose backup was
            restored.

        Raises:
            CorruptRecoveryState: If an item's recovery artifacts conflict.
        """
        restored = []
        for identifier in self._recovery_candidates():
            item = self.file(identifier)
            if item.restore_backup():
                restored.append(identifier)
            else:
                item.discard_staging()
        for name in self.containers():
            restored.extend(
                f"{name}/{identifier}"
                for identifier in self.container(name).recover()
            )
        if restored:
            logger.info(
                "Recovered %d item(s) under %s", len(restored), self.directory,
            )
        return restored

    def _recovery_candidates(self) -> list[str]:
        candidates = set()
        for entry in self.directory.iterdir():
            if not entry.is_file():
                continue
            for suffix in (TMP_SUFFIX, BAK_SUFFIX):
                if entry.name.endswith(suffix):
                    stem = entry.name[:-len(suffix)]
                    if stem and self._is_item_name(stem):
                        candidates.add(stem)
        return sorted(candidates)

    def initialize_once(self) -> list[str]:
        """Startup routine: clear stale locks, then recover interrupted writes.

        Returns:
            Identifiers whose backup was restored.
        """
        self.destroy_all_locks()
        return self.recover()


def open_container(config: StashConfig) -> Container:
    """Open the root container described by ``config`` and run startup recovery.

    Call this once per process from explicit startup code and pass the
    returned container to whatever needs it.
    """
    container = Container(config.directory, config)
    restored = container.initialize_once()
    logger.info(
        "Opened container %s (%d item(s) restored)",
        container.directory, len(restored),
    )
    return container

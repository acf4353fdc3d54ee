"""
Passphrase Rotation — re-encrypt every encrypted item of a container.

Each item is rotated in its own lock span, so an interrupted run can simply be
restarted with the same arguments: items already under the new passphrase
fail to decrypt under the old one and are counted as errors, plaintext items
are skipped.

Security Note:
    Plaintext exists in memory only while one item is being re-encrypted.
    Never log plaintext, ciphertext or passphrases.
"""
import logging
from typing import TYPE_CHECKING

from ..exceptions import SecretStashError
from .crypto import Passphrase

if TYPE_CHECKING:
    from ..container import Container

logger = logging.getLogger("secret_stash")


def rotate_container_passphrase(
    container: "Container",
    old_passphrase: Passphrase,
    new_passphrase: Passphrase,
    *,
    recursive: bool = True,
) -> dict:
    """Re-encrypt all encrypted items from ``old_passphrase`` to ``new_passphrase``.

    Args:
        container: Container whose items are rotated.
        old_passphrase: Current passphrase of the encrypted items.
        new_passphrase: Passphrase to rotate to.
        recursive: Also rotate items of nested containers.

    Returns:
        Stats dict with keys: total, rotated, errors, skipped.
    """
    stats = {"total": 0, "rotated": 0, "errors": 0, "skipped": 0}
    logger.info(
        "Starting passphrase rotation in %s (recursive=%s)",
        container.directory, recursive,
    )
    _rotate(container, old_passphrase, new_passphrase, recursive, stats)
    logger.info("Passphrase rotation complete: %s", stats)
    return stats


def _rotate(
    container: "Container",
    old_passphrase: Passphrase,
    new_passphrase: Passphrase,
    recursive: bool,
    stats: dict,
) -> None:
    for identifier in container.identifiers():
        stats["total"] += 1
        layer = container.encryption(identifier)
        if not layer.is_encrypted():
            stats["skipped"] += 1
            continue
        try:
            layer.rotate_passphrase(old_passphrase, new_passphrase)
            stats["rotated"] += 1
        except SecretStashError as err:
            logger.error(
                "Error rotating item %s in %s: %s",
                identifier, container.directory, err,
            )
            stats["errors"] += 1
    if recursive:
        for name in container.containers():
            _rotate(
                container.container(name),
                old_passphrase,
                new_passphrase,
                recursive,
                stats,
            )

"""Secret Stash — small secrets on disk.

Items live in containers (directories). Writes are crash-safe, content
operations are serialized across processes by advisory marker-file locks, and
items can be encrypted at rest under a passphrase.

    config = StashConfig(directory="/var/lib/myapp/secrets")
    stash = open_container(config)
    stash.file("api_token").write(b"s3cr3t")
    stash.encryption("api_token").encrypt("passphrase")
"""

from .version import __version__
from .config import StashConfig, generate_passphrase
from .exceptions import (
    SecretStashError,
    InvalidContent,
    FileUnwritable,
    LockTimeout,
    EncryptionStateError,
    AlreadyEncrypted,
    NotEncrypted,
    DecryptionFailed,
    CorruptRecoveryState,
    ItemNotFound,
    ContainerError,
)
from .locking import LockCoordinator, LockInfo
from .store import SecretFile
from .encryption import EncryptionLayer, rotate_container_passphrase
from .container import Container, open_container

__all__ = [
    "__version__",
    "StashConfig",
    "generate_passphrase",
    "Container",
    "open_container",
    "SecretFile",
    "LockCoordinator",
    "LockInfo",
    "EncryptionLayer",
    "rotate_container_passphrase",
    "SecretStashError",
    "InvalidContent",
    "FileUnwritable",
    "LockTimeout",
    "EncryptionStateError",
    "AlreadyEncrypted",
    "NotEncrypted",
    "DecryptionFailed",
    "CorruptRecoveryState",
    "ItemNotFound",
    "ContainerError",
]

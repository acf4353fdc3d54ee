"""Shared fixtures for secret_stash tests."""
import pytest

from secret_stash.config import StashConfig
from secret_stash.container import Container
from secret_stash.encryption.layer import EncryptionLayer
from secret_stash.store import SecretFile


@pytest.fixture
def config(tmp_path):
    """Fast settings: cheap key derivation and short lock waits."""
    return StashConfig(
        directory=tmp_path / "stash",
        lock_timeout_ms=200,
        poll_interval_ms=5,
        kdf_iterations=1000,
    )


@pytest.fixture
def container(config):
    """A fresh root container."""
    return Container(config.directory, config)


@pytest.fixture
def item(container):
    """A handle on an item that does not exist yet."""
    return container.file("api_token")


@pytest.fixture
def other_item(item, config):
    """A second, independent handle on the same item path."""
    return SecretFile.from_config(item.path, config, identifier=item.identifier)


@pytest.fixture
def layer(item, config):
    """Encryption view over ``item``."""
    return EncryptionLayer.from_config(item, config)

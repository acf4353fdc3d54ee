"""
Tests for Container, the item registry.

Tests cover:
- Directory bootstrap and validation
- Identifier validation, lookup and handle caching
- Nested containers
- Deletion, lock sweeping and startup recovery
"""
import os
import stat

import pytest

from secret_stash.config import StashConfig
from secret_stash.container import Container, open_container, validate_identifier
from secret_stash.encryption.layer import EncryptionLayer
from secret_stash.exceptions import ContainerError, ItemNotFound


# --- Directory bootstrap ---

class TestDirectory:
    """Tests for container directory handling."""

    def test_creates_directory(self, container, config):
        """A missing directory is created owner-only."""
        assert config.directory.is_dir()
        assert stat.S_IMODE(os.stat(config.directory).st_mode) == 0o700

    def test_directory_is_a_file(self, tmp_path, config):
        """A file in place of the directory is rejected."""
        path = tmp_path / "not_a_dir"
        path.write_text("x")
        with pytest.raises(ContainerError, match="actually a file"):
            Container(path, config)

    def test_missing_without_auto_create(self, tmp_path):
        """Without auto_create a missing directory is an error."""
        config = StashConfig(directory=tmp_path / "missing", auto_create=False)
        with pytest.raises(ContainerError, match="does not exist"):
            Container(config.directory, config)

    def test_unwritable_directory(self, tmp_path, config, monkeypatch):
        """An unwritable directory is rejected."""
        monkeypatch.setattr(os, "access", lambda path, mode: False)
        with pytest.raises(ContainerError, match="not writable"):
            Container(tmp_path, config)

    def test_existing_directory(self, tmp_path, config):
        """An existing directory is reused as is."""
        existing = tmp_path / "existing"
        existing.mkdir()
        assert Container(existing, config).directory == existing


# --- Lookup ---

class TestLookup:
    """Tests for file, lookup, encryption and identifier rules."""

    def test_file_is_cached(self, container):
        """The same handle is returned for the same identifier."""
        assert container.file("db_password") is container.file("db_password")

    def test_file_does_not_create(self, container):
        """Getting a handle does not create the item."""
        item = container.file("db_password")
        assert item.path == container.directory / "db_password"
        assert item.exists() is False
        assert "db_password" not in container

    def test_lookup_missing(self, container):
        """lookup fails for items without content."""
        with pytest.raises(ItemNotFound):
            container.lookup("db_password")
        with pytest.raises(KeyError):
            container.lookup("db_password")

    def test_lookup_existing(self, container):
        """lookup returns the cached handle of an existing item."""
        container.file("db_password").write(b"hunter2")
        assert container.lookup("db_password") is container.file("db_password")
        assert "db_password" in container

    def test_encryption_view(self, container, config):
        """encryption returns a cached view over the item."""
        layer = container.encryption("db_password")
        assert isinstance(layer, EncryptionLayer)
        assert layer.store is container.file("db_password")
        assert layer.kdf_iterations == config.kdf_iterations
        assert container.encryption("db_password") is layer

    def test_item_settings_from_config(self, container, config):
        """Items inherit lock settings from the configuration."""
        item = container.file("db_password")
        assert item.lock_timeout_ms == config.lock_timeout_ms
        assert item.lock.poll_interval_ms == config.poll_interval_ms

    @pytest.mark.parametrize(
        "identifier",
        ["", "a/b", ".hidden", "key.lock", "key.tmp", "key.bak", "key.enc", "x" * 256],
    )
    def test_invalid_identifiers(self, container, identifier):
        """Unsafe or reserved identifiers are rejected."""
        with pytest.raises(ValueError):
            container.file(identifier)
        assert identifier not in container

    def test_valid_identifier(self):
        """Ordinary names pass validation unchanged."""
        assert validate_identifier("cert_key.pem") == "cert_key.pem"

    def test_identifiers(self, container):
        """Only item names are listed, without companions or containers."""
        container.file("b").write(b"2")
        container.file("a").write(b"1")
        container.encryption("a").encrypt("pw")
        container.container("nested")
        (container.directory / "c.tmp").write_bytes(b"")
        assert container.identifiers() == ["a", "b"]
        assert container.containers() == ["nested"]

    def test_uncache(self, container):
        """uncache drops cached handles."""
        item = container.file("a")
        container.uncache()
        assert container.file("a") is not item


# --- Nested containers ---

class TestNested:
    """Tests for sub-containers."""

    def test_nested_container(self, container):
        """Sub-containers are directories below their parent."""
        child = container.container("certs")
        assert child.directory == container.directory / "certs"
        assert child.directory.is_dir()
        assert container.container("certs") is child

    def test_nested_items_are_separate(self, container):
        """Items with the same identifier in different containers are distinct."""
        container.file("key").write(b"root")
        container.container("certs").file("key").write(b"nested")
        assert container.file("key").read() == b"root"
        assert container.container("certs").file("key").read() == b"nested"

    def test_invalid_container_name(self, container):
        """Container names follow identifier rules."""
        with pytest.raises(ValueError):
            container.container("../escape")


# --- Maintenance ---

class TestMaintenance:
    """Tests for delete, lock sweeping and recovery."""

    def test_delete(self, container):
        """delete removes the item and every companion file."""
        item = container.file("a")
        item.write(b"secret")
        container.encryption("a").encrypt("pw")
        item.tmp_path.write_bytes(b"")
        assert container.delete("a") is True
        assert list(container.directory.iterdir()) == []
        assert container.delete("a") is False

    def test_destroy_all_locks(self, container):
        """Stale markers are removed recursively and counted."""
        container.file("a").lock.acquire()
        container.container("nested").file("b").lock.acquire(exclusive=True)
        assert container.destroy_all_locks() == 2
        assert container.file("a").lock.is_locked() is False
        assert container.destroy_all_locks() == 0

    def test_recover(self, container):
        """recover restores backups and discards stray staging files."""
        container.file("a").write(b"old")
        (container.directory / "a.bak").write_bytes(b"new")
        container.file("b").write(b"kept")
        (container.directory / "b.tmp").write_bytes(b"partial")
        nested = container.container("nested")
        (nested.directory / "c.bak").write_bytes(b"nested")

        assert container.recover() == ["a", "nested/c"]
        assert container.file("a").read() == b"new"
        assert container.file("b").read() == b"kept"
        assert not (container.directory / "b.tmp").exists()
        assert nested.file("c").read() == b"nested"
        assert container.recover() == []

    def test_initialize_once_after_crash(self, container):
        """Startup clears the dead writer's lock, then restores its backup."""
        item = container.file("a")
        item.write(b"hello")
        item.lock.marker_path.write_text("1:999999")
        item.backup_path.write_bytes(b"world")

        assert item.restore_backup() is False
        assert container.initialize_once() == ["a"]
        assert item.read() == b"world"

    def test_open_container(self, config):
        """open_container builds the root container and runs recovery."""
        config.directory.mkdir()
        (config.directory / "token").write_bytes(b"old")
        (config.directory / "token.bak").write_bytes(b"new")
        (config.directory / "token.lock").write_text("0:1")

        stash = open_container(config)
        assert stash.directory == config.directory
        assert stash.file("token").read() == b"new"
        assert not (config.directory / "token.lock").exists()

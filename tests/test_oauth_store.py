"""Tests for encrypted token storage."""

import stat
import sys
import threading
from pathlib import Path
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from gcal_auth.oauth.store import (
    TOKENS_FILE,
    TokenDecryptionError,
    TokenStore,
    TokenStoreError,
)
from gcal_auth.oauth.tokens import TokenRecord


class TestTokenStore:
    """Tests for TokenStore class."""

    def test_initialization(self, temp_store: TokenStore):
        """Test that store initializes correctly."""
        assert temp_store.store_dir.exists()
        assert temp_store.is_using_keyring()

    def test_empty_store(self, temp_store: TokenStore):
        """Test reading before anything was written."""
        assert temp_store.get("access_token") is None
        record = temp_store.load_record()
        assert record == TokenRecord()

    def test_save_and_load_record(self, temp_store: TokenStore):
        """Test storing and retrieving all three values."""
        temp_store.save_record(
            TokenRecord(access_token="access", refresh_token="refresh", expires_at_ms=123)
        )

        record = temp_store.load_record()
        assert record.access_token == "access"
        assert record.refresh_token == "refresh"
        assert record.expires_at_ms == 123

    def test_update_keeps_other_values(self, temp_store: TokenStore):
        """Test that a partial update leaves other keys alone."""
        temp_store.save_record(TokenRecord(access_token="old", refresh_token="keep", expires_at_ms=1))

        temp_store.update({"access_token": "new", "expiration_time": 2})

        record = temp_store.load_record()
        assert record.access_token == "new"
        assert record.expires_at_ms == 2
        assert record.refresh_token == "keep"

    @pytest.mark.skipif(sys.platform == "win32", reason="fcntl locking on Unix only")
    def test_update_holds_lock_across_read_and_write(self, temp_store: TokenStore):
        """Test that a concurrent writer waits for the whole read-merge-write."""
        temp_store.save_record(
            TokenRecord(access_token="acc-old", refresh_token="refresh-OLD", expires_at_ms=1)
        )
        other = TokenStore(store_dir=temp_store.store_dir)
        writer = threading.Thread(target=other.update, args=({"refresh_token": "refresh-NEW"},))
        original_save = temp_store._save

        def save_while_contended(data):
            writer.start()
            writer.join(timeout=0.2)
            assert writer.is_alive()
            original_save(data)

        with patch.object(temp_store, "_save", side_effect=save_while_contended):
            temp_store.update({"access_token": "acc-refreshed", "expiration_time": 2})
        writer.join(timeout=5)

        assert not writer.is_alive()
        assert temp_store.load_record() == TokenRecord(
            access_token="acc-refreshed", refresh_token="refresh-NEW", expires_at_ms=2
        )

    def test_unknown_key_rejected(self, temp_store: TokenStore):
        """Test that only the three token keys are accepted."""
        with pytest.raises(TokenStoreError, match="Unknown"):
            temp_store.set("password", "hunter2")
        with pytest.raises(TokenStoreError):
            temp_store.get("password")

    def test_delete(self, temp_store: TokenStore):
        """Test deleting a single value."""
        temp_store.set("access_token", "a")

        assert temp_store.delete("access_token")
        assert temp_store.get("access_token") is None
        assert not temp_store.delete("access_token")

    def test_clear(self, temp_store: TokenStore):
        """Test clearing the whole file."""
        temp_store.set("refresh_token", "r")

        assert temp_store.clear()
        assert not temp_store.tokens_path.exists()
        assert not temp_store.clear()

    def test_file_is_encrypted(self, temp_store: TokenStore):
        """Test that token values are not readable on disk."""
        temp_store.set("refresh_token", "very-secret-refresh-token")

        raw = temp_store.tokens_path.read_text()
        assert "very-secret-refresh-token" not in raw

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_permissions(self, temp_store: TokenStore):
        """Test that the token file is owner read/write only."""
        temp_store.set("access_token", "a")

        mode = stat.S_IMODE(temp_store.tokens_path.stat().st_mode)
        assert mode == stat.S_IRUSR | stat.S_IWUSR

    def test_changed_key_raises_decryption_error(self, temp_store: TokenStore, tmp_path: Path):
        """Test that a different key cannot read the file."""
        temp_store.set("access_token", "a")

        with patch("gcal_auth.oauth.store.keyring") as mock_keyring:
            mock_keyring.get_password.return_value = Fernet.generate_key().decode("ascii")
            other = TokenStore(store_dir=temp_store.store_dir)

        with pytest.raises(TokenDecryptionError, match="encryption key"):
            other.load_record()

    def test_corrupted_file_raises_decryption_error(self, temp_store: TokenStore):
        """Test that garbage in the token file is reported."""
        temp_store.tokens_path.write_text("not encrypted at all")

        with pytest.raises(TokenDecryptionError):
            temp_store.get("access_token")

    def test_clear_recovers_from_corruption(self, temp_store: TokenStore):
        """Test that clear works even when the file cannot be decrypted."""
        temp_store.tokens_path.write_text("garbage")

        assert temp_store.clear()
        assert temp_store.load_record() == TokenRecord()


class TestKeyringHandling:
    """Tests for encryption key management."""

    def test_generates_key_when_keyring_empty(self, tmp_path: Path):
        """Test that a new key is created and saved in the keyring."""
        with patch("gcal_auth.oauth.store.keyring") as mock_keyring:
            mock_keyring.get_password.return_value = None
            store = TokenStore(store_dir=tmp_path)

        assert store.is_using_keyring()
        mock_keyring.set_password.assert_called_once()
        service, username, key = mock_keyring.set_password.call_args.args
        assert service == "gcal-auth"
        Fernet(key.encode("ascii"))  # valid Fernet key

    def test_falls_back_without_keyring(self, tmp_path: Path):
        """Test machine-derived key when keyring is unavailable."""
        with patch("gcal_auth.oauth.store.keyring") as mock_keyring:
            mock_keyring.get_password.side_effect = RuntimeError("no backend")
            store = TokenStore(store_dir=tmp_path)

        assert not store.is_using_keyring()
        store.set("access_token", "a")
        assert store.get("access_token") == "a"

    def test_fallback_key_is_stable(self, tmp_path: Path):
        """Test that two fallback stores can read each other's data."""
        with patch("gcal_auth.oauth.store.keyring") as mock_keyring:
            mock_keyring.get_password.side_effect = RuntimeError("no backend")
            first = TokenStore(store_dir=tmp_path)
            second = TokenStore(store_dir=tmp_path)

        first.set("refresh_token", "r")
        assert second.get("refresh_token") == "r"
        assert (tmp_path / TOKENS_FILE).exists()

"""Encrypted key-value storage for Google OAuth tokens.

Three values are persisted: the access token, the refresh token and the
access token's expiration time in epoch milliseconds. They live in a single
encrypted JSON file protected by:
- Fernet symmetric encryption (AES-128-CBC + HMAC)
- OS keyring for encryption key storage (Keychain, libsecret, DPAPI)
- File permissions for defense in depth
- File locking so the CLI and a host application can share the file
"""

import base64
import hashlib
import json
import logging
import os
import stat
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

import keyring
from cryptography.fernet import Fernet, InvalidToken

from .tokens import ACCESS_TOKEN_KEY, EXPIRATION_TIME_KEY, REFRESH_TOKEN_KEY, TokenRecord

logger = logging.getLogger(__name__)

if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl)."""
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so readers lock exclusively too.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


KEYRING_SERVICE = "gcal-auth"
KEYRING_USERNAME = "token-encryption-key"

DEFAULT_STORE_DIR = Path.home() / ".cache" / "gcal-auth"

TOKENS_FILE = "tokens.json"

STORAGE_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, EXPIRATION_TIME_KEY)


class TokenStoreError(Exception):
    """Error in token storage operations."""

    pass


class TokenDecryptionError(TokenStoreError):
    """Failed to decrypt the token file.

    The encryption key changed (keyring cleared, different machine) or the
    file is corrupted. Run ``gcal-auth logout`` and log in again.
    """

    pass


def _derive_fallback_key() -> bytes:
    """Derive a fallback encryption key from machine-specific data.

    Used when keyring is not available. Less secure than keyring but
    still provides encryption at rest.

    Returns:
        32-byte key suitable for Fernet
    """
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "gcal-auth")))

    combined = ":".join(components)
    key_bytes = hashlib.sha256(combined.encode()).digest()

    return base64.urlsafe_b64encode(key_bytes)


class TokenStore:
    """Encrypted key-value store for the Google token record.

    Values are written to ~/.cache/gcal-auth/tokens.json with restricted
    file permissions (0600). Only the keys in STORAGE_KEYS are accepted.
    """

    def __init__(self, store_dir: Path | None = None):
        """Initialize token store.

        Args:
            store_dir: Optional custom storage directory
        """
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self._cipher: Fernet | None = None
        self._using_keyring = False

        self._init_storage()
        self._init_encryption()

    def _init_storage(self) -> None:
        """Initialize storage directory with secure permissions."""
        self.store_dir.mkdir(parents=True, exist_ok=True)

        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self) -> None:
        """Initialize encryption using keyring or fallback."""
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)

            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            self._using_keyring = True
            logger.debug("Using keyring for encryption key storage")

        except Exception as e:
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using fallback encryption (machine-derived key)."
            )
            self._cipher = Fernet(_derive_fallback_key())
            self._using_keyring = False

    def _encrypt(self, data: str) -> str:
        if self._cipher is None:
            raise TokenStoreError("Encryption not initialized")
        return self._cipher.encrypt(data.encode("utf-8")).decode("ascii")

    def _decrypt(self, data: str) -> str:
        if self._cipher is None:
            raise TokenStoreError("Encryption not initialized")
        try:
            return self._cipher.decrypt(data.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise TokenStoreError(
                "Failed to decrypt token data. The encryption key may have changed."
            ) from e

    @property
    def tokens_path(self) -> Path:
        return self.store_dir / TOKENS_FILE

    def _load(self) -> dict[str, Any]:
        """Decrypt the token file. The caller holds the file lock.

        Raises:
            TokenDecryptionError: If decryption fails or the data is not JSON
        """
        filepath = self.tokens_path
        if not filepath.exists():
            return {}

        try:
            result: dict[str, Any] = json.loads(self._decrypt(filepath.read_text()))
            return result
        except TokenStoreError as e:
            raise TokenDecryptionError(
                f"Cannot decrypt {TOKENS_FILE}. The encryption key may have changed. "
                f"Run 'gcal-auth logout' to clear stored tokens and log in again."
            ) from e
        except json.JSONDecodeError as e:
            raise TokenDecryptionError(
                f"Token file {TOKENS_FILE} is corrupted. "
                f"Run 'gcal-auth logout' to clear it and log in again."
            ) from e

    def _save(self, data: dict[str, Any]) -> None:
        """Encrypt and write the token file. The caller holds the file lock."""
        filepath = self.tokens_path
        filepath.write_text(self._encrypt(json.dumps(data, indent=2)))
        try:
            filepath.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
        except OSError as e:
            logger.warning(f"Could not set file permissions: {e}")

    def _read(self) -> dict[str, Any]:
        """Read the token file under a shared lock."""
        if not self.tokens_path.exists():
            return {}
        with _file_lock(self.tokens_path, exclusive=False):
            return self._load()

    @staticmethod
    def _check_key(key: str) -> None:
        if key not in STORAGE_KEYS:
            raise TokenStoreError(f"Unknown token storage key: {key!r}")

    # Key-value operations

    def get(self, key: str) -> Any:
        """Get a stored value, or None if absent."""
        self._check_key(key)
        return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        """Store a single value."""
        self.update({key: value})

    def update(self, values: dict[str, Any]) -> None:
        """Store several values in one write.

        Keys not mentioned keep their current value. The read, merge and
        write happen under one exclusive lock, so another process cannot
        write in between and have its values overwritten.
        """
        for key in values:
            self._check_key(key)

        with _file_lock(self.tokens_path, exclusive=True):
            data = self._load()
            data.update(values)
            self._save(data)

        logger.debug(f"Stored token values: {', '.join(sorted(values))}")

    def delete(self, key: str) -> bool:
        """Delete a stored value.

        Returns:
            True if the value was deleted, False if not found
        """
        self._check_key(key)

        with _file_lock(self.tokens_path, exclusive=True):
            data = self._load()
            if key not in data:
                return False

            del data[key]
            self._save(data)
        return True

    # Record operations

    def load_record(self) -> TokenRecord:
        """Load all three values as a TokenRecord (missing values are None)."""
        return TokenRecord.from_dict(self._read())

    def save_record(self, record: TokenRecord) -> None:
        """Store all three values of a record."""
        self.update(record.to_dict())

    def clear(self) -> bool:
        """Delete the token file.

        Returns:
            True if a file was deleted
        """
        filepath = self.tokens_path
        if not filepath.exists():
            return False

        with _file_lock(filepath, exclusive=True):
            filepath.unlink()

        logger.info("Cleared stored Google credentials")
        return True

    def is_using_keyring(self) -> bool:
        """Check if keyring is being used for encryption key storage."""
        return self._using_keyring

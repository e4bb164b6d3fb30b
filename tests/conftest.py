"""Shared fixtures and utilities for gcal-auth tests."""

import asyncio
import os
from collections.abc import Generator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from cryptography.fernet import Fernet

from gcal_auth.config import Settings
from gcal_auth.oauth.manager import AuthManager
from gcal_auth.oauth.store import TokenStore


# ============================================================================
# Helpers
# ============================================================================


async def send_request(port: int, path: str, method: str = "GET") -> bytes:
    """Send a raw HTTP request to the callback listener and return the response."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"{method} {path} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode())
    await writer.drain()
    response = await reader.read()
    writer.close()
    await writer.wait_closed()
    return response


# ============================================================================
# Storage Fixtures
# ============================================================================


@pytest.fixture
def fernet_key() -> str:
    """A fixed encryption key standing in for the keyring entry."""
    return Fernet.generate_key().decode("ascii")


@pytest.fixture
def temp_store(tmp_path: Path, fernet_key: str) -> Generator[TokenStore, None, None]:
    """Create a token store in a temporary directory with keyring mocked."""
    with patch("gcal_auth.oauth.store.keyring") as mock_keyring:
        mock_keyring.get_password.return_value = fernet_key
        yield TokenStore(store_dir=tmp_path / "store")


# ============================================================================
# Manager Fixtures
# ============================================================================


@pytest.fixture
def broker_settings() -> Settings:
    """Default broker-mode settings with a short callback timeout."""
    return Settings(callback_timeout=5)


@pytest.fixture
def custom_settings() -> Settings:
    """Custom-client settings with padded credentials (trimmed on load)."""
    return Settings(
        use_custom_client=True,
        google_client_id="  my-client.apps.googleusercontent.com ",
        google_client_secret=" my-secret ",
        callback_timeout=5,
    )


@pytest.fixture
def open_browser() -> MagicMock:
    """Stand-in for webbrowser.open."""
    return MagicMock(return_value=True)


@pytest.fixture
def notices() -> MagicMock:
    """Collects user-visible notices."""
    return MagicMock()


@pytest.fixture
def manager(
    broker_settings: Settings,
    temp_store: TokenStore,
    open_browser: MagicMock,
    notices: MagicMock,
) -> AuthManager:
    """AuthManager whose listener binds an OS-assigned port on 127.0.0.1."""
    return AuthManager(
        settings=broker_settings,
        store=temp_store,
        on_notice=notices,
        open_browser=open_browser,
        callback_host="127.0.0.1",
        callback_port=0,
    )


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Temporarily clear gcal-auth environment variables."""
    old_env = os.environ.copy()
    for key in list(os.environ.keys()):
        if key.startswith("GCAL_"):
            del os.environ[key]
    yield
    os.environ.clear()
    os.environ.update(old_env)

"""High-level Google OAuth manager for gcal-auth.

This module provides the main interface for authentication, used by the
CLI and by anything that calls the Google Calendar API:
- login() runs the browser flow, at most one at a time
- ensure_access_token() hands out a valid access token, refreshing if needed
- get_auth_status() and logout() inspect and clear stored credentials
"""

import asyncio
import functools
import logging
import threading
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from ..config import Settings, load_settings
from .callback import CALLBACK_HOST
from .exchange import (
    CALLBACK_PORT,
    TokenExchangeError,
    exchange_code,
    refresh_access_token,
    resolve_client,
    revoke_token,
)
from .session import AuthorizationSession, LoginError
from .store import TokenStore, TokenStoreError
from .tokens import (
    ACCESS_TOKEN_KEY,
    EXPIRATION_TIME_KEY,
    REFRESH_TOKEN_KEY,
    TokenFailure,
    TokenRecord,
    TokenResult,
    compute_expires_at_ms,
    is_valid_expiry,
    now_ms,
)

logger = logging.getLogger(__name__)

REFRESH_FAILED_NOTICE = "Error while refreshing Google authentication"


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta into a human-readable string.

    Examples:
        - "45 minutes"
        - "2 hours"
        - "3 days"
    """
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"

    if total_seconds < 60:
        return f"{total_seconds} seconds"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''}"


@dataclass
class AuthStatus:
    """Authentication status for the configured Google account.

    Attributes:
        logged_in: Whether a refresh token is stored
        access_token_valid: Whether the cached access token can be used as is
        expires_at: When the access token expires (ISO format string)
        expires_in_human: Human-readable time until expiry (e.g., "45 minutes")
        client_mode: "custom" or "broker"
        settings_complete: Whether the client settings are usable
        login_pending: Whether a browser login is waiting for its callback
        error: Any error message
    """

    logged_in: bool = False
    access_token_valid: bool = False
    expires_at: str | None = None
    expires_in_human: str | None = None
    client_mode: str = "broker"
    settings_complete: bool = True
    login_pending: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "logged_in": self.logged_in,
            "access_token_valid": self.access_token_valid,
            "expires_at": self.expires_at,
            "expires_in_human": self.expires_in_human,
            "client_mode": self.client_mode,
            "settings_complete": self.settings_complete,
            "login_pending": self.login_pending,
            "error": self.error,
        }


@dataclass
class AuthManager:
    """Manages Google OAuth credentials for one configured client.

    Usage:
        manager = AuthManager(settings=load_settings())

        # Browser login (stores refresh token, access token and expiry)
        await manager.login(on_status=print)

        # Before every Calendar API call
        result = await manager.ensure_access_token()
        if result.ok:
            headers = {"Authorization": result.get_auth_header()}
    """

    settings: Settings = field(default_factory=Settings)
    store: TokenStore | None = None
    on_notice: Callable[[str], None] | None = None
    open_browser: Callable[[str], bool] = webbrowser.open
    http_client: httpx.AsyncClient | None = None
    callback_host: str = CALLBACK_HOST
    callback_port: int = CALLBACK_PORT

    _session: AuthorizationSession | None = field(default=None, init=False, repr=False)
    _refreshes: dict[tuple[bool, str], "asyncio.Task[TokenResult]"] = field(
        default_factory=dict, init=False, repr=False
    )
    _login_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.store is None:
            self.store = TokenStore(self.settings.store_dir)

    @property
    def token_store(self) -> TokenStore:
        assert self.store is not None
        return self.store

    @property
    def session(self) -> AuthorizationSession | None:
        """The pending login, or None when idle."""
        return self._session

    def _notify(self, message: str) -> None:
        """Surface a message to the user (the host's notice area)."""
        logger.warning(message)
        if self.on_notice:
            self.on_notice(message)

    def _load_record(self) -> TokenRecord:
        try:
            return self.token_store.load_record()
        except TokenStoreError as e:
            logger.warning(f"Could not read stored Google credentials: {e}")
            return TokenRecord()

    def is_logged_in(self) -> bool:
        """Check that settings are complete and a refresh token is stored."""
        if not self.settings.settings_are_complete():
            return False
        return self._load_record().has_refresh_token()

    # Token lifecycle

    def get_valid_access_token(self) -> TokenResult:
        """Return the cached access token if it is still valid.

        Never raises and never touches the network.
        """
        record = self._load_record()
        if not record.access_token:
            return TokenResult.failure(TokenFailure.NOT_LOGGED_IN)

        if not record.is_access_token_valid():
            return TokenResult.failure(TokenFailure.EXPIRED)

        return TokenResult.success(record.access_token)

    async def ensure_access_token(self) -> TokenResult:
        """Return a usable access token, refreshing the cached one if needed.

        Incomplete settings or a missing refresh token short-circuit without
        any network I/O.
        """
        if not self.settings.settings_are_complete():
            logger.debug("Google client settings are incomplete")
            return TokenResult.failure(TokenFailure.NOT_CONFIGURED)

        record = self._load_record()
        if not record.has_refresh_token():
            logger.debug("No Google refresh token stored, login required")
            return TokenResult.failure(TokenFailure.NOT_LOGGED_IN)

        if record.is_access_token_valid():
            return TokenResult.success(record.access_token)  # type: ignore[arg-type]

        return await self.refresh()

    def _refresh_key(self) -> tuple[bool, str]:
        return (self.settings.use_custom_client, resolve_client(self.settings).client_id)

    async def refresh(self) -> TokenResult:
        """Mint a new access token with the stored refresh token.

        Concurrent calls for the same client share one refresh request.
        """
        key = self._refresh_key()
        task = self._refreshes.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._refresh_once())
            self._refreshes[key] = task
            task.add_done_callback(functools.partial(self._forget_refresh, key))
        else:
            logger.debug("Joining in-flight token refresh")

        return await asyncio.shield(task)

    def _forget_refresh(self, key: tuple[bool, str], task: "asyncio.Task[TokenResult]") -> None:
        if self._refreshes.get(key) is task:
            del self._refreshes[key]

    async def _refresh_once(self) -> TokenResult:
        if not self.settings.settings_are_complete():
            return TokenResult.failure(TokenFailure.NOT_CONFIGURED)

        record = self._load_record()
        if not record.has_refresh_token():
            return TokenResult.failure(TokenFailure.NOT_LOGGED_IN)

        logger.info("Google access token expired, refreshing")
        try:
            token_response = await refresh_access_token(
                self.settings,
                record.refresh_token,  # type: ignore[arg-type]
                http_client=self.http_client,
            )
        except TokenExchangeError as e:
            logger.warning(f"Token refresh failed: {e}")
            self._notify(REFRESH_FAILED_NOTICE)
            return TokenResult.failure(TokenFailure.REFRESH_FAILED)

        access_token = token_response.get("access_token")
        try:
            expires_at_ms = compute_expires_at_ms(token_response.get("expires_in"), now_ms())
        except (TypeError, ValueError, OverflowError):
            expires_at_ms = None

        if not access_token or not is_valid_expiry(expires_at_ms):
            logger.warning("Token refresh response is missing access_token or expires_in")
            self._notify(REFRESH_FAILED_NOTICE)
            return TokenResult.failure(TokenFailure.REFRESH_FAILED)

        updates: dict[str, Any] = {
            ACCESS_TOKEN_KEY: access_token,
            EXPIRATION_TIME_KEY: expires_at_ms,
        }
        # Google keeps the refresh token; store a rotated one if it ever sends it
        rotated = token_response.get("refresh_token")
        if rotated and rotated != record.refresh_token:
            updates[REFRESH_TOKEN_KEY] = rotated

        try:
            self.token_store.update(updates)
        except TokenStoreError as e:
            logger.warning(f"Could not store refreshed token: {e}")
            self._notify(REFRESH_FAILED_NOTICE)
            return TokenResult.failure(TokenFailure.REFRESH_FAILED)

        logger.info("Google access token refreshed")
        return TokenResult.success(access_token)

    # Login

    async def start_login(
        self,
        on_status: Callable[[str], None] | None = None,
    ) -> AuthorizationSession:
        """Start a browser login, or reopen the browser for the pending one.

        Only the first call binds the callback listener; calls made while a
        login is pending reuse its state and PKCE challenge.

        Raises:
            LoginNotConfiguredError: If custom-client settings are incomplete
            CallbackError: If the callback port cannot be bound
        """
        async with self._login_lock:
            session = self._session
            if session is not None and session.is_pending:
                logger.debug("Login already pending, reopening browser")
                session.reopen_browser()
                return session

            session = AuthorizationSession(
                settings=self.settings,
                store=self.token_store,
                exchanger=functools.partial(exchange_code, http_client=self.http_client),
                open_browser=self.open_browser,
                on_status=on_status,
                host=self.callback_host,
                port=self.callback_port,
            )
            await session.start()

            self._session = session
            session.waiter.add_done_callback(functools.partial(self._session_finished, session))
            return session

    def _session_finished(self, session: AuthorizationSession, task: "asyncio.Task[TokenRecord]") -> None:
        if self._session is session:
            self._session = None

        if task.cancelled():
            logger.info("Login cancelled")
            return

        # Timeouts are reported by whoever waits on the login
        error = task.exception()
        if isinstance(error, (LoginError, TokenExchangeError, TokenStoreError)):
            self._notify(str(error))
        elif error is not None:
            logger.warning(f"Login failed: {error}")

    async def login(self, on_status: Callable[[str], None] | None = None) -> TokenRecord:
        """Run the browser login and wait for its outcome.

        Returns:
            The stored TokenRecord

        Raises:
            LoginError: If authorization failed or no refresh token was issued
            TokenExchangeError: If the code exchange failed
            CallbackError: If the listener failed or timed out
        """
        session = await self.start_login(on_status=on_status)
        return await session.wait()

    async def cancel_login(self) -> bool:
        """Abandon a pending login.

        Returns:
            True if a login was pending
        """
        session = self._session
        if session is None:
            return False
        await session.cancel()
        self._session = None
        return True

    # Inspection and logout

    def get_auth_status(self) -> AuthStatus:
        """Get the authentication status without touching the network."""
        status = AuthStatus(
            client_mode="custom" if self.settings.use_custom_client else "broker",
            settings_complete=self.settings.settings_are_complete(),
            login_pending=self._session is not None and self._session.is_pending,
        )

        try:
            record = self.token_store.load_record()
        except TokenStoreError as e:
            status.error = str(e)
            return status

        status.logged_in = record.has_refresh_token()
        status.access_token_valid = record.is_access_token_valid()

        if is_valid_expiry(record.expires_at_ms) and record.expires_at_ms:
            expires_at = datetime.fromtimestamp(record.expires_at_ms / 1000, tz=timezone.utc)
            status.expires_at = expires_at.isoformat()
            status.expires_in_human = _format_timedelta(expires_at - datetime.now(timezone.utc))

        return status

    async def logout(self, revoke: bool = True) -> bool:
        """Forget stored credentials, revoking the refresh token at Google.

        A failed revocation does not prevent the local credentials from
        being deleted.

        Returns:
            True if stored credentials were deleted
        """
        await self.cancel_login()

        record = self._load_record()
        if revoke and record.has_refresh_token():
            await revoke_token(record.refresh_token, http_client=self.http_client)  # type: ignore[arg-type]

        deleted = self.token_store.clear()
        if deleted:
            logger.info("Logged out from Google")
        return deleted


# Global singleton for convenient access (thread-safe)
_manager: AuthManager | None = None
_manager_lock = threading.Lock()


def get_auth_manager() -> AuthManager:
    """Get the global AuthManager built from the discovered settings.

    Uses double-checked locking for thread-safe initialization.
    """
    global _manager
    if _manager is None:
        with _manager_lock:
            if _manager is None:
                _manager = AuthManager(settings=load_settings())
    return _manager

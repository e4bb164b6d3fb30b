"""The in-flight Google login: PKCE material, callback listener, outcome.

An AuthorizationSession moves through IDLE -> PENDING -> COMPLETED | FAILED.
It owns its LocalhostCallbackServer exclusively and closes it exactly once,
whichever way the login ends (tokens stored, provider error, failed
exchange, timeout or cancellation).
"""

import asyncio
import hmac
import logging
import webbrowser
from enum import Enum
from http import HTTPStatus
from typing import Any, Awaitable, Callable

from ..config import Settings
from .callback import (
    CALLBACK_HOST,
    CallbackReply,
    CallbackResult,
    LocalhostCallbackServer,
    error_page,
    success_page,
)
from .exchange import (
    CALLBACK_PORT,
    REDIRECT_URI,
    OAuthError,
    TokenExchangeError,
    build_authorization_url,
    exchange_code,
    resolve_client,
)
from .pkce import generate_pkce_pair, generate_state
from .store import TokenStore, TokenStoreError
from .tokens import (
    ACCESS_TOKEN_KEY,
    EXPIRATION_TIME_KEY,
    REFRESH_TOKEN_KEY,
    TokenRecord,
    compute_expires_at_ms,
    now_ms,
)

logger = logging.getLogger(__name__)

CodeExchanger = Callable[..., Awaitable[dict[str, Any]]]


class LoginError(OAuthError):
    """The browser login did not produce stored credentials."""

    pass


class AuthorizationDeniedError(LoginError):
    """Google redirected back with an error (e.g. the user denied access)."""

    pass


class MissingRefreshTokenError(LoginError):
    """The token response had no refresh token, so nothing was stored."""

    pass


class LoginNotConfiguredError(LoginError):
    """Custom-client mode is enabled without a client id and secret."""

    pass


class SessionPhase(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AuthorizationSession:
    """State of a single browser login.

    Usage:
        session = AuthorizationSession(settings, store)
        await session.start()          # binds the listener, opens the browser
        record = await session.wait()  # stored TokenRecord, or raises LoginError
    """

    def __init__(
        self,
        settings: Settings,
        store: TokenStore,
        exchanger: CodeExchanger = exchange_code,
        open_browser: Callable[[str], bool] = webbrowser.open,
        on_status: Callable[[str], None] | None = None,
        host: str = CALLBACK_HOST,
        port: int = CALLBACK_PORT,
    ):
        self.settings = settings
        self.store = store
        self.exchanger = exchanger
        self.open_browser = open_browser
        self.on_status = on_status or (lambda msg: None)

        pkce = generate_pkce_pair()
        self.state: str = generate_state()
        self.verifier: str = pkce.verifier
        self.challenge: str = pkce.challenge
        self.phase = SessionPhase.IDLE
        self.rejected_callbacks = 0

        self.listener = LocalhostCallbackServer(
            handler=self._handle_callback,
            timeout=settings.callback_timeout,
            host=host,
            port=port,
        )

        self._handling = False
        self._record: TokenRecord | None = None
        self._error: Exception | None = None
        self._waiter: asyncio.Task[TokenRecord] | None = None

    def _emit_status(self, message: str) -> None:
        logger.info(message)
        self.on_status(message)

    @property
    def redirect_uri(self) -> str:
        return self.listener.redirect_uri or REDIRECT_URI

    @property
    def authorization_url(self) -> str:
        return build_authorization_url(
            client_id=resolve_client(self.settings).client_id,
            state=self.state,
            code_challenge=self.challenge,
            redirect_uri=self.redirect_uri,
        )

    @property
    def is_pending(self) -> bool:
        return self.phase == SessionPhase.PENDING

    @property
    def waiter(self) -> "asyncio.Task[TokenRecord]":
        if self._waiter is None:
            raise LoginError("Login session has not been started")
        return self._waiter

    async def start(self) -> None:
        """Bind the callback listener and open the browser.

        Raises:
            LoginNotConfiguredError: If custom-client settings are incomplete
            CallbackError: If the callback port cannot be bound
        """
        if self.phase != SessionPhase.IDLE:
            raise LoginError(f"Login session already {self.phase.value}")

        if not self.settings.settings_are_complete():
            raise LoginNotConfiguredError(
                "Custom client is enabled but the Google client id or secret is missing"
            )

        await self.listener.start()
        self.phase = SessionPhase.PENDING
        self._waiter = asyncio.create_task(self._run())

        self._emit_status(f"Waiting for callback on {self.listener.redirect_uri}")
        self.reopen_browser()

    def reopen_browser(self) -> None:
        """Open the authorization page again for the same session."""
        auth_url = self.authorization_url
        self._emit_status("Opening browser for Google authorization...")
        if not self.open_browser(auth_url):
            self._emit_status(
                f"Could not open browser. Please open this URL manually:\n{auth_url}"
            )

    async def wait(self) -> TokenRecord:
        """Wait for the login to finish.

        Several callers may wait on the same session; all see the same outcome.

        Raises:
            LoginError: If authorization failed or no refresh token was issued
            TokenExchangeError: If the code exchange failed
            CallbackTimeoutError: If no callback arrived in time
        """
        return await asyncio.shield(self.waiter)

    async def cancel(self) -> None:
        """Abandon the login and release the listener."""
        if self.phase == SessionPhase.PENDING:
            self.phase = SessionPhase.FAILED
        if self._waiter is not None and not self._waiter.done():
            self._waiter.cancel()
            try:
                await self._waiter
            except asyncio.CancelledError:
                pass
        await self.close()

    async def close(self) -> None:
        """Release the listener and forget the state and PKCE material."""
        if self.phase == SessionPhase.PENDING and self._record is None:
            self.phase = SessionPhase.FAILED
        await self.listener.stop()
        self.state = ""
        self.verifier = ""
        self.challenge = ""

    async def _run(self) -> TokenRecord:
        try:
            await self.listener.wait_for_callback()
        except BaseException:
            self.phase = SessionPhase.FAILED
            raise
        finally:
            await self.close()

        if self._error is not None or self._record is None:
            self.phase = SessionPhase.FAILED
            raise self._error or LoginError("Login finished without credentials")

        self.phase = SessionPhase.COMPLETED
        self._emit_status("Successfully authenticated with Google!")
        return self._record

    def _fail(self, error: Exception) -> CallbackReply:
        self._error = error
        logger.warning(f"Login failed: {error}")
        return CallbackReply(
            HTTPStatus.OK,
            error_page(type(error).__name__, str(error)),
        )

    async def _handle_callback(self, result: CallbackResult) -> CallbackReply:
        """Validate a callback, exchange its code and store the tokens."""
        # Constant-time comparison; a foreign or stale state is ignored
        received = (result.state or "").encode("utf-8")
        if not self.state or not hmac.compare_digest(received, self.state.encode("utf-8")):
            self.rejected_callbacks += 1
            logger.warning("Ignoring OAuth callback with mismatched state")
            return CallbackReply(
                HTTPStatus.BAD_REQUEST,
                error_page("invalid_state", "This callback does not belong to the pending login."),
                done=False,
            )

        if self._handling:
            return CallbackReply(
                HTTPStatus.CONFLICT,
                error_page("already_handled", "This login is already being completed."),
                done=False,
            )
        self._handling = True

        if result.error:
            return self._fail(
                AuthorizationDeniedError(
                    f"Authorization failed: {result.error} - "
                    f"{result.error_description or 'No description provided'}"
                )
            )

        if not result.code:
            return self._fail(LoginError("No authorization code in callback"))

        self._emit_status("Exchanging code for tokens...")
        try:
            token_response = await self.exchanger(
                self.settings,
                result.code,
                self.verifier,
                self.state,
                redirect_uri=self.redirect_uri,
            )
        except TokenExchangeError as e:
            return self._fail(e)
        except Exception as e:
            error = LoginError(f"Unexpected error during token exchange: {e}")
            error.__cause__ = e
            return self._fail(error)

        if self.phase != SessionPhase.PENDING:
            logger.info("Login was abandoned during code exchange, discarding tokens")
            return CallbackReply(
                HTTPStatus.GONE,
                error_page("login_abandoned", "This login was cancelled or timed out."),
            )

        refresh_token = token_response.get("refresh_token")
        if not refresh_token:
            return self._fail(
                MissingRefreshTokenError(
                    "Google did not return a refresh token. "
                    "Remove the application's access in your Google account and log in again."
                )
            )

        access_token = token_response.get("access_token")
        try:
            expires_at_ms = compute_expires_at_ms(token_response.get("expires_in"), now_ms())
        except (TypeError, ValueError, OverflowError):
            return self._fail(TokenExchangeError("Token response has no valid expires_in"))
        if not access_token:
            return self._fail(TokenExchangeError("Token response has no access_token"))

        record = TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at_ms=expires_at_ms,
        )
        try:
            self.store.update(
                {
                    REFRESH_TOKEN_KEY: record.refresh_token,
                    ACCESS_TOKEN_KEY: record.access_token,
                    EXPIRATION_TIME_KEY: record.expires_at_ms,
                }
            )
        except TokenStoreError as e:
            return self._fail(e)

        logger.info("Google tokens acquired")
        self._record = record
        return CallbackReply(HTTPStatus.OK, success_page())

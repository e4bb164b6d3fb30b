"""Google OAuth 2.0 (authorization code + PKCE) support for gcal-auth.

Main Components:
    AuthManager: High-level manager for login, token access and logout
    AuthorizationSession: The single in-flight browser login
    TokenStore: Encrypted key-value token storage
    TokenResult: Outcome of every token operation

Quick Start:
    from gcal_auth.oauth import get_auth_manager

    manager = get_auth_manager()

    # Browser login
    await manager.login(on_status=print)

    # Before each Calendar API request
    result = await manager.ensure_access_token()
    if result.ok:
        headers = {"Authorization": result.get_auth_header()}
"""

from .callback import (
    CallbackError,
    CallbackReply,
    CallbackResult,
    CallbackTimeoutError,
    LocalhostCallbackServer,
)
from .exchange import (
    OAuthError,
    TokenExchangeError,
    build_authorization_url,
    exchange_code,
    refresh_access_token,
    revoke_token,
)
from .manager import AuthManager, AuthStatus, get_auth_manager
from .pkce import PKCEPair, generate_code_challenge, generate_code_verifier, generate_pkce_pair
from .session import (
    AuthorizationDeniedError,
    AuthorizationSession,
    LoginError,
    LoginNotConfiguredError,
    MissingRefreshTokenError,
    SessionPhase,
)
from .store import TokenDecryptionError, TokenStore, TokenStoreError
from .tokens import ClientCredentials, TokenFailure, TokenRecord, TokenResult

__all__ = [
    # Manager (main entry point)
    "AuthManager",
    "AuthStatus",
    "get_auth_manager",
    # Session
    "AuthorizationSession",
    "SessionPhase",
    "LoginError",
    "AuthorizationDeniedError",
    "MissingRefreshTokenError",
    "LoginNotConfiguredError",
    # Exchange
    "OAuthError",
    "TokenExchangeError",
    "build_authorization_url",
    "exchange_code",
    "refresh_access_token",
    "revoke_token",
    # Tokens
    "TokenRecord",
    "TokenResult",
    "TokenFailure",
    "ClientCredentials",
    # Storage
    "TokenStore",
    "TokenStoreError",
    "TokenDecryptionError",
    # PKCE
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "PKCEPair",
    # Callback
    "LocalhostCallbackServer",
    "CallbackResult",
    "CallbackReply",
    "CallbackError",
    "CallbackTimeoutError",
]

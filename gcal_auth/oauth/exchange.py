"""Token endpoint contract for Google OAuth.

Two client modes are supported:
- Broker mode: the public client id is used and requests go to a hosted
  broker, which holds the client secret and forwards them to Google.
- Custom-client mode: the user's own client id and secret are sent
  directly to Google's token endpoint.

Both modes support the authorization_code and refresh_token grants.
"""

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from ..config import Settings
from .tokens import ClientCredentials

logger = logging.getLogger(__name__)

AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
REVOCATION_ENDPOINT = "https://oauth2.googleapis.com/revoke"

# Must match the redirect URI registered for the client
CALLBACK_PORT = 42813
CALLBACK_PATH = "/callback"
REDIRECT_URI = f"http://localhost:{CALLBACK_PORT}{CALLBACK_PATH}"

# Public client registered for the broker
PUBLIC_CLIENT_ID = "783376961232-v90b17gr1mj1s2mnmdauvkp77u6htpke.apps.googleusercontent.com"

SCOPES = ["email", "profile", "https://www.googleapis.com/auth/calendar"]

BROKER_TOKEN_PATH = "/api/google/token"
BROKER_REFRESH_PATH = "/api/google/refresh"

HTTP_TIMEOUT = 30.0


class OAuthError(Exception):
    """Base error for Google OAuth operations."""

    pass


class TokenExchangeError(OAuthError):
    """Error during code exchange, refresh or a malformed token response."""

    pass


def resolve_client(settings: Settings) -> ClientCredentials:
    """Pick the client identity for the configured mode."""
    if settings.use_custom_client:
        return ClientCredentials(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
        )
    return ClientCredentials(client_id=PUBLIC_CLIENT_ID)


def build_authorization_url(
    client_id: str,
    state: str,
    code_challenge: str,
    redirect_uri: str = REDIRECT_URI,
    scopes: list[str] | None = None,
) -> str:
    """Build the authorization URL for browser redirect.

    ``prompt=consent`` together with ``access_type=offline`` makes Google
    issue a refresh token on every consent, not only the first one.

    Args:
        client_id: The client ID
        state: State parameter for CSRF protection
        code_challenge: PKCE code challenge
        redirect_uri: The callback URI
        scopes: Scopes to request (default: email, profile, calendar)

    Returns:
        Complete authorization URL
    """
    params: dict[str, str] = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "prompt": "consent",
        "access_type": "offline",
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "scope": " ".join(scopes or SCOPES),
    }

    return f"{AUTHORIZATION_ENDPOINT}?{urlencode(params)}"


def _parse_token_response(response: httpx.Response, action: str) -> dict[str, Any]:
    """Validate a token endpoint response and return its JSON body.

    Raises:
        TokenExchangeError: On non-200 status or an empty/non-JSON body
    """
    if response.status_code != 200:
        error_detail = ""
        try:
            error_data = response.json()
            # Only extract safe error fields, not arbitrary response data
            error_detail = f": {error_data.get('error', '')} - {error_data.get('error_description', '')}"
        except Exception:
            # Don't include raw response body - it might contain tokens or secrets
            error_detail = ""

        raise TokenExchangeError(f"{action} failed (HTTP {response.status_code}){error_detail}")

    try:
        data = response.json()
    except ValueError as e:
        raise TokenExchangeError(f"{action} returned an empty or non-JSON body") from e

    if not isinstance(data, dict) or not data:
        raise TokenExchangeError(f"{action} returned an empty or non-JSON body")

    return data


async def _post(
    url: str,
    action: str,
    http_client: httpx.AsyncClient | None,
    json_body: dict[str, Any] | None = None,
    form_body: dict[str, str] | None = None,
) -> dict[str, Any]:
    """POST a JSON or form-encoded body and parse the token response."""
    http = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT)
    should_close = http_client is None

    try:
        if json_body is not None:
            response = await http.post(
                url,
                json=json_body,
                headers={"Content-Type": "application/json"},
            )
        else:
            response = await http.post(
                url,
                data=form_body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        return _parse_token_response(response, action)

    except httpx.RequestError as e:
        raise TokenExchangeError(f"Network error during {action.lower()}: {e}") from e
    finally:
        if should_close:
            await http.aclose()


async def exchange_code_broker(
    oauth_server: str,
    code: str,
    code_verifier: str,
    state: str,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code through the hosted broker.

    Args:
        oauth_server: Broker base URL
        code: Authorization code from callback
        code_verifier: PKCE code verifier
        state: The session's state nonce

    Returns:
        Token response as dictionary

    Raises:
        TokenExchangeError: If token exchange fails
    """
    return await _post(
        f"{oauth_server.rstrip('/')}{BROKER_TOKEN_PATH}",
        "Token exchange",
        http_client,
        json_body={
            "client_id": PUBLIC_CLIENT_ID,
            "code_verifier": code_verifier,
            "code": code,
            "state": state,
        },
    )


async def exchange_code_custom(
    client: ClientCredentials,
    code: str,
    code_verifier: str,
    state: str,
    redirect_uri: str = REDIRECT_URI,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code directly at Google's token endpoint.

    Raises:
        TokenExchangeError: If token exchange fails
    """
    token_request: dict[str, str] = {
        "grant_type": "authorization_code",
        "client_id": client.client_id,
        "code_verifier": code_verifier,
        "code": code,
        "state": state,
        "redirect_uri": redirect_uri,
    }
    if client.is_confidential():
        token_request["client_secret"] = client.client_secret  # type: ignore

    return await _post(TOKEN_ENDPOINT, "Token exchange", http_client, form_body=token_request)


async def exchange_code(
    settings: Settings,
    code: str,
    code_verifier: str,
    state: str,
    redirect_uri: str = REDIRECT_URI,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code using the configured client mode.

    The broker already knows the registered redirect URI, so only custom
    mode sends it.
    """
    if settings.use_custom_client:
        logger.debug("Exchanging authorization code with custom client")
        return await exchange_code_custom(
            resolve_client(settings),
            code,
            code_verifier,
            state,
            redirect_uri=redirect_uri,
            http_client=http_client,
        )

    logger.debug(f"Exchanging authorization code through broker {settings.google_oauth_server}")
    return await exchange_code_broker(
        settings.google_oauth_server,
        code,
        code_verifier,
        state,
        http_client=http_client,
    )


async def refresh_access_token(
    settings: Settings,
    refresh_token_value: str,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Use the refresh token to mint a new access token.

    Broker mode posts JSON to the broker's refresh endpoint; custom mode
    posts form-encoded to Google's token endpoint.

    Returns:
        Token response as dictionary

    Raises:
        TokenExchangeError: If refresh fails
    """
    client = resolve_client(settings)
    refresh_request: dict[str, str] = {
        "grant_type": "refresh_token",
        "client_id": client.client_id,
        "refresh_token": refresh_token_value,
    }
    if client.is_confidential():
        refresh_request["client_secret"] = client.client_secret  # type: ignore

    if settings.use_custom_client:
        return await _post(TOKEN_ENDPOINT, "Token refresh", http_client, form_body=refresh_request)

    return await _post(
        f"{settings.google_oauth_server.rstrip('/')}{BROKER_REFRESH_PATH}",
        "Token refresh",
        http_client,
        json_body=refresh_request,
    )


async def revoke_token(
    token: str,
    http_client: httpx.AsyncClient | None = None,
) -> bool:
    """Revoke a token at Google (RFC 7009).

    Revoking a refresh token also invalidates the access tokens minted
    from it.

    Returns:
        True if revocation succeeded, False otherwise. Never raises:
        a failed revocation must not block logout.
    """
    http = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT)
    should_close = http_client is None

    try:
        response = await http.post(
            REVOCATION_ENDPOINT,
            data={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        if response.status_code == 200:
            logger.debug("Token revoked successfully")
            return True

        logger.warning(f"Token revocation returned HTTP {response.status_code}")
        return False

    except httpx.RequestError as e:
        logger.warning(f"Network error during token revocation: {e}")
        return False
    finally:
        if should_close:
            await http.aclose()

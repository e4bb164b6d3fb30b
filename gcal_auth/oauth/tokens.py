"""OAuth token data structures and utilities.

This module provides the TokenRecord dataclass for the persisted Google
credentials, the validity rule for cached access tokens, and the TokenResult
type returned by every token operation instead of raising.
"""

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Storage keys for the three persisted values
ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
EXPIRATION_TIME_KEY = "expiration_time"


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def compute_expires_at_ms(expires_in: Any, now: int | None = None) -> int:
    """Compute the absolute expiry instant from a relative ``expires_in``.

    Args:
        expires_in: Lifetime in seconds as returned by the token endpoint
        now: Issuance time in epoch milliseconds (defaults to now)

    Returns:
        Expiry instant in epoch milliseconds

    Raises:
        ValueError: If expires_in is not a number
    """
    issued = now_ms() if now is None else now
    return issued + int(float(expires_in) * 1000)


def is_valid_expiry(value: Any) -> bool:
    """Check that a stored expiration value is a usable number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


@dataclass
class TokenRecord:
    """Persisted Google OAuth credentials.

    Attributes:
        access_token: Short-lived bearer credential
        refresh_token: Long-lived credential from the first consent
        expires_at_ms: Access token expiry in epoch milliseconds. Kept as
            whatever was stored so a corrupted value is detected, not coerced.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at_ms: Any = None

    def is_access_token_valid(self, now: int | None = None) -> bool:
        """Check the four validity conditions for the cached access token.

        The token must be present, the expiry must be present and numeric,
        and the expiry must lie in the future.
        """
        if not self.access_token:
            return False

        if self.expires_at_ms is None or self.expires_at_ms == 0:
            return False

        if not is_valid_expiry(self.expires_at_ms):
            logger.debug(f"Stored expiration time is not numeric: {self.expires_at_ms!r}")
            return False

        current = now_ms() if now is None else now
        return self.expires_at_ms > current

    def has_refresh_token(self) -> bool:
        """Check if a refresh token is stored."""
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the storage key layout."""
        return {
            ACCESS_TOKEN_KEY: self.access_token,
            REFRESH_TOKEN_KEY: self.refresh_token,
            EXPIRATION_TIME_KEY: self.expires_at_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenRecord":
        """Deserialize from the storage key layout."""
        return cls(
            access_token=data.get(ACCESS_TOKEN_KEY),
            refresh_token=data.get(REFRESH_TOKEN_KEY),
            expires_at_ms=data.get(EXPIRATION_TIME_KEY),
        )


class TokenFailure(str, Enum):
    """Why a token operation could not produce an access token."""

    NOT_CONFIGURED = "not_configured"
    NOT_LOGGED_IN = "not_logged_in"
    EXPIRED = "expired"
    REFRESH_FAILED = "refresh_failed"


@dataclass(frozen=True)
class TokenResult:
    """Outcome of a token operation.

    Exactly one of ``token`` and ``reason`` is set. Callers check ``ok``
    and treat a failure as "the operation cannot proceed now".
    """

    token: str | None = None
    reason: TokenFailure | None = None

    @property
    def ok(self) -> bool:
        return self.token is not None

    @classmethod
    def success(cls, token: str) -> "TokenResult":
        return cls(token=token)

    @classmethod
    def failure(cls, reason: TokenFailure) -> "TokenResult":
        return cls(reason=reason)

    def get_auth_header(self) -> str | None:
        """Get the Authorization header value, or None on failure."""
        if self.token is None:
            return None
        return f"Bearer {self.token}"


@dataclass
class ClientCredentials:
    """OAuth client credentials.

    In broker mode this is the public client id with no secret; the broker
    adds the secret server-side. In custom mode both come from settings.
    """

    client_id: str
    client_secret: str | None = None

    def is_confidential(self) -> bool:
        """Check if this is a confidential client (has a secret)."""
        return self.client_secret is not None and len(self.client_secret) > 0

"""PKCE (Proof Key for Code Exchange) implementation per RFC 7636.

Google accepts PKCE for installed applications. The verifier is sent only in
the token request; the authorization request carries its S256 challenge, so an
intercepted authorization code is useless without the verifier.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass


# Number of random bytes behind the verifier and the state nonce.
# 32 bytes encode to 43 base64url characters, the RFC 7636 minimum length.
RANDOM_BYTES = 32


@dataclass
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is a cryptographically random string sent in the token request.
    The challenge is a SHA256 hash of the verifier sent in the authorization request.
    """

    verifier: str
    challenge: str
    method: str = "S256"


def base64url_encode(data: bytes) -> str:
    """Encode bytes as base64url without padding.

    ``+`` becomes ``-``, ``/`` becomes ``_`` and trailing ``=`` are dropped.
    """
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier(num_bytes: int = RANDOM_BYTES) -> str:
    """Generate a cryptographically random code verifier.

    Args:
        num_bytes: Number of random bytes to encode (default 32)

    Returns:
        Base64url-encoded random string (43 characters for 32 bytes)

    Raises:
        ValueError: If fewer than 32 bytes are requested
    """
    if num_bytes < RANDOM_BYTES:
        raise ValueError(
            f"Code verifier needs at least {RANDOM_BYTES} random bytes, got {num_bytes}"
        )

    return base64url_encode(secrets.token_bytes(num_bytes))


def generate_code_challenge(verifier: str) -> str:
    """Generate S256 code challenge from verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(ASCII(code_verifier)))

    The hash covers the encoded verifier string, not the random bytes it was
    made from; the server re-derives it from the verifier we send at exchange.

    Args:
        verifier: The code verifier string

    Returns:
        Base64URL-encoded SHA256 hash of the verifier
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64url_encode(digest)


def generate_pkce_pair() -> PKCEPair:
    """Generate a complete PKCE pair (verifier + challenge).

    Returns:
        PKCEPair with verifier, challenge, and method (always "S256")
    """
    verifier = generate_code_verifier()
    challenge = generate_code_challenge(verifier)

    return PKCEPair(verifier=verifier, challenge=challenge, method="S256")


def generate_state() -> str:
    """Generate a cryptographically random state parameter.

    The state parameter protects against CSRF attacks by ensuring
    the authorization response came from a request we initiated.
    """
    return base64url_encode(secrets.token_bytes(RANDOM_BYTES))

"""
RS256 JWT verification for identity-provider tokens.

Tokens carry the account id in `sub` and an `admin` claim for operator access.
`create_access_token` exists for local tooling and tests; production tokens
are minted by the identity provider with the matching private key.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import jwt

from phx.config import get_settings

_private_key: str | None = None
_public_key: str | None = None


def _load_public_key() -> str:
    """Load the RSA public key from disk (cached after first call)."""
    global _public_key  # noqa: PLW0603
    if _public_key is None:
        _public_key = Path(get_settings().jwt_public_key_path).read_text()
    return _public_key


def _load_private_key() -> str:
    global _private_key  # noqa: PLW0603
    if _private_key is None:
        _private_key = Path(get_settings().jwt_private_key_path).read_text()
    return _private_key


def reset_keys() -> None:
    """Reset cached keys (useful for testing)."""
    global _private_key, _public_key  # noqa: PLW0603
    _private_key = None
    _public_key = None


def create_access_token(
    account_id: str,
    *,
    email: str | None = None,
    admin: bool = False,
) -> str:
    """
    Create a short-lived access token.

    Args:
        account_id: The identity-provider subject, used as the account id.
        email: Optional email claim, copied onto the account at opening.
        admin: Whether the bearer may call operator endpoints.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": account_id,
        "admin": admin,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_access_token_expire_minutes),
        "iss": settings.jwt_issuer,
        "type": "access",
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, _load_private_key(), algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict[str, Any]:
    """
    Verify and decode an access token.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired, or not an access token.
    """
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            _load_public_key(),
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if payload.get("type") != "access":
        msg = f"Expected token type 'access', got '{payload.get('type')}'"
        raise jwt.InvalidTokenError(msg)
    if not payload.get("sub"):
        msg = "Token has no subject"
        raise jwt.InvalidTokenError(msg)

    return payload

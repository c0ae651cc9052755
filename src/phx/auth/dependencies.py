"""FastAPI authentication dependencies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import jwt
from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from phx.auth.jwt import verify_token
from phx.errors import Unauthenticated, Unauthorized
from phx.services import Services

_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Caller:
    account_id: str
    email: str | None
    admin: bool


def get_services(request: Request) -> Services:
    """Return the service container built at startup."""
    return request.app.state.services


async def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> Caller:
    """
    Extract and verify the bearer token.

    Raises Unauthenticated when the header is missing or the token is invalid.
    """
    if credentials is None:
        msg = "Authentication required"
        raise Unauthenticated(msg)
    try:
        payload: dict[str, Any] = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise Unauthenticated(str(e)) from e
    return Caller(
        account_id=str(payload["sub"]),
        email=payload.get("email"),
        admin=payload.get("admin") is True,
    )


async def get_current_account_id(caller: Caller = Depends(get_caller)) -> str:
    return caller.account_id


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    """Same as get_caller but additionally requires the admin claim."""
    if not caller.admin:
        msg = "Admin privileges required"
        raise Unauthorized(msg)
    return caller

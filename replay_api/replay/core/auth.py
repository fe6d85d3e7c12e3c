"""Bearer token verification.

Tokens are issued by the account service; this API only verifies them and
takes the owner id from the `sub` (or legacy `id` / `user_id`) claim.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from ..config import Settings
from .exceptions import Unauthorized

_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    owner_id: str
    token: str


def create_access_token(
    owner_id: str,
    secret: str,
    algorithm: str = "HS256",
    expires_in: int = 7 * 24 * 3600,
) -> str:
    expire = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    payload = {"sub": owner_id, "id": owner_id, "exp": expire}
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_access_token(token: str, settings: Settings) -> Principal:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise Unauthorized("Invalid or expired token") from exc

    owner_id = payload.get("sub") or payload.get("id") or payload.get("user_id")
    if not owner_id:
        raise Unauthorized("Token has no user id")
    return Principal(owner_id=str(owner_id), token=token)


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Principal:
    """FastAPI dependency: verify the Authorization header."""
    if credentials is None:
        raise Unauthorized()
    return decode_access_token(credentials.credentials, request.app.state.settings)


async def get_stream_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> Principal:
    """Like get_current_principal, but media elements may pass ?token= instead."""
    token = credentials.credentials if credentials is not None else request.query_params.get("token")
    if not token:
        raise Unauthorized()
    return decode_access_token(token, request.app.state.settings)

"""Authentication dependency for caller-facing endpoints.

Session issuance belongs to the account service. Endpoints here receive
the caller as an explicit ``RequestContext`` built from a bearer JWT or
the ``session`` cookie.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from loguru import logger

from ridesync.core.auth_jwt import decode_access_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


@dataclass(frozen=True)
class RequestContext:
    user_id: str


def _get_auth_token(request: Request, token: str | None) -> str | None:
    """Prefer the Authorization header (API clients), fall back to the session cookie (web)."""
    if token:
        return token
    return request.cookies.get("session")


def get_request_context(request: Request, token: str | None = Depends(oauth2_scheme)) -> RequestContext:
    """FastAPI dependency resolving the authenticated caller.

    Raises:
        HTTPException: 401 if the token is missing, invalid, or expired
    """
    auth_token = _get_auth_token(request, token)
    if not auth_token:
        logger.debug(f"Missing auth token for {request.method} {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = decode_access_token(auth_token)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    return RequestContext(user_id=user_id)

"""Admin authentication for the config, call-control and event endpoints.

Both guards share one decision (``check_admin_token``) and differ only in
how they reject:

  require_admin_token()   HTTP, ``Authorization: Bearer <key>``  → 401 / 403
  require_admin_ws()      WebSocket, ``?token=<key>``            → close 4001 / 4003

With no ``ADMIN_API_KEY`` configured the admin surface is open in DEBUG and
locked otherwise. Tokens are compared in constant time.
"""

from __future__ import annotations

import enum
import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Query, WebSocketException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from voicebridge.config import settings

log = logging.getLogger("voicebridge.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


class AdminAccess(enum.Enum):
    ALLOWED = "allowed"
    UNAUTHORIZED = "unauthorized"
    LOCKED = "locked"


def check_admin_token(token: Optional[str]) -> AdminAccess:
    """Decide whether ``token`` grants admin access under current settings."""
    key = settings.admin_api_key
    if not key:
        return AdminAccess.ALLOWED if settings.debug else AdminAccess.LOCKED
    if token and secrets.compare_digest(token.encode(), key.encode()):
        return AdminAccess.ALLOWED
    return AdminAccess.UNAUTHORIZED


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency guarding the admin HTTP routes."""
    access = check_admin_token(credentials.credentials if credentials else None)

    if access is AdminAccess.LOCKED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API key not configured. Set ADMIN_API_KEY in .env.",
        )
    if access is AdminAccess.UNAUTHORIZED:
        log.warning("Admin request rejected: invalid or missing token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin_ws(
    token: str = Query(default=""),
) -> None:
    """WebSocket guard; browsers cannot set headers on the handshake."""
    access = check_admin_token(token)

    if access is AdminAccess.LOCKED:
        raise WebSocketException(code=4003, reason="Admin API key not configured")
    if access is AdminAccess.UNAUTHORIZED:
        log.warning("Admin WebSocket rejected: invalid token")
        raise WebSocketException(code=4001, reason="Unauthorized")

"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the web login flow.
  2. Authorization: Bearer <token> header -- API clients.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises a 401 AppError if unauthenticated;
the app-level handler renders it as the standard error envelope.

Layer rule: no imports from api/, web/, or middleware/.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import User
from auth.tokens import AUTH_COOKIE_NAME, decode_access_token
from core.errors import unauthorized


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via cookie or Bearer header.

    Returns the active User on success, None otherwise. Never raises.
    """
    token = request.cookies.get(AUTH_COOKIE_NAME) or _bearer_token(request)
    if not token:
        return None

    payload = decode_access_token(token)
    if payload is None:
        return None

    user = request.app.state.user_store.get_by_id(payload["user_id"])
    if user is None or not user.is_active:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise unauthorized("Authentication required")
    return user

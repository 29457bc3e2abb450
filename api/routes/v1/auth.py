"""
api/routes/v1/auth.py -- JSON authentication endpoints.

Routes:
  POST /api/v1/auth/login   -- email/password login; sets JWT cookie, returns token
  POST /api/v1/auth/logout  -- clears the cookie
  GET  /api/v1/auth/me      -- current user info (requires auth)

Security:
  POST /login is rate-limited by LOGIN_RATE_LIMIT per client IP on top of
  the default limit.
  authenticate_user() provides timing equalization; use it, never inline
  get_by_email() + verify_password().
  Login responses carry Cache-Control: no-store.
  All three are state-changing or identity-bearing, so the CSRF middleware
  requires the double-submit token on the two POSTs like any other.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import LoginRequest, LoginResponse, MeResponse, MessageResponse, UserResponse
from auth.dependencies import get_current_user
from auth.models import User
from auth.store import UserStore
from auth.tokens import authenticate_user, clear_auth_cookie, create_access_token, set_auth_cookie
from core.config import get_settings
from core.errors import unauthorized

logger = logging.getLogger("formwork.api.auth")

router = APIRouter()


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        bio=user.bio,
        avatar_url=user.avatar_url,
        is_active=user.is_active,
        created_at=user.created_at or "",
        updated_at=user.updated_at or "",
    )


@limiter.limit(login_limit)  # must be ABOVE @router so the route registers the undecorated endpoint name
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the JWT cookie.

    Wrong email and wrong password produce the same 401 so the response does
    not reveal which accounts exist.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        logger.info("Failed API login attempt")
        raise unauthorized("Invalid email or password")

    expires_in = get_settings().token_expire_seconds
    token = create_access_token(user.id, user.email)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            expires_in=expires_in,
            user=user_to_response(user),
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    logger.info("User signed in via API id=%s", user.id)
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content=MessageResponse(message="Logged out").model_dump())
    clear_auth_cookie(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        user_id=current_user.id,
        email=current_user.email,
        name=current_user.name,
        is_active=current_user.is_active,
    )

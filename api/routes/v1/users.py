"""
api/routes/v1/users.py -- JSON user statistics.

Routes:
  GET /api/v1/users/count -- number of active users (public)

Also refreshes the active-users gauge so /metrics reflects the count the
last client saw.
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from api.models import UserCountResponse
from auth.store import UserStore
from core.metrics import update_active_users

router = APIRouter()


@router.get("/users/count", response_model=UserCountResponse)
def user_count(request: Request) -> UserCountResponse:
    user_store: UserStore = request.app.state.user_store
    count = user_store.count_users()
    update_active_users(count)
    return UserCountResponse(count=count)

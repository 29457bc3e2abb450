"""
web/routes.py -- Jinja2 + HTMX routes for the Formwork web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same user store) but return HTML fragments or pages instead of JSON.

Every rendered response goes through _render(), which puts the current CSRF
token into the template context (as csrf_token). The CSRF middleware rotates
the token on every response and echoes it in an X-CSRF-Token response
header; layout.html reads that header after each HTMX request and refreshes
the token the page submits next.

Request bodies are accepted as JSON or HTML forms (urlencoded or multipart
without file parts). Any other content type is a 400 "Invalid request format".

Route registration order matters: GET /users/list and GET /users/form must be
registered before any /users/{user_id} route or FastAPI captures "list" and
"form" as a path parameter.

Routes:
  GET    /                          -- home page (content partial for HTMX)
  GET    /demo                      -- HTMX demo fragment, or JSON
  GET    /health                    -- health fragment for HTMX, or JSON
  GET    /auth/login                -- login page
  POST   /auth/login                -- handle login (form or JSON body)
  GET    /auth/register             -- registration page
  POST   /auth/register             -- handle registration (form or JSON body)
  POST   /auth/logout               -- clear session cookie
  GET    /profile                   -- current user's profile (auth required)
  GET    /users                     -- user management page (auth required)
  GET    /users/list                -- HTMX: user table rows (auth required)
  GET    /users/form                -- HTMX: blank create form (auth required)
  POST   /users                     -- HTMX: create, return list (auth required)
  GET    /users/{user_id}/edit      -- HTMX: edit form (auth required)
  PUT    /users/{user_id}           -- HTMX: update, return list (auth required)
  PATCH  /users/{user_id}/deactivate -- HTMX: deactivate, return list (auth required)
  DELETE /users/{user_id}           -- HTMX: delete, empty 200 (auth required)

Errors:
  Validation, conflict and not-found failures raise AppError. The app-level
  handler renders the JSON envelope; layout.html shows its message for HTMX
  requests.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import IntegrityError

from api.models import LoginRequest, RegisterRequest, UserCreate, UserResponse, UserUpdate
from auth.dependencies import try_get_current_user
from auth.models import User
from auth.store import UserStore
from auth.tokens import authenticate_user, clear_auth_cookie, create_access_token, hash_password, set_auth_cookie
from core.config import get_settings
from core.errors import (
    bad_request,
    conflict,
    not_found,
    unauthorized,
    validation_details,
    validation_failed,
)
from core.health import build_health_report
from core.metrics import record_user_created, update_active_users
from core.sanitize import TEXT_SANITIZE_CONFIG, sanitize_string
from middleware.csrf import get_csrf_token

logger = logging.getLogger("formwork.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# layout.html calls this to decide between the sign-in link and the account menu.
templates.env.globals["try_get_current_user"] = try_get_current_user
router = APIRouter()

# Free-text fields passed through the XSS sanitizer before validation. Jinja
# autoescaping covers output and SQLAlchemy binds every parameter, so the
# HTML-escape and SQL passes are not applied at storage time.
_SANITIZED_FIELDS = ("name", "bio")

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

_DEMO_FEATURES = [
    "Server-side rendering",
    "Dynamic content loading",
    "No page refresh",
    "Rotating CSRF tokens",
]


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def _is_htmx(request: Request) -> bool:
    return request.headers.get("HX-Request") == "true"


def _wants_json(request: Request) -> bool:
    """True for API-style clients: JSON bodies or an Accept header preferring JSON over HTML."""
    if request.headers.get("content-type", "").startswith("application/json"):
        return True
    accept = request.headers.get("accept", "")
    return "application/json" in accept and "text/html" not in accept


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs (https://evil.example) and protocol-relative ones
    (//evil.example), both of which would redirect off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return "/"


def _redirect(request: Request, url: str, message: str) -> Response:
    """HX-Redirect for HTMX (a 3xx would be followed inside the fragment), 302 otherwise."""
    if _is_htmx(request) or _wants_json(request):
        resp = JSONResponse({"message": message})
        resp.headers["HX-Redirect"] = url
        return resp
    return RedirectResponse(url, status_code=302)


def _unauthenticated(request: Request) -> Response:
    """Browsers are sent to the login page; HTMX and JSON clients get a 401 envelope."""
    if _is_htmx(request) or _wants_json(request):
        raise unauthorized("Authentication required")
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    return RedirectResponse(f"/auth/login?next={quote(path, safe='/')}", status_code=302)


def _require_auth(request: Request) -> Optional[Response]:
    """Return a response to send instead of the page when unauthenticated, else None.

    Call at the top of protected route handlers:
        if redirect := _require_auth(request):
            return redirect
    """
    if try_get_current_user(request) is None:
        return _unauthenticated(request)
    return None


async def _read_payload(request: Request) -> dict[str, Any]:
    """Return the request body as a dict, from JSON or from an HTML form."""
    content_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    if content_type == "application/json":
        try:
            data = await request.json()
        except json.JSONDecodeError as exc:
            raise bad_request("Invalid request format").with_internal(exc) from exc
        if not isinstance(data, dict):
            raise bad_request("Invalid request format")
        return data
    if content_type not in _FORM_CONTENT_TYPES:
        raise bad_request("Invalid request format")
    async with request.form() as form:
        data = dict(form.items())
    if not all(isinstance(value, str) for value in data.values()):
        raise bad_request("File uploads are not accepted")
    return data


def _sanitize_fields(data: dict[str, Any]) -> dict[str, Any]:
    cleaned = dict(data)
    for field in _SANITIZED_FIELDS:
        value = cleaned.get(field)
        if isinstance(value, str):
            cleaned[field] = sanitize_string(value, TEXT_SANITIZE_CONFIG)
    return cleaned


def _validate(schema: type[BaseModel], data: dict[str, Any]):
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise validation_failed(validation_details(exc.errors(include_url=False))) from exc


def _parse_user_id(raw: str) -> int:
    try:
        user_id = int(raw)
    except ValueError:
        raise bad_request("Invalid user ID") from None
    if user_id <= 0:
        raise bad_request("Invalid user ID")
    return user_id


def _render(
    request: Request,
    template: str,
    context: Optional[dict[str, Any]] = None,
    status_code: int = 200,
    headers: Optional[dict[str, str]] = None,
) -> HTMLResponse:
    """Render a template with the current CSRF token in context as csrf_token."""
    ctx = {"csrf_token": get_csrf_token(request)}
    ctx.update(context or {})
    return templates.TemplateResponse(request, template, ctx, status_code=status_code, headers=headers)


def _user_list(request: Request, trigger: Optional[str] = None, status_code: int = 200) -> HTMLResponse:
    user_store: UserStore = request.app.state.user_store
    headers = {"HX-Trigger": trigger} if trigger else None
    return _render(
        request,
        "partials/user_list.html",
        {"users": user_store.list_users(), "current_user": try_get_current_user(request)},
        status_code=status_code,
        headers=headers,
    )


def _user_json(user: User) -> dict[str, Any]:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        bio=user.bio,
        avatar_url=user.avatar_url,
        is_active=user.is_active,
        created_at=user.created_at or "",
        updated_at=user.updated_at or "",
    ).model_dump()


def _get_user_or_404(request: Request, user_id: int) -> User:
    user = request.app.state.user_store.get_by_id(user_id)
    if user is None:
        raise not_found("User not found")
    return user


def _refresh_active_users(store: UserStore) -> None:
    update_active_users(store.count_users())


# ---------------------------------------------------------------------------
# Home, demo, health
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(request: Request) -> HTMLResponse:
    if _is_htmx(request):
        return _render(request, "partials/home_content.html")
    return _render(request, "home.html")


@router.get("/demo")
def demo(request: Request) -> Response:
    data = {
        "message": "Demo successful! This content was loaded dynamically using HTMX.",
        "features": _DEMO_FEATURES,
        "server_time": datetime.now(timezone.utc).strftime("%H:%M:%S UTC"),
        "request_id": getattr(request.state, "request_id", "") or "",
    }
    if _is_htmx(request):
        return _render(request, "partials/demo.html", data)
    return JSONResponse(data)


@router.get("/health")
def health(request: Request) -> Response:
    settings = get_settings()
    report, status_code = build_health_report(
        getattr(request.app.state, "user_store", None), settings.app_name, settings.version
    )
    if _is_htmx(request):
        # HTMX only swaps 2xx responses; the fragment shows the status itself.
        return _render(request, "partials/health.html", {"health": report})
    return JSONResponse(
        report,
        status_code=status_code,
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )


# ---------------------------------------------------------------------------
# Auth pages
# ---------------------------------------------------------------------------


@router.get("/auth/login", response_class=HTMLResponse)
def login_page(request: Request) -> Response:
    if try_get_current_user(request) is not None:
        return RedirectResponse("/", status_code=302)
    return _render(request, "login.html", {"next_url": _safe_next(request.query_params.get("next"))})


@router.post("/auth/login")
async def login_submit(request: Request) -> Response:
    """Handle the login form (or JSON body).

    Wrong email and wrong password produce the same 401 so the response does
    not reveal which accounts exist.
    """
    data = await _read_payload(request)
    body = _validate(LoginRequest, data)

    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        logger.info("Failed login attempt")
        raise unauthorized("Invalid email or password")

    token = create_access_token(user.id, user.email)
    next_url = _safe_next(data.get("next") or request.query_params.get("next"))
    resp = _redirect(request, next_url, "Login successful")
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    logger.info("User signed in id=%s", user.id)
    return resp


@router.get("/auth/register", response_class=HTMLResponse)
def register_page(request: Request) -> Response:
    if try_get_current_user(request) is not None:
        return RedirectResponse("/", status_code=302)
    return _render(request, "register.html")


@router.post("/auth/register")
async def register_submit(request: Request) -> Response:
    """Create an account and sign it in."""
    data = _sanitize_fields(await _read_payload(request))
    body = _validate(RegisterRequest, data)

    user_store: UserStore = request.app.state.user_store
    new_user = User(
        email=body.email,
        name=body.name,
        bio=body.bio,
        avatar_url=body.avatar_url,
        hashed_password=hash_password(body.password),
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise conflict("An account with that email already exists").with_internal(exc) from exc

    record_user_created()
    _refresh_active_users(user_store)
    logger.info("User registered id=%s", user_id)

    token = create_access_token(user_id, body.email)
    resp = _redirect(request, "/", "Registration successful")
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
def logout(request: Request) -> Response:
    user = try_get_current_user(request)
    resp = _redirect(request, "/auth/login", "Logout successful")
    clear_auth_cookie(resp)
    if user is not None:
        logger.info("User signed out id=%s", user.id)
    return resp


@router.get("/profile", response_class=HTMLResponse)
def profile(request: Request) -> Response:
    user = try_get_current_user(request)
    if user is None:
        return _unauthenticated(request)
    return _render(request, "profile.html", {"user": user})


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


@router.get("/users", response_class=HTMLResponse)
def users_page(request: Request) -> Response:
    if redirect := _require_auth(request):
        return redirect
    user_store: UserStore = request.app.state.user_store
    return _render(
        request,
        "users.html",
        {"users": user_store.list_users(), "current_user": try_get_current_user(request), "user": None},
    )


@router.get("/users/list", response_class=HTMLResponse)
def users_list(request: Request) -> Response:
    if redirect := _require_auth(request):
        return redirect
    return _user_list(request)


@router.get("/users/form", response_class=HTMLResponse)
def user_form(request: Request) -> Response:
    if redirect := _require_auth(request):
        return redirect
    return _render(request, "partials/user_form.html", {"user": None})


@router.post("/users")
async def create_user(request: Request) -> Response:
    if redirect := _require_auth(request):
        return redirect
    body = _validate(UserCreate, _sanitize_fields(await _read_payload(request)))

    user_store: UserStore = request.app.state.user_store
    try:
        user_id = user_store.create_user(
            User(email=body.email, name=body.name, bio=body.bio, avatar_url=body.avatar_url)
        )
    except IntegrityError as exc:
        raise conflict("A user with that email already exists").with_internal(exc) from exc

    record_user_created()
    _refresh_active_users(user_store)
    logger.info("User created id=%s", user_id)

    if _wants_json(request):
        return JSONResponse(_user_json(user_store.get_by_id(user_id)), status_code=201)
    return _user_list(request, trigger="userCreated")


@router.get("/users/{user_id}/edit", response_class=HTMLResponse)
def edit_user_form(request: Request, user_id: str) -> Response:
    if redirect := _require_auth(request):
        return redirect
    user = _get_user_or_404(request, _parse_user_id(user_id))
    return _render(request, "partials/user_form.html", {"user": user})


@router.put("/users/{user_id}")
async def update_user(request: Request, user_id: str) -> Response:
    if redirect := _require_auth(request):
        return redirect
    uid = _parse_user_id(user_id)
    body = _validate(UserUpdate, _sanitize_fields(await _read_payload(request)))

    user_store: UserStore = request.app.state.user_store
    if not user_store.update_user(uid, name=body.name, bio=body.bio, avatar_url=body.avatar_url):
        raise not_found("User not found")
    logger.info("User updated id=%s", uid)

    if _wants_json(request):
        return JSONResponse(_user_json(user_store.get_by_id(uid)))
    return _user_list(request, trigger="userUpdated")


@router.patch("/users/{user_id}/deactivate")
def deactivate_user(request: Request, user_id: str) -> Response:
    current = try_get_current_user(request)
    if current is None:
        return _unauthenticated(request)
    uid = _parse_user_id(user_id)
    if uid == current.id:
        raise bad_request("You cannot deactivate your own account")

    user_store: UserStore = request.app.state.user_store
    if not user_store.deactivate_user(uid):
        raise not_found("User not found")
    _refresh_active_users(user_store)
    logger.info("User deactivated id=%s", uid)
    return _user_list(request, trigger="userDeactivated")


@router.delete("/users/{user_id}")
def delete_user(request: Request, user_id: str) -> Response:
    """Delete a user. Returns an empty 200 so HTMX swaps the row out."""
    current = try_get_current_user(request)
    if current is None:
        return _unauthenticated(request)
    uid = _parse_user_id(user_id)
    if uid == current.id:
        raise bad_request("You cannot delete your own account")

    user_store: UserStore = request.app.state.user_store
    if not user_store.delete_user(uid):
        raise not_found("User not found")
    _refresh_active_users(user_store)
    logger.info("User deleted id=%s", uid)

    resp = HTMLResponse("", status_code=200)
    resp.headers["HX-Trigger"] = "userDeleted"
    return resp

"""
middleware/csrf.py -- Double-submit cookie CSRF protection.

The server keeps no token state. Each response carries a random token in an
http-only cookie; every state-changing request must echo that same value
through a second channel (header, form field, or query parameter) that a
cross-site page cannot set. Tokens rotate on every issuance.

Per-request state machine:

  Start ── safe method (GET/HEAD/OPTIONS) ──────────────────────────> Issue
    │
    └── otherwise ─> CheckCookie ── missing ──────────────────────> Reject
                        │
                        └─> ExtractSubmitted ── empty ────────────> Reject
                               │
                               └─> Compare ── mismatch ───────────> Reject
                                     │          (failure counter)
                                     └── equal ───────────────────> Issue

  Issue:  mint token, expose it on request.state.<context_key>, run the
          handler, set the cookie on whatever response it produced and
          echo the token in the X-CSRF-Token response header. Pages read
          the header after each HTMX request, so error envelopes, redirects
          and empty bodies keep the page in step with the cookie too.
  Reject: call config.error_handler(request, AppError). The default handler
          returns the standard 403 "csrf" envelope. The specific reason
          (missing cookie / missing submission / mismatch / unreadable form
          body) is attached as AppError.internal and only reaches server logs.

Known limitation: two concurrent state-changing requests sharing one cookie
jar race. The first rotates the cookie; the second still presents the old
token and is rejected. The same happens when a GET in another tab rotates
the token underneath an open form. Clients must reload and resubmit.

Layer rule: middleware/ imports from core/ only.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Literal, Optional

from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from core.errors import AppError, csrf_error, error_response, internal_error
from core.metrics import record_csrf_token_generated, record_csrf_validation_failure

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("formwork.csrf")

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

TOKEN_RESPONSE_HEADER = "X-CSRF-Token"

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

CSRFErrorHandler = Callable[[Request, AppError], Response]


# ---------------------------------------------------------------------------
# Lookup rules
# ---------------------------------------------------------------------------


class LookupSource(str, Enum):
    header = "header"
    form = "form"
    query = "query"


@dataclass(frozen=True)
class LookupRule:
    """One place to look for the submitted token, e.g. header "X-CSRF-Token"."""

    source: LookupSource
    name: str

    def __str__(self) -> str:
        return f"{self.source.value}:{self.name}"


DEFAULT_TOKEN_LOOKUP: tuple[LookupRule, ...] = (
    LookupRule(LookupSource.header, "X-CSRF-Token"),
    LookupRule(LookupSource.form, "csrf_token"),
)


def parse_token_lookup(text: str) -> tuple[LookupRule, ...]:
    """Parse "header:X-CSRF-Token,form:csrf_token" into an ordered rule tuple.

    Blank entries are skipped. A malformed entry or unknown source raises
    ValueError so misconfiguration fails at startup, not on the first POST.
    """
    rules: list[LookupRule] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        source, sep, name = part.partition(":")
        name = name.strip()
        if not sep or not name:
            raise ValueError(f"Invalid CSRF token lookup {part!r}; expected '<source>:<name>'")
        try:
            rules.append(LookupRule(LookupSource(source.strip().lower()), name))
        except ValueError as exc:
            raise ValueError(f"Unknown CSRF token lookup source {source!r} in {part!r}") from exc
    if not rules:
        raise ValueError("CSRF token lookup must contain at least one rule")
    return tuple(rules)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def default_error_handler(request: Request, exc: AppError) -> Response:
    """Return the standard 403 csrf envelope. error_response() logs the internal reason."""
    return error_response(request, exc)


@dataclass(frozen=True)
class CSRFConfig:
    token_length: int = 32
    token_lookup: tuple[LookupRule, ...] = DEFAULT_TOKEN_LOOKUP
    cookie_name: str = "_csrf"
    cookie_domain: Optional[str] = None
    cookie_path: str = "/"
    cookie_secure: bool = False
    cookie_http_only: bool = True
    cookie_same_site: Literal["strict", "lax", "none"] = "strict"
    cookie_max_age: int = 86400
    context_key: str = "csrf"
    error_handler: CSRFErrorHandler = field(default=default_error_handler)

    def __post_init__(self) -> None:
        if self.token_length <= 0:
            raise ValueError("CSRF token_length must be positive")
        if not self.token_lookup:
            raise ValueError("CSRF token_lookup must contain at least one rule")
        if self.cookie_same_site == "none" and not self.cookie_secure:
            raise ValueError("SameSite=None cookies must also be Secure")

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides) -> "CSRFConfig":
        values = {
            "token_length": settings.csrf_token_length,
            "token_lookup": parse_token_lookup(settings.csrf_token_lookup),
            "cookie_name": settings.csrf_cookie_name,
            "cookie_domain": settings.csrf_cookie_domain,
            "cookie_secure": settings.secure_cookies,
            "cookie_same_site": settings.csrf_cookie_same_site,
            "cookie_max_age": settings.csrf_cookie_max_age,
        }
        values.update(overrides)
        return cls(**values)


# ---------------------------------------------------------------------------
# Token primitives
# ---------------------------------------------------------------------------


def generate_token(length: int = 32) -> str:
    """Return `length` random bytes as 2*length hex characters.

    Fails closed: if the OS random source is unavailable the request errors
    out rather than falling back to a predictable token.
    """
    try:
        return secrets.token_hex(length)
    except (NotImplementedError, OSError) as exc:
        logger.error("Secure random source unavailable; refusing to mint CSRF token")
        raise internal_error().with_internal(exc) from exc


def compare_tokens(cookie_token: str, submitted: str) -> bool:
    """Constant-time equality. Compared as bytes so non-ASCII input cannot raise."""
    return hmac.compare_digest(cookie_token.encode("utf-8"), submitted.encode("utf-8"))


async def _form_value(request: Request, name: str) -> str:
    content_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    if content_type not in _FORM_CONTENT_TYPES:
        return ""
    # Read the raw body first: BaseHTTPMiddleware replays a cached body to the
    # downstream app, so the route can still parse the same form.
    await request.body()
    async with request.form() as form:
        value = form.get(name)
    return value if isinstance(value, str) else ""


async def extract_token(request: Request, rules: tuple[LookupRule, ...]) -> str:
    """Return the first non-empty submitted token, trying rules in order."""
    for rule in rules:
        if rule.source is LookupSource.header:
            value = request.headers.get(rule.name, "")
        elif rule.source is LookupSource.query:
            value = request.query_params.get(rule.name, "")
        else:
            value = await _form_value(request, rule.name)
        if value:
            return value
    return ""


def get_csrf_token(request: Request, context_key: str = "csrf") -> str:
    """Return the token issued for this request, or "" outside the middleware."""
    token = getattr(request.state, context_key, None)
    return token if isinstance(token, str) else ""


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class CSRFMiddleware(BaseHTTPMiddleware):
    """Validate state-changing requests and rotate the double-submit token.

    Usage:
        app.add_middleware(CSRFMiddleware, config=CSRFConfig.from_settings(settings))
    """

    def __init__(self, app: ASGIApp, config: Optional[CSRFConfig] = None) -> None:
        super().__init__(app)
        self.config = config or CSRFConfig()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method not in SAFE_METHODS:
            rejection = await self._validate(request)
            if rejection is not None:
                return self.config.error_handler(request, csrf_error().with_context(request).with_internal(rejection))

        try:
            token = generate_token(self.config.token_length)
        except AppError as exc:
            return error_response(request, exc)

        setattr(request.state, self.config.context_key, token)
        response = await call_next(request)
        self._set_cookie(response, token)
        response.headers[TOKEN_RESPONSE_HEADER] = token
        record_csrf_token_generated()
        return response

    async def _validate(self, request: Request) -> Optional[Exception]:
        """Return the reason the request fails validation, or None if it passes."""
        cookie_token = request.cookies.get(self.config.cookie_name)
        if not cookie_token:
            return LookupError("CSRF cookie not found")

        try:
            submitted = await extract_token(request, self.config.token_lookup)
        except (MultiPartException, HTTPException) as exc:
            # Malformed multipart body or too many fields.
            return exc
        if not submitted:
            return LookupError("CSRF token not found in request")

        if not compare_tokens(cookie_token, submitted):
            record_csrf_validation_failure()
            return ValueError("CSRF token mismatch")

        return None

    def _set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            self.config.cookie_name,
            value=token,
            max_age=self.config.cookie_max_age,
            path=self.config.cookie_path,
            domain=self.config.cookie_domain,
            secure=self.config.cookie_secure,
            httponly=self.config.cookie_http_only,
            samesite=self.config.cookie_same_site,
        )

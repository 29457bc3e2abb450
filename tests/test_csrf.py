"""
tests/test_csrf.py -- Double-submit CSRF middleware.

Most tests run against a tiny standalone Starlette app so nothing but the
middleware sits between the client and the handlers. The last section goes
through the assembled Formwork app.

Covers:
  - token minting on safe methods (length, hex, cookie attributes)
  - round trip through header, form field and query parameter, with rotation
  - rejection on missing cookie, missing submission, and mismatch
  - lookup order: the first configured channel that has a value wins
  - form bodies read by the middleware are still readable by the handler
  - the client sees only the generic 403 envelope, never the reason
  - random source failure fails closed with a 500
  - malformed or oversized form bodies are a 403, never a 500
  - the token is echoed in X-CSRF-Token, and CORS exposes it cross-origin
"""

from __future__ import annotations

import secrets

import pytest
from prometheus_client import REGISTRY
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from core.errors import AppError, ErrorType
from middleware import csrf
from middleware.csrf import (
    CSRFConfig,
    CSRFMiddleware,
    LookupRule,
    LookupSource,
    compare_tokens,
    generate_token,
    get_csrf_token,
    parse_token_lookup,
)
from tests.conftest import csrf_headers

# ---------------------------------------------------------------------------
# Standalone app
# ---------------------------------------------------------------------------


async def _token(request: Request) -> PlainTextResponse:
    return PlainTextResponse(get_csrf_token(request))


async def _form(request: Request) -> JSONResponse:
    async with request.form() as form:
        name = form.get("name")
    return JSONResponse({"name": name, "token": get_csrf_token(request)})


def _make_client(config: CSRFConfig | None = None) -> TestClient:
    app = Starlette(
        routes=[
            Route("/", _token, methods=["GET", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]),
            Route("/form", _form, methods=["POST"]),
        ],
        middleware=[Middleware(CSRFMiddleware, config=config)],
    )
    return TestClient(app)


def _set_cookie_headers(resp) -> list[str]:
    return [v for k, v in resp.headers.multi_items() if k.lower() == "set-cookie"]


def _failures() -> float:
    return REGISTRY.get_sample_value("csrf_validation_failures_total") or 0.0


@pytest.fixture
def app_client() -> TestClient:
    return _make_client()


# ---------------------------------------------------------------------------
# Token primitives
# ---------------------------------------------------------------------------


class TestGenerateToken:
    def test_default_length_is_64_hex_chars(self) -> None:
        token = generate_token(32)
        assert len(token) == 64
        int(token, 16)

    def test_tokens_differ(self) -> None:
        assert generate_token() != generate_token()

    def test_random_source_failure_raises_internal_error(self, monkeypatch) -> None:
        def broken(_n):
            raise OSError("no entropy")

        monkeypatch.setattr(csrf.secrets, "token_hex", broken)
        with pytest.raises(AppError) as exc_info:
            generate_token(32)
        assert exc_info.value.type is ErrorType.internal
        assert exc_info.value.status_code == 500
        assert isinstance(exc_info.value.internal, OSError)


class TestCompareTokens:
    def test_equal(self) -> None:
        assert compare_tokens("abc123", "abc123") is True

    def test_one_character_differs(self) -> None:
        token = generate_token()
        tampered = token[:-1] + ("0" if token[-1] != "0" else "1")
        assert compare_tokens(token, tampered) is False

    def test_length_differs(self) -> None:
        assert compare_tokens("abc", "abcd") is False

    def test_non_ascii_does_not_raise(self) -> None:
        assert compare_tokens("abc", "äbc") is False


class TestParseTokenLookup:
    def test_default_string(self) -> None:
        rules = parse_token_lookup("header:X-CSRF-Token,form:csrf_token")
        assert rules == (
            LookupRule(LookupSource.header, "X-CSRF-Token"),
            LookupRule(LookupSource.form, "csrf_token"),
        )

    def test_whitespace_and_blank_entries_ignored(self) -> None:
        rules = parse_token_lookup(" query:_csrf , ,HEADER:X-Token ")
        assert rules == (
            LookupRule(LookupSource.query, "_csrf"),
            LookupRule(LookupSource.header, "X-Token"),
        )

    @pytest.mark.parametrize("text", ["header", "header:", "cookie:_csrf", "", " , "])
    def test_malformed_raises(self, text: str) -> None:
        with pytest.raises(ValueError):
            parse_token_lookup(text)


class TestCSRFConfig:
    def test_defaults(self) -> None:
        config = CSRFConfig()
        assert config.token_length == 32
        assert config.cookie_name == "_csrf"
        assert config.cookie_same_site == "strict"
        assert config.cookie_http_only is True
        assert config.cookie_max_age == 86400
        assert config.context_key == "csrf"

    def test_rejects_non_positive_length(self) -> None:
        with pytest.raises(ValueError):
            CSRFConfig(token_length=0)

    def test_rejects_empty_lookup(self) -> None:
        with pytest.raises(ValueError):
            CSRFConfig(token_lookup=())

    def test_same_site_none_requires_secure(self) -> None:
        with pytest.raises(ValueError):
            CSRFConfig(cookie_same_site="none")
        assert CSRFConfig(cookie_same_site="none", cookie_secure=True).cookie_secure is True

    def test_from_settings(self) -> None:
        from core.config import get_settings

        settings = get_settings()
        config = CSRFConfig.from_settings(settings, context_key="token")
        assert config.token_length == settings.csrf_token_length
        assert config.cookie_name == settings.csrf_cookie_name
        assert config.token_lookup == parse_token_lookup(settings.csrf_token_lookup)
        assert config.context_key == "token"


# ---------------------------------------------------------------------------
# Safe methods mint a token
# ---------------------------------------------------------------------------


class TestMintOnSafeMethod:
    def test_get_sets_cookie_matching_context_token(self, app_client: TestClient) -> None:
        resp = app_client.get("/")
        assert resp.status_code == 200
        cookie = app_client.cookies.get("_csrf")
        assert cookie is not None
        assert len(cookie) == 64
        assert resp.text == cookie

    def test_cookie_attributes(self, app_client: TestClient) -> None:
        resp = app_client.get("/")
        header = _set_cookie_headers(resp)[0].lower()
        assert "httponly" in header
        assert "samesite=strict" in header
        assert "path=/" in header
        assert "max-age=86400" in header
        assert "secure" not in header

    def test_every_get_rotates(self, app_client: TestClient) -> None:
        app_client.get("/")
        first = app_client.cookies.get("_csrf")
        app_client.get("/")
        assert app_client.cookies.get("_csrf") != first

    def test_head_mints(self, app_client: TestClient) -> None:
        resp = app_client.head("/")
        assert resp.status_code == 200
        assert _set_cookie_headers(resp)

    def test_options_mints(self, app_client: TestClient) -> None:
        app_client.get("/")
        first = app_client.cookies.get("_csrf")
        resp = app_client.options("/")
        assert resp.status_code == 200
        assert _set_cookie_headers(resp)
        assert app_client.cookies.get("_csrf") != first
        assert resp.text == app_client.cookies.get("_csrf")

    def test_token_echoed_in_response_header(self, app_client: TestClient) -> None:
        resp = app_client.get("/")
        assert resp.headers["X-CSRF-Token"] == app_client.cookies.get("_csrf")

    def test_get_csrf_token_outside_middleware_is_empty(self) -> None:
        app = Starlette(routes=[Route("/", _token)])
        with TestClient(app) as client:
            assert client.get("/").text == ""


# ---------------------------------------------------------------------------
# Round trip
# ---------------------------------------------------------------------------


class TestRoundTrip:
    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
    def test_header_channel_accepts_and_rotates(self, app_client: TestClient, method: str) -> None:
        app_client.get("/")
        old = app_client.cookies.get("_csrf")
        resp = app_client.request(method, "/", headers={"X-CSRF-Token": old})
        assert resp.status_code == 200
        new = app_client.cookies.get("_csrf")
        assert new != old
        assert resp.text == new
        assert resp.headers["X-CSRF-Token"] == new

    def test_echoed_token_works_without_reading_cookie(self, app_client: TestClient) -> None:
        token = app_client.get("/").headers["X-CSRF-Token"]
        for _ in range(3):
            resp = app_client.delete("/", headers={"X-CSRF-Token": token})
            assert resp.status_code == 200
            token = resp.headers["X-CSRF-Token"]

    def test_form_channel_and_body_still_readable(self, app_client: TestClient) -> None:
        app_client.get("/")
        old = app_client.cookies.get("_csrf")
        resp = app_client.post("/form", data={"csrf_token": old, "name": "Ada"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["name"] == "Ada"
        assert body["token"] == app_client.cookies.get("_csrf") != old

    def test_multipart_form_channel(self, app_client: TestClient) -> None:
        app_client.get("/")
        old = app_client.cookies.get("_csrf")
        resp = app_client.post(
            "/form",
            data={"csrf_token": old, "name": "Grace"},
            files={"upload": ("notes.txt", b"hello", "text/plain")},
        )
        assert resp.status_code == 200
        assert resp.json()["name"] == "Grace"

    def test_query_channel_when_configured(self) -> None:
        client = _make_client(CSRFConfig(token_lookup=parse_token_lookup("query:_csrf")))
        client.get("/")
        old = client.cookies.get("_csrf")
        resp = client.post(f"/?_csrf={old}")
        assert resp.status_code == 200
        assert client.cookies.get("_csrf") != old

    def test_custom_cookie_name_and_context_key(self) -> None:
        async def handler(request: Request) -> PlainTextResponse:
            return PlainTextResponse(get_csrf_token(request, context_key="xsrf"))

        app = Starlette(
            routes=[Route("/", handler, methods=["GET", "POST"])],
            middleware=[Middleware(CSRFMiddleware, config=CSRFConfig(cookie_name="xsrf", context_key="xsrf"))],
        )
        client = TestClient(app)
        resp = client.get("/")
        assert resp.text == client.cookies.get("xsrf")
        resp = client.post("/", headers={"X-CSRF-Token": client.cookies.get("xsrf")})
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Rejection
# ---------------------------------------------------------------------------


def _assert_csrf_envelope(resp) -> None:
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["type"] == "csrf"
    assert error["message"] == "Invalid CSRF token"
    assert error["code"] == 403
    # The specific reason stays in the server log.
    assert "mismatch" not in resp.text
    assert "not found" not in resp.text


class TestRejection:
    def test_missing_cookie(self) -> None:
        client = _make_client()
        resp = client.post("/", headers={"X-CSRF-Token": generate_token()})
        _assert_csrf_envelope(resp)

    def test_missing_submission(self, app_client: TestClient) -> None:
        app_client.get("/")
        resp = app_client.post("/")
        _assert_csrf_envelope(resp)

    def test_mismatch_by_one_character(self, app_client: TestClient) -> None:
        app_client.get("/")
        token = app_client.cookies.get("_csrf")
        tampered = token[:-1] + ("0" if token[-1] != "0" else "1")
        before = _failures()
        resp = app_client.post("/", headers={"X-CSRF-Token": tampered})
        _assert_csrf_envelope(resp)
        assert _failures() == before + 1

    def test_missing_cookie_does_not_count_as_mismatch(self) -> None:
        before = _failures()
        _make_client().post("/", headers={"X-CSRF-Token": "abc"})
        assert _failures() == before

    def test_rejection_does_not_rotate_cookie(self, app_client: TestClient) -> None:
        app_client.get("/")
        token = app_client.cookies.get("_csrf")
        resp = app_client.post("/", headers={"X-CSRF-Token": "wrong"})
        assert resp.status_code == 403
        assert not _set_cookie_headers(resp)
        assert "X-CSRF-Token" not in resp.headers
        assert app_client.cookies.get("_csrf") == token
        # The untouched token still works.
        assert app_client.post("/", headers={"X-CSRF-Token": token}).status_code == 200

    def test_used_token_is_rejected_after_rotation(self, app_client: TestClient) -> None:
        app_client.get("/")
        old = app_client.cookies.get("_csrf")
        assert app_client.post("/", headers={"X-CSRF-Token": old}).status_code == 200
        resp = app_client.post("/", headers={"X-CSRF-Token": old})
        _assert_csrf_envelope(resp)

    def test_form_lookup_ignores_json_bodies(self) -> None:
        client = _make_client(CSRFConfig(token_lookup=parse_token_lookup("form:csrf_token")))
        client.get("/")
        resp = client.post("/", json={"csrf_token": client.cookies.get("_csrf")})
        _assert_csrf_envelope(resp)

    def test_custom_error_handler(self) -> None:
        seen: list[AppError] = []

        def handler(request: Request, exc: AppError) -> PlainTextResponse:
            seen.append(exc)
            return PlainTextResponse("nope", status_code=419)

        client = _make_client(CSRFConfig(error_handler=handler))
        resp = client.post("/", headers={"X-CSRF-Token": "abc"})
        assert resp.status_code == 419
        assert seen[0].type is ErrorType.csrf
        assert str(seen[0]) == "CSRF cookie not found"
        assert seen[0].path == "/"
        assert seen[0].method == "POST"


class TestUnreadableFormBody:
    def test_multipart_without_boundary(self, app_client: TestClient) -> None:
        app_client.get("/")
        resp = app_client.post("/", content=b"garbage", headers={"Content-Type": "multipart/form-data"})
        _assert_csrf_envelope(resp)

    def test_too_many_fields(self, app_client: TestClient) -> None:
        app_client.get("/")
        body = "&".join(f"f{i}=x" for i in range(1200))
        resp = app_client.post(
            "/", content=body.encode(), headers={"Content-Type": "application/x-www-form-urlencoded"}
        )
        _assert_csrf_envelope(resp)

    def test_parse_error_reaches_error_handler_as_internal_cause(self) -> None:
        seen: list[AppError] = []

        def handler(request: Request, exc: AppError) -> PlainTextResponse:
            seen.append(exc)
            return PlainTextResponse("nope", status_code=403)

        client = _make_client(CSRFConfig(error_handler=handler))
        client.get("/")
        resp = client.post("/", content=b"garbage", headers={"Content-Type": "multipart/form-data"})
        assert resp.status_code == 403
        assert seen[0].type is ErrorType.csrf
        assert isinstance(seen[0].internal, (MultiPartException, HTTPException))


# ---------------------------------------------------------------------------
# Lookup order
# ---------------------------------------------------------------------------


class TestLookupOrder:
    def test_header_first_wins_over_wrong_form_value(self, app_client: TestClient) -> None:
        app_client.get("/")
        token = app_client.cookies.get("_csrf")
        resp = app_client.post("/form", headers={"X-CSRF-Token": token}, data={"csrf_token": "wrong"})
        assert resp.status_code == 200

    def test_form_first_wins_over_correct_header(self) -> None:
        client = _make_client(CSRFConfig(token_lookup=parse_token_lookup("form:csrf_token,header:X-CSRF-Token")))
        client.get("/")
        token = client.cookies.get("_csrf")
        resp = client.post("/form", headers={"X-CSRF-Token": token}, data={"csrf_token": "wrong"})
        _assert_csrf_envelope(resp)

    def test_empty_first_channel_falls_through(self) -> None:
        client = _make_client(CSRFConfig(token_lookup=parse_token_lookup("header:X-CSRF-Token,form:csrf_token")))
        client.get("/")
        token = client.cookies.get("_csrf")
        resp = client.post("/form", data={"csrf_token": token, "name": "x"})
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Fail closed
# ---------------------------------------------------------------------------


def test_random_source_failure_returns_500(app_client: TestClient, monkeypatch) -> None:
    def broken(_n):
        raise NotImplementedError("no urandom")

    monkeypatch.setattr(secrets, "token_hex", broken)
    resp = app_client.get("/")
    assert resp.status_code == 500
    assert resp.json()["error"]["type"] == "internal"
    assert "_csrf" not in app_client.cookies


# ---------------------------------------------------------------------------
# Assembled app
# ---------------------------------------------------------------------------


class TestAssembledApp:
    def test_get_home_sets_cookie_and_header(self, client) -> None:
        resp = client.get("/")
        assert resp.status_code == 200
        token = client.cookies.get("_csrf")
        assert len(token) == 64
        assert resp.headers["X-CSRF-Token"] == token
        assert token in resp.text

    def test_post_without_token_is_403_with_request_id(self, client) -> None:
        client.get("/")
        resp = client.post("/auth/logout")
        assert resp.status_code == 403
        body = resp.json()["error"]
        assert body["type"] == "csrf"
        assert body["request_id"] == resp.headers["X-Request-ID"]
        assert resp.headers["X-Frame-Options"] == "DENY"

    def test_post_with_token_passes(self, client) -> None:
        resp = client.post("/auth/logout", headers=csrf_headers(client))
        assert resp.status_code == 302
        assert resp.headers["X-CSRF-Token"] == client.cookies.get("_csrf")

    def test_malformed_multipart_is_403_not_500(self, client) -> None:
        client.get("/")
        resp = client.post("/auth/logout", content=b"garbage", headers={"Content-Type": "multipart/form-data"})
        assert resp.status_code == 403
        assert resp.json()["error"]["type"] == "csrf"

    def test_plain_options_mints(self, client) -> None:
        """An OPTIONS request that is not a CORS preflight reaches the app and gets a token."""
        resp = client.options("/")
        assert any(v.startswith("_csrf=") for v in _set_cookie_headers(resp))
        assert resp.headers["X-CSRF-Token"] == client.cookies.get("_csrf")

    def test_cors_preflight_answered_before_csrf(self, client) -> None:
        """CORSMiddleware answers preflights itself, so no token is minted for them."""
        resp = client.options(
            "/users",
            headers={
                "Origin": "http://localhost:8080",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "X-CSRF-Token",
            },
        )
        assert resp.status_code == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:8080"
        assert "x-csrf-token" in resp.headers["Access-Control-Allow-Headers"].lower()
        assert not any(v.startswith("_csrf=") for v in _set_cookie_headers(resp))

    def test_cors_exposes_rotated_token(self, client) -> None:
        resp = client.get("/", headers={"Origin": "http://localhost:8080"})
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:8080"
        assert "x-csrf-token" in resp.headers["Access-Control-Expose-Headers"].lower()
        assert resp.headers["X-CSRF-Token"] == client.cookies.get("_csrf")

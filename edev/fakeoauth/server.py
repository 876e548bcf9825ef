"""
Fake OAuth2 server (authorization code + PKCE) for DEV/TEST only.

No HTTPS, no consent screen: every authorization request is granted to the
single configured user.
"""

import base64
import hashlib
import hmac
import json
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from loguru import logger

CODE_TTL_SECONDS = 120


@dataclass(frozen=True)
class FakeOAuthConfig:
    addr: str = "127.0.0.1:9100"
    base_url: str = "http://127.0.0.1:9100"
    client_id: str = "fake-client-id"
    client_secret: str = ""
    user_id: str = "u-123"
    username: str = "tester"
    name: str = "Test User"
    email: str = "tester@example.local"
    avatar_url: str = ""
    issue_id_token: bool = False
    jwt_secret: str = "dev-secret"
    token_ttl_seconds: float = 15 * 60
    latency_seconds: float = 0.0
    verbose: bool = False


@dataclass
class AuthCode:
    user_id: str
    redirect_uri: str
    expires_at: float
    code_challenge: str = ""
    scope: str = ""


@dataclass
class AccessToken:
    user_id: str
    username: str
    name: str
    email: str
    avatar_url: str
    expires_at: float
    scope: str = ""


class Store:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._codes: Dict[str, AuthCode] = {}
        self._tokens: Dict[str, AccessToken] = {}

    def put_code(self, code: str, ac: AuthCode) -> None:
        with self._lock:
            self._codes[code] = ac

    def take_code(self, code: str) -> Optional[AuthCode]:
        with self._lock:
            return self._codes.pop(code, None)

    def put_token(self, token: str, at: AccessToken) -> None:
        with self._lock:
            self._tokens[token] = at

    def get_token(self, token: str) -> Optional[AccessToken]:
        with self._lock:
            at = self._tokens.get(token)
            if at is not None and time.time() > at.expires_at:
                del self._tokens[token]
                return None
            return at

    def cleanup_expired(self) -> None:
        now = time.time()
        with self._lock:
            for k in [k for k, v in self._codes.items() if now > v.expires_at]:
                del self._codes[k]
            for k in [k for k, v in self._tokens.items() if now > v.expires_at]:
                del self._tokens[k]


class Janitor:
    def __init__(self, store: Store, interval_seconds: float = 30.0) -> None:
        self._store = store
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="fakeoauth_janitor", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=5)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self._store.cleanup_expired()


def random_string(n: int) -> str:
    """Opaque base64url identifier (no padding) with n bytes of entropy."""
    return base64.urlsafe_b64encode(secrets.token_bytes(n)).decode("ascii").rstrip("=")


def base64url_sha256(s: str) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(s.encode("ascii")).digest()).decode("ascii").rstrip("=")


def jwt_hs256(secret: str, claims: Dict[str, Any]) -> str:
    """Minimal HS256 JWT for the id_token (DEV/TEST only, no extra headers)."""

    def enc(b: bytes) -> str:
        return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")

    head = json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
    body = json.dumps(claims, separators=(",", ":")).encode()
    unsigned = f"{enc(head)}.{enc(body)}"
    sig = hmac.new(secret.encode(), unsigned.encode("ascii"), hashlib.sha256).digest()
    return f"{unsigned}.{enc(sig)}"


def error_json(status_code: int, err_code: str, desc: str) -> JSONResponse:
    return JSONResponse({"error": err_code, "error_description": desc}, status_code=status_code)


def _with_query(url: str, params: Dict[str, str]) -> str:
    parts = urlsplit(url)
    q = dict(parse_qsl(parts.query, keep_blank_values=True))
    q.update(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(q), parts.fragment))


def create_app(cfg: FakeOAuthConfig, store: Optional[Store] = None) -> FastAPI:
    store = store or Store()
    app = FastAPI(title="fakeoauth", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.store = store

    def _latency() -> None:
        if cfg.latency_seconds > 0:
            time.sleep(cfg.latency_seconds)

    if cfg.verbose:
        @app.middleware("http")
        async def log_requests(request: Request, call_next):
            start = time.monotonic()
            response = await call_next(request)
            logger.info(
                "{} {} {} {}ms",
                request.method,
                request.url.path,
                response.status_code,
                int((time.monotonic() - start) * 1000),
            )
            return response

    @app.get("/oauth/authorize")
    def authorize(request: Request):
        _latency()
        q = request.query_params
        if q.get("response_type") != "code":
            return error_json(400, "unsupported_response_type", "expected response_type=code")
        if q.get("client_id") != cfg.client_id:
            return error_json(400, "unauthorized_client", "invalid client_id")
        redirect_uri = q.get("redirect_uri", "")
        if not redirect_uri.startswith(("http://", "https://")):
            return error_json(400, "invalid_request", "invalid redirect_uri")
        challenge = q.get("code_challenge", "")
        method = q.get("code_challenge_method", "")
        if method and method != "S256":
            return error_json(400, "invalid_request", "only S256 supported for code_challenge_method")

        ac = AuthCode(
            user_id=cfg.user_id,
            redirect_uri=redirect_uri,
            expires_at=time.time() + CODE_TTL_SECONDS,
            code_challenge=challenge if (challenge and method == "S256") else "",
            scope=q.get("scope", ""),
        )
        code = random_string(24)
        store.put_code(code, ac)

        params = {"code": code}
        state = q.get("state", "")
        if state:
            params["state"] = state
        if cfg.verbose:
            logger.info("authorize: issued code={} state={}", code, state)
        return RedirectResponse(url=_with_query(redirect_uri, params), status_code=302)

    @app.post("/oauth/token")
    async def token(request: Request):
        _latency()
        try:
            form = await request.form()
        except Exception:
            return error_json(400, "invalid_request", "parse form")
        if form.get("grant_type") != "authorization_code":
            return error_json(400, "unsupported_grant_type", "expected authorization_code")
        if form.get("client_id") != cfg.client_id:
            return error_json(400, "unauthorized_client", "invalid client_id")
        if cfg.client_secret and form.get("client_secret") != cfg.client_secret:
            return error_json(401, "invalid_client", "invalid client_secret")

        ac = store.take_code(str(form.get("code") or ""))
        if ac is None:
            return error_json(400, "invalid_grant", "unknown code")
        if time.time() > ac.expires_at:
            return error_json(400, "invalid_grant", "expired code")
        if ac.redirect_uri != form.get("redirect_uri"):
            return error_json(400, "invalid_grant", "redirect_uri mismatch")
        if ac.code_challenge:
            verifier = str(form.get("code_verifier") or "")
            if not verifier:
                return error_json(400, "invalid_request", "missing code_verifier")
            if base64url_sha256(verifier) != ac.code_challenge:
                return error_json(400, "invalid_grant", "code_verifier mismatch")

        now = time.time()
        access_token = random_string(32)
        store.put_token(
            access_token,
            AccessToken(
                user_id=cfg.user_id,
                username=cfg.username,
                name=cfg.name,
                email=cfg.email,
                avatar_url=cfg.avatar_url,
                expires_at=now + cfg.token_ttl_seconds,
                scope=ac.scope,
            ),
        )
        resp: Dict[str, Any] = {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": int(cfg.token_ttl_seconds),
            "refresh_token": "refresh-" + random_string(12),
        }
        if ac.scope:
            resp["scope"] = ac.scope
        if cfg.issue_id_token:
            claims: Dict[str, Any] = {
                "iss": cfg.base_url,
                "aud": cfg.client_id,
                "sub": cfg.user_id,
                "exp": int(now + cfg.token_ttl_seconds),
                "iat": int(now),
                "email": cfg.email,
                "name": cfg.name,
                "preferred_username": cfg.username,
            }
            if cfg.avatar_url:
                claims["picture"] = cfg.avatar_url
            resp["id_token"] = jwt_hs256(cfg.jwt_secret, claims)
        if cfg.verbose:
            logger.info("token: issued access_token for user={}", cfg.user_id)
        return JSONResponse(resp)

    @app.get("/oauth/userinfo")
    def userinfo(request: Request):
        _latency()
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer "):
            return error_json(401, "invalid_token", "missing bearer")
        at = store.get_token(auth[len("Bearer "):])
        if at is None:
            return error_json(401, "invalid_token", "unknown or expired token")
        return JSONResponse(
            {
                "id": at.user_id,
                "username": at.username,
                "name": at.name,
                "email": at.email,
                "avatar_url": at.avatar_url,
            }
        )

    @app.get("/healthz")
    def healthz():
        return PlainTextResponse("ok\n")

    return app

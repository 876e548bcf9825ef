"""
Web front: index page, OAuth login/callback routes, /me, /logout, /healthz.
"""

import sqlite3
import time
from pathlib import Path
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from loguru import logger

from edev.config.settings import Settings
from edev.db.errors import StorageError
from edev.db.repos.users_repo import record_login
from edev.db.sqlite import SQLite
from edev.oauth.pkce import make_pkce, new_opaque_id
from edev.oauth.provider import OAuthError, OAuthProvider
from edev.oauth.providers import build_providers
from edev.oauth.state import StateStore
from edev.session.store import SessionStore

WEB_DIR = Path(__file__).parent
LOGIN_COOKIE_MAX_AGE = 8 * 3600

CSP = "; ".join(
    [
        "default-src 'self'",
        "img-src 'self' data: https: *.githubusercontent.com github.com *.twimg.com pbs.twimg.com",
        "style-src 'self' 'unsafe-inline'",
        "frame-ancestors 'none'",
    ]
)

CALLBACK_PATHS = {
    "github": "/github/oauth/callback",
    "x": "/x/oauth/callback",
}


def create_app(
    settings: Settings,
    storage: Optional[SQLite],
    sessions: Optional[SessionStore] = None,
    states: Optional[StateStore] = None,
    providers: Optional[Dict[str, OAuthProvider]] = None,
) -> FastAPI:
    sessions = sessions or SessionStore(settings.session_max_age_seconds, insecure_cookie=settings.fake_oauth_enabled)
    states = states or StateStore()
    providers = providers if providers is not None else build_providers(settings)

    app = FastAPI(title="edev", version=settings.git_tag, docs_url=None, redoc_url=None, openapi_url=None)
    templates = Jinja2Templates(directory=str(WEB_DIR / "templates"))
    app.mount("/assets", StaticFiles(directory=str(WEB_DIR / "assets")), name="assets")

    app.state.settings = settings
    app.state.storage = storage
    app.state.sessions = sessions
    app.state.states = states
    app.state.providers = providers

    @app.middleware("http")
    async def security_and_logging(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = CSP
        dur_ms = int((time.monotonic() - start) * 1000)
        remote = request.client.host if request.client else "-"
        logger.info(
            "request method={} path={} status={} dur_ms={} remote={}",
            request.method,
            request.url.path,
            response.status_code,
            dur_ms,
            remote,
        )
        return response

    @app.exception_handler(StorageError)
    @app.exception_handler(sqlite3.Error)
    async def storage_error(request: Request, exc: Exception):
        logger.error("storage error on {}: {}", request.url.path, exc)
        return PlainTextResponse("internal server error", status_code=500)

    @app.get("/", response_class=HTMLResponse)
    def index(request: Request):
        user = sessions.user_from_request(request)
        resp = templates.TemplateResponse(
            request,
            "index.html",
            {
                "authed": user is not None,
                "user": user,
                "fake_oauth_enabled": "fake" in providers,
                "git_tag": settings.git_tag,
            },
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz():
        return PlainTextResponse("ok\n")

    @app.get("/favicon.ico")
    def favicon():
        # some browsers ignore <link rel="icon">
        return RedirectResponse(url="/assets/favicon.ico", status_code=301)

    @app.get("/me")
    def me(request: Request):
        user = sessions.user_from_request(request)
        if user is None:
            return PlainTextResponse("unauthorized", status_code=401, headers={"Cache-Control": "no-store"})
        return JSONResponse(user.to_dict(), headers={"Cache-Control": "no-store"})

    @app.get("/logout")
    def logout(request: Request):
        sid = sessions.get_cookie(request)
        if sid:
            sessions.delete(sid)
        resp = RedirectResponse(url=f"{settings.base_url}/", status_code=302)
        sessions.clear_cookie(resp)
        return resp

    def login(provider: OAuthProvider) -> RedirectResponse:
        state = new_opaque_id()
        verifier, challenge = make_pkce()
        states.put(state, verifier, provider.state_ttl_seconds)
        return RedirectResponse(url=provider.authorize_url(state, challenge), status_code=302)

    def callback(provider: OAuthProvider, request: Request):
        recv_state = request.query_params.get("state", "")
        if not recv_state:
            return PlainTextResponse("missing state", status_code=400)
        verifier = states.take(recv_state)
        if verifier is None:
            return PlainTextResponse("invalid/expired state", status_code=400)
        code = request.query_params.get("code", "")
        if not code:
            return PlainTextResponse("missing code", status_code=400)

        try:
            user = provider.complete(code, verifier)
        except OAuthError as e:
            logger.warning("{} login failed: {}", provider.name, e)
            return PlainTextResponse(str(e), status_code=e.status_code)

        if storage is not None:
            record_login(storage, provider.name, user)

        sid = new_opaque_id()
        sessions.put(sid, user)
        resp = RedirectResponse(url=f"{settings.base_url}/", status_code=302)
        sessions.set_cookie(resp, sid, LOGIN_COOKIE_MAX_AGE)
        return resp

    for name, provider in providers.items():
        path = CALLBACK_PATHS.get(name) or settings.fake_oauth_redirect
        _add_provider_routes(app, name, path, provider, login, callback)

    return app


def _add_provider_routes(app: FastAPI, name: str, callback_path: str, provider: OAuthProvider, login, callback) -> None:
    def login_route():
        return login(provider)

    def callback_route(request: Request):
        return callback(provider, request)

    app.add_api_route(f"/login/{name}", login_route, methods=["GET"], name=f"login_{name}")
    app.add_api_route(callback_path, callback_route, methods=["GET"], name=f"callback_{name}")

"""
HTTP surface of the BFF: Google login, credential status/refresh/logout, and system endpoints.

Services are built once in `create_app` and handed to the routes; nothing here is a
module-level singleton, so tests build as many isolated apps as they like.
"""

from __future__ import annotations

import logging
import os
import platform
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from bff import __version__
from bff.api.responses import auth_error_response, error_response, ok
from bff.auth.config import AuthConfig, load_auth_config
from bff.auth.cookies import (
    STATE_COOKIE_NAME,
    clear_credential_cookie_kwargs,
    clear_state_cookie_kwargs,
    credential_cookie_kwargs,
    decode_state,
    encode_state,
    state_cookie_kwargs,
)
from bff.auth.credentials import build_credential_issuer
from bff.auth.deps import OPTIONAL, REQUIRED, AuthMiddleware, extract_credential
from bff.auth.errors import AuthError, InternalError, StoreUnavailable
from bff.auth.google import GoogleOAuthClient, OAuthClient
from bff.auth.login_state import LoginStateStore, build_login_state_store
from bff.auth.models import Identity, utcnow
from bff.auth.orchestrator import AuthOrchestrator
from bff.auth.sessions import SessionStore, SessionSweeper, build_session_store
from bff.auth.users import LocalUserDirectory, UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class AuthServices:
    cfg: AuthConfig
    orchestrator: AuthOrchestrator
    login_enabled: bool
    login_states: LoginStateStore
    session_store: Optional[SessionStore] = None
    sweeper: Optional[SessionSweeper] = None


def build_services(
    cfg: AuthConfig,
    *,
    oauth_client: Optional[OAuthClient] = None,
    session_store: Optional[SessionStore] = None,
    login_states: Optional[LoginStateStore] = None,
    users: Optional[UserDirectory] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> AuthServices:
    store = None
    if cfg.credential_mode == "session":
        store = session_store or build_session_store(cfg.session_store_type, redis_url=cfg.redis_url, clock=clock)
    issuer = build_credential_issuer(cfg, session_store=store, clock=clock)
    # Pending logins follow the session store type so callbacks can land on any instance.
    states = login_states
    if states is None:
        states = build_login_state_store(cfg.session_store_type, redis_url=cfg.redis_url, clock=clock)
    orchestrator = AuthOrchestrator(
        oauth=oauth_client or GoogleOAuthClient.from_config(cfg),
        issuer=issuer,
        frontend_base_url=cfg.frontend_base_url,
        users=users or LocalUserDirectory(clock=clock),
        states=states,
        clock=clock,
    )
    return AuthServices(
        cfg=cfg,
        orchestrator=orchestrator,
        login_enabled=oauth_client is not None or cfg.google_enabled,
        login_states=states,
        session_store=store,
        sweeper=SessionSweeper(store, cfg.session_sweep_seconds) if store is not None else None,
    )


def create_app(
    cfg: Optional[AuthConfig] = None,
    *,
    oauth_client: Optional[OAuthClient] = None,
    session_store: Optional[SessionStore] = None,
    login_states: Optional[LoginStateStore] = None,
    users: Optional[UserDirectory] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    cfg = cfg or load_auth_config()
    services = build_services(
        cfg,
        oauth_client=oauth_client,
        session_store=session_store,
        login_states=login_states,
        users=users,
        clock=clock,
    )
    orchestrator = services.orchestrator
    started_at = time.time()
    build_time = (os.getenv("BUILD_TIME", "") or "").strip() or utcnow().isoformat()

    app = FastAPI(title="BFF gateway")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    require_auth = AuthMiddleware(
        orchestrator,
        cookie_name=cfg.cookie_name,
        header_name=cfg.header_name,
        options=REQUIRED,
        fail_open=cfg.fail_open,
    )
    optional_auth = AuthMiddleware(
        orchestrator,
        cookie_name=cfg.cookie_name,
        header_name=cfg.header_name,
        options=OPTIONAL,
        fail_open=cfg.fail_open,
    )
    app.state.require_auth = require_auth
    app.state.optional_auth = optional_auth

    def _internal(exc: BaseException, message: str = "Internal Server Error") -> JSONResponse:
        return error_response(
            500, message, InternalError.code, exc=exc, include_stack=not cfg.is_production
        )

    @app.on_event("startup")
    async def _startup_sweeper() -> None:
        logger.info(
            "BFF auth ready: credential=%s store=%s failure_policy=%s",
            orchestrator.credential_kind,
            cfg.session_store_type if services.session_store is not None else "none",
            cfg.store_failure_policy,
        )
        if services.sweeper is not None:
            services.sweeper.start()

    @app.on_event("shutdown")
    async def _shutdown_sweeper() -> None:
        if services.sweeper is not None:
            await services.sweeper.stop()
        if services.session_store is not None:
            try:
                await services.session_store.close()
            except StoreUnavailable as e:
                logger.warning("Session store close failed: %s", e.detail)
        try:
            await services.login_states.close()
        except StoreUnavailable as e:
            logger.warning("Login state store close failed: %s", e.detail)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming HTTP requests."""
        start_time = time.time()
        logger.debug("%s %s", request.method, request.url.path)
        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response

    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, exc: AuthError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s %s -> %s (%s)", request.method, request.url.path, exc.code, exc.detail)
        return auth_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(400, "Invalid request", "VALIDATION_ERROR")

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return error_response(exc.status_code, str(exc.detail), f"HTTP_{exc.status_code}")

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _internal(exc)

    # ---- System ----

    @app.get("/healthz")
    async def healthz() -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "status": "healthy",
            "uptime": round(time.time() - started_at, 3),
            "credentialMode": orchestrator.credential_kind,
        }
        if services.session_store is not None:
            try:
                result["sessions"] = await services.session_store.count()
            except StoreUnavailable:
                result["status"] = "degraded"
                result["sessionStore"] = "unavailable"
        return ok(**result)

    @app.get("/version")
    async def version() -> Dict[str, Any]:
        return ok(
            version=(os.getenv("APP_VERSION", "") or "").strip() or __version__,
            gitSha=(os.getenv("GIT_SHA", "") or "").strip() or "unknown",
            buildTime=build_time,
            environment=cfg.environment,
            pythonVersion=platform.python_version(),
        )

    # ---- Auth ----

    @app.get("/auth/google")
    async def auth_google(
        state: Optional[str] = Query(None),
        redirect_url: Optional[str] = Query(None, alias="redirectUrl"),
    ):
        """Start the Google login: record the CSRF state and send the browser to the provider."""
        if not services.login_enabled:
            raise InternalError("Google login is not configured")
        attempt = await orchestrator.start_login(state, redirect_url)
        resp = RedirectResponse(url=attempt.authorization_url or "/", status_code=302)
        resp.headers["Cache-Control"] = "no-store"
        resp.set_cookie(**state_cookie_kwargs(cfg, encode_state(cfg, attempt)))
        return resp

    @app.get("/auth/callback")
    async def auth_callback(
        request: Request,
        code: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
    ):
        """Provider callback. The recorded state is consumed whatever the outcome."""
        attempt = orchestrator.resume_login(decode_state(cfg, request.cookies.get(STATE_COOKIE_NAME)))
        if error:
            logger.info("Provider returned error on callback: %s", error)
        try:
            result = await orchestrator.complete_login(attempt, code, state)
        except AuthError as e:
            resp = auth_error_response(e)
            resp.set_cookie(**clear_state_cookie_kwargs(cfg))
            return resp
        except Exception as e:
            logger.exception("OAuth callback failed unexpectedly")
            resp = _internal(e, "OAuth callback failed")
            resp.set_cookie(**clear_state_cookie_kwargs(cfg))
            return resp

        resp = RedirectResponse(url=result.redirect_url, status_code=302)
        resp.headers["Cache-Control"] = "no-store"
        resp.set_cookie(**credential_cookie_kwargs(cfg, result.credential))
        resp.set_cookie(**clear_state_cookie_kwargs(cfg))
        return resp

    @app.get("/auth/status")
    async def auth_status(request: Request) -> Dict[str, Any]:
        credential = extract_credential(request, cookie_name=cfg.cookie_name, header_name=cfg.header_name)
        status = await orchestrator.status(credential)
        body = ok(isAuthenticated=status.authenticated)
        if status.identity is not None:
            body["user"] = status.identity.to_dict()
        return body

    @app.get("/auth/me")
    async def auth_me(identity: Identity = Depends(require_auth)) -> Dict[str, Any]:
        return ok(user=identity.to_dict())

    @app.post("/auth/logout")
    async def auth_logout(
        request: Request,
        everywhere: bool = Query(False),
        identity: Identity = Depends(require_auth),
    ) -> JSONResponse:
        result = await orchestrator.logout(request.state.credential, everywhere=everywhere)
        logger.info("User %s logged out (everywhere=%s revoked=%s)", identity.id, everywhere, result.revoked)
        resp = JSONResponse(content=ok(message="Logged out successfully", revoked=result.revoked))
        resp.headers["Cache-Control"] = "no-store"
        resp.set_cookie(**clear_credential_cookie_kwargs(cfg))
        return resp

    @app.post("/auth/refresh")
    async def auth_refresh(request: Request, identity: Identity = Depends(require_auth)) -> JSONResponse:
        credential = await orchestrator.refresh(request.state.credential)
        resp = JSONResponse(
            content=ok(
                credential=credential.value,
                credentialType=credential.kind,
                expiresAt=credential.expires_at.isoformat().replace("+00:00", "Z"),
                user=identity.to_dict(),
            )
        )
        resp.headers["Cache-Control"] = "no-store"
        resp.set_cookie(**credential_cookie_kwargs(cfg, credential))
        return resp

    return app


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    app = create_app()
    logger.info("Starting BFF server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)

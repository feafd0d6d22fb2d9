"""
LyriaSong auth server.

Serves the `/api/auth/*` endpoints used by the login screen (one-time code, password,
and Google/GitHub/X sign-in), and gates protected pages and API routes on a valid
session cookie.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from lyria.auth.deps import get_auth_service, get_current_identity, login_redirect, session_token
from lyria.auth.errors import AuthError
from lyria.auth.models import OTP_PURPOSES, Identity, IssuedSession, Session, SessionMetadata
from lyria.auth.service import AuthService, build_auth_service
from lyria.auth.session import clear_session_cookie_kwargs, session_cookie_kwargs
from lyria.auth.social import STATE_MAX_AGE_SECONDS, ProviderCallback
from lyria.auth.util import LOGIN_PATH, localized_path, sanitize_next_path

logger = logging.getLogger(__name__)

app = FastAPI(title="LyriaSong auth")


# ---- Social sign-in cookies ----
_OAUTH_COOKIE_PATH = "/api/auth"
_OAUTH_COOKIES = ("lyria_oauth_state", "lyria_oauth_nonce", "lyria_oauth_verifier", "lyria_oauth_next")

# Pages that need a session; each may carry a locale prefix (`/ja/user/...`).
_PROTECTED_PAGES = ("/user", "/create")


def _oauth_cookie_kwargs(cfg, *, key: str, value: str, max_age: int) -> dict:
    return {
        "key": key,
        "value": value,
        "max_age": max_age,
        "httponly": True,
        "secure": bool(getattr(cfg, "cookie_secure", False)),
        "samesite": "lax",
        "path": _OAUTH_COOKIE_PATH,
    }


def _oauth_cookie_clear_kwargs(cfg, *, key: str) -> dict:
    return _oauth_cookie_kwargs(cfg, key=key, value="", max_age=0)


def _is_public_path(path: str) -> bool:
    if path == "/healthz":
        return True
    # Every sign-in entry point must be reachable without a session.
    for prefix in ("/api/auth/email-otp/", "/api/auth/sign-in/", "/api/auth/sign-up/", "/api/auth/callback/"):
        if path.startswith(prefix):
            return True
    # Sign-out works even if the cookie is already missing/invalid; get-session answers
    # anonymous callers with an empty session; mode drives the login UI.
    if path in ("/api/auth/sign-out", "/api/auth/get-session", "/api/auth/mode"):
        return True
    return False


def _split_locale(path: str, locales: Tuple[str, ...]) -> Tuple[Optional[str], str]:
    parts = path.split("/", 2)
    if len(parts) >= 2 and parts[1] in locales:
        return parts[1], "/" + (parts[2] if len(parts) > 2 else "")
    return None, path


def _is_protected_page(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in _PROTECTED_PAGES)


def _metadata(request: Request) -> SessionMetadata:
    return SessionMetadata(
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )


def _user_json(identity: Identity) -> Dict[str, Any]:
    return {
        "id": identity.id,
        "email": identity.email,
        "name": identity.name,
        "image": identity.image,
        "emailVerified": identity.email_verified,
        "hasPassword": identity.has_password,
        "providers": list(identity.providers),
        "createdAt": identity.created_at.isoformat(),
    }


def _session_json(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "userId": session.identity_id,
        "createdAt": session.created_at.isoformat(),
        "expiresAt": session.expires_at.isoformat(),
    }


def _session_response(service: AuthService, identity: Identity, issued: IssuedSession) -> JSONResponse:
    resp = JSONResponse(content={"ok": True, "user": _user_json(identity), "session": _session_json(issued.session)})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**session_cookie_kwargs(service.cfg, issued.token))
    return resp


class SendOtpRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    type: str = "sign-in"


class OtpSignInRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    otp: str


class OtpResetPasswordRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    otp: str
    password: str


class PasswordSignInRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    password: str


class PasswordSignUpRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    password: str
    name: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    current_password: Optional[str] = Field(default=None, alias="currentPassword")
    new_password: str = Field(alias="newPassword")


@app.on_event("startup")
def _startup_build_auth_service() -> None:
    """
    Build the auth service once per process.

    Fails fast: missing configuration or an unreachable store stops the server from starting.
    """
    if getattr(app.state, "auth_service", None) is not None:
        return

    from lyria.store.migrate import maybe_auto_migrate

    did_attempt, msg = maybe_auto_migrate()
    if did_attempt:
        logger.info("DB migrations: %s", msg)

    service = build_auth_service()
    app.state.auth_service = service
    logger.info(
        "Auth service ready: providers=%s mailer=%s cookie_secure=%s",
        ",".join(service.enabled_providers) or "none",
        "resend" if service.cfg.mailer_enabled else "log",
        service.cfg.cookie_secure,
    )


@app.exception_handler(AuthError)
async def _auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    # No `WWW-Authenticate` header: browsers would pop a basic-auth modal over the login UI.
    resp = JSONResponse(status_code=exc.status, content={"ok": False, "code": exc.code, "message": exc.message})
    resp.headers["Cache-Control"] = "no-store"
    return resp


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming HTTP requests and enforce sign-in on protected routes."""
    start_time = time.time()
    logger.debug("%s %s", request.method, request.url.path)
    try:
        path = request.url.path or ""

        if request.method == "OPTIONS" or _is_public_path(path):
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
            return response

        service = get_auth_service(request)
        locale, bare_path = _split_locale(path, service.cfg.locales)
        gated_api = path.startswith("/api/")
        gated_page = _is_protected_page(bare_path)

        if gated_api or gated_page:
            if get_current_identity(request) is None:
                if gated_api:
                    return JSONResponse(
                        status_code=401, content={"ok": False, "code": "unauthorized", "message": "Unauthorized"}
                    )
                return_path = path + (f"?{request.url.query}" if request.url.query else "")
                return login_redirect(return_path, locale, default_locale=service.cfg.default_locale)

        response = await call_next(request)
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise


@app.get("/healthz")
def healthz(request: Request) -> Dict[str, Any]:
    get_auth_service(request).store.ping()
    return {"ok": True}


@app.get("/api/auth/mode")
def auth_mode(request: Request) -> Dict[str, Any]:
    """
    Expose the enabled sign-in methods so the UI renders only working buttons.
    Public; returns no secrets.
    """
    service = get_auth_service(request)
    return {
        "ok": True,
        "emailOtpEnabled": True,
        "passwordEnabled": True,
        "providers": [
            {"id": p, "loginUrl": f"/api/auth/sign-in/social?provider={p}"} for p in service.enabled_providers
        ],
    }


@app.post("/api/auth/email-otp/send-verification-otp")
def send_verification_otp(request: Request, req: SendOtpRequest) -> Dict[str, Any]:
    if req.type not in OTP_PURPOSES:
        raise HTTPException(status_code=400, detail=f"Unknown type: {req.type}")
    get_auth_service(request).request_code(req.email, req.type)
    return {"ok": True}


@app.post("/api/auth/sign-in/email-otp")
def sign_in_email_otp(request: Request, req: OtpSignInRequest) -> JSONResponse:
    service = get_auth_service(request)
    identity, issued = service.sign_in_with_code(req.email, req.otp.strip(), metadata=_metadata(request))
    return _session_response(service, identity, issued)


@app.post("/api/auth/email-otp/reset-password")
def reset_password_email_otp(request: Request, req: OtpResetPasswordRequest) -> JSONResponse:
    """Set a new password with a `forget-password` code; signs out everywhere and back in here."""
    service = get_auth_service(request)
    identity, issued = service.reset_password_with_code(
        req.email, req.otp.strip(), req.password, metadata=_metadata(request)
    )
    return _session_response(service, identity, issued)


@app.post("/api/auth/email-otp/verify-email")
def verify_email_otp(request: Request, req: OtpSignInRequest) -> Dict[str, Any]:
    identity = get_auth_service(request).verify_email_with_code(req.email, req.otp.strip())
    return {"ok": True, "user": _user_json(identity)}


@app.post("/api/auth/sign-in/email")
def sign_in_email(request: Request, req: PasswordSignInRequest) -> JSONResponse:
    service = get_auth_service(request)
    identity, issued = service.sign_in_with_password(req.email, req.password, metadata=_metadata(request))
    return _session_response(service, identity, issued)


@app.post("/api/auth/sign-up/email")
def sign_up_email(request: Request, req: PasswordSignUpRequest) -> JSONResponse:
    service = get_auth_service(request)
    identity, issued = service.sign_up_with_password(
        req.email, req.password, name=req.name, metadata=_metadata(request)
    )
    return _session_response(service, identity, issued)


@app.post("/api/auth/change-password")
def change_password(request: Request, req: ChangePasswordRequest) -> JSONResponse:
    service = get_auth_service(request)
    identity = get_current_identity(request)
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    issued = service.change_password(identity.id, req.current_password, req.new_password, metadata=_metadata(request))
    return _session_response(service, service.current_identity(issued.token) or identity, issued)


@app.get("/api/auth/sign-in/social")
def sign_in_social(
    request: Request,
    provider: str = Query(...),
    next_path: Optional[str] = Query(None, alias="next"),
    locale: Optional[str] = Query(None),
) -> RedirectResponse:
    """Start social sign-in: remember state/nonce/verifier/next in cookies and go to the provider."""
    service = get_auth_service(request)
    social = service.begin_social_sign_in(provider, next_path, locale=locale)
    cfg = service.cfg

    resp = RedirectResponse(url=social.url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    values = (social.state, social.nonce, social.code_verifier, social.next_path)
    for key, value in zip(_OAUTH_COOKIES, values):
        resp.set_cookie(**_oauth_cookie_kwargs(cfg, key=key, value=value, max_age=STATE_MAX_AGE_SECONDS))
    return resp


@app.get("/api/auth/callback/{provider}")
def auth_callback(
    request: Request,
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
) -> RedirectResponse:
    """Finish social sign-in and land on the remembered page (or back on login with an error code)."""
    service = get_auth_service(request)
    cfg = service.cfg
    callback = ProviderCallback(
        provider=provider,
        code=code,
        state=state,
        error=error,
        error_description=error_description,
        expected_state=(request.cookies.get("lyria_oauth_state") or "").strip() or None,
        nonce=(request.cookies.get("lyria_oauth_nonce") or "").strip() or None,
        code_verifier=(request.cookies.get("lyria_oauth_verifier") or "").strip() or None,
    )
    next_path = sanitize_next_path(request.cookies.get("lyria_oauth_next"), service.landing_path())

    try:
        _identity, issued = service.complete_social_sign_in(callback, metadata=_metadata(request))
    except AuthError as e:
        login = localized_path(LOGIN_PATH, None, default_locale=cfg.default_locale)
        resp = RedirectResponse(url=f"{login}?error={e.code}", status_code=302)
    else:
        resp = RedirectResponse(url=next_path, status_code=302)
        resp.set_cookie(**session_cookie_kwargs(cfg, issued.token))

    resp.headers["Cache-Control"] = "no-store"
    for key in _OAUTH_COOKIES:
        resp.set_cookie(**_oauth_cookie_clear_kwargs(cfg, key=key))
    return resp


@app.post("/api/auth/sign-out")
def sign_out(request: Request) -> JSONResponse:
    service = get_auth_service(request)
    service.sign_out(session_token(request))
    resp = JSONResponse(content={"ok": True})
    resp.headers["Cache-Control"] = "no-store"
    resp.set_cookie(**clear_session_cookie_kwargs(service.cfg))
    return resp


@app.get("/api/auth/get-session")
def get_session(request: Request) -> JSONResponse:
    service = get_auth_service(request)
    identity = get_current_identity(request)
    session = service.sessions.get_session(session_token(request)) if identity is not None else None
    if identity is None or session is None:
        content: Dict[str, Any] = {"session": None, "user": None}
    else:
        content = {"session": _session_json(session), "user": _user_json(identity)}
    resp = JSONResponse(content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


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

    logger.info("Starting auth server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from authlib.integrations.starlette_client import OAuth
from fastapi import Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.responses import RedirectResponse

from src.db import readonly_session_scope, session_scope
from src.errors import AuthenticationRequiredError, NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)
timing_logger = logging.getLogger("uvicorn.error")

oauth = OAuth()
login_providers: List[Dict[str, Any]] = []

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)
SESSION_USER_KEY = "user"
_ROLE_REFRESH_TS_KEY = "_role_refreshed_at"
_DEFAULT_REDIRECT_PATH = "/"
_DEFAULT_ROLE_REFRESH_SECONDS = 120.0


def _parse_refresh_seconds(raw_value: str | None) -> float:
    try:
        return max(0.0, float(raw_value or str(_DEFAULT_ROLE_REFRESH_SECONDS)))
    except (TypeError, ValueError):
        return _DEFAULT_ROLE_REFRESH_SECONDS


_ROLE_REFRESH_SECONDS = _parse_refresh_seconds(os.getenv("USER_ROLE_REFRESH_SECONDS"))
_ALLOWED_REDIRECT_HOSTS: tuple[str, ...] = tuple(
    host.strip().lower()
    for host in os.getenv("LOGIN_ALLOWED_REDIRECT_HOSTS", "").split(",")
    if host.strip()
)


@dataclass(frozen=True)
class Identity:
    """Who is calling: the ``users`` row id and its role."""

    user_id: int
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def _admin_emails() -> set[str]:
    return {email.strip().lower() for email in os.getenv("ADMIN_EMAILS", "").split(",") if email.strip()}


def _log_timing(event_name: str, start: float, **fields: object) -> None:
    elapsed_ms = (time.perf_counter() - start) * 1000.0
    if fields:
        field_text = " ".join(f"{key}={value}" for key, value in fields.items())
        timing_logger.info("identity.timing event=%s ms=%.2f %s", event_name, elapsed_ms, field_text)
        return
    timing_logger.info("identity.timing event=%s ms=%.2f", event_name, elapsed_ms)


def ensure_user(session: Session, *, email: str, name: Optional[str] = None) -> Tuple[int, str, str, str]:
    """
    Upsert the ``users`` row for an authenticated e-mail. Addresses listed in
    ADMIN_EMAILS are promoted to admin; other roles are never downgraded here.
    Returns ``(id, email, name, role)``.
    """
    normalized = (email or "").strip().lower()
    if not normalized or "@" not in normalized:
        raise ValueError("Unable to determine user e-mail from login response")
    display_name = (name or "").strip() or normalized.split("@", 1)[0]
    role = ROLE_ADMIN if normalized in _admin_emails() else ROLE_USER

    row = session.execute(
        text(
            """
            INSERT INTO users (email, name, role)
            VALUES (:email, :name, :role)
            ON CONFLICT (email) DO UPDATE
            SET name = EXCLUDED.name,
                role = CASE WHEN EXCLUDED.role = 'admin' THEN 'admin' ELSE users.role END
            RETURNING id, email, name, role
            """
        ),
        {"email": normalized, "name": display_name, "role": role},
    ).mappings().one()
    return int(row["id"]), row["email"], row["name"], row["role"]


def _lookup_role(session: Session, user_id: int) -> Optional[str]:
    return session.execute(
        text("SELECT role FROM users WHERE id = :user_id"),
        {"user_id": user_id},
    ).scalar_one_or_none()


def _persist_user(userinfo: Dict[str, Any]) -> Dict[str, Any]:
    with session_scope() as session:
        user_id, email, name, role = ensure_user(
            session,
            email=userinfo.get("email") or "",
            name=userinfo.get("name"),
        )
    logger.info("identity.login user_id=%s role=%s", user_id, role)
    return {
        "user_id": user_id,
        "email": email,
        "name": name,
        "role": role,
        _ROLE_REFRESH_TS_KEY: time.time(),
    }


def _should_refresh_role(user: Dict[str, Any]) -> bool:
    if _ROLE_REFRESH_SECONDS <= 0:
        return True
    try:
        last_refreshed_at = float(user.get(_ROLE_REFRESH_TS_KEY))
    except (TypeError, ValueError):
        return True
    return (time.time() - last_refreshed_at) >= _ROLE_REFRESH_SECONDS


def _refresh_role(request: Request, user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    start = time.perf_counter()
    try:
        with readonly_session_scope() as session:
            role = _lookup_role(session, int(user["user_id"]))
    except SQLAlchemyError as exc:
        # Keep the cached role; the next request retries.
        timing_logger.warning("identity.timing event=refresh_role.error user_id=%s detail=%s", user.get("user_id"), exc)
        return user
    if role is None:
        request.session.pop(SESSION_USER_KEY, None)
        _log_timing("refresh_role.user_gone", start, user_id=user.get("user_id"))
        return None
    user = dict(user, role=role)
    user[_ROLE_REFRESH_TS_KEY] = time.time()
    request.session[SESSION_USER_KEY] = user
    _log_timing("refresh_role", start, user_id=user["user_id"], ttl_seconds=_ROLE_REFRESH_SECONDS)
    return user


def get_session_user(request: Request) -> Optional[Dict[str, Any]]:
    user = request.session.get(SESSION_USER_KEY)
    if not user or "user_id" not in user:
        return None
    if _should_refresh_role(user):
        return _refresh_role(request, user)
    return user


def optional_identity(request: Request) -> Optional[Identity]:
    user = get_session_user(request)
    if not user:
        return None
    return Identity(user_id=int(user["user_id"]), role=str(user.get("role") or ROLE_USER))


def current_identity(request: Request) -> Identity:
    identity = optional_identity(request)
    if identity is None:
        raise AuthenticationRequiredError()
    return identity


def require_admin(identity: Optional[Identity]) -> Identity:
    if identity is None:
        raise AuthenticationRequiredError()
    if not identity.is_admin:
        raise PermissionDeniedError()
    return identity


def set_user_role(identity: Identity, user_id: int, role: str) -> Dict[str, Any]:
    require_admin(identity)
    normalized = (role or "").strip().lower()
    if normalized not in ROLES:
        raise ValidationError({"role": [f"Role must be one of: {', '.join(ROLES)}"]})
    with session_scope() as session:
        row = session.execute(
            text("UPDATE users SET role = :role WHERE id = :user_id RETURNING id, email, name, role"),
            {"role": normalized, "user_id": user_id},
        ).mappings().one_or_none()
        if row is None:
            raise NotFoundError(f"User {user_id} not found")
    logger.info("identity.role_change user_id=%s role=%s by=%s", user_id, normalized, identity.user_id)
    return dict(row)


def register_oauth_provider(*args, **kwargs):
    login_providers.append(kwargs)
    return oauth.register(*args, **kwargs)


def add_login_routes(app) -> None:
    @app.get("/logout")
    async def logout(request: Request):
        request.session.pop(SESSION_USER_KEY, None)
        return RedirectResponse("/")

    for provider in login_providers:
        name = provider["name"]
        cb_route_name = f"auth_callback_{name}"

        @app.get(f"/auth/{name}", name=f"auth_start_{name}")
        async def auth_start(request: Request, redirect_to: Optional[str] = None, _name=name, _cb=cb_route_name):
            request.session["post_login_redirect"] = (
                _sanitize_redirect_target(redirect_to, request) or _DEFAULT_REDIRECT_PATH
            )
            if get_session_user(request):
                return RedirectResponse(request.session.pop("post_login_redirect"))
            client = oauth.create_client(_name)
            return await client.authorize_redirect(request, request.url_for(_cb))

        @app.get(f"/auth/{name}/callback", name=cb_route_name)
        async def auth_callback(request: Request, _name=name):
            client = oauth.create_client(_name)
            token = await client.authorize_access_token(request)
            userinfo = token.get("userinfo") or await client.parse_id_token(request, token)
            request.session[SESSION_USER_KEY] = _persist_user(dict(userinfo))
            target = _sanitize_redirect_target(request.session.pop("post_login_redirect", None), request)
            return RedirectResponse(target or _DEFAULT_REDIRECT_PATH)


def _sanitize_redirect_target(candidate: Optional[str], request: Optional[Request]) -> Optional[str]:
    """Allow relative paths or whitelisted hosts; block protocol-relative and malformed URLs."""
    target = (candidate or "").strip()
    if not target or target.startswith("//"):
        return None
    if target.startswith("/"):
        return target

    parsed = urlsplit(target)
    if parsed.scheme not in {"https", "http"}:
        return None
    host = (parsed.hostname or "").lower()
    if not host:
        return None
    if _ALLOWED_REDIRECT_HOSTS:
        allowed_hosts = _ALLOWED_REDIRECT_HOSTS
    else:
        request_host = (request.url.hostname or "").lower() if request else ""
        allowed_hosts = (request_host,) if request_host else ()
    if host not in allowed_hosts:
        return None
    return urlunsplit(parsed)

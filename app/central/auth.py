from __future__ import annotations

import hmac
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session

from app.central.audit import record_event
from app.central.constants import PUBLIC_PATH_PREFIXES, ROLE_ADMIN, ROLE_SUPERGOD, ROLE_USER
from app.central.db import db_session
from app.central.models import User
from app.central.security import ensure_csrf_token
from app.central.users import authenticate, create_user
from app.central.utils import ValidationError, clean_str, request_payload

bp = Blueprint("auth", __name__)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

# role -> config key holding the shared registration secret
_ELEVATED_REGISTRATION = {
    ROLE_ADMIN: "ADMIN_REGISTRATION_KEY",
    ROLE_SUPERGOD: "SUPERGOD_REGISTRATION_KEY",
}


def _login_attempts() -> dict[str, list[datetime]]:
    # Per-process, per-app counter; good enough behind a small gunicorn pool.
    return current_app.extensions.setdefault("login_attempts", defaultdict(list))


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    attempts = _login_attempts()
    attempts[ip] = [t for t in attempts[ip] if t > cutoff]
    return len(attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts()[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(PUBLIC_PATH_PREFIXES):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def _start_session(user: User) -> None:
    # Fresh session on privilege change; the CSRF token is re-issued.
    session.clear()
    session["user_id"] = user.id
    session.permanent = True
    ensure_csrf_token()


def _register(role: str):
    data = request_payload()
    username = clean_str(data.get("username"))
    password = data.get("password") or ""

    config_key = _ELEVATED_REGISTRATION.get(role)
    if config_key:
        expected = (current_app.config.get(config_key) or "").strip()
        provided = clean_str(data.get("registration_key"))
        if not expected or not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            s = db_session()
            record_event(
                s,
                actor=None,
                action="auth.register_denied",
                entity_type="User",
                entity_id=username.lower() or None,
                reason="Invalid registration key",
                metadata={"role": role},
            )
            s.commit()
            return jsonify({"message": "Invalid registration key"}), 403

    s = db_session()
    try:
        user = create_user(s, username=username, password=password, role=role, email=data.get("email"))
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 400

    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id), metadata={"role": role})
    s.commit()
    _start_session(user)
    current_app.logger.info("Registered user id=%s role=%s", user.id, role)
    return jsonify({"message": "Registration successful", "user": user.to_dict()}), 201


@bp.post("/register")
def register():
    return _register(ROLE_USER)


@bp.post("/register/admin")
def register_admin():
    return _register(ROLE_ADMIN)


@bp.post("/register/supergod")
def register_supergod():
    return _register(ROLE_SUPERGOD)


@bp.post("/login")
def login():
    data = request_payload()
    username = clean_str(data.get("username")).lower()
    password = data.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"message": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    try:
        s = db_session()
        user = authenticate(s, username, password)
        if not user:
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=username or None,
                reason="Invalid credentials",
                metadata={"username": username},
            )
            s.commit()
            return jsonify({"message": "Invalid username or password"}), 401

        _login_attempts()[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        _start_session(user)
        return jsonify({"message": "Login successful", "user": user.to_dict()})
    except Exception:
        current_app.logger.exception("Login crashed (username=%s request_id=%s)", username, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return jsonify({"message": "Logout successful"})


@bp.get("/user")
def current_user_get():
    user = getattr(g, "current_user", None)
    if not user:
        return jsonify({"message": "Not authenticated"}), 401
    return jsonify(user.to_dict())


@bp.get("/csrf")
def csrf_token():
    return jsonify({"csrf_token": ensure_csrf_token()})

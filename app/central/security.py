import hmac
import secrets

from flask import Request, session


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from header, form, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")

    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")

    expected = session.get("csrf_token")
    if not token or not expected:
        return False
    return hmac.compare_digest(str(token).encode("utf-8"), str(expected).encode("utf-8"))


def apply_cors_headers(response, origin: str | None, allowed: list[str], production: bool):
    """
    Credentialed CORS for the SPA. An empty allow list means "any origin" outside
    production and "no CORS" in production.
    """
    if not origin:
        return response
    if allowed:
        if origin not in allowed:
            return response
    elif production:
        return response
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Credentials"] = "true"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-CSRF-Token"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
    response.headers.add("Vary", "Origin")
    return response

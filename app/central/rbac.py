from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import Blueprint, current_app, g, jsonify

from app.central.constants import ADMIN_ROLES, ROLE_SUPERGOD
from app.central.models import User


def current_user() -> User | None:
    user: User | None = getattr(g, "current_user", None)
    if not user or not user.is_active:
        return None
    return user


def user_has_role(user: User | None, *roles: str) -> bool:
    if not user or not user.is_active:
        return False
    return user.role in roles


def _not_authenticated():
    return jsonify({"message": "Not authenticated"}), 401


def _not_authorized(roles: tuple[str, ...]):
    current_app.logger.warning(
        "Forbidden: required_roles=%s user_id=%s request_id=%s",
        ",".join(roles),
        getattr(g.current_user, "id", None),
        getattr(g, "request_id", None),
    )
    return jsonify({"message": "Not authorized"}), 403


def check_roles(*roles: str):
    """Returns an error response when the current user fails the check, else None."""
    user = current_user()
    if user is None:
        return _not_authenticated()
    if roles and not user_has_role(user, *roles):
        return _not_authorized(roles)
    return None


def require_role(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            denied = check_roles(*roles)
            if denied is not None:
                return denied
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_auth(fn: Callable[..., Any]) -> Callable[..., Any]:
    return require_role()(fn)


def require_admin(fn: Callable[..., Any]) -> Callable[..., Any]:
    return require_role(*ADMIN_ROLES)(fn)


def require_supergod(fn: Callable[..., Any]) -> Callable[..., Any]:
    return require_role(ROLE_SUPERGOD)(fn)


def guard_blueprint(bp: Blueprint, *roles: str) -> None:
    """Gate every route of a blueprint with the same role check."""

    @bp.before_request
    def _guard():
        return check_roles(*roles)

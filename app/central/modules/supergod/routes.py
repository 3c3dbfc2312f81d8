from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify

from app.central.constants import ROLE_SUPERGOD
from app.central.db import db_session
from app.central.models import User
from app.central.modules.supergod.service import platform_stats, system_status
from app.central.rbac import guard_blueprint
from app.central.users import PermissionDenied, change_role
from app.central.utils import ValidationError, request_payload

bp = Blueprint("supergod", __name__)
guard_blueprint(bp, ROLE_SUPERGOD)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/stats")
def stats():
    s = db_session()
    return jsonify(platform_stats(s))


@bp.get("/system")
def system():
    s = db_session()
    engine = current_app.extensions["sqlalchemy_engine"]
    return jsonify(system_status(s, engine, current_app.config))


@bp.put("/users/<int:user_id>/role")
def user_role(user_id: int):
    s = db_session()
    target = s.get(User, user_id)
    if target is None:
        return jsonify({"message": "User not found"}), 404
    try:
        change_role(s, target, request_payload().get("role"), actor=_current_user())
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 400
    except PermissionDenied as e:
        s.rollback()
        return jsonify({"message": str(e)}), 403
    s.commit()
    current_app.logger.warning("Supergod %s set role of user %s to %s", _current_user().id, target.id, target.role)
    return jsonify({"user": target.to_dict()})

from __future__ import annotations

from flask import Blueprint, g, jsonify

from app.central.constants import ADMIN_ROLES
from app.central.db import db_session
from app.central.models import User
from app.central.modules.feature_flags.models import FeatureFlag
from app.central.modules.feature_flags.service import (
    create_flag,
    delete_flag,
    evaluate_all,
    get_flag,
    is_enabled,
    toggle_flag,
    update_flag,
)
from app.central.modules.subscriptions.service import entitled_plan_key
from app.central.rbac import current_user, guard_blueprint
from app.central.utils import ValidationError, request_payload

# Client-facing reads
bp = Blueprint("features", __name__)

# Feature flag manager (admin dashboard)
admin_bp = Blueprint("features_admin", __name__)
guard_blueprint(admin_bp, *ADMIN_ROLES)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("")
def flags_for_user():
    s = db_session()
    user = current_user()
    return jsonify({"flags": evaluate_all(s, user, entitled_plan_key(s, user))})


@bp.get("/<key>")
def flag_for_user(key: str):
    s = db_session()
    flag = get_flag(s, key)
    if flag is None:
        return jsonify({"message": "Feature flag not found"}), 404
    user = current_user()
    enabled = is_enabled(flag, user, entitled_plan_key(s, user))
    return jsonify({"key": flag.key, "enabled": enabled, "config": (flag.config or {}) if enabled else {}})


# ---------- Admin ----------
@admin_bp.get("")
def admin_flags_list():
    s = db_session()
    flags = s.query(FeatureFlag).order_by(FeatureFlag.key.asc()).all()
    return jsonify({"flags": [f.to_dict() for f in flags]})


@admin_bp.post("")
def admin_flag_create():
    s = db_session()
    try:
        flag = create_flag(s, request_payload(), _current_user())
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 400
    s.commit()
    return jsonify({"flag": flag.to_dict()}), 201


@admin_bp.put("/<int:flag_id>")
def admin_flag_update(flag_id: int):
    s = db_session()
    flag = s.get(FeatureFlag, flag_id)
    if flag is None:
        return jsonify({"message": "Feature flag not found"}), 404
    try:
        update_flag(s, flag, request_payload(), _current_user())
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 400
    s.commit()
    return jsonify({"flag": flag.to_dict()})


@admin_bp.post("/<int:flag_id>/toggle")
def admin_flag_toggle(flag_id: int):
    s = db_session()
    flag = s.get(FeatureFlag, flag_id)
    if flag is None:
        return jsonify({"message": "Feature flag not found"}), 404
    toggle_flag(s, flag, _current_user())
    s.commit()
    return jsonify({"flag": flag.to_dict()})


@admin_bp.delete("/<int:flag_id>")
def admin_flag_delete(flag_id: int):
    s = db_session()
    flag = s.get(FeatureFlag, flag_id)
    if flag is None:
        return jsonify({"message": "Feature flag not found"}), 404
    delete_flag(s, flag, _current_user())
    s.commit()
    return jsonify({"deleted": True})

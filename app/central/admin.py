from datetime import datetime, timedelta

from flask import Blueprint, g, jsonify, request
from sqlalchemy import func

from app.central.audit import record_event
from app.central.constants import ADMIN_ROLES, LOG_LEVELS, ROLES
from app.central.db import db_session
from app.central.models import AuditEvent, SystemLog, User
from app.central.rbac import guard_blueprint
from app.central.users import PermissionDenied, change_role, set_active
from app.central.utils import ValidationError, clean_str, day_after, day_start, parse_bool, parse_date, parse_int, request_payload

bp = Blueprint("admin", __name__)
guard_blueprint(bp, *ADMIN_ROLES)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _date_args() -> tuple[datetime | None, datetime | None, list[str]]:
    errors = []
    raw_from = clean_str(request.args.get("date_from"))
    raw_to = clean_str(request.args.get("date_to"))
    date_from = parse_date(raw_from)
    date_to = parse_date(raw_to)
    if raw_from and not date_from:
        errors.append("date_from must be YYYY-MM-DD")
    if raw_to and not date_to:
        errors.append("date_to must be YYYY-MM-DD")
    return (
        day_start(date_from) if date_from else None,
        day_after(date_to) if date_to else None,
        errors,
    )


# ---------- System logs ----------
@bp.get("/logs")
def logs_list():
    """
    Logs dashboard feed with simple filters:
    - level (exact), source / q (contains)
    - date range (YYYY-MM-DD, inclusive)
    - limit (default 200, max 500)
    """
    s = db_session()
    start, end, errors = _date_args()
    if errors:
        return jsonify({"message": errors[0], "errors": errors}), 400

    level = clean_str(request.args.get("level")).upper()
    source = clean_str(request.args.get("source"))
    text = clean_str(request.args.get("q"))
    limit = parse_int(request.args.get("limit"), 200, minimum=1, maximum=500)

    q = s.query(SystemLog)
    if level:
        if level not in LOG_LEVELS:
            return jsonify({"message": f"level must be one of: {', '.join(LOG_LEVELS)}"}), 400
        q = q.filter(SystemLog.level == level)
    if source:
        q = q.filter(SystemLog.source.like(f"%{source}%"))
    if text:
        q = q.filter(SystemLog.message.like(f"%{text}%"))
    if start:
        q = q.filter(SystemLog.created_at >= start)
    if end:
        q = q.filter(SystemLog.created_at < end)

    logs = q.order_by(SystemLog.created_at.desc(), SystemLog.id.desc()).limit(limit).all()
    return jsonify({"logs": [row.to_dict() for row in logs]})


@bp.get("/logs/stats")
def logs_stats():
    s = db_session()
    now = datetime.utcnow()

    def _counts(since: datetime) -> dict[str, int]:
        rows = (
            s.query(SystemLog.level, func.count(SystemLog.id))
            .filter(SystemLog.created_at >= since)
            .group_by(SystemLog.level)
            .all()
        )
        out = {lvl: 0 for lvl in LOG_LEVELS}
        out.update({lvl: n for lvl, n in rows})
        return out

    return jsonify({"last_24h": _counts(now - timedelta(hours=24)), "last_7d": _counts(now - timedelta(days=7))})


@bp.delete("/logs")
def logs_clear():
    s = db_session()
    raw_before = clean_str(request.args.get("before"))
    before = parse_date(raw_before)
    if raw_before and not before:
        return jsonify({"message": "before must be YYYY-MM-DD"}), 400

    q = s.query(SystemLog)
    if before:
        q = q.filter(SystemLog.created_at < day_start(before))
    deleted = q.delete(synchronize_session=False)
    record_event(
        s,
        actor=_current_user(),
        action="system_logs.clear",
        entity_type="SystemLog",
        metadata={"before": raw_before or None, "deleted": deleted},
    )
    s.commit()
    return jsonify({"deleted": deleted})


# ---------- Audit trail ----------
@bp.get("/audit")
def audit_list():
    """Last 200 audit events filtered by action, actor and date range."""
    s = db_session()
    start, end, errors = _date_args()
    if errors:
        return jsonify({"message": errors[0], "errors": errors}), 400

    action = clean_str(request.args.get("action"))
    actor = clean_str(request.args.get("actor"))

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor:
        q = q.filter(AuditEvent.actor_username.like(f"%{actor.lower()}%"))
    if start:
        q = q.filter(AuditEvent.created_at >= start)
    if end:
        q = q.filter(AuditEvent.created_at < end)

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return jsonify({"events": [ev.to_dict() for ev in events]})


# ---------- Users ----------
@bp.get("/users")
def users_list():
    s = db_session()
    role = clean_str(request.args.get("role")).lower()
    search = clean_str(request.args.get("q")).lower()

    q = s.query(User)
    if role:
        if role not in ROLES:
            return jsonify({"message": f"role must be one of: {', '.join(ROLES)}"}), 400
        q = q.filter(User.role == role)
    if search:
        like = f"%{search}%"
        q = q.filter((User.username.like(like)) | (User.email.like(like)))
    users = q.order_by(User.username.asc()).limit(500).all()
    return jsonify({"users": [u.to_dict() for u in users]})


@bp.put("/users/<int:user_id>/role")
def user_role_update(user_id: int):
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
    return jsonify({"user": target.to_dict()})


@bp.post("/users/<int:user_id>/active")
def user_active_update(user_id: int):
    s = db_session()
    target = s.get(User, user_id)
    if target is None:
        return jsonify({"message": "User not found"}), 404
    data = request_payload()
    if "is_active" not in data:
        return jsonify({"message": "is_active is required"}), 400
    try:
        set_active(s, target, parse_bool(data.get("is_active")), actor=_current_user())
    except PermissionDenied as e:
        s.rollback()
        return jsonify({"message": str(e)}), 403
    s.commit()
    return jsonify({"user": target.to_dict()})

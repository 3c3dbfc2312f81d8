from __future__ import annotations

from flask import Blueprint, g, jsonify

from app.central.db import db_session
from app.central.models import User
from app.central.modules.messages.models import Message
from app.central.modules.messages.service import (
    create_message,
    delete_message,
    get_visible,
    mark_read,
    unread_count,
    update_message,
    visible_messages,
)
from app.central.rbac import require_admin, require_auth
from app.central.utils import ValidationError, request_payload

bp = Blueprint("messages", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("")
@require_auth
def inbox():
    s = db_session()
    items = visible_messages(s, _current_user())
    return jsonify({"messages": [m.to_dict(read=read) for m, read in items]})


@bp.get("/unread-count")
@require_auth
def inbox_unread_count():
    s = db_session()
    return jsonify({"unread": unread_count(s, _current_user())})


@bp.post("/<int:message_id>/read")
@require_auth
def message_read(message_id: int):
    s = db_session()
    u = _current_user()
    msg = get_visible(s, u, message_id)
    if msg is None:
        return jsonify({"message": "Message not found"}), 404
    mark_read(s, u, msg)
    s.commit()
    return jsonify({"id": msg.id, "read": True})


# ---------- Admin communications ----------
@bp.get("/all")
@require_admin
def messages_all():
    s = db_session()
    msgs = s.query(Message).order_by(Message.created_at.desc(), Message.id.desc()).limit(500).all()
    return jsonify({"messages": [m.to_dict() for m in msgs]})


@bp.post("")
@require_admin
def message_create():
    s = db_session()
    try:
        msg = create_message(s, request_payload(), _current_user())
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 400
    s.commit()
    return jsonify({"data": msg.to_dict()}), 201


@bp.put("/<int:message_id>")
@require_admin
def message_update(message_id: int):
    s = db_session()
    msg = s.get(Message, message_id)
    if msg is None:
        return jsonify({"message": "Message not found"}), 404
    try:
        update_message(s, msg, request_payload(), _current_user())
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 400
    s.commit()
    return jsonify({"data": msg.to_dict()})


@bp.delete("/<int:message_id>")
@require_admin
def message_delete(message_id: int):
    s = db_session()
    msg = s.get(Message, message_id)
    if msg is None:
        return jsonify({"message": "Message not found"}), 404
    delete_message(s, msg, _current_user())
    s.commit()
    return jsonify({"deleted": True})

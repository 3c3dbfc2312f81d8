from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import or_

from app.central.audit import record_event
from app.central.constants import MESSAGE_AUDIENCES, MESSAGE_PRIORITIES, ROLE_ADMIN, ROLE_SUPERGOD, ROLE_USER
from app.central.modules.messages.models import Message, MessageRead
from app.central.utils import ValidationError, clean_str, parse_bool, parse_datetime

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.central.models import User


def audiences_for(role: str) -> tuple[str, ...]:
    """Audiences a role can see; higher roles see the lower-role channels too."""
    if role == ROLE_SUPERGOD:
        return MESSAGE_AUDIENCES
    if role == ROLE_ADMIN:
        return ("all", ROLE_USER, ROLE_ADMIN)
    return ("all", ROLE_USER)


def _visible_query(s: "Session", user: "User", now: datetime | None = None):
    now = now or datetime.utcnow()
    return s.query(Message).filter(
        Message.is_active.is_(True),
        Message.audience.in_(audiences_for(user.role)),
        or_(Message.expires_at.is_(None), Message.expires_at > now),
    )


def visible_messages(s: "Session", user: "User") -> list[tuple[Message, bool]]:
    messages = _visible_query(s, user).order_by(Message.created_at.desc(), Message.id.desc()).all()
    read_ids = {
        r.message_id
        for r in s.query(MessageRead).filter(MessageRead.user_id == user.id).all()
    }
    return [(m, m.id in read_ids) for m in messages]


def get_visible(s: "Session", user: "User", message_id: int) -> Message | None:
    return _visible_query(s, user).filter(Message.id == message_id).one_or_none()


def unread_count(s: "Session", user: "User") -> int:
    return sum(1 for _, read in visible_messages(s, user) if not read)


def mark_read(s: "Session", user: "User", message: Message) -> MessageRead:
    existing = s.get(MessageRead, (user.id, message.id))
    if existing is not None:
        return existing
    row = MessageRead(user_id=user.id, message_id=message.id, read_at=datetime.utcnow())
    s.add(row)
    return row


def validate_message_payload(payload: dict, *, creating: bool) -> list[str]:
    errors = []
    if creating or "title" in payload:
        if not clean_str(payload.get("title")):
            errors.append("Title is required.")
    if creating or "body" in payload:
        if not clean_str(payload.get("body")):
            errors.append("Body is required.")
    audience = clean_str(payload.get("audience")).lower()
    if audience and audience not in MESSAGE_AUDIENCES:
        errors.append(f"Invalid audience. Must be one of: {', '.join(MESSAGE_AUDIENCES)}")
    priority = clean_str(payload.get("priority")).lower()
    if priority and priority not in MESSAGE_PRIORITIES:
        errors.append(f"Invalid priority. Must be one of: {', '.join(MESSAGE_PRIORITIES)}")
    raw_expires = clean_str(payload.get("expires_at"))
    if raw_expires and parse_datetime(raw_expires) is None:
        errors.append("expires_at must be an ISO-8601 datetime.")
    return errors


def create_message(s: "Session", payload: dict, user: "User") -> Message:
    errors = validate_message_payload(payload, creating=True)
    if errors:
        raise ValidationError(errors)
    msg = Message(
        title=clean_str(payload.get("title")),
        body=clean_str(payload.get("body")),
        audience=clean_str(payload.get("audience")).lower() or "all",
        priority=clean_str(payload.get("priority")).lower() or "normal",
        is_active=parse_bool(payload.get("is_active", True)),
        expires_at=parse_datetime(payload.get("expires_at")),
        created_by_user_id=user.id,
        created_at=datetime.utcnow(),
    )
    s.add(msg)
    s.flush()
    record_event(
        s,
        actor=user,
        action="message.create",
        entity_type="Message",
        entity_id=str(msg.id),
        metadata={"title": msg.title, "audience": msg.audience},
    )
    return msg


def update_message(s: "Session", msg: Message, payload: dict, user: "User") -> Message:
    errors = validate_message_payload(payload, creating=False)
    if errors:
        raise ValidationError(errors)
    if "title" in payload:
        msg.title = clean_str(payload.get("title"))
    if "body" in payload:
        msg.body = clean_str(payload.get("body"))
    if clean_str(payload.get("audience")):
        msg.audience = clean_str(payload.get("audience")).lower()
    if clean_str(payload.get("priority")):
        msg.priority = clean_str(payload.get("priority")).lower()
    if "is_active" in payload:
        msg.is_active = parse_bool(payload.get("is_active"))
    if "expires_at" in payload:
        msg.expires_at = parse_datetime(payload.get("expires_at"))
    record_event(s, actor=user, action="message.update", entity_type="Message", entity_id=str(msg.id))
    return msg


def delete_message(s: "Session", msg: Message, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="message.delete",
        entity_type="Message",
        entity_id=str(msg.id),
        metadata={"title": msg.title},
    )
    s.query(MessageRead).filter(MessageRead.message_id == msg.id).delete(synchronize_session=False)
    s.delete(msg)

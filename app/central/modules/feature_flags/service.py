from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING

from app.central.audit import record_event
from app.central.constants import ROLE_SUPERGOD, ROLES
from app.central.modules.feature_flags.models import FeatureFlag
from app.central.utils import ValidationError, clean_str, parse_bool, parse_json_object, parse_str_list

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.central.models import User


FLAG_KEY_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]{0,99}$")


def is_enabled(flag: FeatureFlag, user: "User | None", plan_key: str | None) -> bool:
    """
    Effective value of a flag for one user.
    Anonymous users only get flags without role/plan restrictions.
    """
    if not flag.enabled:
        return False
    if user is not None and user.role == ROLE_SUPERGOD:
        return True
    roles = flag.roles or []
    if roles and (user is None or user.role not in roles):
        return False
    plans = flag.plans or []
    if plans and (plan_key is None or plan_key not in plans):
        return False
    return True


def evaluate_all(s: "Session", user: "User | None", plan_key: str | None) -> dict[str, bool]:
    flags = s.query(FeatureFlag).order_by(FeatureFlag.key.asc()).all()
    return {f.key: is_enabled(f, user, plan_key) for f in flags}


def get_flag(s: "Session", key: str) -> FeatureFlag | None:
    key = clean_str(key).lower()
    if not key:
        return None
    return s.query(FeatureFlag).filter(FeatureFlag.key == key).one_or_none()


def _clean_roles(value) -> list[str]:
    roles = [r.lower() for r in parse_str_list(value)]
    bad = [r for r in roles if r not in ROLES]
    if bad:
        raise ValidationError(f"Unknown role(s): {', '.join(bad)}")
    return roles


def create_flag(s: "Session", payload: dict, user: "User") -> FeatureFlag:
    key = clean_str(payload.get("key")).lower()
    errors = []
    if not FLAG_KEY_RE.match(key):
        errors.append("Key is required (lowercase letters, digits, '_', '.', '-').")
    name = clean_str(payload.get("name")) or key
    if errors:
        raise ValidationError(errors)
    if get_flag(s, key):
        raise ValidationError(f"Flag '{key}' already exists.")

    now = datetime.utcnow()
    flag = FeatureFlag(
        key=key,
        name=name,
        description=clean_str(payload.get("description")) or None,
        enabled=parse_bool(payload.get("enabled", False)),
        roles=_clean_roles(payload.get("roles")),
        plans=[p.lower() for p in parse_str_list(payload.get("plans"))],
        config=parse_json_object(payload.get("config")),
        created_at=now,
        updated_at=now,
        updated_by_user_id=user.id,
    )
    s.add(flag)
    s.flush()
    record_event(
        s,
        actor=user,
        action="feature_flag.create",
        entity_type="FeatureFlag",
        entity_id=str(flag.id),
        metadata={"key": flag.key, "enabled": flag.enabled},
    )
    return flag


def update_flag(s: "Session", flag: FeatureFlag, payload: dict, user: "User") -> FeatureFlag:
    changes = {}

    def _set(field: str, new) -> None:
        old = getattr(flag, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(flag, field, new)

    if "name" in payload and clean_str(payload.get("name")):
        _set("name", clean_str(payload.get("name")))
    if "description" in payload:
        _set("description", clean_str(payload.get("description")) or None)
    if "enabled" in payload:
        _set("enabled", parse_bool(payload.get("enabled")))
    if "roles" in payload:
        _set("roles", _clean_roles(payload.get("roles")))
    if "plans" in payload:
        _set("plans", [p.lower() for p in parse_str_list(payload.get("plans"))])
    if "config" in payload:
        _set("config", parse_json_object(payload.get("config")))

    if changes:
        flag.updated_at = datetime.utcnow()
        flag.updated_by_user_id = user.id
        record_event(
            s,
            actor=user,
            action="feature_flag.update",
            entity_type="FeatureFlag",
            entity_id=str(flag.id),
            metadata={"key": flag.key, "changes": changes},
        )
    return flag


def toggle_flag(s: "Session", flag: FeatureFlag, user: "User") -> FeatureFlag:
    return update_flag(s, flag, {"enabled": not flag.enabled}, user)


def delete_flag(s: "Session", flag: FeatureFlag, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="feature_flag.delete",
        entity_type="FeatureFlag",
        entity_id=str(flag.id),
        metadata={"key": flag.key},
    )
    s.delete(flag)

"""
User account service: registration, credential checks and role changes.

Role-change rules:
- admins may move non-supergod users between `user` and `admin`
- only supergods may grant or revoke `supergod`
- the last active supergod can never be demoted or deactivated
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from app.central.audit import record_event
from app.central.constants import (
    PASSWORD_MIN_LENGTH,
    ROLE_ADMIN,
    ROLE_SUPERGOD,
    ROLE_USER,
    ROLES,
    USERNAME_MIN_LENGTH,
)
from app.central.models import User
from app.central.utils import ValidationError, clean_str


class PermissionDenied(Exception):
    pass


def normalize_username(username: str | None) -> str:
    return clean_str(username).lower()


def validate_credentials(username: str, password: str) -> list[str]:
    errors = []
    if len(username) < USERNAME_MIN_LENGTH:
        errors.append(f"Username must be at least {USERNAME_MIN_LENGTH} characters")
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    return errors


def find_by_username(s: Session, username: str) -> User | None:
    return s.query(User).filter(func.lower(User.username) == normalize_username(username)).one_or_none()


def create_user(
    s: Session,
    *,
    username: str,
    password: str,
    role: str = ROLE_USER,
    email: str | None = None,
) -> User:
    username = normalize_username(username)
    password = password or ""
    errors = validate_credentials(username, password)
    if role not in ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    if errors:
        raise ValidationError(errors)
    if find_by_username(s, username):
        raise ValidationError("Username already exists")

    user = User(
        username=username,
        email=clean_str(email).lower() or None,
        password_hash=generate_password_hash(password),
        role=role,
        is_active=True,
    )
    s.add(user)
    s.flush()
    return user


def authenticate(s: Session, username: str, password: str) -> User | None:
    user = find_by_username(s, username)
    if not user or not user.is_active:
        return None
    if not check_password_hash(user.password_hash, password or ""):
        return None
    user.last_login_at = datetime.utcnow()
    return user


def active_supergod_count(s: Session) -> int:
    return (
        s.query(func.count(User.id))
        .filter(User.role == ROLE_SUPERGOD, User.is_active.is_(True))
        .scalar()
        or 0
    )


def _guard_last_supergod(s: Session, target: User) -> None:
    if target.role == ROLE_SUPERGOD and target.is_active and active_supergod_count(s) <= 1:
        raise PermissionDenied("Cannot remove the last active supergod.")


def change_role(s: Session, target: User, new_role: str, *, actor: User) -> User:
    new_role = clean_str(new_role).lower()
    if new_role not in ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    if new_role == target.role:
        return target

    touches_supergod = ROLE_SUPERGOD in (new_role, target.role)
    if touches_supergod and actor.role != ROLE_SUPERGOD:
        raise PermissionDenied("Only a supergod can grant or revoke supergod.")
    if actor.role not in (ROLE_ADMIN, ROLE_SUPERGOD):
        raise PermissionDenied("Not authorized")
    if target.role == ROLE_SUPERGOD:
        _guard_last_supergod(s, target)

    old_role = target.role
    target.role = new_role
    record_event(
        s,
        actor=actor,
        action="user.role_change",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"old": old_role, "new": new_role},
    )
    return target


def set_active(s: Session, target: User, is_active: bool, *, actor: User) -> User:
    if target.is_active == is_active:
        return target
    if target.role == ROLE_SUPERGOD:
        if actor.role != ROLE_SUPERGOD:
            raise PermissionDenied("Only a supergod can change a supergod account.")
        if not is_active:
            _guard_last_supergod(s, target)
    if target.id == actor.id and not is_active:
        raise PermissionDenied("You cannot deactivate your own account.")

    target.is_active = is_active
    record_event(
        s,
        actor=actor,
        action="user.activate" if is_active else "user.deactivate",
        entity_type="User",
        entity_id=str(target.id),
    )
    return target

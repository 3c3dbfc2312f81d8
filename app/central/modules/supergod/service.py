from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.central.config import is_production
from app.central.constants import ENTITLED_STATUSES, ROLES
from app.central.db import missing_tables, ping
from app.central.models import SystemLog, User
from app.central.modules.feature_flags.models import FeatureFlag
from app.central.modules.subscriptions.models import Subscription, SubscriptionPlan

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import Session


def platform_stats(s: "Session") -> dict:
    users_by_role = {role: 0 for role in ROLES}
    for role, n in s.query(User.role, func.count(User.id)).group_by(User.role).all():
        users_by_role[role] = n

    subs_by_plan = {
        key: n
        for key, n in (
            s.query(SubscriptionPlan.key, func.count(Subscription.id))
            .join(Subscription, Subscription.plan_id == SubscriptionPlan.id)
            .filter(Subscription.status.in_(ENTITLED_STATUSES))
            .group_by(SubscriptionPlan.key)
            .all()
        )
    }

    since = datetime.utcnow() - timedelta(hours=24)
    return {
        "users_total": sum(users_by_role.values()),
        "users_by_role": users_by_role,
        "active_subscriptions_by_plan": subs_by_plan,
        "feature_flags_enabled": s.query(func.count(FeatureFlag.id)).filter(FeatureFlag.enabled.is_(True)).scalar() or 0,
        "errors_last_24h": (
            s.query(func.count(SystemLog.id))
            .filter(SystemLog.level == "ERROR", SystemLog.created_at >= since)
            .scalar()
            or 0
        ),
    }


def system_status(s: "Session", engine: "Engine", config: dict) -> dict:
    """Configuration/diagnostics snapshot; no network calls to third parties."""
    db_error = ping(s)
    status = {
        "env": (config.get("ENV") or "development").strip().lower(),
        "production": is_production(config.get("ENV")),
        "db_connected": db_error is None,
        "db_error": db_error,
        "db_backend": engine.dialect.name,
        "schema_missing_tables": [],
        "payments_configured": bool(config.get("PAYMENT_API_KEY")),
        "webhook_secret_configured": bool(config.get("PAYMENT_WEBHOOK_SECRET")),
        "admin_registration_enabled": bool(config.get("ADMIN_REGISTRATION_KEY")),
        "supergod_registration_enabled": bool(config.get("SUPERGOD_REGISTRATION_KEY")),
    }
    if db_error is None:
        status["schema_missing_tables"] = missing_tables(engine)
    return status

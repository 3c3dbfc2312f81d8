"""
Central constants for the App Central backend.
"""
from __future__ import annotations

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLE_SUPERGOD = "supergod"

ROLES = (ROLE_USER, ROLE_ADMIN, ROLE_SUPERGOD)

# Roles allowed on admin dashboards (supergod inherits admin)
ADMIN_ROLES = (ROLE_ADMIN, ROLE_SUPERGOD)

USERNAME_MIN_LENGTH = 3
PASSWORD_MIN_LENGTH = 6

SUBSCRIPTION_STATUSES = frozenset({"active", "trialing", "past_due", "canceled", "incomplete"})
# Statuses that grant plan features
ENTITLED_STATUSES = frozenset({"active", "trialing", "past_due"})

PLAN_INTERVALS = ("month", "year")

MESSAGE_AUDIENCES = ("all", ROLE_USER, ROLE_ADMIN, ROLE_SUPERGOD)
MESSAGE_PRIORITIES = ("normal", "high")

LOG_LEVELS = ("ERROR", "WARN", "INFO")

# Paths that skip user loading / CSRF
PUBLIC_PATH_PREFIXES = ("/health", "/healthz")

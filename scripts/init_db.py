import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.orm import Session  # noqa: E402

from app.central.constants import ROLE_SUPERGOD  # noqa: E402
from app.central.models import User  # noqa: E402
from app.central.modules.feature_flags.models import FeatureFlag  # noqa: E402
from app.central.modules.subscriptions.models import SubscriptionPlan  # noqa: E402
from app.central.users import create_user, find_by_username  # noqa: E402
from scripts._db_utils import script_database_url, script_session  # noqa: E402

DEFAULT_PLANS = (
    # key, name, price_cents, sort_order, features
    ("free", "Free", 0, 0, []),
    ("pro", "Pro", 1900, 10, ["ai_assistant", "advanced_modules"]),
    ("enterprise", "Enterprise", 9900, 20, ["ai_assistant", "advanced_modules", "priority_support"]),
)

DEFAULT_FLAGS = (
    # key, name, enabled, plans
    ("ai_assistant", "AI assistant", True, ["pro", "enterprise"]),
    ("advanced_modules", "Advanced modules", True, ["pro", "enterprise"]),
    ("priority_support", "Priority support", True, ["enterprise"]),
    ("maintenance_banner", "Maintenance banner", False, []),
)


def seed_plans_and_flags(s: Session) -> None:
    """Idempotent: only creates missing rows; never overwrites admin edits."""
    for key, name, price, order, features in DEFAULT_PLANS:
        if s.query(SubscriptionPlan).filter(SubscriptionPlan.key == key).one_or_none():
            continue
        price_env = (os.environ.get(f"PLAN_{key.upper()}_PRICE_ID") or "").strip() or None
        s.add(
            SubscriptionPlan(
                key=key,
                name=name,
                price_cents=price,
                sort_order=order,
                features=list(features),
                external_price_id=price_env,
            )
        )

    for key, name, enabled, plans in DEFAULT_FLAGS:
        if s.query(FeatureFlag).filter(FeatureFlag.key == key).one_or_none():
            continue
        s.add(FeatureFlag(key=key, name=name, enabled=enabled, roles=[], plans=list(plans)))


def seed_supergod(s: Session) -> User | None:
    """
    Create the bootstrap supergod from SUPERGOD_USERNAME / SUPERGOD_PASSWORD.
    Does NOT overwrite an existing user's password or role.
    """
    username = (os.environ.get("SUPERGOD_USERNAME") or "").strip().lower()
    password = os.environ.get("SUPERGOD_PASSWORD") or ""
    if not username or not password:
        return None
    user = find_by_username(s, username)
    if user is None:
        user = create_user(s, username=username, password=password, role=ROLE_SUPERGOD)
    return user


def seed_only(*, database_url: str | None = None) -> None:
    db_url = script_database_url(database_url)
    with script_session(db_url) as s:
        seed_plans_and_flags(s)
        user = seed_supergod(s)

    print("Initialized database (seed_only).")
    if user is not None:
        print(f"Supergod username: {user.username}")
        print("Supergod password: (from SUPERGOD_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Set a user's role (idempotent). Bypasses the in-app role rules; for operators only.

Usage:
  python scripts/set_user_role.py --username alice --role admin
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.central.audit import record_event  # noqa: E402
from app.central.constants import ROLES  # noqa: E402
from app.central.users import find_by_username  # noqa: E402
from scripts._db_utils import script_database_url, script_session  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--username", required=True, help="Username to update")
    parser.add_argument("--role", required=True, choices=ROLES)
    args = parser.parse_args()

    with script_session(script_database_url()) as s:
        user = find_by_username(s, args.username)
        if not user:
            print(f"User not found: {args.username}")
            return
        if user.role == args.role:
            print(f"User already has role {args.role}: {user.username}")
            return
        old = user.role
        user.role = args.role
        record_event(
            s,
            actor=None,
            action="user.role_change",
            entity_type="User",
            entity_id=str(user.id),
            reason="scripts/set_user_role.py",
            metadata={"old": old, "new": args.role},
        )
        print(f"Role of {user.username} changed {old} -> {args.role}")


if __name__ == "__main__":
    main()

from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING

from app.central.audit import record_event
from app.central.constants import ENTITLED_STATUSES, PLAN_INTERVALS
from app.central.utils import ValidationError, clean_str, parse_bool, parse_int, parse_str_list

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.central.models import User
    from app.central.modules.payments.client import PaymentClient
    from app.central.modules.subscriptions.models import Subscription, SubscriptionPlan


PLAN_KEY_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


def list_plans(s: "Session", *, include_inactive: bool = False) -> list["SubscriptionPlan"]:
    from app.central.modules.subscriptions.models import SubscriptionPlan

    q = s.query(SubscriptionPlan)
    if not include_inactive:
        q = q.filter(SubscriptionPlan.is_active.is_(True))
    return q.order_by(SubscriptionPlan.sort_order.asc(), SubscriptionPlan.price_cents.asc(), SubscriptionPlan.id.asc()).all()


def get_plan(s: "Session", key: str, *, active_only: bool = True) -> "SubscriptionPlan | None":
    from app.central.modules.subscriptions.models import SubscriptionPlan

    key = clean_str(key).lower()
    if not key:
        return None
    plan = s.query(SubscriptionPlan).filter(SubscriptionPlan.key == key).one_or_none()
    if plan and active_only and not plan.is_active:
        return None
    return plan


def current_subscription(s: "Session", user: "User") -> "Subscription | None":
    """Most recent subscription that is not canceled."""
    from app.central.modules.subscriptions.models import Subscription

    return (
        s.query(Subscription)
        .filter(Subscription.user_id == user.id, Subscription.status != "canceled")
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def entitled_plan_key(s: "Session", user: "User | None") -> str | None:
    if user is None:
        return None
    sub = current_subscription(s, user)
    if sub is None or sub.status not in ENTITLED_STATUSES:
        return None
    return sub.plan.key


def find_by_external_id(s: "Session", external_subscription_id: str | None) -> "Subscription | None":
    from app.central.modules.subscriptions.models import Subscription

    if not external_subscription_id:
        return None
    return s.query(Subscription).filter(Subscription.external_subscription_id == external_subscription_id).one_or_none()


def activate_plan(
    s: "Session",
    user: "User",
    plan: "SubscriptionPlan",
    *,
    actor: "User | None",
    status: str = "active",
    external_customer_id: str | None = None,
    external_subscription_id: str | None = None,
    current_period_end: datetime | None = None,
) -> "Subscription":
    """Cancel whatever the user has now and start a new subscription on `plan`."""
    from app.central.modules.subscriptions.models import Subscription

    now = datetime.utcnow()
    previous = current_subscription(s, user)
    if previous is not None:
        previous.status = "canceled"
        previous.updated_at = now
        if not external_customer_id:
            external_customer_id = previous.external_customer_id

    sub = Subscription(
        user_id=user.id,
        plan_id=plan.id,
        status=status,
        external_customer_id=external_customer_id,
        external_subscription_id=external_subscription_id,
        current_period_end=current_period_end,
        cancel_at_period_end=False,
        created_at=now,
        updated_at=now,
    )
    sub.plan = plan
    sub.user = user
    s.add(sub)
    s.flush()

    record_event(
        s,
        actor=actor,
        action="subscription.activate",
        entity_type="Subscription",
        entity_id=str(sub.id),
        metadata={
            "user_id": user.id,
            "plan": plan.key,
            "previous_id": previous.id if previous else None,
            "external_subscription_id": external_subscription_id,
        },
    )
    return sub


def start_checkout(
    s: "Session",
    user: "User",
    plan: "SubscriptionPlan",
    client: "PaymentClient",
    *,
    base_url: str,
) -> dict:
    if plan.is_free:
        raise ValidationError("Free plans do not require checkout.")
    if not plan.external_price_id:
        raise ValidationError(f"Plan '{plan.key}' has no payment price configured.")

    previous = current_subscription(s, user)
    base = base_url.rstrip("/")
    session_obj = client.create_checkout_session(
        price_id=plan.external_price_id,
        success_url=f"{base}/subscription?checkout=success",
        cancel_url=f"{base}/subscription/plans?checkout=canceled",
        client_reference_id=str(user.id),
        metadata={"user_id": str(user.id), "plan_key": plan.key},
        customer_id=previous.external_customer_id if previous else None,
    )
    record_event(
        s,
        actor=user,
        action="subscription.checkout_started",
        entity_type="SubscriptionPlan",
        entity_id=str(plan.id),
        metadata={"plan": plan.key, "session_id": session_obj.get("id")},
    )
    return {"checkout_url": session_obj.get("url"), "session_id": session_obj.get("id")}


def cancel_subscription(s: "Session", sub: "Subscription", *, actor: "User", client: "PaymentClient | None") -> "Subscription":
    """
    Provider-backed subscriptions run until the paid period ends; local ones stop now.
    """
    if sub.external_subscription_id:
        if client is None:
            raise ValidationError("Payments are not configured.")
        client.set_cancel_at_period_end(sub.external_subscription_id, True)
        sub.cancel_at_period_end = True
    else:
        sub.status = "canceled"
    sub.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="subscription.cancel",
        entity_type="Subscription",
        entity_id=str(sub.id),
        metadata={"at_period_end": sub.cancel_at_period_end},
    )
    return sub


def resume_subscription(s: "Session", sub: "Subscription", *, actor: "User", client: "PaymentClient | None") -> "Subscription":
    if not sub.cancel_at_period_end:
        return sub
    if sub.external_subscription_id:
        if client is None:
            raise ValidationError("Payments are not configured.")
        client.set_cancel_at_period_end(sub.external_subscription_id, False)
    sub.cancel_at_period_end = False
    sub.updated_at = datetime.utcnow()
    record_event(s, actor=actor, action="subscription.resume", entity_type="Subscription", entity_id=str(sub.id))
    return sub


def validate_plan_payload(payload: dict, *, creating: bool) -> list[str]:
    errors = []
    key = clean_str(payload.get("key")).lower()
    if creating and not PLAN_KEY_RE.match(key):
        errors.append("Key is required (lowercase letters, digits, '-' or '_').")
    if creating and not clean_str(payload.get("name")):
        errors.append("Name is required.")
    if "price_cents" in payload and parse_int(payload.get("price_cents"), -1) < 0:
        errors.append("price_cents must be a non-negative integer.")
    interval = clean_str(payload.get("interval")).lower()
    if interval and interval not in PLAN_INTERVALS:
        errors.append(f"Invalid interval. Must be one of: {', '.join(PLAN_INTERVALS)}")
    try:
        parse_str_list(payload.get("features"))
    except ValidationError as e:
        errors.extend(e.errors)
    return errors


def create_plan(s: "Session", payload: dict, user: "User") -> "SubscriptionPlan":
    from app.central.modules.subscriptions.models import SubscriptionPlan

    errors = validate_plan_payload(payload, creating=True)
    if errors:
        raise ValidationError(errors)
    key = clean_str(payload.get("key")).lower()
    if get_plan(s, key, active_only=False):
        raise ValidationError(f"Plan '{key}' already exists.")

    plan = SubscriptionPlan(
        key=key,
        name=clean_str(payload.get("name")),
        description=clean_str(payload.get("description")) or None,
        price_cents=parse_int(payload.get("price_cents"), 0, minimum=0),
        currency=clean_str(payload.get("currency")).lower() or "usd",
        interval=clean_str(payload.get("interval")).lower() or "month",
        features=parse_str_list(payload.get("features")),
        external_price_id=clean_str(payload.get("external_price_id")) or None,
        is_active=parse_bool(payload.get("is_active", True)),
        sort_order=parse_int(payload.get("sort_order"), 0),
    )
    s.add(plan)
    s.flush()
    record_event(
        s,
        actor=user,
        action="plan.create",
        entity_type="SubscriptionPlan",
        entity_id=str(plan.id),
        metadata={"key": plan.key, "price_cents": plan.price_cents},
    )
    return plan


def update_plan(s: "Session", plan: "SubscriptionPlan", payload: dict, user: "User") -> "SubscriptionPlan":
    errors = validate_plan_payload(payload, creating=False)
    if errors:
        raise ValidationError(errors)

    changes = {}

    def _set(field: str, new) -> None:
        old = getattr(plan, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(plan, field, new)

    if "name" in payload and clean_str(payload.get("name")):
        _set("name", clean_str(payload.get("name")))
    if "description" in payload:
        _set("description", clean_str(payload.get("description")) or None)
    if "price_cents" in payload:
        _set("price_cents", parse_int(payload.get("price_cents"), plan.price_cents, minimum=0))
    if "currency" in payload and clean_str(payload.get("currency")):
        _set("currency", clean_str(payload.get("currency")).lower())
    if "interval" in payload and clean_str(payload.get("interval")):
        _set("interval", clean_str(payload.get("interval")).lower())
    if "features" in payload:
        _set("features", parse_str_list(payload.get("features")))
    if "external_price_id" in payload:
        _set("external_price_id", clean_str(payload.get("external_price_id")) or None)
    if "is_active" in payload:
        _set("is_active", parse_bool(payload.get("is_active")))
    if "sort_order" in payload:
        _set("sort_order", parse_int(payload.get("sort_order"), plan.sort_order))

    if changes:
        record_event(
            s,
            actor=user,
            action="plan.update",
            entity_type="SubscriptionPlan",
            entity_id=str(plan.id),
            metadata={"changes": changes},
        )
    return plan


def feature_matrix(s: "Session") -> list[dict]:
    """Active plans with the flags each one unlocks (name resolved when the flag exists)."""
    from app.central.modules.feature_flags.models import FeatureFlag

    names = {f.key: f.name for f in s.query(FeatureFlag).all()}
    out = []
    for plan in list_plans(s):
        out.append(
            {
                "plan": plan.key,
                "name": plan.name,
                "price_cents": plan.price_cents,
                "interval": plan.interval,
                "features": [{"key": k, "name": names.get(k, k)} for k in (plan.features or [])],
            }
        )
    return out

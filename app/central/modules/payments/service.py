from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.central.audit import record_event
from app.central.models import User
from app.central.modules.payments.models import Payment, PaymentEvent
from app.central.modules.subscriptions.models import SubscriptionPlan
from app.central.modules.subscriptions.service import activate_plan, find_by_external_id, get_plan

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.central.modules.subscriptions.models import Subscription


# Provider status -> local status
_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "canceled",
    "incomplete": "incomplete",
    "incomplete_expired": "canceled",
    "paused": "past_due",
}


class WebhookPayloadError(ValueError):
    pass


def _ts(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.utcfromtimestamp(int(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _price_id(obj: dict) -> str | None:
    items = ((obj.get("items") or {}).get("data")) or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id")


def parse_event(payload: bytes) -> dict:
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise WebhookPayloadError("Invalid JSON payload") from e
    if not isinstance(event, dict):
        raise WebhookPayloadError("Event must be a JSON object")
    for field in ("id", "type"):
        value = event.get(field)
        if not isinstance(value, str) or not value.strip():
            raise WebhookPayloadError("Event id and type are required strings")
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise WebhookPayloadError("Event data.object is required")
    return event


def find_event(s: "Session", event_id: str) -> PaymentEvent | None:
    return s.query(PaymentEvent).filter(PaymentEvent.external_event_id == event_id).one_or_none()


def store_event(s: "Session", event: dict, *, error: str | None = None) -> PaymentEvent:
    row = find_event(s, event["id"])
    if row is None:
        row = PaymentEvent(
            external_event_id=event["id"],
            event_type=event["type"],
            payload_json=json.dumps(event, sort_keys=True),
        )
        s.add(row)
    row.processed = error is None
    row.error = error
    return row


# ---------- Event handlers ----------
def _on_checkout_completed(s: "Session", obj: dict) -> str:
    metadata = obj.get("metadata") or {}
    user_id = metadata.get("user_id") or obj.get("client_reference_id")
    plan_key = metadata.get("plan_key")
    external_sub_id = obj.get("subscription")

    user = s.get(User, _int(user_id)) if user_id else None
    if user is None:
        return "ignored: unknown user"
    plan = get_plan(s, plan_key or "", active_only=False)
    if plan is None:
        return "ignored: unknown plan"

    existing = find_by_external_id(s, external_sub_id)
    if existing is not None:
        existing.status = "active"
        existing.updated_at = datetime.utcnow()
        return "updated"

    activate_plan(
        s,
        user,
        plan,
        actor=None,
        external_customer_id=obj.get("customer"),
        external_subscription_id=external_sub_id,
    )
    return "activated"


def _on_subscription_updated(s: "Session", obj: dict) -> str:
    sub = find_by_external_id(s, obj.get("id"))
    if sub is None:
        return "ignored: unknown subscription"

    old = {"status": sub.status, "plan_id": sub.plan_id}
    sub.status = _STATUS_MAP.get(obj.get("status") or "", sub.status)
    if "current_period_end" in obj:
        sub.current_period_end = _ts(obj.get("current_period_end"))
    if "cancel_at_period_end" in obj:
        sub.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))

    price_id = _price_id(obj)
    if price_id:
        plan = s.query(SubscriptionPlan).filter(SubscriptionPlan.external_price_id == price_id).first()
        if plan is not None and plan.id != sub.plan_id:
            sub.plan_id = plan.id
            sub.plan = plan
    sub.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=None,
        action="subscription.provider_update",
        entity_type="Subscription",
        entity_id=str(sub.id),
        metadata={"old": old, "new": {"status": sub.status, "plan_id": sub.plan_id}},
    )
    return "updated"


def _on_subscription_deleted(s: "Session", obj: dict) -> str:
    sub = find_by_external_id(s, obj.get("id"))
    if sub is None:
        return "ignored: unknown subscription"
    sub.status = "canceled"
    sub.cancel_at_period_end = False
    sub.updated_at = datetime.utcnow()
    record_event(s, actor=None, action="subscription.provider_cancel", entity_type="Subscription", entity_id=str(sub.id))
    return "canceled"


def _record_payment(s: "Session", obj: dict, sub: "Subscription | None", *, status: str, amount_key: str) -> Payment:
    invoice_id = obj.get("id")
    payment = None
    if invoice_id:
        payment = s.query(Payment).filter(Payment.external_invoice_id == invoice_id).one_or_none()
    if payment is None:
        payment = Payment(external_invoice_id=invoice_id)
        s.add(payment)
    payment.user_id = sub.user_id if sub else None
    payment.subscription_id = sub.id if sub else None
    payment.amount_cents = _int(obj.get(amount_key))
    payment.currency = (obj.get("currency") or "usd").lower()
    payment.status = status
    return payment


def _on_invoice_paid(s: "Session", obj: dict) -> str:
    sub = find_by_external_id(s, obj.get("subscription"))
    _record_payment(s, obj, sub, status="succeeded", amount_key="amount_paid")
    if sub is not None and sub.status in ("past_due", "incomplete"):
        sub.status = "active"
        sub.updated_at = datetime.utcnow()
    return "payment recorded"


def _on_invoice_failed(s: "Session", obj: dict) -> str:
    sub = find_by_external_id(s, obj.get("subscription"))
    _record_payment(s, obj, sub, status="failed", amount_key="amount_due")
    if sub is not None and sub.status != "canceled":
        sub.status = "past_due"
        sub.updated_at = datetime.utcnow()
    return "payment failure recorded"


HANDLERS = {
    "checkout.session.completed": _on_checkout_completed,
    "customer.subscription.updated": _on_subscription_updated,
    "customer.subscription.deleted": _on_subscription_deleted,
    "invoice.paid": _on_invoice_paid,
    "invoice.payment_failed": _on_invoice_failed,
}


def handle_event(s: "Session", event: dict) -> str:
    handler = HANDLERS.get(event["type"])
    if handler is None:
        return "ignored: unhandled type"
    return handler(s, event["data"]["object"])


def payment_history(s: "Session", user: User, *, limit: int = 100) -> list[Payment]:
    return (
        s.query(Payment)
        .filter(Payment.user_id == user.id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
        .all()
    )

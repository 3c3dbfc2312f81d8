from __future__ import annotations

import traceback

from flask import Blueprint, current_app, g, jsonify, request

from app.central.db import db_session
from app.central.models import User
from app.central.modules.payments.client import (
    PaymentError,
    WebhookSignatureError,
    payment_client_from_config,
    verify_webhook_signature,
)
from app.central.modules.payments.service import (
    WebhookPayloadError,
    find_event,
    handle_event,
    parse_event,
    payment_history,
    store_event,
)
from app.central.modules.subscriptions.service import current_subscription, get_plan, start_checkout
from app.central.rbac import require_auth
from app.central.syslog import log_error, log_event
from app.central.utils import ValidationError, request_payload

bp = Blueprint("payment", __name__)
webhook_bp = Blueprint("webhook", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.post("/checkout")
@require_auth
def checkout():
    s = db_session()
    u = _current_user()
    plan = get_plan(s, request_payload().get("plan_key"))
    if plan is None:
        return jsonify({"message": "Plan not found"}), 404
    client = payment_client_from_config(current_app.config)
    if client is None:
        return jsonify({"message": "Payments are not configured"}), 503
    try:
        result = start_checkout(s, u, plan, client, base_url=current_app.config["APP_BASE_URL"])
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 400
    except PaymentError as e:
        s.rollback()
        log_event("ERROR", f"Checkout failed: {e}", "POST /api/payment/checkout")
        return jsonify({"message": "Payment provider error"}), 502
    s.commit()
    return jsonify(result)


@bp.post("/portal")
@require_auth
def portal():
    s = db_session()
    u = _current_user()
    sub = current_subscription(s, u)
    if sub is None or not sub.external_customer_id:
        return jsonify({"message": "No billing account found"}), 404
    client = payment_client_from_config(current_app.config)
    if client is None:
        return jsonify({"message": "Payments are not configured"}), 503
    base = current_app.config["APP_BASE_URL"].rstrip("/")
    try:
        portal_session = client.create_portal_session(customer_id=sub.external_customer_id, return_url=f"{base}/subscription")
    except PaymentError as e:
        log_event("ERROR", f"Billing portal failed: {e}", "POST /api/payment/portal")
        return jsonify({"message": "Payment provider error"}), 502
    return jsonify({"url": portal_session.get("url")})


@bp.get("/history")
@require_auth
def history():
    s = db_session()
    return jsonify({"payments": [p.to_dict() for p in payment_history(s, _current_user())]})


# ---------- Provider webhook ----------
@webhook_bp.post("/payment")
def payment_webhook():
    payload = request.get_data(cache=False)
    try:
        verify_webhook_signature(
            payload,
            request.headers.get("Stripe-Signature"),
            current_app.config.get("PAYMENT_WEBHOOK_SECRET") or "",
        )
    except WebhookSignatureError as e:
        current_app.logger.warning("Rejected payment webhook: %s (request_id=%s)", e, getattr(g, "request_id", None))
        return jsonify({"message": "Invalid signature"}), 400

    try:
        event = parse_event(payload)
    except WebhookPayloadError as e:
        return jsonify({"message": str(e)}), 400

    s = db_session()
    existing = find_event(s, event["id"])
    if existing is not None and existing.processed:
        return jsonify({"received": True, "duplicate": True})

    try:
        outcome = handle_event(s, event)
        store_event(s, event)
        s.commit()
    except Exception as e:
        s.rollback()
        # Keep the raw event so it can be inspected; the provider will retry.
        store_event(s, event, error=str(e))
        s.commit()
        log_error(f"Webhook {event['type']} failed: {e}", "POST /api/webhook/payment", traceback.format_exc())
        return jsonify({"message": "Webhook processing failed"}), 500

    current_app.logger.info("Payment webhook %s (%s): %s", event["id"], event["type"], outcome)
    return jsonify({"received": True, "result": outcome})

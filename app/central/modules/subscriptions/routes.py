from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.central.db import db_session
from app.central.models import User
from app.central.modules.payments.client import PaymentError, payment_client_from_config
from app.central.modules.subscriptions.models import Subscription, SubscriptionPlan
from app.central.modules.subscriptions.service import (
    activate_plan,
    cancel_subscription,
    create_plan,
    current_subscription,
    feature_matrix,
    get_plan,
    list_plans,
    resume_subscription,
    start_checkout,
    update_plan,
)
from app.central.rbac import require_admin, require_auth
from app.central.syslog import log_event
from app.central.utils import ValidationError, clean_str, request_payload

bp = Blueprint("subscriptions", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payments_unavailable():
    return jsonify({"message": "Payments are not configured"}), 503


def _payment_failed(e: PaymentError):
    log_event("ERROR", f"Payment provider error: {e}", f"{request.method} {request.path}")
    return jsonify({"message": "Payment provider error"}), 502


# ---------- Public ----------
@bp.get("/plans")
def plans_list():
    s = db_session()
    return jsonify({"plans": [p.to_dict() for p in list_plans(s)]})


@bp.get("/features")
def plan_features():
    s = db_session()
    return jsonify({"plans": feature_matrix(s)})


# ---------- Current user ----------
@bp.get("/current")
@require_auth
def current_get():
    s = db_session()
    sub = current_subscription(s, _current_user())
    if sub is None:
        return jsonify({"subscription": None, "plan": None})
    return jsonify({"subscription": sub.to_dict(), "plan": sub.plan.to_dict()})


@bp.post("/subscribe")
@require_auth
def subscribe():
    s = db_session()
    u = _current_user()
    plan = get_plan(s, request_payload().get("plan_key"))
    if plan is None:
        return jsonify({"message": "Plan not found"}), 404

    if plan.is_free:
        sub = activate_plan(s, u, plan, actor=u)
        s.commit()
        return jsonify({"subscription": sub.to_dict(), "plan": plan.to_dict()}), 201

    client = payment_client_from_config(current_app.config)
    if client is None:
        return _payments_unavailable()
    try:
        result = start_checkout(s, u, plan, client, base_url=current_app.config["APP_BASE_URL"])
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 400
    except PaymentError as e:
        s.rollback()
        return _payment_failed(e)
    s.commit()
    return jsonify(result)


@bp.post("/cancel")
@require_auth
def cancel():
    s = db_session()
    u = _current_user()
    sub = current_subscription(s, u)
    if sub is None:
        return jsonify({"message": "No active subscription"}), 404
    try:
        cancel_subscription(s, sub, actor=u, client=payment_client_from_config(current_app.config))
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 503
    except PaymentError as e:
        s.rollback()
        return _payment_failed(e)
    s.commit()
    return jsonify({"subscription": sub.to_dict()})


@bp.post("/resume")
@require_auth
def resume():
    s = db_session()
    u = _current_user()
    sub = current_subscription(s, u)
    if sub is None:
        return jsonify({"message": "No active subscription"}), 404
    try:
        resume_subscription(s, sub, actor=u, client=payment_client_from_config(current_app.config))
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 503
    except PaymentError as e:
        s.rollback()
        return _payment_failed(e)
    s.commit()
    return jsonify({"subscription": sub.to_dict()})


# ---------- Admin: subscription manager ----------
@bp.get("/admin/subscriptions")
@require_admin
def admin_subscriptions():
    s = db_session()
    status = clean_str(request.args.get("status")).lower()
    q = s.query(Subscription)
    if status:
        q = q.filter(Subscription.status == status)
    subs = q.order_by(Subscription.created_at.desc(), Subscription.id.desc()).limit(500).all()
    return jsonify({"subscriptions": [sub.to_dict() for sub in subs]})


@bp.get("/admin/plans")
@require_admin
def admin_plans():
    s = db_session()
    return jsonify({"plans": [p.to_dict() for p in list_plans(s, include_inactive=True)]})


@bp.post("/admin/plans")
@require_admin
def admin_plan_create():
    s = db_session()
    try:
        plan = create_plan(s, request_payload(), _current_user())
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 400
    s.commit()
    return jsonify({"plan": plan.to_dict()}), 201


@bp.put("/admin/plans/<int:plan_id>")
@require_admin
def admin_plan_update(plan_id: int):
    s = db_session()
    plan = s.get(SubscriptionPlan, plan_id)
    if plan is None:
        return jsonify({"message": "Plan not found"}), 404
    try:
        update_plan(s, plan, request_payload(), _current_user())
    except ValidationError as e:
        s.rollback()
        return jsonify({"message": e.errors[0], "errors": e.errors}), 400
    s.commit()
    return jsonify({"plan": plan.to_dict()})


@bp.post("/admin/users/<int:user_id>/assign")
@require_admin
def admin_assign_plan(user_id: int):
    s = db_session()
    target = s.get(User, user_id)
    if target is None:
        return jsonify({"message": "User not found"}), 404
    plan = get_plan(s, request_payload().get("plan_key"), active_only=False)
    if plan is None:
        return jsonify({"message": "Plan not found"}), 404
    sub = activate_plan(s, target, plan, actor=_current_user())
    s.commit()
    return jsonify({"subscription": sub.to_dict(), "plan": plan.to_dict()}), 201

import io
import json
import time
import urllib.error
import urllib.parse
import urllib.request

import pytest
from werkzeug.security import generate_password_hash

from app.central import create_app
from app.central.db import session_scope
from app.central.models import Base, SystemLog, User
from app.central.modules.payments import service as payment_service
from app.central.modules.payments.client import (
    PaymentClient,
    PaymentError,
    WebhookSignatureError,
    compute_signature,
    encode_form,
    verify_webhook_signature,
)
from app.central.modules.payments.models import Payment, PaymentEvent
from app.central.modules.subscriptions.models import Subscription, SubscriptionPlan
from scripts.init_db import seed_plans_and_flags

SECRET = "whsec_test"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PAYMENT_WEBHOOK_SECRET", SECRET)
    monkeypatch.setenv("PLAN_PRO_PRICE_ID", "price_pro")
    monkeypatch.setenv("PLAN_ENTERPRISE_PRICE_ID", "price_ent")
    monkeypatch.delenv("PAYMENT_API_KEY", raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        seed_plans_and_flags(s)
        s.add(User(username="alice", password_hash=generate_password_hash("password1"), role="user", is_active=True))

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _alice_id(app) -> int:
    with session_scope(app) as s:
        return s.query(User).filter(User.username == "alice").one().id


def _send(client, event: dict, *, secret: str = SECRET, ts: int | None = None):
    body = json.dumps(event).encode("utf-8")
    ts = int(time.time()) if ts is None else ts
    header = f"t={ts},v1={compute_signature(secret, ts, body)}"
    return client.post(
        "/api/webhook/payment",
        data=body,
        headers={"Stripe-Signature": header},
        content_type="application/json",
    )


def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _checkout_completed(app, event_id: str = "evt_checkout") -> dict:
    return _event(
        event_id,
        "checkout.session.completed",
        {
            "id": "cs_1",
            "metadata": {"user_id": str(_alice_id(app)), "plan_key": "pro"},
            "subscription": "sub_1",
            "customer": "cus_1",
        },
    )


def _subscription(app) -> Subscription:
    with session_scope(app) as s:
        sub = s.query(Subscription).filter(Subscription.external_subscription_id == "sub_1").one()
        s.expunge(sub)
        return sub


# ---------- Signature verification ----------
def test_verify_signature_accepts_any_matching_v1():
    body = b'{"id":"evt"}'
    ts = 1_700_000_000
    good = compute_signature(SECRET, ts, body)
    verify_webhook_signature(body, f"t={ts},v1=deadbeef,v1={good}", SECRET, now=ts + 10)


def test_verify_signature_rejections():
    body = b'{"id":"evt"}'
    ts = 1_700_000_000
    good = compute_signature(SECRET, ts, body)

    with pytest.raises(WebhookSignatureError, match="not configured"):
        verify_webhook_signature(body, f"t={ts},v1={good}", "", now=ts)
    with pytest.raises(WebhookSignatureError, match="Missing"):
        verify_webhook_signature(body, None, SECRET, now=ts)
    with pytest.raises(WebhookSignatureError, match="Malformed"):
        verify_webhook_signature(body, f"v1={good}", SECRET, now=ts)
    with pytest.raises(WebhookSignatureError, match="tolerance"):
        verify_webhook_signature(body, f"t={ts},v1={good}", SECRET, now=ts + 301)
    with pytest.raises(WebhookSignatureError, match="mismatch"):
        verify_webhook_signature(body + b" ", f"t={ts},v1={good}", SECRET, now=ts)


def test_encode_form_flattens_nested_params():
    pairs = encode_form(
        {
            "mode": "subscription",
            "line_items": [{"price": "price_pro", "quantity": 1}],
            "metadata": {"user_id": "7"},
            "customer": None,
            "cancel_at_period_end": True,
        }
    )
    assert pairs == [
        ("mode", "subscription"),
        ("line_items[0][price]", "price_pro"),
        ("line_items[0][quantity]", "1"),
        ("metadata[user_id]", "7"),
        ("cancel_at_period_end", "true"),
    ]


# ---------- Webhook endpoint ----------
def test_webhook_rejects_bad_signature(app, client):
    r = _send(client, _checkout_completed(app), secret="wrong")
    assert r.status_code == 400
    assert r.json["message"] == "Invalid signature"

    r = client.post("/api/webhook/payment", data=b"{}", content_type="application/json")
    assert r.status_code == 400

    r = _send(client, _checkout_completed(app), ts=int(time.time()) - 3600)
    assert r.status_code == 400


def test_webhook_rejects_malformed_event(app, client):
    r = _send(client, {"type": "invoice.paid"})
    assert r.status_code == 400

    r = _send(client, {"id": "evt_x", "type": "invoice.paid", "data": {}})
    assert r.status_code == 400

    r = _send(client, {"id": "evt_y", "type": {"name": "invoice.paid"}, "data": {"object": {}}})
    assert r.status_code == 400

    r = _send(client, {"id": 42, "type": "invoice.paid", "data": {"object": {}}})
    assert r.status_code == 400

    r = _send(client, {"id": "evt_z", "type": "invoice.paid", "data": ["object"]})
    assert r.status_code == 400

    with session_scope(app) as s:
        assert s.query(PaymentEvent).count() == 0


def test_checkout_completed_activates_subscription(app, client):
    r = _send(client, _checkout_completed(app))
    assert r.status_code == 200
    assert r.json == {"received": True, "result": "activated"}

    sub = _subscription(app)
    assert sub.status == "active"
    assert sub.external_customer_id == "cus_1"

    with session_scope(app) as s:
        row = s.query(PaymentEvent).one()
        assert row.processed is True
        assert row.event_type == "checkout.session.completed"


def test_duplicate_delivery_is_acknowledged_once(app, client):
    event = _checkout_completed(app)
    _send(client, event)
    r = _send(client, event)
    assert r.status_code == 200
    assert r.json == {"received": True, "duplicate": True}

    with session_scope(app) as s:
        assert s.query(Subscription).count() == 1
        assert s.query(PaymentEvent).count() == 1


def test_checkout_for_unknown_user_is_ignored(client):
    r = _send(
        client,
        _event("evt_ghost", "checkout.session.completed", {"metadata": {"user_id": "999", "plan_key": "pro"}}),
    )
    assert r.status_code == 200
    assert r.json["result"] == "ignored: unknown user"


def test_invoice_events_record_payments_and_status(app, client):
    _send(client, _checkout_completed(app))

    r = _send(
        client,
        _event("evt_fail", "invoice.payment_failed", {"id": "in_1", "subscription": "sub_1", "amount_due": 1900, "currency": "USD"}),
    )
    assert r.status_code == 200
    assert _subscription(app).status == "past_due"

    r = _send(
        client,
        _event("evt_paid", "invoice.paid", {"id": "in_1", "subscription": "sub_1", "amount_paid": 1900, "currency": "usd"}),
    )
    assert r.status_code == 200
    assert _subscription(app).status == "active"

    with session_scope(app) as s:
        payment = s.query(Payment).one()
        assert payment.status == "succeeded"
        assert payment.amount_cents == 1900
        assert payment.user_id == _alice_id(app)

    client.post("/api/login", json={"username": "alice", "password": "password1"})
    history = client.get("/api/payment/history").json["payments"]
    assert [p["external_invoice_id"] for p in history] == ["in_1"]


def test_subscription_updated_and_deleted(app, client):
    _send(client, _checkout_completed(app))

    r = _send(
        client,
        _event(
            "evt_upd",
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "status": "active",
                "cancel_at_period_end": True,
                "current_period_end": 1_900_000_000,
                "items": {"data": [{"price": {"id": "price_ent"}}]},
            },
        ),
    )
    assert r.status_code == 200
    sub = _subscription(app)
    assert sub.cancel_at_period_end is True
    assert sub.current_period_end is not None
    with session_scope(app) as s:
        plan = s.get(SubscriptionPlan, sub.plan_id)
        assert plan.key == "enterprise"

    r = _send(client, _event("evt_del", "customer.subscription.deleted", {"id": "sub_1"}))
    assert r.json["result"] == "canceled"
    assert _subscription(app).status == "canceled"


def test_unhandled_event_type_is_stored(app, client):
    r = _send(client, _event("evt_other", "customer.created", {"id": "cus_9"}))
    assert r.status_code == 200
    assert r.json["result"] == "ignored: unhandled type"
    with session_scope(app) as s:
        assert s.query(PaymentEvent).filter(PaymentEvent.external_event_id == "evt_other").one().processed is True


def test_handler_failure_is_logged_and_retried(app, client, monkeypatch):
    def _boom(s, obj):
        raise RuntimeError("handler exploded")

    original = payment_service.HANDLERS["invoice.paid"]
    monkeypatch.setitem(payment_service.HANDLERS, "invoice.paid", _boom)
    event = _event("evt_boom", "invoice.paid", {"id": "in_9", "amount_paid": 100})

    r = _send(client, event)
    assert r.status_code == 500

    with session_scope(app) as s:
        row = s.query(PaymentEvent).filter(PaymentEvent.external_event_id == "evt_boom").one()
        assert row.processed is False
        assert row.error == "handler exploded"
        assert s.query(SystemLog).filter(SystemLog.level == "ERROR").count() == 1

    monkeypatch.setitem(payment_service.HANDLERS, "invoice.paid", original)
    r = _send(client, event)
    assert r.status_code == 200
    assert r.json["result"] == "payment recorded"


def test_portal_requires_billing_account(client):
    client.post("/api/login", json={"username": "alice", "password": "password1"})
    token = client.get("/api/csrf").json["csrf_token"]
    r = client.post("/api/payment/portal", headers={"X-CSRF-Token": token})
    assert r.status_code == 404


# ---------- Provider client ----------
class _Response:
    def __init__(self, body: bytes):
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _http_error(code: int, body: bytes = b"") -> urllib.error.HTTPError:
    return urllib.error.HTTPError("https://api.test/v1/x", code, "error", {}, io.BytesIO(body))


@pytest.fixture()
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(time, "sleep", calls.append)
    return calls


def _fake_urlopen(monkeypatch, outcomes: list):
    requests = []

    def _urlopen(req, timeout=None):
        requests.append(req)
        outcome = outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return _Response(outcome)

    monkeypatch.setattr(urllib.request, "urlopen", _urlopen)
    return requests


def test_client_retries_after_rate_limit(monkeypatch, sleeps):
    requests = _fake_urlopen(monkeypatch, [_http_error(429), b'{"id": "cs_1", "url": "https://pay/cs_1"}'])
    client = PaymentClient(api_key="sk_test", base_url="https://api.test")

    result = client.create_checkout_session(
        price_id="price_pro",
        success_url="https://app/ok",
        cancel_url="https://app/cancel",
        client_reference_id="7",
        metadata={"user_id": "7", "plan_key": "pro"},
    )

    assert result["id"] == "cs_1"
    assert len(requests) == 2
    assert sleeps == [2]

    req = requests[-1]
    assert req.get_method() == "POST"
    assert req.full_url == "https://api.test/v1/checkout/sessions"
    assert req.get_header("Authorization") == "Bearer sk_test"
    form = dict(urllib.parse.parse_qsl(req.data.decode("utf-8")))
    assert form["line_items[0][price]"] == "price_pro"
    assert form["metadata[plan_key]"] == "pro"


def test_client_raises_on_server_error(monkeypatch, sleeps):
    requests = _fake_urlopen(monkeypatch, [_http_error(500, b'{"error": "boom"}')])
    client = PaymentClient(api_key="sk_test", base_url="https://api.test")

    with pytest.raises(PaymentError, match="HTTP 500"):
        client.set_cancel_at_period_end("sub_1", True)
    assert len(requests) == 1
    assert sleeps == []


def test_client_wraps_timeouts_after_retries(monkeypatch, sleeps):
    requests = _fake_urlopen(monkeypatch, [TimeoutError("timed out"), TimeoutError("timed out")])
    client = PaymentClient(api_key="sk_test", base_url="https://api.test", timeout_seconds=1)

    with pytest.raises(PaymentError, match="timed out"):
        client.request_json("POST", "/v1/billing_portal/sessions", params={"customer": "cus_1"}, retries=1)
    assert len(requests) == 2


def test_client_rejects_invalid_json(monkeypatch, sleeps):
    requests = _fake_urlopen(monkeypatch, [b"<html>oops</html>"])
    client = PaymentClient(api_key="sk_test", base_url="https://api.test")

    with pytest.raises(PaymentError, match="Invalid JSON"):
        client.create_portal_session(customer_id="cus_1", return_url="https://app/subscription")
    assert len(requests) == 1


def test_provider_timeout_returns_bad_gateway(app, client, monkeypatch, sleeps):
    app.config["PAYMENT_API_KEY"] = "sk_test"
    _fake_urlopen(monkeypatch, [TimeoutError("timed out")] * 4)

    client.post("/api/login", json={"username": "alice", "password": "password1"})
    token = client.get("/api/csrf").json["csrf_token"]
    r = client.post("/api/payment/checkout", json={"plan_key": "pro"}, headers={"X-CSRF-Token": token})
    assert r.status_code == 502

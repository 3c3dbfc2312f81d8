import pytest
from werkzeug.security import generate_password_hash

from app.central import create_app
from app.central.db import session_scope
from app.central.models import Base, SystemLog, User
from app.central.rbac import require_admin, require_auth, require_supergod
from app.central.modules.subscriptions.models import SubscriptionPlan
from app.central.modules.subscriptions.service import activate_plan
from app.central.syslog import log_error, log_event
from scripts.init_db import seed_plans_and_flags


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("PAYMENT_API_KEY", "sk_test_123")
    monkeypatch.delenv("PAYMENT_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("ADMIN_REGISTRATION_KEY", raising=False)
    monkeypatch.delenv("SUPERGOD_REGISTRATION_KEY", raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    pw = generate_password_hash("password1")
    with session_scope(app) as s:
        seed_plans_and_flags(s)
        s.add(User(username="root", password_hash=pw, role="supergod", is_active=True))
        s.add(User(username="admin", password_hash=pw, role="admin", is_active=True))
        alice = User(username="alice", password_hash=pw, role="user", is_active=True)
        s.add(alice)
        s.flush()
        pro = s.query(SubscriptionPlan).filter(SubscriptionPlan.key == "pro").one()
        activate_plan(s, alice, pro, actor=None)

    return app


def _login(client, username: str) -> dict:
    r = client.post("/api/login", json={"username": username, "password": "password1"})
    assert r.status_code == 200
    return {"X-CSRF-Token": client.get("/api/csrf").json["csrf_token"]}


def _user_id(app, username: str) -> int:
    with session_scope(app) as s:
        return s.query(User).filter(User.username == username).one().id


def test_supergod_routes_reject_admins(app):
    client = app.test_client()
    assert client.get("/api/supergod/stats").status_code == 401
    _login(client, "admin")
    assert client.get("/api/supergod/stats").status_code == 403
    assert client.get("/api/supergod/system").status_code == 403


def test_platform_stats(app):
    with app.app_context():
        log_error("disk full", "worker")

    client = app.test_client()
    _login(client, "root")
    stats = client.get("/api/supergod/stats").json
    assert stats["users_total"] == 3
    assert stats["users_by_role"] == {"user": 1, "admin": 1, "supergod": 1}
    assert stats["active_subscriptions_by_plan"] == {"pro": 1}
    assert stats["feature_flags_enabled"] == 3
    assert stats["errors_last_24h"] == 1


def test_system_status(app):
    client = app.test_client()
    _login(client, "root")
    status = client.get("/api/supergod/system").json
    assert status["env"] == "test"
    assert status["production"] is False
    assert status["db_connected"] is True
    assert status["db_backend"] == "sqlite"
    assert status["schema_missing_tables"] == []
    assert status["payments_configured"] is True
    assert status["webhook_secret_configured"] is False
    assert status["supergod_registration_enabled"] is False


def test_supergod_grants_and_revokes_supergod(app):
    client = app.test_client()
    headers = _login(client, "root")
    admin = _user_id(app, "admin")
    root = _user_id(app, "root")

    r = client.put(f"/api/supergod/users/{root}/role", json={"role": "admin"}, headers=headers)
    assert r.status_code == 403
    assert "last active supergod" in r.json["message"]

    r = client.put(f"/api/supergod/users/{admin}/role", json={"role": "supergod"}, headers=headers)
    assert r.status_code == 200
    assert r.json["user"]["role"] == "supergod"

    # With a second supergod the first may step down.
    r = client.put(f"/api/supergod/users/{root}/role", json={"role": "user"}, headers=headers)
    assert r.status_code == 200
    assert r.json["user"]["role"] == "user"


def test_log_event_normalizes_level_and_persists(app):
    with app.app_context():
        log_event("warning", "cache miss storm", "cache")

    with session_scope(app) as s:
        row = s.query(SystemLog).one()
        assert row.level == "WARN"
        assert row.source == "cache"


def test_role_decorators(app):
    @require_supergod
    def supergod_only():
        return {"ok": True}

    @require_admin
    def admin_only():
        return {"ok": True}

    @require_auth
    def members_only():
        return {"ok": True}

    app.add_url_rule("/_test/supergod", view_func=supergod_only)
    app.add_url_rule("/_test/admin", view_func=admin_only)
    app.add_url_rule("/_test/auth", view_func=members_only)

    anon = app.test_client()
    assert anon.get("/_test/supergod").status_code == 401
    assert anon.get("/_test/admin").status_code == 401
    assert anon.get("/_test/auth").status_code == 401

    alice = app.test_client()
    _login(alice, "alice")
    assert alice.get("/_test/supergod").status_code == 403
    assert alice.get("/_test/admin").status_code == 403
    assert alice.get("/_test/auth").status_code == 200

    admin = app.test_client()
    _login(admin, "admin")
    r = admin.get("/_test/supergod")
    assert r.status_code == 403
    assert r.json == {"message": "Not authorized"}
    assert admin.get("/_test/admin").status_code == 200

    root = app.test_client()
    _login(root, "root")
    assert root.get("/_test/supergod").json == {"ok": True}
    assert root.get("/_test/admin").status_code == 200

import pytest
from werkzeug.security import generate_password_hash

from app.central import create_app
from app.central.db import session_scope
from app.central.models import AuditEvent, Base, User
from app.central.modules.feature_flags.models import FeatureFlag
from app.central.modules.feature_flags.service import is_enabled
from app.central.modules.subscriptions.models import SubscriptionPlan
from app.central.modules.subscriptions.service import activate_plan
from scripts.init_db import seed_plans_and_flags


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    pw = generate_password_hash("password1")
    with session_scope(app) as s:
        seed_plans_and_flags(s)
        s.add(User(username="root", password_hash=pw, role="supergod", is_active=True))
        s.add(User(username="admin", password_hash=pw, role="admin", is_active=True))
        alice = User(username="alice", password_hash=pw, role="user", is_active=True)
        s.add(User(username="bob", password_hash=pw, role="user", is_active=True))
        s.add(alice)
        s.flush()
        pro = s.query(SubscriptionPlan).filter(SubscriptionPlan.key == "pro").one()
        activate_plan(s, alice, pro, actor=None)
        s.add(FeatureFlag(key="admin_tools", name="Admin tools", enabled=True, roles=["admin"], plans=[], config={"beta": True}))

    return app


def _login(client, username: str) -> dict:
    r = client.post("/api/login", json={"username": username, "password": "password1"})
    assert r.status_code == 200
    return {"X-CSRF-Token": client.get("/api/csrf").json["csrf_token"]}


def _flag_id(app, key: str) -> int:
    with session_scope(app) as s:
        return s.query(FeatureFlag).filter(FeatureFlag.key == key).one().id


def test_is_enabled_rules():
    user = User(username="u", role="user", is_active=True)
    admin = User(username="a", role="admin", is_active=True)
    root = User(username="r", role="supergod", is_active=True)

    off = FeatureFlag(key="off", name="off", enabled=False, roles=[], plans=[])
    assert is_enabled(off, root, "enterprise") is False

    open_flag = FeatureFlag(key="open", name="open", enabled=True, roles=[], plans=[])
    assert is_enabled(open_flag, None, None) is True

    by_role = FeatureFlag(key="r", name="r", enabled=True, roles=["admin"], plans=[])
    assert is_enabled(by_role, admin, None) is True
    assert is_enabled(by_role, user, None) is False
    assert is_enabled(by_role, None, None) is False
    assert is_enabled(by_role, root, None) is True

    by_plan = FeatureFlag(key="p", name="p", enabled=True, roles=[], plans=["pro"])
    assert is_enabled(by_plan, user, "pro") is True
    assert is_enabled(by_plan, user, "free") is False
    assert is_enabled(by_plan, user, None) is False


def test_anonymous_flags(app):
    client = app.test_client()
    flags = client.get("/api/features").json["flags"]
    assert flags == {
        "admin_tools": False,
        "advanced_modules": False,
        "ai_assistant": False,
        "maintenance_banner": False,
        "priority_support": False,
    }


def test_plan_entitlements(app):
    alice = app.test_client()
    _login(alice, "alice")
    flags = alice.get("/api/features").json["flags"]
    assert flags["ai_assistant"] is True
    assert flags["priority_support"] is False

    bob = app.test_client()
    _login(bob, "bob")
    assert bob.get("/api/features").json["flags"]["ai_assistant"] is False


def test_supergod_sees_every_enabled_flag(app):
    client = app.test_client()
    _login(client, "root")
    flags = client.get("/api/features").json["flags"]
    assert flags["priority_support"] is True
    assert flags["admin_tools"] is True
    assert flags["maintenance_banner"] is False


def test_single_flag_config_only_when_enabled(app):
    admin = app.test_client()
    _login(admin, "admin")
    r = admin.get("/api/features/admin_tools")
    assert r.json == {"key": "admin_tools", "enabled": True, "config": {"beta": True}}

    user = app.test_client()
    _login(user, "alice")
    r = user.get("/api/features/admin_tools")
    assert r.json == {"key": "admin_tools", "enabled": False, "config": {}}

    assert user.get("/api/features/nope").status_code == 404


def test_admin_flag_crud(app):
    client = app.test_client()
    headers = _login(client, "admin")

    r = client.post(
        "/api/admin/features",
        json={"key": "new_dashboard", "name": "New dashboard", "roles": ["user"], "config": '{"variant": "b"}'},
        headers=headers,
    )
    assert r.status_code == 201
    flag = r.json["flag"]
    assert flag["enabled"] is False
    assert flag["roles"] == ["user"]
    assert flag["config"] == {"variant": "b"}

    assert client.post("/api/admin/features", json={"key": "new_dashboard"}, headers=headers).status_code == 400
    assert client.post("/api/admin/features", json={"key": "x", "roles": ["owner"]}, headers=headers).status_code == 400
    assert client.post("/api/admin/features", json={"key": "Bad Key"}, headers=headers).status_code == 400

    r = client.post(f"/api/admin/features/{flag['id']}/toggle", headers=headers)
    assert r.status_code == 200
    assert r.json["flag"]["enabled"] is True

    r = client.put(f"/api/admin/features/{flag['id']}", json={"plans": "pro, enterprise"}, headers=headers)
    assert r.status_code == 200
    assert r.json["flag"]["plans"] == ["pro", "enterprise"]

    r = client.put(f"/api/admin/features/{flag['id']}", json={"config": "[1, 2]"}, headers=headers)
    assert r.status_code == 400

    r = client.delete(f"/api/admin/features/{flag['id']}", headers=headers)
    assert r.status_code == 200
    assert r.json == {"deleted": True}

    assert client.put(f"/api/admin/features/{flag['id']}", json={}, headers=headers).status_code == 404

    with session_scope(app) as s:
        actions = {ev.action for ev in s.query(AuditEvent).filter(AuditEvent.entity_type == "FeatureFlag")}
        assert actions == {"feature_flag.create", "feature_flag.update", "feature_flag.delete"}


def test_admin_flag_routes_reject_users(app):
    client = app.test_client()
    headers = _login(client, "alice")
    assert client.get("/api/admin/features").status_code == 403
    r = client.post(f"/api/admin/features/{_flag_id(app, 'ai_assistant')}/toggle", headers=headers)
    assert r.status_code == 403

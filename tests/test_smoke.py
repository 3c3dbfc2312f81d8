import pytest
from werkzeug.security import generate_password_hash

from app.central import create_app
from app.central.db import session_scope
from app.central.models import Base, SystemLog, User


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in ("CORS_ORIGINS", "PAYMENT_API_KEY", "PAYMENT_WEBHOOK_SECRET", "ADMIN_REGISTRATION_KEY", "SUPERGOD_REGISTRATION_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    @app.get("/api/boom")
    def _boom():
        raise RuntimeError("kaboom")

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add(User(username="admin", password_hash=generate_password_hash("password1"), role="admin", is_active=True))

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_index_and_unknown_route_are_json(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json["status"] == "ok"

    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert "message" in r.json


def test_login_and_admin_access(client):
    # Anonymous is rejected
    r = client.get("/api/admin/logs")
    assert r.status_code == 401

    r = client.post("/api/login", json={"username": "admin", "password": "password1"})
    assert r.status_code == 200

    r = client.get("/api/admin/logs")
    assert r.status_code == 200


def test_unhandled_error_includes_detail_outside_production(app, client):
    r = client.get("/api/boom")
    assert r.status_code == 500
    assert r.json["message"] == "An unexpected error occurred"
    assert r.json["error"] == "kaboom"

    with session_scope(app) as s:
        row = s.query(SystemLog).one()
        assert row.level == "ERROR"
        assert row.message == "kaboom"
        assert row.source == "GET /api/boom"
        assert "RuntimeError" in (row.stack_trace or "")


def test_unhandled_error_hides_detail_in_production(app, client):
    app.config["ENV"] = "production"
    r = client.get("/api/boom")
    assert r.status_code == 500
    assert r.json == {"message": "An unexpected error occurred"}


def test_mutation_without_csrf_token_is_rejected(client):
    client.post("/api/login", json={"username": "admin", "password": "password1"})
    r = client.post("/api/messages", json={"title": "Hi", "body": "There"})
    assert r.status_code == 400
    assert "CSRF" in r.json["message"]

    token = client.get("/api/csrf").json["csrf_token"]
    r = client.post("/api/messages", json={"title": "Hi", "body": "There"}, headers={"X-CSRF-Token": token})
    assert r.status_code == 201


def test_cors_echoes_origin_outside_production(client):
    r = client.get("/health", headers={"Origin": "http://localhost:5173"})
    assert r.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"
    assert r.headers["Access-Control-Allow-Credentials"] == "true"

    r = client.options("/api/login", headers={"Origin": "http://localhost:5173"})
    assert r.status_code == 204


def test_cors_disabled_in_production_without_allow_list(app, client):
    app.config["ENV"] = "production"
    r = client.get("/health", headers={"Origin": "http://evil.example"})
    assert "Access-Control-Allow-Origin" not in r.headers


def test_cors_allow_list(app, client):
    app.config["CORS_ORIGINS"] = ["https://app.example.com"]
    r = client.get("/health", headers={"Origin": "https://app.example.com"})
    assert r.headers["Access-Control-Allow-Origin"] == "https://app.example.com"
    r = client.get("/health", headers={"Origin": "https://other.example.com"})
    assert "Access-Control-Allow-Origin" not in r.headers


def test_production_requires_postgres(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-strong-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()

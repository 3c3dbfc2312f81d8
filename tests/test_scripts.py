import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from app.central.db import missing_tables
from app.central.models import User
from app.central.modules.feature_flags.models import FeatureFlag
from app.central.modules.subscriptions.models import SubscriptionPlan
from scripts import init_db
from scripts.release import run_release
from scripts.start import validate_port


@pytest.fixture()
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path/'release.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("SUPERGOD_USERNAME", "Root")
    monkeypatch.setenv("SUPERGOD_PASSWORD", "bootstrap-pass")
    monkeypatch.setenv("PLAN_PRO_PRICE_ID", "price_pro")
    return url


def test_release_migrates_and_seeds(db_url):
    run_release()

    engine = create_engine(db_url, future=True)
    try:
        assert missing_tables(engine) == []
        with Session(engine) as s:
            assert [p.key for p in s.query(SubscriptionPlan).order_by(SubscriptionPlan.sort_order)] == ["free", "pro", "enterprise"]
            assert s.query(SubscriptionPlan).filter(SubscriptionPlan.key == "pro").one().external_price_id == "price_pro"
            assert s.query(FeatureFlag).count() == len(init_db.DEFAULT_FLAGS)
            root = s.query(User).one()
            assert root.username == "root"
            assert root.role == "supergod"
    finally:
        engine.dispose()


def test_seed_is_idempotent(db_url):
    run_release()

    engine = create_engine(db_url, future=True)
    try:
        with Session(engine) as s:
            plan = s.query(SubscriptionPlan).filter(SubscriptionPlan.key == "pro").one()
            plan.price_cents = 2500
            s.commit()

        init_db.seed_only(database_url=db_url)

        with Session(engine) as s:
            assert s.query(SubscriptionPlan).count() == len(init_db.DEFAULT_PLANS)
            assert s.query(SubscriptionPlan).filter(SubscriptionPlan.key == "pro").one().price_cents == 2500
            assert s.query(User).count() == 1
    finally:
        engine.dispose()


def test_release_refuses_sqlite_in_production(db_url, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    with pytest.raises(RuntimeError, match="sqlite"):
        run_release()


def test_release_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        run_release()


def test_validate_port():
    assert validate_port(None) == 8080
    assert validate_port(" 5000 ") == 5000
    with pytest.raises(ValueError):
        validate_port("0")
    with pytest.raises(ValueError):
        validate_port("http")

import pytest
from werkzeug.security import check_password_hash

from app.pms.models import Base, User
from app.pms.modules.billing.models import MembershipTier
from scripts import start
from scripts._db_utils import create_script_engine, script_session
from scripts.init_db import seed_only


@pytest.fixture()
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path/'seed.db'}"
    engine = create_script_engine(url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    return url


def test_seed_only_is_idempotent(db_url, monkeypatch):
    monkeypatch.setenv("ADMIN_EMAIL", "Owner@Example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "S3cret-pass")
    seed_only(database_url=db_url)
    monkeypatch.setenv("ADMIN_PASSWORD", "something-else")
    seed_only(database_url=db_url)

    with script_session(db_url) as s:
        users = s.query(User).all()
        assert len(users) == 1
        assert users[0].email == "owner@example.com"
        assert users[0].role_keys == {"admin"}
        # an existing admin keeps their password
        assert check_password_hash(users[0].password_hash, "S3cret-pass")

        tiers = {t.name: t for t in s.query(MembershipTier).all()}
        assert {name: t.discount_pct for name, t in tiers.items()} == {"platinum": 25, "gold": 20, "silver": 10}
        assert tiers["platinum"].monthly_price_cents is None
        assert tiers["platinum"].annual_price_cents == 100000
        assert (tiers["gold"].monthly_price_cents, tiers["gold"].annual_price_cents) == (4500, 50000)
        assert all(t.is_active for t in tiers.values())


@pytest.mark.parametrize("value,expected", [("", "8080"), ("5000", "5000")])
def test_start_port(monkeypatch, value, expected):
    monkeypatch.setenv("PORT", value)
    assert start._port() == expected


def test_start_rejects_bad_port(monkeypatch):
    monkeypatch.setenv("PORT", "99999")
    with pytest.raises(SystemExit):
        start._port()

"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from casfolio.portfolio import CLOUDINARY_ENV_KEYS, R2_ENV_KEYS, app, init_db

PASSWORD = "open-sesame"
BASE_NOW = _dt.datetime(2030, 3, 15, 12, 0, tzinfo=_dt.timezone.utc)


@pytest.fixture(autouse=True)
def _configure_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Every test gets its own sqlite file, a known admin password and
    cookies that travel over plain http.
    """
    monkeypatch.setitem(app.config, "TESTING", True)
    monkeypatch.setitem(app.config, "DATABASE", str(tmp_path / "test.sqlite3"))
    monkeypatch.setitem(app.config, "ADMIN_PASSWORD", PASSWORD)
    monkeypatch.setitem(app.config, "ADMIN_COOKIE_SECURE", False)
    monkeypatch.setitem(app.config, "SESSION_COOKIE_SECURE", False)
    for key in CLOUDINARY_ENV_KEYS + R2_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def _fast_clock(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Patch casfolio.portfolio.utc_now so every call returns an
    ever-increasing timestamp. Creation order is then strict.
    """
    from casfolio import portfolio  # import here to avoid early import

    counter = itertools.count()  # 0, 1, 2, …

    def _fake_now():
        return BASE_NOW + _dt.timedelta(seconds=next(counter))

    monkeypatch.setattr(portfolio, "utc_now", _fake_now)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def csrf(client: FlaskClient) -> str:
    """Log *client* in through /auth and return the session's CSRF token."""
    rv = client.post("/auth", json={"password": PASSWORD})
    assert rv.status_code == 200
    with client.session_transaction() as sess:
        return sess["csrf"]

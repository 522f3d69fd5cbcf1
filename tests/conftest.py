"""
tests/conftest.py -- shared fixtures for the auth service tests.

Each test gets its own SQLite file under tmp_path (not :memory:) so the
concurrency tests can open real parallel connections. bcrypt runs at the
minimum cost and outgoing mail is kept in the app's outbox, which is where
tests read the one-time codes from.
"""

import re

import pytest

from app import create_app
from models import db
from models.user import Role, User
from security.password import hash_password
from utils.emailer import mail_outbox
from utils.seed import seed_roles

PASSWORD = "correct-horse-battery"
_CODE_RE = re.compile(r"verification code: (\d+)")


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": "sqlite:///" + str(tmp_path / "auth.db"),
        "SEED_ROLES_ON_STARTUP": False,
        "BCRYPT_ROUNDS": 4,
        "MAIL_SUPPRESS_SEND": True,
        "LOG_FILE": None,
        # the test client stands in for one reverse proxy setting X-Forwarded-For
        "TRUSTED_PROXY_HOPS": 1,
    })
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Factory: make_user(email, password=PASSWORD, roles=("EDITOR",), active=True)."""

    def _make(email, password=PASSWORD, roles=("EDITOR",), active=True, name=None):
        user = User(
            email=email,
            name=name,
            password_hash=hash_password(password, rounds=4),
            is_active=active,
        )
        for role_name in roles:
            user.roles.append(Role.query.filter_by(name=role_name).one())
        db.session.add(user)
        db.session.commit()
        return user

    return _make


def last_code(email):
    """The code from the most recent email sent to `email`."""
    for msg in reversed(mail_outbox()):
        if msg["To"] == email:
            return _CODE_RE.search(msg.get_content()).group(1)
    raise AssertionError(f"no code was sent to {email}")


def login(client, email, password=PASSWORD, ip="10.0.0.1"):
    """Runs both login steps and returns the verify-otp response."""
    headers = {"X-Forwarded-For": ip, "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"}
    resp = client.post("/auth/login-request", json={"email": email, "password": password}, headers=headers)
    assert resp.status_code == 200, resp.get_json()
    return client.post("/auth/verify-otp", json={"email": email, "otp": last_code(email)}, headers=headers)


def csrf_headers(client, ip="10.0.0.1"):
    cookie = client.get_cookie("csrf_token")
    return {"X-CSRF-Token": cookie.value, "X-Forwarded-For": ip}

"""Session registry: validity, heartbeat, kick and ban."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from models import db
from models.session import (
    Session,
    SESSION_ACTIVE,
    SESSION_BANNED,
    SESSION_EXPIRED,
    SESSION_KICKED,
    SESSION_LOGGED_OUT,
)
from models.user import User
from security.errors import AuthorizationError, NotFoundError
from security.session import (
    ban_account,
    ban_session_owner,
    create_session,
    describe_device,
    expire_stale_sessions,
    heartbeat,
    is_valid,
    kick_session,
    list_suspicious_sessions,
    logout_session,
    resolve_token,
    session_stats,
)

UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36"


@pytest.fixture
def user(make_user):
    return make_user("editor@example.com")


def test_create_stores_only_the_token_hash(app, user):
    sess, raw = create_session(user, ip="10.0.0.1", user_agent=UA)

    assert sess.token_hash != raw
    assert sess.status == SESSION_ACTIVE
    assert sess.device_info == "Chrome on Windows"
    assert sess.expires_at - sess.login_at == timedelta(hours=8)
    assert resolve_token(raw).id == sess.id
    assert resolve_token("forged-token") is None
    assert db.session.get(User, user.id).last_login_at is not None


def test_idle_session_is_no_longer_valid(app, user):
    sess, raw = create_session(user, ip="10.0.0.1", user_agent=UA)
    sess.last_activity_at = datetime.utcnow() - timedelta(minutes=21)
    db.session.commit()

    assert not is_valid(sess)
    assert resolve_token(raw) is None
    db.session.refresh(sess)
    assert sess.status == SESSION_EXPIRED
    assert sess.is_active is False


def test_absolute_expiry_beats_recent_activity(app, user):
    sess, raw = create_session(user, ip="10.0.0.1", user_agent=UA)
    sess.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db.session.commit()

    assert heartbeat(sess.id)
    assert resolve_token(raw) is None


def test_heartbeat_moves_last_activity(app, user):
    sess, _ = create_session(user, ip="10.0.0.1", user_agent=UA)
    sess.last_activity_at = datetime.utcnow() - timedelta(minutes=10)
    db.session.commit()

    assert heartbeat(sess.id)
    db.session.refresh(sess)
    assert datetime.utcnow() - sess.last_activity_at < timedelta(seconds=5)


def test_kick_is_immediate_and_final(app, user):
    sess, raw = create_session(user, ip="10.0.0.1", user_agent=UA)

    kicked = kick_session(sess.id, reason="suspicious", revoked_by=None)

    assert kicked.status == SESSION_KICKED
    assert kicked.revoke_reason == "suspicious"
    assert resolve_token(raw) is None
    assert not heartbeat(sess.id)

    # a second kick does not rewrite history
    kick_session(sess.id, reason="again")
    db.session.refresh(sess)
    assert sess.revoke_reason == "suspicious"


def test_kick_unknown_session(app):
    with pytest.raises(NotFoundError):
        kick_session("does-not-exist")


def test_ban_ends_every_session_and_deactivates(app, user, make_user):
    other = make_user("other@example.com")
    tokens = [create_session(user, ip=f"10.0.0.{i}", user_agent=UA)[1] for i in range(3)]
    create_session(other, ip="10.0.1.1", user_agent=UA)

    ended = ban_account(user.id, reason="spam")

    assert ended == 3
    assert db.session.get(User, user.id).is_active is False
    assert Session.query.filter_by(user_id=user.id, is_active=True).count() == 0
    assert {s.status for s in Session.query.filter_by(user_id=user.id)} == {SESSION_BANNED}
    assert all(resolve_token(t) is None for t in tokens)
    assert Session.query.filter_by(user_id=other.id, is_active=True).count() == 1


def test_ban_between_checks_and_session_insert_wins(app, user):
    # the caller saw an active account, then the ban committed first
    assert user.is_active
    ban_account(user.id)

    with pytest.raises(AuthorizationError) as exc:
        create_session(user, ip="10.0.0.1", user_agent=UA)

    assert exc.value.reason == "account inactive"
    assert Session.query.filter_by(user_id=user.id).count() == 0
    assert db.session.get(User, user.id).last_login_at is None


def test_ban_is_all_or_nothing(app, user):
    for i in range(3):
        create_session(user, ip=f"10.0.0.{i}", user_agent=UA)

    def fail_session_update(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("UPDATE sessions"):
            raise OperationalError(statement, parameters, Exception("disk I/O error"))

    event.listen(db.engine, "before_cursor_execute", fail_session_update)
    try:
        with pytest.raises(OperationalError):
            ban_account(user.id)
    finally:
        event.remove(db.engine, "before_cursor_execute", fail_session_update)

    db.session.expire_all()
    assert db.session.get(User, user.id).is_active is True
    assert Session.query.filter_by(user_id=user.id, is_active=True).count() == 3


def test_ban_session_owner(app, user):
    sess, _ = create_session(user, ip="10.0.0.1", user_agent=UA)
    create_session(user, ip="10.0.0.2", user_agent=UA)

    user_id, ended = ban_session_owner(sess.id)

    assert user_id == user.id
    assert ended == 2
    with pytest.raises(NotFoundError):
        ban_account(9999)


def test_logout_and_housekeeping(app, user):
    live, raw = create_session(user, ip="10.0.0.1", user_agent=UA)
    stale, _ = create_session(user, ip="10.0.0.2", user_agent=UA)
    stale.expires_at = datetime.utcnow() - timedelta(minutes=1)
    db.session.commit()

    assert logout_session(raw)
    assert not logout_session(raw)
    assert expire_stale_sessions() == 1

    db.session.refresh(live)
    db.session.refresh(stale)
    assert live.status == SESSION_LOGGED_OUT
    assert stale.status == SESSION_EXPIRED


def test_stats_flag_accounts_with_many_sessions(app, user, make_user):
    for i in range(4):
        create_session(user, ip="10.0.0.1", user_agent=UA)
    quiet = make_user("quiet@example.com")
    sess, _ = create_session(quiet, ip="10.0.0.9", user_agent=UA)
    kick_session(sess.id)

    stats = session_stats()

    assert stats == {"total": 5, "active": 4, "inactive": 1, "expired": 0, "suspicious": 1}


def test_describe_device():
    assert describe_device(UA) == "Chrome on Windows"
    assert describe_device("curl/8.4.0") == "curl"
    assert describe_device("") == "Unknown device"


def test_suspicious_sessions_carry_counts(app, user, make_user):
    for i in range(3):
        create_session(user, ip=f"10.0.0.{i}", user_agent=UA)
    busy = make_user("busy@example.com")
    for _ in range(5):
        create_session(busy, ip="10.0.1.1", user_agent=UA)
    calm = make_user("calm@example.com")
    create_session(calm, ip="10.0.2.1", user_agent=UA)

    rows = list_suspicious_sessions()

    assert [(r["user_email"], r["session_count"], r["ip_count"]) for r in rows] == [
        ("busy@example.com", 5, 1),
        ("editor@example.com", 3, 3),
    ]
    assert all(r["is_active"] for r in rows)
    assert session_stats()["suspicious"] == 2

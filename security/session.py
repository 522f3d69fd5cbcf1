import hashlib
import re
import secrets
from datetime import datetime

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

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
from security.attempts import REASON_ACCOUNT_INACTIVE
from security.errors import AuthorizationError, NotFoundError
from security.settings import get_settings

DEFAULT_KICK_REASON = "Kicked by admin"
DEFAULT_BAN_REASON = "Banned by admin"

_BROWSERS = (("Edg/", "Edge"), ("OPR/", "Opera"), ("Chrome/", "Chrome"), ("Firefox/", "Firefox"), ("Safari/", "Safari"))
_PLATFORMS = (("Android", "Android"), ("iPhone", "iOS"), ("iPad", "iOS"), ("Windows", "Windows"), ("Mac OS X", "macOS"), ("Linux", "Linux"))


def _hash_token(token: str) -> str:
    # SHA-256 is fine for hashing random session tokens
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def describe_device(user_agent: str) -> str:
    if not user_agent:
        return "Unknown device"
    browser = next((name for marker, name in _BROWSERS if marker in user_agent), None)
    platform = next((name for marker, name in _PLATFORMS if marker in user_agent), None)
    if not browser and not platform:
        # curl/8.0, python-requests/2.31 ...
        m = re.match(r"([\w.-]+)/", user_agent)
        return m.group(1) if m else "Unknown device"
    return " on ".join(p for p in (browser or "Browser", platform) if p)


def create_session(user: User, ip=None, user_agent=None, settings=None) -> tuple[Session, str]:
    """
    Creates a server-side session and returns it with the RAW token (to set as cookie).
    Only the hash is stored in DB.

    The account row is touched in the same transaction, conditional on it
    still being active, so a ban committed first wins and a ban committed
    after sees this session.
    """
    settings = settings or get_settings()
    raw_token = secrets.token_urlsafe(32)
    now = datetime.utcnow()
    user_agent = (user_agent or "")[:255]

    row = Session(
        user_id=user.id,
        token_hash=_hash_token(raw_token),
        ip=ip,
        user_agent=user_agent or None,
        device_info=describe_device(user_agent),
        login_at=now,
        last_activity_at=now,
        expires_at=now + settings.session_lifetime,
        is_active=True,
        status=SESSION_ACTIVE,
    )
    claimed = db.session.execute(
        update(User)
        .where(User.id == user.id, User.is_active.is_(True))
        .values(last_login_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.session.rollback()
        current_app.logger.warning("Session refused for inactive user %s", user.id)
        raise AuthorizationError(reason=REASON_ACCOUNT_INACTIVE)

    db.session.add(row)
    db.session.commit()
    return row, raw_token


def is_valid(sess: Session, now=None, settings=None) -> bool:
    settings = settings or get_settings()
    now = now or datetime.utcnow()
    if not sess.is_active:
        return False
    # Absolute expiry
    if sess.expires_at <= now:
        return False
    # Idle timeout
    return now - sess.last_activity_at < settings.idle_timeout


def _deactivate(criteria, status: str, reason=None, revoked_by=None) -> int:
    """ACTIVE -> terminal status for every matching session still active. Does not commit."""
    res = db.session.execute(
        update(Session)
        .where(Session.is_active.is_(True), *criteria)
        .values(
            is_active=False,
            status=status,
            revoked_at=datetime.utcnow(),
            revoked_by=revoked_by,
            revoke_reason=reason,
        )
        .execution_options(synchronize_session=False)
    )
    return res.rowcount


def resolve_token(raw_token: str, settings=None):
    """
    Looks the token up in the session store. Called on every request;
    nothing about validity is cached or read from the token itself.
    """
    if not raw_token:
        return None
    settings = settings or get_settings()
    now = datetime.utcnow()

    sess = Session.query.filter_by(token_hash=_hash_token(raw_token)).first()
    if not sess or not sess.is_active:
        return None

    if not is_valid(sess, now=now, settings=settings):
        _deactivate([Session.id == sess.id], SESSION_EXPIRED, reason="Session expired")
        db.session.commit()
        return None

    user = db.session.get(User, sess.user_id)
    if not user or not user.is_active:
        return None

    return sess


def heartbeat(session_id: str) -> bool:
    res = db.session.execute(
        update(Session)
        .where(Session.id == session_id, Session.is_active.is_(True))
        .values(last_activity_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return res.rowcount == 1


def get_session(session_id: str) -> Session:
    sess = db.session.get(Session, session_id)
    if not sess:
        raise NotFoundError("Session not found", reason="session not found")
    return sess


def kick_session(session_id: str, reason=None, revoked_by=None) -> Session:
    """Revokes one session. Already-ended sessions keep their original status."""
    sess = get_session(session_id)
    changed = _deactivate([Session.id == session_id], SESSION_KICKED, reason or DEFAULT_KICK_REASON, revoked_by)
    db.session.commit()
    db.session.refresh(sess)
    if changed:
        current_app.logger.warning("Session %s of user %s kicked by %s", session_id, sess.user_id, revoked_by)
    return sess


def ban_account(account_id: int, reason=None, revoked_by=None) -> int:
    """
    Deactivates the account and ends all of its active sessions in one
    transaction. Returns how many sessions were ended.
    """
    if not db.session.get(User, account_id):
        raise NotFoundError("User not found", reason="user not found")

    reason = reason or DEFAULT_BAN_REASON
    try:
        db.session.execute(
            update(User)
            .where(User.id == account_id)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        count = _deactivate([Session.user_id == account_id], SESSION_BANNED, reason, revoked_by)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Ban of user %s rolled back", account_id)
        raise

    db.session.expire_all()
    current_app.logger.warning("User %s banned by %s, %s sessions ended", account_id, revoked_by, count)
    return count


def ban_session_owner(session_id: str, reason=None, revoked_by=None) -> tuple[int, int]:
    """Returns (user_id, sessions_ended)."""
    sess = get_session(session_id)
    user_id = sess.user_id
    return user_id, ban_account(user_id, reason=reason, revoked_by=revoked_by)


def logout_session(raw_token: str) -> bool:
    if not raw_token:
        return False
    changed = _deactivate([Session.token_hash == _hash_token(raw_token)], SESSION_LOGGED_OUT, "Logged out")
    db.session.commit()
    return changed == 1


def expire_stale_sessions(settings=None) -> int:
    settings = settings or get_settings()
    now = datetime.utcnow()
    count = _deactivate(
        [(Session.expires_at <= now) | (Session.last_activity_at <= now - settings.idle_timeout)],
        SESSION_EXPIRED,
        reason="Session expired",
    )
    db.session.commit()
    return count


def list_sessions(search=None, user_id=None, is_active=None, ip=None, page: int = 1, limit: int = 20):
    q = Session.query.join(User, Session.user_id == User.id)
    if search:
        term = f"%{search}%"
        q = q.filter((User.name.ilike(term)) | (User.email.ilike(term)))
    if user_id is not None:
        q = q.filter(Session.user_id == user_id)
    if is_active is not None:
        q = q.filter(Session.is_active.is_(is_active))
    if ip:
        q = q.filter(Session.ip == ip)

    total = q.count()
    rows = (
        q.order_by(Session.last_activity_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return rows, total


def _suspicious_accounts():
    """Accounts with many live sessions or live sessions from many IPs."""
    session_count = func.count(Session.id)
    ip_count = func.count(func.distinct(Session.ip))
    return (
        db.session.query(Session.user_id, session_count, ip_count)
        .filter(Session.is_active.is_(True))
        .group_by(Session.user_id)
        .having((session_count > 3) | (ip_count > 2))
        .order_by(session_count.desc(), ip_count.desc())
    )


def list_suspicious_sessions() -> list:
    """
    One entry per suspicious account: its most recently used live session,
    plus how many live sessions and distinct IPs the account has.
    """
    out = []
    for user_id, session_count, ip_count in _suspicious_accounts().all():
        latest = (
            Session.query
            .filter(Session.user_id == user_id, Session.is_active.is_(True))
            .order_by(Session.last_activity_at.desc())
            .first()
        )
        item = session_to_dict(latest)
        item["session_count"] = session_count
        item["ip_count"] = ip_count
        out.append(item)
    return out


def session_stats() -> dict:
    now = datetime.utcnow()
    total = Session.query.count()
    active = Session.query.filter(Session.is_active.is_(True)).count()
    expired = Session.query.filter(Session.expires_at < now).count()

    return {
        "total": total,
        "active": active,
        "inactive": total - active,
        "expired": expired,
        "suspicious": _suspicious_accounts().count(),
    }


def session_to_dict(sess: Session) -> dict:
    return {
        "id": sess.id,
        "user_id": sess.user_id,
        "user_email": sess.user.email if sess.user else None,
        "user_name": sess.user.name if sess.user else None,
        "ip": sess.ip,
        "device_info": sess.device_info,
        "user_agent": sess.user_agent,
        "login_at": sess.login_at.isoformat(),
        "last_activity_at": sess.last_activity_at.isoformat(),
        "expires_at": sess.expires_at.isoformat(),
        "is_active": sess.is_active,
        "status": sess.status,
        "revoked_at": sess.revoked_at.isoformat() if sess.revoked_at else None,
        "revoke_reason": sess.revoke_reason,
    }

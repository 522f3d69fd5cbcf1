from datetime import datetime

from flask import request, current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.login_attempt import LoginAttempt

STAGE_PASSWORD = "password"
STAGE_OTP = "otp"

# Failure reasons recorded in the audit trail
REASON_INVALID_REQUEST = "invalid request"
REASON_RATE_LIMITED = "rate limited"
REASON_LOCKED_OUT = "locked out"
REASON_EMAIL_NOT_FOUND = "email not found"
REASON_ACCOUNT_INACTIVE = "account inactive"
REASON_INVALID_PASSWORD = "invalid password"
REASON_INVALID_OTP = "invalid otp"
REASON_OTP_EXPIRED = "otp expired"
REASON_OTP_MISSING = "otp not found"
REASON_OTP_EXHAUSTED = "otp attempts exhausted"
REASON_DELIVERY_FAILED = "otp delivery failed"
REASON_SERVER_ERROR = "server error"

# Only failures caused by the caller's guesses feed the lockout counter.
# Denials (rate limited, locked out) and server-side failures do not.
LOCKOUT_REASONS = (
    REASON_EMAIL_NOT_FOUND,
    REASON_ACCOUNT_INACTIVE,
    REASON_INVALID_PASSWORD,
    REASON_INVALID_OTP,
    REASON_OTP_EXHAUSTED,
)


def client_ip() -> str:
    # X-Forwarded-For is only honoured through ProxyFix (TRUSTED_PROXY_HOPS)
    return request.remote_addr or "unknown"


def client_user_agent() -> str:
    return (request.headers.get("User-Agent") or "unknown")[:255]


def log_attempt(email, success: bool, reason=None, stage=STAGE_PASSWORD, ip=None, user_agent=None):
    """
    Appends one LoginAttempt row. Outside a request, ip/user_agent must be passed.
    """
    if ip is None:
        ip = client_ip()
    if user_agent is None:
        user_agent = client_user_agent()

    row = LoginAttempt(
        email=email or None,
        ip=ip,
        user_agent=user_agent[:255] if user_agent else None,
        stage=stage,
        success=success,
        failure_reason=None if success else reason,
    )
    try:
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to record login attempt ip=%s email=%s", ip, email)
        return None

    if not success:
        current_app.logger.info("Login %s failure ip=%s email=%s reason=%s", stage, ip, email, reason)
    return row


def counted_failures_query(ip: str, since: datetime):
    return (
        LoginAttempt.query
        .filter(
            LoginAttempt.ip == ip,
            LoginAttempt.success.is_(False),
            LoginAttempt.failure_reason.in_(LOCKOUT_REASONS),
            LoginAttempt.created_at > since,
        )
    )


def count_recent_failures(ip: str, since: datetime) -> int:
    return counted_failures_query(ip, since).count()


def recent_attempts(ip=None, email=None, success=None, limit: int = 200):
    q = LoginAttempt.query
    if ip:
        q = q.filter(LoginAttempt.ip == ip)
    if email:
        q = q.filter(LoginAttempt.email == email)
    if success is not None:
        q = q.filter(LoginAttempt.success.is_(success))
    return q.order_by(LoginAttempt.created_at.desc(), LoginAttempt.id.desc()).limit(limit).all()

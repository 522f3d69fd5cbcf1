import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from models import db
from models.otp_challenge import (
    OTPChallenge,
    OTP_CONSUMED,
    OTP_EXHAUSTED,
    OTP_PENDING,
    OTP_SUPERSEDED,
    OTP_VOID,
)
from security import rate_limit
from security.attempts import (
    REASON_DELIVERY_FAILED,
    REASON_RATE_LIMITED,
    REASON_INVALID_OTP,
    REASON_OTP_EXHAUSTED,
    REASON_OTP_EXPIRED,
    REASON_OTP_MISSING,
)
from security.credentials import normalize_email
from security.errors import AuthenticationError, DeliveryError, RateLimitError
from security.settings import get_settings
from utils.emailer import send_email

PURPOSE_LOGIN = "login"

_PURPOSE_TITLES = {
    "login": "Login",
    "register": "Registration",
    "reset_password": "Password Reset",
}


@dataclass(frozen=True)
class Pending:
    code_hash: str
    expires_at: datetime
    attempts: int


@dataclass(frozen=True)
class Consumed:
    # CONSUMED, SUPERSEDED, EXHAUSTED or VOID
    reason: str


@dataclass(frozen=True)
class Expired:
    expires_at: datetime


def challenge_state(row: OTPChallenge, now=None):
    now = now or datetime.utcnow()
    if row.status != OTP_PENDING:
        return Consumed(row.status)
    if row.expires_at <= now:
        return Expired(row.expires_at)
    return Pending(row.code_hash, row.expires_at, row.attempts)


def generate_code(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def hash_code(code: str, identifier: str, purpose: str, secret_key: str) -> str:
    msg = f"{purpose}:{identifier}:{code}".encode("utf-8")
    return hmac.new(secret_key.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def _supersede_pending(identifier: str, purpose: str):
    db.session.execute(
        update(OTPChallenge)
        .where(
            OTPChallenge.identifier == identifier,
            OTPChallenge.purpose == purpose,
            OTPChallenge.status == OTP_PENDING,
        )
        .values(status=OTP_SUPERSEDED)
        .execution_options(synchronize_session=False)
    )


def issue_challenge(identifier: str, purpose: str = PURPOSE_LOGIN, ip=None, user_agent=None, settings=None) -> OTPChallenge:
    """
    Creates a fresh challenge, retiring any live one for the same
    (identifier, purpose), and emails the code. Returns only once the
    email has been handed to the mail server; otherwise raises DeliveryError.
    """
    settings = settings or get_settings()
    identifier = normalize_email(identifier)
    code = generate_code(settings.otp_length)
    now = datetime.utcnow()

    for attempt in range(2):
        try:
            _supersede_pending(identifier, purpose)
            row = OTPChallenge(
                identifier=identifier,
                purpose=purpose,
                code_hash=hash_code(code, identifier, purpose, settings.secret_key),
                status=OTP_PENDING,
                attempts=0,
                created_at=now,
                expires_at=now + settings.otp_ttl,
                ip=ip,
                user_agent=user_agent[:255] if user_agent else None,
            )
            db.session.add(row)
            db.session.commit()
            break
        except IntegrityError:
            # a concurrent issue won the unique pending slot; retire it and retry
            db.session.rollback()
            if attempt:
                raise

    _deliver(row, code, settings)
    current_app.logger.info("Issued %s OTP challenge %s for %s", purpose, row.id, identifier)
    return row


def _deliver(row: OTPChallenge, code: str, settings):
    title = _PURPOSE_TITLES.get(row.purpose, row.purpose.replace("_", " ").title())
    minutes = max(int(settings.otp_ttl.total_seconds() // 60), 1)
    subject = f"{title} verification code - News Portal"
    body = (
        f"Your {title.lower()} verification code: {code}\n\n"
        f"This code expires in {minutes} minutes.\n"
        "Do not share this code with anyone.\n\n"
        "If you did not request this code, you can ignore this email.\n"
    )

    sent, error = send_email(row.identifier, subject, body)
    if sent:
        return

    current_app.logger.error("OTP delivery to %s failed: %s", row.identifier, error)
    db.session.execute(
        update(OTPChallenge)
        .where(OTPChallenge.id == row.id, OTPChallenge.status == OTP_PENDING)
        .values(status=OTP_VOID)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    raise DeliveryError(reason=REASON_DELIVERY_FAILED)


def verify_challenge(identifier: str, code: str, purpose: str = PURPOSE_LOGIN, settings=None) -> OTPChallenge:
    """
    Consumes the live challenge if the code matches. Every failure raises
    the generic AuthenticationError; the reason only reaches the audit log.
    """
    settings = settings or get_settings()
    identifier = normalize_email(identifier)
    now = datetime.utcnow()

    row = (
        OTPChallenge.query
        .filter_by(identifier=identifier, purpose=purpose, status=OTP_PENDING)
        .order_by(OTPChallenge.created_at.desc())
        .first()
    )
    if not row:
        raise AuthenticationError(reason=REASON_OTP_MISSING)

    state = challenge_state(row, now)
    if isinstance(state, Expired):
        raise AuthenticationError(reason=REASON_OTP_EXPIRED)

    candidate = hash_code(code or "", identifier, purpose, settings.secret_key)
    if not hmac.compare_digest(state.code_hash, candidate):
        exhausted = _register_miss(row.id, settings.otp_max_attempts)
        raise AuthenticationError(reason=REASON_OTP_EXHAUSTED if exhausted else REASON_INVALID_OTP)

    # PENDING -> CONSUMED exactly once, even if two requests carry the same code
    res = db.session.execute(
        update(OTPChallenge)
        .where(
            OTPChallenge.id == row.id,
            OTPChallenge.status == OTP_PENDING,
            OTPChallenge.expires_at > now,
        )
        .values(status=OTP_CONSUMED, consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if res.rowcount != 1:
        raise AuthenticationError(reason=REASON_OTP_MISSING)

    db.session.refresh(row)
    return row


def _register_miss(challenge_id: int, max_attempts: int) -> bool:
    """Counts one wrong code. Returns True once the challenge is burned."""
    db.session.execute(
        update(OTPChallenge)
        .where(OTPChallenge.id == challenge_id, OTPChallenge.status == OTP_PENDING)
        .values(attempts=OTPChallenge.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    res = db.session.execute(
        update(OTPChallenge)
        .where(
            OTPChallenge.id == challenge_id,
            OTPChallenge.status == OTP_PENDING,
            OTPChallenge.attempts >= max_attempts,
        )
        .values(status=OTP_EXHAUSTED)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if res.rowcount == 1:
        current_app.logger.warning("OTP challenge %s exhausted after %s attempts", challenge_id, max_attempts)
        return True
    return False


def resend_challenge(identifier: str, purpose: str = PURPOSE_LOGIN, ip=None, user_agent=None, settings=None) -> OTPChallenge:
    """
    Re-issues a code for someone who already passed the password step.

    The cooldown is its own bucket; it shares nothing with the login rate
    limit or the lockout history, and resending never clears either.
    """
    settings = settings or get_settings()
    identifier = normalize_email(identifier)
    now = datetime.utcnow()

    latest = (
        OTPChallenge.query
        .filter_by(identifier=identifier, purpose=purpose)
        .order_by(OTPChallenge.created_at.desc(), OTPChallenge.id.desc())
        .first()
    )
    if (
        not latest
        or latest.status not in (OTP_PENDING, OTP_VOID)
        or latest.created_at <= now - settings.otp_resend_grace
    ):
        raise AuthenticationError(reason=REASON_OTP_MISSING)

    wait_until = latest.created_at + settings.otp_resend_cooldown
    if wait_until > now:
        raise RateLimitError(
            "Please wait before requesting another code.",
            reason=REASON_RATE_LIMITED,
            retry_after_seconds=max(int((wait_until - now).total_seconds()), 1),
        )

    result = rate_limit.check(
        f"otp-resend:{purpose}:{identifier}", 1, settings.otp_resend_cooldown, settings=settings
    )
    rate_limit.enforce(result, "Please wait before requesting another code.")

    return issue_challenge(identifier, purpose, ip=ip, user_agent=user_agent, settings=settings)


def purge_expired_challenges(older_than: timedelta = timedelta(days=1)) -> int:
    cutoff = datetime.utcnow() - older_than
    count = (
        OTPChallenge.query
        .filter(or_(OTPChallenge.expires_at < cutoff, OTPChallenge.status != OTP_PENDING))
        .filter(OTPChallenge.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return count

"""One-time code challenges: issue, verify, resend."""

import threading
from datetime import datetime, timedelta

import pytest

from models import db
from models.otp_challenge import (
    OTPChallenge,
    OTP_CONSUMED,
    OTP_EXHAUSTED,
    OTP_PENDING,
    OTP_SUPERSEDED,
    OTP_VOID,
)
from security.attempts import (
    REASON_INVALID_OTP,
    REASON_OTP_EXHAUSTED,
    REASON_OTP_EXPIRED,
    REASON_OTP_MISSING,
    log_attempt,
)
from security.errors import AuthenticationError, DeliveryError, RateLimitError
from security.lockout import is_locked_out
from security.otp import (
    Consumed,
    Expired,
    Pending,
    challenge_state,
    issue_challenge,
    purge_expired_challenges,
    resend_challenge,
    verify_challenge,
)
from utils.emailer import mail_outbox

from conftest import last_code

EMAIL = "editor@example.com"


def _wrong(code):
    return "000000" if code != "000000" else "111111"


def test_issue_stores_only_a_hash_and_sends_the_code(app):
    row = issue_challenge(EMAIL)
    code = last_code(EMAIL)

    assert len(code) == 6 and code.isdigit()
    assert code not in row.code_hash
    assert row.status == OTP_PENDING
    assert row.attempts == 0
    assert row.expires_at - row.created_at == timedelta(minutes=5)
    assert isinstance(challenge_state(row), Pending)


def test_verify_consumes_the_challenge_once(app):
    issue_challenge(EMAIL)
    code = last_code(EMAIL)

    row = verify_challenge(EMAIL, code)
    assert row.status == OTP_CONSUMED
    assert row.consumed_at is not None
    assert isinstance(challenge_state(row), Consumed)

    with pytest.raises(AuthenticationError) as exc:
        verify_challenge(EMAIL, code)
    assert exc.value.reason == REASON_OTP_MISSING


def test_concurrent_verifications_consume_once(app):
    issue_challenge(EMAIL)
    code = last_code(EMAIL)
    workers = 6
    barrier = threading.Barrier(workers)
    outcomes = []
    lock = threading.Lock()

    def worker():
        with app.app_context():
            barrier.wait()
            try:
                verify_challenge(EMAIL, code)
                outcome = "ok"
            except AuthenticationError as exc:
                outcome = exc.reason
            with lock:
                outcomes.append(outcome)
            db.session.remove()

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert set(outcomes) == {"ok", REASON_OTP_MISSING}
    assert OTPChallenge.query.filter_by(identifier=EMAIL, status=OTP_CONSUMED).count() == 1


def test_new_challenge_invalidates_the_old_one(app):
    first = issue_challenge(EMAIL)
    old_code = last_code(EMAIL)
    issue_challenge(EMAIL)
    new_code = last_code(EMAIL)

    db.session.refresh(first)
    assert first.status == OTP_SUPERSEDED
    assert OTPChallenge.query.filter_by(identifier=EMAIL, status=OTP_PENDING).count() == 1

    if old_code != new_code:
        with pytest.raises(AuthenticationError):
            verify_challenge(EMAIL, old_code)
    assert verify_challenge(EMAIL, new_code).status == OTP_CONSUMED


def test_expired_challenge_fails_even_with_the_right_code(app):
    row = issue_challenge(EMAIL)
    code = last_code(EMAIL)
    row.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db.session.commit()

    assert isinstance(challenge_state(row), Expired)
    with pytest.raises(AuthenticationError) as exc:
        verify_challenge(EMAIL, code)
    assert exc.value.reason == REASON_OTP_EXPIRED


def test_wrong_codes_count_and_then_burn_the_challenge(app):
    row = issue_challenge(EMAIL)
    code = last_code(EMAIL)

    for _ in range(4):
        with pytest.raises(AuthenticationError) as exc:
            verify_challenge(EMAIL, _wrong(code))
        assert exc.value.reason == REASON_INVALID_OTP

    with pytest.raises(AuthenticationError) as exc:
        verify_challenge(EMAIL, _wrong(code))
    assert exc.value.reason == REASON_OTP_EXHAUSTED

    db.session.refresh(row)
    assert row.status == OTP_EXHAUSTED
    assert row.attempts == 5

    # even the right code is useless now
    with pytest.raises(AuthenticationError):
        verify_challenge(EMAIL, code)


def test_purposes_do_not_interfere(app):
    issue_challenge(EMAIL, "login")
    login_code = last_code(EMAIL)
    issue_challenge(EMAIL, "reset_password")

    assert verify_challenge(EMAIL, login_code, "login").status == OTP_CONSUMED


def test_delivery_failure_raises_and_voids_the_challenge(app):
    app.config["MAIL_SUPPRESS_SEND"] = False
    app.config["SMTP_HOST"] = None

    with pytest.raises(DeliveryError) as exc:
        issue_challenge(EMAIL)

    assert exc.value.status_code == 500
    row = OTPChallenge.query.filter_by(identifier=EMAIL).one()
    assert row.status == OTP_VOID
    assert mail_outbox() == []


def test_resend_requires_a_prior_challenge(app):
    with pytest.raises(AuthenticationError) as exc:
        resend_challenge(EMAIL)
    assert exc.value.reason == REASON_OTP_MISSING


def test_resend_has_its_own_cooldown(app):
    row = issue_challenge(EMAIL)

    with pytest.raises(RateLimitError) as exc:
        resend_challenge(EMAIL)
    assert exc.value.to_dict()["retry_after_seconds"] > 0

    row.created_at = datetime.utcnow() - timedelta(seconds=61)
    db.session.commit()

    resent = resend_challenge(EMAIL)
    assert resent.id != row.id
    assert resent.status == OTP_PENDING
    assert verify_challenge(EMAIL, last_code(EMAIL)).id == resent.id


def test_resend_refused_after_challenge_used(app):
    row = issue_challenge(EMAIL)
    verify_challenge(EMAIL, last_code(EMAIL))
    row.created_at = datetime.utcnow() - timedelta(minutes=2)
    db.session.commit()

    with pytest.raises(AuthenticationError):
        resend_challenge(EMAIL)


def test_resend_leaves_lockout_state_alone(app):
    for _ in range(5):
        log_attempt(EMAIL, False, REASON_INVALID_OTP, ip="1.2.3.4", user_agent="pytest")
    row = issue_challenge(EMAIL)
    row.created_at = datetime.utcnow() - timedelta(minutes=2)
    db.session.commit()

    resend_challenge(EMAIL)

    assert is_locked_out("1.2.3.4")


def test_purge_removes_old_challenges(app):
    old = issue_challenge(EMAIL)
    old.created_at = datetime.utcnow() - timedelta(days=3)
    old.expires_at = old.created_at + timedelta(minutes=5)
    db.session.commit()
    issue_challenge("other@example.com")

    assert purge_expired_challenges() == 1
    assert OTPChallenge.query.count() == 1

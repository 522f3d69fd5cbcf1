from datetime import datetime

from flask import current_app

from security.attempts import REASON_LOCKED_OUT, count_recent_failures, counted_failures_query
from models.login_attempt import LoginAttempt
from security.errors import LockoutError
from security.settings import get_settings


def lockout_status(ip: str, settings=None) -> tuple[bool, int]:
    """
    Returns (locked, seconds_remaining).

    Locked while the IP has LOCKOUT_THRESHOLD counted failures inside the
    lockout window. The cool-down ends once the oldest of those failures
    ages out of the window; denials themselves are not counted, so hammering
    a locked IP does not extend it.
    """
    settings = settings or get_settings()
    now = datetime.utcnow()
    since = now - settings.lockout_window

    if count_recent_failures(ip, since) < settings.lockout_threshold:
        return False, 0

    # the threshold-th most recent failure decides when the count drops below threshold
    pivot = (
        counted_failures_query(ip, since)
        .order_by(LoginAttempt.created_at.desc())
        .offset(settings.lockout_threshold - 1)
        .first()
    )
    unlock_at = pivot.created_at + settings.lockout_window
    seconds = int((unlock_at - now).total_seconds())
    return True, max(seconds, 1)


def is_locked_out(ip: str, settings=None) -> bool:
    locked, _ = lockout_status(ip, settings=settings)
    return locked


def ensure_not_locked_out(ip: str, settings=None):
    locked, seconds_left = lockout_status(ip, settings=settings)
    if locked:
        current_app.logger.warning("IP %s locked out for another %ss", ip, seconds_left)
        raise LockoutError(reason=REASON_LOCKED_OUT, retry_after_seconds=seconds_left)

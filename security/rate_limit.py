from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.rate_limit_window import RateLimitWindow
from security.attempts import REASON_RATE_LIMITED
from security.errors import RateLimitError
from security.settings import get_settings

# Attempts at creating a bucket that another request created first
_MAX_RACE_RETRIES = 3


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    # True when the store was unreachable and the fail-open/closed policy decided
    degraded: bool = False

    def retry_after_seconds(self, now=None) -> int:
        now = now or datetime.utcnow()
        return max(int((self.reset_at - now).total_seconds()), 1)


def check(identifier: str, max_requests: int, window: timedelta, settings=None) -> RateLimitResult:
    """
    Fixed-window counter keyed by identifier. Each call consumes one slot.

    The increment is a conditional UPDATE (count < max inside the live window),
    so concurrent callers can never push more than max_requests through one window.
    If the store fails, the result follows RATE_LIMIT_FAIL_OPEN (default: deny).
    """
    settings = settings or get_settings()
    now = datetime.utcnow()

    try:
        result = _consume(identifier, max_requests, window, now)
        db.session.commit()
        return result
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(
            "Rate limit store unavailable for %s (fail_open=%s)", identifier, settings.rate_limit_fail_open
        )
        if settings.rate_limit_fail_open:
            return RateLimitResult(True, max_requests, now + window, degraded=True)
        return RateLimitResult(False, 0, now + window, degraded=True)


def _consume(identifier: str, max_requests: int, window: timedelta, now: datetime) -> RateLimitResult:
    cutoff = now - window

    for _ in range(_MAX_RACE_RETRIES):
        # Live window with room left
        res = db.session.execute(
            update(RateLimitWindow)
            .where(
                RateLimitWindow.identifier == identifier,
                RateLimitWindow.window_start > cutoff,
                RateLimitWindow.count < max_requests,
            )
            .values(count=RateLimitWindow.count + 1, max_requests=max_requests)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            return _snapshot(identifier, True, max_requests, window)

        # Window elapsed: start a new one with this request in it
        res = db.session.execute(
            update(RateLimitWindow)
            .where(
                RateLimitWindow.identifier == identifier,
                RateLimitWindow.window_start <= cutoff,
            )
            .values(window_start=now, count=1, max_requests=max_requests)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            return _snapshot(identifier, True, max_requests, window)

        row = db.session.execute(
            select(RateLimitWindow.window_start, RateLimitWindow.count)
            .where(RateLimitWindow.identifier == identifier)
        ).first()

        if row is None:
            try:
                db.session.execute(
                    insert(RateLimitWindow).values(
                        identifier=identifier,
                        window_start=now,
                        count=1,
                        max_requests=max_requests,
                    )
                )
                return _snapshot(identifier, True, max_requests, window)
            except IntegrityError:
                # Lost the race to create the bucket; nothing else is pending here
                db.session.rollback()
                continue

        if row.window_start > cutoff and row.count >= max_requests:
            return RateLimitResult(False, 0, row.window_start + window)

    return RateLimitResult(False, 0, now + window)


def _snapshot(identifier: str, allowed: bool, max_requests: int, window: timedelta) -> RateLimitResult:
    row = db.session.execute(
        select(RateLimitWindow.window_start, RateLimitWindow.count)
        .where(RateLimitWindow.identifier == identifier)
    ).one()
    return RateLimitResult(allowed, max(max_requests - row.count, 0), row.window_start + window)


def check_login_rate(ip: str, settings=None) -> RateLimitResult:
    settings = settings or get_settings()
    return check(f"login:{ip}", settings.login_rate_max, settings.login_rate_window, settings=settings)


def enforce(result: RateLimitResult, message=None):
    if result.allowed:
        return
    raise RateLimitError(
        message,
        reason=REASON_RATE_LIMITED,
        remaining=result.remaining,
        retry_after_seconds=result.retry_after_seconds(),
        reset_at=result.reset_at.isoformat() + "Z",
    )

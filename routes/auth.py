import re

from flask import Blueprint, request, jsonify, current_app, g
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.user import User
from security import rate_limit
from security.attempts import (
    REASON_ACCOUNT_INACTIVE,
    REASON_EMAIL_NOT_FOUND,
    REASON_INVALID_REQUEST,
    REASON_SERVER_ERROR,
    STAGE_OTP,
    STAGE_PASSWORD,
    client_ip,
    client_user_agent,
    log_attempt,
)
from security.credentials import normalize_email, verify_credentials
from security.csrf import issue_csrf_token
from security.errors import AuthError, AuthenticationError, AuthorizationError, ValidationError
from security.lockout import ensure_not_locked_out
from security.otp import PURPOSE_LOGIN, issue_challenge, resend_challenge, verify_challenge
from security.password import PASSWORD_MIN_LEN
from security.session import create_session, logout_session
from security.settings import get_settings
from utils.audit import log_event
from utils.auth_context import login_required


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _parse_email(data: dict) -> str:
    email = data.get("email")
    if not isinstance(email, str):
        raise ValidationError("Invalid email", reason=REASON_INVALID_REQUEST)
    email = normalize_email(email)
    if len(email) > 255 or not _EMAIL_RE.match(email):
        raise ValidationError("Invalid email", reason=REASON_INVALID_REQUEST)
    return email


def _parse_password(data: dict) -> str:
    password = data.get("password")
    if not isinstance(password, str) or len(password) < PASSWORD_MIN_LEN:
        raise ValidationError(
            f"Password must be at least {PASSWORD_MIN_LEN} characters", reason=REASON_INVALID_REQUEST
        )
    return password


def _parse_code(data: dict) -> str:
    code = data.get("otp")
    length = get_settings().otp_length
    if not isinstance(code, str) or len(code) != length or not code.isdigit():
        raise ValidationError("Invalid data", reason=REASON_INVALID_REQUEST)
    return code


def _json_object(data) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", reason=REASON_INVALID_REQUEST)
    return data


def _email_hint(data):
    # best-effort email for the audit trail before validation has run
    if not isinstance(data, dict):
        return None
    email = data.get("email")
    if not isinstance(email, str):
        return None
    return normalize_email(email)[:255] or None


@auth_bp.post("/login-request")
def login_request():
    """Step 1: password check, then an emailed one-time code."""
    ip = client_ip()
    user_agent = client_user_agent()
    data = request.get_json(silent=True)
    email = _email_hint(data)

    try:
        rate_limit.enforce(rate_limit.check_login_rate(ip), "Too many login requests. Slow down.")
        ensure_not_locked_out(ip)

        data = _json_object(data)
        email = _parse_email(data)
        password = _parse_password(data)

        user = verify_credentials(email, password)
        issue_challenge(user.email, PURPOSE_LOGIN, ip=ip, user_agent=user_agent)
    except AuthError as exc:
        log_attempt(email, False, exc.reason, STAGE_PASSWORD, ip, user_agent)
        raise
    except SQLAlchemyError:
        db.session.rollback()
        log_attempt(email, False, REASON_SERVER_ERROR, STAGE_PASSWORD, ip, user_agent)
        raise

    log_attempt(email, True, stage=STAGE_PASSWORD, ip=ip, user_agent=user_agent)
    return jsonify(message="A verification code has been sent to your email", email=email), 200


@auth_bp.post("/verify-otp")
def verify_otp():
    """Step 2: the emailed code turns a password check into a session."""
    ip = client_ip()
    user_agent = client_user_agent()
    data = request.get_json(silent=True)
    email = _email_hint(data)

    try:
        rate_limit.enforce(
            rate_limit.check(
                f"verify-otp:{ip}", get_settings().login_rate_max, get_settings().login_rate_window
            ),
            "Too many verification requests. Slow down.",
        )
        ensure_not_locked_out(ip)

        data = _json_object(data)
        email = _parse_email(data)
        code = _parse_code(data)
        verify_challenge(email, code, PURPOSE_LOGIN)

        # the account may have been banned between the two steps
        user = User.query.filter_by(email=email).first()
        if not user:
            raise AuthenticationError(reason=REASON_EMAIL_NOT_FOUND)
        if not user.is_active:
            raise AuthorizationError(reason=REASON_ACCOUNT_INACTIVE)

        sess, raw_token = create_session(user, ip=ip, user_agent=user_agent)
    except AuthError as exc:
        log_attempt(email, False, exc.reason, STAGE_OTP, ip, user_agent)
        raise
    except SQLAlchemyError:
        db.session.rollback()
        log_attempt(email, False, REASON_SERVER_ERROR, STAGE_OTP, ip, user_agent)
        raise

    log_attempt(email, True, stage=STAGE_OTP, ip=ip, user_agent=user_agent)
    log_event("LOGIN_SUCCESS", user_id=user.id, entity="session", entity_id=sess.id)

    settings = get_settings()
    resp = jsonify(
        message="Login successful",
        redirect_url=current_app.config.get("POST_LOGIN_REDIRECT", "/admin"),
    )
    resp.set_cookie(
        settings.auth_cookie_name,
        raw_token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=int(settings.session_lifetime.total_seconds()),
        path="/",
    )
    resp = issue_csrf_token(resp)
    return resp, 200


@auth_bp.post("/resend-otp")
def resend_otp():
    ip = client_ip()
    user_agent = client_user_agent()
    data = request.get_json(silent=True)
    email = _email_hint(data)

    try:
        ensure_not_locked_out(ip)
        email = _parse_email(_json_object(data))
        challenge = resend_challenge(email, PURPOSE_LOGIN, ip=ip, user_agent=user_agent)
    except AuthError as exc:
        log_attempt(email, False, exc.reason, STAGE_OTP, ip, user_agent)
        raise
    except SQLAlchemyError:
        db.session.rollback()
        log_attempt(email, False, REASON_SERVER_ERROR, STAGE_OTP, ip, user_agent)
        raise

    log_event("OTP_RESEND", entity="otp_challenge", entity_id=challenge.id, metadata={"email": email})
    return jsonify(message="A new verification code has been sent"), 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(
        id=g.user.id,
        email=g.user.email,
        name=g.user.name,
        roles=g.user.role_names,
        session_id=g.session.id,
        session_expires_at=g.session.expires_at.isoformat(),
    ), 200


@auth_bp.post("/logout")
@login_required
def logout():
    cookie_name = get_settings().auth_cookie_name
    raw_token = request.cookies.get(cookie_name)

    logout_session(raw_token)
    log_event("LOGOUT", user_id=g.user.id, entity="session", entity_id=g.session.id)

    resp = jsonify(message="Logged out")
    resp.delete_cookie(cookie_name, path="/")
    return resp, 200

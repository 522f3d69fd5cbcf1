from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

EXTENSION_KEY = "auth_settings"


@dataclass(frozen=True)
class AuthSettings:
    """
    Immutable view of the auth-related config, built once when the app
    is created. Call reload_settings() after changing app.config.
    """
    secret_key: str
    auth_cookie_name: str
    session_lifetime: timedelta
    idle_timeout: timedelta
    bcrypt_rounds: int
    login_rate_max: int
    login_rate_window: timedelta
    rate_limit_fail_open: bool
    lockout_threshold: int
    lockout_window: timedelta
    otp_length: int
    otp_ttl: timedelta
    otp_max_attempts: int
    otp_resend_cooldown: timedelta
    otp_resend_grace: timedelta

    @classmethod
    def from_config(cls, config) -> "AuthSettings":
        return cls(
            secret_key=config["SECRET_KEY"],
            auth_cookie_name=config.get("AUTH_COOKIE_NAME", "portal_session"),
            session_lifetime=timedelta(seconds=int(config.get("SESSION_LIFETIME_SECONDS", 28800))),
            idle_timeout=timedelta(seconds=int(config.get("IDLE_TIMEOUT_SECONDS", 1200))),
            bcrypt_rounds=int(config.get("BCRYPT_ROUNDS", 12)),
            login_rate_max=int(config.get("LOGIN_RATE_MAX_REQUESTS", 15)),
            login_rate_window=timedelta(seconds=int(config.get("LOGIN_RATE_WINDOW_SECONDS", 60))),
            rate_limit_fail_open=bool(config.get("RATE_LIMIT_FAIL_OPEN", False)),
            lockout_threshold=int(config.get("LOCKOUT_THRESHOLD", 5)),
            lockout_window=timedelta(minutes=int(config.get("LOCKOUT_WINDOW_MINUTES", 15))),
            otp_length=int(config.get("OTP_LENGTH", 6)),
            otp_ttl=timedelta(seconds=int(config.get("OTP_TTL_SECONDS", 300))),
            otp_max_attempts=int(config.get("OTP_MAX_ATTEMPTS", 5)),
            otp_resend_cooldown=timedelta(seconds=int(config.get("OTP_RESEND_COOLDOWN_SECONDS", 60))),
            otp_resend_grace=timedelta(seconds=int(config.get("OTP_RESEND_GRACE_SECONDS", 1800))),
        )


def init_settings(app) -> AuthSettings:
    settings = AuthSettings.from_config(app.config)
    app.extensions[EXTENSION_KEY] = settings
    return settings


def reload_settings(app=None) -> AuthSettings:
    return init_settings(app or current_app._get_current_object())


def get_settings() -> AuthSettings:
    return current_app.extensions[EXTENSION_KEY]

from security.attempts import (
    REASON_ACCOUNT_INACTIVE,
    REASON_EMAIL_NOT_FOUND,
    REASON_INVALID_PASSWORD,
)
from models.user import User
from security.errors import AuthenticationError, AuthorizationError
from security.password import dummy_hash, verify_password
from security.settings import get_settings


def normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def verify_credentials(email: str, password: str, settings=None) -> User:
    """
    Returns the account for a correct email/password pair.

    Unknown email and wrong password raise the same AuthenticationError;
    only the audit reason differs. An inactive account raises
    AuthorizationError whatever password was given, so that message says
    nothing about the password.
    """
    settings = settings or get_settings()
    email = normalize_email(email)

    user = User.query.filter_by(email=email).first()
    if not user:
        verify_password(password, dummy_hash(settings.bcrypt_rounds))
        raise AuthenticationError(reason=REASON_EMAIL_NOT_FOUND)

    password_ok = verify_password(password, user.password_hash)

    if not user.is_active:
        raise AuthorizationError(reason=REASON_ACCOUNT_INACTIVE)

    if not password_ok:
        raise AuthenticationError(reason=REASON_INVALID_PASSWORD)

    return user

import pytest

from security.attempts import REASON_ACCOUNT_INACTIVE, REASON_EMAIL_NOT_FOUND, REASON_INVALID_PASSWORD
from security.credentials import verify_credentials
from security.errors import AuthenticationError, AuthorizationError, GENERIC_AUTH_MESSAGE
from security.password import hash_password, verify_password

from conftest import PASSWORD


def test_correct_password_returns_account(app, make_user):
    user = make_user("editor@example.com")
    assert verify_credentials("  Editor@Example.com ", PASSWORD).id == user.id


def test_unknown_email_and_wrong_password_look_the_same(app, make_user):
    make_user("editor@example.com")

    with pytest.raises(AuthenticationError) as missing:
        verify_credentials("nobody@example.com", PASSWORD)
    with pytest.raises(AuthenticationError) as wrong:
        verify_credentials("editor@example.com", "not-the-password")

    assert missing.value.to_dict() == wrong.value.to_dict() == {"error": GENERIC_AUTH_MESSAGE}
    assert missing.value.reason == REASON_EMAIL_NOT_FOUND
    assert wrong.value.reason == REASON_INVALID_PASSWORD


def test_inactive_account_is_an_authorization_error(app, make_user):
    make_user("banned@example.com", active=False)

    with pytest.raises(AuthorizationError) as exc:
        verify_credentials("banned@example.com", "whatever-password")

    assert exc.value.status_code == 403
    assert exc.value.reason == REASON_ACCOUNT_INACTIVE


def test_password_hashing_round_trip():
    hashed = hash_password("s3cret-pass", rounds=4)
    assert hashed != "s3cret-pass"
    assert verify_password("s3cret-pass", hashed)
    assert not verify_password("other", hashed)
    assert not verify_password("s3cret-pass", "not-a-bcrypt-hash")
    with pytest.raises(ValueError):
        hash_password("")

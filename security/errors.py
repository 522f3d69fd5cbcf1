"""
Error taxonomy for the login / session flow.

Every error carries two messages: `message` is what the caller sees,
`reason` is what goes into the login-attempt audit trail. Authentication
failures always share one public message so callers cannot tell which
factor was wrong.
"""

GENERIC_AUTH_MESSAGE = "Invalid email or password"
GENERIC_SERVER_MESSAGE = "Internal server error"


class AuthError(Exception):
    status_code = 500
    default_message = GENERIC_SERVER_MESSAGE

    def __init__(self, message=None, reason=None, **payload):
        self.message = message or self.default_message
        self.reason = reason or self.message
        self.payload = payload
        super().__init__(self.reason)

    def to_dict(self) -> dict:
        body = dict(self.payload)
        body["error"] = self.message
        return body


class ValidationError(AuthError):
    status_code = 400
    default_message = "Invalid request"


class AuthenticationError(AuthError):
    status_code = 401
    default_message = GENERIC_AUTH_MESSAGE

    def __init__(self, reason=None, **payload):
        # public message is never customised
        super().__init__(GENERIC_AUTH_MESSAGE, reason=reason, **payload)


class AuthorizationError(AuthError):
    status_code = 403
    default_message = "Your account is inactive. Please contact an administrator."


class RateLimitError(AuthError):
    status_code = 429
    default_message = "Too many requests. Slow down."


class LockoutError(AuthError):
    status_code = 429
    default_message = "Too many failed login attempts. Try again later."


class DeliveryError(AuthError):
    status_code = 500
    default_message = "Could not send the verification code. Please try again."


class NotFoundError(AuthError):
    status_code = 404
    default_message = "Not found"


class InternalError(AuthError):
    status_code = 500
    default_message = GENERIC_SERVER_MESSAGE

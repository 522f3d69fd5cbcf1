import hmac
import secrets
from flask import request, jsonify, current_app

# Double-submit token: readable cookie echoed back in a header
CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"

def issue_csrf_token(resp):
    token = secrets.token_urlsafe(32)
    resp.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,  # must be readable by client JS
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        path="/",
    )
    return resp

def require_csrf():
    cookie_token = request.cookies.get(CSRF_COOKIE) or ""
    header_token = request.headers.get(CSRF_HEADER) or ""
    if not cookie_token or not header_token or not hmac.compare_digest(cookie_token, header_token):
        current_app.logger.warning("CSRF validation failed on %s %s", request.method, request.path)
        return jsonify(error="CSRF validation failed"), 403
    return None

from functools import wraps
from flask import current_app, g, jsonify, request
from models import db
from models.user import User
from security.session import heartbeat, resolve_token
from security.settings import get_settings

def load_current_user():
    g.user = None
    g.session = None

    cookie_name = get_settings().auth_cookie_name
    sess = resolve_token(request.cookies.get(cookie_name))
    if not sess:
        return

    # Update activity timestamp (touch)
    if not heartbeat(sess.id):
        # kicked between the lookup and the touch
        current_app.logger.info("Session %s ended mid-request", sess.id)
        return

    g.session = sess
    g.user = db.session.get(User, sess.user_id)

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper

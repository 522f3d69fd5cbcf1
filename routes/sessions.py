from flask import Blueprint, jsonify, g, request

from models.session import Session
from security.errors import ValidationError
from security.rbac import require_roles
from security.session import (
    DEFAULT_BAN_REASON,
    DEFAULT_KICK_REASON,
    ban_session_owner,
    get_session,
    kick_session,
    list_sessions,
    list_suspicious_sessions,
    session_stats,
    session_to_dict,
)
from utils.audit import log_event

sessions_bp = Blueprint("sessions", __name__, url_prefix="/sessions")


def _body_and_reason(default_reason: str):
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    reason = data.get("reason")
    if reason is not None and not isinstance(reason, str):
        raise ValidationError("Reason must be a string")
    return data, (reason or "").strip()[:255] or default_reason


def _bool_arg(name: str):
    value = request.args.get(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes")


@sessions_bp.get("")
@require_roles("ADMIN")
def list_all():
    if request.args.get("stats") == "true":
        return jsonify(session_stats()), 200
    if request.args.get("suspicious") == "true":
        return jsonify(data=list_suspicious_sessions()), 200

    page = max(request.args.get("page", type=int) or 1, 1)
    limit = request.args.get("limit", type=int) or 20
    limit = max(1, min(limit, 100))

    rows, total = list_sessions(
        search=(request.args.get("search") or "").strip() or None,
        user_id=request.args.get("user_id", type=int),
        is_active=_bool_arg("is_active"),
        ip=request.args.get("ip") or None,
        page=page,
        limit=limit,
    )
    return jsonify(
        data=[session_to_dict(s) for s in rows],
        pagination={
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    ), 200


@sessions_bp.delete("/<session_id>")
@require_roles("ADMIN")
def kick(session_id: str):
    _, reason = _body_and_reason(DEFAULT_KICK_REASON)

    sess: Session = kick_session(session_id, reason=reason, revoked_by=g.user.id)
    log_event(
        "SESSION_KICK",
        user_id=g.user.id,
        entity="session",
        entity_id=sess.id,
        metadata={"target_user_id": sess.user_id, "reason": reason},
    )
    return jsonify(message="Session kicked", session=session_to_dict(sess)), 200


@sessions_bp.post("/<session_id>")
@require_roles("ADMIN")
def act(session_id: str):
    data, reason = _body_and_reason(DEFAULT_BAN_REASON)
    if data.get("action") != "ban":
        raise ValidationError("Invalid action")

    if get_session(session_id).user_id == g.user.id:
        raise ValidationError("You cannot ban your own account")

    user_id, revoked = ban_session_owner(session_id, reason=reason, revoked_by=g.user.id)
    log_event(
        "ACCOUNT_BAN",
        user_id=g.user.id,
        entity="user",
        entity_id=user_id,
        metadata={"session_id": session_id, "reason": reason, "revoked_sessions": revoked},
    )
    return jsonify(
        message="User banned and all sessions kicked",
        user_id=user_id,
        revoked_sessions=revoked,
    ), 200

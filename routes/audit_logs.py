from flask import Blueprint, jsonify, request
from models.audit_log import AuditLog
from security.attempts import recent_attempts
from security.rbac import require_roles

audit_bp = Blueprint("audit", __name__, url_prefix="/audit")


def _limit() -> int:
    limit = request.args.get("limit", type=int) or 200
    return max(1, min(limit, 500))


@audit_bp.get("/logs")
@require_roles("ADMIN")
def list_audit_logs():
    action = request.args.get("action")
    user_id = request.args.get("user_id", type=int)

    q = AuditLog.query
    if action:
        q = q.filter(AuditLog.action == action)
    if user_id is not None:
        q = q.filter(AuditLog.user_id == user_id)

    rows = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(_limit()).all()
    return jsonify([
        {
            "id": r.id,
            "created_at": r.timestamp.isoformat(),
            "user_id": r.user_id,
            "action": r.action,
            "entity": r.entity,
            "entity_id": r.entity_id,
            "ip": r.ip,
            "user_agent": r.user_agent,
            "metadata": r.metadata_json,
        }
        for r in rows
    ]), 200


@audit_bp.get("/login-attempts")
@require_roles("ADMIN")
def list_login_attempts():
    success = request.args.get("success")
    if success is not None:
        success = success.strip().lower() in ("1", "true", "yes")

    rows = recent_attempts(
        ip=request.args.get("ip") or None,
        email=(request.args.get("email") or "").strip().lower() or None,
        success=success,
        limit=_limit(),
    )
    return jsonify([
        {
            "id": r.id,
            "created_at": r.created_at.isoformat(),
            "email": r.email,
            "ip": r.ip,
            "user_agent": r.user_agent,
            "stage": r.stage,
            "success": r.success,
            "failure_reason": r.failure_reason,
        }
        for r in rows
    ]), 200

from flask import Blueprint, jsonify, g, request

from models.audit_log import AuditLog
from security.rbac import require_roles
from services import bookings as booking_service
from utils.audit import log_event
from utils.clock import isoformat
from utils.serializers import dispute_dict, payout_dict

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.get("/disputes")
@require_roles("ADMIN")
def list_disputes():
    rows = booking_service.list_disputes(request.args.get("status"))
    return jsonify(disputes=[dispute_dict(d) for d in rows]), 200


@admin_bp.post("/disputes/<int:dispute_id>/resolve")
@require_roles("ADMIN")
def resolve_dispute(dispute_id: int):
    data = request.get_json(silent=True) or {}
    outcome = (data.get("status") or "").upper()
    note = (data.get("note") or "").strip() or None

    dispute = booking_service.resolve_dispute(dispute_id, outcome, note)

    log_event("DISPUTE_RESOLVE", user_id=g.user.id, entity="dispute", entity_id=dispute_id,
              metadata={"status": outcome})
    return jsonify(dispute=dispute_dict(dispute)), 200


@admin_bp.post("/payouts/<int:payout_id>/mark-paid")
@require_roles("ADMIN")
def mark_payout_paid(payout_id: int):
    data = request.get_json(silent=True) or {}
    payout = booking_service.mark_payout_paid(payout_id, data.get("provider_payout_id"))

    log_event("PAYOUT_PAID", user_id=g.user.id, entity="payout", entity_id=payout_id)
    return jsonify(payout=payout_dict(payout)), 200


@admin_bp.get("/audit-logs")
@require_roles("ADMIN")
def list_audit_logs():
    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, 500))

    action = request.args.get("action")
    user_id = request.args.get("user_id", type=int)

    q = AuditLog.query
    if action:
        q = q.filter(AuditLog.action == action)
    if user_id is not None:
        q = q.filter(AuditLog.user_id == user_id)

    rows = q.order_by(AuditLog.timestamp.desc()).limit(limit).all()
    return jsonify([
        {
            "id": r.id,
            "timestamp": isoformat(r.timestamp),
            "user_id": r.user_id,
            "action": r.action,
            "entity": r.entity,
            "entity_id": r.entity_id,
            "source": r.source,
            "ip": r.ip,
            "metadata": r.metadata_json,
        }
        for r in rows
    ]), 200

from flask import Blueprint, request, jsonify, g, make_response

from security.rbac import require_roles
from services import bookings as booking_service
from utils.audit import log_event
from utils.auth_context import login_required
from utils.errors import Forbidden, ValidationError
from utils.serializers import booking_dict, dispute_dict, payment_dict, payout_dict

booking_bp = Blueprint("booking", __name__, url_prefix="/bookings")


def _require_str(data: dict, key: str, min_len: int = 1) -> str:
    value = (data.get(key) or "").strip() if isinstance(data.get(key), str) else ""
    if len(value) < min_len:
        raise ValidationError(message=f"{key} is required")
    return value


# ---------- LEARNER: book a one-time slot ----------
@booking_bp.post("")
@require_roles("LEARNER")
def create_booking():
    data = request.get_json(silent=True) or {}
    slot_id = data.get("slot_id")
    if not isinstance(slot_id, int):
        raise ValidationError(message="slot_id required")

    result = booking_service.create_booking(slot_id, g.user.id)
    booking = result["booking"]

    log_event("BOOKING_CREATE", user_id=g.user.id, entity="booking", entity_id=booking.id,
              metadata={"slot_id": slot_id, "order_id": result["checkout"]["order_id"]})
    return jsonify(
        booking=booking_dict(booking),
        payment=payment_dict(result["payment"]),
        razorpay=result["checkout"],
    ), 201


# ---------- both parties: my bookings ----------
@booking_bp.get("/me")
@login_required
def my_bookings():
    as_role = (request.args.get("as") or "").upper()
    if not as_role:
        as_role = "MENTOR" if g.user.has_role("MENTOR") and not g.user.has_role("LEARNER") else "LEARNER"
    if as_role not in ("MENTOR", "LEARNER"):
        raise ValidationError("invalid_role")
    if not g.user.has_role(as_role) and not g.user.has_role("ADMIN"):
        raise Forbidden()

    rows = booking_service.list_bookings(g.user.id, as_role)
    return jsonify(bookings=[booking_dict(b, booking_service.payment_for(b.id)) for b in rows]), 200


@booking_bp.get("/<int:booking_id>/receipt")
@login_required
def receipt(booking_id: int):
    text = booking_service.render_receipt(booking_id, g.user.id)
    resp = make_response(text, 200)
    resp.headers["Content-Type"] = "text/plain; charset=utf-8"
    resp.headers["Content-Disposition"] = f'attachment; filename="mentorslot-receipt-{booking_id}.txt"'
    return resp


# ---------- LEARNER: confirm after client checkout ----------
@booking_bp.post("/<int:booking_id>/confirm-payment")
@require_roles("LEARNER")
def confirm_payment(booking_id: int):
    data = request.get_json(silent=True) or {}
    order_id = _require_str(data, "razorpay_order_id")
    payment_id = _require_str(data, "razorpay_payment_id")
    signature = _require_str(data, "razorpay_signature")

    payment = booking_service.confirm_payment(
        booking_id, g.user.id, order_id, payment_id, signature, method=data.get("method")
    )

    log_event("PAYMENT_CONFIRM", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"payment_id": payment.id, "provider_payment_id": payment_id})
    return jsonify(payment=payment_dict(payment)), 200


@booking_bp.post("/<int:booking_id>/cancel")
@login_required
def cancel_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or None
    if reason is not None and not 3 <= len(reason) <= 500:
        raise ValidationError(message="reason must be 3-500 characters")

    booking = booking_service.cancel_booking(booking_id, g.user.id, reason)

    log_event("BOOKING_CANCEL", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"reason": reason})
    return jsonify(booking=booking_dict(booking)), 200


# ---------- MENTOR: meeting link / completion ----------
@booking_bp.patch("/<int:booking_id>/meeting-link")
@require_roles("MENTOR")
def set_meeting_link(booking_id: int):
    data = request.get_json(silent=True) or {}
    link = _require_str(data, "meeting_link")
    if not link.startswith(("https://", "http://")):
        raise ValidationError(message="meeting_link must be a URL")

    booking = booking_service.set_meeting_link(booking_id, g.user.id, link)

    log_event("BOOKING_MEETING_LINK", user_id=g.user.id, entity="booking", entity_id=booking_id)
    return jsonify(booking=booking_dict(booking)), 200


@booking_bp.post("/<int:booking_id>/complete")
@require_roles("MENTOR")
def complete_booking(booking_id: int):
    booking, payout = booking_service.complete_booking(booking_id, g.user.id)

    log_event("BOOKING_COMPLETE", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"payout_id": payout.id, "amount": payout.amount})
    return jsonify(booking=booking_dict(booking), payout=payout_dict(payout)), 200


@booking_bp.post("/<int:booking_id>/dispute")
@login_required
def raise_dispute(booking_id: int):
    data = request.get_json(silent=True) or {}
    dispute = booking_service.raise_dispute(booking_id, g.user.id, data.get("reason"))

    log_event("DISPUTE_CREATE", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"dispute_id": dispute.id})
    return jsonify(dispute=dispute_dict(dispute)), 201


@booking_bp.post("/<int:booking_id>/sync-calendar")
@login_required
def sync_calendar(booking_id: int):
    result = booking_service.sync_calendar(booking_id, g.user.id)
    return jsonify(synced=True, **result), 200

"""
Booking/payment orchestrator.

Drives Booking x Payment through their state machine. Every multi-row effect
runs inside one `atomic()` block and every status change is a guarded UPDATE,
so the webhook, the scheduler and a client confirm can race on the same rows
and still apply each transition exactly once.
"""
import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import db, atomic, end_read_transaction
from models.availability_rule import SlotMode
from models.booking import Booking, BookingStatus
from models.dispute import Dispute, DisputeStatus
from models.payment import Payment, PaymentStatus
from models.payout import Payout, PayoutStatus
from models.slot import Slot, SlotStatus
from models.user import User
from services.calendar_sync import dispatch_calendar_sync, sync_calendar_for_booking
from services.gateway import get_gateway
from services.reservation import release_slot, reserve_one_time_slot, transition_slot
from utils.clock import utcnow
from utils.errors import (
    CalendarNotLinked,
    CancelNotAllowed,
    CancelWindowPassed,
    Forbidden,
    InvalidSignature,
    InvalidState,
    NotFound,
    OrderMismatch,
    PaymentMissing,
    PaymentNotAuthorized,
    ValidationError,
)

logger = logging.getLogger(__name__)

DISPUTE_REASON_MIN = 10
DISPUTE_REASON_MAX = 2000


# ---------- lookups ----------

def get_booking(booking_id: int) -> Booking:
    booking = db.session.get(Booking, booking_id)
    if not booking:
        raise NotFound("booking_not_found")
    return booking


def payment_for(booking_id: int):
    return (
        Payment.query
        .filter_by(booking_id=booking_id)
        .order_by(Payment.id.desc())
        .first()
    )


def _require_party(booking: Booking, user_id: int):
    if user_id not in (booking.mentor_id, booking.learner_id):
        raise Forbidden()


def compute_payout(price: int, commission_rate: float, platform_fee: int) -> int:
    """price - round(price * rate) - fee, rounding half away from zero."""
    commission = (Decimal(price) * Decimal(str(commission_rate))).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return price - int(commission) - platform_fee


# ---------- create ----------

def create_booking(slot_id: int, learner_id: int) -> dict:
    booking, payment, order = reserve_one_time_slot(slot_id, learner_id)
    return {
        "booking": booking,
        "payment": payment,
        "checkout": {
            "key_id": get_gateway().public_key_id(),
            "order_id": order["id"],
            "amount": order.get("amount", payment.amount * 100),
            "currency": order.get("currency", payment.currency),
        },
    }


# ---------- capture ----------

def apply_capture(payment_id: int, provider_payment_id=None, method=None, raw=None) -> bool:
    """
    Payment -> CAPTURED, Booking -> CONFIRMED, Slot -> BOOKED.
    Joins the caller's transaction. Returns False when the payment had already
    left CREATED/AUTHORIZED, which callers treat as "already applied".
    """
    values = {Payment.status: PaymentStatus.CAPTURED, Payment.captured_at: utcnow()}
    if provider_payment_id:
        values[Payment.provider_payment_id] = provider_payment_id
    if method:
        values[Payment.method] = method
    if raw is not None:
        values[Payment.raw] = raw

    updated = (
        Payment.query
        .filter(Payment.id == payment_id, Payment.status.in_(PaymentStatus.OPEN))
        .update(values, synchronize_session="fetch")
    )
    if not updated:
        return False

    payment = db.session.get(Payment, payment_id)
    booking = db.session.get(Booking, payment.booking_id) if payment.booking_id else None
    if booking:
        Booking.query.filter(
            Booking.id == booking.id, Booking.status == BookingStatus.PENDING
        ).update({Booking.status: BookingStatus.CONFIRMED}, synchronize_session="fetch")
        transition_slot(booking.slot_id, (SlotStatus.AVAILABLE, SlotStatus.RESERVED), SlotStatus.BOOKED)
    return True


def confirm_payment(booking_id: int, learner_id: int, order_id: str, payment_id: str,
                    signature: str, method=None) -> Payment:
    booking = get_booking(booking_id)
    if booking.learner_id != learner_id:
        raise Forbidden()

    payment = payment_for(booking.id)
    if not payment:
        raise PaymentMissing()
    if payment.provider_order_id != order_id:
        raise OrderMismatch()
    if not get_gateway().verify_checkout_signature(order_id, payment_id, signature):
        raise InvalidSignature()

    if payment.status == PaymentStatus.CAPTURED:
        return payment
    if payment.status == PaymentStatus.FAILED or booking.status == BookingStatus.CANCELED:
        raise InvalidState("payment_not_capturable")

    with atomic():
        applied = apply_capture(payment.id, provider_payment_id=payment_id, method=method)
    if not applied:
        # lost a race with the webhook or the sweep; report whatever they settled on
        db.session.refresh(payment)
        if payment.status != PaymentStatus.CAPTURED:
            raise InvalidState("payment_not_capturable")
        return payment

    logger.info("payment %s captured via client confirm for booking %s", payment.id, booking.id)
    dispatch_calendar_sync(booking.id)
    return payment


def capture_authorized_payment(payment_id: int) -> Payment:
    """Capture at the gateway, then apply locally. Shared by the webhook and the sweep."""
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFound("payment_not_found")
    if payment.status == PaymentStatus.CAPTURED:
        return payment
    if payment.status != PaymentStatus.AUTHORIZED or not payment.provider_payment_id:
        raise PaymentNotAuthorized()

    capture_args = (payment.provider_payment_id, payment.amount, payment.currency)
    end_read_transaction()
    result = get_gateway().capture_payment(*capture_args)

    with atomic():
        applied = apply_capture(payment_id, method=(result or {}).get("method"))
    if applied and payment.booking_id:
        dispatch_calendar_sync(payment.booking_id)
    return payment


def cancel_unpaid_booking(payment_id: int) -> bool:
    """Hold window expired: fail the payment, cancel the booking, free the slot."""
    with atomic():
        failed = (
            Payment.query
            .filter(Payment.id == payment_id, Payment.status == PaymentStatus.CREATED)
            .update({Payment.status: PaymentStatus.FAILED}, synchronize_session="fetch")
        )
        if not failed:
            return False

        payment = db.session.get(Payment, payment_id)
        booking = db.session.get(Booking, payment.booking_id) if payment.booking_id else None
        if booking:
            canceled = Booking.query.filter(
                Booking.id == booking.id, Booking.status == BookingStatus.PENDING
            ).update({
                Booking.status: BookingStatus.CANCELED,
                Booking.canceled_at: utcnow(),
                Booking.cancel_reason: "payment_timeout",
            }, synchronize_session="fetch")
            if canceled:
                release_slot(booking.slot_id)
    return True


# ---------- cancel / complete / dispute ----------

def cancel_booking(booking_id: int, user_id: int, reason=None) -> Booking:
    booking = get_booking(booking_id)
    _require_party(booking, user_id)

    if booking.status == BookingStatus.CANCELED:
        raise InvalidState("already_canceled")
    if booking.status in (BookingStatus.COMPLETED, BookingStatus.DISPUTED):
        raise InvalidState()

    slot = db.session.get(Slot, booking.slot_id)
    payment = payment_for(booking.id)
    if slot and slot.mode == SlotMode.ONE_TIME and payment and payment.status == PaymentStatus.CAPTURED:
        raise CancelNotAllowed()

    cutoff = booking.scheduled_start_at - timedelta(hours=current_app.config.get("CANCEL_CUTOFF_HOURS", 24))
    if utcnow() >= cutoff:
        raise CancelWindowPassed()

    with atomic():
        updated = Booking.query.filter(
            Booking.id == booking.id, Booking.status.in_((BookingStatus.PENDING, BookingStatus.CONFIRMED))
        ).update({
            Booking.status: BookingStatus.CANCELED,
            Booking.canceled_at: utcnow(),
            Booking.cancel_reason: reason,
        }, synchronize_session="fetch")
        if not updated:
            raise InvalidState()
        release_slot(booking.slot_id)
        Payment.query.filter(
            Payment.booking_id == booking.id, Payment.status.in_(PaymentStatus.OPEN)
        ).update({Payment.status: PaymentStatus.FAILED}, synchronize_session="fetch")
    return booking


def complete_booking(booking_id: int, mentor_id: int):
    booking = get_booking(booking_id)
    if booking.mentor_id != mentor_id:
        raise Forbidden()
    if booking.status != BookingStatus.CONFIRMED:
        raise InvalidState()

    amount = compute_payout(booking.price, booking.commission_rate, booking.platform_fee)
    try:
        with atomic():
            updated = Booking.query.filter(
                Booking.id == booking.id, Booking.status == BookingStatus.CONFIRMED
            ).update({Booking.status: BookingStatus.COMPLETED}, synchronize_session="fetch")
            if not updated:
                raise InvalidState()
            payout = Payout(
                booking_id=booking.id,
                mentor_id=booking.mentor_id,
                provider=get_gateway().provider,
                amount=amount,
                status=PayoutStatus.SCHEDULED,
                scheduled_for=utcnow(),
            )
            db.session.add(payout)
    except IntegrityError as exc:
        raise InvalidState("payout_exists") from exc
    return booking, payout


def raise_dispute(booking_id: int, user_id: int, reason: str) -> Dispute:
    reason = (reason or "").strip()
    if not DISPUTE_REASON_MIN <= len(reason) <= DISPUTE_REASON_MAX:
        raise ValidationError(
            message=f"reason must be {DISPUTE_REASON_MIN}-{DISPUTE_REASON_MAX} characters"
        )

    booking = get_booking(booking_id)
    _require_party(booking, user_id)

    with atomic():
        updated = Booking.query.filter(
            Booking.id == booking.id,
            Booking.status.in_((BookingStatus.PENDING, BookingStatus.CONFIRMED)),
        ).update({Booking.status: BookingStatus.DISPUTED}, synchronize_session="fetch")
        if not updated:
            raise InvalidState()
        dispute = Dispute(booking_id=booking.id, raised_by_id=user_id, reason=reason)
        db.session.add(dispute)
    return dispute


def resolve_dispute(dispute_id: int, outcome: str, note=None) -> Dispute:
    if outcome not in DisputeStatus.FINAL:
        raise ValidationError(message="outcome must be RESOLVED or REJECTED")
    dispute = db.session.get(Dispute, dispute_id)
    if not dispute:
        raise NotFound("dispute_not_found")
    if dispute.status in DisputeStatus.FINAL:
        raise InvalidState("dispute_closed")

    with atomic():
        dispute.status = outcome
        dispute.resolution_note = note
        dispute.resolved_at = utcnow()
    return dispute


def list_disputes(status=None):
    q = Dispute.query
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Dispute.created_at.desc()).limit(200).all()


# ---------- payouts ----------

def list_payouts(mentor_id: int):
    return Payout.query.filter_by(mentor_id=mentor_id).order_by(Payout.created_at.desc()).all()


def mark_payout_paid(payout_id: int, provider_payout_id=None) -> Payout:
    payout = db.session.get(Payout, payout_id)
    if not payout:
        raise NotFound("payout_not_found")
    if payout.status == PayoutStatus.PAID:
        raise InvalidState("payout_already_paid")

    with atomic():
        payout.status = PayoutStatus.PAID
        payout.provider_payout_id = provider_payout_id
        payout.processed_at = utcnow()
    return payout


# ---------- misc booking operations ----------

def list_bookings(user_id: int, as_role: str):
    if as_role == "MENTOR":
        q = Booking.query.filter_by(mentor_id=user_id)
    else:
        q = Booking.query.filter_by(learner_id=user_id)
    return q.order_by(Booking.scheduled_start_at.desc()).all()


def set_meeting_link(booking_id: int, mentor_id: int, link: str) -> Booking:
    booking = get_booking(booking_id)
    if booking.mentor_id != mentor_id:
        raise Forbidden()
    with atomic():
        booking.meeting_link = link
        booking.meeting_link_added_at = utcnow()
    return booking


def render_receipt(booking_id: int, user_id: int) -> str:
    booking = get_booking(booking_id)
    _require_party(booking, user_id)

    payment = payment_for(booking.id)
    if not payment or payment.status != PaymentStatus.CAPTURED:
        raise InvalidState("receipt_not_ready")

    mentor = db.session.get(User, booking.mentor_id)
    learner = db.session.get(User, booking.learner_id)
    lines = [
        "MentorSlot Payment Receipt",
        f"Booking ID: {booking.id}",
        f"Mentor: {mentor.name} ({mentor.email})",
        f"Learner: {learner.name} ({learner.email})",
        f"Session Time: {booking.scheduled_start_at.isoformat()}Z",
        f"Amount: {payment.currency} {booking.price}",
        f"Payment Status: {payment.status}",
        f"Razorpay Order ID: {payment.provider_order_id or 'N/A'}",
        f"Razorpay Payment ID: {payment.provider_payment_id or 'N/A'}",
        f"Captured At: {payment.captured_at.isoformat() + 'Z' if payment.captured_at else 'N/A'}",
    ]
    return "\n".join(lines)


def sync_calendar(booking_id: int, user_id: int) -> dict:
    booking = get_booking(booking_id)
    _require_party(booking, user_id)
    result = sync_calendar_for_booking(booking.id)
    if not result["mentor_added"] and not result["learner_added"]:
        raise CalendarNotLinked()
    return result

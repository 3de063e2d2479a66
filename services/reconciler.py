"""
Webhook reconciler: applies Razorpay events to the ledger.

The provider retries anything that is not a 2xx, so apart from a bad signature
every outcome here is an acknowledgement: unknown events, lookup misses and
events that were already applied all return normally.
"""
import json
import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from models import db, atomic
from models.availability_rule import AvailabilityRule
from models.booking import Booking, BookingStatus
from models.payment import Payment, PaymentStatus
from models.slot import SlotStatus
from models.subscription import Subscription, SubscriptionStatus
from services.bookings import apply_capture, capture_authorized_payment
from services.calendar_sync import dispatch_calendar_sync
from services.gateway import get_gateway
from services.reservation import (
    new_pending_booking,
    open_chat_thread,
    release_slot,
    reserve_next_slot,
    transition_slot,
)
from utils.clock import from_epoch, utcnow
from utils.errors import ApiError, InvalidSignature, SlotUnavailable

logger = logging.getLogger(__name__)

SUBSCRIPTION_STATUS_BY_EVENT = {
    "subscription.activated": SubscriptionStatus.ACTIVE,
    "subscription.paused": SubscriptionStatus.PAUSED,
    "subscription.resumed": SubscriptionStatus.ACTIVE,
    "subscription.cancelled": SubscriptionStatus.CANCELED,
    "subscription.completed": SubscriptionStatus.CANCELED,
    "subscription.pending": SubscriptionStatus.PAST_DUE,
    "subscription.halted": SubscriptionStatus.PAST_DUE,
}


def handle_provider_event(raw: bytes, signature: str) -> dict:
    """Verify and apply one webhook delivery. Returns the acknowledgement body."""
    if not get_gateway().verify_webhook_signature(raw, signature):
        raise InvalidSignature()

    try:
        event = json.loads(raw)
    except ValueError:
        logger.warning("webhook body is not JSON; acknowledged and ignored")
        return {"received": True, "event": None}
    if not isinstance(event, dict):
        return {"received": True, "event": None}

    name = event.get("event") or ""
    payload = event.get("payload") or {}
    payment_entity = (payload.get("payment") or {}).get("entity")
    subscription_entity = (payload.get("subscription") or {}).get("entity")

    if name in ("payment.authorized", "payment.captured", "payment.failed"):
        if payment_entity:
            _handle_payment_event(name, payment_entity)
    elif name == "subscription.charged":
        if subscription_entity and payment_entity:
            _handle_subscription_charged(subscription_entity, payment_entity)
    elif name in SUBSCRIPTION_STATUS_BY_EVENT:
        if subscription_entity:
            _handle_subscription_status(name, subscription_entity)
    else:
        logger.info("ignoring webhook event %r", name)

    return {"received": True, "event": name}


# ---------- payments ----------

def _find_payment(entity: dict):
    conditions = []
    if entity.get("id"):
        conditions.append(Payment.provider_payment_id == entity["id"])
    if entity.get("order_id"):
        conditions.append(Payment.provider_order_id == entity["order_id"])
    if not conditions:
        return None
    return Payment.query.filter(or_(*conditions)).order_by(Payment.id.desc()).first()


def _handle_payment_event(name: str, entity: dict):
    payment = _find_payment(entity)
    if not payment:
        logger.info("%s for unknown payment %s; ignored", name, entity.get("id"))
        return

    if name == "payment.authorized":
        _on_payment_authorized(payment, entity)
    elif name == "payment.captured":
        with atomic():
            applied = apply_capture(
                payment.id,
                provider_payment_id=entity.get("id"),
                method=entity.get("method"),
                raw=entity,
            )
        if applied and payment.booking_id:
            dispatch_calendar_sync(payment.booking_id)
    else:
        _on_payment_failed(payment, entity)


def _on_payment_authorized(payment: Payment, entity: dict):
    if payment.status not in PaymentStatus.OPEN:
        return

    capture_at = payment.capture_scheduled_for
    if capture_at is None and payment.booking_id:
        booking = db.session.get(Booking, payment.booking_id)
        offset = timedelta(hours=current_app.config.get("CAPTURE_OFFSET_HOURS", 24))
        capture_at = booking.scheduled_start_at - offset

    with atomic():
        updated = (
            Payment.query
            .filter(Payment.id == payment.id, Payment.status.in_(PaymentStatus.OPEN))
            .update({
                Payment.status: PaymentStatus.AUTHORIZED,
                Payment.provider_payment_id: entity.get("id"),
                Payment.method: entity.get("method"),
                Payment.raw: entity,
                Payment.capture_scheduled_for: capture_at,
            }, synchronize_session="fetch")
        )
    if not updated or capture_at is None or capture_at > utcnow():
        return

    try:
        capture_authorized_payment(payment.id)
    except ApiError as exc:
        logger.warning("immediate capture of payment %s failed, sweep will retry: %s", payment.id, exc)


def _on_payment_failed(payment: Payment, entity: dict):
    if payment.status == PaymentStatus.CAPTURED:
        return

    with atomic():
        failed = (
            Payment.query
            .filter(Payment.id == payment.id, Payment.status.in_(PaymentStatus.OPEN))
            .update({Payment.status: PaymentStatus.FAILED, Payment.raw: entity}, synchronize_session="fetch")
        )
        if not failed or not payment.booking_id:
            return
        booking = db.session.get(Booking, payment.booking_id)
        canceled = Booking.query.filter(
            Booking.id == booking.id, Booking.status == BookingStatus.PENDING
        ).update({
            Booking.status: BookingStatus.CANCELED,
            Booking.canceled_at: utcnow(),
            Booking.cancel_reason: "payment_failed",
        }, synchronize_session="fetch")
        if canceled:
            release_slot(booking.slot_id)


# ---------- subscriptions ----------

def _find_subscription(entity: dict):
    if not entity.get("id"):
        return None
    return Subscription.query.filter_by(provider_subscription_id=entity["id"]).first()


def _refresh_timestamps(sub: Subscription, entity: dict):
    if entity.get("start_at"):
        sub.start_at = from_epoch(entity["start_at"])
    if entity.get("end_at"):
        sub.end_at = from_epoch(entity["end_at"])
    if entity.get("charge_at"):
        sub.next_charge_at = from_epoch(entity["charge_at"])


def _handle_subscription_status(name: str, entity: dict):
    sub = _find_subscription(entity)
    if not sub:
        logger.info("%s for unknown subscription %s; ignored", name, entity.get("id"))
        return
    if sub.status == SubscriptionStatus.CANCELED:
        return

    status = SUBSCRIPTION_STATUS_BY_EVENT[name]
    with atomic():
        sub.status = status
        if status == SubscriptionStatus.CANCELED:
            sub.canceled_at = utcnow()
        elif status == SubscriptionStatus.ACTIVE:
            sub.pause_until = None
        _refresh_timestamps(sub, entity)


def _already_recorded(provider_payment_id) -> bool:
    if not provider_payment_id:
        return False
    return Payment.query.filter_by(provider_payment_id=provider_payment_id).first() is not None


def _handle_subscription_charged(sub_entity: dict, pay_entity: dict):
    """
    Renewal fan-out: record the charge, confirm the current booking and roll
    the subscription onto the next occurrence of its rule, all in one transaction.
    """
    sub = _find_subscription(sub_entity)
    if not sub:
        logger.info("charge for unknown subscription %s; ignored", sub_entity.get("id"))
        return

    provider_payment_id = pay_entity.get("id")
    if not provider_payment_id:
        # without a payment id a redelivery cannot be told apart from a new charge
        logger.warning("charge for subscription %s carries no payment id; ignored", sub.id)
        return
    if _already_recorded(provider_payment_id):
        return

    next_booking_id = None
    try:
        with atomic():
            sub = db.session.get(Subscription, sub.id, with_for_update=True, populate_existing=True)
            if _already_recorded(provider_payment_id):
                return

            current = db.session.get(Booking, sub.booking_id) if sub.booking_id else None
            amount_paise = pay_entity.get("amount")
            db.session.add(Payment(
                booking_id=current.id if current else None,
                provider=sub.provider,
                provider_order_id=pay_entity.get("order_id"),
                provider_payment_id=provider_payment_id,
                method=pay_entity.get("method"),
                amount=amount_paise // 100 if amount_paise is not None else sub.price,
                currency=pay_entity.get("currency") or current_app.config.get("PAYMENT_CURRENCY", "INR"),
                status=PaymentStatus.CAPTURED,
                captured_at=utcnow(),
                raw=pay_entity,
            ))
            db.session.flush()

            if current:
                confirmed = Booking.query.filter(
                    Booking.id == current.id, Booking.status == BookingStatus.PENDING
                ).update({Booking.status: BookingStatus.CONFIRMED}, synchronize_session="fetch")
                if confirmed:
                    transition_slot(current.slot_id, (SlotStatus.AVAILABLE, SlotStatus.RESERVED), SlotStatus.BOOKED)
                else:
                    logger.info("booking %s is %s; charge recorded without confirming it", current.id, current.status)
                next_booking_id = _roll_forward(sub, current)

            if sub.status in (SubscriptionStatus.CREATED, SubscriptionStatus.PAST_DUE):
                sub.status = SubscriptionStatus.ACTIVE
            _refresh_timestamps(sub, sub_entity)
    except IntegrityError:
        logger.info("charge %s already applied", provider_payment_id)
        return

    logger.info("subscription %s charged (%s); next booking %s", sub.id, provider_payment_id, next_booking_id)
    if next_booking_id:
        dispatch_calendar_sync(next_booking_id)


def _roll_forward(sub: Subscription, current: Booking):
    if sub.status == SubscriptionStatus.CANCELED:
        return None
    rule = db.session.get(AvailabilityRule, sub.rule_id) if sub.rule_id else None
    if not rule:
        logger.warning("subscription %s has no rule left; confirmed current booking only", sub.id)
        return None

    try:
        slot = reserve_next_slot(rule, current.scheduled_start_at)
    except SlotUnavailable as exc:
        logger.warning("subscription %s could not roll forward: %s", sub.id, exc)
        return None

    booking = new_pending_booking(slot, sub.learner_id)
    open_chat_thread(booking)
    sub.booking_id = booking.id
    return booking.id

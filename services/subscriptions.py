"""
Weekly subscriptions on RECURRING rules.

A subscription always points at the booking its next charge will confirm.
Creation writes the local rows first and only then opens the provider plan and
subscription; if the gateway refuses, a compensating transaction unwinds the
local rows so the slot is free again.
"""
import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import db, atomic, end_read_transaction
from models.availability_rule import AvailabilityRule, SlotMode
from models.booking import Booking, BookingStatus
from models.subscription import Subscription, SubscriptionStatus
from services.calendar_sync import dispatch_calendar_sync
from services.gateway import get_gateway
from services.reservation import (
    new_pending_booking,
    open_chat_thread,
    release_slot,
    reserve_next_slot,
)
from utils.clock import utcnow
from utils.errors import (
    Forbidden,
    GatewayUnavailable,
    InvalidState,
    NotFound,
    RuleUnavailable,
    SubscriptionNotReady,
    ValidationError,
)

logger = logging.getLogger(__name__)

# the provider rejects a start_at that is not safely in the future
MIN_START_LEAD = timedelta(minutes=5)


def get_subscription(subscription_id: int) -> Subscription:
    sub = db.session.get(Subscription, subscription_id)
    if not sub:
        raise NotFound("subscription_not_found")
    return sub


def list_subscriptions(user_id: int):
    return (
        Subscription.query
        .filter((Subscription.learner_id == user_id) | (Subscription.mentor_id == user_id))
        .order_by(Subscription.created_at.desc())
        .all()
    )


def create_subscription(rule_id: int, learner_id: int):
    cfg = current_app.config
    rule = db.session.get(AvailabilityRule, rule_id)
    if not rule or not rule.active or rule.mode != SlotMode.RECURRING:
        raise NotFound("rule_not_found")

    live = Subscription.query.filter(
        Subscription.rule_id == rule.id, Subscription.status.in_(SubscriptionStatus.LIVE)
    ).first()
    if live:
        raise RuleUnavailable(message="rule already has an active subscription")

    now = utcnow()
    try:
        with atomic():
            slot = reserve_next_slot(rule, now)
            booking = new_pending_booking(slot, learner_id)
            open_chat_thread(booking)
            sub = Subscription(
                mentor_id=rule.mentor_id,
                learner_id=learner_id,
                rule_id=rule.id,
                booking_id=booking.id,
                provider=get_gateway().provider,
                status=SubscriptionStatus.CREATED,
                price=rule.price,
            )
            db.session.add(sub)
    except IntegrityError as exc:
        raise RuleUnavailable(message="rule already has an active subscription") from exc

    gateway = get_gateway()
    start_at = max(
        booking.scheduled_start_at - timedelta(hours=cfg.get("CAPTURE_OFFSET_HOURS", 24)),
        now + MIN_START_LEAD,
    )
    sub_id, booking_id = sub.id, booking.id
    plan_name, price = f"{rule.title} (weekly)", rule.price
    end_read_transaction()

    try:
        plan_id = gateway.create_plan(
            name=plan_name,
            amount=price,
            currency=cfg.get("PAYMENT_CURRENCY", "INR"),
        )
        provider_sub = gateway.create_subscription(
            plan_id=plan_id,
            start_at=start_at,
            total_count=cfg.get("SUBSCRIPTION_TOTAL_COUNT", 999),
            notes={"rule_id": rule_id, "learner_id": learner_id, "subscription_id": sub_id},
        )
    except GatewayUnavailable:
        logger.warning("gateway refused subscription %s; unwinding local rows", sub_id)
        _unwind_failed_create(sub_id, booking_id)
        raise

    with atomic():
        sub.provider_plan_id = plan_id
        sub.provider_subscription_id = provider_sub["id"]
        sub.start_at = start_at

    dispatch_calendar_sync(booking_id)
    return sub, booking, provider_sub


def _unwind_failed_create(subscription_id: int, booking_id: int):
    with atomic():
        Subscription.query.filter_by(id=subscription_id).update(
            {Subscription.status: SubscriptionStatus.CANCELED, Subscription.canceled_at: utcnow()},
            synchronize_session="fetch",
        )
        booking = db.session.get(Booking, booking_id)
        Booking.query.filter(
            Booking.id == booking_id, Booking.status == BookingStatus.PENDING
        ).update({
            Booking.status: BookingStatus.CANCELED,
            Booking.canceled_at: utcnow(),
            Booking.cancel_reason: "subscription_setup_failed",
        }, synchronize_session="fetch")
        release_slot(booking.slot_id)


def _provider_id_for_call(sub: Subscription) -> str:
    if sub.status == SubscriptionStatus.CANCELED:
        raise InvalidState("subscription_canceled")
    if not sub.provider_subscription_id:
        raise SubscriptionNotReady()
    provider_id = sub.provider_subscription_id
    end_read_transaction()
    return provider_id


def pause_subscription(subscription_id: int, user_id: int, weeks: int) -> Subscription:
    max_weeks = current_app.config.get("SUBSCRIPTION_MAX_PAUSE_WEEKS", 4)
    if not isinstance(weeks, int) or not 1 <= weeks <= max_weeks:
        raise ValidationError(message=f"weeks must be between 1 and {max_weeks}")

    sub = get_subscription(subscription_id)
    if user_id not in (sub.learner_id, sub.mentor_id):
        raise Forbidden()
    provider_id = _provider_id_for_call(sub)

    get_gateway().pause_subscription(provider_id)
    with atomic():
        sub.status = SubscriptionStatus.PAUSED
        sub.pause_until = utcnow() + timedelta(weeks=weeks)
    return sub


def resume_subscription(subscription_id: int, user_id: int) -> Subscription:
    sub = get_subscription(subscription_id)
    if user_id not in (sub.learner_id, sub.mentor_id):
        raise Forbidden()
    provider_id = _provider_id_for_call(sub)

    get_gateway().resume_subscription(provider_id)
    with atomic():
        sub.status = SubscriptionStatus.ACTIVE
        sub.pause_until = None
    return sub


def cancel_subscription(subscription_id: int, learner_id: int) -> Subscription:
    sub = get_subscription(subscription_id)
    if sub.learner_id != learner_id:
        raise Forbidden()
    provider_id = _provider_id_for_call(sub)

    get_gateway().cancel_subscription(provider_id)
    with atomic():
        sub.status = SubscriptionStatus.CANCELED
        sub.canceled_at = utcnow()
        if sub.booking_id:
            booking = db.session.get(Booking, sub.booking_id)
            canceled = Booking.query.filter(
                Booking.id == sub.booking_id, Booking.status == BookingStatus.PENDING
            ).update({
                Booking.status: BookingStatus.CANCELED,
                Booking.canceled_at: utcnow(),
                Booking.cancel_reason: "subscription_canceled",
            }, synchronize_session="fetch")
            if canceled:
                release_slot(booking.slot_id)
    return sub


def resume_due_subscription(subscription_id: int) -> bool:
    """Scheduler pass: lift a pause whose pause-until has elapsed."""
    sub = get_subscription(subscription_id)
    if sub.status != SubscriptionStatus.PAUSED or not sub.provider_subscription_id:
        return False
    provider_id = sub.provider_subscription_id
    end_read_transaction()

    get_gateway().resume_subscription(provider_id)
    with atomic():
        resumed = Subscription.query.filter(
            Subscription.id == subscription_id, Subscription.status == SubscriptionStatus.PAUSED
        ).update(
            {Subscription.status: SubscriptionStatus.ACTIVE, Subscription.pause_until: None},
            synchronize_session="fetch",
        )
    return bool(resumed)

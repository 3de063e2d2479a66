"""
Slot reservation service.

Every slot status change goes through a guarded UPDATE (`transition_slot`)
so two writers racing for the same slot cannot both win; the uniqueness
constraints on bookings(slot_id) and slots(rule_id, start_time) back this up.
Apart from reserve_one_time_slot, functions here join the caller's
transaction and never commit.
"""
import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from flask import current_app
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from models import db, atomic, end_read_transaction
from models.availability_rule import AvailabilityRule, SlotMode
from models.booking import Booking, BookingStatus
from models.chat_thread import ChatThread
from models.payment import Payment, PaymentStatus
from models.slot import Slot, SlotStatus
from models.subscription import Subscription, SubscriptionStatus
from services.gateway import get_gateway
from utils.clock import utcnow, to_epoch
from utils.errors import NotFound, RuleUnavailable, SlotUnavailable

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")

# upper bound on weeks walked forward when consecutive occurrences are taken
MAX_ROLLOVER_ATTEMPTS = 8


def parse_hhmm(value: str):
    hours, minutes = value.split(":")
    return int(hours), int(minutes)


def _local_date(rule: AvailabilityRule, moment: datetime):
    return moment.replace(tzinfo=UTC).astimezone(ZoneInfo(rule.timezone)).date()


def occurrence_start(rule: AvailabilityRule, day) -> datetime:
    """UTC start of the rule's session on a local calendar day."""
    hours, minutes = parse_hhmm(rule.start_time)
    local = datetime(day.year, day.month, day.day, hours, minutes, tzinfo=ZoneInfo(rule.timezone))
    return local.astimezone(UTC).replace(tzinfo=None)


def _slot_row(rule: AvailabilityRule, start: datetime) -> dict:
    return {
        "mentor_id": rule.mentor_id,
        "rule_id": rule.id,
        "title": rule.title,
        "start_time": start,
        "end_time": start + timedelta(minutes=rule.duration_minutes),
        "duration_minutes": rule.duration_minutes,
        "price": rule.price,
        "meeting_link": rule.meeting_link,
        "mode": rule.mode,
        "status": SlotStatus.AVAILABLE,
        "created_at": utcnow(),
    }


def _insert_ignoring_duplicates(rows):
    """Insert slot rows, silently skipping occurrences that already exist."""
    if not rows:
        return
    table = Slot.__table__
    dialect = db.engine.dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table).on_conflict_do_nothing(index_elements=["rule_id", "start_time"])
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).on_conflict_do_nothing(index_elements=["rule_id", "start_time"])
    else:
        taken = {
            s.start_time
            for s in Slot.query.filter(
                Slot.rule_id == rows[0]["rule_id"],
                Slot.start_time.in_([r["start_time"] for r in rows]),
            )
        }
        rows = [r for r in rows if r["start_time"] not in taken]
        if not rows:
            return
        stmt = table.insert()
    db.session.execute(stmt, rows)


def transition_slot(slot_id: int, from_statuses, to_status: str) -> bool:
    """Compare-and-set on slot status. False means another writer got there first."""
    updated = (
        Slot.query
        .filter(Slot.id == slot_id, Slot.status.in_(from_statuses))
        .update({Slot.status: to_status}, synchronize_session="fetch")
    )
    return updated == 1


def release_slot(slot_id: int):
    transition_slot(slot_id, (SlotStatus.RESERVED, SlotStatus.BOOKED), SlotStatus.AVAILABLE)


def expand_rule(rule: AvailabilityRule, window_start: datetime, total_days: int):
    """Create every occurrence of the rule in [window_start, window_start + total_days]."""
    window_end = window_start + timedelta(days=total_days)
    first_day = _local_date(rule, window_start)

    rows = []
    for offset in range(total_days + 1):
        day = first_day + timedelta(days=offset)
        if day.weekday() != rule.weekday:
            continue
        start = occurrence_start(rule, day)
        if window_start <= start <= window_end:
            rows.append(_slot_row(rule, start))

    _insert_ignoring_duplicates(rows)
    return (
        Slot.query
        .filter(
            Slot.rule_id == rule.id,
            Slot.start_time >= window_start,
            Slot.start_time <= window_end,
        )
        .order_by(Slot.start_time.asc())
        .all()
    )


def find_or_create_next_slot(rule: AvailabilityRule, from_date: datetime) -> Slot:
    existing = (
        Slot.query
        .filter(
            Slot.rule_id == rule.id,
            Slot.status == SlotStatus.AVAILABLE,
            Slot.start_time > from_date,
        )
        .order_by(Slot.start_time.asc())
        .first()
    )
    if existing:
        return existing

    day = _local_date(rule, from_date)
    delta = (rule.weekday - day.weekday()) % 7 or 7
    start = occurrence_start(rule, day + timedelta(days=delta))

    _insert_ignoring_duplicates([_slot_row(rule, start)])
    return (
        Slot.query
        .filter(Slot.rule_id == rule.id, Slot.start_time == start)
        .populate_existing()
        .one()
    )


def reserve_next_slot(rule: AvailabilityRule, from_date: datetime) -> Slot:
    """Find the next free occurrence after from_date and flip it to RESERVED."""
    cursor = from_date
    for _ in range(MAX_ROLLOVER_ATTEMPTS):
        slot = find_or_create_next_slot(rule, cursor)
        if transition_slot(slot.id, (SlotStatus.AVAILABLE,), SlotStatus.RESERVED):
            discard_canceled_booking(slot.id)
            return slot
        cursor = slot.start_time
    raise SlotUnavailable(message=f"no free occurrence of rule {rule.id} after {from_date.isoformat()}")


def new_pending_booking(slot: Slot, learner_id: int) -> Booking:
    cfg = current_app.config
    booking = Booking(
        mentor_id=slot.mentor_id,
        learner_id=learner_id,
        slot_id=slot.id,
        scheduled_start_at=slot.start_time,
        scheduled_end_at=slot.end_time,
        price=slot.price,
        platform_fee=cfg.get("PLATFORM_FEE_INR", 0),
        commission_rate=cfg.get("DEFAULT_COMMISSION_RATE", 0.15),
        status=BookingStatus.PENDING,
    )
    db.session.add(booking)
    db.session.flush()
    return booking


def open_chat_thread(booking: Booking) -> ChatThread:
    thread = ChatThread(mentor_id=booking.mentor_id, learner_id=booking.learner_id, booking_id=booking.id)
    db.session.add(thread)
    return thread


def _ensure_one_time_bookable(slot: Slot):
    if slot.status != SlotStatus.AVAILABLE:
        raise SlotUnavailable()
    if slot.mode == SlotMode.RECURRING:
        raise SlotUnavailable("use_subscription_for_recurring")
    if slot.start_time <= utcnow():
        raise SlotUnavailable(message="slot has already started")


def discard_canceled_booking(slot_id: int):
    """Free the slot's unique booking reference when the previous booking was canceled."""
    previous = Booking.query.filter_by(slot_id=slot_id).first()
    if not previous:
        return
    if previous.status != BookingStatus.CANCELED:
        raise SlotUnavailable()
    # captured money stays in the ledger, detached from the discarded booking
    Payment.query.filter(
        Payment.booking_id == previous.id, Payment.status == PaymentStatus.CAPTURED
    ).update({Payment.booking_id: None}, synchronize_session=False)
    Payment.query.filter_by(booking_id=previous.id).delete(synchronize_session=False)
    ChatThread.query.filter_by(booking_id=previous.id).update(
        {ChatThread.booking_id: None}, synchronize_session=False
    )
    Subscription.query.filter_by(booking_id=previous.id).update(
        {Subscription.booking_id: None}, synchronize_session=False
    )
    db.session.delete(previous)
    db.session.flush()


def reserve_one_time_slot(slot_id: int, learner_id: int):
    """
    Reserve a ONE_TIME slot for a learner and open its checkout.

    The gateway order is opened first, outside the transaction; the transaction
    then re-checks the slot, reserves it and records booking, payment and chat
    thread together. A lost race leaves only an unpaid gateway order behind.

    Returns (booking, payment, order).
    """
    cfg = current_app.config
    slot = db.session.get(Slot, slot_id)
    if not slot:
        raise NotFound("slot_not_found")
    _ensure_one_time_bookable(slot)

    now = utcnow()
    currency = cfg.get("PAYMENT_CURRENCY", "INR")
    price, mentor_id = slot.price, slot.mentor_id
    end_read_transaction()

    order = get_gateway().create_order(
        amount=price,
        currency=currency,
        receipt=f"slot_{slot_id}_{to_epoch(now)}",
        notes={"slot_id": slot_id, "mentor_id": mentor_id, "learner_id": learner_id},
    )

    try:
        with atomic():
            slot = db.session.get(Slot, slot_id, with_for_update=True, populate_existing=True)
            _ensure_one_time_bookable(slot)
            discard_canceled_booking(slot.id)
            if not transition_slot(slot.id, (SlotStatus.AVAILABLE,), SlotStatus.RESERVED):
                raise SlotUnavailable()

            booking = new_pending_booking(slot, learner_id)
            payment = Payment(
                booking_id=booking.id,
                provider=get_gateway().provider,
                provider_order_id=order["id"],
                amount=slot.price,
                currency=currency,
                status=PaymentStatus.CREATED,
                hold_expires_at=now + timedelta(minutes=cfg.get("HOLD_WINDOW_MINUTES", 30)),
                raw=order,
            )
            db.session.add(payment)
            open_chat_thread(booking)
    except IntegrityError as exc:
        raise SlotUnavailable() from exc

    logger.info("slot %s reserved for learner %s (booking %s)", slot_id, learner_id, booking.id)
    return booking, payment, order


def rule_is_locked(rule: AvailabilityRule) -> bool:
    """A rule is frozen while any learner holds or owns one of its sessions."""
    held = (
        Slot.query
        .filter(
            Slot.rule_id == rule.id,
            Slot.status.in_((SlotStatus.RESERVED, SlotStatus.BOOKED)),
        )
        .first()
    )
    if held:
        return True
    live_booking = (
        Booking.query
        .join(Slot, Booking.slot_id == Slot.id)
        .filter(Slot.rule_id == rule.id, Booking.status.in_(BookingStatus.LIVE))
        .first()
    )
    if live_booking:
        return True
    live_subscription = (
        Subscription.query
        .filter(Subscription.rule_id == rule.id, Subscription.status.in_(SubscriptionStatus.LIVE))
        .first()
    )
    return live_subscription is not None


def assert_rule_unlocked(rule: AvailabilityRule):
    if rule_is_locked(rule):
        raise RuleUnavailable("rule_locked", message="rule has reserved or booked sessions")

"""Mentor-side availability: weekly rules, ad-hoc slots, blocking."""
import logging
from datetime import timedelta

from models import db, atomic
from models.availability_rule import AvailabilityRule, SlotMode
from models.booking import Booking
from models.slot import Slot, SlotStatus
from models.subscription import Subscription, SubscriptionStatus
from services.reservation import (
    assert_rule_unlocked,
    expand_rule,
    parse_hhmm,
    transition_slot,
)
from utils.clock import utcnow
from utils.errors import AvailabilityConflict, InvalidState, NotFound

logger = logging.getLogger(__name__)

RULE_FIELDS = (
    "title", "weekday", "start_time", "duration_minutes", "price",
    "meeting_link", "mode", "timezone", "active",
)

# changing any of these moves the rule's occurrences
SCHEDULE_FIELDS = ("weekday", "start_time", "duration_minutes", "timezone")


def _minutes(hhmm: str) -> int:
    hours, minutes = parse_hhmm(hhmm)
    return hours * 60 + minutes


def _overlaps(a_start, a_end, b_start, b_end) -> bool:
    return a_start < b_end and b_start < a_end


def _check_rule_overlap(mentor_id, weekday, start_time, duration_minutes, exclude_id=None):
    start = _minutes(start_time)
    end = start + duration_minutes

    q = AvailabilityRule.query.filter_by(mentor_id=mentor_id, weekday=weekday)
    if exclude_id is not None:
        q = q.filter(AvailabilityRule.id != exclude_id)

    for other in q.all():
        other_start = _minutes(other.start_time)
        if _overlaps(start, end, other_start, other_start + other.duration_minutes):
            raise AvailabilityConflict(details={"rule_id": other.id})


def get_own_rule(rule_id: int, mentor_id: int) -> AvailabilityRule:
    rule = AvailabilityRule.query.filter_by(id=rule_id, mentor_id=mentor_id).first()
    if not rule:
        raise NotFound("rule_not_found")
    return rule


def list_rules(mentor_id: int):
    return (
        AvailabilityRule.query
        .filter_by(mentor_id=mentor_id)
        .order_by(AvailabilityRule.created_at.desc())
        .all()
    )


def create_rule(mentor_id: int, fields: dict) -> AvailabilityRule:
    _check_rule_overlap(mentor_id, fields["weekday"], fields["start_time"], fields["duration_minutes"])
    rule = AvailabilityRule(mentor_id=mentor_id, **{k: v for k, v in fields.items() if k in RULE_FIELDS})
    with atomic():
        db.session.add(rule)
    return rule


def update_rule(rule_id: int, mentor_id: int, changes: dict) -> AvailabilityRule:
    rule = get_own_rule(rule_id, mentor_id)
    assert_rule_unlocked(rule)

    _check_rule_overlap(
        mentor_id,
        changes.get("weekday", rule.weekday),
        changes.get("start_time", rule.start_time),
        changes.get("duration_minutes", rule.duration_minutes),
        exclude_id=rule.id,
    )
    rescheduled = any(
        key in changes and changes[key] != getattr(rule, key) for key in SCHEDULE_FIELDS
    )
    with atomic():
        for key, value in changes.items():
            if key in RULE_FIELDS:
                setattr(rule, key, value)
        if rescheduled:
            retired = _retire_future_slots(rule.id)
            logger.info("rule %s rescheduled; retired %s future slots", rule.id, retired)
    return rule


def _retire_future_slots(rule_id: int) -> int:
    """Drop a rule's open future occurrences; ones with booking history are detached and blocked."""
    stale_ids = {
        row.id for row in Slot.query.filter(
            Slot.rule_id == rule_id,
            Slot.status == SlotStatus.AVAILABLE,
            Slot.start_time > utcnow(),
        ).with_entities(Slot.id)
    }
    if not stale_ids:
        return 0

    with_history = {
        row.slot_id
        for row in Booking.query.filter(Booking.slot_id.in_(stale_ids)).with_entities(Booking.slot_id)
    }
    if with_history:
        Slot.query.filter(Slot.id.in_(with_history)).update(
            {Slot.rule_id: None, Slot.status: SlotStatus.BLOCKED}, synchronize_session=False
        )
    unused = stale_ids - with_history
    if unused:
        Slot.query.filter(Slot.id.in_(unused)).delete(synchronize_session=False)
    return len(stale_ids)


def delete_rule(rule_id: int, mentor_id: int):
    """
    Remove a rule. Never-booked slots go with it; slots that carry booking
    history stay behind detached so the ledger keeps its references.
    """
    rule = get_own_rule(rule_id, mentor_id)
    assert_rule_unlocked(rule)

    with atomic():
        booked_slot_ids = {
            row.slot_id
            for row in Booking.query.join(Slot, Booking.slot_id == Slot.id)
            .filter(Slot.rule_id == rule.id)
            .with_entities(Booking.slot_id)
        }
        q = Slot.query.filter(Slot.rule_id == rule.id)
        if booked_slot_ids:
            Slot.query.filter(Slot.id.in_(booked_slot_ids)).update(
                {Slot.rule_id: None}, synchronize_session=False
            )
            q = q.filter(Slot.id.notin_(booked_slot_ids))
        q.delete(synchronize_session=False)

        Subscription.query.filter(
            Subscription.rule_id == rule.id,
            Subscription.status == SubscriptionStatus.CANCELED,
        ).update({Subscription.rule_id: None}, synchronize_session=False)

        db.session.delete(rule)


def generate_slots(rule_id: int, mentor_id: int, weeks: int, start_date=None):
    rule = get_own_rule(rule_id, mentor_id)
    with atomic():
        slots = expand_rule(rule, start_date or utcnow(), weeks * 7)
    return slots


def ensure_rolling_slots(weeks: int) -> int:
    """Keep every active ONE_TIME rule expanded `weeks` ahead. Returns rules touched."""
    rules = AvailabilityRule.query.filter_by(active=True, mode=SlotMode.ONE_TIME).all()
    now = utcnow()
    for rule in rules:
        with atomic():
            expand_rule(rule, now, weeks * 7)
    return len(rules)


def create_slots(mentor_id: int, entries) -> list:
    """Batch-create ad-hoc slots; rejects the whole batch on any overlap."""
    min_start = min(e["start_time"] for e in entries)
    max_end = max(e["end_time"] for e in entries)
    existing = (
        Slot.query
        .filter(Slot.mentor_id == mentor_id, Slot.start_time < max_end, Slot.end_time > min_start)
        .all()
    )

    for i, entry in enumerate(entries):
        for slot in existing:
            if _overlaps(entry["start_time"], entry["end_time"], slot.start_time, slot.end_time):
                raise AvailabilityConflict(details={"slot_id": slot.id})
        for other in entries[i + 1:]:
            if _overlaps(entry["start_time"], entry["end_time"], other["start_time"], other["end_time"]):
                raise AvailabilityConflict(message="slots in the request overlap each other")

    created = []
    with atomic():
        for entry in entries:
            slot = Slot(
                mentor_id=mentor_id,
                title=entry["title"],
                start_time=entry["start_time"],
                end_time=entry["end_time"],
                duration_minutes=entry["duration_minutes"],
                price=entry["price"],
                meeting_link=entry.get("meeting_link"),
                mode=entry.get("mode") or SlotMode.ONE_TIME,
                status=SlotStatus.AVAILABLE,
            )
            db.session.add(slot)
            created.append(slot)
    return created


def list_own_slots(mentor_id: int, start=None, end=None):
    q = Slot.query.filter(Slot.mentor_id == mentor_id)
    if start:
        q = q.filter(Slot.start_time >= start)
    if end:
        q = q.filter(Slot.start_time < end)
    return q.order_by(Slot.start_time.asc()).all()


def list_public_slots(mentor_id: int, days: int = 30):
    now = utcnow()
    return (
        Slot.query
        .filter(
            Slot.mentor_id == mentor_id,
            Slot.status == SlotStatus.AVAILABLE,
            Slot.start_time > now,
            Slot.start_time < now + timedelta(days=days),
        )
        .order_by(Slot.start_time.asc())
        .all()
    )


def _own_slot(slot_id: int, mentor_id: int) -> Slot:
    slot = Slot.query.filter_by(id=slot_id, mentor_id=mentor_id).first()
    if not slot:
        raise NotFound("slot_not_found")
    return slot


def block_slot(slot_id: int, mentor_id: int) -> Slot:
    slot = _own_slot(slot_id, mentor_id)
    with atomic():
        if not transition_slot(slot.id, (SlotStatus.AVAILABLE,), SlotStatus.BLOCKED):
            raise InvalidState("slot_not_available")
    return slot


def unblock_slot(slot_id: int, mentor_id: int) -> Slot:
    slot = _own_slot(slot_id, mentor_id)
    with atomic():
        if not transition_slot(slot.id, (SlotStatus.BLOCKED,), SlotStatus.AVAILABLE):
            raise InvalidState("slot_not_blocked")
    return slot

import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import Blueprint, request, jsonify, g

from models.availability_rule import SlotMode
from security.rbac import require_roles
from services import availability as availability_service
from services import bookings as booking_service
from utils.audit import log_event
from utils.clock import parse_iso
from utils.errors import ValidationError
from utils.serializers import payout_dict, rule_dict, slot_dict

mentor_bp = Blueprint("mentor", __name__, url_prefix="/mentors")

ALLOWED_DURATIONS = (30, 45, 60, 90)
MIN_PRICE_INR = 100
HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _parse_iso(value, field):
    if not isinstance(value, str):
        raise ValidationError(message=f"{field} is required")
    try:
        return parse_iso(value)
    except ValueError:
        raise ValidationError(message=f"{field}: invalid datetime, use ISO e.g. 2026-01-20T18:00:00Z")


def _parse_rule(data: dict, partial: bool = False) -> dict:
    """Validate a rule payload. With partial=True only the keys present are checked."""
    out = {}

    def present(key):
        return key in data or not partial

    if present("title"):
        title = (data.get("title") or "").strip()
        if not 2 <= len(title) <= 120:
            raise ValidationError(message="title must be 2-120 characters")
        out["title"] = title
    if present("weekday"):
        weekday = data.get("weekday")
        if not isinstance(weekday, int) or not 0 <= weekday <= 6:
            raise ValidationError(message="weekday must be 0 (Monday) to 6 (Sunday)")
        out["weekday"] = weekday
    if present("start_time"):
        start_time = data.get("start_time")
        if not isinstance(start_time, str) or not HHMM_RE.match(start_time):
            raise ValidationError(message="start_time must be HH:MM")
        out["start_time"] = start_time
    if present("duration_minutes"):
        if data.get("duration_minutes") not in ALLOWED_DURATIONS:
            raise ValidationError(message=f"duration_minutes must be one of {ALLOWED_DURATIONS}")
        out["duration_minutes"] = data["duration_minutes"]
    if present("price"):
        price = data.get("price")
        if not isinstance(price, int) or price < MIN_PRICE_INR:
            raise ValidationError(message=f"price must be an integer >= {MIN_PRICE_INR}")
        out["price"] = price
    if present("mode"):
        if data.get("mode") not in SlotMode.ALL:
            raise ValidationError(message="mode must be ONE_TIME or RECURRING")
        out["mode"] = data["mode"]

    if "meeting_link" in data:
        out["meeting_link"] = data.get("meeting_link") or None
    if "active" in data:
        out["active"] = bool(data.get("active"))
    if "timezone" in data:
        try:
            ZoneInfo(data.get("timezone") or "")
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(message="timezone must be an IANA zone name")
        out["timezone"] = data["timezone"]
    return out


def _parse_slot(entry: dict) -> dict:
    title = (entry.get("title") or "").strip()
    if not 2 <= len(title) <= 120:
        raise ValidationError(message="title must be 2-120 characters")
    start = _parse_iso(entry.get("start_time"), "start_time")
    end = _parse_iso(entry.get("end_time"), "end_time")
    if end <= start:
        raise ValidationError(message="end_time must be after start_time")
    if entry.get("duration_minutes") not in ALLOWED_DURATIONS:
        raise ValidationError(message=f"duration_minutes must be one of {ALLOWED_DURATIONS}")
    price = entry.get("price")
    if not isinstance(price, int) or price < MIN_PRICE_INR:
        raise ValidationError(message=f"price must be an integer >= {MIN_PRICE_INR}")
    mode = entry.get("mode") or SlotMode.ONE_TIME
    if mode not in SlotMode.ALL:
        raise ValidationError(message="mode must be ONE_TIME or RECURRING")
    return {
        "title": title,
        "start_time": start,
        "end_time": end,
        "duration_minutes": entry["duration_minutes"],
        "price": price,
        "meeting_link": entry.get("meeting_link"),
        "mode": mode,
    }


# ---------- MENTOR: weekly rules ----------
@mentor_bp.post("/me/availability/rules")
@require_roles("MENTOR")
def create_rule():
    data = request.get_json(silent=True) or {}
    rule = availability_service.create_rule(g.user.id, _parse_rule(data))

    log_event("RULE_CREATE", user_id=g.user.id, entity="availability_rule", entity_id=rule.id)
    return jsonify(rule=rule_dict(rule)), 201


@mentor_bp.get("/me/availability/rules")
@require_roles("MENTOR")
def list_rules():
    rules = availability_service.list_rules(g.user.id)
    return jsonify(rules=[rule_dict(r) for r in rules]), 200


@mentor_bp.patch("/me/availability/rules/<int:rule_id>")
@require_roles("MENTOR")
def update_rule(rule_id: int):
    data = request.get_json(silent=True) or {}
    changes = _parse_rule(data, partial=True)
    rule = availability_service.update_rule(rule_id, g.user.id, changes)

    log_event("RULE_UPDATE", user_id=g.user.id, entity="availability_rule", entity_id=rule_id,
              metadata={"fields": sorted(changes)})
    return jsonify(rule=rule_dict(rule)), 200


@mentor_bp.delete("/me/availability/rules/<int:rule_id>")
@require_roles("MENTOR")
def delete_rule(rule_id: int):
    availability_service.delete_rule(rule_id, g.user.id)

    log_event("RULE_DELETE", user_id=g.user.id, entity="availability_rule", entity_id=rule_id)
    return "", 204


@mentor_bp.post("/me/availability/rules/<int:rule_id>/generate")
@require_roles("MENTOR")
def generate_slots(rule_id: int):
    data = request.get_json(silent=True) or {}
    weeks = data.get("weeks", 4)
    if not isinstance(weeks, int) or not 1 <= weeks <= 52:
        raise ValidationError(message="weeks must be 1-52")
    start_date = _parse_iso(data["start_date"], "start_date") if data.get("start_date") else None

    slots = availability_service.generate_slots(rule_id, g.user.id, weeks, start_date)

    log_event("SLOT_GENERATE", user_id=g.user.id, entity="availability_rule", entity_id=rule_id,
              metadata={"weeks": weeks, "slots": len(slots)})
    return jsonify(created=len(slots), slots=[slot_dict(s) for s in slots]), 201


# ---------- MENTOR: ad-hoc slots ----------
@mentor_bp.post("/me/availability/slots")
@require_roles("MENTOR")
def create_slots():
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not data:
        raise ValidationError(message="expected a non-empty list of slots")

    slots = availability_service.create_slots(g.user.id, [_parse_slot(e or {}) for e in data])

    log_event("SLOT_CREATE", user_id=g.user.id, entity="slot",
              metadata={"slot_ids": [s.id for s in slots]})
    return jsonify(created=len(slots), slots=[slot_dict(s) for s in slots]), 201


@mentor_bp.get("/me/availability/slots")
@require_roles("MENTOR")
def list_slots():
    start = _parse_iso(request.args["from"], "from") if request.args.get("from") else None
    end = _parse_iso(request.args["to"], "to") if request.args.get("to") else None
    slots = availability_service.list_own_slots(g.user.id, start, end)
    return jsonify(slots=[slot_dict(s) for s in slots]), 200


@mentor_bp.post("/me/availability/slots/<int:slot_id>/block")
@require_roles("MENTOR")
def block_slot(slot_id: int):
    slot = availability_service.block_slot(slot_id, g.user.id)

    log_event("SLOT_BLOCK", user_id=g.user.id, entity="slot", entity_id=slot_id)
    return jsonify(slot=slot_dict(slot)), 200


@mentor_bp.post("/me/availability/slots/<int:slot_id>/unblock")
@require_roles("MENTOR")
def unblock_slot(slot_id: int):
    slot = availability_service.unblock_slot(slot_id, g.user.id)

    log_event("SLOT_UNBLOCK", user_id=g.user.id, entity="slot", entity_id=slot_id)
    return jsonify(slot=slot_dict(slot)), 200


@mentor_bp.get("/me/payouts")
@require_roles("MENTOR")
def my_payouts():
    payouts = booking_service.list_payouts(g.user.id)
    return jsonify(payouts=[payout_dict(p) for p in payouts]), 200


# ---------- public ----------
@mentor_bp.get("/<int:mentor_id>/slots")
def public_slots(mentor_id: int):
    slots = availability_service.list_public_slots(mentor_id)
    return jsonify(slots=[slot_dict(s) for s in slots]), 200

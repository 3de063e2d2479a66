from utils.clock import isoformat


def user_dict(u):
    return {"id": u.id, "email": u.email, "name": u.name, "roles": [r.name for r in u.roles]}


def rule_dict(r):
    return {
        "id": r.id,
        "mentor_id": r.mentor_id,
        "title": r.title,
        "weekday": r.weekday,
        "start_time": r.start_time,
        "duration_minutes": r.duration_minutes,
        "price": r.price,
        "meeting_link": r.meeting_link,
        "mode": r.mode,
        "timezone": r.timezone,
        "active": r.active,
        "created_at": isoformat(r.created_at),
    }


def slot_dict(s):
    return {
        "id": s.id,
        "mentor_id": s.mentor_id,
        "rule_id": s.rule_id,
        "title": s.title,
        "start_time": isoformat(s.start_time),
        "end_time": isoformat(s.end_time),
        "duration_minutes": s.duration_minutes,
        "price": s.price,
        "mode": s.mode,
        "status": s.status,
    }


def payment_dict(p):
    if p is None:
        return None
    return {
        "id": p.id,
        "booking_id": p.booking_id,
        "provider": p.provider,
        "provider_order_id": p.provider_order_id,
        "provider_payment_id": p.provider_payment_id,
        "method": p.method,
        "amount": p.amount,
        "currency": p.currency,
        "status": p.status,
        "hold_expires_at": isoformat(p.hold_expires_at),
        "capture_scheduled_for": isoformat(p.capture_scheduled_for),
        "captured_at": isoformat(p.captured_at),
    }


def booking_dict(b, payment=None):
    out = {
        "id": b.id,
        "mentor_id": b.mentor_id,
        "learner_id": b.learner_id,
        "slot_id": b.slot_id,
        "scheduled_start_at": isoformat(b.scheduled_start_at),
        "scheduled_end_at": isoformat(b.scheduled_end_at),
        "price": b.price,
        "platform_fee": b.platform_fee,
        "commission_rate": b.commission_rate,
        "status": b.status,
        "meeting_link": b.meeting_link,
        "created_at": isoformat(b.created_at),
        "canceled_at": isoformat(b.canceled_at),
        "cancel_reason": b.cancel_reason,
    }
    if payment is not None:
        out["payment"] = payment_dict(payment)
    return out


def subscription_dict(s):
    return {
        "id": s.id,
        "mentor_id": s.mentor_id,
        "learner_id": s.learner_id,
        "rule_id": s.rule_id,
        "booking_id": s.booking_id,
        "provider_subscription_id": s.provider_subscription_id,
        "status": s.status,
        "price": s.price,
        "start_at": isoformat(s.start_at),
        "end_at": isoformat(s.end_at),
        "next_charge_at": isoformat(s.next_charge_at),
        "pause_until": isoformat(s.pause_until),
        "canceled_at": isoformat(s.canceled_at),
    }


def payout_dict(p):
    return {
        "id": p.id,
        "booking_id": p.booking_id,
        "mentor_id": p.mentor_id,
        "amount": p.amount,
        "status": p.status,
        "provider_payout_id": p.provider_payout_id,
        "scheduled_for": isoformat(p.scheduled_for),
        "processed_at": isoformat(p.processed_at),
    }


def dispute_dict(d):
    return {
        "id": d.id,
        "booking_id": d.booking_id,
        "raised_by_id": d.raised_by_id,
        "reason": d.reason,
        "status": d.status,
        "resolution_note": d.resolution_note,
        "created_at": isoformat(d.created_at),
        "resolved_at": isoformat(d.resolved_at),
    }

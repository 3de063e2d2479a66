from datetime import timedelta

import pytest

from models import db
from models.audit_log import AuditLog
from models.booking import Booking, BookingStatus
from models.payment import Payment, PaymentStatus
from models.slot import Slot, SlotStatus
from models.subscription import Subscription, SubscriptionStatus
from services.bookings import cancel_booking
from services.reservation import reserve_one_time_slot
from services.subscriptions import create_subscription
from utils.clock import to_epoch, utcnow


def _payment_payload(order_id, payment_id="pay_w1", method="card"):
    return {"payment": {"entity": {
        "id": payment_id, "order_id": order_id, "amount": 120000, "currency": "INR", "method": method,
    }}}


@pytest.fixture
def pending(make_slot, learner):
    def _pending(hours_ahead=72):
        slot = make_slot(hours_ahead=hours_ahead)
        booking, payment, order = reserve_one_time_slot(slot.id, learner.id)
        return slot, booking, payment, order["id"]
    return _pending


def test_bad_or_missing_signature_is_rejected(post_webhook, client):
    resp = post_webhook("payment.captured", {}, signature="deadbeef")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_signature"

    missing = client.post("/webhooks/razorpay", data=b"{}")
    assert missing.status_code == 400


def test_unknown_event_is_acknowledged(post_webhook):
    resp = post_webhook("refund.processed", {"refund": {"entity": {"id": "rfnd_1"}}})

    assert resp.status_code == 200
    assert resp.get_json() == {"received": True}


def test_malformed_body_with_valid_signature_is_acknowledged(post_webhook):
    resp = post_webhook(None, body=b"not json at all")

    assert resp.status_code == 200


def test_lookup_miss_is_a_silent_no_op(post_webhook):
    resp = post_webhook("payment.captured", _payment_payload("order_unknown", "pay_unknown"))

    assert resp.status_code == 200
    assert Payment.query.count() == 0


def test_captured_event_is_idempotent(post_webhook, pending):
    slot, booking, payment, order_id = pending()

    first = post_webhook("payment.captured", _payment_payload(order_id))
    captured_at = db.session.get(Payment, payment.id).captured_at
    second = post_webhook("payment.captured", _payment_payload(order_id))

    assert first.status_code == second.status_code == 200
    p = db.session.get(Payment, payment.id)
    assert p.status == PaymentStatus.CAPTURED
    assert p.provider_payment_id == "pay_w1"
    assert p.captured_at == captured_at
    assert db.session.get(Booking, booking.id).status == BookingStatus.CONFIRMED
    assert db.session.get(Slot, slot.id).status == SlotStatus.BOOKED
    assert AuditLog.query.filter_by(action="WEBHOOK_PAYMENT_CAPTURED", source="webhook").count() == 2


def test_authorized_far_ahead_schedules_capture(post_webhook, pending, gateway):
    slot, booking, payment, order_id = pending(hours_ahead=72)

    post_webhook("payment.authorized", _payment_payload(order_id, method="netbanking"))

    p = db.session.get(Payment, payment.id)
    assert p.status == PaymentStatus.AUTHORIZED
    assert p.method == "netbanking"
    assert p.capture_scheduled_for == booking.scheduled_start_at - timedelta(hours=24)
    gateway.client.payment.capture.assert_not_called()


def test_authorized_inside_capture_window_captures_now(post_webhook, pending, gateway):
    slot, booking, payment, order_id = pending(hours_ahead=10)

    post_webhook("payment.authorized", _payment_payload(order_id, "pay_now"))

    gateway.client.payment.capture.assert_called_once_with("pay_now", 120000, {"currency": "INR"})
    assert db.session.get(Payment, payment.id).status == PaymentStatus.CAPTURED
    assert db.session.get(Booking, booking.id).status == BookingStatus.CONFIRMED


def test_immediate_capture_failure_is_left_for_the_sweep(post_webhook, pending, gateway):
    from razorpay.errors import ServerError

    slot, booking, payment, order_id = pending(hours_ahead=10)
    gateway.client.payment.capture.side_effect = ServerError("gateway timeout")

    resp = post_webhook("payment.authorized", _payment_payload(order_id, "pay_later"))

    assert resp.status_code == 200
    assert db.session.get(Payment, payment.id).status == PaymentStatus.AUTHORIZED


def test_authorized_after_capture_does_not_regress(post_webhook, pending):
    slot, booking, payment, order_id = pending()
    post_webhook("payment.captured", _payment_payload(order_id))

    post_webhook("payment.authorized", _payment_payload(order_id))

    assert db.session.get(Payment, payment.id).status == PaymentStatus.CAPTURED


def test_failed_event_cancels_and_frees_slot(post_webhook, pending):
    slot, booking, payment, order_id = pending()

    post_webhook("payment.failed", _payment_payload(order_id))

    assert db.session.get(Payment, payment.id).status == PaymentStatus.FAILED
    b = db.session.get(Booking, booking.id)
    assert b.status == BookingStatus.CANCELED
    assert b.cancel_reason == "payment_failed"
    assert db.session.get(Slot, slot.id).status == SlotStatus.AVAILABLE


def test_failed_event_never_undoes_a_capture(post_webhook, pending):
    slot, booking, payment, order_id = pending()
    post_webhook("payment.captured", _payment_payload(order_id))

    post_webhook("payment.failed", _payment_payload(order_id))

    assert db.session.get(Payment, payment.id).status == PaymentStatus.CAPTURED
    assert db.session.get(Booking, booking.id).status == BookingStatus.CONFIRMED


# ---------- subscriptions ----------

@pytest.fixture
def subscription(make_rule, learner):
    rule = make_rule()
    sub, booking, _ = create_subscription(rule.id, learner.id)
    return sub


def _charged(sub, payment_id, charge_at=None):
    return {
        "subscription": {"entity": {
            "id": sub.provider_subscription_id,
            "status": "active",
            "charge_at": charge_at or to_epoch(utcnow() + timedelta(days=7)),
        }},
        "payment": {"entity": {
            "id": payment_id, "amount": 120000, "currency": "INR", "method": "card",
        }},
    }


def test_charged_rolls_subscription_forward_each_time(post_webhook, subscription):
    sub_id = subscription.id
    current_id = subscription.booking_id

    for n in range(3):
        current = db.session.get(Booking, current_id)
        resp = post_webhook("subscription.charged", _charged(subscription, f"pay_cycle_{n}"))
        assert resp.status_code == 200

        sub = db.session.get(Subscription, sub_id)
        confirmed = db.session.get(Booking, current_id)
        assert confirmed.status == BookingStatus.CONFIRMED
        assert db.session.get(Slot, confirmed.slot_id).status == SlotStatus.BOOKED

        nxt = db.session.get(Booking, sub.booking_id)
        assert nxt.id != current_id
        assert nxt.status == BookingStatus.PENDING
        assert nxt.scheduled_start_at == current.scheduled_start_at + timedelta(days=7)
        assert db.session.get(Slot, nxt.slot_id).status == SlotStatus.RESERVED

        charge = Payment.query.filter_by(provider_payment_id=f"pay_cycle_{n}").one()
        assert charge.booking_id == current_id
        assert charge.status == PaymentStatus.CAPTURED
        assert charge.amount == 1200
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.next_charge_at is not None
        current_id = nxt.id

    assert Booking.query.count() == 4


def test_duplicate_charge_is_applied_once(post_webhook, subscription):
    post_webhook("subscription.charged", _charged(subscription, "pay_dup"))
    booking_id = db.session.get(Subscription, subscription.id).booking_id

    post_webhook("subscription.charged", _charged(subscription, "pay_dup"))

    assert db.session.get(Subscription, subscription.id).booking_id == booking_id
    assert Payment.query.filter_by(provider_payment_id="pay_dup").count() == 1
    assert Booking.query.count() == 2


def test_charge_without_rule_confirms_current_only(post_webhook, subscription):
    current_id = subscription.booking_id
    subscription.rule_id = None
    db.session.commit()

    post_webhook("subscription.charged", _charged(subscription, "pay_orphan"))

    sub = db.session.get(Subscription, subscription.id)
    assert sub.booking_id == current_id
    assert db.session.get(Booking, current_id).status == BookingStatus.CONFIRMED
    assert Booking.query.count() == 1


def test_status_events_map_and_never_resurrect(post_webhook, subscription):
    entity = {"subscription": {"entity": {"id": subscription.provider_subscription_id}}}

    post_webhook("subscription.halted", entity)
    assert db.session.get(Subscription, subscription.id).status == SubscriptionStatus.PAST_DUE

    post_webhook("subscription.activated", entity)
    assert db.session.get(Subscription, subscription.id).status == SubscriptionStatus.ACTIVE

    post_webhook("subscription.cancelled", entity)
    assert db.session.get(Subscription, subscription.id).status == SubscriptionStatus.CANCELED

    post_webhook("subscription.resumed", entity)
    assert db.session.get(Subscription, subscription.id).status == SubscriptionStatus.CANCELED


def test_status_event_refreshes_timestamps(post_webhook, subscription):
    start = utcnow().replace(microsecond=0) + timedelta(days=1)
    post_webhook("subscription.activated", {"subscription": {"entity": {
        "id": subscription.provider_subscription_id,
        "start_at": to_epoch(start),
        "charge_at": to_epoch(start + timedelta(days=7)),
    }}})

    sub = db.session.get(Subscription, subscription.id)
    assert sub.start_at == start
    assert sub.next_charge_at == start + timedelta(days=7)


def test_charge_after_current_booking_was_canceled_leaves_slot_free(post_webhook, make_rule, learner):
    # three days out keeps the session clear of the cancellation cutoff
    rule = make_rule(weekday=(utcnow().weekday() + 3) % 7)
    sub, booking, _ = create_subscription(rule.id, learner.id)
    cancel_booking(booking.id, learner.id, reason="travelling")

    resp = post_webhook("subscription.charged", _charged(sub, "pay_after_cancel"))

    assert resp.status_code == 200
    canceled = db.session.get(Booking, booking.id)
    assert canceled.status == BookingStatus.CANCELED
    assert db.session.get(Slot, canceled.slot_id).status == SlotStatus.AVAILABLE
    charge = Payment.query.filter_by(provider_payment_id="pay_after_cancel").one()
    assert charge.status == PaymentStatus.CAPTURED


def test_charge_without_payment_id_is_ignored_on_every_delivery(post_webhook, subscription):
    current_id = subscription.booking_id
    payload = _charged(subscription, None)
    del payload["payment"]["entity"]["id"]

    post_webhook("subscription.charged", payload)
    post_webhook("subscription.charged", payload)

    assert Booking.query.count() == 1
    assert Payment.query.count() == 0
    assert db.session.get(Subscription, subscription.id).booking_id == current_id
    assert db.session.get(Booking, current_id).status == BookingStatus.PENDING

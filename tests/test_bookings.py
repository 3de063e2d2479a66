import pytest

from models import db
from models.booking import Booking, BookingStatus
from models.payment import Payment, PaymentStatus
from models.payout import Payout, PayoutStatus
from models.slot import Slot, SlotStatus
from services.bookings import compute_payout


def _book(client, auth_header, learner, slot):
    resp = client.post("/bookings", json={"slot_id": slot.id}, headers=auth_header(learner))
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def _confirm(client, auth_header, learner, sign_checkout, created, payment_id="pay_100"):
    order_id = created["razorpay"]["order_id"]
    return client.post(
        f"/bookings/{created['booking']['id']}/confirm-payment",
        json={
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": sign_checkout(order_id, payment_id),
            "method": "upi",
        },
        headers=auth_header(learner),
    )


def test_create_booking_returns_checkout_parameters(client, auth_header, learner, make_slot):
    slot = make_slot(price=1200)

    data = _book(client, auth_header, learner, slot)

    assert data["booking"]["status"] == BookingStatus.PENDING
    assert data["payment"]["status"] == PaymentStatus.CREATED
    assert data["razorpay"]["key_id"] == "rzp_test_key"
    assert data["razorpay"]["amount"] == 120000
    assert data["razorpay"]["currency"] == "INR"
    assert data["razorpay"]["order_id"] == data["payment"]["provider_order_id"]


def test_second_booking_for_same_slot_conflicts(client, auth_header, learner, other_learner, make_slot):
    slot = make_slot()
    _book(client, auth_header, learner, slot)

    resp = client.post("/bookings", json={"slot_id": slot.id}, headers=auth_header(other_learner))

    assert resp.status_code == 409
    assert resp.get_json()["error"] == "slot_unavailable"


def test_booking_requires_learner_role(client, auth_header, mentor, make_slot):
    slot = make_slot()

    assert client.post("/bookings", json={"slot_id": slot.id}).status_code == 401
    assert client.post("/bookings", json={"slot_id": slot.id}, headers=auth_header(mentor)).status_code == 403


def test_confirm_payment_captures_and_confirms(client, auth_header, learner, make_slot, sign_checkout):
    slot = make_slot()
    created = _book(client, auth_header, learner, slot)

    resp = _confirm(client, auth_header, learner, sign_checkout, created)

    assert resp.status_code == 200
    payment = resp.get_json()["payment"]
    assert payment["status"] == PaymentStatus.CAPTURED
    assert payment["provider_payment_id"] == "pay_100"
    assert payment["method"] == "upi"
    assert db.session.get(Booking, created["booking"]["id"]).status == BookingStatus.CONFIRMED
    assert db.session.get(Slot, slot.id).status == SlotStatus.BOOKED


def test_confirm_payment_twice_is_a_no_op(client, auth_header, learner, make_slot, sign_checkout):
    created = _book(client, auth_header, learner, make_slot())
    first = _confirm(client, auth_header, learner, sign_checkout, created)

    second = _confirm(client, auth_header, learner, sign_checkout, created)

    assert second.status_code == 200
    assert second.get_json()["payment"]["captured_at"] == first.get_json()["payment"]["captured_at"]


def test_confirm_with_bad_signature_changes_nothing(client, auth_header, learner, make_slot):
    created = _book(client, auth_header, learner, make_slot())

    resp = client.post(
        f"/bookings/{created['booking']['id']}/confirm-payment",
        json={
            "razorpay_order_id": created["razorpay"]["order_id"],
            "razorpay_payment_id": "pay_100",
            "razorpay_signature": "0" * 64,
        },
        headers=auth_header(learner),
    )

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_signature"
    assert db.session.get(Booking, created["booking"]["id"]).status == BookingStatus.PENDING


def test_confirm_with_foreign_order_is_rejected(client, auth_header, learner, make_slot, sign_checkout):
    created = _book(client, auth_header, learner, make_slot())

    resp = client.post(
        f"/bookings/{created['booking']['id']}/confirm-payment",
        json={
            "razorpay_order_id": "order_other",
            "razorpay_payment_id": "pay_100",
            "razorpay_signature": sign_checkout("order_other", "pay_100"),
        },
        headers=auth_header(learner),
    )

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "order_mismatch"


def test_only_the_booking_learner_can_confirm(client, auth_header, learner, other_learner, make_slot, sign_checkout):
    created = _book(client, auth_header, learner, make_slot())

    resp = _confirm(client, auth_header, other_learner, sign_checkout, created)

    assert resp.status_code == 403


def test_cancel_pending_booking_frees_slot_and_fails_payment(client, auth_header, learner, mentor, make_slot):
    slot = make_slot()
    created = _book(client, auth_header, learner, slot)

    resp = client.post(
        f"/bookings/{created['booking']['id']}/cancel",
        json={"reason": "schedule changed"},
        headers=auth_header(mentor),
    )

    assert resp.status_code == 200
    assert resp.get_json()["booking"]["status"] == BookingStatus.CANCELED
    assert db.session.get(Slot, slot.id).status == SlotStatus.AVAILABLE
    assert db.session.get(Payment, created["payment"]["id"]).status == PaymentStatus.FAILED

    again = client.post(f"/bookings/{created['booking']['id']}/cancel", headers=auth_header(learner))
    assert again.status_code == 409
    assert again.get_json()["error"] == "already_canceled"


def test_captured_one_time_booking_cannot_be_canceled(client, auth_header, learner, make_slot, sign_checkout):
    created = _book(client, auth_header, learner, make_slot())
    _confirm(client, auth_header, learner, sign_checkout, created)

    resp = client.post(f"/bookings/{created['booking']['id']}/cancel", headers=auth_header(learner))

    assert resp.status_code == 409
    assert resp.get_json()["error"] == "cancel_not_allowed"


def test_cancel_inside_cutoff_is_refused(client, auth_header, learner, make_slot):
    created = _book(client, auth_header, learner, make_slot(hours_ahead=10))

    resp = client.post(f"/bookings/{created['booking']['id']}/cancel", headers=auth_header(learner))

    assert resp.status_code == 409
    assert resp.get_json()["error"] == "cancel_window_passed"


def test_complete_schedules_payout_net_of_commission(client, auth_header, learner, mentor, make_slot, sign_checkout):
    created = _book(client, auth_header, learner, make_slot(price=1200))
    _confirm(client, auth_header, learner, sign_checkout, created)

    resp = client.post(f"/bookings/{created['booking']['id']}/complete", headers=auth_header(mentor))

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["booking"]["status"] == BookingStatus.COMPLETED
    assert body["payout"]["amount"] == 1020
    assert body["payout"]["status"] == PayoutStatus.SCHEDULED
    assert Payout.query.filter_by(booking_id=created["booking"]["id"]).count() == 1

    again = client.post(f"/bookings/{created['booking']['id']}/complete", headers=auth_header(mentor))
    assert again.status_code == 409
    assert again.get_json()["error"] == "invalid_status"


def test_complete_requires_confirmed_booking(client, auth_header, learner, mentor, make_slot):
    created = _book(client, auth_header, learner, make_slot())

    resp = client.post(f"/bookings/{created['booking']['id']}/complete", headers=auth_header(mentor))

    assert resp.status_code == 409
    assert resp.get_json()["error"] == "invalid_status"


@pytest.mark.parametrize("price, rate, fee, expected", [
    (1200, 0.15, 0, 1020),
    (1010, 0.15, 0, 858),   # 151.5 rounds up
    (999, 0.1, 50, 849),
])
def test_payout_rounding(price, rate, fee, expected):
    assert compute_payout(price, rate, fee) == expected


def test_dispute_moves_booking_to_disputed(client, auth_header, learner, make_slot):
    created = _book(client, auth_header, learner, make_slot())
    url = f"/bookings/{created['booking']['id']}/dispute"

    short = client.post(url, json={"reason": "bad"}, headers=auth_header(learner))
    assert short.status_code == 400

    resp = client.post(url, json={"reason": "Mentor never joined the call."}, headers=auth_header(learner))
    assert resp.status_code == 201
    assert resp.get_json()["dispute"]["status"] == "OPEN"
    assert db.session.get(Booking, created["booking"]["id"]).status == BookingStatus.DISPUTED

    cancel = client.post(f"/bookings/{created['booking']['id']}/cancel", headers=auth_header(learner))
    assert cancel.status_code == 409


def test_receipt_only_after_capture(client, auth_header, learner, mentor, make_slot, sign_checkout):
    created = _book(client, auth_header, learner, make_slot())
    url = f"/bookings/{created['booking']['id']}/receipt"

    early = client.get(url, headers=auth_header(learner))
    assert early.status_code == 409
    assert early.get_json()["error"] == "receipt_not_ready"

    _confirm(client, auth_header, learner, sign_checkout, created)
    resp = client.get(url, headers=auth_header(mentor))

    assert resp.status_code == 200
    assert resp.mimetype == "text/plain"
    text = resp.get_data(as_text=True)
    assert created["razorpay"]["order_id"] in text
    assert "pay_100" in text
    assert "INR 1200" in text


def test_meeting_link_is_mentor_only(client, auth_header, learner, mentor, make_slot):
    created = _book(client, auth_header, learner, make_slot())
    url = f"/bookings/{created['booking']['id']}/meeting-link"

    assert client.patch(url, json={"meeting_link": "https://meet.example.com/x"},
                        headers=auth_header(learner)).status_code == 403

    resp = client.patch(url, json={"meeting_link": "https://meet.example.com/x"}, headers=auth_header(mentor))
    assert resp.status_code == 200
    assert resp.get_json()["booking"]["meeting_link"] == "https://meet.example.com/x"


def test_list_my_bookings_by_role(client, auth_header, learner, mentor, make_slot):
    created = _book(client, auth_header, learner, make_slot())

    mine = client.get("/bookings/me", headers=auth_header(learner)).get_json()["bookings"]
    hosted = client.get("/bookings/me?as=mentor", headers=auth_header(mentor)).get_json()["bookings"]

    assert [b["id"] for b in mine] == [created["booking"]["id"]]
    assert [b["id"] for b in hosted] == [created["booking"]["id"]]
    assert mine[0]["payment"]["status"] == PaymentStatus.CREATED
    assert client.get("/bookings/me?as=mentor", headers=auth_header(learner)).status_code == 403


def test_manual_calendar_sync_without_linked_accounts(client, auth_header, learner, make_slot):
    created = _book(client, auth_header, learner, make_slot())

    resp = client.post(f"/bookings/{created['booking']['id']}/sync-calendar", headers=auth_header(learner))

    assert resp.status_code == 409
    assert resp.get_json()["error"] == "calendar_not_linked"


def test_admin_resolves_dispute_and_pays_out(client, auth_header, learner, mentor, admin, make_slot, sign_checkout):
    created = _book(client, auth_header, learner, make_slot())
    _confirm(client, auth_header, learner, sign_checkout, created)
    payout = client.post(f"/bookings/{created['booking']['id']}/complete",
                         headers=auth_header(mentor)).get_json()["payout"]

    paid = client.post(f"/admin/payouts/{payout['id']}/mark-paid", json={"provider_payout_id": "pout_1"},
                       headers=auth_header(admin))
    assert paid.status_code == 200
    assert paid.get_json()["payout"]["status"] == PayoutStatus.PAID

    listed = client.get("/mentors/me/payouts", headers=auth_header(mentor)).get_json()["payouts"]
    assert listed[0]["status"] == PayoutStatus.PAID

    other = _book(client, auth_header, learner, make_slot(hours_ahead=100))
    dispute = client.post(f"/bookings/{other['booking']['id']}/dispute",
                          json={"reason": "Session was cut short by half."},
                          headers=auth_header(learner)).get_json()["dispute"]
    resolved = client.post(f"/admin/disputes/{dispute['id']}/resolve",
                           json={"status": "resolved", "note": "partial refund issued"},
                           headers=auth_header(admin))
    assert resolved.status_code == 200
    assert resolved.get_json()["dispute"]["status"] == "RESOLVED"

    assert client.get("/admin/disputes", headers=auth_header(learner)).status_code == 403

from datetime import timedelta

import pytest
from razorpay.errors import ServerError

from models import db
from models.availability_rule import SlotMode
from models.booking import Booking, BookingStatus
from models.slot import Slot, SlotStatus
from models.subscription import Subscription, SubscriptionStatus
from services import subscriptions
from utils.clock import to_epoch, utcnow
from utils.errors import (
    Forbidden,
    GatewayUnavailable,
    InvalidState,
    NotFound,
    RuleUnavailable,
    SubscriptionNotReady,
    ValidationError,
)


def test_create_reserves_next_occurrence_and_opens_provider_subscription(make_rule, learner, gateway):
    rule = make_rule()

    sub, booking, provider_sub = subscriptions.create_subscription(rule.id, learner.id)

    assert sub.status == SubscriptionStatus.CREATED
    assert sub.provider_subscription_id == provider_sub["id"]
    assert sub.provider_plan_id.startswith("plan_")
    assert sub.booking_id == booking.id
    assert booking.status == BookingStatus.PENDING
    assert booking.scheduled_start_at > utcnow()
    assert booking.scheduled_start_at.weekday() in (rule.weekday, (rule.weekday - 1) % 7)
    assert db.session.get(Slot, booking.slot_id).status == SlotStatus.RESERVED

    plan = gateway.client.plan.create.call_args[0][0]
    assert plan["period"] == "weekly"
    assert plan["item"]["amount"] == 120000
    created = gateway.client.subscription.create.call_args[0][0]
    assert created["total_count"] == 999
    assert created["start_at"] >= to_epoch(utcnow())


def test_second_live_subscription_on_rule_is_refused(make_rule, learner, other_learner):
    rule = make_rule()
    subscriptions.create_subscription(rule.id, learner.id)

    with pytest.raises(RuleUnavailable):
        subscriptions.create_subscription(rule.id, other_learner.id)


def test_one_time_rule_cannot_be_subscribed(make_rule, learner):
    rule = make_rule(mode=SlotMode.ONE_TIME)

    with pytest.raises(NotFound):
        subscriptions.create_subscription(rule.id, learner.id)


def test_gateway_failure_unwinds_local_rows(make_rule, learner, gateway):
    rule = make_rule()
    gateway.client.plan.create.side_effect = ServerError("upstream down")

    with pytest.raises(GatewayUnavailable):
        subscriptions.create_subscription(rule.id, learner.id)

    sub = Subscription.query.one()
    booking = Booking.query.one()
    slot_id = booking.slot_id
    assert sub.status == SubscriptionStatus.CANCELED
    assert booking.status == BookingStatus.CANCELED
    assert db.session.get(Slot, slot_id).status == SlotStatus.AVAILABLE

    # the same occurrence can be taken again once the gateway recovers
    gateway.client.plan.create.side_effect = lambda data: {"id": "plan_retry"}
    retry, retry_booking, _ = subscriptions.create_subscription(rule.id, learner.id)
    assert retry.status == SubscriptionStatus.CREATED
    assert retry_booking.slot_id == slot_id


def test_pause_and_resume(make_rule, learner, mentor, gateway):
    rule = make_rule()
    sub, _, _ = subscriptions.create_subscription(rule.id, learner.id)

    with pytest.raises(ValidationError):
        subscriptions.pause_subscription(sub.id, learner.id, 0)
    with pytest.raises(ValidationError):
        subscriptions.pause_subscription(sub.id, learner.id, 5)

    paused = subscriptions.pause_subscription(sub.id, mentor.id, 2)
    assert paused.status == SubscriptionStatus.PAUSED
    assert paused.pause_until - utcnow() > timedelta(days=13)
    gateway.client.subscription.pause.assert_called_once()

    resumed = subscriptions.resume_subscription(sub.id, learner.id)
    assert resumed.status == SubscriptionStatus.ACTIVE
    assert resumed.pause_until is None


def test_cancel_is_learner_only_and_frees_pending_booking(make_rule, learner, mentor, gateway):
    rule = make_rule()
    sub, booking, _ = subscriptions.create_subscription(rule.id, learner.id)

    with pytest.raises(Forbidden):
        subscriptions.cancel_subscription(sub.id, mentor.id)

    canceled = subscriptions.cancel_subscription(sub.id, learner.id)

    assert canceled.status == SubscriptionStatus.CANCELED
    assert canceled.canceled_at is not None
    b = db.session.get(Booking, booking.id)
    assert b.status == BookingStatus.CANCELED
    assert db.session.get(Slot, b.slot_id).status == SlotStatus.AVAILABLE
    gateway.client.subscription.cancel.assert_called_once_with(sub.provider_subscription_id)

    with pytest.raises(InvalidState):
        subscriptions.resume_subscription(sub.id, learner.id)


def test_subscription_without_provider_id_is_not_ready(make_rule, learner):
    rule = make_rule()
    sub = Subscription(
        mentor_id=rule.mentor_id, learner_id=learner.id, rule_id=rule.id,
        status=SubscriptionStatus.CREATED, price=rule.price,
    )
    db.session.add(sub)
    db.session.commit()

    with pytest.raises(SubscriptionNotReady):
        subscriptions.pause_subscription(sub.id, learner.id, 1)


def test_subscription_routes(client, auth_header, make_rule, learner, mentor):
    rule = make_rule()

    created = client.post("/subscriptions", json={"rule_id": rule.id}, headers=auth_header(learner))
    assert created.status_code == 201
    body = created.get_json()
    assert body["razorpay"]["subscription_id"] == body["subscription"]["provider_subscription_id"]

    sub_id = body["subscription"]["id"]
    paused = client.post(f"/subscriptions/{sub_id}/pause", json={"weeks": 1}, headers=auth_header(mentor))
    assert paused.get_json()["subscription"]["status"] == SubscriptionStatus.PAUSED

    listed = client.get("/subscriptions/me", headers=auth_header(mentor)).get_json()["subscriptions"]
    assert [s["id"] for s in listed] == [sub_id]

    conflict = client.post("/subscriptions", json={"rule_id": rule.id}, headers=auth_header(learner))
    assert conflict.status_code == 409
    assert conflict.get_json()["error"] == "rule_unavailable"


def test_gateway_calls_run_outside_any_transaction(make_rule, learner, gateway):
    rule = make_rule()
    create_plan = gateway.client.plan.create.side_effect
    seen = []

    def checking_plan(data):
        seen.append(db.session.in_transaction())
        return create_plan(data)

    gateway.client.plan.create.side_effect = checking_plan
    gateway.client.subscription.pause.side_effect = lambda *args: seen.append(db.session.in_transaction())

    sub, _, _ = subscriptions.create_subscription(rule.id, learner.id)
    subscriptions.pause_subscription(sub.id, learner.id, 1)

    assert seen == [False, False]

from flask import Blueprint, request, jsonify, g

from security.rbac import require_roles
from services import subscriptions as subscription_service
from utils.audit import log_event
from utils.auth_context import login_required
from utils.errors import ValidationError
from utils.serializers import booking_dict, subscription_dict

subscription_bp = Blueprint("subscription", __name__, url_prefix="/subscriptions")


@subscription_bp.post("")
@require_roles("LEARNER")
def create_subscription():
    data = request.get_json(silent=True) or {}
    rule_id = data.get("rule_id")
    if not isinstance(rule_id, int):
        raise ValidationError(message="rule_id required")

    sub, booking, provider_sub = subscription_service.create_subscription(rule_id, g.user.id)

    log_event("SUBSCRIPTION_CREATE", user_id=g.user.id, entity="subscription", entity_id=sub.id,
              metadata={"rule_id": rule_id, "provider_subscription_id": sub.provider_subscription_id})
    return jsonify(
        subscription=subscription_dict(sub),
        booking=booking_dict(booking),
        razorpay={
            "subscription_id": provider_sub["id"],
            "short_url": provider_sub.get("short_url"),
        },
    ), 201


@subscription_bp.get("/me")
@login_required
def my_subscriptions():
    rows = subscription_service.list_subscriptions(g.user.id)
    return jsonify(subscriptions=[subscription_dict(s) for s in rows]), 200


@subscription_bp.post("/<int:subscription_id>/pause")
@login_required
def pause_subscription(subscription_id: int):
    data = request.get_json(silent=True) or {}
    weeks = data.get("weeks", 1)
    sub = subscription_service.pause_subscription(subscription_id, g.user.id, weeks)

    log_event("SUBSCRIPTION_PAUSE", user_id=g.user.id, entity="subscription", entity_id=sub.id,
              metadata={"weeks": weeks})
    return jsonify(subscription=subscription_dict(sub)), 200


@subscription_bp.post("/<int:subscription_id>/resume")
@login_required
def resume_subscription(subscription_id: int):
    sub = subscription_service.resume_subscription(subscription_id, g.user.id)

    log_event("SUBSCRIPTION_RESUME", user_id=g.user.id, entity="subscription", entity_id=sub.id)
    return jsonify(subscription=subscription_dict(sub)), 200


@subscription_bp.post("/<int:subscription_id>/cancel")
@require_roles("LEARNER")
def cancel_subscription(subscription_id: int):
    sub = subscription_service.cancel_subscription(subscription_id, g.user.id)

    log_event("SUBSCRIPTION_CANCEL", user_id=g.user.id, entity="subscription", entity_id=sub.id)
    return jsonify(subscription=subscription_dict(sub)), 200

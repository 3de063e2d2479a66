from models.db import db
from utils.clock import utcnow


class SubscriptionStatus:
    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"

    LIVE = (CREATED, ACTIVE, PAUSED, PAST_DUE)


class Subscription(db.Model):
    """Weekly recurring arrangement that keeps minting bookings from one rule."""
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    mentor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    learner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    rule_id = db.Column(
        db.Integer,
        db.ForeignKey("availability_rules.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # the booking the next charge will confirm; moved forward on every renewal
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=True)

    provider = db.Column(db.String(20), nullable=False, default="RAZORPAY")
    provider_plan_id = db.Column(db.String(64), nullable=True)
    provider_subscription_id = db.Column(db.String(64), nullable=True, unique=True, index=True)

    status = db.Column(db.String(20), nullable=False, default=SubscriptionStatus.CREATED, index=True)
    price = db.Column(db.Integer, nullable=False)  # whole INR per session

    start_at = db.Column(db.DateTime, nullable=True)
    end_at = db.Column(db.DateTime, nullable=True)
    next_charge_at = db.Column(db.DateTime, nullable=True)
    pause_until = db.Column(db.DateTime, nullable=True)
    canceled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.Index(
            "uq_subscription_live_rule",
            "rule_id",
            unique=True,
            sqlite_where=db.text("status IN ('CREATED', 'ACTIVE', 'PAUSED', 'PAST_DUE')"),
            postgresql_where=db.text("status IN ('CREATED', 'ACTIVE', 'PAUSED', 'PAST_DUE')"),
        ),
    )

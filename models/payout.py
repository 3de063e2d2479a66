from models.db import db
from utils.clock import utcnow


class PayoutStatus:
    SCHEDULED = "SCHEDULED"
    PAID = "PAID"


class Payout(db.Model):
    __tablename__ = "payouts"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False)
    mentor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    provider = db.Column(db.String(20), nullable=False, default="RAZORPAY")
    provider_payout_id = db.Column(db.String(64), nullable=True)
    amount = db.Column(db.Integer, nullable=False)  # whole INR
    status = db.Column(db.String(20), nullable=False, default=PayoutStatus.SCHEDULED)

    scheduled_for = db.Column(db.DateTime, nullable=False, default=utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("booking_id", name="uq_payout_booking_once"),
    )

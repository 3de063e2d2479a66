from models.db import db
from models.availability_rule import SlotMode
from utils.clock import utcnow


class SlotStatus:
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    BOOKED = "BOOKED"
    BLOCKED = "BLOCKED"


class Slot(db.Model):
    __tablename__ = "slots"

    id = db.Column(db.Integer, primary_key=True)

    mentor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    # only set for slots expanded from a rule
    rule_id = db.Column(
        db.Integer,
        db.ForeignKey("availability_rules.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    title = db.Column(db.String(120), nullable=False)
    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime, nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False)

    price = db.Column(db.Integer, nullable=False, default=0)  # whole INR
    meeting_link = db.Column(db.String(255), nullable=True)
    mode = db.Column(db.String(20), nullable=False, default=SlotMode.ONE_TIME)
    status = db.Column(db.String(20), nullable=False, default=SlotStatus.AVAILABLE, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # One row per rule occurrence; rule expansion inserts with ON CONFLICT DO NOTHING
        db.UniqueConstraint("rule_id", "start_time", name="uq_slot_rule_occurrence"),
    )

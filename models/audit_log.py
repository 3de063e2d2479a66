from models.db import db
from utils.clock import utcnow


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True)  # null for webhook and scheduler events
    action = db.Column(db.String(80), nullable=False)  # e.g. BOOKING_CREATE, WEBHOOK_PAYMENT_CAPTURED
    entity = db.Column(db.String(80), nullable=True)   # e.g. booking, subscription
    entity_id = db.Column(db.String(80), nullable=True)
    source = db.Column(db.String(20), nullable=False, default="api")  # api, webhook, scheduler

    ip = db.Column(db.String(64), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

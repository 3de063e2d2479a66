from models.db import db
from utils.clock import utcnow


class Session(db.Model):
    """Server-side principal session; the client holds the raw token."""
    __tablename__ = "sessions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # only the SHA-256 of the token is stored
    token_hash = db.Column(db.String(128), unique=True, nullable=False, index=True)
    issued_via = db.Column(db.String(20), nullable=False, default="LOGIN")  # LOGIN, CLI

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_seen_at = db.Column(db.DateTime, default=utcnow, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)

    revoked = db.Column(db.Boolean, default=False, nullable=False)

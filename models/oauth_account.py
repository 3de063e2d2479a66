from models.db import db
from utils.clock import utcnow


class OAuthAccount(db.Model):
    """Linked third-party account; only GOOGLE rows are read for calendar sync."""
    __tablename__ = "oauth_accounts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    provider = db.Column(db.String(20), nullable=False)  # GOOGLE, LINKEDIN

    access_token = db.Column(db.Text, nullable=True)
    refresh_token = db.Column(db.Text, nullable=True)
    scopes = db.Column(db.String(512), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("user_id", "provider", name="uq_oauth_user_provider"),
    )

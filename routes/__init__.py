from .health import health_bp
from .auth import auth_bp
from .admin import admin_bp
from .booking import booking_bp
from .availability import mentor_bp
from .subscriptions import subscription_bp
from .webhooks import webhook_bp

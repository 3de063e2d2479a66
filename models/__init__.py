from .db import db, atomic, end_read_transaction
from .user import User, Role, user_roles
from .audit_log import AuditLog
from .session import Session
from .oauth_account import OAuthAccount
from .availability_rule import AvailabilityRule, SlotMode
from .slot import Slot, SlotStatus
from .booking import Booking, BookingStatus
from .payment import Payment, PaymentStatus
from .subscription import Subscription, SubscriptionStatus
from .payout import Payout, PayoutStatus
from .dispute import Dispute, DisputeStatus
from .chat_thread import ChatThread

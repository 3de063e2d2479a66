class ApiError(Exception):
    """
    Business-rule failure surfaced to the caller.
    `code` is the stable machine-readable value clients switch on.
    """
    status_code = 400
    code = "bad_request"

    def __init__(self, code: str = None, message: str = None, details=None):
        if code:
            self.code = code
        self.message = message or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(ApiError):
    status_code = 400
    code = "validation_error"


class NotFound(ApiError):
    status_code = 404
    code = "not_found"


class Forbidden(ApiError):
    status_code = 403
    code = "forbidden"


class InvalidState(ApiError):
    status_code = 409
    code = "invalid_status"


class SlotUnavailable(ApiError):
    status_code = 409
    code = "slot_unavailable"


class RuleUnavailable(ApiError):
    status_code = 409
    code = "rule_unavailable"


class AvailabilityConflict(ApiError):
    status_code = 409
    code = "availability_conflict"


class InvalidSignature(ApiError):
    status_code = 400
    code = "invalid_signature"


class OrderMismatch(ApiError):
    status_code = 400
    code = "order_mismatch"


class CancelNotAllowed(ApiError):
    status_code = 409
    code = "cancel_not_allowed"


class CancelWindowPassed(ApiError):
    status_code = 409
    code = "cancel_window_passed"


class PaymentMissing(ApiError):
    status_code = 409
    code = "payment_missing"


class PaymentNotAuthorized(ApiError):
    status_code = 409
    code = "payment_not_authorized"


class SubscriptionNotReady(ApiError):
    status_code = 409
    code = "subscription_not_ready"


class CalendarNotLinked(ApiError):
    status_code = 409
    code = "calendar_not_linked"


class GatewayUnavailable(ApiError):
    status_code = 502
    code = "gateway_unavailable"


class GatewayNotConfigured(GatewayUnavailable):
    status_code = 500
    code = "razorpay_not_configured"

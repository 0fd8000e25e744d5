"""
Billing Exceptions

Error kinds raised by the payment services and mapped to HTTP responses
by the exception handler registered in billing.main.
"""


class BillingError(Exception):
    """
    Base exception for all billing-related errors.

    Attributes:
        message: Caller-facing message
        code: Stable machine-readable error code
        details: Extra structured context for the response body
    """

    status_code = 500

    def __init__(self, message: str, code: str = "BILLING_ERROR", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


class ValidationError(BillingError):
    """Malformed or missing input. Always raised before any gateway call."""

    status_code = 400

    def __init__(self, message: str, field: str = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={'field': field} if field else {}
        )
        self.field = field


class NotFoundError(BillingError):
    """Referenced record does not exist or does not belong to the caller."""

    status_code = 404

    def __init__(self, message: str = "Not found", resource: str = None):
        super().__init__(
            message=message,
            code="NOT_FOUND",
            details={'resource': resource} if resource else {}
        )
        self.resource = resource


class ForbiddenError(BillingError):
    status_code = 403

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message=message, code="FORBIDDEN")


class ConflictError(BillingError):
    """
    Raised when an operation would break a lifecycle invariant.

    Examples:
        - User already has an active subscription
        - Refund already requested for a payment
        - Refund request no longer pending
    """

    status_code = 409

    def __init__(self, message: str):
        super().__init__(message=message, code="CONFLICT")


class GatewayError(BillingError):
    """
    The payment provider call failed or timed out.

    The caller-facing message stays generic; the provider's own message is kept
    on ``provider_message`` for logging only.
    """

    status_code = 500

    def __init__(
        self,
        message: str = "Payment provider request failed",
        provider_message: str = None,
        operation: str = None
    ):
        super().__init__(
            message=message,
            code="GATEWAY_ERROR",
            details={'operation': operation} if operation else {}
        )
        self.provider_message = provider_message
        self.operation = operation


class SignatureError(BillingError):
    """Webhook payload could not be authenticated."""

    status_code = 400

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message=message, code="INVALID_SIGNATURE")


class WebhookHandlerError(BillingError):
    """A webhook handler failed; the provider is expected to redeliver."""

    status_code = 500

    def __init__(self, message: str = "Webhook handler failed", event_id: str = None, event_type: str = None):
        details = {}
        if event_id:
            details['event_id'] = event_id
        if event_type:
            details['event_type'] = event_type
        super().__init__(message=message, code="WEBHOOK_ERROR", details=details)
        self.event_id = event_id
        self.event_type = event_type


class PlanNotConfiguredError(BillingError):
    """No provider price id is configured for a plan/cycle pair."""

    status_code = 500

    def __init__(self, plan_type: str, billing_cycle: str):
        super().__init__(
            message="Price configuration not found",
            code="PRICE_NOT_CONFIGURED",
            details={'plan_type': plan_type, 'billing_cycle': billing_cycle}
        )
        self.plan_type = plan_type
        self.billing_cycle = billing_cycle

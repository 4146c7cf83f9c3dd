"""Billing error taxonomy. Each class carries the HTTP status routes answer with."""


class BillingError(Exception):
    """Base billing exception."""

    status_code = 500
    retryable = False

    def __init__(self, message: str = "", details: str = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BillingError):
    """Bad or missing input."""

    status_code = 400


class InvalidPlan(ValidationError):
    def __init__(self, plan):
        super().__init__('Invalid plan type. Must be "individual" or "business"', details=f"plan={plan!r}")


class NotFoundError(BillingError):
    """Referenced entity is absent."""

    status_code = 404


class UserNotFound(NotFoundError):
    def __init__(self, user_id):
        super().__init__("User not found", details=f"user_id={user_id}")


class NoBillingAccount(NotFoundError):
    def __init__(self, user_id):
        super().__init__("No billing account found", details=f"user_id={user_id}")


class NoActiveSubscription(NotFoundError):
    def __init__(self, user_id):
        super().__init__("No active subscription found", details=f"user_id={user_id}")


class ConflictError(BillingError):
    status_code = 409


class AlreadySubscribed(ConflictError):
    def __init__(self, plan):
        super().__init__(f"You already have an active {plan} subscription")


class UpstreamError(BillingError):
    """Billing provider call failed. Callers may retry."""

    status_code = 502
    retryable = True


class AuthenticationError(BillingError):
    """Webhook signature or bearer token rejected."""

    status_code = 401


class ForbiddenError(BillingError):
    status_code = 403


class InternalError(BillingError):
    status_code = 500

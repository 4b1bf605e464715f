from fastapi import HTTPException, status

# ─────────────────────────────────────────────────────────────────────────────
# HTTP errors raised from endpoints
# ─────────────────────────────────────────────────────────────────────────────


class NotFoundError(HTTPException):
    """Raised when a requested resource is not found."""

    def __init__(self, resource: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found",
        )


class ForbiddenError(HTTPException):
    """Raised when user lacks permission to access a resource."""

    def __init__(self, message: str = "Not authorized to access this resource"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=message,
        )


class ValidationError(HTTPException):
    """Raised when request validation fails."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=message,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Billing domain errors
# ─────────────────────────────────────────────────────────────────────────────


class BillingError(Exception):
    """Base class for credit ledger and subscription sync failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class WebhookValidationError(BillingError):
    """Inbound event is malformed (missing charge, customer or invoice id).

    Surfaced as a handler failure but recorded as not recoverable, since
    redelivering the same payload cannot fix it.
    """

    def __init__(self, message: str, event_type: str | None = None):
        self.event_type = event_type
        super().__init__(message)


class ProfileNotFoundError(BillingError):
    """No profile is linked to a Stripe customer."""

    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"No profile found for customer {customer_id}")


class UnknownPriceError(BillingError):
    """Stripe price ID does not map to any configured plan."""

    def __init__(self, price_id: str | None):
        self.price_id = price_id
        super().__init__(f"Unknown price ID: {price_id}")


class InvalidSubscriptionPeriodError(BillingError):
    """Subscription carries missing or non-numeric period bounds."""

    def __init__(self, subscription_id: str, detail: str):
        self.subscription_id = subscription_id
        super().__init__(f"Invalid billing period on subscription {subscription_id}: {detail}")


class CreditCalculationError(ValueError):
    """Credit calculator was called with inputs outside its contract."""


class LedgerError(BillingError):
    """A ledger procedure could not be executed (database or transport failure)."""

    def __init__(self, procedure: str, message: str):
        self.procedure = procedure
        super().__init__(f"{procedure} failed: {message}")


class PlanChangeError(BillingError):
    """A plan change request cannot be carried out (no subscription, same plan, ...)."""

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)

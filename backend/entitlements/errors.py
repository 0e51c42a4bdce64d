"""Error taxonomy for subscription verification and reconciliation.

Every failure the core surfaces to a caller is one of these. The API layer
maps them to HTTP responses (see ``entitlements.api.subscriptions``); the
webhook path logs them and never lets them escape.
"""


class EntitlementError(Exception):
    """Base class for all subscription errors."""

    code = "ENTITLEMENT_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        detail = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.field:
            detail["field"] = self.field
        return detail


class ConfigurationError(EntitlementError):
    """Verification credentials are missing or unusable. Not retried."""

    code = "CONFIG_ERROR"
    status_code = 500


class ValidationError(EntitlementError):
    """The request cannot be honoured as submitted."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidReceiptError(ValidationError):
    """The storefront rejected the receipt, or the receipt is malformed."""

    code = "INVALID_RECEIPT"


class ReceiptCancelledError(ValidationError):
    """The storefront reports the purchase as cancelled, refunded or revoked."""

    code = "RECEIPT_CANCELLED"


class NotFoundError(EntitlementError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} not found" if identifier is None else f"{resource} not found: {identifier}"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


class StorefrontUnavailableError(EntitlementError):
    """The storefront could not be reached or answered with an unexpected shape.

    Callers may resubmit the same receipt later.
    """

    code = "STOREFRONT_UNAVAILABLE"
    status_code = 503
    retryable = True

from typing import Any, Dict, Optional


class BillingError(Exception):
    """
    Base class for every error raised by the billing engine.

    Each error carries a machine readable ``code``, the HTTP ``status_code`` used
    when it reaches a direct caller, and whether a retry may succeed.
    """

    code = "billing_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(BillingError):
    code = "validation_error"
    status_code = 400


class InsufficientPaymentError(ValidationError):
    code = "insufficient_payment_amount"


class NotFoundError(BillingError):
    code = "not_found"
    status_code = 404


class InvalidTransitionError(BillingError):
    code = "invalid_transition"
    status_code = 409


class NotInTrialError(InvalidTransitionError):
    code = "not_trial_subscription"


class AlreadyCanceledError(InvalidTransitionError):
    code = "already_canceled"


class InvalidPlanTypeError(InvalidTransitionError, ValidationError):
    code = "invalid_plan_type"
    status_code = 400


class NonPositiveExtensionError(InvalidTransitionError, ValidationError):
    code = "non_positive_extension"
    status_code = 400


class ConflictError(BillingError):
    code = "conflict"
    status_code = 409
    retryable = True


class JobAlreadyRunningError(BillingError):
    code = "job_already_running"
    status_code = 409


class TransientIntegrationError(BillingError):
    code = "integration_unavailable"
    status_code = 503
    retryable = True


class FatalError(BillingError):
    code = "fatal_error"
    status_code = 500


class StoreUnavailableError(FatalError):
    code = "store_unavailable"

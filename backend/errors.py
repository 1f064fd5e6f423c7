from typing import Any, Dict, Optional


class CoreError(Exception):
    """Base for every error the lead/escrow core raises on purpose.

    ``message`` is always safe to show to the caller; anything more specific
    belongs in the logs.
    """

    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_body(self) -> Dict[str, Any]:
        return {"detail": self.message, **self.extra}


class ValidationError(CoreError):
    status_code = 400
    default_message = "Invalid request"


class PolicyRejection(CoreError):
    status_code = 400
    default_message = "We could not accept this registration. Please review your details or contact support."

    def __init__(self, rule: str, message: Optional[str] = None):
        # rule is for logs only, never rendered
        self.rule = rule
        super().__init__(message)


class RateLimitRejection(PolicyRejection):
    status_code = 429
    default_message = "Too many registration attempts. Please try again later."


class NotFoundError(CoreError):
    status_code = 404
    default_message = "Not found"


class ExpiredError(CoreError):
    status_code = 410
    default_message = "This invitation is no longer available."


class ConflictError(CoreError):
    status_code = 409
    default_message = "Conflict"


class DuplicateEmailError(ConflictError):
    default_message = "An account with this email already exists"


class AlreadyRedeemedError(ConflictError):
    default_message = "A quote has already been submitted for this invitation. It is no longer available."


class InvalidStatusTransition(ConflictError):
    default_message = "This status change is not allowed"


class NoEligibleContractorError(ConflictError):
    default_message = "No eligible contractor"


class InvalidTransitionError(ConflictError):
    status_code = 422
    default_message = "This job's status changed since you last viewed it. Please refresh and try again."


class DependencyError(CoreError):
    status_code = 503
    default_message = "A required service is unavailable. Please try again later."



class LedgerError(Exception):
    """
    Base exception for all domain-level errors
    inside the Booking Ledger Engine.
    """

    status_code = 500

    def __init__(self, message: str = "Request failed"):
        self.message = message
        super().__init__(message)


class ValidationError(LedgerError):
    """Raised when required fields are missing or malformed."""

    status_code = 400


class AuthenticationError(LedgerError):
    """Raised when the caller identity is missing."""

    status_code = 401


class AuthorizationError(LedgerError):
    """Raised when the caller does not own the resource."""

    status_code = 403


class NotFoundError(LedgerError):
    status_code = 404


class ConflictError(LedgerError):
    """
    Raised when a transition is illegal for the current status
    or the conditional write lost a race.
    """

    status_code = 409


class InvalidStateTransitionError(ConflictError):
    """
    Raised when an illegal booking action is attempted.
    """

    def __init__(self, action: str, from_state: str):
        self.action = action
        self.from_state = from_state

        message = (
            f"Action '{action}' is not allowed "
            f"when booking status is '{from_state}'"
        )
        super().__init__(message)


class SignatureError(LedgerError):
    """Raised when a webhook signature does not match."""

    status_code = 400


class GatewayError(LedgerError):
    """Raised when the upstream payment gateway fails."""

    status_code = 502


class InternalError(LedgerError):
    status_code = 500

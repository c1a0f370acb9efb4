"""
Error taxonomy for trade, escrow, rating and dispute operations.

Each error carries a stable ``code`` for API clients and a ``retryable`` flag
telling the caller whether repeating the same request can succeed (a provider
timeout) or is futile (wrong role, already rated).
"""

from typing import Optional


class TradeDeskError(Exception):
    """Base exception for domain errors."""

    code: str = "error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, code: Optional[str] = None, retryable: Optional[bool] = None):
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)


class NotFound(TradeDeskError):
    """Trade, dispute, user or item does not exist."""
    code = "not_found"
    status_code = 404


class Forbidden(TradeDeskError):
    """Actor is not a party, or not the party allowed to act."""
    code = "forbidden"
    status_code = 403


class InvalidStateTransition(TradeDeskError):
    """Action is illegal in the current status."""
    code = "invalid_state_transition"
    status_code = 409


class AlreadyExists(TradeDeskError):
    """A unique record would be created twice."""
    code = "duplicate"
    status_code = 409


class ValidationError(TradeDeskError):
    """Malformed input: bad score, negative amount, unknown action."""
    code = "validation_error"
    status_code = 400


# ===================
# Escrow
# ===================

class NoCashDifferential(ValidationError):
    """Escrow requested for a trade whose sides are already equal."""
    code = "no_cash_differential"


class WrongPayer(Forbidden):
    """Caller is not the party who owes the differential."""
    code = "wrong_payer"


class AlreadyFunded(AlreadyExists):
    """A FUNDED or RELEASED hold already exists for the trade."""
    code = "already_funded"


class NoEscrowFound(NotFound):
    """No hold exists for the trade."""
    code = "no_escrow_found"


class InvalidEscrowState(InvalidStateTransition):
    """Hold exists but is not in a state that allows the operation."""
    code = "invalid_escrow_state"


class PaymentProviderError(TradeDeskError):
    """Payment backend rejected or failed the request."""
    code = "payment_provider_error"
    status_code = 502
    retryable = True

    def __init__(self, message: str, provider: str, code: Optional[str] = None, retryable: Optional[bool] = None):
        self.provider = provider
        super().__init__(f"[{provider}] {message}", code=code, retryable=retryable)


class ProviderTimeout(PaymentProviderError):
    """Payment backend did not answer in time; the hold is left untouched."""
    code = "provider_timeout"
    status_code = 504


# ===================
# Ratings & Disputes
# ===================

class AlreadyRated(AlreadyExists):
    """Rater already submitted a rating for this trade."""
    code = "already_rated"


class DisputeAlreadyOpen(AlreadyExists):
    """Trade already has an unresolved dispute."""
    code = "dispute_already_open"

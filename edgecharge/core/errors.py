"""
Error types raised across EdgeCharge.

Every ledger rejection is locally recoverable: fix the input and retry.
"""


class EdgeChargeError(Exception):
    """Base class for all EdgeCharge errors."""


class EncodingError(EdgeChargeError):
    """A record cannot be canonically encoded (missing field or overflow)."""


class ValidationError(EdgeChargeError):
    """Input rejected synchronously; nothing was applied."""


class ReplayError(ValidationError):
    """An anchor id or record nonce has already been seen.

    Retries of an already-applied submission end here, so callers treat it
    as a benign no-op rather than a failure.
    """
    def __init__(self, message: str, key: str = ""):
        super().__init__(message)
        self.key = key


class AuthorizationError(EdgeChargeError):
    """Caller is not the owner, an authorized relayer or the target provider."""


class InsufficientFundsError(EdgeChargeError):
    """Escrow balance is below the amount being settled."""
    def __init__(self, message: str, available: int, required: int):
        super().__init__(message)
        self.available = available
        self.required = required


class SignatureError(EdgeChargeError):
    """A usage record failed provider signature verification."""


class PausedError(EdgeChargeError):
    """The ledger is paused; mutating calls are disabled."""


class ReentrancyError(EdgeChargeError):
    """A guarded call was re-entered while still in progress."""


class TransportError(EdgeChargeError):
    """Submission did not reach the ledger or its outcome is unknown."""


class StaleStateError(EdgeChargeError):
    """The store changed after the state being committed was loaded."""

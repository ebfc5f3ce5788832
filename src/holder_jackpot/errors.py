from __future__ import annotations


class JackpotError(RuntimeError):
    """Base class for every error raised by the jackpot engine."""


class NetworkError(JackpotError):
    """Transient RPC / transport failure. Safe to retry."""


class ConfirmationError(JackpotError):
    """A transaction was submitted but never confirmed (or failed on chain)."""


class InsufficientFunds(JackpotError):
    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient disbursing balance. Required: {required}, Available: {available}"
        )
        self.required = required
        self.available = available


class NoEligibleHolders(JackpotError):
    """The current snapshot has nobody above the minimum hold amount."""


class ConfigurationError(JackpotError):
    pass


class InvalidStateError(JackpotError):
    """An admin action was requested in a state that does not allow it."""


class PayoutNotFound(JackpotError):
    pass


class AuditMismatch(JackpotError):
    """A replayed draw disagrees with what its audit recorded."""

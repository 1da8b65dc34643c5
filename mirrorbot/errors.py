"""
Typed failures for the execution and mirroring engine.

Every error carries a human-readable ``category`` that is safe to show a
user or persist on a MirrorOutcome, and a ``retryable`` flag consulted by
the ResilientExecutor. Raw upstream messages stay in ``str(error)`` and in
the logs only.
"""


class MirrorBotError(Exception):
    """Base class for all engine failures."""

    category = "Unexpected error"
    retryable = False


class ConfigurationError(MirrorBotError):
    """Invalid static configuration (treasury, endpoints, limits). Fail fast."""

    category = "Configuration error"


class InvalidAddress(MirrorBotError):
    """Address matches neither the EVM nor the Solana grammar."""

    category = "Invalid wallet address"


class AlreadySubscribed(MirrorBotError):
    """Follower already has an active mirror config."""

    category = "Already mirroring a wallet"


class NotSubscribed(MirrorBotError):
    """Follower has no mirror config."""

    category = "Not mirroring any wallet"


class InvalidAsset(MirrorBotError):
    """Asset metadata could not be resolved."""

    category = "Unknown asset"


class NoRouteFound(MirrorBotError):
    """Quoting service found no viable route."""

    category = "No swap route available"


class CostEstimationFailed(MirrorBotError):
    """Every cost tier failed."""

    category = "Could not estimate network cost"
    retryable = True


class InsufficientFunds(MirrorBotError):
    """Balance does not cover value plus network cost."""

    category = "Insufficient balance"


class InsufficientAllowance(InsufficientFunds):
    """Router is not approved to spend the input token."""

    category = "Token spend not approved"


class UserRejected(MirrorBotError):
    """Signer refused to sign."""

    category = "Signing rejected"


class TransientNetworkError(MirrorBotError):
    """Upstream endpoint failure. Safe to retry on another endpoint."""

    category = "Network error"
    retryable = True


class TransactionReverted(MirrorBotError):
    """Transaction was included but failed on chain."""

    category = "Transaction reverted"
    retryable = True


class ConfirmationTimeout(MirrorBotError):
    """Confirmation was not observed within the wall-clock bound."""

    category = "Confirmation pending"

    def __init__(self, message: str, reference: str = ""):
        super().__init__(message)
        self.reference = reference


class SwapExecutionFailed(MirrorBotError):
    """All execution attempts were exhausted."""

    category = "Swap failed after retries"

    def __init__(self, message: str, attempts=None, last_error: Exception = None):
        super().__init__(message)
        self.attempts = list(attempts or [])
        self.last_error = last_error

    @property
    def last_category(self) -> str:
        if self.last_error is None:
            return self.category
        return getattr(self.last_error, "category", self.category)


class RateLimitExceeded(MirrorBotError):
    """Security gate refused the action."""

    category = "Rate limit exceeded"

    def __init__(self, message: str, action: str = "", retry_after: float = 0.0):
        super().__init__(message)
        self.action = action
        self.retry_after = retry_after


def describe_failure(error: BaseException) -> str:
    """Human-readable failure category for any exception."""
    if isinstance(error, SwapExecutionFailed):
        return error.last_category
    if isinstance(error, MirrorBotError):
        return error.category
    return MirrorBotError.category

"""
Error taxonomy for the credit core.

Every failure that crosses the core boundary is one of these classes, so
callers can tell a business rule (insufficient credits) from a transient
fault (unreachable store, write conflict) from a data error (not found).
"""

from typing import Optional


class CreditError(Exception):
    """Base class for all credit core failures."""


class AuthFailure(CreditError):
    """Authentication failed; recoverable by re-authenticating."""


class InvalidCredentials(AuthFailure):
    """Email or password did not match."""


class AccountExists(AuthFailure):
    """Sign-up attempted for an email that already has an account."""


class ProviderError(AuthFailure):
    """An OAuth provider rejected the sign-in or is not configured."""


class SessionExpired(AuthFailure):
    """Session token expired and could not be refreshed."""


class InsufficientCredits(CreditError):
    """A debit was larger than the available balance."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits: {required:,} required, {available:,} available "
            f"(short by {self.shortfall:,})"
        )

    @property
    def shortfall(self) -> int:
        """Credits missing to cover the request."""
        return max(self.required - self.available, 0)


class Conflict(CreditError):
    """Optimistic-concurrency retries were exhausted on a ledger write."""


class AlreadyProcessed(CreditError):
    """A correlation key was already applied.

    Raised inside the ledger only; ``debit`` and ``grant`` answer it with the
    original transaction marked as a duplicate, so callers see success.
    """

    def __init__(self, correlation_key: str, transaction_id: str):
        super().__init__(f"Correlation key {correlation_key} already applied as {transaction_id}")
        self.correlation_key = correlation_key
        self.transaction_id = transaction_id


class NotFound(CreditError):
    """Unknown job, transaction, plan or payment."""


class UnknownPlan(NotFound):
    """Plan id is not in the catalog."""


class JobNotFound(NotFound):
    """Job id does not exist."""


class TransactionNotFound(NotFound):
    """Transaction id does not exist."""


class PaymentNotFound(NotFound):
    """Payment id has never been delivered."""


class UnknownIdentity(CreditError):
    """A payment could not be matched to a real account.

    The payment is parked in the guest bucket; ``payment_id`` is the
    reference support needs to migrate it.
    """

    def __init__(self, message: str, payment_id: Optional[str] = None):
        super().__init__(message)
        self.payment_id = payment_id


class AlreadyReversed(CreditError):
    """The transaction already has a compensating entry."""


class InvalidPayment(CreditError):
    """Payment amount or currency does not match the plan."""


class LedgerError(CreditError):
    """A ledger operation was used in a way the data does not allow."""


class Unreachable(CreditError):
    """The remote store or auth service did not answer in time."""

"""
Credit ledger.

The authoritative balance and transaction log of each identity.

Guarantees:
1. Balance always equals the sum of the account's transactions
2. No write takes a balance below zero, even with concurrent clients
3. A correlation key is applied at most once; retries return the original
4. A transaction is reversed at most once

Writes never compute a balance on the client. Each attempt is a
conditional append against the account version that was read; when another
client got there first the attempt is retried a bounded number of times.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .errors import (
    AlreadyProcessed,
    AlreadyReversed,
    Conflict,
    InsufficientCredits,
    LedgerError,
    TransactionNotFound,
)
from .remote import retry_read
from studio_credits.storage.models import Account, LedgerTransaction, utcnow
from studio_credits.storage.repository import DuplicateEntry, LedgerRepository

logger = logging.getLogger(__name__)

WELCOME_REASON = "Welcome credits"


def welcome_key(identity: str) -> str:
    return f"welcome:{identity}"


@dataclass(frozen=True)
class LedgerEntry:
    """Outcome of a ledger mutation.

    ``duplicate`` is True when the correlation key had already been applied
    and no new transaction was written.
    """
    transaction_id: str
    amount: int
    balance: Optional[int]
    duplicate: bool = False


@dataclass(frozen=True)
class ReconciliationReport:
    """Comparison of the stored balance with the transaction log."""
    identity: str
    balance: int
    transaction_sum: int
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.transaction_sum


def _require_identity(identity: str) -> None:
    if not identity or not str(identity).strip():
        raise ValueError("identity is required and cannot be empty")


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")


class CreditLedger:
    """Per-identity credit accounts backed by the shared store."""

    def __init__(
        self,
        repository: LedgerRepository,
        welcome_grant: int = 100,
        max_conflict_retries: int = 5,
        read_retries: int = 3,
        retry_backoff: float = 0.2,
        clock: Callable[[], datetime] = utcnow,
    ):
        if welcome_grant < 0:
            raise ValueError("welcome_grant cannot be negative")
        self.repository = repository
        self.welcome_grant = welcome_grant
        self.max_conflict_retries = max_conflict_retries
        self.read_retries = read_retries
        self.retry_backoff = retry_backoff
        self.clock = clock

    def get_balance(self, identity: str) -> int:
        """Current balance, opening the account with its welcome grant if new."""
        _require_identity(identity)
        return retry_read(
            lambda: self._ensure_account(identity).balance,
            attempts=self.read_retries,
            backoff=self.retry_backoff,
        )

    def debit(
        self,
        identity: str,
        amount: int,
        reason: str,
        correlation_key: Optional[str] = None,
    ) -> LedgerEntry:
        """Spend credits.

        Args:
            identity: Account owner
            amount: Positive number of credits to spend
            reason: Human-readable description for the audit log
            correlation_key: Idempotency key; a repeated key returns the
                original transaction instead of debiting again

        Raises:
            ValueError: If amount is not a positive integer
            InsufficientCredits: If the balance cannot cover the amount
            Conflict: If concurrent writers kept winning
        """
        _require_identity(identity)
        _require_positive(amount)
        self._ensure_account(identity)
        return self._keyed_append(identity, -amount, reason, correlation_key)

    def grant(
        self,
        identity: str,
        amount: int,
        reason: str,
        correlation_key: Optional[str] = None,
    ) -> LedgerEntry:
        """Add credits; idempotent on ``correlation_key`` like ``debit``."""
        _require_identity(identity)
        _require_positive(amount)
        self._ensure_account(identity)
        return self._keyed_append(identity, amount, reason, correlation_key)

    def reverse(self, transaction_id: str) -> LedgerEntry:
        """Append the compensating transaction of ``transaction_id``.

        Raises:
            TransactionNotFound: If the transaction does not exist
            AlreadyReversed: If it already has a compensating entry
            LedgerError: If it is itself a compensating entry
            InsufficientCredits: If reversing a grant whose credits were spent
        """
        original = self.repository.get_transaction(transaction_id)
        if original is None:
            raise TransactionNotFound(f"Transaction not found: {transaction_id}")
        if original.is_reversal:
            raise LedgerError(f"Transaction {transaction_id} is a reversal and cannot be reversed")
        if self.repository.find_reversal(transaction_id) is not None:
            raise AlreadyReversed(f"Transaction {transaction_id} was already reversed")

        return self._append(
            original.account_id,
            -original.amount,
            f"Reversal of {transaction_id}: {original.reason}",
            correlation_key=None,
            reverses_id=transaction_id,
        )

    def get_transaction(self, transaction_id: str) -> LedgerTransaction:
        transaction = self.repository.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"Transaction not found: {transaction_id}")
        return transaction

    def history(self, identity: str, limit: Optional[int] = 50) -> List[LedgerTransaction]:
        """Most recent transactions of an account, newest first."""
        _require_identity(identity)
        return retry_read(
            lambda: self.repository.list_transactions(identity, limit),
            attempts=self.read_retries,
            backoff=self.retry_backoff,
        )

    def reconcile(self, identity: str) -> ReconciliationReport:
        """Check that the stored balance equals the sum of the log."""
        _require_identity(identity)
        account = self.repository.get_account(identity)
        total, count = self.repository.sum_transactions(identity)
        report = ReconciliationReport(
            identity=identity,
            balance=account.balance if account else 0,
            transaction_sum=total,
            transaction_count=count,
        )
        if not report.consistent:
            logger.error(
                "Ledger mismatch for %s: balance=%d, transactions=%d",
                identity, report.balance, report.transaction_sum,
            )
        return report

    def _ensure_account(self, identity: str) -> Account:
        account = self.repository.get_account(identity)
        if account is None:
            if self.repository.ensure_account(identity, self.clock()):
                logger.info("Opened credit account for %s", identity)
            account = self.repository.get_account(identity)
        # version 0 means nothing was ever written, so the welcome grant is due
        if account.version == 0 and self.welcome_grant > 0:
            try:
                self._append(identity, self.welcome_grant, WELCOME_REASON, welcome_key(identity))
            except AlreadyProcessed:
                logger.debug("Welcome grant for %s written by another client", identity)
            account = self.repository.get_account(identity)
        return account

    def _keyed_append(
        self,
        identity: str,
        amount: int,
        reason: str,
        correlation_key: Optional[str],
    ) -> LedgerEntry:
        try:
            return self._append(identity, amount, reason, correlation_key)
        except AlreadyProcessed as e:
            logger.info("%s", e)
            original = self.repository.get_transaction(e.transaction_id)
            account = self.repository.get_account(identity)
            return LedgerEntry(
                transaction_id=original.transaction_id,
                amount=original.amount,
                balance=account.balance if account else None,
                duplicate=True,
            )

    def _check_key(self, identity: str, correlation_key: str) -> None:
        existing = self.repository.find_by_correlation_key(correlation_key)
        if existing is None:
            return
        if existing.account_id != identity:
            raise LedgerError(
                f"Correlation key {correlation_key} belongs to another account"
            )
        raise AlreadyProcessed(correlation_key, existing.transaction_id)

    def _append(
        self,
        identity: str,
        amount: int,
        reason: str,
        correlation_key: Optional[str],
        reverses_id: Optional[str] = None,
    ) -> LedgerEntry:
        if correlation_key:
            self._check_key(identity, correlation_key)

        for attempt in range(self.max_conflict_retries + 1):
            account = self.repository.get_account(identity)
            if account.balance + amount < 0:
                raise InsufficientCredits(required=-amount, available=account.balance)
            try:
                transaction = self.repository.append(
                    identity,
                    amount,
                    reason,
                    expected_version=account.version,
                    now=self.clock(),
                    correlation_key=correlation_key,
                    reverses_id=reverses_id,
                )
            except DuplicateEntry as e:
                # lost a race against a writer using the same key
                if reverses_id is not None:
                    raise AlreadyReversed(f"Transaction {reverses_id} was already reversed") from e
                if correlation_key:
                    self._check_key(identity, correlation_key)
                raise
            if transaction is not None:
                logger.info(
                    "Ledger %s %+d for %s (%s) -> %s",
                    transaction.transaction_id, amount, identity, reason, account.balance + amount,
                )
                return LedgerEntry(
                    transaction_id=transaction.transaction_id,
                    amount=amount,
                    balance=account.balance + amount,
                )
            logger.debug("Version conflict on %s (attempt %d)", identity, attempt + 1)

        raise Conflict(
            f"Ledger write for {identity} kept conflicting after "
            f"{self.max_conflict_retries + 1} attempts"
        )

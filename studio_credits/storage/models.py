"""
Data models for storage layer.

Defines the records kept in the credit store: identities, sessions,
ledger accounts and transactions, jobs, plans and payments.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


def utcnow() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Serialize a datetime so that string order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Identity:
    """An authenticated user.

    ``user_id`` is the only key; email is informational and backfilled
    once when first seen.
    """
    user_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class Session:
    """A token bound to an identity, with expiry and refresh capability."""
    access_token: str
    refresh_token: str
    identity: Identity
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @property
    def fingerprint(self) -> Tuple[str, datetime]:
        """What makes two sessions materially different."""
        return (self.identity.user_id, self.expires_at)


@dataclass(frozen=True)
class Account:
    """Ledger account state: balance plus the version used for lost-update detection."""
    identity: str
    balance: int
    version: int


@dataclass(frozen=True)
class LedgerTransaction:
    """Immutable, append-only ledger entry.

    Negative amounts are debits, positive amounts are grants. The account
    balance always equals the sum of its transactions.
    """
    transaction_id: str
    account_id: str
    amount: int
    reason: str
    created_at: datetime
    correlation_key: Optional[str] = None
    reverses_id: Optional[str] = None

    @property
    def is_reversal(self) -> bool:
        return self.reverses_id is not None


class JobState(Enum):
    """Lifecycle of a paid tool invocation."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REAPED = "reaped"

    @property
    def is_terminal(self) -> bool:
        return self is not JobState.PENDING


@dataclass(frozen=True)
class Job:
    """One reservation-or-spend unit tied to a tool invocation."""
    job_id: str
    identity: str
    tool_id: str
    state: JobState
    created_at: datetime
    heartbeat_at: datetime
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    finished_at: Optional[datetime] = None


@dataclass(frozen=True)
class Plan:
    """Purchasable bundle of credits. Defined by configuration, never by users."""
    plan_id: str
    name: str
    price: int
    currency: str
    credits: int
    duration_months: int
    description: str = ""

    def __post_init__(self):
        """Validate plan values are positive."""
        if self.price <= 0:
            raise ValueError(f"price of plan {self.plan_id} must be > 0")
        if self.credits <= 0:
            raise ValueError(f"credits of plan {self.plan_id} must be > 0")
        if self.duration_months <= 0:
            raise ValueError(f"duration_months of plan {self.plan_id} must be > 0")


@dataclass(frozen=True)
class PaymentEvent:
    """External notification that a user paid for a plan.

    ``payment_id`` is the idempotency key. ``identity`` is None for a
    purchase made without signing in.
    """
    payment_id: str
    identity: Optional[str]
    plan_id: str
    amount: int
    currency: str
    delivered_at: datetime


class PaymentStatus(Enum):
    APPLIED = "applied"
    GUEST = "guest"
    MIGRATED = "migrated"


@dataclass(frozen=True)
class PaymentRecord:
    """Stored outcome of a payment event."""
    payment_id: str
    identity: Optional[str]
    plan_id: str
    amount: int
    currency: str
    status: PaymentStatus
    delivered_at: datetime
    transaction_id: Optional[str] = None
    migrated_by: Optional[str] = None
    migrated_at: Optional[datetime] = None

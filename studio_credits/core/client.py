"""
Client facade for the tool screens.

``CreditClient`` is the only thing the UI talks to. It wires the session
store, ledger, job tracker and payment reconciler for one process and
exposes the inbound calls (balance, tool invocation, outcome, purchase) and
outbound notifications (balance changed, job rejected).

Identity is always passed explicitly; the only per-process state is the
optional session store and the last balance reported per identity.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .errors import CreditError, InsufficientCredits, LedgerError
from .jobs import JobTracker
from .ledger import CreditLedger
from .payments import PaymentReceipt, PaymentReconciler, PlanCatalog
from .session import SessionChange, SessionStore
from .sweeper import StaleJobSweeper
from studio_credits.config.loader import CheckoutConfig, Settings
from studio_credits.storage.models import Identity, PaymentEvent, Plan
from studio_credits.storage.repository import (
    JobRepository,
    LedgerRepository,
    PaymentRepository,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolInvocation:
    """Answer to ``invoke_tool``: whether the tool may run, and its job."""
    job_id: str
    proceed: bool
    transaction_id: Optional[str] = None
    shortfall: int = 0


@dataclass(frozen=True)
class BalanceChange:
    """Balance as last seen; identity is None after sign-out."""
    identity: Optional[str]
    balance: int


@dataclass(frozen=True)
class JobRejection:
    """A tool invocation refused for lack of credits."""
    identity: str
    job_id: str
    tool_id: str
    required: int
    available: int

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)


@dataclass(frozen=True)
class CheckoutInstructions:
    """How to pay for a plan by bank transfer."""
    plan: Plan
    amount: int
    currency: str
    bank_name: str
    account_name: str
    account_number: str
    transfer_memo: str


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


def adjustment_key(job_id: str) -> str:
    return f"adjust:{job_id}"


def _require_cost(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{name} must be a non-negative integer, got {value!r}")


class CreditClient:
    """Front door of the credit core for one client process."""

    def __init__(
        self,
        ledger: CreditLedger,
        tracker: JobTracker,
        reconciler: PaymentReconciler,
        checkout: Optional[CheckoutConfig] = None,
        session_store: Optional[SessionStore] = None,
        sweeper: Optional[StaleJobSweeper] = None,
    ):
        self.ledger = ledger
        self.tracker = tracker
        self.reconciler = reconciler
        self.checkout = checkout or CheckoutConfig()
        self.session_store = session_store
        self.sweeper = sweeper
        self._balance_listeners: List[Callable[[BalanceChange], None]] = []
        self._rejection_listeners: List[Callable[[JobRejection], None]] = []
        self._last_balance: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._unsubscribe = None
        if session_store is not None:
            self._unsubscribe = session_store.subscribe(self._on_session_change)

    @property
    def catalog(self) -> PlanCatalog:
        return self.reconciler.catalog

    @property
    def current_identity(self) -> Optional[Identity]:
        """Signed-in user, or None when anonymous or without a session store."""
        if self.session_store is None:
            return None
        return self.session_store.identity

    def on_balance_changed(self, listener: Callable[[BalanceChange], None]) -> None:
        self._balance_listeners.append(listener)

    def on_job_rejected(self, listener: Callable[[JobRejection], None]) -> None:
        self._rejection_listeners.append(listener)

    def request_balance(self, identity: Optional[str]) -> int:
        """Balance of ``identity``; zero without an identity."""
        if not identity:
            return 0
        balance = self.ledger.get_balance(identity)
        self._publish_balance(identity, balance)
        return balance

    def invoke_tool(self, identity: str, tool_id: str, estimated_cost: int) -> ToolInvocation:
        """Open a job and pay for it up front.

        A zero-cost tool proceeds without a debit. When credits are short the
        job is failed, listeners get a ``JobRejection`` and the caller gets
        ``proceed=False`` with the shortfall.
        """
        _require_cost("estimated_cost", estimated_cost)

        job_id = self.tracker.open(identity, tool_id)
        if estimated_cost == 0:
            return ToolInvocation(job_id=job_id, proceed=True)

        try:
            entry = self.ledger.debit(identity, estimated_cost, f"Tool: {tool_id}", job_key(job_id))
        except InsufficientCredits as e:
            self.tracker.fail(job_id, str(e))
            rejection = JobRejection(
                identity=identity,
                job_id=job_id,
                tool_id=tool_id,
                required=e.required,
                available=e.available,
            )
            logger.info("Rejected %s for %s: short by %d credits", tool_id, identity, e.shortfall)
            self._notify(self._rejection_listeners, rejection)
            return ToolInvocation(job_id=job_id, proceed=False, shortfall=e.shortfall)
        except CreditError:
            self.tracker.fail(job_id, "debit failed")
            raise

        try:
            self.tracker.attach_debit(job_id, entry.transaction_id)
        except LedgerError:
            # job was reaped between open and attach; give the credits back
            self.ledger.reverse(entry.transaction_id)
            raise
        if entry.balance is not None:
            self._publish_balance(identity, entry.balance)
        return ToolInvocation(job_id=job_id, proceed=True, transaction_id=entry.transaction_id)

    def report_outcome(self, job_id: str, success: bool, actual_cost: Optional[int] = None) -> None:
        """Close a job.

        Failure refunds the up-front debit. On success an ``actual_cost``
        different from what was debited is settled with one adjustment.
        Duplicate reports are ignored. A refund that cannot be written now is
        retried by the stale sweep.

        Raises:
            ValueError: If actual_cost is not a non-negative integer
        """
        if actual_cost is not None:
            _require_cost("actual_cost", actual_cost)
        job = self.tracker.get(job_id)
        if job.state.is_terminal:
            logger.debug("Outcome for job %s ignored: already %s", job_id, job.state.value)
            return

        if not success:
            if self.tracker.fail(job_id, "tool reported failure") and job.transaction_id:
                entry = self.ledger.reverse(job.transaction_id)
                self._publish_balance(job.identity, entry.balance)
            return

        if not self.tracker.complete(job_id):
            return
        if actual_cost is None:
            return

        debited = 0
        if job.transaction_id:
            debited = -self.ledger.get_transaction(job.transaction_id).amount
        difference = actual_cost - debited
        if difference == 0:
            return
        reason = f"Cost adjustment for job {job_id}"
        try:
            if difference > 0:
                entry = self.ledger.debit(job.identity, difference, reason, adjustment_key(job_id))
            else:
                entry = self.ledger.grant(job.identity, -difference, reason, adjustment_key(job_id))
        except InsufficientCredits as e:
            logger.warning("Could not charge %d extra credits for job %s: %s", difference, job_id, e)
            return
        if entry.balance is not None:
            self._publish_balance(job.identity, entry.balance)

    def request_purchase(self, plan_id: str, reference: Optional[str] = None) -> CheckoutInstructions:
        """Bank transfer instructions for a plan.

        The memo pairs the buyer reference (phone number or account) with the
        plan name so support can match the transfer.
        """
        plan = self.catalog.get(plan_id)
        if reference is None:
            identity = self.current_identity
            reference = (identity.email or identity.user_id) if identity else "GUEST"
        return CheckoutInstructions(
            plan=plan,
            amount=plan.price,
            currency=plan.currency,
            bank_name=self.checkout.bank_name,
            account_name=self.checkout.account_name,
            account_number=self.checkout.account_number,
            transfer_memo=f"{reference} {plan.name.upper()}",
        )

    def apply_payment(self, event: PaymentEvent) -> PaymentReceipt:
        receipt = self.reconciler.apply(event)
        if not receipt.already_processed:
            self._refresh(receipt.identity)
        return receipt

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.sweeper is not None:
            self.sweeper.stop()

    def _on_session_change(self, change: SessionChange) -> None:
        if change.new is None:
            self._publish_balance(None, 0)
            return
        if self.sweeper is not None:
            self.sweeper.run_once_in_background()
        self._refresh(change.new.identity.user_id)

    def _refresh(self, identity: str) -> None:
        """Background balance refresh; failures are logged only."""
        try:
            self.request_balance(identity)
        except CreditError as e:
            logger.warning("Balance refresh for %s failed: %s", identity, e)

    def _publish_balance(self, identity: Optional[str], balance: Optional[int]) -> None:
        if balance is None:
            return
        key = identity or ""
        with self._lock:
            if self._last_balance.get(key) == balance:
                return
            self._last_balance[key] = balance
            if identity is None:
                self._last_balance = {"": 0}
        self._notify(self._balance_listeners, BalanceChange(identity=identity, balance=balance))

    def _notify(self, listeners, payload) -> None:
        for listener in list(listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("Notification listener %r failed", listener)


def build_client(
    settings: Settings,
    session_store: Optional[SessionStore] = None,
    start_sweeper: bool = False,
) -> CreditClient:
    """Wire a ``CreditClient`` from settings."""
    timeout = settings.remote.timeout_seconds
    ledger = CreditLedger(
        LedgerRepository(settings.database, timeout),
        welcome_grant=settings.ledger.welcome_grant,
        max_conflict_retries=settings.ledger.max_conflict_retries,
        read_retries=settings.remote.read_retries,
        retry_backoff=settings.remote.retry_backoff_seconds,
    )
    tracker = JobTracker(JobRepository(settings.database, timeout), ledger)
    reconciler = PaymentReconciler(
        ledger,
        PlanCatalog(settings.plans.values()),
        PaymentRepository(settings.database, timeout),
    )
    sweeper = StaleJobSweeper(tracker, settings.jobs.stale_after, settings.jobs.sweep_interval)
    if start_sweeper:
        sweeper.start()
    return CreditClient(
        ledger,
        tracker,
        reconciler,
        checkout=settings.checkout,
        session_store=session_store,
        sweeper=sweeper,
    )

"""
Payment reconciliation.

Turns an external payment confirmation into a ledger grant exactly once.
The payment id is the correlation key of the grant, so a redelivered
confirmation finds the original transaction instead of adding credits.

Payments that cannot be matched to a real account are parked in a guest
bucket. They reach an account only through ``migrate_guest_payment``, an
explicit operator action that is recorded on the payment.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from .errors import InvalidPayment, PaymentNotFound, UnknownIdentity, UnknownPlan
from .ledger import CreditLedger
from studio_credits.storage.models import (
    PaymentEvent,
    PaymentRecord,
    PaymentStatus,
    Plan,
    utcnow,
)
from studio_credits.storage.repository import PaymentRepository

logger = logging.getLogger(__name__)

GUEST_IDENTITY = "guest"


def payment_key(payment_id: str) -> str:
    return f"payment:{payment_id}"


class PlanCatalog:
    """Immutable set of purchasable plans."""

    def __init__(self, plans: Iterable[Plan]):
        self._plans: Dict[str, Plan] = {}
        for plan in plans:
            if plan.plan_id in self._plans:
                raise ValueError(f"Duplicate plan id: {plan.plan_id}")
            self._plans[plan.plan_id] = plan

    def get(self, plan_id: str) -> Plan:
        try:
            return self._plans[plan_id]
        except KeyError:
            raise UnknownPlan(f"Unknown plan: {plan_id}") from None

    def all(self) -> List[Plan]:
        """Plans ordered from cheapest to most expensive."""
        return sorted(self._plans.values(), key=lambda plan: plan.price)

    def __contains__(self, plan_id: str) -> bool:
        return plan_id in self._plans

    def __len__(self) -> int:
        return len(self._plans)


@dataclass(frozen=True)
class PaymentReceipt:
    """User-displayable confirmation of an applied payment."""
    payment_id: str
    transaction_id: str
    identity: str
    plan_id: str
    credits: int
    already_processed: bool
    message: str


class PaymentReconciler:
    """Applies purchased plans to the ledger exactly once."""

    def __init__(
        self,
        ledger: CreditLedger,
        catalog: PlanCatalog,
        repository: PaymentRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.catalog = catalog
        self.repository = repository
        self.clock = clock

    def apply(self, event: PaymentEvent) -> PaymentReceipt:
        """Grant the plan's credits for a payment.

        Raises:
            UnknownPlan: If the plan id is not in the catalog
            InvalidPayment: If amount or currency differ from the plan price
            UnknownIdentity: If the payer cannot be resolved; the payment is
                parked in the guest bucket
        """
        plan = self.catalog.get(event.plan_id)
        if event.amount != plan.price or event.currency.upper() != plan.currency.upper():
            raise InvalidPayment(
                f"Payment {event.payment_id} of {event.amount} {event.currency} does not "
                f"match {plan.name} price {plan.price} {plan.currency}"
            )

        previous = self.repository.get(event.payment_id)
        if previous is not None and previous.status is PaymentStatus.GUEST:
            raise UnknownIdentity(
                f"Payment {event.payment_id} is held in the guest bucket",
                payment_id=event.payment_id,
            )
        if previous is not None and previous.status is PaymentStatus.MIGRATED:
            return PaymentReceipt(
                payment_id=event.payment_id,
                transaction_id=previous.transaction_id,
                identity=previous.identity,
                plan_id=plan.plan_id,
                credits=plan.credits,
                already_processed=True,
                message=f"Payment {event.payment_id} was already applied",
            )

        identity = self._resolve(event.identity)
        if identity is None:
            self._park_as_guest(event)
            raise UnknownIdentity(
                f"Payment {event.payment_id} has no known account; held for migration",
                payment_id=event.payment_id,
            )

        entry = self.ledger.grant(
            identity,
            plan.credits,
            f"{plan.name} plan purchase ({event.payment_id})",
            correlation_key=payment_key(event.payment_id),
        )
        self.repository.record(PaymentRecord(
            payment_id=event.payment_id,
            identity=identity,
            plan_id=plan.plan_id,
            amount=event.amount,
            currency=event.currency,
            status=PaymentStatus.APPLIED,
            delivered_at=event.delivered_at,
            transaction_id=entry.transaction_id,
        ))

        if entry.duplicate:
            logger.info("Payment %s already applied, skipping", event.payment_id)
            message = f"Payment {event.payment_id} was already applied"
        else:
            logger.info("Credited %d credits to %s for payment %s", plan.credits, identity, event.payment_id)
            message = f"Added {plan.credits:,} credits ({plan.name} plan). Reference: {entry.transaction_id}"

        return PaymentReceipt(
            payment_id=event.payment_id,
            transaction_id=entry.transaction_id,
            identity=identity,
            plan_id=plan.plan_id,
            credits=plan.credits,
            already_processed=entry.duplicate,
            message=message,
        )

    def migrate_guest_payment(self, payment_id: str, identity: str, operator: str) -> PaymentReceipt:
        """Move a guest-bucket payment onto a real account.

        Raises:
            PaymentNotFound: If the payment was never delivered
            UnknownIdentity: If the target account does not exist
            InvalidPayment: If the payment is not in the guest bucket
        """
        if not operator or not operator.strip():
            raise ValueError("operator is required to migrate a guest payment")
        record = self.repository.get(payment_id)
        if record is None:
            raise PaymentNotFound(f"Payment not found: {payment_id}")
        if record.status is PaymentStatus.APPLIED:
            raise InvalidPayment(f"Payment {payment_id} was applied directly, not held as guest")
        if record.status is PaymentStatus.MIGRATED:
            if record.identity != identity:
                raise InvalidPayment(f"Payment {payment_id} was already migrated to {record.identity}")
            plan = self.catalog.get(record.plan_id)
            return PaymentReceipt(
                payment_id=payment_id,
                transaction_id=record.transaction_id,
                identity=identity,
                plan_id=plan.plan_id,
                credits=plan.credits,
                already_processed=True,
                message=f"Payment {payment_id} was already migrated",
            )
        if self._resolve(identity) is None:
            raise UnknownIdentity(f"Cannot migrate {payment_id}: unknown account {identity}",
                                  payment_id=payment_id)

        plan = self.catalog.get(record.plan_id)
        entry = self.ledger.grant(
            identity,
            plan.credits,
            f"{plan.name} plan purchase ({payment_id}), guest payment migrated by {operator}",
            correlation_key=payment_key(payment_id),
        )
        self.repository.mark_migrated(payment_id, identity, entry.transaction_id, operator, self.clock())
        logger.info("Guest payment %s migrated to %s by %s", payment_id, identity, operator)
        return PaymentReceipt(
            payment_id=payment_id,
            transaction_id=entry.transaction_id,
            identity=identity,
            plan_id=plan.plan_id,
            credits=plan.credits,
            already_processed=entry.duplicate,
            message=f"Migrated {plan.credits:,} credits to {identity}. Reference: {entry.transaction_id}",
        )

    def list_guest_payments(self) -> List[PaymentRecord]:
        return self.repository.list_by_status(PaymentStatus.GUEST)

    def _resolve(self, identity: Optional[str]) -> Optional[str]:
        if not identity or identity == GUEST_IDENTITY:
            return None
        if not self.repository.identity_exists(identity):
            return None
        return identity

    def _park_as_guest(self, event: PaymentEvent) -> None:
        stored = self.repository.record(PaymentRecord(
            payment_id=event.payment_id,
            identity=event.identity,
            plan_id=event.plan_id,
            amount=event.amount,
            currency=event.currency,
            status=PaymentStatus.GUEST,
            delivered_at=event.delivered_at,
        ))
        if stored:
            logger.warning(
                "Payment %s for plan %s held in guest bucket (payer %r unknown)",
                event.payment_id, event.plan_id, event.identity,
            )

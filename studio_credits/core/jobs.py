"""
Job tracking and stale-job reclamation.

A job is opened when a tool invocation starts and may be paid for before
the remote generation call runs. If the client disappears before reporting
an outcome, the job stays pending and its credits would be lost; the stale
sweep reaps such jobs and reverses their debit.

Reaping order:
1. Claim the job with a compare-and-set ``pending -> reaped`` (one winner)
2. Reverse the attached debit (at most once, enforced by the ledger)
3. Later sweeps retry reversals of reaped or failed jobs that did not go
   through, so a refund lost to a transient fault is never dropped
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .errors import AlreadyReversed, CreditError, JobNotFound, LedgerError
from .ledger import CreditLedger
from studio_credits.storage.models import Job, JobState, utcnow
from studio_credits.storage.repository import JobRepository

logger = logging.getLogger(__name__)

STALE_REASON = "stale: no outcome reported"


@dataclass
class SweepReport:
    """What a single stale-job sweep did."""
    reaped: List[str] = field(default_factory=list)
    reclaimed_credits: int = 0
    reversed_transactions: List[str] = field(default_factory=list)
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


class JobTracker:
    """Records in-flight paid work and moves it into terminal states."""

    def __init__(
        self,
        repository: JobRepository,
        ledger: CreditLedger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.ledger = ledger
        self.clock = clock

    def open(self, identity: str, tool_id: str) -> str:
        """Create a pending job and return its id.

        Raises:
            ValueError: If identity or tool_id is empty
        """
        if not identity or not identity.strip():
            raise ValueError("identity is required and cannot be empty")
        if not tool_id or not tool_id.strip():
            raise ValueError("tool_id is required and cannot be empty")

        now = self.clock()
        job = Job(
            job_id=uuid.uuid4().hex,
            identity=identity,
            tool_id=tool_id,
            state=JobState.PENDING,
            created_at=now,
            heartbeat_at=now,
        )
        self.repository.insert(job)
        logger.debug("Opened job %s for %s on %s", job.job_id, identity, tool_id)
        return job.job_id

    def get(self, job_id: str) -> Job:
        job = self.repository.get(job_id)
        if job is None:
            raise JobNotFound(f"Job not found: {job_id}")
        return job

    def list_jobs(self, identity: Optional[str] = None, state: Optional[JobState] = None,
                  limit: int = 100) -> List[Job]:
        return self.repository.list(identity=identity, state=state, limit=limit)

    def attach_debit(self, job_id: str, transaction_id: str) -> None:
        """Record which ledger transaction paid for the job.

        Attaching the same transaction again is a no-op.

        Raises:
            JobNotFound: If the job does not exist
            LedgerError: If another transaction is attached or the job is no longer pending
        """
        if self.repository.attach_transaction(job_id, transaction_id):
            return
        job = self.get(job_id)
        if job.transaction_id == transaction_id:
            return
        if job.transaction_id is not None:
            raise LedgerError(
                f"Job {job_id} is already paid by transaction {job.transaction_id}"
            )
        raise LedgerError(f"Job {job_id} is {job.state.value}; cannot attach a debit")

    def heartbeat(self, job_id: str) -> bool:
        """Mark the owning client as alive; False once the job is terminal."""
        if self.repository.touch(job_id, self.clock()):
            return True
        self.get(job_id)
        return False

    def complete(self, job_id: str) -> bool:
        """Move a pending job to completed.

        Returns:
            False if the job was already terminal (duplicate signal)
        """
        return self._finish(job_id, JobState.COMPLETED)

    def fail(self, job_id: str, reason: str) -> bool:
        """Move a pending job to failed, recording why."""
        return self._finish(job_id, JobState.FAILED, reason)

    def _finish(self, job_id: str, state: JobState, reason: Optional[str] = None) -> bool:
        if self.repository.transition(job_id, state, self.clock(), reason):
            logger.info("Job %s %s", job_id, state.value)
            return True
        job = self.get(job_id)
        logger.debug("Ignoring %s for job %s: already %s", state.value, job_id, job.state.value)
        return False

    def sweep_stale(self, older_than: timedelta) -> SweepReport:
        """Reap pending jobs with no heartbeat for ``older_than`` and refund them.

        Safe to run concurrently from several clients: only one claims each
        job and the ledger reverses each debit at most once.
        """
        report = SweepReport()

        # refunds left over by an earlier sweep or a failure report that broke midway
        for job in self.repository.find_unrefunded():
            self._reclaim(job, report)

        cutoff = self.clock() - older_than
        for job in self.repository.find_stale(cutoff):
            if not self.repository.transition(job.job_id, JobState.REAPED, self.clock(), STALE_REASON):
                report.skipped += 1
                continue
            report.reaped.append(job.job_id)
            logger.info("Reaped stale job %s (%s, %s)", job.job_id, job.identity, job.tool_id)
            if job.transaction_id:
                self._reclaim(job, report)

        if report.reaped or report.errors:
            logger.info(
                "Stale sweep: reaped=%d reclaimed=%d errors=%d",
                len(report.reaped), report.reclaimed_credits, len(report.errors),
            )
        return report

    def _reclaim(self, job: Job, report: SweepReport) -> None:
        try:
            entry = self.ledger.reverse(job.transaction_id)
        except AlreadyReversed:
            report.skipped += 1
            return
        except CreditError as e:
            logger.warning("Could not reverse %s for job %s: %s", job.transaction_id, job.job_id, e)
            report.errors.append(f"{job.job_id}: {e}")
            return
        report.reclaimed_credits += entry.amount
        report.reversed_transactions.append(job.transaction_id)

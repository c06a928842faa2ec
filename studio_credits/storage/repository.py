"""
Repository pattern for data access.

Handles database operations for the credit store. Ledger writes are
single conditional transactions: the balance update only applies when the
account version is the one the caller read and the balance stays
non-negative, and the transaction insert is guarded by UNIQUE constraints
on correlation key and reversal target.
"""

import re
import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from .db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS, connection
from .models import (
    Account,
    Identity,
    Job,
    JobState,
    LedgerTransaction,
    PaymentRecord,
    PaymentStatus,
    Session,
    from_timestamp,
    to_timestamp,
)

_UNIQUE_FAILURE = re.compile(r"UNIQUE constraint failed: ([\w.]+)")


class DuplicateEntry(Exception):
    """A UNIQUE constraint rejected an insert.

    Attributes:
        column: ``table.column`` that collided, or "" if unknown
    """

    def __init__(self, column: str):
        super().__init__(f"Duplicate value for {column or 'unique column'}")
        self.column = column


def _unique_column(error: sqlite3.IntegrityError) -> str:
    match = _UNIQUE_FAILURE.search(str(error))
    return match.group(1) if match else ""


def new_id() -> str:
    return uuid.uuid4().hex


SCHEMA = """
    CREATE TABLE IF NOT EXISTS identities (
        user_id TEXT PRIMARY KEY,
        email TEXT,
        password_hash TEXT,
        created_at TEXT NOT NULL
    );

    CREATE UNIQUE INDEX IF NOT EXISTS idx_identities_password_email
        ON identities(email) WHERE password_hash IS NOT NULL;

    CREATE TABLE IF NOT EXISTS auth_sessions (
        access_token TEXT PRIMARY KEY,
        refresh_token TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL REFERENCES identities(user_id),
        expires_at TEXT NOT NULL,
        revoked INTEGER NOT NULL DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS accounts (
        identity TEXT PRIMARY KEY,
        balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS transactions (
        transaction_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts(identity),
        amount INTEGER NOT NULL CHECK (amount != 0),
        reason TEXT NOT NULL,
        correlation_key TEXT UNIQUE,
        reverses_id TEXT UNIQUE REFERENCES transactions(transaction_id),
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_transactions_account
        ON transactions(account_id, created_at);

    CREATE TABLE IF NOT EXISTS jobs (
        job_id TEXT PRIMARY KEY,
        identity TEXT NOT NULL,
        tool_id TEXT NOT NULL,
        state TEXT NOT NULL,
        created_at TEXT NOT NULL,
        heartbeat_at TEXT NOT NULL,
        transaction_id TEXT REFERENCES transactions(transaction_id),
        failure_reason TEXT,
        finished_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_jobs_state_heartbeat
        ON jobs(state, heartbeat_at);

    CREATE TABLE IF NOT EXISTS payments (
        payment_id TEXT PRIMARY KEY,
        identity TEXT,
        plan_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        currency TEXT NOT NULL,
        status TEXT NOT NULL,
        transaction_id TEXT REFERENCES transactions(transaction_id),
        delivered_at TEXT NOT NULL,
        migrated_by TEXT,
        migrated_at TEXT
    );
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the credit store tables if they don't exist.

    The transactions table is an append-only ledger: no UPDATE or DELETE is
    ever performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    with connection(db_path) as conn:
        conn.executescript(SCHEMA)
        conn.commit()


TABLES = ("identities", "auth_sessions", "accounts", "transactions", "jobs", "payments")


def schema_initialized(db_path: str = DEFAULT_DB_PATH) -> bool:
    """Check whether ``initialize_schema`` has been run on the store."""
    placeholders = ", ".join("?" for _ in TABLES)
    with connection(db_path) as conn:
        row = conn.execute(
            f"SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name IN ({placeholders})",
            TABLES,
        ).fetchone()
    return row[0] == len(TABLES)


class _Repository:
    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.db_path = db_path
        self.timeout = timeout

    def _connect(self):
        return connection(self.db_path, self.timeout)


def _row_to_transaction(row: sqlite3.Row) -> LedgerTransaction:
    return LedgerTransaction(
        transaction_id=row["transaction_id"],
        account_id=row["account_id"],
        amount=row["amount"],
        reason=row["reason"],
        created_at=from_timestamp(row["created_at"]),
        correlation_key=row["correlation_key"],
        reverses_id=row["reverses_id"],
    )


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        job_id=row["job_id"],
        identity=row["identity"],
        tool_id=row["tool_id"],
        state=JobState(row["state"]),
        created_at=from_timestamp(row["created_at"]),
        heartbeat_at=from_timestamp(row["heartbeat_at"]),
        transaction_id=row["transaction_id"],
        failure_reason=row["failure_reason"],
        finished_at=from_timestamp(row["finished_at"]),
    )


def _row_to_payment(row: sqlite3.Row) -> PaymentRecord:
    return PaymentRecord(
        payment_id=row["payment_id"],
        identity=row["identity"],
        plan_id=row["plan_id"],
        amount=row["amount"],
        currency=row["currency"],
        status=PaymentStatus(row["status"]),
        delivered_at=from_timestamp(row["delivered_at"]),
        transaction_id=row["transaction_id"],
        migrated_by=row["migrated_by"],
        migrated_at=from_timestamp(row["migrated_at"]),
    )


_TRANSACTION_COLUMNS = (
    "transaction_id, account_id, amount, reason, correlation_key, reverses_id, created_at"
)
_JOB_COLUMNS = (
    "job_id, identity, tool_id, state, created_at, heartbeat_at, "
    "transaction_id, failure_reason, finished_at"
)


class LedgerRepository(_Repository):
    """Accounts and the append-only transaction log."""

    def ensure_account(self, identity: str, now: datetime) -> bool:
        """Create an empty account if none exists.

        Returns:
            True if this call created the account
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO accounts (identity, balance, version, created_at, updated_at)
                VALUES (?, 0, 0, ?, ?)
                """,
                (identity, to_timestamp(now), to_timestamp(now)),
            )
            conn.commit()
            return cursor.rowcount == 1

    def get_account(self, identity: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT identity, balance, version FROM accounts WHERE identity = ?",
                (identity,),
            ).fetchone()
        if row is None:
            return None
        return Account(identity=row["identity"], balance=row["balance"], version=row["version"])

    def append(
        self,
        identity: str,
        amount: int,
        reason: str,
        expected_version: int,
        now: datetime,
        correlation_key: Optional[str] = None,
        reverses_id: Optional[str] = None,
    ) -> Optional[LedgerTransaction]:
        """Atomically move the balance and append the matching transaction.

        Both writes commit together or not at all.

        Returns:
            The new transaction, or None if the account version moved or the
            balance would go negative (caller re-reads and decides)

        Raises:
            DuplicateEntry: If the correlation key or reversal target is taken
        """
        transaction = LedgerTransaction(
            transaction_id=new_id(),
            account_id=identity,
            amount=amount,
            reason=reason,
            created_at=now,
            correlation_key=correlation_key,
            reverses_id=reverses_id,
        )
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE accounts
                SET balance = balance + ?, version = version + 1, updated_at = ?
                WHERE identity = ? AND version = ? AND balance + ? >= 0
                """,
                (amount, to_timestamp(now), identity, expected_version, amount),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None
            try:
                conn.execute(
                    f"INSERT INTO transactions ({_TRANSACTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        transaction.transaction_id,
                        identity,
                        amount,
                        reason,
                        correlation_key,
                        reverses_id,
                        to_timestamp(now),
                    ),
                )
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise DuplicateEntry(_unique_column(e)) from e
            conn.commit()
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE transaction_id = ?",
                (transaction_id,),
            ).fetchone()
        return _row_to_transaction(row) if row else None

    def find_by_correlation_key(self, correlation_key: str) -> Optional[LedgerTransaction]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE correlation_key = ?",
                (correlation_key,),
            ).fetchone()
        return _row_to_transaction(row) if row else None

    def find_reversal(self, transaction_id: str) -> Optional[LedgerTransaction]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE reverses_id = ?",
                (transaction_id,),
            ).fetchone()
        return _row_to_transaction(row) if row else None

    def list_transactions(self, identity: str, limit: Optional[int] = None) -> List[LedgerTransaction]:
        """Transactions of one account, newest first."""
        query = (
            f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE account_id = ? "
            "ORDER BY created_at DESC, rowid DESC"
        )
        params: list = [identity]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_transaction(row) for row in rows]

    def sum_transactions(self, identity: str) -> Tuple[int, int]:
        """Sum and count of all transaction amounts for an account."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(amount), 0), COUNT(*) FROM transactions WHERE account_id = ?",
                (identity,),
            ).fetchone()
        return int(row[0]), int(row[1])

    def list_accounts(self) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT identity, balance, version FROM accounts ORDER BY identity"
            ).fetchall()
        return [Account(identity=r["identity"], balance=r["balance"], version=r["version"]) for r in rows]


class JobRepository(_Repository):
    """In-flight units of paid work and their terminal states."""

    def insert(self, job: Job) -> None:
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO jobs ({_JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.job_id,
                    job.identity,
                    job.tool_id,
                    job.state.value,
                    to_timestamp(job.created_at),
                    to_timestamp(job.heartbeat_at),
                    job.transaction_id,
                    job.failure_reason,
                    None,
                ),
            )
            conn.commit()

    def get(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def attach_transaction(self, job_id: str, transaction_id: str) -> bool:
        """Set the paying transaction of a pending job that has none yet."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs SET transaction_id = ?
                WHERE job_id = ? AND transaction_id IS NULL AND state = ?
                """,
                (transaction_id, job_id, JobState.PENDING.value),
            )
            conn.commit()
            return cursor.rowcount == 1

    def transition(
        self,
        job_id: str,
        to_state: JobState,
        now: datetime,
        reason: Optional[str] = None,
    ) -> bool:
        """Compare-and-set ``pending -> to_state``.

        Returns:
            True only for the caller whose write moved the job out of pending
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs SET state = ?, failure_reason = ?, finished_at = ?
                WHERE job_id = ? AND state = ?
                """,
                (to_state.value, reason, to_timestamp(now), job_id, JobState.PENDING.value),
            )
            conn.commit()
            return cursor.rowcount == 1

    def touch(self, job_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET heartbeat_at = ? WHERE job_id = ? AND state = ?",
                (to_timestamp(now), job_id, JobState.PENDING.value),
            )
            conn.commit()
            return cursor.rowcount == 1

    def find_stale(self, cutoff: datetime, limit: int = 500) -> List[Job]:
        """Pending jobs whose last heartbeat is older than ``cutoff``."""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE state = ? AND heartbeat_at < ?
                ORDER BY heartbeat_at LIMIT ?
                """,
                (JobState.PENDING.value, to_timestamp(cutoff), limit),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def find_unrefunded(self, limit: int = 500) -> List[Job]:
        """Reaped or failed jobs whose paying transaction still has no compensation."""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs j
                WHERE j.state IN (?, ?) AND j.transaction_id IS NOT NULL
                  AND NOT EXISTS (
                      SELECT 1 FROM transactions t WHERE t.reverses_id = j.transaction_id
                  )
                ORDER BY j.finished_at LIMIT ?
                """,
                (JobState.REAPED.value, JobState.FAILED.value, limit),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def list(
        self,
        identity: Optional[str] = None,
        state: Optional[JobState] = None,
        limit: int = 100,
    ) -> List[Job]:
        query = f"SELECT {_JOB_COLUMNS} FROM jobs"
        params: list = []
        conditions = []
        if identity:
            conditions.append("identity = ?")
            params.append(identity)
        if state:
            conditions.append("state = ?")
            params.append(state.value)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]


class AuthRepository(_Repository):
    """Identities and issued session tokens."""

    def create_identity(self, identity: Identity, password_hash: Optional[str], now: datetime) -> None:
        """Insert a new identity.

        Raises:
            DuplicateEntry: If a password account already uses this email
        """
        with self._connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO identities (user_id, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
                    (identity.user_id, identity.email, password_hash, to_timestamp(now)),
                )
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise DuplicateEntry(_unique_column(e)) from e
            conn.commit()

    def upsert_identity(self, identity: Identity, now: datetime) -> Identity:
        """Record an identity on first sight and backfill a missing email."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO identities (user_id, email, password_hash, created_at) VALUES (?, ?, NULL, ?)",
                (identity.user_id, identity.email, to_timestamp(now)),
            )
            if identity.email:
                conn.execute(
                    "UPDATE identities SET email = ? WHERE user_id = ? AND email IS NULL",
                    (identity.email, identity.user_id),
                )
            conn.commit()
            row = conn.execute(
                "SELECT user_id, email FROM identities WHERE user_id = ?", (identity.user_id,)
            ).fetchone()
        return Identity(user_id=row["user_id"], email=row["email"])

    def get_identity(self, user_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id, email FROM identities WHERE user_id = ?", (user_id,)
            ).fetchone()
        return Identity(user_id=row["user_id"], email=row["email"]) if row else None

    def find_password_identity(self, email: str) -> Optional[Tuple[Identity, str]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, email, password_hash FROM identities
                WHERE email = ? AND password_hash IS NOT NULL
                """,
                (email,),
            ).fetchone()
        if row is None:
            return None
        return Identity(user_id=row["user_id"], email=row["email"]), row["password_hash"]

    def insert_session(self, session: Session) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_sessions (access_token, refresh_token, user_id, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    session.access_token,
                    session.refresh_token,
                    session.identity.user_id,
                    to_timestamp(session.expires_at),
                ),
            )
            conn.commit()

    def get_session(self, access_token: str) -> Optional[Session]:
        """Look up a non-revoked session; expiry is left to the caller."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.access_token, s.refresh_token, s.expires_at, i.user_id, i.email
                FROM auth_sessions s JOIN identities i ON i.user_id = s.user_id
                WHERE s.access_token = ? AND s.revoked = 0
                """,
                (access_token,),
            ).fetchone()
        if row is None:
            return None
        return Session(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            identity=Identity(user_id=row["user_id"], email=row["email"]),
            expires_at=from_timestamp(row["expires_at"]),
        )

    def rotate_session(self, refresh_token: str, replacement: Session) -> bool:
        """Revoke the session holding ``refresh_token`` and store its replacement.

        Returns:
            False if the refresh token is unknown or already used
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE auth_sessions SET revoked = 1
                WHERE refresh_token = ? AND revoked = 0 AND user_id = ?
                """,
                (refresh_token, replacement.identity.user_id),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return False
            conn.execute(
                """
                INSERT INTO auth_sessions (access_token, refresh_token, user_id, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    replacement.access_token,
                    replacement.refresh_token,
                    replacement.identity.user_id,
                    to_timestamp(replacement.expires_at),
                ),
            )
            conn.commit()
        return True

    def owner_of_refresh_token(self, refresh_token: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT i.user_id, i.email
                FROM auth_sessions s JOIN identities i ON i.user_id = s.user_id
                WHERE s.refresh_token = ? AND s.revoked = 0
                """,
                (refresh_token,),
            ).fetchone()
        return Identity(user_id=row["user_id"], email=row["email"]) if row else None

    def revoke_session(self, access_token: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE auth_sessions SET revoked = 1 WHERE access_token = ? AND revoked = 0",
                (access_token,),
            )
            conn.commit()
            return cursor.rowcount == 1


class PaymentRepository(_Repository):
    """Delivered payment events, including the guest bucket."""

    def get(self, payment_id: str) -> Optional[PaymentRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM payments WHERE payment_id = ?", (payment_id,)
            ).fetchone()
        return _row_to_payment(row) if row else None

    def record(self, record: PaymentRecord) -> bool:
        """Store a payment outcome once; later deliveries leave it untouched.

        Returns:
            True if this call stored the record
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO payments
                (payment_id, identity, plan_id, amount, currency, status,
                 transaction_id, delivered_at, migrated_by, migrated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL)
                """,
                (
                    record.payment_id,
                    record.identity,
                    record.plan_id,
                    record.amount,
                    record.currency,
                    record.status.value,
                    record.transaction_id,
                    to_timestamp(record.delivered_at),
                ),
            )
            conn.commit()
            return cursor.rowcount == 1

    def mark_migrated(
        self,
        payment_id: str,
        identity: str,
        transaction_id: str,
        operator: str,
        now: datetime,
    ) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE payments
                SET status = ?, identity = ?, transaction_id = ?, migrated_by = ?, migrated_at = ?
                WHERE payment_id = ? AND status = ?
                """,
                (
                    PaymentStatus.MIGRATED.value,
                    identity,
                    transaction_id,
                    operator,
                    to_timestamp(now),
                    payment_id,
                    PaymentStatus.GUEST.value,
                ),
            )
            conn.commit()
            return cursor.rowcount == 1

    def list_by_status(self, status: PaymentStatus) -> List[PaymentRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM payments WHERE status = ? ORDER BY delivered_at",
                (status.value,),
            ).fetchall()
        return [_row_to_payment(row) for row in rows]

    def identity_exists(self, user_id: str) -> bool:
        """True if the user signed in at least once or already holds an account."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS (SELECT 1 FROM identities WHERE user_id = ?)
                    OR EXISTS (SELECT 1 FROM accounts WHERE identity = ?)
                """,
                (user_id, user_id),
            ).fetchone()
        return bool(row[0])

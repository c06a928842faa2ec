"""
Database connection management.

Provides SQLite connections to the shared credit store. Every client opens
its own connections; the database file is the only shared state.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from studio_credits.core.errors import Unreachable

DEFAULT_DB_PATH = "studio_credits.db"
DEFAULT_TIMEOUT_SECONDS = 15.0

# OperationalError messages that mean "store not available", not a bad query
_UNREACHABLE_MARKERS = (
    "database is locked",
    "database is busy",
    "unable to open database",
    "disk i/o error",
)


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before giving up

    Returns:
        SQLite connection with foreign key constraints enabled

    Raises:
        Unreachable: If the database file cannot be opened
    """
    path = Path(db_path)
    try:
        conn = sqlite3.connect(str(path), timeout=timeout)
    except sqlite3.OperationalError as e:
        raise Unreachable(f"Cannot open credit store {db_path}: {e}") from e
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def is_unreachable(error: sqlite3.OperationalError) -> bool:
    """Tell a transient store failure apart from a programming error."""
    message = str(error).lower()
    return any(marker in message for marker in _UNREACHABLE_MARKERS)


@contextmanager
def connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Iterator[sqlite3.Connection]:
    """Open a connection, translating lock timeouts into ``Unreachable``.

    The connection is always closed; uncommitted work is rolled back.
    """
    conn = get_connection(db_path, timeout)
    try:
        yield conn
    except sqlite3.OperationalError as e:
        conn.rollback()
        if is_unreachable(e):
            raise Unreachable(f"Credit store unavailable: {e}") from e
        raise
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

"""
SQLite-backed message and expense store.

Every write against raw_messages is conditional on the row still being
unprocessed, so a redelivered or concurrent invocation can never mutate a
message that already reached a terminal state. Expense creation and the
raw-message mark run in one IMMEDIATE transaction.
"""
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from core.config import Settings, get_settings
from core.exceptions import StoreError
from core.logger import setup_logger
from core.schema import ErrorInfo, Expense, MessageState, RawMessage, utc_now_iso

logger = setup_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS raw_messages (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    sender TEXT NOT NULL,
    message TEXT NOT NULL,
    received_at TEXT NOT NULL,
    processed INTEGER NOT NULL DEFAULT 0,
    expense_id TEXT,
    error_code TEXT,
    error_message TEXT,
    state TEXT NOT NULL DEFAULT 'created',
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_raw_messages_user ON raw_messages (user_id);
CREATE INDEX IF NOT EXISTS idx_raw_messages_pending ON raw_messages (processed, updated_at);

CREATE TABLE IF NOT EXISTS expenses (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    amount REAL NOT NULL CHECK (amount > 0),
    category TEXT NOT NULL,
    note TEXT NOT NULL,
    source TEXT NOT NULL,
    date TEXT NOT NULL,
    sender TEXT NOT NULL,
    message TEXT NOT NULL,
    received_at TEXT NOT NULL,
    expense_type TEXT NOT NULL,
    raw_message_id TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_expenses_user ON expenses (user_id, date);
"""

# A raw message may only be touched while it is still in flight
_ELIGIBLE = "processed = 0 AND expense_id IS NULL"

# Closing without an expense is only allowed while none was written for the message
_NO_EXPENSE = "NOT EXISTS (SELECT 1 FROM expenses e WHERE e.raw_message_id = raw_messages.id)"


def _row_to_raw_message(row: sqlite3.Row) -> RawMessage:
    error = None
    if row["error_code"]:
        error = ErrorInfo(code=row["error_code"], message=row["error_message"] or "")
    return RawMessage(
        id=row["id"],
        user_id=row["user_id"],
        sender=row["sender"],
        message=row["message"],
        received_at=row["received_at"],
        processed=bool(row["processed"]),
        expense_id=row["expense_id"],
        error=error,
        state=MessageState(row["state"]),
        updated_at=row["updated_at"],
    )


def _row_to_expense(row: sqlite3.Row) -> Expense:
    return Expense(
        id=row["id"],
        user_id=row["user_id"],
        amount=row["amount"],
        category=row["category"],
        note=row["note"],
        source=row["source"],
        date=row["date"],
        sender=row["sender"],
        message=row["message"],
        received_at=row["received_at"],
        expense_type=row["expense_type"],
        raw_message_id=row["raw_message_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class Database:
    """Access layer for the raw_messages and expenses tables."""

    def __init__(self, db_path: str, timeout: float = 10.0):
        self.db_path = db_path
        self.timeout = timeout

    def get_connection(self) -> sqlite3.Connection:
        """Create a database connection in autocommit mode."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            conn = self.get_connection()
            yield conn
        except sqlite3.Error as e:
            logger.error(f"Database operation '{operation}' failed: {e}")
            raise StoreError(
                f"Database operation '{operation}' failed",
                details={"operation": operation, "error": str(e)},
            )
        finally:
            if conn is not None:
                conn.close()

    def init_db(self) -> None:
        """Initialize database tables."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        with self._connection("init_db") as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        logger.info(f"Database initialized at {self.db_path}")

    # ------------------------------------------------------------------
    # Raw messages
    # ------------------------------------------------------------------

    def create_raw_message(self, raw: RawMessage) -> RawMessage:
        """Insert a new raw message."""
        updated_at = raw.updated_at or utc_now_iso()
        with self._connection("create_raw_message") as conn:
            conn.execute(
                """
                INSERT INTO raw_messages
                    (id, user_id, sender, message, received_at, processed, state, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (raw.id, raw.user_id, raw.sender, raw.message, raw.received_at,
                 MessageState.CREATED.value, updated_at),
            )
        return raw.model_copy(update={"updated_at": updated_at})

    def get_raw_message(self, raw_message_id: str) -> Optional[RawMessage]:
        """Fetch a raw message by id, or None if it does not exist."""
        with self._connection("get_raw_message") as conn:
            row = conn.execute(
                "SELECT * FROM raw_messages WHERE id = ?", (raw_message_id,)
            ).fetchone()
        return _row_to_raw_message(row) if row else None

    def list_raw_messages(
        self,
        user_id: str,
        state: Optional[MessageState] = None,
        limit: int = 100,
    ) -> List[RawMessage]:
        """List a user's raw messages, newest first."""
        query = "SELECT * FROM raw_messages WHERE user_id = ?"
        params: list = [user_id]
        if state is not None:
            query += " AND state = ?"
            params.append(state.value)
        query += " ORDER BY received_at DESC LIMIT ?"
        params.append(limit)

        with self._connection("list_raw_messages") as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_raw_message(row) for row in rows]

    def list_stale_raw_messages(
        self,
        updated_before: str,
        limit: int = 100,
        user_id: Optional[str] = None,
    ) -> List[RawMessage]:
        """Unprocessed messages whose last mutation is older than updated_before."""
        query = f"SELECT * FROM raw_messages WHERE {_ELIGIBLE} AND updated_at <= ?"
        params: list = [updated_before]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY updated_at LIMIT ?"
        params.append(limit)

        with self._connection("list_stale_raw_messages") as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_raw_message(row) for row in rows]

    def mark_processing(self, raw_message_id: str) -> bool:
        """Record that an invocation picked the message up."""
        with self._connection("mark_processing") as conn:
            cursor = conn.execute(
                f"UPDATE raw_messages SET state = ?, updated_at = ? WHERE id = ? AND {_ELIGIBLE}",
                (MessageState.PROCESSING.value, utc_now_iso(), raw_message_id),
            )
        return cursor.rowcount > 0

    def mark_retryable_failure(self, raw_message_id: str, error: ErrorInfo) -> bool:
        """Annotate the error and leave the message unprocessed."""
        with self._connection("mark_retryable_failure") as conn:
            cursor = conn.execute(
                f"""
                UPDATE raw_messages
                SET state = ?, error_code = ?, error_message = ?, updated_at = ?
                WHERE id = ? AND {_ELIGIBLE}
                """,
                (MessageState.RETRYABLE_FAILED.value, error.code, error.message,
                 utc_now_iso(), raw_message_id),
            )
        return cursor.rowcount > 0

    def mark_permanent_failure(self, raw_message_id: str, error: ErrorInfo) -> bool:
        """Close the message with an error; it will not be retried."""
        with self._connection("mark_permanent_failure") as conn:
            cursor = conn.execute(
                f"""
                UPDATE raw_messages
                SET processed = 1, state = ?, error_code = ?, error_message = ?, updated_at = ?
                WHERE id = ? AND {_ELIGIBLE} AND {_NO_EXPENSE}
                """,
                (MessageState.PERMANENTLY_FAILED.value, error.code, error.message,
                 utc_now_iso(), raw_message_id),
            )
        return cursor.rowcount > 0

    def delete_raw_message(self, raw_message_id: str) -> bool:
        """Delete a message that turned out not to be a transaction."""
        with self._connection("delete_raw_message") as conn:
            cursor = conn.execute(
                f"DELETE FROM raw_messages WHERE id = ? AND {_ELIGIBLE} AND {_NO_EXPENSE}",
                (raw_message_id,),
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------

    def commit_expense(self, expense: Expense) -> Optional[Tuple[Expense, bool]]:
        """
        Create the expense and mark its raw message processed, atomically.

        An expense already stored for the same raw message is returned
        instead of inserting a second one, and the raw mark is completed if
        it never landed.

        Args:
            expense: Expense to insert

        Returns:
            (expense linked to the raw message, created flag), or None when
            the raw message is gone or already closed without an expense

        Raises:
            StoreError: If the transaction cannot be completed
        """
        raw_message_id = expense.raw_message_id
        conn = self.get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")

            existing = conn.execute(
                "SELECT * FROM expenses WHERE raw_message_id = ?", (raw_message_id,)
            ).fetchone()
            if existing is not None:
                self._link(conn, raw_message_id, existing["id"])
                conn.execute("COMMIT")
                logger.info(f"Expense {existing['id']} already exists for raw message {raw_message_id}")
                return _row_to_expense(existing), False

            raw = conn.execute(
                "SELECT processed, expense_id FROM raw_messages WHERE id = ?", (raw_message_id,)
            ).fetchone()
            if raw is None or raw["processed"] or raw["expense_id"]:
                conn.execute("ROLLBACK")
                logger.info(f"Raw message {raw_message_id} no longer eligible for commit")
                return None

            conn.execute(
                """
                INSERT INTO expenses
                    (id, user_id, amount, category, note, source, date, sender, message,
                     received_at, expense_type, raw_message_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (expense.id, expense.user_id, expense.amount, expense.category, expense.note,
                 expense.source, expense.date, expense.sender, expense.message,
                 expense.received_at, expense.expense_type, raw_message_id,
                 expense.created_at, expense.updated_at),
            )
            self._link(conn, raw_message_id, expense.id)
            conn.execute("COMMIT")
            return expense, True

        except sqlite3.IntegrityError as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.warning(f"Duplicate expense insert for raw message {raw_message_id}: {e}")
            existing = self.get_expense_by_raw_message_id(raw_message_id)
            if existing is None:
                raise StoreError(
                    "Expense insert violated a constraint",
                    details={"raw_message_id": raw_message_id, "error": str(e)},
                )
            self.link_expense(raw_message_id, existing.id)
            return existing, False

        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error(f"Expense commit failed for raw message {raw_message_id}: {e}")
            raise StoreError(
                "Expense commit failed",
                details={"raw_message_id": raw_message_id, "error": str(e)},
            )

        finally:
            conn.close()

    @staticmethod
    def _link(conn: sqlite3.Connection, raw_message_id: str, expense_id: str) -> int:
        cursor = conn.execute(
            """
            UPDATE raw_messages
            SET processed = 1, expense_id = ?, state = ?,
                error_code = NULL, error_message = NULL, updated_at = ?
            WHERE id = ? AND processed = 0
            """,
            (expense_id, MessageState.COMMITTED.value, utc_now_iso(), raw_message_id),
        )
        return cursor.rowcount

    def link_expense(self, raw_message_id: str, expense_id: str) -> bool:
        """Complete the raw mark for an expense that was already written."""
        with self._connection("link_expense") as conn:
            return self._link(conn, raw_message_id, expense_id) > 0

    def get_expense(self, expense_id: str) -> Optional[Expense]:
        """Fetch an expense by id."""
        with self._connection("get_expense") as conn:
            row = conn.execute("SELECT * FROM expenses WHERE id = ?", (expense_id,)).fetchone()
        return _row_to_expense(row) if row else None

    def get_expense_by_raw_message_id(self, raw_message_id: str) -> Optional[Expense]:
        """Fetch the expense committed for a raw message, if any."""
        with self._connection("get_expense_by_raw_message_id") as conn:
            row = conn.execute(
                "SELECT * FROM expenses WHERE raw_message_id = ?", (raw_message_id,)
            ).fetchone()
        return _row_to_expense(row) if row else None

    def list_expenses(self, user_id: str, limit: int = 100) -> List[Expense]:
        """List a user's expenses, most recent first."""
        with self._connection("list_expenses") as conn:
            rows = conn.execute(
                "SELECT * FROM expenses WHERE user_id = ? ORDER BY date DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [_row_to_expense(row) for row in rows]

    def count_expenses_for_raw_message(self, raw_message_id: str) -> int:
        """Number of expenses pointing at a raw message (0 or 1)."""
        with self._connection("count_expenses_for_raw_message") as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM expenses WHERE raw_message_id = ?", (raw_message_id,)
            ).fetchone()
        return row["n"]

    def find_unlinked_expenses(self, user_id: Optional[str] = None) -> List[Expense]:
        """Expenses whose source raw message was never marked processed."""
        query = """
            SELECT e.* FROM expenses e
            JOIN raw_messages r ON r.id = e.raw_message_id
            WHERE (r.processed = 0 OR r.expense_id IS NULL)
        """
        params: list = []
        if user_id is not None:
            query += " AND e.user_id = ?"
            params.append(user_id)

        with self._connection("find_unlinked_expenses") as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_expense(row) for row in rows]


# Global DB instance
_db: Optional[Database] = None


def get_db(settings: Optional[Settings] = None) -> Database:
    """Get or create the database singleton and make sure tables exist."""
    global _db
    if _db is None:
        settings = settings or get_settings()
        _db = Database(settings.database_path, timeout=settings.database_timeout)
        _db.init_db()
    return _db


def reset_db() -> None:
    """Reset database singleton (useful for testing)."""
    global _db
    _db = None

"""
Repository pattern for durable transaction storage.

The in-memory ledger is the source of truth while the process runs; the
journal is an append-only copy that lets a new process rebuild balances.
"""

import json
from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import Transaction, TransactionType


class TransactionJournal:
    """Append-only SQLite log of credit transactions.

    No UPDATE or DELETE is ever issued against the table. Rows are read back
    by the ledger-assigned sequence, not by the order writes reached SQLite,
    so concurrent or retried appends still come back in application order.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the journal with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the credit_transaction table if it doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS credit_transaction (
                    id TEXT PRIMARY KEY,
                    sequence INTEGER NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    description TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    balance_after INTEGER NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_credit_transaction_user "
                "ON credit_transaction (user_id)"
            )
            conn.commit()
        finally:
            conn.close()

    def append(self, transaction: Transaction) -> None:
        """Append a single transaction.

        Args:
            transaction: The transaction to record
        """
        self.append_many([transaction])

    def append_many(self, transactions: List[Transaction]) -> None:
        """Append several transactions in one SQLite transaction.

        Args:
            transactions: Transactions to record, in ledger order
        """
        if not transactions:
            return

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for txn in transactions:
                conn.execute("""
                    INSERT INTO credit_transaction
                    (id, sequence, user_id, type, amount, description, metadata,
                     timestamp, balance_after)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    txn.id,
                    txn.sequence,
                    txn.user_id,
                    txn.type.value,
                    txn.amount,
                    txn.description,
                    json.dumps(txn.metadata, default=str),
                    txn.timestamp.isoformat(),
                    txn.balance_after
                ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def fetch_transactions(
        self,
        user_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """Fetch transactions in ledger order (oldest first).

        Args:
            user_id: Optional filter for a single user
            limit: Optional maximum number of rows

        Returns:
            List of transactions
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT id, sequence, user_id, type, amount, description, metadata,
                       timestamp, balance_after
                FROM credit_transaction
            """
            params: list = []
            if user_id is not None:
                query += " WHERE user_id = ?"
                params.append(user_id)
            query += " ORDER BY sequence ASC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)

            cursor = conn.execute(query, params)
            return [
                Transaction(
                    id=row[0],
                    sequence=row[1],
                    user_id=row[2],
                    type=TransactionType(row[3]),
                    amount=row[4],
                    description=row[5],
                    metadata=json.loads(row[6]),
                    timestamp=datetime.fromisoformat(row[7]),
                    balance_after=row[8]
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

"""
SQLite cheque ledger.

Holds counterparties (read by reconciliation), committed cheque transactions
and the aggregate ledger summary that every commit and status change
recomputes inside the same database transaction.
"""
import re
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterator, List, Optional

from core.config import get_settings
from core.exceptions import InvalidTransition, NotFoundError
from core.fees import ZERO, compute_profit, to_money
from core.logger import setup_logger
from core.schema import (
    BusinessSummary,
    CustomerRef,
    Transaction,
    TransactionDraft,
    TransactionStatus,
    VendorRef,
)

logger = setup_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS customers (
    customer_id INTEGER PRIMARY KEY,
    customer_name TEXT NOT NULL,
    contact_info TEXT,
    fee_percentage TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS vendors (
    vendor_id TEXT PRIMARY KEY,
    vendor_name TEXT NOT NULL,
    fee_percentage TEXT NOT NULL,
    contact_info TEXT,
    high_risk INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS cheque_transactions (
    transaction_id INTEGER PRIMARY KEY AUTOINCREMENT,
    date TEXT NOT NULL,
    customer_id INTEGER NOT NULL REFERENCES customers(customer_id),
    cheque_number TEXT NOT NULL,
    cheque_amount TEXT NOT NULL,
    customer_fee_percentage TEXT NOT NULL,
    vendor_fee_percentage TEXT NOT NULL,
    customer_fee TEXT NOT NULL,
    net_payable_to_customer TEXT NOT NULL,
    vendor_id TEXT NOT NULL REFERENCES vendors(vendor_id),
    vendor_fee TEXT NOT NULL,
    amount_to_receive_from_vendor TEXT NOT NULL,
    profit TEXT NOT NULL,
    paid_to_customer TEXT NOT NULL DEFAULT '0.00',
    received_from_vendor TEXT NOT NULL DEFAULT '0.00',
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'completed', 'cancelled', 'bounced')),
    requires_review INTEGER NOT NULL DEFAULT 0,
    idempotency_key TEXT NOT NULL UNIQUE,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_summary (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    total_transactions INTEGER NOT NULL,
    total_amount TEXT NOT NULL,
    total_profit TEXT NOT NULL,
    outstanding_balance TEXT NOT NULL,
    pending_transactions INTEGER NOT NULL,
    completed_transactions INTEGER NOT NULL,
    updated_at TIMESTAMP NOT NULL
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_vendor_id_prefix(vendor_name: str) -> str:
    """First three letters of the vendor name, padded with X, or VND."""
    prefix = re.sub(r"[^A-Za-z]", "", vendor_name[:3]).upper()
    if not prefix:
        return "VND"
    return prefix.ljust(3, "X")


class Database:
    def __init__(self, db_path: Optional[str] = None):
        self.settings = get_settings()
        self.db_path = db_path or self.settings.database_path

    def get_connection(self) -> sqlite3.Connection:
        """Create a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Exclusive write transaction: BEGIN IMMEDIATE ... COMMIT, rolled back
        on any exception.
        """
        conn = self.get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def init_db(self) -> None:
        """Initialize database tables."""
        conn = self.get_connection()
        try:
            conn.executescript(SCHEMA)
            logger.info(f"Database initialized at {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Database initialization failed: {e}")
            raise
        finally:
            conn.close()

    # Counterparties

    def add_customer(
        self,
        customer_name: str,
        fee_percentage: Decimal,
        customer_id: Optional[int] = None,
        contact_info: Optional[str] = None,
    ) -> CustomerRef:
        """Add a customer (seeding helper; customer CRUD lives elsewhere)."""
        now = _now()
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO customers (customer_id, customer_name, contact_info, fee_percentage, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (customer_id, customer_name, contact_info, str(Decimal(fee_percentage)), now, now),
            )
            new_id = customer_id if customer_id is not None else cursor.lastrowid
        return CustomerRef(id=new_id, name=customer_name, fee_percentage=Decimal(fee_percentage))

    def add_vendor(
        self,
        vendor_name: str,
        fee_percentage: Decimal,
        vendor_id: Optional[str] = None,
        high_risk: bool = False,
        contact_info: Optional[str] = None,
    ) -> VendorRef:
        """Add a vendor, generating a PREFIX<n> id when none is given."""
        now = _now()
        with self.transaction() as conn:
            if vendor_id is None:
                count = conn.execute("SELECT COUNT(*) FROM vendors").fetchone()[0]
                vendor_id = f"{generate_vendor_id_prefix(vendor_name)}{count + 1}"
            conn.execute(
                "INSERT INTO vendors (vendor_id, vendor_name, fee_percentage, contact_info, high_risk, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (vendor_id, vendor_name, str(Decimal(fee_percentage)), contact_info, int(high_risk), now, now),
            )
        return VendorRef(id=vendor_id, name=vendor_name, fee_percentage=Decimal(fee_percentage), high_risk=high_risk)

    def list_customers(self) -> List[CustomerRef]:
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT customer_id, customer_name, fee_percentage FROM customers ORDER BY customer_id"
            ).fetchall()
            return [
                CustomerRef(id=row["customer_id"], name=row["customer_name"], fee_percentage=Decimal(row["fee_percentage"]))
                for row in rows
            ]
        finally:
            conn.close()

    def list_vendors(self) -> List[VendorRef]:
        conn = self.get_connection()
        try:
            rows = conn.execute(
                "SELECT vendor_id, vendor_name, fee_percentage, high_risk FROM vendors ORDER BY vendor_id"
            ).fetchall()
            return [
                VendorRef(
                    id=row["vendor_id"],
                    name=row["vendor_name"],
                    fee_percentage=Decimal(row["fee_percentage"]),
                    high_risk=bool(row["high_risk"]),
                )
                for row in rows
            ]
        finally:
            conn.close()

    # Transactions

    def insert_transaction(self, draft: TransactionDraft, idempotency_key: str) -> Transaction:
        """
        Insert a transaction and recompute aggregates atomically.

        Raises:
            sqlite3.IntegrityError: If the idempotency key already exists
        """
        now = _now()
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO cheque_transactions (
                    date, customer_id, cheque_number, cheque_amount,
                    customer_fee_percentage, vendor_fee_percentage,
                    customer_fee, net_payable_to_customer, vendor_id, vendor_fee,
                    amount_to_receive_from_vendor, profit, status, requires_review,
                    idempotency_key, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    draft.date.isoformat(),
                    draft.customer_id,
                    draft.cheque_number,
                    str(to_money(draft.cheque_amount)),
                    str(draft.customer_fee_percentage),
                    str(draft.vendor_fee_percentage),
                    str(draft.customer_fee),
                    str(draft.net_payable_to_customer),
                    draft.vendor_id,
                    str(draft.vendor_fee),
                    str(draft.amount_to_receive_from_vendor),
                    str(draft.profit),
                    draft.status.value,
                    int(draft.requires_review),
                    idempotency_key,
                    now,
                    now,
                ),
            )
            transaction_id = cursor.lastrowid
            self._recompute_summary(conn)
            row = self._fetch_transaction_row(conn, transaction_id)
        return self._row_to_transaction(row)

    def get_transaction(self, transaction_id: int) -> Transaction:
        conn = self.get_connection()
        try:
            row = self._fetch_transaction_row(conn, transaction_id)
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", details={"transaction_id": transaction_id})
        return self._row_to_transaction(row)

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM cheque_transactions WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_transaction(row) if row else None

    def update_status(self, transaction_id: int, new_status: TransactionStatus) -> Transaction:
        """
        Move a transaction along the status lattice, recomputing profit and
        aggregates in the same database transaction.

        Raises:
            NotFoundError: Unknown transaction
            InvalidTransition: The edge is not in the lattice
        """
        with self.transaction() as conn:
            row = self._fetch_transaction_row(conn, transaction_id)
            if row is None:
                raise NotFoundError(f"Transaction {transaction_id} not found", details={"transaction_id": transaction_id})

            current = TransactionStatus(row["status"])
            if not current.can_transition_to(new_status):
                raise InvalidTransition(
                    f"Cannot change transaction status from {current.value} to {new_status.value}",
                    details={"transaction_id": transaction_id, "from": current.value, "to": new_status.value},
                )

            profit = compute_profit(Decimal(row["customer_fee"]), Decimal(row["vendor_fee"]), new_status)
            conn.execute(
                "UPDATE cheque_transactions SET status = ?, profit = ?, updated_at = ? WHERE transaction_id = ?",
                (new_status.value, str(profit), _now(), transaction_id),
            )
            self._recompute_summary(conn)
            row = self._fetch_transaction_row(conn, transaction_id)
        return self._row_to_transaction(row)

    # Aggregates

    def get_business_summary(self) -> BusinessSummary:
        conn = self.get_connection()
        try:
            row = conn.execute("SELECT * FROM ledger_summary WHERE id = 1").fetchone()
        finally:
            conn.close()
        if row is None:
            return BusinessSummary()
        return BusinessSummary(
            total_transactions=row["total_transactions"],
            total_amount=Decimal(row["total_amount"]),
            total_profit=Decimal(row["total_profit"]),
            outstanding_balance=Decimal(row["outstanding_balance"]),
            pending_transactions=row["pending_transactions"],
            completed_transactions=row["completed_transactions"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _recompute_summary(self, conn: sqlite3.Connection) -> None:
        rows = conn.execute(
            "SELECT cheque_amount, profit, status, amount_to_receive_from_vendor, received_from_vendor "
            "FROM cheque_transactions"
        ).fetchall()

        total_amount = ZERO
        total_profit = ZERO
        outstanding = ZERO
        pending = completed = 0
        for row in rows:
            status = TransactionStatus(row["status"])
            total_profit += Decimal(row["profit"])
            if status != TransactionStatus.CANCELLED:
                total_amount += Decimal(row["cheque_amount"])
            if status == TransactionStatus.PENDING:
                pending += 1
                unreceived = Decimal(row["amount_to_receive_from_vendor"]) - Decimal(row["received_from_vendor"])
                if unreceived > 0:
                    outstanding += unreceived
            elif status == TransactionStatus.COMPLETED:
                completed += 1

        conn.execute(
            """
            INSERT INTO ledger_summary (
                id, total_transactions, total_amount, total_profit, outstanding_balance,
                pending_transactions, completed_transactions, updated_at
            ) VALUES (1, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                total_transactions = excluded.total_transactions,
                total_amount = excluded.total_amount,
                total_profit = excluded.total_profit,
                outstanding_balance = excluded.outstanding_balance,
                pending_transactions = excluded.pending_transactions,
                completed_transactions = excluded.completed_transactions,
                updated_at = excluded.updated_at
            """,
            (
                len(rows),
                str(to_money(total_amount)),
                str(to_money(total_profit)),
                str(to_money(outstanding)),
                pending,
                completed,
                _now(),
            ),
        )

    @staticmethod
    def _fetch_transaction_row(conn: sqlite3.Connection, transaction_id: int) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM cheque_transactions WHERE transaction_id = ?", (transaction_id,)
        ).fetchone()

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            transaction_id=row["transaction_id"],
            cheque_number=row["cheque_number"],
            date=date.fromisoformat(row["date"]),
            cheque_amount=Decimal(row["cheque_amount"]),
            customer_id=row["customer_id"],
            vendor_id=row["vendor_id"],
            customer_fee_percentage=Decimal(row["customer_fee_percentage"]),
            vendor_fee_percentage=Decimal(row["vendor_fee_percentage"]),
            customer_fee=Decimal(row["customer_fee"]),
            net_payable_to_customer=Decimal(row["net_payable_to_customer"]),
            vendor_fee=Decimal(row["vendor_fee"]),
            amount_to_receive_from_vendor=Decimal(row["amount_to_receive_from_vendor"]),
            profit=Decimal(row["profit"]),
            paid_to_customer=Decimal(row["paid_to_customer"]),
            received_from_vendor=Decimal(row["received_from_vendor"]),
            status=TransactionStatus(row["status"]),
            requires_review=bool(row["requires_review"]),
            idempotency_key=row["idempotency_key"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


# Global DB instance
_db: Optional[Database] = None


def get_db() -> Database:
    global _db
    if _db is None:
        _db = Database()
        _db.init_db()
    return _db


def reset_db() -> None:
    """Reset database singleton (useful for testing)."""
    global _db
    _db = None

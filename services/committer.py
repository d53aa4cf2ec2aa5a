"""
Transaction committer.
The only writer of cheque transactions and their status changes.
"""
import asyncio
import sqlite3
from typing import Optional

from core.db import Database, get_db
from core.exceptions import PersistenceError
from core.logger import setup_logger
from core.schema import BusinessSummary, CommitResult, Transaction, TransactionDraft, TransactionStatus
from services.locks import KeyedLocks

logger = setup_logger(__name__)


class TransactionCommitter:
    """Atomic, idempotent commits against the sqlite ledger."""

    def __init__(self, db: Optional[Database] = None):
        self._db = db
        self._key_locks = KeyedLocks()

    @property
    def db(self) -> Database:
        if self._db is None:
            self._db = get_db()
        return self._db

    def _commit_sync(self, draft: TransactionDraft, idempotency_key: str) -> CommitResult:
        existing = self.db.find_by_idempotency_key(idempotency_key)
        if existing is not None:
            return CommitResult(transaction=existing, duplicate=True)

        try:
            transaction = self.db.insert_transaction(draft, idempotency_key)
        except sqlite3.IntegrityError:
            existing = self.db.find_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            return CommitResult(transaction=existing, duplicate=True)
        return CommitResult(transaction=transaction, duplicate=False)

    async def commit(self, draft: TransactionDraft, idempotency_key: Optional[str] = None) -> CommitResult:
        """
        Persist a reconciled draft.

        Commits sharing an idempotency key are serialized; only the first one
        inserts, the others receive the existing transaction flagged as a
        duplicate.

        Args:
            draft: Reconciled transaction draft
            idempotency_key: Defaults to "<customer_id>:<cheque number>"

        Returns:
            CommitResult

        Raises:
            PersistenceError: If the write fails; nothing is persisted
        """
        key = idempotency_key or draft.idempotency_key()

        async with self._key_locks.acquire(key):
            loop = asyncio.get_running_loop()
            try:
                result = await loop.run_in_executor(None, self._commit_sync, draft, key)
            except sqlite3.Error as e:
                logger.error(f"Commit failed for key {key}: {e}", exc_info=True)
                raise PersistenceError(
                    f"Failed to commit cheque {draft.cheque_number}",
                    details={"idempotency_key": key, "error": str(e)},
                ) from e

        if result.duplicate:
            logger.info(
                f"Duplicate commit for key {key}, returning transaction {result.transaction.transaction_id}"
            )
        else:
            logger.info(
                f"Committed transaction {result.transaction.transaction_id} "
                f"(cheque {draft.cheque_number}, amount {draft.cheque_amount}, profit {draft.profit})"
            )
        return result

    async def transition(self, transaction_id: int, new_status: TransactionStatus) -> Transaction:
        """
        Change a transaction's status along the pending -> terminal lattice.

        Raises:
            NotFoundError: Unknown transaction
            InvalidTransition: The edge is not allowed; status is unchanged
            PersistenceError: If the write fails
        """
        loop = asyncio.get_running_loop()
        try:
            transaction = await loop.run_in_executor(None, self.db.update_status, transaction_id, new_status)
        except sqlite3.Error as e:
            logger.error(f"Status change failed for transaction {transaction_id}: {e}", exc_info=True)
            raise PersistenceError(
                f"Failed to update transaction {transaction_id}",
                details={"transaction_id": transaction_id, "error": str(e)},
            ) from e

        logger.info(f"Transaction {transaction_id} -> {new_status.value} (profit {transaction.profit})")
        return transaction

    async def get_transaction(self, transaction_id: int) -> Transaction:
        """
        Raises:
            NotFoundError: Unknown transaction
            PersistenceError: If the read fails
        """
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.db.get_transaction, transaction_id)
        except sqlite3.Error as e:
            logger.error(f"Reading transaction {transaction_id} failed: {e}", exc_info=True)
            raise PersistenceError(
                f"Failed to read transaction {transaction_id}",
                details={"transaction_id": transaction_id, "error": str(e)},
            ) from e

    async def summary(self) -> BusinessSummary:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.db.get_business_summary)
        except sqlite3.Error as e:
            logger.error(f"Reading ledger summary failed: {e}", exc_info=True)
            raise PersistenceError("Failed to read ledger summary", details={"error": str(e)}) from e

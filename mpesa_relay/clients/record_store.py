"""SQLite-backed record store for transactions and the projects they settle."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from mpesa_relay.models.transaction import (
    ProjectRecord,
    ProjectStatus,
    TransactionRecord,
    TransactionStatus,
)


class RecordStoreError(Exception):
    """Base class for record store failures."""


class TransactionNotFoundError(RecordStoreError):
    """Raised when no transaction matches the requested identifier."""


class ProjectNotFoundError(RecordStoreError):
    """Raised when no project matches the requested identifier."""


class InvalidStatusTransitionError(RecordStoreError):
    """Raised when an update would move a settled transaction back to pending."""


_TRANSACTION_COLUMNS = (
    "status",
    "project_id",
    "amount",
    "payment_intent_id",
    "mpesa_conversation_id",
    "mpesa_transaction_id",
    "b2c_result_code",
    "b2c_result_description",
    "escrowed_at",
    "released_at",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialize(value: Any) -> Any:
    if isinstance(value, TransactionStatus):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _check_transition(current: str, requested: Any) -> None:
    if requested is None:
        return
    target = TransactionStatus(_serialize(requested))
    if target is TransactionStatus.PENDING and current != TransactionStatus.PENDING.value:
        raise InvalidStatusTransitionError(
            f"Cannot move a {current} transaction back to pending."
        )


class SQLiteRecordStore:
    """Transactions and projects tables with update-by-id semantics."""

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    project_id TEXT,
                    amount INTEGER,
                    payment_intent_id TEXT,
                    mpesa_conversation_id TEXT,
                    mpesa_transaction_id TEXT,
                    b2c_result_code TEXT,
                    b2c_result_description TEXT,
                    escrowed_at TEXT,
                    released_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_transactions_conversation
                ON transactions (mpesa_conversation_id)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    # Transactions -----------------------------------------------------------

    def create_transaction(
        self,
        *,
        transaction_id: Optional[str] = None,
        project_id: Optional[str] = None,
        amount: Optional[int] = None,
        payment_intent_id: Optional[str] = None,
    ) -> TransactionRecord:
        """Insert a new pending transaction and return it."""
        record_id = transaction_id or uuid4().hex
        now = _now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO transactions (
                    id, status, project_id, amount, payment_intent_id,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    TransactionStatus.PENDING.value,
                    project_id,
                    amount,
                    payment_intent_id,
                    now,
                    now,
                ),
            )
        return self._require_transaction(record_id)

    def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
        if not row:
            return None
        return TransactionRecord.model_validate(dict(row))

    def list_by_conversation_id(self, conversation_id: str) -> List[TransactionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM transactions WHERE mpesa_conversation_id = ?",
                (conversation_id,),
            ).fetchall()
        return [TransactionRecord.model_validate(dict(row)) for row in rows]

    def update_transaction(
        self, transaction_id: str, updates: Dict[str, Any]
    ) -> TransactionRecord:
        """Apply ``updates`` to the transaction with ``transaction_id``."""
        current = self._require_transaction(transaction_id)
        _check_transition(current.status.value, updates.get("status"))
        assignments, values = self._assignments(updates)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE transactions SET {assignments} WHERE id = ?",
                (*values, transaction_id),
            )
        return self._require_transaction(transaction_id)

    def update_by_conversation_id(
        self, conversation_id: str, updates: Dict[str, Any]
    ) -> List[TransactionRecord]:
        """Apply ``updates`` to every transaction carrying ``conversation_id``."""
        matches = self.list_by_conversation_id(conversation_id)
        for record in matches:
            _check_transition(record.status.value, updates.get("status"))
        if not matches:
            return []
        assignments, values = self._assignments(updates)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE transactions SET {assignments} WHERE mpesa_conversation_id = ?",
                (*values, conversation_id),
            )
        return self.list_by_conversation_id(conversation_id)

    def confirm_escrow(self, payment_intent_id: str) -> TransactionRecord:
        """Mark the charge identified by ``payment_intent_id`` as held in escrow."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM transactions WHERE payment_intent_id = ?",
                (payment_intent_id,),
            ).fetchone()
        if not row:
            raise TransactionNotFoundError(
                f"No transaction with payment intent {payment_intent_id}."
            )
        return self.update_transaction(
            row["id"],
            {"status": TransactionStatus.HELD_IN_ESCROW, "escrowed_at": _now()},
        )

    def _require_transaction(self, transaction_id: str) -> TransactionRecord:
        record = self.get_transaction(transaction_id)
        if record is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found.")
        return record

    @staticmethod
    def _assignments(updates: Dict[str, Any]) -> tuple[str, list[Any]]:
        unknown = set(updates) - set(_TRANSACTION_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown transaction columns: {sorted(unknown)}")
        columns = [*updates.keys(), "updated_at"]
        values = [_serialize(value) for value in updates.values()]
        values.append(_now())
        return ", ".join(f"{column} = ?" for column in columns), values

    # Projects ---------------------------------------------------------------

    def create_project(
        self, *, project_id: Optional[str] = None, status: str = ProjectStatus.OPEN.value
    ) -> ProjectRecord:
        record_id = project_id or uuid4().hex
        now = _now()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO projects (id, status, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (record_id, status, now, now),
            )
        return self._require_project(record_id)

    def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
        if not row:
            return None
        return ProjectRecord.model_validate(dict(row))

    def complete_project(self, project_id: str) -> ProjectRecord:
        """Transition the project to completed."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE projects SET status = ?, updated_at = ? WHERE id = ?",
                (ProjectStatus.COMPLETED.value, _now(), project_id),
            )
        if cursor.rowcount == 0:
            raise ProjectNotFoundError(f"Project not found with id: {project_id}")
        return self._require_project(project_id)

    def _require_project(self, project_id: str) -> ProjectRecord:
        project = self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project not found with id: {project_id}")
        return project


__all__ = [
    "InvalidStatusTransitionError",
    "ProjectNotFoundError",
    "RecordStoreError",
    "SQLiteRecordStore",
    "TransactionNotFoundError",
]

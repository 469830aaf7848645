"""SQLite-backed storage for requests, offers, payment attestations, and messages."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Collection, Iterator


class DuplicateOfferRowError(Exception):
    """Raised when an offer row already exists for the (request_id, expert_id) pair."""


class WorkflowStore:
    """
    SQLite-backed storage for the exchange workflow.

    Every status change goes through a conditional update (``expected_statuses``)
    and returns the number of affected rows so callers can detect lost races.
    ``transaction()`` groups several writes into one atomic unit.
    """

    _REQUEST_COLUMNS: tuple[str, ...] = (
        "request_id",
        "owner_id",
        "title",
        "description",
        "budget",
        "deadline",
        "skills",
        "status",
        "approval_status",
        "expert_id",
        "created_at",
        "updated_at",
        "reviewed_at",
        "reviewed_by",
        "assigned_at",
        "completed_at",
        "cancelled_at",
    )
    _OFFER_COLUMNS: tuple[str, ...] = (
        "offer_id",
        "request_id",
        "expert_id",
        "message",
        "proposed_price",
        "estimated_duration",
        "status",
        "approval_status",
        "created_at",
        "updated_at",
        "reviewed_at",
        "reviewed_by",
        "responded_at",
    )
    _PAYMENT_COLUMNS: tuple[str, ...] = (
        "payment_id",
        "offer_id",
        "request_id",
        "payer_id",
        "amount",
        "status",
        "approver_id",
        "approved_at",
        "rejected_at",
        "created_at",
    )
    _MESSAGE_COLUMNS: tuple[str, ...] = (
        "message_id",
        "conversation_id",
        "sender_id",
        "receiver_id",
        "content",
        "message_type",
        "related_offer_id",
        "is_read",
        "read_at",
        "created_at",
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        self._tx_depth = 0
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS requests (
                    request_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    budget REAL NOT NULL,
                    deadline TEXT NOT NULL,
                    skills TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL DEFAULT 'pending',
                    approval_status TEXT NOT NULL DEFAULT 'pending',
                    expert_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    reviewed_at TEXT,
                    reviewed_by TEXT,
                    assigned_at TEXT,
                    completed_at TEXT,
                    cancelled_at TEXT
                );

                CREATE TABLE IF NOT EXISTS offers (
                    offer_id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL REFERENCES requests(request_id) ON DELETE CASCADE,
                    expert_id TEXT NOT NULL,
                    message TEXT NOT NULL,
                    proposed_price REAL NOT NULL,
                    estimated_duration TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    approval_status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    reviewed_at TEXT,
                    reviewed_by TEXT,
                    responded_at TEXT,
                    UNIQUE(request_id, expert_id)
                );

                CREATE TABLE IF NOT EXISTS payments (
                    payment_id TEXT PRIMARY KEY,
                    offer_id TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    payer_id TEXT NOT NULL,
                    amount REAL NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    approver_id TEXT,
                    approved_at TEXT,
                    rejected_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                    message_id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    receiver_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    message_type TEXT NOT NULL DEFAULT 'text',
                    related_offer_id TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    read_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_offers_request ON offers(request_id, status);
                CREATE INDEX IF NOT EXISTS idx_payments_offer ON payments(offer_id, status);
                CREATE INDEX IF NOT EXISTS idx_messages_conversation
                    ON messages(conversation_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_messages_receiver
                    ON messages(receiver_id, is_read);
                """
            )
            self._db.commit()

    # ------------------------------------------------------------------
    # Transactions and generic helpers
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run the enclosed writes as one atomic unit.

        Re-entrant: nested calls join the outermost transaction. Any exception
        rolls back every write made since the outermost ``BEGIN``.
        """
        with self._lock:
            if self._tx_depth > 0:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return

            self._db.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield
            except BaseException:
                self._tx_depth = 0
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            self._tx_depth = 0
            self._db.commit()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._db.commit()

    def _insert(self, table: str, columns: tuple[str, ...], data: dict[str, Any]) -> None:
        placeholders = ", ".join("?" for _ in columns)
        query = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"  # nosec B608
        values = tuple(data[column] for column in columns)
        with self._lock:
            try:
                self._db.execute(query, values)
            except sqlite3.Error:
                if self._tx_depth == 0:
                    with contextlib.suppress(sqlite3.Error):
                        self._db.execute("ROLLBACK")
                raise
            self._commit()

    def _update(
        self,
        table: str,
        columns: tuple[str, ...],
        where: dict[str, Any],
        updates: dict[str, Any],
        expected_statuses: Collection[str] | None,
        exclude: tuple[str, str] | None = None,
    ) -> int:
        if len(updates) == 0:
            return 0

        if any(column not in columns for column in updates):
            msg = f"Attempted to update unknown {table} column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = list(updates.values())

        clauses = [f"{column} = ?" for column in where]
        params.extend(where.values())
        if expected_statuses is not None:
            statuses = sorted(expected_statuses)
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if exclude is not None:
            clauses.append(f"{exclude[0]} != ?")
            params.append(exclude[1])

        query = f"UPDATE {table} SET {set_clause} WHERE {' AND '.join(clauses)}"  # nosec B608
        with self._lock:
            cursor = self._db.execute(query, params)
            self._commit()
        return int(cursor.rowcount)

    def _select(
        self,
        table: str,
        columns: tuple[str, ...],
        filters: dict[str, Any],
        *,
        statuses: Collection[str] | None = None,
        order_by: str = "created_at DESC",
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[sqlite3.Row]:
        query = f"SELECT {', '.join(columns)} FROM {table}"  # nosec B608
        clauses: list[str] = []
        params: list[object] = []
        for column, value in filters.items():
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if statuses is not None:
            ordered = sorted(statuses)
            clauses.append(f"status IN ({', '.join('?' for _ in ordered)})")
            params.extend(ordered)
        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)
        query += f" ORDER BY {order_by}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        with self._lock:
            return self._db.execute(query, params).fetchall()

    def _count_by_status(self, table: str) -> dict[str, int]:
        query = f"SELECT status, COUNT(*) FROM {table} GROUP BY status"  # nosec B608
        with self._lock:
            rows = self._db.execute(query).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Service requests
    # ------------------------------------------------------------------

    def _row_to_request(self, row: sqlite3.Row) -> dict[str, Any]:
        request = {column: row[column] for column in self._REQUEST_COLUMNS}
        request["skills"] = json.loads(row["skills"])
        return request

    def insert_request(self, request_data: dict[str, Any]) -> None:
        """Insert a new service request row."""
        data = dict(request_data)
        data["skills"] = json.dumps(list(data["skills"]))
        self._insert("requests", self._REQUEST_COLUMNS, data)

    def get_request(self, request_id: str) -> dict[str, Any] | None:
        """Fetch a service request by ID."""
        rows = self._select("requests", self._REQUEST_COLUMNS, {"request_id": request_id})
        if len(rows) == 0:
            return None
        return self._row_to_request(rows[0])

    def update_request(
        self,
        request_id: str,
        updates: dict[str, Any],
        *,
        expected_statuses: Collection[str] | None,
    ) -> int:
        """Update request columns and return the number of affected rows."""
        if "skills" in updates:
            updates = {**updates, "skills": json.dumps(list(updates["skills"]))}
        return self._update(
            "requests",
            self._REQUEST_COLUMNS,
            {"request_id": request_id},
            updates,
            expected_statuses,
        )

    def delete_request(self, request_id: str, *, expected_status: str) -> int:
        """Delete a request still in ``expected_status``. Its offers cascade."""
        with self._lock:
            cursor = self._db.execute(
                "DELETE FROM requests WHERE request_id = ? AND status = ?",
                (request_id, expected_status),
            )
            self._commit()
        return int(cursor.rowcount)

    def list_requests(
        self,
        *,
        status: str | None = None,
        owner_id: str | None = None,
        expert_id: str | None = None,
        approval_status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List requests with optional filters, newest first."""
        rows = self._select(
            "requests",
            self._REQUEST_COLUMNS,
            {
                "status": status,
                "owner_id": owner_id,
                "expert_id": expert_id,
                "approval_status": approval_status,
            },
        )
        return [self._row_to_request(row) for row in rows]

    def list_requests_for_participant(
        self,
        user_id: str,
        statuses: Collection[str],
    ) -> list[dict[str, Any]]:
        """List requests the user owns or is assigned to, limited to ``statuses``."""
        ordered = sorted(statuses)
        query = (
            f"SELECT {', '.join(self._REQUEST_COLUMNS)} FROM requests "  # nosec B608
            "WHERE (owner_id = ? OR expert_id = ?) "
            f"AND status IN ({', '.join('?' for _ in ordered)}) "
            "ORDER BY updated_at DESC"
        )
        with self._lock:
            rows = self._db.execute(query, [user_id, user_id, *ordered]).fetchall()
        return [self._row_to_request(row) for row in rows]

    def count_requests_by_status(self) -> dict[str, int]:
        """Count requests grouped by status."""
        return self._count_by_status("requests")

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    def _row_to_offer(self, row: sqlite3.Row) -> dict[str, Any]:
        return {column: row[column] for column in self._OFFER_COLUMNS}

    def insert_offer(self, offer_data: dict[str, Any]) -> None:
        """Insert an offer. Raises DuplicateOfferRowError on the (request, expert) constraint."""
        try:
            self._insert("offers", self._OFFER_COLUMNS, offer_data)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateOfferRowError(
                    f"Offer already exists for request={offer_data['request_id']} "
                    f"expert={offer_data['expert_id']}"
                ) from exc
            raise

    def get_offer(self, offer_id: str) -> dict[str, Any] | None:
        """Fetch an offer by ID."""
        rows = self._select("offers", self._OFFER_COLUMNS, {"offer_id": offer_id})
        if len(rows) == 0:
            return None
        return self._row_to_offer(rows[0])

    def find_offer(self, request_id: str, expert_id: str) -> dict[str, Any] | None:
        """Fetch the offer an expert holds on a request, if any."""
        rows = self._select(
            "offers",
            self._OFFER_COLUMNS,
            {"request_id": request_id, "expert_id": expert_id},
        )
        if len(rows) == 0:
            return None
        return self._row_to_offer(rows[0])

    def update_offer(
        self,
        offer_id: str,
        updates: dict[str, Any],
        *,
        expected_statuses: Collection[str] | None,
    ) -> int:
        """Update offer columns and return the number of affected rows."""
        return self._update(
            "offers",
            self._OFFER_COLUMNS,
            {"offer_id": offer_id},
            updates,
            expected_statuses,
        )

    def update_offers_for_request(
        self,
        request_id: str,
        updates: dict[str, Any],
        *,
        expected_statuses: Collection[str],
        exclude_offer_id: str | None = None,
    ) -> int:
        """Update every offer on a request that is in ``expected_statuses``."""
        return self._update(
            "offers",
            self._OFFER_COLUMNS,
            {"request_id": request_id},
            updates,
            expected_statuses,
            exclude=("offer_id", exclude_offer_id) if exclude_offer_id is not None else None,
        )

    def list_offers(
        self,
        *,
        request_id: str | None = None,
        expert_id: str | None = None,
        approval_status: str | None = None,
        statuses: Collection[str] | None = None,
    ) -> list[dict[str, Any]]:
        """List offers with optional filters, newest first."""
        rows = self._select(
            "offers",
            self._OFFER_COLUMNS,
            {
                "request_id": request_id,
                "expert_id": expert_id,
                "approval_status": approval_status,
            },
            statuses=statuses,
        )
        return [self._row_to_offer(row) for row in rows]

    def count_offers(self, request_id: str, statuses: Collection[str]) -> int:
        """Count offers on a request in any of ``statuses``."""
        return len(
            self._select(
                "offers",
                ("offer_id",),
                {"request_id": request_id},
                statuses=statuses,
                order_by="offer_id",
            )
        )

    def count_offers_by_status(self) -> dict[str, int]:
        """Count offers grouped by status."""
        return self._count_by_status("offers")

    # ------------------------------------------------------------------
    # Payment attestations
    # ------------------------------------------------------------------

    def _row_to_payment(self, row: sqlite3.Row) -> dict[str, Any]:
        return {column: row[column] for column in self._PAYMENT_COLUMNS}

    def insert_payment(self, payment_data: dict[str, Any]) -> None:
        """Insert a payment attestation row."""
        self._insert("payments", self._PAYMENT_COLUMNS, payment_data)

    def get_payment(self, payment_id: str) -> dict[str, Any] | None:
        """Fetch a payment attestation by ID."""
        rows = self._select("payments", self._PAYMENT_COLUMNS, {"payment_id": payment_id})
        if len(rows) == 0:
            return None
        return self._row_to_payment(rows[0])

    def find_pending_payment(self, offer_id: str) -> dict[str, Any] | None:
        """Fetch the pending attestation for an offer, if one exists."""
        rows = self._select(
            "payments",
            self._PAYMENT_COLUMNS,
            {"offer_id": offer_id, "status": "pending"},
            limit=1,
        )
        if len(rows) == 0:
            return None
        return self._row_to_payment(rows[0])

    def update_payment(
        self,
        payment_id: str,
        updates: dict[str, Any],
        *,
        expected_statuses: Collection[str] | None,
    ) -> int:
        """Update payment columns and return the number of affected rows."""
        return self._update(
            "payments",
            self._PAYMENT_COLUMNS,
            {"payment_id": payment_id},
            updates,
            expected_statuses,
        )

    def delete_payment(self, payment_id: str) -> int:
        """Delete a payment attestation. Returns the number of deleted rows."""
        with self._lock:
            cursor = self._db.execute("DELETE FROM payments WHERE payment_id = ?", (payment_id,))
            self._commit()
        return int(cursor.rowcount)

    def list_payments(
        self,
        *,
        status: str | None = None,
        payer_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """List payment attestations with optional filters, newest first."""
        rows = self._select(
            "payments",
            self._PAYMENT_COLUMNS,
            {"status": status, "payer_id": payer_id},
        )
        return [self._row_to_payment(row) for row in rows]

    def count_payments_by_status(self) -> dict[str, int]:
        """Count payment attestations grouped by status."""
        return self._count_by_status("payments")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _row_to_message(self, row: sqlite3.Row) -> dict[str, Any]:
        message = {column: row[column] for column in self._MESSAGE_COLUMNS}
        message["is_read"] = bool(message["is_read"])
        return message

    def insert_message(self, message_data: dict[str, Any]) -> None:
        """Insert a message row."""
        data = dict(message_data)
        data["is_read"] = int(bool(data["is_read"]))
        self._insert("messages", self._MESSAGE_COLUMNS, data)

    def get_message(self, message_id: str) -> dict[str, Any] | None:
        """Fetch a message by ID."""
        rows = self._select("messages", self._MESSAGE_COLUMNS, {"message_id": message_id})
        if len(rows) == 0:
            return None
        return self._row_to_message(rows[0])

    def list_messages(
        self,
        conversation_id: str,
        *,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """List a page of messages, newest first."""
        rows = self._select(
            "messages",
            self._MESSAGE_COLUMNS,
            {"conversation_id": conversation_id},
            order_by="created_at DESC, rowid DESC",
            limit=limit,
            offset=offset,
        )
        return [self._row_to_message(row) for row in rows]

    def get_last_message(self, conversation_id: str) -> dict[str, Any] | None:
        """Fetch the most recent message in a conversation."""
        page = self.list_messages(conversation_id, limit=1, offset=0)
        return page[0] if page else None

    def count_messages(self, conversation_id: str | None = None) -> int:
        """Count messages, optionally within one conversation."""
        with self._lock:
            if conversation_id is None:
                row = self._db.execute("SELECT COUNT(*) FROM messages").fetchone()
            else:
                row = self._db.execute(
                    "SELECT COUNT(*) FROM messages WHERE conversation_id = ?",
                    (conversation_id,),
                ).fetchone()
        return int(row[0]) if row is not None else 0

    def count_unread(self, conversation_id: str, receiver_id: str) -> int:
        """Count unread messages addressed to ``receiver_id`` in a conversation."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM messages "
                "WHERE conversation_id = ? AND receiver_id = ? AND is_read = 0",
                (conversation_id, receiver_id),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def mark_message_read(self, message_id: str, read_at: str) -> int:
        """Mark one unread message as read. Returns 0 if it was already read."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE messages SET is_read = 1, read_at = ? WHERE message_id = ? AND is_read = 0",
                (read_at, message_id),
            )
            self._commit()
        return int(cursor.rowcount)

    def mark_conversation_read(self, conversation_id: str, receiver_id: str, read_at: str) -> int:
        """Mark every unread message addressed to ``receiver_id`` as read."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE messages SET is_read = 1, read_at = ? "
                "WHERE conversation_id = ? AND receiver_id = ? AND is_read = 0",
                (read_at, conversation_id, receiver_id),
            )
            self._commit()
        return int(cursor.rowcount)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()

"""
tradedocs -- SQLite Storage

Durable store for documents, clients, business profiles, signatures, the
reminder idempotency log and the activity log.

Database schema:
    businesses     - BusinessProfile (connections / reminder settings as JSON)
    clients        - Client contact details
    documents      - Quotes and invoices with their lifecycle timestamps
    line_items     - Ordered line items per document
    signatures     - Acceptance / decline signatures
    reminder_log   - One row per (document_id, tier); never updated or deleted
    activity_log   - Human-readable history with JSON metadata
    action_claims  - Short-lived per-document claims for in-flight sends

Status writes are compare-and-set: ``transition_status`` only updates the
row while it still holds the expected prior status, and reports whether it
did.

Usage:
    store = SQLiteStorage("output/tradedocs.db")
    store.save_document(invoice)
    if store.transition_status(invoice.id, DocumentStatus.DRAFT, DocumentStatus.SENT,
                               sent_at=now):
        ...
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import asdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional

from .models import (
    AccountingConnection,
    ActivityEntry,
    BusinessProfile,
    Channel,
    Client,
    DeliveryMode,
    Document,
    DocumentKind,
    DocumentStatus,
    EmailConnection,
    LineItem,
    ReminderLog,
    ReminderSettings,
    ReminderTone,
    Signature,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]

# Columns a status transition may set alongside the status itself.
_TRANSITION_FIELDS = {
    "sent_at",
    "paid_at",
    "accepted_at",
    "declined_at",
    "cancelled_at",
    "accepted_by",
    "signature_ref",
    "decline_reason",
    "paid_amount",
    "payment_method",
}


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS businesses (
    id                          TEXT PRIMARY KEY,
    owner_id                    TEXT NOT NULL DEFAULT '',
    name                        TEXT NOT NULL DEFAULT '',
    email                       TEXT,
    phone                       TEXT NOT NULL DEFAULT '',
    abn                         TEXT NOT NULL DEFAULT '',
    address                     TEXT NOT NULL DEFAULT '',
    brand_color                 TEXT NOT NULL DEFAULT '',
    preferred_delivery_mode     TEXT NOT NULL DEFAULT 'manual-review',
    email_connection_json       TEXT,                       -- JSON object or NULL
    accounting_connection_json  TEXT,                       -- JSON object or NULL
    reminder_settings_json      TEXT                        -- JSON object or NULL
);

CREATE TABLE IF NOT EXISTS clients (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL DEFAULT '',
    email       TEXT,
    phone       TEXT,
    address     TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS documents (
    id              TEXT PRIMARY KEY,
    kind            TEXT NOT NULL,
    number          TEXT NOT NULL,
    title           TEXT NOT NULL DEFAULT '',
    status          TEXT NOT NULL DEFAULT 'draft',
    client_id       TEXT NOT NULL,
    business_id     TEXT NOT NULL,
    total           TEXT NOT NULL DEFAULT '0.00',             -- Decimal as text

    due_date        TEXT,
    valid_until     TEXT,

    created_at      TEXT,
    sent_at         TEXT,
    paid_at         TEXT,
    accepted_at     TEXT,
    declined_at     TEXT,
    cancelled_at    TEXT,

    job_id          TEXT,
    accounting_id   TEXT,

    accepted_by     TEXT,
    signature_ref   TEXT,
    decline_reason  TEXT,
    paid_amount     TEXT,
    payment_method  TEXT
);

CREATE TABLE IF NOT EXISTS line_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id     TEXT NOT NULL,
    position        INTEGER NOT NULL DEFAULT 0,
    description     TEXT NOT NULL DEFAULT '',
    quantity        TEXT NOT NULL DEFAULT '1',
    unit_price      TEXT NOT NULL DEFAULT '0',
    FOREIGN KEY (document_id) REFERENCES documents(id)
);

CREATE TABLE IF NOT EXISTS signatures (
    id              TEXT PRIMARY KEY,
    document_id     TEXT NOT NULL,
    signer_name     TEXT NOT NULL,
    signature_data  TEXT NOT NULL,
    ip_address      TEXT,
    signed_at       TEXT NOT NULL,
    FOREIGN KEY (document_id) REFERENCES documents(id)
);

CREATE TABLE IF NOT EXISTS reminder_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id     TEXT NOT NULL,
    tier            INTEGER NOT NULL,
    sent_at         TEXT NOT NULL,
    channels_used   TEXT NOT NULL DEFAULT '[]',               -- JSON array
    UNIQUE (document_id, tier)
);

CREATE TABLE IF NOT EXISTS activity_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    business_id     TEXT NOT NULL,
    document_id     TEXT,
    type            TEXT NOT NULL,
    title           TEXT NOT NULL DEFAULT '',
    description     TEXT NOT NULL DEFAULT '',
    metadata        TEXT NOT NULL DEFAULT '{}',               -- JSON object
    created_at      TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS action_claims (
    document_id     TEXT NOT NULL,
    action          TEXT NOT NULL,
    claimed_at      TEXT NOT NULL,
    expires_at      TEXT NOT NULL,
    PRIMARY KEY (document_id, action)
);

CREATE INDEX IF NOT EXISTS idx_documents_business ON documents(business_id, kind, status);
CREATE INDEX IF NOT EXISTS idx_line_items_document ON line_items(document_id);
CREATE INDEX IF NOT EXISTS idx_activity_document ON activity_log(document_id);
CREATE INDEX IF NOT EXISTS idx_activity_business ON activity_log(business_id);
"""


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: Any) -> Any:
    """Convert a Python value to something sqlite3 can bind."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (DocumentStatus, DocumentKind, DeliveryMode)):
        return value.value
    return value


def _dt(val: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(val) if val else None


def _d(val: Optional[str]) -> Optional[date]:
    return date.fromisoformat(val) if val else None


def _dec(val: Optional[str]) -> Optional[Decimal]:
    return Decimal(val) if val not in (None, "") else None


def _document_to_row(doc: Document) -> dict[str, Any]:
    row = {
        "id": doc.id,
        "kind": doc.kind,
        "number": doc.number,
        "title": doc.title,
        "status": doc.status,
        "client_id": doc.client_id,
        "business_id": doc.business_id,
        "total": doc.total,
        "due_date": doc.due_date,
        "valid_until": doc.valid_until,
        "created_at": doc.created_at,
        "sent_at": doc.sent_at,
        "paid_at": doc.paid_at,
        "accepted_at": doc.accepted_at,
        "declined_at": doc.declined_at,
        "cancelled_at": doc.cancelled_at,
        "job_id": doc.job_id,
        "accounting_id": doc.accounting_id,
        "accepted_by": doc.accepted_by,
        "signature_ref": doc.signature_ref,
        "decline_reason": doc.decline_reason,
        "paid_amount": doc.paid_amount,
        "payment_method": doc.payment_method,
    }
    return {k: _to_db(v) for k, v in row.items()}


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        kind=DocumentKind(row["kind"]),
        number=row["number"],
        title=row["title"],
        status=DocumentStatus(row["status"]),
        client_id=row["client_id"],
        business_id=row["business_id"],
        total=Decimal(row["total"]),
        due_date=_d(row["due_date"]),
        valid_until=_d(row["valid_until"]),
        created_at=_dt(row["created_at"]),
        sent_at=_dt(row["sent_at"]),
        paid_at=_dt(row["paid_at"]),
        accepted_at=_dt(row["accepted_at"]),
        declined_at=_dt(row["declined_at"]),
        cancelled_at=_dt(row["cancelled_at"]),
        job_id=row["job_id"],
        accounting_id=row["accounting_id"],
        accepted_by=row["accepted_by"],
        signature_ref=row["signature_ref"],
        decline_reason=row["decline_reason"],
        paid_amount=_dec(row["paid_amount"]),
        payment_method=row["payment_method"],
    )


def _json_or_none(obj: Any) -> Optional[str]:
    if obj is None:
        return None
    data = asdict(obj)
    if isinstance(obj, ReminderSettings):
        data["tone"] = obj.tone.value
    return json.dumps(data)


def _business_to_row(b: BusinessProfile) -> dict[str, Any]:
    return {
        "id": b.id,
        "owner_id": b.owner_id,
        "name": b.name,
        "email": b.email,
        "phone": b.phone,
        "abn": b.abn,
        "address": b.address,
        "brand_color": b.brand_color,
        "preferred_delivery_mode": b.preferred_delivery_mode.value,
        "email_connection_json": _json_or_none(b.email_connection),
        "accounting_connection_json": _json_or_none(b.accounting_connection),
        "reminder_settings_json": _json_or_none(b.reminder_settings),
    }


def _row_to_business(row: sqlite3.Row) -> BusinessProfile:
    email_conn = None
    if row["email_connection_json"]:
        email_conn = EmailConnection(**json.loads(row["email_connection_json"]))
    accounting = None
    if row["accounting_connection_json"]:
        accounting = AccountingConnection(**json.loads(row["accounting_connection_json"]))
    reminders = None
    if row["reminder_settings_json"]:
        data = json.loads(row["reminder_settings_json"])
        data["tone"] = ReminderTone(data.get("tone", ReminderTone.FRIENDLY.value))
        reminders = ReminderSettings(**data)

    return BusinessProfile(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        email=row["email"],
        phone=row["phone"],
        abn=row["abn"],
        address=row["address"],
        brand_color=row["brand_color"],
        preferred_delivery_mode=DeliveryMode(row["preferred_delivery_mode"]),
        email_connection=email_conn,
        accounting_connection=accounting,
        reminder_settings=reminders,
    )


def _row_to_activity(row: sqlite3.Row) -> ActivityEntry:
    return ActivityEntry(
        id=row["id"],
        business_id=row["business_id"],
        document_id=row["document_id"],
        type=row["type"],
        title=row["title"],
        description=row["description"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=_dt(row["created_at"]),
    )


def _row_to_reminder(row: sqlite3.Row) -> ReminderLog:
    return ReminderLog(
        document_id=row["document_id"],
        tier=row["tier"],
        sent_at=datetime.fromisoformat(row["sent_at"]),
        channels_used=[Channel(c) for c in json.loads(row["channels_used"] or "[]")],
    )


# ===========================================================================
# Storage
# ===========================================================================

class SQLiteStorage:
    """Storage interface backed by SQLite.

    Each method opens and closes its own connection.  WAL journal mode and a
    busy timeout let a reminder run and request handlers share the file.
    """

    def __init__(self, db_path: str | Path, clock: Callable[[], datetime] = _now):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _upsert(conn: sqlite3.Connection, table: str, row: dict[str, Any]) -> None:
        columns = list(row.keys())
        placeholders = ", ".join(["?"] * len(columns))
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
        conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}",
            [row[c] for c in columns],
        )

    # ------------------------------------------------------------------
    # Businesses / clients
    # ------------------------------------------------------------------

    def save_business(self, business: BusinessProfile) -> None:
        conn = self._get_conn()
        try:
            self._upsert(conn, "businesses", _business_to_row(business))
            conn.commit()
        finally:
            conn.close()

    def get_business(self, business_id: str) -> Optional[BusinessProfile]:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM businesses WHERE id = ?", (business_id,)).fetchone()
            return _row_to_business(row) if row else None
        finally:
            conn.close()

    def list_businesses(self) -> list[BusinessProfile]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM businesses ORDER BY id").fetchall()
            return [_row_to_business(r) for r in rows]
        finally:
            conn.close()

    def save_client(self, client: Client) -> None:
        conn = self._get_conn()
        try:
            self._upsert(conn, "clients", {
                "id": client.id,
                "name": client.name,
                "email": client.email,
                "phone": client.phone,
                "address": client.address,
            })
            conn.commit()
        finally:
            conn.close()

    def get_client(self, client_id: str) -> Optional[Client]:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone()
            if row is None:
                return None
            return Client(
                id=row["id"],
                name=row["name"],
                email=row["email"],
                phone=row["phone"],
                address=row["address"],
            )
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def save_document(self, document: Document, line_items: list[LineItem] | None = None) -> None:
        """Insert or update a document, replacing its line items when given."""
        if document.created_at is None:
            document.created_at = self._clock()
        conn = self._get_conn()
        try:
            self._upsert(conn, "documents", _document_to_row(document))
            if line_items is not None:
                conn.execute("DELETE FROM line_items WHERE document_id = ?", (document.id,))
                conn.executemany(
                    """INSERT INTO line_items (document_id, position, description, quantity, unit_price)
                       VALUES (?, ?, ?, ?, ?)""",
                    [
                        (document.id, i, item.description, str(item.quantity), str(item.unit_price))
                        for i, item in enumerate(line_items)
                    ],
                )
            conn.commit()
        finally:
            conn.close()

    def get_document(self, document_id: str) -> Optional[Document]:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
            return _row_to_document(row) if row else None
        finally:
            conn.close()

    def get_line_items(self, document_id: str) -> list[LineItem]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM line_items WHERE document_id = ? ORDER BY position",
                (document_id,),
            ).fetchall()
            return [
                LineItem(
                    description=r["description"],
                    quantity=Decimal(r["quantity"]),
                    unit_price=Decimal(r["unit_price"]),
                )
                for r in rows
            ]
        finally:
            conn.close()

    def list_overdue_invoices(self, business_id: str, today: date) -> list[Document]:
        """Sent invoices whose due date is before ``today``, oldest first."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT * FROM documents
                   WHERE business_id = ? AND kind = ? AND status = ?
                     AND due_date IS NOT NULL AND due_date < ?
                   ORDER BY due_date, number""",
                (business_id, DocumentKind.INVOICE.value, DocumentStatus.SENT.value, today.isoformat()),
            ).fetchall()
            return [_row_to_document(r) for r in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Status Transitions
    # ------------------------------------------------------------------

    def transition_status(
        self,
        document_id: str,
        expected: DocumentStatus,
        new: DocumentStatus,
        **fields: Any,
    ) -> bool:
        """Compare-and-set status write.

        Only updates the row while its status still equals ``expected``.
        Returns True if the transition was applied.

        Raises:
            ValueError: A field outside the transition whitelist was passed.
        """
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot set {sorted(unknown)} in a status transition")

        assignments = ["status = ?"] + [f"{k} = ?" for k in fields]
        params = [new.value] + [_to_db(v) for v in fields.values()] + [document_id, expected.value]

        conn = self._get_conn()
        try:
            result = conn.execute(
                f"UPDATE documents SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                params,
            )
            if result.rowcount == 0:
                return False
            conn.commit()
            return True
        finally:
            conn.close()

    def set_accounting_id(self, document_id: str, remote_id: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("UPDATE documents SET accounting_id = ? WHERE id = ?", (remote_id, document_id))
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------------

    def save_signature(self, document_id: str, signature: Signature) -> str:
        """Persist a signature and return its reference id."""
        ref = str(uuid.uuid4())
        conn = self._get_conn()
        try:
            conn.execute(
                """INSERT INTO signatures (id, document_id, signer_name, signature_data, ip_address, signed_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    ref,
                    document_id,
                    signature.signer_name,
                    signature.signature_data,
                    signature.ip_address,
                    _to_db(signature.signed_at or self._clock()),
                ),
            )
            conn.commit()
            return ref
        finally:
            conn.close()

    def get_signature(self, ref: str) -> Optional[Signature]:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM signatures WHERE id = ?", (ref,)).fetchone()
            if row is None:
                return None
            return Signature(
                signer_name=row["signer_name"],
                signature_data=row["signature_data"],
                ip_address=row["ip_address"],
                signed_at=_dt(row["signed_at"]),
            )
        finally:
            conn.close()

    def delete_signature(self, ref: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM signatures WHERE id = ?", (ref,))
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Reminder Log
    # ------------------------------------------------------------------

    def has_reminder(self, document_id: str, tier: int) -> bool:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT 1 FROM reminder_log WHERE document_id = ? AND tier = ?",
                (document_id, tier),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def record_reminder(self, log: ReminderLog) -> bool:
        """Insert a reminder row.  Returns False if (document, tier) already exists."""
        conn = self._get_conn()
        try:
            conn.execute(
                "INSERT INTO reminder_log (document_id, tier, sent_at, channels_used) VALUES (?, ?, ?, ?)",
                (
                    log.document_id,
                    log.tier,
                    _to_db(log.sent_at),
                    json.dumps([c.value for c in log.channels_used]),
                ),
            )
            conn.commit()
            return True
        except sqlite3.IntegrityError:
            return False
        finally:
            conn.close()

    def get_reminder_logs(self, document_id: str) -> list[ReminderLog]:
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM reminder_log WHERE document_id = ? ORDER BY tier",
                (document_id,),
            ).fetchall()
            return [_row_to_reminder(r) for r in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Activity Log
    # ------------------------------------------------------------------

    def add_activity(self, entry: ActivityEntry) -> int:
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """INSERT INTO activity_log
                   (business_id, document_id, type, title, description, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.business_id,
                    entry.document_id,
                    entry.type,
                    entry.title,
                    entry.description,
                    json.dumps(entry.metadata, default=str),
                    _to_db(entry.created_at or self._clock()),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def get_activity(
        self,
        document_id: str | None = None,
        business_id: str | None = None,
        limit: int = 200,
    ) -> list[ActivityEntry]:
        """Activity entries, newest first, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if document_id:
            clauses.append("document_id = ?")
            params.append(document_id)
        if business_id:
            clauses.append("business_id = ?")
            params.append(business_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = self._get_conn()
        try:
            rows = conn.execute(
                f"SELECT * FROM activity_log {where} ORDER BY id DESC LIMIT ?",
                params + [limit],
            ).fetchall()
            return [_row_to_activity(r) for r in rows]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Action Claims
    # ------------------------------------------------------------------

    def acquire_claim(self, document_id: str, action: str, ttl_seconds: int) -> bool:
        """Claim ``action`` on a document.  Expired claims are taken over.

        Returns False if another live claim exists.
        """
        now = self._clock()
        conn = self._get_conn()
        try:
            conn.execute(
                "DELETE FROM action_claims WHERE document_id = ? AND action = ? AND expires_at <= ?",
                (document_id, action, now.isoformat()),
            )
            conn.execute(
                "INSERT INTO action_claims (document_id, action, claimed_at, expires_at) VALUES (?, ?, ?, ?)",
                (document_id, action, now.isoformat(), (now + timedelta(seconds=ttl_seconds)).isoformat()),
            )
            conn.commit()
            return True
        except sqlite3.IntegrityError:
            conn.rollback()
            logger.info("Claim on %s/%s is held by another request", document_id, action)
            return False
        finally:
            conn.close()

    def release_claim(self, document_id: str, action: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                "DELETE FROM action_claims WHERE document_id = ? AND action = ?",
                (document_id, action),
            )
            conn.commit()
        finally:
            conn.close()

"""
SQLite-backed durable store for the field device.

Holds:
  - customers:  snapshot downloaded from the backend (read-only for the engine)
  - readings:   locally entered and downloaded meter readings
  - discounts:  locally created and downloaded customer discounts
  - sync_queue: pending local mutations awaiting transmission
  - sync_meta:  scalar values (last successful sync)

Every public write commits before returning, so a reading returned by
add_reading() survives a process restart. No network access happens here.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from models import (
    Customer,
    Discount,
    EntityType,
    ExecutionContext,
    QueueStatus,
    Reading,
    SyncQueueEntry,
    month_key,
)

logger = logging.getLogger("meter-sync.local-store")

COLLECTIONS = {
    "customers": Customer,
    "readings": Reading,
    "discounts": Discount,
    "sync_queue": SyncQueueEntry,
}


class LocalStoreError(Exception):
    """The local store is unreadable or a precondition outside the engine failed."""


class MissingCustomerError(LocalStoreError):
    """A mutation references a customer that is not in the local snapshot."""


def _now_iso(ctx: Optional[ExecutionContext] = None) -> str:
    now = ctx.now if ctx else datetime.now(timezone.utc)
    return now.isoformat()


def _new_id() -> str:
    return f"local-{uuid.uuid4().hex}"


class LocalStore:
    """Durable key-value style store over a single SQLite file."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.init_db()

    # -----------------------------------------------------------------------
    # Connection handling
    # -----------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=FULL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _db(self):
        """One transaction: commit on success, rollback on error."""
        try:
            conn = self._get_connection()
        except sqlite3.DatabaseError as e:
            raise LocalStoreError(f"Cannot open local store {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.DatabaseError as e:
            conn.rollback()
            logger.error("Local store failure on %s: %s", self.db_path, e)
            raise LocalStoreError(f"Local store failure: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self):
        """Create tables if they don't exist."""
        with self._db() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS customers (
                    id          TEXT PRIMARY KEY,
                    name        TEXT NOT NULL,
                    grp         TEXT NOT NULL DEFAULT '',
                    phone       TEXT NOT NULL DEFAULT '',
                    updated_at  TEXT NOT NULL DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS readings (
                    id             TEXT PRIMARY KEY,
                    customer_id    TEXT NOT NULL,
                    value          REAL NOT NULL,
                    date           TEXT NOT NULL,
                    month          TEXT NOT NULL,
                    created_at     TEXT NOT NULL,
                    synced         INTEGER NOT NULL DEFAULT 0,
                    remote_id      TEXT UNIQUE,
                    customer_name  TEXT NOT NULL DEFAULT '',
                    customer_group TEXT NOT NULL DEFAULT ''
                );
                CREATE INDEX IF NOT EXISTS idx_readings_customer_date
                    ON readings (customer_id, date);
                CREATE INDEX IF NOT EXISTS idx_readings_customer_month
                    ON readings (customer_id, month);

                CREATE TABLE IF NOT EXISTS discounts (
                    id           TEXT PRIMARY KEY,
                    customer_id  TEXT NOT NULL,
                    percentage   REAL NOT NULL DEFAULT 0,
                    amount       REAL NOT NULL DEFAULT 0,
                    reason       TEXT NOT NULL DEFAULT '',
                    month        TEXT NOT NULL,
                    is_active    INTEGER NOT NULL DEFAULT 1,
                    created_by   TEXT NOT NULL DEFAULT '',
                    created_at   TEXT NOT NULL,
                    synced       INTEGER NOT NULL DEFAULT 0,
                    remote_id    TEXT UNIQUE
                );
                CREATE INDEX IF NOT EXISTS idx_discounts_customer_month
                    ON discounts (customer_id, month);

                CREATE TABLE IF NOT EXISTS sync_queue (
                    seq              INTEGER PRIMARY KEY AUTOINCREMENT,
                    id               TEXT NOT NULL UNIQUE,
                    entity_type      TEXT NOT NULL,
                    entity_id        TEXT NOT NULL,
                    payload          TEXT NOT NULL DEFAULT '{}',
                    status           TEXT NOT NULL DEFAULT 'pending',
                    attempts         INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at  TEXT,
                    last_error       TEXT,
                    created_at       TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sync_meta (
                    key    TEXT PRIMARY KEY,
                    value  TEXT
                );
            """)
        logger.info("Local store initialized at %s", self.db_path)

    # -----------------------------------------------------------------------
    # Row conversion
    # -----------------------------------------------------------------------

    @staticmethod
    def _customer(row) -> Customer:
        return Customer(id=row["id"], name=row["name"], group=row["grp"], phone=row["phone"])

    @staticmethod
    def _reading(row) -> Reading:
        return Reading(
            id=row["id"],
            customer_id=row["customer_id"],
            value=row["value"],
            date=date.fromisoformat(row["date"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            synced=bool(row["synced"]),
            remote_id=row["remote_id"],
            customer_name=row["customer_name"],
            customer_group=row["customer_group"],
        )

    @staticmethod
    def _discount(row) -> Discount:
        return Discount(
            id=row["id"],
            customer_id=row["customer_id"],
            percentage=row["percentage"],
            amount=row["amount"],
            reason=row["reason"],
            month=row["month"],
            is_active=bool(row["is_active"]),
            created_by=row["created_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
            synced=bool(row["synced"]),
            remote_id=row["remote_id"],
        )

    @staticmethod
    def _entry(row) -> SyncQueueEntry:
        try:
            payload = json.loads(row["payload"])
        except json.JSONDecodeError as e:
            raise LocalStoreError(f"Corrupt queue payload for entry {row['id']}: {e}") from e
        return SyncQueueEntry(
            id=row["id"],
            seq=row["seq"],
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            payload=payload,
            status=QueueStatus(row["status"]),
            attempts=row["attempts"],
            last_attempt_at=datetime.fromisoformat(row["last_attempt_at"]) if row["last_attempt_at"] else None,
            last_error=row["last_error"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # -----------------------------------------------------------------------
    # Generic collection access
    # -----------------------------------------------------------------------

    def put(self, collection: str, record: Any):
        """Insert or replace a record in one of the four collections."""
        if collection == "customers":
            self.save_customers([record])
        elif collection == "readings":
            self._write_reading(record)
        elif collection == "discounts":
            self._write_discount(record)
        elif collection == "sync_queue":
            with self._db() as conn:
                self._enqueue(conn, record.entity_type, record.entity_id, record.payload,
                              record.created_at.isoformat() if record.created_at else _now_iso())
        else:
            raise KeyError(f"Unknown collection '{collection}'. Valid: {sorted(COLLECTIONS)}")

    def get(self, collection: str, record_id: str):
        if collection == "customers":
            return self.get_customer(record_id)
        if collection == "readings":
            return self.get_reading(record_id)
        if collection == "discounts":
            return self.get_discount(record_id)
        if collection == "sync_queue":
            with self._db() as conn:
                row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (record_id,)).fetchone()
                return self._entry(row) if row else None
        raise KeyError(f"Unknown collection '{collection}'. Valid: {sorted(COLLECTIONS)}")

    def list(self, collection: str) -> list:
        if collection == "customers":
            return self.get_customers()
        if collection == "readings":
            return self.get_readings()
        if collection == "discounts":
            return self.get_discounts()
        if collection == "sync_queue":
            return self.get_sync_queue()
        raise KeyError(f"Unknown collection '{collection}'. Valid: {sorted(COLLECTIONS)}")

    # -----------------------------------------------------------------------
    # Customers
    # -----------------------------------------------------------------------

    def save_customers(self, customers: Iterable[Customer]) -> int:
        """Upsert a customer snapshot. Returns the number of rows written."""
        now = _now_iso()
        count = 0
        with self._db() as conn:
            for c in customers:
                conn.execute(
                    """INSERT INTO customers (id, name, grp, phone, updated_at)
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(id) DO UPDATE SET name = ?, grp = ?, phone = ?, updated_at = ?""",
                    (c.id, c.name, c.group, c.phone, now, c.name, c.group, c.phone, now),
                )
                count += 1
        return count

    def get_customers(self) -> List[Customer]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM customers ORDER BY name").fetchall()
            return [self._customer(r) for r in rows]

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM customers WHERE id = ?", (customer_id,)).fetchone()
            return self._customer(row) if row else None

    def _require_customer(self, conn, customer_id: str):
        row = conn.execute("SELECT * FROM customers WHERE id = ?", (customer_id,)).fetchone()
        if row is None:
            raise MissingCustomerError(f"Customer '{customer_id}' is not in the local store")
        return row

    # -----------------------------------------------------------------------
    # Sync queue (internal append)
    # -----------------------------------------------------------------------

    def _enqueue(self, conn, entity_type: EntityType, entity_id: str,
                 payload: Dict[str, Any], created_at: str) -> str:
        entry_id = _new_id()
        conn.execute(
            """INSERT INTO sync_queue (id, entity_type, entity_id, payload, status, attempts, created_at)
               VALUES (?, ?, ?, ?, 'pending', 0, ?)""",
            (entry_id, EntityType(entity_type).value, entity_id, json.dumps(payload, default=str), created_at),
        )
        return entry_id

    # -----------------------------------------------------------------------
    # Readings
    # -----------------------------------------------------------------------

    def add_reading(self, customer_id: str, value: float, reading_date: date,
                    ctx: Optional[ExecutionContext] = None) -> str:
        """Persist a new unsynced reading and queue it. Returns the local id."""
        created_at = _now_iso(ctx)
        reading_id = _new_id()
        with self._db() as conn:
            customer = self._require_customer(conn, customer_id)
            conn.execute(
                """INSERT INTO readings
                   (id, customer_id, value, date, month, created_at, synced, customer_name, customer_group)
                   VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                (reading_id, customer_id, float(value), reading_date.isoformat(),
                 month_key(reading_date), created_at, customer["name"], customer["grp"]),
            )
            self._enqueue(conn, EntityType.reading, reading_id, {
                "customer_id": customer_id,
                "value": float(value),
                "date": reading_date.isoformat(),
            }, created_at)
        logger.info("Reading %s stored locally: customer=%s value=%s date=%s",
                    reading_id, customer_id, value, reading_date)
        return reading_id

    def _write_reading(self, r: Reading):
        with self._db() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO readings
                   (id, customer_id, value, date, month, created_at, synced, remote_id,
                    customer_name, customer_group)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (r.id, r.customer_id, r.value, r.date.isoformat(), r.month,
                 (r.created_at or datetime.now(timezone.utc)).isoformat(), int(r.synced),
                 r.remote_id, r.customer_name, r.customer_group),
            )

    def get_reading(self, reading_id: str) -> Optional[Reading]:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM readings WHERE id = ?", (reading_id,)).fetchone()
            return self._reading(row) if row else None

    def get_readings(self) -> List[Reading]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM readings ORDER BY date, created_at").fetchall()
            return [self._reading(r) for r in rows]

    def get_customer_readings(self, customer_id: str) -> List[Reading]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM readings WHERE customer_id = ? ORDER BY date, created_at",
                (customer_id,),
            ).fetchall()
            return [self._reading(r) for r in rows]

    def update_reading(self, reading_id: str, patch: Dict[str, Any]) -> bool:
        """Apply a patch of ``synced`` / ``remote_id``. Returns False for unknown ids."""
        allowed = {"synced", "remote_id"}
        unknown = set(patch) - allowed
        if unknown:
            raise ValueError(f"update_reading only patches {sorted(allowed)}, got {sorted(unknown)}")
        if not patch:
            return self.get_reading(reading_id) is not None
        set_parts = [f"{col} = ?" for col in patch]
        vals = [int(v) if col == "synced" else v for col, v in patch.items()]
        with self._db() as conn:
            cursor = conn.execute(
                f"UPDATE readings SET {', '.join(set_parts)} WHERE id = ?",
                vals + [reading_id],
            )
            return cursor.rowcount > 0

    def mark_reading_synced(self, reading_id: str, remote_id: str) -> bool:
        """Flag a reading synced under *remote_id*.

        If a refresh already downloaded that backend row as its own copy (the
        push committed but the acknowledgement was lost), the copy is folded
        into the local reading in the same transaction.
        """
        with self._db() as conn:
            folded = conn.execute(
                "DELETE FROM readings WHERE remote_id = ? AND id != ?", (remote_id, reading_id),
            )
            if folded.rowcount:
                logger.info("Folded downloaded copy of remote reading %s into %s",
                            remote_id, reading_id)
            cursor = conn.execute(
                "UPDATE readings SET synced = 1, remote_id = ? WHERE id = ?",
                (remote_id, reading_id),
            )
            return cursor.rowcount > 0

    def find_reading_in_month(self, customer_id: str, reading_date: date,
                              exclude_id: Optional[str] = None) -> Optional[Reading]:
        """Return an existing reading for the same customer and calendar month."""
        with self._db() as conn:
            row = conn.execute(
                """SELECT * FROM readings
                   WHERE customer_id = ? AND month = ? AND id != ?
                   ORDER BY date LIMIT 1""",
                (customer_id, month_key(reading_date), exclude_id or ""),
            ).fetchone()
            return self._reading(row) if row else None

    def get_previous_reading(self, customer_id: str, before_date: date) -> Optional[Reading]:
        """Most recent reading strictly before *before_date* (local data only)."""
        prior = self.get_prior_readings(customer_id, before_date, limit=1)
        return prior[0] if prior else None

    def get_prior_readings(self, customer_id: str, before_date: date, limit: int) -> List[Reading]:
        """Readings strictly before *before_date*, newest first."""
        with self._db() as conn:
            rows = conn.execute(
                """SELECT * FROM readings
                   WHERE customer_id = ? AND date < ?
                   ORDER BY date DESC, created_at DESC LIMIT ?""",
                (customer_id, before_date.isoformat(), limit),
            ).fetchall()
            return [self._reading(r) for r in rows]

    def merge_remote_readings(self, readings: Iterable[Reading]) -> int:
        """Merge readings downloaded from the backend.

        Rows are matched on remote_id. Unknown remote rows are stored as synced
        local copies; a local row that is still unsynced is never overwritten.
        Nothing is deleted.
        """
        merged = 0
        with self._db() as conn:
            for r in readings:
                if not r.remote_id:
                    continue
                existing = conn.execute(
                    "SELECT id, synced FROM readings WHERE remote_id = ?", (r.remote_id,),
                ).fetchone()
                if existing is not None and not existing["synced"]:
                    continue
                # A pending local reading owns this customer-month until its push is acknowledged
                if existing is None and conn.execute(
                    "SELECT 1 FROM readings WHERE customer_id = ? AND month = ? AND synced = 0",
                    (r.customer_id, r.month),
                ).fetchone():
                    continue
                customer = conn.execute(
                    "SELECT name, grp FROM customers WHERE id = ?", (r.customer_id,),
                ).fetchone()
                name = customer["name"] if customer else r.customer_name
                grp = customer["grp"] if customer else r.customer_group
                if existing is not None:
                    conn.execute(
                        """UPDATE readings SET value = ?, date = ?, month = ?,
                               customer_name = ?, customer_group = ?
                           WHERE id = ?""",
                        (r.value, r.date.isoformat(), r.month, name, grp, existing["id"]),
                    )
                else:
                    conn.execute(
                        """INSERT INTO readings
                           (id, customer_id, value, date, month, created_at, synced, remote_id,
                            customer_name, customer_group)
                           VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?)""",
                        (f"remote-{r.remote_id}", r.customer_id, r.value, r.date.isoformat(), r.month,
                         (r.created_at or datetime.now(timezone.utc)).isoformat(),
                         r.remote_id, name, grp),
                    )
                merged += 1
        return merged

    # -----------------------------------------------------------------------
    # Discounts
    # -----------------------------------------------------------------------

    def _discount_payload(self, d: Discount) -> Dict[str, Any]:
        return {
            "customer_id": d.customer_id,
            "percentage": d.percentage,
            "amount": d.amount,
            "reason": d.reason,
            "month": d.month,
            "is_active": d.is_active,
            "created_by": d.created_by,
        }

    def add_discount(self, discount: Discount, ctx: Optional[ExecutionContext] = None) -> str:
        """Persist a new discount and queue it. Returns the local id."""
        created_at = _now_iso(ctx)
        discount_id = _new_id()
        created_by = discount.created_by or (ctx.actor if ctx else "admin")
        with self._db() as conn:
            self._require_customer(conn, discount.customer_id)
            conn.execute(
                """INSERT INTO discounts
                   (id, customer_id, percentage, amount, reason, month, is_active,
                    created_by, created_at, synced)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)""",
                (discount_id, discount.customer_id, discount.percentage or 0, discount.amount or 0,
                 discount.reason, discount.month, int(discount.is_active), created_by, created_at),
            )
            stored = discount.model_copy(update={"created_by": created_by})
            self._enqueue(conn, EntityType.discount, discount_id,
                          self._discount_payload(stored), created_at)
        logger.info("Discount %s stored locally: customer=%s month=%s",
                    discount_id, discount.customer_id, discount.month)
        return discount_id

    def update_discount(self, discount_id: str, patch: Dict[str, Any],
                        ctx: Optional[ExecutionContext] = None) -> bool:
        """Edit a discount; the edit is marked unsynced and queued again."""
        editable = {"percentage", "amount", "reason", "month", "is_active"}
        unknown = set(patch) - editable
        if unknown:
            raise ValueError(f"update_discount only patches {sorted(editable)}, got {sorted(unknown)}")
        with self._db() as conn:
            row = conn.execute("SELECT * FROM discounts WHERE id = ?", (discount_id,)).fetchone()
            if row is None:
                return False
            updated = self._discount(row).model_copy(update={**patch, "synced": False})
            if updated.percentage and updated.amount:
                raise ValueError(f"Discount {discount_id} cannot carry both a percentage and an amount")
            conn.execute(
                """UPDATE discounts SET percentage = ?, amount = ?, reason = ?, month = ?,
                       is_active = ?, synced = 0
                   WHERE id = ?""",
                (updated.percentage, updated.amount, updated.reason, updated.month,
                 int(updated.is_active), discount_id),
            )
            self._enqueue(conn, EntityType.discount, discount_id,
                          self._discount_payload(updated), _now_iso(ctx))
        return True

    def mark_discount_synced(self, discount_id: str, remote_id: str) -> bool:
        with self._db() as conn:
            conn.execute(
                "DELETE FROM discounts WHERE remote_id = ? AND id != ?", (remote_id, discount_id),
            )
            cursor = conn.execute(
                "UPDATE discounts SET synced = 1, remote_id = ? WHERE id = ?",
                (remote_id, discount_id),
            )
            return cursor.rowcount > 0

    def _write_discount(self, d: Discount):
        with self._db() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO discounts
                   (id, customer_id, percentage, amount, reason, month, is_active,
                    created_by, created_at, synced, remote_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (d.id or _new_id(), d.customer_id, d.percentage, d.amount, d.reason, d.month,
                 int(d.is_active), d.created_by,
                 (d.created_at or datetime.now(timezone.utc)).isoformat(), int(d.synced), d.remote_id),
            )

    def get_discount(self, discount_id: str) -> Optional[Discount]:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM discounts WHERE id = ?", (discount_id,)).fetchone()
            return self._discount(row) if row else None

    def get_discounts(self) -> List[Discount]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM discounts ORDER BY created_at").fetchall()
            return [self._discount(r) for r in rows]

    def get_customer_discounts(self, customer_id: str) -> List[Discount]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM discounts WHERE customer_id = ? ORDER BY created_at",
                (customer_id,),
            ).fetchall()
            return [self._discount(r) for r in rows]

    def get_active_discount(self, customer_id: str, month: str) -> Optional[Discount]:
        """Most recently created active discount for a customer-month."""
        with self._db() as conn:
            row = conn.execute(
                """SELECT * FROM discounts
                   WHERE customer_id = ? AND month = ? AND is_active = 1
                   ORDER BY created_at DESC LIMIT 1""",
                (customer_id, month),
            ).fetchone()
            return self._discount(row) if row else None

    def merge_remote_discounts(self, discounts: Iterable[Discount]) -> int:
        """Merge discounts downloaded from the backend; unsynced local edits win."""
        merged = 0
        with self._db() as conn:
            for d in discounts:
                if not d.remote_id:
                    continue
                existing = conn.execute(
                    "SELECT id, synced FROM discounts WHERE remote_id = ?", (d.remote_id,),
                ).fetchone()
                if existing is not None and not existing["synced"]:
                    continue
                if existing is None and conn.execute(
                    """SELECT 1 FROM discounts
                       WHERE customer_id = ? AND month = ? AND synced = 0 AND remote_id IS NULL""",
                    (d.customer_id, d.month),
                ).fetchone():
                    continue
                created_at = (d.created_at or datetime.now(timezone.utc)).isoformat()
                if existing is not None:
                    conn.execute(
                        """UPDATE discounts SET percentage = ?, amount = ?, reason = ?, month = ?,
                               is_active = ?, created_by = ?, created_at = ?
                           WHERE id = ?""",
                        (d.percentage, d.amount, d.reason, d.month, int(d.is_active),
                         d.created_by, created_at, existing["id"]),
                    )
                else:
                    conn.execute(
                        """INSERT INTO discounts
                           (id, customer_id, percentage, amount, reason, month, is_active,
                            created_by, created_at, synced, remote_id)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)""",
                        (f"remote-{d.remote_id}", d.customer_id, d.percentage, d.amount, d.reason,
                         d.month, int(d.is_active), d.created_by, created_at, d.remote_id),
                    )
                merged += 1
        return merged

    # -----------------------------------------------------------------------
    # Sync queue
    # -----------------------------------------------------------------------

    def get_sync_queue(self) -> List[SyncQueueEntry]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM sync_queue ORDER BY seq").fetchall()
            return [self._entry(r) for r in rows]

    def get_pending_entries(self) -> List[SyncQueueEntry]:
        """Queue entries awaiting transmission, FIFO."""
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE status = 'pending' ORDER BY seq",
            ).fetchall()
            return [self._entry(r) for r in rows]

    def get_queue_entry(self, entry_id: str) -> Optional[SyncQueueEntry]:
        return self.get("sync_queue", entry_id)

    def mark_in_flight(self, entry_id: str) -> bool:
        with self._db() as conn:
            cursor = conn.execute(
                "UPDATE sync_queue SET status = 'in_flight' WHERE id = ? AND status = 'pending'",
                (entry_id,),
            )
            return cursor.rowcount > 0

    def record_attempt(self, entry_id: str, error: Optional[str] = None,
                       at: Optional[datetime] = None):
        ts = (at or datetime.now(timezone.utc)).isoformat()
        with self._db() as conn:
            conn.execute(
                """UPDATE sync_queue SET attempts = attempts + 1, last_attempt_at = ?, last_error = ?
                   WHERE id = ?""",
                (ts, error, entry_id),
            )

    def release_entry(self, entry_id: str):
        """Return an in-flight entry to pending for the next cycle."""
        with self._db() as conn:
            conn.execute("UPDATE sync_queue SET status = 'pending' WHERE id = ?", (entry_id,))

    def reset_in_flight(self) -> int:
        """Restart recovery: every in-flight entry becomes pending again."""
        with self._db() as conn:
            cursor = conn.execute("UPDATE sync_queue SET status = 'pending' WHERE status = 'in_flight'")
            if cursor.rowcount:
                logger.warning("Recovered %d in-flight queue entries after restart", cursor.rowcount)
            return cursor.rowcount

    def remove_sync_item(self, entry_id: str):
        with self._db() as conn:
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (entry_id,))

    def is_entity_synced(self, entry: SyncQueueEntry) -> bool:
        """Read the entity's synced flag straight from disk."""
        table = "readings" if entry.entity_type == EntityType.reading else "discounts"
        with self._db() as conn:
            row = conn.execute(f"SELECT synced FROM {table} WHERE id = ?", (entry.entity_id,)).fetchone()
            if row is None:
                raise LocalStoreError(
                    f"Queue entry {entry.id} references missing {entry.entity_type.value} {entry.entity_id}"
                )
            return bool(row["synced"])

    def count_exhausted(self, max_attempts: int) -> int:
        with self._db() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE attempts >= ?", (max_attempts,),
            ).fetchone()
            return row[0]

    # -----------------------------------------------------------------------
    # Meta
    # -----------------------------------------------------------------------

    def get_last_sync_time(self) -> Optional[str]:
        with self._db() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = 'last_sync'").fetchone()
            return row["value"] if row else None

    def set_last_sync_time(self, timestamp: str):
        with self._db() as conn:
            conn.execute(
                """INSERT INTO sync_meta (key, value) VALUES ('last_sync', ?)
                   ON CONFLICT(key) DO UPDATE SET value = ?""",
                (timestamp, timestamp),
            )

    def get_storage_stats(self) -> Dict[str, Any]:
        with self._db() as conn:
            counts = {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("customers", "readings", "discounts", "sync_queue")
            }
        return {
            "customers": counts["customers"],
            "readings": counts["readings"],
            "discounts": counts["discounts"],
            "pending_sync": counts["sync_queue"],
            "last_sync": self.get_last_sync_time(),
        }

    def clear_all_data(self):
        """Wipe every collection (device reset)."""
        with self._db() as conn:
            for table in ("customers", "readings", "discounts", "sync_queue", "sync_meta"):
                conn.execute(f"DELETE FROM {table}")
        logger.warning("Local store %s cleared", self.db_path)

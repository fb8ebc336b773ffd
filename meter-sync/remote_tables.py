"""
Customers / readings / discounts endpoints used by field devices.

  GET   /api/customers   - customer snapshot
  GET   /api/readings    - readings, optionally since a date / for some customers
  POST  /api/readings    - insert a queued reading (idempotent on client_ref)
  GET   /api/discounts   - all discounts
  POST  /api/discounts   - insert or update a discount keyed on client_ref

Every request carries the shared device key in X-Device-Key.

Readings are last-writer-wins per customer-month: a second reading for the
same customer and month replaces the value of the first. A client_ref that
was already applied returns the original id without writing again, so a
device that retries after a lost acknowledgement never double-inserts.
Nothing here deletes rows.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

import psycopg2
import psycopg2.extras
from fastapi import APIRouter, Depends, Header, HTTPException, Query

from engine_config import DEVICE_KEY
from models import DiscountIn, ReadingIn, RemoteAck, month_key

logger = logging.getLogger("meter-sync.tables")

router = APIRouter(prefix="/api", tags=["meter-sync"])


def _get_connection():
    from backend_api import get_connection
    return get_connection()


def _verify_device_key(x_device_key: str = Header(None)):
    if x_device_key != DEVICE_KEY:
        raise HTTPException(status_code=403, detail="Invalid device key")


class UnknownCustomer(Exception):
    pass


# ---------------------------------------------------------------------------
# Table initialisation
# ---------------------------------------------------------------------------

def ensure_schema():
    """Create the backend tables if they don't exist."""
    try:
        with _get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS customers (
                    id          VARCHAR(40) PRIMARY KEY,
                    name        TEXT NOT NULL,
                    grp         VARCHAR(40) NOT NULL DEFAULT '',
                    phone       VARCHAR(30) NOT NULL DEFAULT '',
                    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS readings (
                    id            SERIAL PRIMARY KEY,
                    customer_id   VARCHAR(40) NOT NULL REFERENCES customers (id),
                    value         NUMERIC(12, 2) NOT NULL CHECK (value >= 0),
                    reading_date  DATE NOT NULL,
                    month         CHAR(7) NOT NULL,
                    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_readings_customer_month
                ON readings (customer_id, month)
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS reading_refs (
                    client_ref  VARCHAR(80) PRIMARY KEY,
                    reading_id  INTEGER NOT NULL REFERENCES readings (id),
                    applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS discounts (
                    id           SERIAL PRIMARY KEY,
                    client_ref   VARCHAR(80) UNIQUE,
                    customer_id  VARCHAR(40) NOT NULL REFERENCES customers (id),
                    percentage   NUMERIC(5, 2) NOT NULL DEFAULT 0
                                 CHECK (percentage >= 0 AND percentage <= 100),
                    amount       NUMERIC(12, 2) NOT NULL DEFAULT 0 CHECK (amount >= 0),
                    reason       TEXT NOT NULL,
                    month        CHAR(7) NOT NULL,
                    is_active    BOOLEAN NOT NULL DEFAULT TRUE,
                    created_by   TEXT NOT NULL DEFAULT 'admin',
                    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    CHECK (NOT (percentage > 0 AND amount > 0))
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_discounts_customer_month
                ON discounts (customer_id, month)
            """)
            conn.commit()
        logger.info("Backend schema ready")
    except psycopg2.Error as e:
        logger.warning("Could not ensure backend schema: %s", e)


# ---------------------------------------------------------------------------
# Data access
# ---------------------------------------------------------------------------

def _customer_exists(cursor, customer_id: str) -> bool:
    cursor.execute("SELECT 1 FROM customers WHERE id = %s", (customer_id,))
    return cursor.fetchone() is not None


def select_customers(conn) -> List[Dict[str, Any]]:
    cursor = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    cursor.execute('SELECT id, name, grp AS "group", phone FROM customers ORDER BY name')
    return [dict(r) for r in cursor.fetchall()]


def select_readings(conn, since: Optional[date] = None,
                    customer_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    sql = """
        SELECT r.id, r.customer_id, r.value, r.reading_date, r.created_at,
               c.name AS customer_name, c.grp AS customer_group
        FROM readings r
        JOIN customers c ON c.id = r.customer_id
        WHERE 1=1
    """
    params: List[Any] = []
    if since is not None:
        sql += " AND r.reading_date >= %s"
        params.append(since)
    if customer_ids:
        sql += " AND r.customer_id = ANY(%s)"
        params.append(list(customer_ids))
    sql += " ORDER BY r.reading_date, r.id"

    cursor = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    cursor.execute(sql, params)
    return [
        {
            "id": row["id"],
            "customer_id": row["customer_id"],
            "value": float(row["value"]),
            "date": row["reading_date"].isoformat(),
            "created_at": row["created_at"].isoformat() if row["created_at"] else None,
            "customer_name": row["customer_name"],
            "customer_group": row["customer_group"],
        }
        for row in cursor.fetchall()
    ]


def select_discounts(conn) -> List[Dict[str, Any]]:
    cursor = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    cursor.execute("""
        SELECT id, customer_id, percentage, amount, reason, month,
               is_active, created_by, created_at
        FROM discounts
        ORDER BY created_at
    """)
    return [
        {
            **dict(row),
            "percentage": float(row["percentage"]),
            "amount": float(row["amount"]),
            "created_at": row["created_at"].isoformat() if row["created_at"] else None,
        }
        for row in cursor.fetchall()
    ]


def upsert_reading(conn, body: ReadingIn) -> RemoteAck:
    """Apply one device reading; replays of a known client_ref are no-ops."""
    cursor = conn.cursor()
    cursor.execute("SELECT reading_id FROM reading_refs WHERE client_ref = %s", (body.client_ref,))
    row = cursor.fetchone()
    if row:
        return RemoteAck(id=str(row[0]), client_ref=body.client_ref, replayed=True)

    if not _customer_exists(cursor, body.customer_id):
        raise UnknownCustomer(body.customer_id)

    cursor.execute("""
        INSERT INTO readings (customer_id, value, reading_date, month)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (customer_id, month) DO UPDATE
            SET value = EXCLUDED.value,
                reading_date = EXCLUDED.reading_date,
                updated_at = NOW()
        RETURNING id, (xmax = 0) AS inserted
    """, (body.customer_id, body.value, body.date, month_key(body.date)))
    reading_id, inserted = cursor.fetchone()
    if not inserted:
        logger.info("Reading for %s %s replaced by %s",
                    body.customer_id, month_key(body.date), body.client_ref)

    cursor.execute("""
        INSERT INTO reading_refs (client_ref, reading_id) VALUES (%s, %s)
        ON CONFLICT (client_ref) DO NOTHING
    """, (body.client_ref, reading_id))
    conn.commit()
    return RemoteAck(id=str(reading_id), client_ref=body.client_ref)


def upsert_discount(conn, body: DiscountIn) -> RemoteAck:
    """Insert a device discount, or apply an edit re-sent under the same client_ref."""
    cursor = conn.cursor()
    if not _customer_exists(cursor, body.customer_id):
        raise UnknownCustomer(body.customer_id)

    cursor.execute("""
        INSERT INTO discounts
            (client_ref, customer_id, percentage, amount, reason, month,
             is_active, created_by, created_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()))
        ON CONFLICT (client_ref) DO UPDATE
            SET percentage = EXCLUDED.percentage,
                amount = EXCLUDED.amount,
                reason = EXCLUDED.reason,
                month = EXCLUDED.month,
                is_active = EXCLUDED.is_active,
                updated_at = NOW()
        RETURNING id, (xmax = 0) AS inserted
    """, (
        body.client_ref, body.customer_id, body.percentage, body.amount, body.reason,
        body.month, body.is_active, body.created_by, body.created_at,
    ))
    discount_id, inserted = cursor.fetchone()
    conn.commit()
    return RemoteAck(id=str(discount_id), client_ref=body.client_ref, replayed=not inserted)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/customers")
def list_customers(_=Depends(_verify_device_key)):
    try:
        with _get_connection() as conn:
            customers = select_customers(conn)
    except psycopg2.Error as e:
        logger.error("Customer list failed: %s", e)
        raise HTTPException(status_code=500, detail=f"Database error: {e}")
    return {"customers": customers, "count": len(customers)}


@router.get("/readings")
def list_readings(
    since: Optional[date] = Query(None, description="Only readings on or after this date"),
    customer_id: Optional[List[str]] = Query(None),
    _=Depends(_verify_device_key),
):
    try:
        with _get_connection() as conn:
            readings = select_readings(conn, since=since, customer_ids=customer_id)
    except psycopg2.Error as e:
        logger.error("Reading list failed: %s", e)
        raise HTTPException(status_code=500, detail=f"Database error: {e}")
    return {"readings": readings, "count": len(readings)}


@router.post("/readings", response_model=RemoteAck)
def create_reading(body: ReadingIn, _=Depends(_verify_device_key)):
    try:
        with _get_connection() as conn:
            try:
                ack = upsert_reading(conn, body)
            except Exception:
                conn.rollback()
                raise
    except UnknownCustomer:
        raise HTTPException(status_code=404, detail=f"Customer '{body.customer_id}' not found")
    except psycopg2.IntegrityError as e:
        logger.warning("Reading %s conflicts: %s", body.client_ref, e)
        raise HTTPException(status_code=409, detail=f"Integrity conflict: {e}")
    except psycopg2.Error as e:
        logger.error("Reading insert failed: %s", e)
        raise HTTPException(status_code=500, detail=f"Database error: {e}")

    if not ack.replayed:
        logger.info("Reading %s stored as %s (customer=%s)", body.client_ref, ack.id, body.customer_id)
    return ack


@router.get("/discounts")
def list_discounts(_=Depends(_verify_device_key)):
    try:
        with _get_connection() as conn:
            discounts = select_discounts(conn)
    except psycopg2.Error as e:
        logger.error("Discount list failed: %s", e)
        raise HTTPException(status_code=500, detail=f"Database error: {e}")
    return {"discounts": discounts, "count": len(discounts)}


@router.post("/discounts", response_model=RemoteAck)
def create_discount(body: DiscountIn, _=Depends(_verify_device_key)):
    if body.percentage > 0 and body.amount > 0:
        raise HTTPException(status_code=400, detail="Discount must be a percentage or an amount, not both")
    if body.percentage == 0 and body.amount == 0:
        raise HTTPException(status_code=400, detail="Discount needs a percentage or an amount")
    try:
        with _get_connection() as conn:
            try:
                ack = upsert_discount(conn, body)
            except Exception:
                conn.rollback()
                raise
    except UnknownCustomer:
        raise HTTPException(status_code=404, detail=f"Customer '{body.customer_id}' not found")
    except psycopg2.IntegrityError as e:
        logger.warning("Discount %s conflicts: %s", body.client_ref, e)
        raise HTTPException(status_code=409, detail=f"Integrity conflict: {e}")
    except psycopg2.Error as e:
        logger.error("Discount upsert failed: %s", e)
        raise HTTPException(status_code=500, detail=f"Database error: {e}")

    logger.info("Discount %s stored as %s", body.client_ref, ack.id)
    return ack

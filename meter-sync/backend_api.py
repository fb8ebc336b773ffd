"""
Meter Sync Backend API
======================
FastAPI service holding the authoritative customers / readings / discounts
tables in PostgreSQL. Field devices push queued readings and discounts here
and download snapshots from here (see remote_tables.py).

Environment variables:
  DATABASE_URL      - PostgreSQL connection string (required)
  BACKEND_PORT      - Port to bind                 (default: 8200)
  METER_DEVICE_KEY  - Shared key devices send in X-Device-Key
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

import psycopg2
import psycopg2.pool
import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from engine_config import BACKEND_PORT, DATABASE_URL

logger = logging.getLogger("meter-sync.backend")

# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------

_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None


def _get_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Lazy-initialize the connection pool."""
    global _pool
    if _pool is None or _pool.closed:
        _pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=10,
            dsn=DATABASE_URL,
        )
    return _pool


@contextmanager
def get_connection():
    """Context manager for PostgreSQL connections from the pool."""
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
    finally:
        pool.putconn(conn)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Meter Sync Backend",
    description="Authoritative store for offline-first meter reading devices",
    version="1.0.0",
)

from remote_tables import router as tables_router, ensure_schema

app.include_router(tables_router)


@app.get("/health")
@app.get("/api/health")
def health():
    """Health check including DB connectivity."""
    status = {"status": "ok", "database": "postgresql", "timestamp": datetime.now().isoformat()}

    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM customers")
            status["customer_count"] = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM readings")
            status["reading_count"] = cursor.fetchone()[0]
    except psycopg2.Error as e:
        logger.error("Health check failed: %s", e)
        status["status"] = "db_error"
        status["error"] = str(e)
        return JSONResponse(status_code=503, content=status)

    return status


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    ensure_schema()

    logger.info("=" * 60)
    logger.info("Meter Sync Backend API v1.0 (PostgreSQL)")
    logger.info("Database: %s", DATABASE_URL.split("@")[-1] if "@" in DATABASE_URL else DATABASE_URL)
    logger.info("Port: %d", BACKEND_PORT)
    logger.info("=" * 60)

    uvicorn.run(app, host="0.0.0.0", port=BACKEND_PORT, log_level="info")

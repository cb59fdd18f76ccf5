import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG, db_path

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    target_id INTEGER,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    next_run_at TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_next ON jobs(status, next_run_at);
CREATE INDEX IF NOT EXISTS idx_jobs_type_target ON jobs(type, target_id);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file_order_id TEXT NOT NULL,
    external_order_id TEXT,
    order_channel TEXT NOT NULL,
    store_code TEXT NOT NULL DEFAULT 'default',
    created_date TEXT NOT NULL,
    email TEXT,
    firstname TEXT,
    lastname TEXT,
    country_id TEXT,
    region_id TEXT,
    region TEXT,
    postcode TEXT,
    street TEXT,
    city TEXT,
    telephone TEXT,
    company TEXT,
    imported_by TEXT,
    import_job_id INTEGER,
    remote_order_id INTEGER,
    remote_increment_id TEXT,
    remote_invoice_id INTEGER,
    invoiced_at TEXT,
    remote_shipment_id INTEGER,
    shipped_at TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING',
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (external_order_id, order_channel)
);

CREATE TABLE IF NOT EXISTS order_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
    sku TEXT NOT NULL,
    name TEXT,
    qty_ordered REAL NOT NULL,
    price REAL NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id);

CREATE TABLE IF NOT EXISTS channel_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel TEXT NOT NULL UNIQUE,
    auto_invoice INTEGER NOT NULL DEFAULT 1,
    auto_ship INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS imports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER,
    source TEXT,
    imported_by TEXT,
    total_orders INTEGER NOT NULL DEFAULT 0,
    processed_orders INTEGER NOT NULL DEFAULT 0,
    failed_orders INTEGER NOT NULL DEFAULT 0,
    skipped_orders INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None, timeout: float = 30.0) -> sqlite3.Connection:
    # check_same_thread stays on: every worker thread opens its own connection
    conn = sqlite3.connect(path or db_path(), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    try:
        conn.executescript(SCHEMA)
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        conn.close()

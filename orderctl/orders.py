"""Order and order-item persistence used by the importer and the workflow handlers."""

import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from .models import ORDER_PENDING, ORDER_SYNCED
from .utils import now_iso

ORDER_FIELDS = (
    "file_order_id", "external_order_id", "order_channel", "store_code",
    "created_date", "email", "firstname", "lastname", "country_id",
    "region_id", "region", "postcode", "street", "city", "telephone",
    "company", "imported_by", "import_job_id",
)


def get_order(conn, order_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM orders WHERE id=?", (order_id,)).fetchone()


def get_order_items(conn, order_id: int) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM order_items WHERE order_id=? ORDER BY id ASC", (order_id,)
    ).fetchall()


def find_order(conn, external_order_id: str, channel: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM orders WHERE external_order_id=? AND order_channel=?",
        (external_order_id, channel),
    ).fetchone()


def upsert_order(conn, header: Dict[str, Any]) -> int:
    """Insert or update an order keyed by (external_order_id, order_channel).

    external_order_id falls back to file_order_id; the channel falls back to
    'UNKNOWN'. Remote identifiers and milestone timestamps are never touched.
    """
    with conn:
        return write_order(conn, header)


def write_order(conn, header: Dict[str, Any]) -> int:
    """upsert_order without committing, for callers running their own transaction."""
    if not header.get("file_order_id"):
        raise ValueError("file_order_id is required")
    values = {k: header.get(k) for k in ORDER_FIELDS}
    values["file_order_id"] = str(values["file_order_id"])
    values["external_order_id"] = str(values["external_order_id"] or values["file_order_id"])
    values["order_channel"] = str(values["order_channel"] or "UNKNOWN")
    values["store_code"] = values["store_code"] or "default"
    if not values["created_date"]:
        raise ValueError("created_date is required")

    ts = now_iso()
    existing = find_order(conn, values["external_order_id"], values["order_channel"])
    if existing:
        sets = ", ".join(f"{k}=?" for k in values)
        conn.execute(
            f"UPDATE orders SET {sets}, updated_at=? WHERE id=?",
            (*values.values(), ts, existing["id"]),
        )
        return existing["id"]

    cols = ", ".join(values)
    marks = ", ".join("?" for _ in values)
    cur = conn.execute(
        f"""INSERT INTO orders ({cols}, status, created_at, updated_at)
            VALUES ({marks}, ?, ?, ?)""",
        (*values.values(), ORDER_PENDING, ts, ts),
    )
    return cur.lastrowid


def replace_order_items(conn, order_id: int, items: Iterable[Dict[str, Any]]):
    with conn:
        write_order_items(conn, order_id, items)


def write_order_items(conn, order_id: int, items: Iterable[Dict[str, Any]]):
    # Rows are built before the DELETE so a bad value leaves the old items alone
    rows = [
        (order_id, str(i["sku"]), i.get("name"), float(i["qty_ordered"]), float(i.get("price") or 0))
        for i in items
    ]
    conn.execute("DELETE FROM order_items WHERE order_id=?", (order_id,))
    conn.executemany(
        "INSERT INTO order_items (order_id, sku, name, qty_ordered, price) VALUES (?, ?, ?, ?, ?)",
        rows,
    )


def set_remote_ids(conn, order_id: int, remote_order_id: int, remote_increment_id: Optional[str] = None):
    with conn:
        conn.execute(
            """UPDATE orders
               SET remote_order_id=?, remote_increment_id=?, status=?, last_error=NULL, updated_at=?
               WHERE id=?""",
            (remote_order_id, remote_increment_id, ORDER_SYNCED, now_iso(), order_id),
        )


def update_order_status(conn, order_id: int, status: str, last_error: Optional[str] = None):
    with conn:
        conn.execute(
            "UPDATE orders SET status=?, last_error=?, updated_at=? WHERE id=?",
            (status, last_error, now_iso(), order_id),
        )


def mark_order_invoiced(conn, order_id: int, remote_invoice_id: Optional[int]):
    ts = now_iso()
    with conn:
        conn.execute(
            "UPDATE orders SET remote_invoice_id=?, invoiced_at=?, updated_at=? WHERE id=?",
            (remote_invoice_id, ts, ts, order_id),
        )


def mark_order_shipped(conn, order_id: int, remote_shipment_id: Optional[int]):
    ts = now_iso()
    with conn:
        conn.execute(
            "UPDATE orders SET remote_shipment_id=?, shipped_at=?, updated_at=? WHERE id=?",
            (remote_shipment_id, ts, ts, order_id),
        )

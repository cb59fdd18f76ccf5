"""Load already-parsed orders into the database and queue them for sync.

File parsing and header normalisation happen upstream; this module takes
one dict per order with its header fields plus an ``items`` list. Before
anything is stored the requested quantities are checked against the
remote inventory.
"""

import json
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional

import structlog

from . import orders
from .errors import RemoteAPIError
from .models import SYNC_ORDER, ImportJobPayload
from .repository import create_import_job, enqueue_in_transaction, finish_import_job, immediate_transaction
from .utils import now_iso, parse_datetime

logger = structlog.get_logger()

MAX_RECORDED_FAILURES = 50

SKU_NOT_FOUND = "SKU_NOT_FOUND"
NOT_ENOUGH_STOCK = "NOT_ENOUGH_STOCK"
STOCK_LOOKUP_FAILED = "STOCK_LOOKUP_FAILED"


def validate_order(record: Any) -> List[str]:
    """Local sanity checks for one parsed order. Returns the problems found."""
    if not isinstance(record, dict):
        return ["order record must be an object"]

    problems = []
    if not record.get("file_order_id"):
        problems.append("missing file_order_id")
    try:
        parse_datetime(record.get("created_date"))
    except ValueError as e:
        problems.append(str(e))

    items = record.get("items")
    if items is None or items == []:
        problems.append("order has no items")
        return problems
    if not isinstance(items, list):
        problems.append("items must be a list")
        return problems

    for item in items:
        if not isinstance(item, dict):
            problems.append("item must be an object")
            continue
        sku = item.get("sku")
        if not sku:
            problems.append("item without sku")
        try:
            if float(item.get("qty_ordered", 0)) <= 0:
                problems.append(f"item {sku}: qty_ordered must be > 0")
        except (TypeError, ValueError):
            problems.append(f"item {sku}: qty_ordered is not a number")
        if item.get("price") not in (None, ""):
            try:
                float(item["price"])
            except (TypeError, ValueError):
                problems.append(f"item {sku}: price is not a number")
    return problems


def requested_quantities(records: Iterable[Dict[str, Any]]) -> Dict[str, float]:
    """Total quantity per SKU over the given (already validated) orders."""
    totals = OrderedDict()
    for record in records:
        for item in record["items"]:
            sku = str(item["sku"])
            totals[sku] = totals.get(sku, 0.0) + float(item["qty_ordered"])
    return totals


def check_stock(client, records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Compare requested quantities with the remote inventory.

    Returns one issue per unknown SKU or SKU short of stock. A failed
    lookup is a single STOCK_LOOKUP_FAILED issue, since nothing could be
    checked.
    """
    totals = requested_quantities(records)
    if not totals:
        return []

    try:
        stock = client.fetch_stock(list(totals))
    except RemoteAPIError as e:
        logger.error("stock_lookup_failed", error=str(e))
        return [{"type": STOCK_LOOKUP_FAILED, "sku": None, "message": f"Stock lookup failed: {e}"}]

    issues = []
    for sku, requested in totals.items():
        level = stock.get(sku)
        if not level or not level.get("exists"):
            issues.append({"type": SKU_NOT_FOUND, "sku": sku, "message": f'SKU "{sku}" does not exist.'})
            continue
        available = level.get("salable_qty", 0)
        if requested > available or not level.get("in_stock"):
            issues.append(
                {
                    "type": NOT_ENOUGH_STOCK,
                    "sku": sku,
                    "message": f'SKU "{sku}" has {available:g} available, requested {requested:g}.',
                }
            )
    return issues


def _record_id(record: Any) -> Optional[str]:
    return record.get("file_order_id") if isinstance(record, dict) else None


def preview_import(client, records: Iterable[Any]) -> Dict[str, Any]:
    """Validate an import without touching the database."""
    records = list(records)
    failures = []
    valid = []
    for record in records:
        problems = validate_order(record)
        if problems:
            failures.append({"file_order_id": _record_id(record), "errors": problems})
        else:
            valid.append(record)

    issues = check_stock(client, valid)
    return {
        "ok": not failures and not issues,
        "total_orders": len(records),
        "total_item_rows": sum(len(r["items"]) for r in valid),
        "failures": failures,
        "issues": issues,
    }


def import_orders(
    conn,
    client,
    records: Iterable[Any],
    imported_by: Optional[str] = None,
    source: Optional[str] = None,
) -> Dict[str, Any]:
    """Persist orders and enqueue one sync job per order.

    The run is recorded as an IMPORT_ORDERS job plus an `imports` row, both
    closed DONE or FAILED at the end. Orders already placed remotely are
    counted as skipped. When the stock check reports any issue, no order is
    stored and the whole run fails.
    """
    records = list(records)
    summary = {"total": len(records), "processed": 0, "failed": 0, "skipped": 0}
    failures = []

    job_id = create_import_job(
        conn,
        ImportJobPayload(source=source, imported_by=imported_by, total_orders=len(records)),
    )
    ts = now_iso()
    with conn:
        cur = conn.execute(
            """INSERT INTO imports (job_id, source, imported_by, total_orders, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, 'RUNNING', ?, ?)""",
            (job_id, source, imported_by, len(records), ts, ts),
        )
    import_id = cur.lastrowid
    log = logger.bind(import_id=import_id, job_id=job_id)
    log.info("import_started", total=len(records), source=source)

    try:
        valid = []
        for record in records:
            problems = validate_order(record)
            if problems:
                summary["failed"] += 1
                failures.append({"file_order_id": _record_id(record), "errors": problems})
                log.warning("order_rejected", file_order_id=_record_id(record), errors=problems)
            else:
                valid.append(record)

        issues = check_stock(client, valid)
        if issues:
            summary.update(processed=0, skipped=0, failed=len(records))
            failures.append({"file_order_id": "GLOBAL", "errors": [i["message"] for i in issues]})
            log.error("import_stock_check_failed", issues=issues)
            valid = []

        for record in valid:
            _import_one(conn, record, job_id, imported_by, summary, failures, log)
    except Exception as e:
        error = f"Import aborted: {e}"
        finish_import_job(conn, job_id, summary["failed"], error=error)
        _close_import_row(conn, import_id, summary, "FAILED", [{"file_order_id": None, "errors": [error]}] + failures)
        log.exception("import_aborted")
        raise

    status = finish_import_job(conn, job_id, summary["failed"])
    _close_import_row(conn, import_id, summary, status, failures)
    log.info("import_finished", status=status, **summary)

    return {"import_id": import_id, "job_id": job_id, "status": status, "summary": summary, "failures": failures}


def _import_one(conn, record, job_id, imported_by, summary, failures, log):
    file_order_id = record.get("file_order_id")
    external_id = str(record.get("external_order_id") or file_order_id)
    channel = str(record.get("order_channel") or "UNKNOWN")
    existing = orders.find_order(conn, external_id, channel)
    if existing is not None and existing["remote_order_id"]:
        summary["skipped"] += 1
        log.info("order_already_synced", file_order_id=file_order_id, order_id=existing["id"])
        return

    header = dict(record, imported_by=imported_by, import_job_id=job_id)
    try:
        with immediate_transaction(conn):
            order_id = orders.write_order(conn, header)
            orders.write_order_items(conn, order_id, record["items"])
            enqueue_in_transaction(conn, SYNC_ORDER, order_id)
    except (ValueError, KeyError, TypeError) as e:
        summary["failed"] += 1
        failures.append({"file_order_id": file_order_id, "errors": [str(e)]})
        log.warning("order_import_failed", file_order_id=file_order_id, error=str(e))
        return
    summary["processed"] += 1


def _close_import_row(conn, import_id, summary, status, failures):
    with conn:
        conn.execute(
            """UPDATE imports
               SET processed_orders=?, failed_orders=?, skipped_orders=?, status=?, error=?, updated_at=?
               WHERE id=?""",
            (
                summary["processed"],
                summary["failed"],
                summary["skipped"],
                status,
                json.dumps(failures[:MAX_RECORDED_FAILURES]) if failures else None,
                now_iso(),
                import_id,
            ),
        )

"""Workflow handlers for the sync, invoice and ship jobs.

Each handler may run more than once for the same order (the queue retries
on transient failure and operators can re-enable finished jobs), so each
one starts with a guard that turns a repeat call into a no-op. Side effects
after the core remote action (comments, backdating, scheduling the next
step) are logged on failure and never fail the job.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional

import structlog

from . import orders
from .channel_rules import resolve_channel_rule
from .errors import PermanentJobError, is_transient
from .models import (
    SYNC_ORDER, INVOICE_ORDER, SHIP_ORDER, ORDER_FAILED, ORDER_PENDING,
    Job, OrderJobPayload,
)
from .remote import RemoteOrderClient
from .repository import config_int, enqueue_job, get_config
from .utils import add_minutes, format_remote_datetime

logger = structlog.get_logger()

INVOICE_BACKDATE_MINUTES = 10
SHIPMENT_BACKDATE_MINUTES = 20


def _load_order(conn, order_id: int):
    order = orders.get_order(conn, order_id)
    if order is None:
        raise PermanentJobError(f"Order {order_id} not found")
    return order


def _require_remote_order(order):
    if not order["remote_order_id"]:
        raise PermanentJobError(f"Order {order['id']} has no remote order id")
    return order["remote_order_id"]


def _add_items(client: RemoteOrderClient, cart_id: str, items, concurrency: int, log):
    if not items:
        log.info("order_has_no_items")
        return

    def add(item):
        log.info("adding_cart_item", cart_id=cart_id, sku=item["sku"], qty=item["qty_ordered"])
        client.add_item(cart_id, item["sku"], float(item["qty_ordered"]))

    with ThreadPoolExecutor(max_workers=min(concurrency, len(items))) as pool:
        # list() re-raises the first failure
        list(pool.map(add, items))


def _backdate_and_attach(client: RemoteOrderClient, order, remote_order_id: int, log):
    try:
        created_at = format_remote_datetime(order["created_date"])
        if order["email"]:
            client.attach_customer_and_backdate(
                remote_order_id,
                order["email"],
                order["firstname"] or "Guest",
                order["lastname"] or "Guest",
                created_at,
            )
            log.info("remote_order_customer_attached", created_at=created_at)
        else:
            client.backdate_order(remote_order_id, created_at)
            log.info("remote_order_backdated", created_at=created_at)
    except Exception as e:
        log.warning("remote_order_backdate_failed", error=str(e))


def _add_import_comment(client: RemoteOrderClient, order, remote_order_id: int, log):
    comment = "\n".join(
        [
            "Order Created via Bulk Import",
            f"Import order id: {order['file_order_id']}",
            f"Imported by: {order['imported_by'] or 'System'}",
            f"Original created date: {order['created_date']}",
        ]
    )
    try:
        client.add_order_comment(remote_order_id, comment)
        log.info("remote_order_comment_added")
    except Exception as e:
        log.warning("remote_order_comment_failed", error=str(e))


def sync_order(conn, client: RemoteOrderClient, order_id: int):
    """Create the order in the remote system and schedule invoicing."""
    log = logger.bind(order_id=order_id, step="sync")
    order = _load_order(conn, order_id)

    if order["remote_order_id"]:
        log.info("order_already_synced", remote_order_id=order["remote_order_id"])
        return

    items = orders.get_order_items(conn, order_id)
    item_concurrency = config_int(get_config(conn), "item_concurrency")

    try:
        log.info("creating_remote_cart", channel=order["order_channel"], items=len(items))
        cart_id = client.create_cart()
        _add_items(client, cart_id, items, item_concurrency, log)
        client.set_addresses_and_shipping(cart_id, order)
        client.set_payment_method(cart_id)
        remote_order_id = client.place_order(cart_id)
    except Exception as e:
        status = ORDER_PENDING if is_transient(e) else ORDER_FAILED
        orders.update_order_status(conn, order_id, status, str(e))
        log.error("order_sync_failed", error=str(e), order_status=status)
        raise

    log = log.bind(remote_order_id=remote_order_id)
    log.info("remote_order_placed")

    increment_id: Optional[str] = None
    try:
        increment_id = client.get_order(remote_order_id).get("increment_id")
        increment_id = str(increment_id) if increment_id is not None else None
    except Exception as e:
        log.warning("remote_increment_id_fetch_failed", error=str(e))

    orders.set_remote_ids(conn, order_id, remote_order_id, increment_id)

    _backdate_and_attach(client, order, remote_order_id, log)
    _add_import_comment(client, order, remote_order_id, log)

    rule = resolve_channel_rule(conn, order["order_channel"])
    if rule.auto_invoice:
        job_id = enqueue_job(conn, INVOICE_ORDER, order_id)
        log.info("invoice_job_scheduled", job_id=job_id, channel=order["order_channel"])
    if rule.auto_ship and not rule.auto_invoice:
        log.warning("channel_rule_ship_without_invoice", channel=order["order_channel"])


def invoice_order(conn, client: RemoteOrderClient, order_id: int):
    """Invoice a synced order, then schedule shipping if the channel wants it."""
    log = logger.bind(order_id=order_id, step="invoice")
    order = _load_order(conn, order_id)
    remote_order_id = _require_remote_order(order)

    if order["invoiced_at"]:
        log.info("order_already_invoiced", invoiced_at=order["invoiced_at"])
        return

    invoice_id = client.create_invoice(remote_order_id)
    log = log.bind(invoice_id=invoice_id)

    try:
        created_at = format_remote_datetime(add_minutes(order["created_date"], INVOICE_BACKDATE_MINUTES))
        client.backdate_invoice(invoice_id, created_at)
        log.info("invoice_backdated", created_at=created_at)
    except Exception as e:
        log.warning("invoice_backdate_failed", error=str(e))

    orders.mark_order_invoiced(conn, order_id, invoice_id)
    log.info("invoice_recorded")

    # The rule is looked up again now that the invoice exists
    try:
        refreshed = orders.get_order(conn, order_id)
        if refreshed is None:
            log.error("order_missing_after_invoice")
            return
        rule = resolve_channel_rule(conn, refreshed["order_channel"])
        if rule.auto_ship:
            job_id = enqueue_job(conn, SHIP_ORDER, order_id)
            log.info("ship_job_scheduled", job_id=job_id, channel=refreshed["order_channel"])
    except Exception as e:
        log.error("ship_job_schedule_failed", error=str(e))


def ship_order(conn, client: RemoteOrderClient, order_id: int):
    log = logger.bind(order_id=order_id, step="ship")
    order = _load_order(conn, order_id)
    remote_order_id = _require_remote_order(order)

    if order["shipped_at"]:
        log.info("order_already_shipped", shipped_at=order["shipped_at"])
        return

    shipment_id = client.create_shipment(remote_order_id)
    log = log.bind(shipment_id=shipment_id)

    try:
        created_at = format_remote_datetime(add_minutes(order["created_date"], SHIPMENT_BACKDATE_MINUTES))
        client.backdate_shipment(shipment_id, created_at)
        log.info("shipment_backdated", created_at=created_at)
    except Exception as e:
        log.warning("shipment_backdate_failed", error=str(e))

    orders.mark_order_shipped(conn, order_id, shipment_id)
    log.info("shipment_recorded")


HANDLERS: Dict[str, Callable] = {
    SYNC_ORDER: sync_order,
    INVOICE_ORDER: invoice_order,
    SHIP_ORDER: ship_order,
}


def handle_job(conn, client: RemoteOrderClient, job: Job):
    handler = HANDLERS.get(job.type)
    if handler is None:
        raise PermanentJobError(f"Unsupported job type: {job.type}")
    payload = job.decoded_payload()
    if not isinstance(payload, OrderJobPayload):
        raise PermanentJobError(f"Unsupported payload for {job.type}")
    handler(conn, client, payload.order_id)

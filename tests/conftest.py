"""Shared fixtures: a throwaway SQLite database and an in-memory remote order system."""

import threading

import pytest

from orderctl import orders
from orderctl.db import connect_db, init_db


class FakeRemote:
    """Stands in for RemoteOrderClient; records every call.

    ``failures`` maps a method name to an exception (raised on every call)
    or a list of exceptions (raised one per call until exhausted). ``stock``
    overrides the stock level reported for a SKU; unknown SKUs are plentiful.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self._next_id = 1000
        self.stock = {}
        self._lock = threading.Lock()

    def _call(self, name, *args):
        with self._lock:
            self.calls.append((name, args))
            failure = self.failures.get(name)
            if isinstance(failure, list):
                failure = failure.pop(0) if failure else None
        if failure is not None:
            raise failure

    def _new_id(self):
        with self._lock:
            self._next_id += 1
            return self._next_id

    def fetch_stock(self, skus):
        self._call("fetch_stock", tuple(skus))
        return {
            sku: self.stock.get(sku, {"exists": True, "salable_qty": 1000, "in_stock": True})
            for sku in skus
        }

    def names(self):
        return [c[0] for c in self.calls]

    def create_cart(self):
        self._call("create_cart")
        return "cart-abc"

    def add_item(self, cart_id, sku, qty):
        self._call("add_item", cart_id, sku, qty)

    def set_addresses_and_shipping(self, cart_id, order):
        self._call("set_addresses_and_shipping", cart_id)

    def set_payment_method(self, cart_id):
        self._call("set_payment_method", cart_id)

    def place_order(self, cart_id):
        self._call("place_order", cart_id)
        return self._new_id()

    def get_order(self, remote_order_id):
        self._call("get_order", remote_order_id)
        return {"entity_id": remote_order_id, "increment_id": f"00000{remote_order_id}"}

    def add_order_comment(self, remote_order_id, comment):
        self._call("add_order_comment", remote_order_id, comment)

    def create_invoice(self, remote_order_id):
        self._call("create_invoice", remote_order_id)
        return self._new_id()

    def create_shipment(self, remote_order_id):
        self._call("create_shipment", remote_order_id)
        return self._new_id()

    def backdate_order(self, remote_order_id, created_at):
        self._call("backdate_order", remote_order_id, created_at)

    def attach_customer_and_backdate(self, remote_order_id, email, firstname, lastname, created_at=None):
        self._call("attach_customer_and_backdate", remote_order_id, email)

    def backdate_invoice(self, invoice_id, created_at):
        self._call("backdate_invoice", invoice_id, created_at)

    def backdate_shipment(self, shipment_id, created_at):
        self._call("backdate_shipment", shipment_id, created_at)


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "orders.db")
    monkeypatch.setenv("ORDERCTL_DB", path)
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def make_order(conn):
    def _make(file_order_id="E42", channel="Web", items=None, **fields):
        header = {
            "file_order_id": file_order_id,
            "order_channel": channel,
            "created_date": "05/11/2025 14:30",
            "email": "ana@example.com",
            "firstname": "Ana",
            "lastname": "Lopez",
            "street": "1 High St\nFlat 2",
            "city": "London",
            "postcode": "N1 1AA",
            "country_id": "GB",
        }
        header.update(fields)
        order_id = orders.upsert_order(conn, header)
        orders.replace_order_items(
            conn,
            order_id,
            items if items is not None else [{"sku": "SKU-1", "qty_ordered": 2, "price": 9.5}],
        )
        return order_id

    return _make

"""HTTP client for the remote order system.

Every failed call raises RemoteAPIError carrying the HTTP status (None when
no response arrived) and the message the remote system sent back, which is
what the retry classifier inspects.
"""

import json
from typing import Any, Dict, Iterable, Mapping, Optional
from urllib.parse import quote

import requests
import structlog

from .config import remote_settings
from .errors import RemoteAPIError

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 30
PLACE_ORDER_TIMEOUT = 60
MAX_STOCK_SKUS = 200

# Region ids whose code/name the remote system needs spelled out
REGION_MAP = {
    "714": {"code": "CABA", "name": "Ciudad Autónoma de Buenos Aires"},
    "715": {"code": "BA", "name": "Buenos Aires"},
}


def _value(order: Mapping[str, Any], key: str) -> str:
    try:
        raw = order[key]
    except (KeyError, IndexError):
        return ""
    return "" if raw is None else str(raw).strip()


def build_address(order: Mapping[str, Any]) -> Dict[str, Any]:
    """Shipping/billing address payload for an order row."""
    street = [line.strip() for line in _value(order, "street").split("\n") if line.strip()]
    address = {
        "email": _value(order, "email") or "guest@example.com",
        "firstname": _value(order, "firstname") or "Guest",
        "lastname": _value(order, "lastname") or "Guest",
        "telephone": _value(order, "telephone") or "0000000000",
        "countryId": _value(order, "country_id") or "GB",
        "postcode": _value(order, "postcode"),
        "city": _value(order, "city"),
        "street": street or [""],
    }
    company = _value(order, "company")
    if company:
        address["company"] = company

    region_id = _value(order, "region_id")
    region_name = _value(order, "region")
    if region_id:
        meta = REGION_MAP.get(region_id)
        if meta:
            region_name = meta["name"]
            address["region_code"] = meta["code"]
        try:
            address["region_id"] = int(region_id)
        except ValueError:
            pass
    if region_name:
        address["region"] = region_name
    return address


class RemoteOrderClient:
    """Client for the remote order system's REST API.

    Attributes:
        base_url: Store-scoped API root, e.g. https://shop.example.com/rest/default
        session: Keep-alive session shared by all calls
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        store_code: str = "default",
        shipping_method: str = "freeshipping",
        payment_method: str = "cashondelivery",
        stock_id: int = 1,
        timeout: int = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("REMOTE_BASE_URL is not configured")
        if not token:
            raise ValueError("REMOTE_API_TOKEN is not configured")

        self.base_url = f"{base_url.rstrip('/')}/{store_code}"
        self.shipping_method = shipping_method
        self.payment_method = payment_method
        self.stock_id = stock_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    @classmethod
    def from_env(cls) -> "RemoteOrderClient":
        return cls(**remote_settings())

    def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        log = logger.bind(method=method, path=path)

        try:
            response = self.session.request(
                method=method,
                url=url,
                json=json_data,
                params=params,
                timeout=timeout or self.timeout,
            )
        except requests.RequestException as e:
            log.error("remote_request_failed", error=str(e))
            raise RemoteAPIError(str(e) or e.__class__.__name__, status=None, method=method, url=path) from e

        data: Any = None
        if response.content:
            try:
                data = response.json()
            except (json.JSONDecodeError, ValueError):
                data = response.text

        if 200 <= response.status_code < 300:
            return data

        message = ""
        if isinstance(data, dict) and data.get("message") is not None:
            message = str(data["message"])
        elif isinstance(data, str):
            message = data[:500]
        message = message or response.reason or f"HTTP {response.status_code}"

        log.error("remote_request_error", status=response.status_code, message=message)
        raise RemoteAPIError(message, status=response.status_code, method=method, url=path)

    # ---------- Cart ----------
    def create_cart(self) -> str:
        return str(self._request("POST", "/V1/guest-carts"))

    def add_item(self, cart_id: str, sku: str, qty: float) -> None:
        self._request(
            "POST",
            f"/V1/guest-carts/{quote(cart_id, safe='')}/items",
            {"cartItem": {"quote_id": cart_id, "sku": sku, "qty": qty}},
        )

    def set_addresses_and_shipping(self, cart_id: str, order: Mapping[str, Any]) -> None:
        address = build_address(order)
        self._request(
            "POST",
            f"/V1/guest-carts/{quote(cart_id, safe='')}/shipping-information",
            {
                "addressInformation": {
                    "shipping_address": address,
                    "billing_address": address,
                    "shipping_carrier_code": self.shipping_method,
                    "shipping_method_code": self.shipping_method,
                }
            },
        )

    def set_payment_method(self, cart_id: str) -> None:
        self._request(
            "PUT",
            f"/V1/guest-carts/{quote(cart_id, safe='')}/selected-payment-method",
            {"method": {"method": self.payment_method}},
        )

    def place_order(self, cart_id: str) -> int:
        # Placing the order is the slowest remote operation
        result = self._request(
            "PUT",
            f"/V1/guest-carts/{quote(cart_id, safe='')}/order",
            timeout=PLACE_ORDER_TIMEOUT,
        )
        return int(result)

    # ---------- Inventory ----------
    def fetch_stock(self, skus: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Existence and salable quantity for each SKU.

        One product search finds which SKUs exist, then the salable quantity
        is read per existing SKU. A failed quantity read counts as zero
        stock; a failed product search raises RemoteAPIError.
        """
        unique = sorted({str(s) for s in skus})
        if not unique:
            return {}

        params = {
            "searchCriteria[filter_groups][0][filters][0][field]": "sku",
            "searchCriteria[filter_groups][0][filters][0][value]": ",".join(unique),
            "searchCriteria[filter_groups][0][filters][0][condition_type]": "in",
            "searchCriteria[pageSize]": MAX_STOCK_SKUS,
        }
        found = self._request("GET", "/V1/products", params=params)
        if not isinstance(found, dict):
            raise RemoteAPIError("unexpected product search response", status=None, method="GET", url="/V1/products")
        existing = {item.get("sku") for item in found.get("items") or []}

        stock = {}
        for sku in unique:
            if sku not in existing:
                stock[sku] = {"exists": False, "salable_qty": 0.0, "in_stock": False}
                continue
            try:
                raw = self._request(
                    "GET",
                    f"/V1/inventory/get-product-salable-quantity/{quote(sku, safe='')}/{self.stock_id}",
                )
                qty = float(raw)
            except (RemoteAPIError, TypeError, ValueError) as e:
                logger.warning("salable_quantity_unavailable", sku=sku, error=str(e))
                qty = 0.0
            qty = max(qty, 0.0)
            stock[sku] = {"exists": True, "salable_qty": qty, "in_stock": qty > 0}
        return stock

    # ---------- Orders ----------
    def get_order(self, remote_order_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/V1/orders/{remote_order_id}")

    def add_order_comment(self, remote_order_id: int, comment: str) -> None:
        self._request(
            "POST",
            f"/V1/orders/{remote_order_id}/comments",
            {
                "statusHistory": {
                    "comment": comment,
                    "status": "pending",
                    "is_customer_notified": 0,
                    "is_visible_on_front": 0,
                }
            },
        )

    # ---------- Invoice / shipment ----------
    def create_invoice(self, remote_order_id: int) -> int:
        return int(self._request("POST", f"/V1/order/{remote_order_id}/invoice", {"capture": True}))

    def create_shipment(self, remote_order_id: int) -> int:
        return int(self._request("POST", f"/V1/order/{remote_order_id}/ship", {}))

    # ---------- Backdating ----------
    def backdate_order(self, remote_order_id: int, created_at: str) -> None:
        self._request(
            "POST",
            f"/V1/ostoya/orders/{remote_order_id}/backdate",
            {"orderId": remote_order_id, "createdAt": created_at},
        )

    def attach_customer_and_backdate(
        self,
        remote_order_id: int,
        email: str,
        firstname: str,
        lastname: str,
        created_at: Optional[str] = None,
    ) -> None:
        self._request(
            "POST",
            f"/V1/ostoya/orders/{remote_order_id}/attach-customer",
            {
                "orderId": remote_order_id,
                "email": email,
                "firstname": firstname,
                "lastname": lastname,
                "createdAt": created_at,
            },
        )

    def backdate_invoice(self, invoice_id: int, created_at: str) -> None:
        self._request(
            "POST",
            f"/V1/ostoya/invoices/{invoice_id}/backdate",
            {"invoiceId": invoice_id, "createdAt": created_at},
        )

    def backdate_shipment(self, shipment_id: int, created_at: str) -> None:
        self._request(
            "POST",
            f"/V1/ostoya/shipments/{shipment_id}/backdate",
            {"shipmentId": shipment_id, "createdAt": created_at},
        )

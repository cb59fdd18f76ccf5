from unittest.mock import MagicMock

import pytest
import requests

from orderctl.errors import RemoteAPIError, is_transient
from orderctl.remote import RemoteOrderClient, build_address


def _response(status_code, body=b"", json_data=None, reason="OK"):
    response = MagicMock()
    response.status_code = status_code
    response.content = body
    response.reason = reason
    response.text = body.decode() if body else ""
    if json_data is not None:
        response.json.return_value = json_data
    else:
        response.json.side_effect = ValueError("not json")
    return response


@pytest.fixture
def session():
    s = MagicMock()
    s.headers = {}
    return s


@pytest.fixture
def client(session):
    return RemoteOrderClient("https://shop.example.com/rest/", "secret", store_code="uk", session=session)


def test_client_requires_settings():
    with pytest.raises(ValueError):
        RemoteOrderClient("", "token")
    with pytest.raises(ValueError):
        RemoteOrderClient("https://shop.example.com/rest", "")


def test_client_from_env(monkeypatch):
    monkeypatch.setenv("REMOTE_BASE_URL", "https://shop.example.com/rest")
    monkeypatch.setenv("REMOTE_API_TOKEN", "secret")
    monkeypatch.setenv("REMOTE_STORE_CODE", "es")

    client = RemoteOrderClient.from_env()

    assert client.base_url == "https://shop.example.com/rest/es"
    assert client.session.headers["Authorization"] == "Bearer secret"


def test_create_cart_returns_cart_id(client, session):
    session.request.return_value = _response(200, b'"cart-1"', "cart-1")

    assert client.create_cart() == "cart-1"

    kwargs = session.request.call_args.kwargs
    assert kwargs["method"] == "POST"
    assert kwargs["url"] == "https://shop.example.com/rest/uk/V1/guest-carts"
    assert session.headers["Authorization"] == "Bearer secret"


def test_place_order_uses_longer_timeout(client, session):
    session.request.return_value = _response(200, b"42", 42)

    assert client.place_order("cart 1") == 42

    kwargs = session.request.call_args.kwargs
    assert kwargs["url"].endswith("/V1/guest-carts/cart%201/order")
    assert kwargs["timeout"] == 60


def test_add_item_sends_cart_item(client, session):
    session.request.return_value = _response(200, b"{}", {})

    client.add_item("c1", "SKU-9", 2.0)

    assert session.request.call_args.kwargs["json"] == {
        "cartItem": {"quote_id": "c1", "sku": "SKU-9", "qty": 2.0}
    }


def test_error_response_carries_status_and_message(client, session):
    body = b'{"message": "Deadlock found when trying to get lock"}'
    session.request.return_value = _response(
        400, body, {"message": "Deadlock found when trying to get lock"}, reason="Bad Request"
    )

    with pytest.raises(RemoteAPIError) as exc:
        client.create_invoice(10)

    assert exc.value.status == 400
    assert exc.value.message == "Deadlock found when trying to get lock"
    assert is_transient(exc.value)


def test_error_without_json_body_uses_reason(client, session):
    session.request.return_value = _response(404, reason="Not Found")

    with pytest.raises(RemoteAPIError) as exc:
        client.get_order(5)

    assert exc.value.status == 404
    assert exc.value.message == "Not Found"
    assert not is_transient(exc.value)


def test_network_error_has_no_status(client, session):
    session.request.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(RemoteAPIError) as exc:
        client.create_shipment(10)

    assert exc.value.status is None
    assert is_transient(exc.value)


def test_fetch_stock_searches_products_then_reads_salable_qty(client, session):
    session.request.side_effect = [
        _response(200, b"{}", {"items": [{"sku": "A-1"}, {"sku": "B 2"}]}),
        _response(200, b"5", 5),
        _response(200, b"0", 0),
    ]

    stock = client.fetch_stock(["B 2", "A-1", "C-3", "A-1"])

    assert stock == {
        "A-1": {"exists": True, "salable_qty": 5.0, "in_stock": True},
        "B 2": {"exists": True, "salable_qty": 0.0, "in_stock": False},
        "C-3": {"exists": False, "salable_qty": 0.0, "in_stock": False},
    }
    search, first, second = session.request.call_args_list
    assert search.kwargs["url"] == "https://shop.example.com/rest/uk/V1/products"
    assert search.kwargs["params"]["searchCriteria[filter_groups][0][filters][0][value]"] == "A-1,B 2,C-3"
    assert search.kwargs["params"]["searchCriteria[filter_groups][0][filters][0][condition_type]"] == "in"
    assert first.kwargs["url"].endswith("/V1/inventory/get-product-salable-quantity/A-1/1")
    assert second.kwargs["url"].endswith("/V1/inventory/get-product-salable-quantity/B%202/1")


def test_fetch_stock_counts_failed_quantity_read_as_empty(client, session):
    session.request.side_effect = [
        _response(200, b"{}", {"items": [{"sku": "A-1"}]}),
        _response(500, reason="Internal Server Error"),
    ]

    assert client.fetch_stock(["A-1"]) == {"A-1": {"exists": True, "salable_qty": 0.0, "in_stock": False}}


def test_fetch_stock_raises_when_product_search_fails(client, session):
    session.request.return_value = _response(401, b'{"message": "Consumer is not authorized"}', {"message": "Consumer is not authorized"})

    with pytest.raises(RemoteAPIError) as exc:
        client.fetch_stock(["A-1"])

    assert exc.value.status == 401
    assert session.request.call_count == 1


def test_fetch_stock_without_skus_makes_no_call(client, session):
    assert client.fetch_stock([]) == {}
    session.request.assert_not_called()


def test_build_address_defaults_and_street_lines():
    address = build_address({"street": " 1 High St \n\n Flat 2 ", "city": "London", "postcode": "N1"})

    assert address["street"] == ["1 High St", "Flat 2"]
    assert address["firstname"] == "Guest"
    assert address["countryId"] == "GB"
    assert address["email"] == "guest@example.com"
    assert "region" not in address
    assert "company" not in address


def test_build_address_maps_known_region():
    address = build_address({"region_id": "714", "region": "whatever", "country_id": "AR"})

    assert address["region_id"] == 714
    assert address["region_code"] == "CABA"
    assert address["region"] == "Ciudad Autónoma de Buenos Aires"
    assert address["street"] == [""]

import io
import json
import os
import sys
from urllib import error

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from binapp import marketplace as marketplace_module
from binapp.marketplace import (
    CardTraderClient,
    InMemoryMarketplace,
    MarketplaceError,
    OrderNotFoundError,
    parse_order,
)


ORDER_PAYLOAD = {
    "id": 123,
    "code": "20240615abcd",
    "state": "Hub_Pending",
    "via_cardtrader_zero": True,
    "size": 2,
    "buyer": {"username": "collector"},
    "seller_total": {"cents": 1250, "currency": "EUR"},
    "formatted_total": "€12.50",
    "order_items": [
        {"product_id": 555, "quantity": 2, "name": "Ornithopter", "expansion": {"code": "ATQ"}},
        {"product_id": "bad", "quantity": 1, "name": "Broken"},
    ],
}


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
        return False


def test_parse_order_normalises_payload():
    order = parse_order(ORDER_PAYLOAD)

    assert order.order_id == "123"
    assert order.state == "hub_pending"
    assert order.via_zero is True
    assert order.buyer == "collector"
    assert order.order_date == "2024-06-15"
    assert order.lines[0].external_id == 555
    assert order.lines[0].expansion == "ATQ"
    assert order.lines[1].external_id is None
    assert order.to_dict()["sellerTotalCents"] == 1250


def test_order_date_requires_numeric_prefix():
    order = parse_order({"id": 1, "code": "abc", "state": "paid"})

    assert order.order_date is None


def test_client_sends_bearer_token_and_parses_order(monkeypatch):
    captured = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["auth"] = req.get_header("Authorization")
        captured["timeout"] = timeout
        return FakeResponse(json.dumps(ORDER_PAYLOAD).encode("utf-8"))

    monkeypatch.setattr(marketplace_module.request, "urlopen", fake_urlopen)
    client = CardTraderClient("https://example.test/api/v2/", "secret", timeout=7)

    lines = client.fetch_order_lines(123)

    assert captured["url"] == "https://example.test/api/v2/orders/123"
    assert captured["auth"] == "Bearer secret"
    assert captured["timeout"] == 7
    assert [line.external_id for line in lines] == [555, None]


def test_client_pages_through_orders(monkeypatch):
    pages = {
        1: [dict(ORDER_PAYLOAD, id=1), dict(ORDER_PAYLOAD, id=2)],
        2: [dict(ORDER_PAYLOAD, id=3, state="paid", via_cardtrader_zero=False)],
    }
    requested = []

    def fake_urlopen(req, timeout):
        page = int(req.full_url.split("page=")[1].split("&")[0])
        requested.append(page)
        return FakeResponse(json.dumps(pages.get(page, [])).encode("utf-8"))

    monkeypatch.setattr(marketplace_module.request, "urlopen", fake_urlopen)
    client = CardTraderClient("https://example.test/api/v2", "secret", page_size=2, max_pages=5)

    orders = client.fetch_orders()

    assert [order.order_id for order in orders] == ["1", "2", "3"]
    assert requested == [1, 2]
    assert [order.order_id for order in client.fetch_eligible_orders(["paid"], zero_only=False)] == ["3"]
    assert client.fetch_eligible_orders(["paid"], zero_only=True) == []


def test_client_maps_http_errors(monkeypatch):
    def not_found(req, timeout):
        raise error.HTTPError(req.full_url, 404, "Not Found", hdrs=None, fp=None)

    monkeypatch.setattr(marketplace_module.request, "urlopen", not_found)
    client = CardTraderClient("https://example.test/api/v2", "secret")

    with pytest.raises(OrderNotFoundError):
        client.fetch_order(1)

    def server_error(req, timeout):
        raise error.HTTPError(req.full_url, 503, "Unavailable", hdrs=None, fp=None)

    monkeypatch.setattr(marketplace_module.request, "urlopen", server_error)

    with pytest.raises(MarketplaceError) as excinfo:
        client.fetch_order(1)
    assert excinfo.value.status == 503
    assert not isinstance(excinfo.value, OrderNotFoundError)


def test_client_maps_connection_errors(monkeypatch):
    def unreachable(req, timeout):
        raise error.URLError("connection refused")

    monkeypatch.setattr(marketplace_module.request, "urlopen", unreachable)

    with pytest.raises(MarketplaceError):
        CardTraderClient("https://example.test/api/v2", "secret").fetch_orders()


def test_in_memory_marketplace_reports_missing_orders():
    market = InMemoryMarketplace()

    with pytest.raises(OrderNotFoundError):
        market.fetch_order("missing")
    assert market.calls == [("fetch_order", "missing")]

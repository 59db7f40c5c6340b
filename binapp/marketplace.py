"""Marketplace order access.

``CardTraderClient`` talks to the seller API over HTTP. ``InMemoryMarketplace``
serves the same calls from a dict of orders and backs the test-suite and
offline development. The app keeps one client in ``app.extensions``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable
from urllib import error, parse, request

from flask import current_app


logger = logging.getLogger(__name__)


class MarketplaceError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class OrderNotFoundError(MarketplaceError):
    pass


@dataclass(frozen=True)
class OrderLine:
    external_id: int | None
    quantity: int
    name: str | None = None
    expansion: str | None = None


@dataclass(frozen=True)
class MarketplaceOrder:
    order_id: str
    code: str | None
    state: str
    via_zero: bool = False
    lines: tuple[OrderLine, ...] = ()
    buyer: str | None = None
    size: int | None = None
    seller_total_cents: int | None = None
    seller_total_currency: str | None = None
    formatted_total: str | None = None

    @property
    def order_date(self) -> str | None:
        # Codes start with the order date as YYYYMMDD.
        code = self.code or ""
        if len(code) < 8 or not code[:8].isdigit():
            return None
        return f"{code[:4]}-{code[4:6]}-{code[6:8]}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.order_id,
            "code": self.code,
            "state": self.state,
            "viaZero": self.via_zero,
            "buyer": self.buyer,
            "size": self.size,
            "date": self.order_date,
            "sellerTotalCents": self.seller_total_cents,
            "sellerTotalCurrency": self.seller_total_currency,
            "formattedTotal": self.formatted_total,
        }


def _coerce_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_order_line(payload: dict[str, Any]) -> OrderLine:
    expansion = payload.get("expansion")
    if isinstance(expansion, dict):
        expansion = expansion.get("code") or expansion.get("name")
    return OrderLine(
        external_id=_coerce_int(payload.get("product_id")),
        quantity=_coerce_int(payload.get("quantity")) or 0,
        name=payload.get("name"),
        expansion=expansion,
    )


def parse_order(payload: dict[str, Any]) -> MarketplaceOrder:
    buyer = payload.get("buyer")
    if isinstance(buyer, dict):
        buyer = buyer.get("username")
    seller_total = payload.get("seller_total") or {}
    return MarketplaceOrder(
        order_id=str(payload.get("id")),
        code=payload.get("code"),
        state=str(payload.get("state") or "").lower(),
        via_zero=bool(payload.get("via_cardtrader_zero")),
        lines=tuple(parse_order_line(line) for line in payload.get("order_items") or []),
        buyer=buyer,
        size=_coerce_int(payload.get("size")),
        seller_total_cents=_coerce_int(seller_total.get("cents")),
        seller_total_currency=seller_total.get("currency"),
        formatted_total=payload.get("formatted_total"),
    )


def filter_eligible(
    orders: Iterable[MarketplaceOrder], states: Iterable[str], zero_only: bool
) -> list[MarketplaceOrder]:
    allowed = {state.lower() for state in states}
    return [
        order
        for order in orders
        if order.state in allowed and (order.via_zero or not zero_only)
    ]


class MarketplaceClient:
    """Operations the allocation service needs from the marketplace."""

    def fetch_order(self, order_id) -> MarketplaceOrder:
        raise NotImplementedError

    def fetch_orders(self) -> list[MarketplaceOrder]:
        raise NotImplementedError

    def fetch_order_lines(self, order_id) -> list[OrderLine]:
        return list(self.fetch_order(order_id).lines)

    def fetch_eligible_orders(
        self, states: Iterable[str], zero_only: bool = True
    ) -> list[MarketplaceOrder]:
        return filter_eligible(self.fetch_orders(), states, zero_only)


class CardTraderClient(MarketplaceClient):
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: int = 20,
        page_size: int = 50,
        max_pages: int = 5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.page_size = page_size
        self.max_pages = max_pages

    def _get(self, path: str, params: dict[str, Any] | None = None):
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{parse.urlencode(params)}"
        req = request.Request(
            url,
            method="GET",
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as response:
                body = response.read()
        except error.HTTPError as exc:
            if exc.code == 404:
                raise OrderNotFoundError(f"{path} not found", status=404) from exc
            raise MarketplaceError(f"Marketplace returned {exc.code} for {path}", status=exc.code) from exc
        except error.URLError as exc:
            raise MarketplaceError(f"Marketplace request failed: {exc.reason}") from exc

        try:
            return json.loads(body.decode("utf-8") or "null")
        except ValueError as exc:
            raise MarketplaceError(f"Marketplace sent invalid JSON for {path}") from exc

    def fetch_order(self, order_id) -> MarketplaceOrder:
        payload = self._get(f"/orders/{parse.quote(str(order_id))}")
        if not isinstance(payload, dict):
            raise MarketplaceError(f"Unexpected payload for order {order_id}")
        return parse_order(payload)

    def fetch_orders(self) -> list[MarketplaceOrder]:
        orders: list[MarketplaceOrder] = []
        for page in range(1, self.max_pages + 1):
            batch = self._get(
                "/orders",
                {"order_as": "seller", "sort": "date.desc", "page": page, "limit": self.page_size},
            )
            if not isinstance(batch, list) or not batch:
                break
            orders.extend(parse_order(payload) for payload in batch)
            if len(batch) < self.page_size:
                break
        else:
            logger.info("Stopped order listing at the %s page cap", self.max_pages)
        return orders


@dataclass
class InMemoryMarketplace(MarketplaceClient):
    orders: dict[str, MarketplaceOrder] = field(default_factory=dict)
    failing_orders: dict[str, MarketplaceError] = field(default_factory=dict)
    calls: list[tuple[str, str | None]] = field(default_factory=list)

    def add_order(self, order: MarketplaceOrder) -> MarketplaceOrder:
        self.orders[str(order.order_id)] = order
        return order

    def remove_order(self, order_id) -> None:
        self.orders.pop(str(order_id), None)

    def fail_order(self, order_id, exc: MarketplaceError) -> None:
        self.failing_orders[str(order_id)] = exc

    def fetch_order(self, order_id) -> MarketplaceOrder:
        key = str(order_id)
        self.calls.append(("fetch_order", key))
        if key in self.failing_orders:
            raise self.failing_orders[key]
        try:
            return self.orders[key]
        except KeyError:
            raise OrderNotFoundError(f"Order {key} not found", status=404) from None

    def fetch_orders(self) -> list[MarketplaceOrder]:
        self.calls.append(("fetch_orders", None))
        return list(self.orders.values())


def build_marketplace_client(config) -> MarketplaceClient:
    client = config.get("MARKETPLACE_CLIENT")
    if client is not None:
        return client
    return CardTraderClient(
        config.get("MARKETPLACE_BASE_URL", ""),
        config.get("MARKETPLACE_TOKEN", ""),
        timeout=int(config.get("MARKETPLACE_TIMEOUT", 20)),
        page_size=int(config.get("MARKETPLACE_PAGE_SIZE", 50)),
        max_pages=int(config.get("MARKETPLACE_MAX_PAGES", 5)),
    )


def get_marketplace() -> MarketplaceClient:
    return current_app.extensions["binapp.marketplace"]

from __future__ import annotations

import os
from typing import Any

from algo_engine.brokers.base import OrderAck, OrderRequest, validate_order_request
from algo_engine.brokers.http import request_json
from algo_engine.errors import BrokerFailure

ANGEL_BASE_URL = "https://apiconnect.angelbroking.com"
PLACE_ORDER_PATH = "/rest/secure/angelbroking/order/v1/placeOrder"
CANCEL_ORDER_PATH = "/rest/secure/angelbroking/order/v1/cancelOrder"
ORDER_BOOK_PATH = "/rest/secure/angelbroking/order/v1/getOrderBook"
POSITIONS_PATH = "/rest/secure/angelbroking/portfolio/v1/getPosition"
HOLDINGS_PATH = "/rest/secure/angelbroking/portfolio/v1/getHolding"
FUNDS_PATH = "/rest/secure/angelbroking/user/v1/getRMS"
PROFILE_PATH = "/rest/secure/angelbroking/user/v1/getProfile"

_EXCHANGES = {
    "NSE_EQ": "NSE",
    "NSE_FNO": "NFO",
    "NSE_CURRENCY": "CDS",
    "BSE_EQ": "BSE",
    "BSE_FNO": "BFO",
    "MCX_COMM": "MCX",
    "IDX_I": "NSE",
}
_ORDER_TYPES = {
    "MARKET": "MARKET",
    "LIMIT": "LIMIT",
    "STOP_LOSS": "STOPLOSS_LIMIT",
    "STOP_LOSS_MARKET": "STOPLOSS_MARKET",
}
_PRODUCT_TYPES = {
    "INTRADAY": "INTRADAY",
    "CNC": "DELIVERY",
    "MARGIN": "CARRYFORWARD",
    "MTF": "MARGIN",
    "CO": "INTRADAY",
    "BO": "BO",
}


def _num(value: float) -> str:
    return "0" if not value else f"{value:g}"


class AngelOneAdapter:
    name = "angel"

    def __init__(
        self,
        client_code: str,
        api_key: str,
        access_token: str,
        timeout_seconds: float = 10.0,
        base_url: str | None = None,
    ) -> None:
        missing = [
            label
            for label, value in (("client_code", client_code), ("api_key", api_key), ("access_token", access_token))
            if not value
        ]
        if missing:
            raise ValueError(f"angel credentials missing: {', '.join(missing)}")
        self.client_code = client_code
        self._api_key = api_key
        self._access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.base_url = (base_url or os.environ.get("ANGEL_BASE_URL", ANGEL_BASE_URL)).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-UserType": "USER",
            "X-SourceID": "WEB",
            "X-ClientLocalIP": "127.0.0.1",
            "X-ClientPublicIP": "127.0.0.1",
            "X-MACAddress": "00:00:00:00:00:00",
            "X-PrivateKey": self._api_key,
            "Authorization": f"Bearer {self._access_token}",
            "X-ClientCode": self.client_code,
        }

    def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        response = request_json(
            broker=self.name,
            url=f"{self.base_url}{path}",
            method=method,
            headers=self._headers(),
            timeout_seconds=self.timeout_seconds,
            body=body,
            limit_scope=self.client_code,
        )
        if not response.get("status"):
            message = response.get("message") or "request rejected"
            raise BrokerFailure(self.name, "rejected", f"{message} ({response.get('errorcode', '')})", response=response)
        return response.get("data")

    def _rows(self, path: str) -> list[dict[str, Any]]:
        data = self._request("GET", path)
        if data is None:
            return []
        if isinstance(data, dict) and isinstance(data.get("holdings"), list):
            data = data["holdings"]
        if not isinstance(data, list):
            raise BrokerFailure(self.name, "invalid_response", f"{path} did not return a list")
        return [row for row in data if isinstance(row, dict)]

    def order_payload(self, request: OrderRequest) -> dict[str, Any]:
        return {
            "variety": "STOPLOSS" if request.order_type in {"STOP_LOSS", "STOP_LOSS_MARKET"} else "NORMAL",
            "tradingsymbol": request.trading_symbol or str(request.security_id),
            "symboltoken": str(request.security_id),
            "transactiontype": request.transaction_type,
            "exchange": _EXCHANGES.get(request.exchange_segment, "NFO"),
            "ordertype": _ORDER_TYPES[request.order_type],
            "producttype": _PRODUCT_TYPES[request.product_type],
            "duration": request.validity,
            "quantity": str(request.quantity),
            "price": _num(request.price),
            "triggerprice": _num(request.trigger_price),
            "squareoff": _num(request.square_off),
            "stoploss": _num(request.stop_loss),
            "trailingstoploss": _num(request.trailing_stop_loss),
        }

    def place_order(self, request: OrderRequest) -> OrderAck:
        validate_order_request(request)
        data = self._request("POST", PLACE_ORDER_PATH, self.order_payload(request))
        order_id = str((data or {}).get("orderid") or "") if isinstance(data, dict) else ""
        if not order_id:
            raise BrokerFailure(self.name, "invalid_response", "placeOrder response missing orderid")
        return OrderAck(broker=self.name, order_id=order_id, status="PENDING", raw=data)

    def cancel_order(self, order_id: str) -> dict[str, Any]:
        if not order_id:
            raise ValueError("order_id is required")
        data = self._request("POST", CANCEL_ORDER_PATH, {"variety": "NORMAL", "orderid": order_id})
        return data if isinstance(data, dict) else {"orderid": order_id}

    def get_positions(self) -> list[dict[str, Any]]:
        return self._rows(POSITIONS_PATH)

    def get_order_book(self) -> list[dict[str, Any]]:
        return self._rows(ORDER_BOOK_PATH)

    def get_holdings(self) -> list[dict[str, Any]]:
        return self._rows(HOLDINGS_PATH)

    def get_funds(self) -> dict[str, Any]:
        data = self._request("GET", FUNDS_PATH)
        return data if isinstance(data, dict) else {}

    def test_connection(self) -> dict[str, Any]:
        profile = self._request("GET", PROFILE_PATH)
        return {"connected": True, "broker": self.name, "profile": profile or {}}

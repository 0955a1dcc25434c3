from __future__ import annotations

import os
import uuid
from typing import Any

from algo_engine.brokers.base import OrderAck, OrderRequest, validate_order_request
from algo_engine.brokers.http import request_json
from algo_engine.errors import BrokerFailure

DHAN_BASE_URL = "https://api.dhan.co/v2"
DHAN_SANDBOX_URL = "https://sandbox.dhan.co/v2"


class DhanAdapter:
    name = "dhan"

    def __init__(
        self,
        client_id: str,
        access_token: str,
        sandbox: bool = False,
        timeout_seconds: float = 10.0,
        base_url: str | None = None,
    ) -> None:
        if not client_id:
            raise ValueError("dhan client_id is required")
        if not access_token:
            raise ValueError("dhan access_token is required")
        self.client_id = client_id
        self._access_token = access_token
        self.sandbox = sandbox
        self.timeout_seconds = timeout_seconds
        if base_url:
            self.base_url = base_url.rstrip("/")
        elif sandbox:
            self.base_url = os.environ.get("DHAN_SANDBOX_URL", DHAN_SANDBOX_URL).rstrip("/")
        else:
            self.base_url = os.environ.get("DHAN_BASE_URL", DHAN_BASE_URL).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "access-token": self._access_token,
            "client-id": self.client_id,
        }

    def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        return request_json(
            broker=self.name,
            url=f"{self.base_url}{path}",
            method=method,
            headers=self._headers(),
            timeout_seconds=self.timeout_seconds,
            body=body,
            limit_scope=self.client_id,
        )

    def _rows(self, path: str) -> list[dict[str, Any]]:
        response = self._request("GET", path)
        data = response.get("data", response)
        if isinstance(data, list):
            return [row for row in data if isinstance(row, dict)]
        raise BrokerFailure(self.name, "invalid_response", f"{path} did not return a list")

    def order_payload(self, request: OrderRequest) -> dict[str, Any]:
        return {
            "dhanClientId": self.client_id,
            "correlationId": request.correlation_id or f"ORDER_{uuid.uuid4().hex[:16]}",
            "transactionType": request.transaction_type,
            "exchangeSegment": request.exchange_segment,
            "productType": request.product_type,
            "orderType": request.order_type,
            "validity": request.validity,
            "securityId": str(request.security_id),
            "quantity": request.quantity,
            "disclosedQuantity": request.disclosed_quantity,
            "price": request.price,
            "triggerPrice": request.trigger_price,
            "afterMarketOrder": request.after_market_order,
            "amoTime": "OPEN",
            "boProfitValue": request.square_off,
            "boStopLossValue": request.stop_loss,
        }

    def place_order(self, request: OrderRequest) -> OrderAck:
        validate_order_request(request)
        response = self._request("POST", "/orders", self.order_payload(request))
        order_id = str(response.get("orderId") or "")
        status = str(response.get("orderStatus") or "")
        if not order_id and not status:
            message = response.get("errorMessage") or response.get("message") or "order placement failed"
            raise BrokerFailure(self.name, "rejected", str(message), response=response)
        return OrderAck(broker=self.name, order_id=order_id, status=status or "TRANSIT", raw=response)

    def cancel_order(self, order_id: str) -> dict[str, Any]:
        if not order_id:
            raise ValueError("order_id is required")
        return self._request("DELETE", f"/orders/{order_id}")

    def get_positions(self) -> list[dict[str, Any]]:
        return self._rows("/positions")

    def get_order_book(self) -> list[dict[str, Any]]:
        return self._rows("/orders")

    def get_holdings(self) -> list[dict[str, Any]]:
        return self._rows("/holdings")

    def get_funds(self) -> dict[str, Any]:
        response = self._request("GET", "/fundlimit")
        data = response.get("data", response)
        return data if isinstance(data, dict) else {"data": data}

    def test_connection(self) -> dict[str, Any]:
        response = self._request("GET", "/profile")
        profile = response.get("data", response)
        if not isinstance(profile, dict) or not (profile.get("dhanClientId") or response.get("status") == "success"):
            raise BrokerFailure(self.name, "rejected", "profile check failed", response=response)
        return {"connected": True, "broker": self.name, "profile": profile}

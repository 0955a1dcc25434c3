from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, runtime_checkable

from algo_engine.errors import OrderValidationError

TRANSACTION_TYPES = {"BUY", "SELL"}
EXCHANGE_SEGMENTS = {"NSE_EQ", "NSE_FNO", "NSE_CURRENCY", "BSE_EQ", "BSE_FNO", "BSE_CURRENCY", "MCX_COMM", "IDX_I"}
PRODUCT_TYPES = {"INTRADAY", "CNC", "MARGIN", "MTF", "CO", "BO"}
ORDER_TYPES = {"MARKET", "LIMIT", "STOP_LOSS", "STOP_LOSS_MARKET"}
VALIDITIES = {"DAY", "IOC"}


@dataclass(frozen=True)
class OrderRequest:
    transaction_type: str
    exchange_segment: str
    product_type: str
    order_type: str
    security_id: str
    quantity: int
    price: float = 0.0
    trigger_price: float = 0.0
    validity: str = "DAY"
    trading_symbol: str | None = None
    disclosed_quantity: int = 0
    after_market_order: bool = False
    correlation_id: str | None = None
    stop_loss: float = 0.0
    square_off: float = 0.0
    trailing_stop_loss: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "OrderRequest":
        return cls(**payload)


@dataclass(frozen=True)
class OrderAck:
    broker: str
    order_id: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)
    average_price: float | None = None
    filled_quantity: int | None = None


@dataclass(frozen=True)
class BrokerConnection:
    user_id: str
    broker: str
    credentials: dict[str, Any]
    sandbox: bool = False

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "BrokerConnection":
        return cls(
            user_id=str(record["user_id"]),
            broker=str(record["broker"]),
            credentials=dict(record.get("credentials") or {}),
            sandbox=bool(record.get("sandbox", False)),
        )


@runtime_checkable
class BrokerAdapter(Protocol):
    name: str

    def place_order(self, request: OrderRequest) -> OrderAck: ...

    def cancel_order(self, order_id: str) -> dict[str, Any]: ...

    def get_positions(self) -> list[dict[str, Any]]: ...

    def get_order_book(self) -> list[dict[str, Any]]: ...

    def get_holdings(self) -> list[dict[str, Any]]: ...

    def get_funds(self) -> dict[str, Any]: ...

    def test_connection(self) -> dict[str, Any]: ...


def order_request_errors(request: OrderRequest) -> list[dict[str, str]]:
    errors: list[dict[str, str]] = []
    if request.transaction_type not in TRANSACTION_TYPES:
        errors.append({"field": "transaction_type", "message": f"must be one of {sorted(TRANSACTION_TYPES)}"})
    if request.exchange_segment not in EXCHANGE_SEGMENTS:
        errors.append({"field": "exchange_segment", "message": f"unsupported segment {request.exchange_segment!r}"})
    if request.product_type not in PRODUCT_TYPES:
        errors.append({"field": "product_type", "message": f"must be one of {sorted(PRODUCT_TYPES)}"})
    if request.order_type not in ORDER_TYPES:
        errors.append({"field": "order_type", "message": f"must be one of {sorted(ORDER_TYPES)}"})
    if request.validity not in VALIDITIES:
        errors.append({"field": "validity", "message": f"must be one of {sorted(VALIDITIES)}"})
    if not str(request.security_id or "").strip():
        errors.append({"field": "security_id", "message": "is required"})
    if not isinstance(request.quantity, int) or request.quantity <= 0:
        errors.append({"field": "quantity", "message": "must be a positive integer"})
    if request.order_type in {"LIMIT", "STOP_LOSS"} and request.price <= 0:
        errors.append({"field": "price", "message": f"must be positive for {request.order_type} orders"})
    if request.order_type in {"STOP_LOSS", "STOP_LOSS_MARKET"} and request.trigger_price <= 0:
        errors.append({"field": "trigger_price", "message": f"must be positive for {request.order_type} orders"})
    return errors


def validate_order_request(request: OrderRequest) -> None:
    errors = order_request_errors(request)
    if errors:
        raise OrderValidationError(errors)

from algo_engine.brokers.angel_one import AngelOneAdapter
from algo_engine.brokers.base import (
    BrokerAdapter,
    BrokerConnection,
    OrderAck,
    OrderRequest,
    order_request_errors,
    validate_order_request,
)
from algo_engine.brokers.dhan import DhanAdapter
from algo_engine.brokers.factory import build_adapter
from algo_engine.brokers.rate_limit import RateLimited, enforce_provider_limit, provider_limit, reset_rate_limits

__all__ = [
    "AngelOneAdapter",
    "BrokerAdapter",
    "BrokerConnection",
    "DhanAdapter",
    "OrderAck",
    "OrderRequest",
    "RateLimited",
    "build_adapter",
    "enforce_provider_limit",
    "order_request_errors",
    "provider_limit",
    "reset_rate_limits",
    "validate_order_request",
]

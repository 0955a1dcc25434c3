from __future__ import annotations

from algo_engine.brokers.angel_one import AngelOneAdapter
from algo_engine.brokers.base import BrokerAdapter, BrokerConnection
from algo_engine.brokers.dhan import DhanAdapter
from algo_engine.errors import ValidationError


def _credential(connection: BrokerConnection, *keys: str) -> str:
    for key in keys:
        value = connection.credentials.get(key)
        if value:
            return str(value)
    return ""


def build_adapter(connection: BrokerConnection, timeout_seconds: float = 10.0) -> BrokerAdapter:
    broker = connection.broker.strip().lower()
    try:
        if broker == "dhan":
            return DhanAdapter(
                client_id=_credential(connection, "client_id", "dhan_client_id", "dhanClientId"),
                access_token=_credential(connection, "access_token", "accessToken"),
                sandbox=connection.sandbox,
                timeout_seconds=timeout_seconds,
            )
        if broker in {"angel", "angelone", "angel_one"}:
            return AngelOneAdapter(
                client_code=_credential(connection, "client_code", "clientCode"),
                api_key=_credential(connection, "api_key", "apiKey"),
                access_token=_credential(connection, "access_token", "jwt_token", "accessToken"),
                timeout_seconds=timeout_seconds,
            )
    except ValueError as exc:
        raise ValidationError(f"broker connection for user {connection.user_id} is incomplete: {exc}") from exc
    raise ValidationError(f"unsupported broker: {connection.broker}")

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    code = "engine_error"


class ValidationError(EngineError, ValueError):
    code = "validation_error"


class OrderValidationError(ValidationError):
    """Order request rejected locally before any broker call."""

    def __init__(self, errors: list[dict[str, str]]) -> None:
        self.errors = list(errors)
        summary = "; ".join(f"{item['field']}: {item['message']}" for item in self.errors)
        super().__init__(f"invalid order request: {summary}")


class UnsupportedIndicator(ValidationError):
    code = "unsupported_indicator"


class NotFound(EngineError, LookupError):
    code = "not_found"


class NoBrokerConnection(NotFound):
    code = "no_broker_connection"


class UnknownInstrument(NotFound):
    code = "unknown_instrument"


class DataUnavailable(EngineError, ValueError):
    code = "data_unavailable"


class InternalInvariantViolation(EngineError, RuntimeError):
    code = "internal_invariant_violation"


class AlreadyActive(EngineError):
    code = "already_active"


class NotActive(EngineError):
    code = "not_active"


class BrokerFailure(EngineError):
    """Network, HTTP or broker-side rejection from a broker API call."""

    def __init__(
        self,
        broker: str,
        code: str,
        message: str,
        status_code: int | None = None,
        response: Any = None,
    ) -> None:
        self.broker = broker
        self.code = code
        self.message = message
        self.status_code = status_code
        self.response = response
        status = f" status={status_code}" if status_code is not None else ""
        super().__init__(f"{broker} {code}{status}: {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "broker": self.broker,
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
        }

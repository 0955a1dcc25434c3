from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from typing import Any

from algo_engine.brokers.rate_limit import RateLimited, enforce_provider_limit
from algo_engine.errors import BrokerFailure
from algo_engine.security import redact_text, secret_values


def request_json(
    broker: str,
    url: str,
    method: str,
    headers: dict[str, str],
    timeout_seconds: float,
    body: dict[str, Any] | None = None,
    limit_scope: str = "",
) -> dict[str, Any]:
    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be positive")
    try:
        enforce_provider_limit(broker, limit_scope)
    except RateLimited as exc:
        raise BrokerFailure(
            broker,
            "rate_limited",
            str(exc),
            response={"retry_after_seconds": round(exc.retry_after_seconds, 3)},
        ) from exc

    data = json.dumps(body).encode("utf-8") if body is not None else None
    req = urllib.request.Request(url=url, data=data, method=method, headers=headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as response:
            payload = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        detail = redact_text(exc.read().decode("utf-8", errors="replace"), secret_values(headers))
        raise BrokerFailure(broker, "http_error", f"url={url} detail={detail}", status_code=exc.code) from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            raise BrokerFailure(broker, "timeout", f"url={url} timed out after {timeout_seconds}s") from exc
        raise BrokerFailure(broker, "network_error", f"url={url} detail={exc.reason}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise BrokerFailure(broker, "timeout", f"url={url} timed out after {timeout_seconds}s") from exc

    if not payload.strip():
        return {}
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        snippet = redact_text(payload[:200], secret_values(headers))
        raise BrokerFailure(broker, "invalid_response", f"url={url} payload={snippet}") from exc
    if isinstance(parsed, list):
        return {"data": parsed}
    if not isinstance(parsed, dict):
        raise BrokerFailure(broker, "invalid_response", f"url={url} expected a JSON object")
    return parsed

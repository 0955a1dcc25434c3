from __future__ import annotations

from typing import Any, Iterable, Mapping

# Matched as substrings of lowercased keys, so "X-PrivateKey" and "Access-token" both hit.
_SECRET_KEYS = (
    "access_token",
    "access-token",
    "refresh_token",
    "jwt_token",
    "feed_token",
    "authorization",
    "api_key",
    "api_secret",
    "privatekey",
    "secret",
    "password",
    "totp",
)


def is_secret_key(key: object) -> bool:
    lowered = str(key).lower()
    return any(secret in lowered for secret in _SECRET_KEYS)


def _mask(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"


def redact_payload(payload: Any) -> Any:
    if isinstance(payload, Mapping):
        out: dict[str, Any] = {}
        for key, value in payload.items():
            if is_secret_key(key):
                out[str(key)] = _mask(str(value))
            else:
                out[str(key)] = redact_payload(value)
        return out
    if isinstance(payload, (list, tuple)):
        return [redact_payload(item) for item in payload]
    return payload


def secret_values(headers: Mapping[str, str]) -> list[str]:
    """Values of credential-bearing headers, bearer prefix stripped."""
    values = []
    for key, value in headers.items():
        if not value or not is_secret_key(key):
            continue
        values.append(value)
        if value.lower().startswith("bearer "):
            values.append(value[7:])
    return values


def redact_text(text: str, secrets: Iterable[str]) -> str:
    for secret in sorted(set(secrets), key=len, reverse=True):
        if secret:
            text = text.replace(secret, _mask(secret))
    return text

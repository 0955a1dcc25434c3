from __future__ import annotations

import json
import os
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

_PREFIX = "enc:v1:"
_KEY_ENV = "ALGO_ENGINE_ENCRYPTION_KEY"


def _fernet() -> Fernet:
    key = os.environ.get(_KEY_ENV, "").strip()
    if not key:
        raise ValueError(f"{_KEY_ENV} is required to read or write encrypted broker credentials")
    try:
        return Fernet(key.encode("utf-8"))
    except ValueError as exc:
        raise ValueError(f"invalid {_KEY_ENV} format for Fernet") from exc


def encryption_enabled() -> bool:
    return bool(os.environ.get(_KEY_ENV, "").strip())


def is_sealed(value: str) -> bool:
    return value.startswith(_PREFIX)


def seal_credentials(credentials: dict[str, Any]) -> str:
    """Serialize broker credentials for storage, encrypting them when a key is configured."""
    serialized = json.dumps(credentials, sort_keys=True)
    if not encryption_enabled():
        return serialized
    token = _fernet().encrypt(serialized.encode("utf-8")).decode("utf-8")
    return f"{_PREFIX}{token}"


def open_credentials(value: str) -> dict[str, Any]:
    if is_sealed(value):
        try:
            value = _fernet().decrypt(value[len(_PREFIX):].encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError(f"stored broker credentials cannot be decrypted with {_KEY_ENV}") from exc
    credentials = json.loads(value)
    if not isinstance(credentials, dict):
        raise ValueError("stored broker credentials must be a JSON object")
    return credentials

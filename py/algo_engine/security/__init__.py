from algo_engine.security.crypto import encryption_enabled, is_sealed, open_credentials, seal_credentials
from algo_engine.security.redaction import redact_payload, redact_text, secret_values

__all__ = [
    "encryption_enabled",
    "is_sealed",
    "open_credentials",
    "redact_payload",
    "redact_text",
    "seal_credentials",
    "secret_values",
]

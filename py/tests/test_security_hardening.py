from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from cryptography.fernet import Fernet

from algo_engine.config import load_engine_settings_from_env
from algo_engine.security import (
    encryption_enabled,
    is_sealed,
    open_credentials,
    redact_payload,
    redact_text,
    seal_credentials,
    secret_values,
)
from algo_engine.storage import sqlite_store
from algo_engine.storage.paths import RuntimePaths


class SecurityHardeningTests(unittest.TestCase):
    def test_redaction_masks_sensitive_keys(self) -> None:
        payload = {
            "access_token": "abcdefghijklmnop",
            "nested": {"X-PrivateKey": "private-key-value"},
            "rows": [{"jwt_token": "short"}],
            "normal": "value",
        }
        redacted = redact_payload(payload)
        self.assertEqual(redacted["normal"], "value")
        self.assertEqual(redacted["access_token"], "abcd...mnop")
        self.assertNotEqual(redacted["nested"]["X-PrivateKey"], "private-key-value")
        self.assertEqual(redacted["rows"][0]["jwt_token"], "*****")

    def test_credentials_encrypted_at_rest_when_key_set(self) -> None:
        key = Fernet.generate_key().decode("utf-8")
        with tempfile.TemporaryDirectory() as tmp_dir:
            paths = RuntimePaths(root=Path(tmp_dir))
            sqlite_store.init_db(paths)
            with patch.dict(os.environ, {"ALGO_ENGINE_ENCRYPTION_KEY": key}):
                self.assertTrue(encryption_enabled())
                sqlite_store.upsert_broker_connection(paths, "user-1", "dhan", {"access_token": "dhan-secret"})
                with sqlite_store.connect(paths) as conn:
                    raw = conn.execute("SELECT credentials_json FROM broker_connections").fetchone()[0]
                self.assertTrue(raw.startswith("enc:v1:"))
                self.assertNotIn("dhan-secret", raw)
                record = sqlite_store.get_broker_connection(paths, "user-1")
            self.assertEqual(record["credentials"]["access_token"], "dhan-secret")

    def test_encryption_requires_valid_key(self) -> None:
        with patch.dict(os.environ, {"ALGO_ENGINE_ENCRYPTION_KEY": "not-a-fernet-key"}):
            with self.assertRaisesRegex(ValueError, "invalid ALGO_ENGINE_ENCRYPTION_KEY"):
                seal_credentials({"access_token": "x"})
        with patch.dict(os.environ, {}, clear=True):
            self.assertFalse(encryption_enabled())
            self.assertEqual(seal_credentials({"b": 2, "a": 1}), '{"a": 1, "b": 2}')
            self.assertEqual(open_credentials('{"a": 1}'), {"a": 1})

    def test_sealed_credentials_need_the_same_key(self) -> None:
        with patch.dict(os.environ, {"ALGO_ENGINE_ENCRYPTION_KEY": Fernet.generate_key().decode("utf-8")}):
            sealed = seal_credentials({"access_token": "abc"})
            self.assertTrue(is_sealed(sealed))
            self.assertEqual(open_credentials(sealed), {"access_token": "abc"})
        with patch.dict(os.environ, {"ALGO_ENGINE_ENCRYPTION_KEY": Fernet.generate_key().decode("utf-8")}):
            with self.assertRaisesRegex(ValueError, "cannot be decrypted"):
                open_credentials(sealed)
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaisesRegex(ValueError, "is required"):
                open_credentials(sealed)

    def test_redact_text_masks_header_secrets(self) -> None:
        headers = {"Authorization": "Bearer jwt-abcdefghijkl", "X-ClientLocalIP": "127.0.0.1"}
        secrets = secret_values(headers)
        self.assertEqual(secrets, ["Bearer jwt-abcdefghijkl", "jwt-abcdefghijkl"])
        masked = redact_text("rejected jwt-abcdefghijkl from 127.0.0.1", secrets)
        self.assertEqual(masked, "rejected jwt-...ijkl from 127.0.0.1")


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = load_engine_settings_from_env()
        self.assertEqual(settings.tick_seconds, 60.0)
        self.assertEqual(settings.timezone, "Asia/Kolkata")
        self.assertEqual(settings.liquidity, "normal")
        self.assertFalse(settings.autostart)
        self.assertEqual(settings.runtime_paths.root, Path(".algoengine"))

    def test_overrides_and_invalid_values(self) -> None:
        env = {
            "ALGO_ENGINE_HOME": "/tmp/algo-home",
            "ALGO_ENGINE_TICK_SECONDS": "15",
            "ALGO_ENGINE_DISPATCH_WORKERS": "3",
            "ALGO_ENGINE_LIQUIDITY": "LOW",
            "ALGO_ENGINE_AUTOSTART": "yes",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = load_engine_settings_from_env()
        self.assertEqual(settings.home, Path("/tmp/algo-home"))
        self.assertEqual(settings.tick_seconds, 15.0)
        self.assertEqual(settings.dispatch_workers, 3)
        self.assertEqual(settings.liquidity, "low")
        self.assertTrue(settings.autostart)

        for name, value in (
            ("ALGO_ENGINE_TICK_SECONDS", "-1"),
            ("ALGO_ENGINE_DISPATCH_WORKERS", "two"),
            ("ALGO_ENGINE_LIQUIDITY", "thin"),
            ("ALGO_ENGINE_AUTOSTART", "maybe"),
        ):
            with patch.dict(os.environ, {name: value}, clear=True):
                with self.assertRaises(ValueError):
                    load_engine_settings_from_env()


if __name__ == "__main__":
    unittest.main()

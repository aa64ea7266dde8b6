from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from anon_identity.settings import get_cors_origins, get_recovery_code_max_attempts, get_settings, is_origin_allowed


class SettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        get_settings.cache_clear()

    def tearDown(self) -> None:
        get_settings.cache_clear()

    def test_cors_origins_are_split_and_trimmed(self) -> None:
        with patch.dict(os.environ, {"CORS_ALLOW_ORIGINS": " https://app.example , ,http://localhost:5173"}):
            get_settings.cache_clear()
            self.assertEqual(get_cors_origins(), ["https://app.example", "http://localhost:5173"])

    def test_origin_check(self) -> None:
        with patch.dict(os.environ, {"CORS_ALLOW_ORIGINS": "https://app.example"}):
            get_settings.cache_clear()
            self.assertTrue(is_origin_allowed("https://app.example/"))
            self.assertTrue(is_origin_allowed(None))
            self.assertFalse(is_origin_allowed("https://evil.example"))

    def test_forwarded_for_is_not_trusted_by_default(self) -> None:
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("TRUST_FORWARDED_FOR", None)
            get_settings.cache_clear()
            self.assertFalse(get_settings().trust_forwarded_for)

    def test_max_attempts_is_at_least_one(self) -> None:
        with patch.dict(os.environ, {"RECOVERY_CODE_MAX_ATTEMPTS": "0"}):
            get_settings.cache_clear()
            self.assertEqual(get_recovery_code_max_attempts(), 1)


if __name__ == "__main__":
    unittest.main()

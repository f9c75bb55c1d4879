import unittest
from decimal import Decimal
from unittest.mock import patch

from ledger_backend.config import load_settings
from ledger_backend.errors import ValidationFailure


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with patch.dict("os.environ", {}, clear=True):
            settings = load_settings()

        self.assertEqual(settings.accounting_currency, "USD")
        self.assertEqual(settings.rate_cache_ttl_seconds, 3600)
        self.assertEqual(settings.rate_timeout_seconds, 5)
        self.assertEqual(settings.notification_cooldown_hours, 24)
        self.assertEqual(settings.anomaly_ratio, Decimal("1.5"))

    def test_reads_environment(self) -> None:
        env = {
            "ACCOUNTING_CURRENCY": " eur ",
            "RATE_CACHE_TTL_SECONDS": "60",
            "NOTIFICATION_COOLDOWN_HOURS": "2",
            "RATE_SOURCE_URL": "https://rates.test/",
            "LOG_LEVEL": "debug",
        }
        with patch.dict("os.environ", env, clear=True):
            settings = load_settings()

        self.assertEqual(settings.accounting_currency, "EUR")
        self.assertEqual(settings.rate_cache_ttl_seconds, 60)
        self.assertEqual(settings.notification_cooldown_hours, 2)
        self.assertEqual(settings.rate_source_url, "https://rates.test")
        self.assertEqual(settings.log_level, "DEBUG")

    def test_invalid_accounting_currency_falls_back_to_usd(self) -> None:
        with patch.dict("os.environ", {"ACCOUNTING_CURRENCY": "dollars"}, clear=True):
            self.assertEqual(load_settings().accounting_currency, "USD")
        with patch.dict("os.environ", {"ACCOUNTING_CURRENCY": "ZZZ"}, clear=True):
            self.assertEqual(load_settings().accounting_currency, "USD")

    def test_invalid_numbers_are_rejected(self) -> None:
        for name, value in (("RATE_TIMEOUT_SECONDS", "soon"), ("ANOMALY_RATIO", "0")):
            with self.subTest(name=name):
                with patch.dict("os.environ", {name: value}, clear=True):
                    with self.assertRaises(ValidationFailure):
                        load_settings()

    def test_rate_source_selection(self) -> None:
        with patch.dict("os.environ", {}, clear=True):
            self.assertEqual(load_settings().rate_source, "frankfurter")
        with patch.dict("os.environ", {"RATE_SOURCE": " Static "}, clear=True):
            self.assertEqual(load_settings().rate_source, "static")
        with patch.dict("os.environ", {"RATE_SOURCE": "ecb"}, clear=True):
            with self.assertRaises(ValidationFailure):
                load_settings()


if __name__ == "__main__":
    unittest.main()

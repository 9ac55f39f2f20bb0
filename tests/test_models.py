import unittest
from datetime import datetime, timedelta, timezone

from deck.models import (
    AccountSyncOutcome,
    AppConfig,
    Credentials,
    SyncConfig,
    parse_iso_datetime,
    serialize_datetime,
    sync_window,
)


class ModelsTests(unittest.TestCase):
    def test_parse_iso_datetime_variants(self) -> None:
        self.assertEqual(
            parse_iso_datetime("2024-01-10T09:00:00Z"),
            datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(
            parse_iso_datetime("2024-01-10T10:00:00+01:00"),
            datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(
            parse_iso_datetime("2024-01-10"),
            datetime(2024, 1, 10, 0, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(
            parse_iso_datetime("2024-01-10T09:00:00"),
            datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc),
        )
        self.assertIsNone(parse_iso_datetime(None))
        self.assertIsNone(parse_iso_datetime("  "))
        with self.assertRaises(ValueError):
            parse_iso_datetime("not a date")

    def test_serialize_datetime_normalizes_to_utc(self) -> None:
        value = datetime(2024, 1, 10, 10, 0, tzinfo=timezone(timedelta(hours=1)))
        self.assertEqual(serialize_datetime(value), "2024-01-10T09:00:00+00:00")
        self.assertIsNone(serialize_datetime(None))

    def test_sync_window_defaults_to_thirty_back_ninety_forward(self) -> None:
        now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        config = SyncConfig.from_dict({})
        start, end = sync_window(now, config.past_days, config.future_days)
        self.assertEqual(start, now - timedelta(days=30))
        self.assertEqual(end, now + timedelta(days=90))

    def test_sync_config_clamps_values(self) -> None:
        config = SyncConfig.from_dict({"interval_seconds": 5, "http_timeout_seconds": 0, "past_days": -3})
        self.assertEqual(config.interval_seconds, 30)
        self.assertEqual(config.http_timeout_seconds, 1)
        self.assertEqual(config.past_days, 0)

    def test_app_config_normalises_provider_sections(self) -> None:
        config = AppConfig.from_dict({"google": {"client_id": " id ", "client_secret": "secret"}})
        self.assertTrue(config.google.is_complete())
        self.assertEqual(config.google.client_id, "id")
        self.assertFalse(config.outlook.is_complete())

    def test_credentials_expiry_is_inclusive(self) -> None:
        expiry = datetime(2024, 1, 1, tzinfo=timezone.utc)
        credentials = Credentials(access_token="a", expires_at=expiry)
        self.assertTrue(credentials.is_expired(expiry))
        self.assertFalse(credentials.is_expired(expiry - timedelta(seconds=1)))
        self.assertFalse(Credentials(access_token="a").is_expired(expiry))

    def test_outcome_dict_has_count_or_error(self) -> None:
        ok = AccountSyncOutcome(provider="google", email="a@example.com", account_id=1, synced=3)
        failed = AccountSyncOutcome(provider="outlook", email="b@example.com", account_id=2, error="boom")
        self.assertEqual(ok.to_dict()["synced"], 3)
        self.assertNotIn("error", ok.to_dict())
        self.assertEqual(failed.to_dict()["error"], "boom")
        self.assertNotIn("synced", failed.to_dict())


if __name__ == "__main__":
    unittest.main()

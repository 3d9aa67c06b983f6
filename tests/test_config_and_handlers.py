import unittest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import patch

from safewatch import config
from safewatch.handlers import is_owner, live_period_over


def location_message(live_period=None, edited=True, sent_at=1000.0):
    return SimpleNamespace(
        location=SimpleNamespace(latitude=55.75, longitude=37.61, live_period=live_period),
        date=datetime.fromtimestamp(sent_at, timezone.utc),
        edit_date=datetime.fromtimestamp(sent_at + 5, timezone.utc) if edited else None,
    )


class ConfigParsersTests(unittest.TestCase):
    def test_parse_recipients_keeps_order_and_dedupes(self):
        raw = " +79991234567, tg:42,,+79991234567 "

        self.assertEqual(config._parse_recipients(raw), ["+79991234567", "tg:42"])

    def test_parse_chat_ids_skips_garbage(self):
        self.assertEqual(config._parse_chat_ids("5, abc, 0, 3, 5"), [3, 5])


class HandlerHelpersTests(unittest.TestCase):
    def test_live_period_over(self):
        self.assertFalse(live_period_over(location_message(live_period=900), now_ts=1500.0))
        self.assertTrue(live_period_over(location_message(live_period=900), now_ts=1900.0))
        # правка без live_period: трансляцию остановили
        self.assertTrue(live_period_over(location_message(live_period=None), now_ts=1010.0))
        self.assertFalse(live_period_over(location_message(live_period=None, edited=False), now_ts=1010.0))

    def test_is_owner(self):
        with patch.object(config, "OWNER_CHAT_IDS", []):
            self.assertTrue(is_owner(123))
        with patch.object(config, "OWNER_CHAT_IDS", [42]):
            self.assertTrue(is_owner(42))
            self.assertFalse(is_owner(123))

"""Tests for macstats.external_ip and macstats.database."""
import sqlite3
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx

from macstats.config import Config
from macstats.database import Database
from macstats.external_ip import ExternalIPPoller, parse_ip
from macstats.models import ExternalIPState

ENDPOINTS = ["https://a.test", "https://b.test", "https://c.test", "https://d.test"]
GEO = {"ip": "203.0.113.7", "country": "NL", "country_name": "Netherlands", "org": "AS1136 KPN B.V."}


class Router:
    """MockTransport handler that records every requested URL."""

    def __init__(self, ips=None, geo=None):
        self.requested = []
        self.ips = ips or {}
        self.geo = geo if geo is not None else GEO

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url).rstrip("/")
        self.requested.append(url)
        if request.url.host == "ipinfo.io":
            return httpx.Response(200, json=self.geo)
        result = self.ips.get(url)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, text=result + "\n")


def make_poller(router, config=None, notifier=None, database=None):
    config = config or Config(external_ip={"endpoints": ENDPOINTS})
    client = httpx.AsyncClient(transport=httpx.MockTransport(router))
    return ExternalIPPoller(config, notifier=notifier, database=database, client=client, scheduler=MagicMock())


class TestParseIP(unittest.TestCase):

    def test_valid(self):
        self.assertEqual(parse_ip(" 203.0.113.7\n"), "203.0.113.7")
        self.assertEqual(parse_ip("2001:db8::1"), "2001:db8::1")

    def test_invalid(self):
        self.assertIsNone(parse_ip("<html>rate limited</html>"))


class TestFetch(unittest.IsolatedAsyncioTestCase):

    async def test_falls_through_to_first_working_endpoint(self):
        router = Router(ips={
            "https://a.test": httpx.ConnectError("refused"),
            "https://b.test": None,
            "https://c.test": "93.184.216.34",
            "https://d.test": "198.51.100.1",
        })
        poller = make_poller(router)
        self.assertEqual(await poller.fetch_public_ip(), "93.184.216.34")
        self.assertEqual(router.requested, ["https://a.test", "https://b.test", "https://c.test"])
        await poller.close()

    async def test_timeout_moves_on(self):
        router = Router(ips={"https://a.test": httpx.ReadTimeout("slow"), "https://b.test": "203.0.113.7"})
        poller = make_poller(router)
        self.assertEqual(await poller.fetch_public_ip(), "203.0.113.7")
        await poller.close()

    async def test_invalid_body_moves_on(self):
        router = Router(ips={"https://a.test": "not an ip", "https://b.test": "203.0.113.7"})
        poller = make_poller(router)
        self.assertEqual(await poller.fetch_public_ip(), "203.0.113.7")
        await poller.close()

    async def test_geo(self):
        poller = make_poller(Router())
        self.assertEqual(
            await poller.resolve_geo("203.0.113.7"),
            ("NL", "Netherlands", "AS1136 KPN B.V."),
        )
        await poller.close()

    async def test_geo_country_name_defaults_to_code(self):
        poller = make_poller(Router(geo={"country": "DE"}))
        self.assertEqual(await poller.resolve_geo("203.0.113.7"), ("DE", "DE", ""))
        await poller.close()


class TestRefresh(unittest.IsolatedAsyncioTestCase):

    async def test_updates_state(self):
        poller = make_poller(Router(ips={"https://a.test": "203.0.113.7"}))
        self.assertTrue(await poller.refresh())
        state = poller.state
        self.assertEqual(state.external_ip, "203.0.113.7")
        self.assertEqual(state.country_code, "NL")
        self.assertEqual(state.isp_name, "AS1136 KPN B.V.")
        self.assertFalse(state.is_loading)
        self.assertIsNotNone(state.last_updated)
        await poller.close()

    async def test_all_endpoints_fail_keeps_cached_value(self):
        router = Router(ips={})
        poller = make_poller(router)
        poller._publish(external_ip="198.51.100.1", country_code="US")
        await poller.refresh()
        self.assertEqual(poller.state.external_ip, "198.51.100.1")
        self.assertFalse(poller.state.is_loading)
        self.assertEqual(len(router.requested), len(ENDPOINTS))
        await poller.close()

    async def test_skipped_while_loading(self):
        router = Router(ips={"https://a.test": "203.0.113.7"})
        poller = make_poller(router)
        poller._publish(is_loading=True)
        self.assertFalse(await poller.refresh())
        self.assertEqual(router.requested, [])
        await poller.close()

    async def test_change_notification_with_cooldown(self):
        router = Router(ips={"https://a.test": "203.0.113.7"})
        config = Config(
            external_ip={"endpoints": ENDPOINTS},
            notifications={"ip_change_enabled": True, "ip_change_cooldown_seconds": 300},
        )
        notifier = MagicMock()
        notifier.send_ip_change = AsyncMock(return_value=True)
        poller = make_poller(router, config=config, notifier=notifier)

        await poller.refresh()
        notifier.send_ip_change.assert_not_called()

        router.ips["https://a.test"] = "203.0.113.8"
        await poller.refresh()
        event = notifier.send_ip_change.call_args.args[0]
        self.assertEqual((event.old_ip, event.new_ip), ("203.0.113.7", "203.0.113.8"))

        router.ips["https://a.test"] = "203.0.113.9"
        await poller.refresh()
        self.assertEqual(notifier.send_ip_change.call_count, 1)
        await poller.close()

    async def test_no_notification_when_disabled(self):
        router = Router(ips={"https://a.test": "203.0.113.7"})
        notifier = MagicMock()
        notifier.send_ip_change = AsyncMock()
        poller = make_poller(router, notifier=notifier)
        await poller.refresh()
        router.ips["https://a.test"] = "203.0.113.8"
        await poller.refresh()
        notifier.send_ip_change.assert_not_called()
        await poller.close()

    async def test_cache_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            database = Database(str(Path(tmp) / "cache.db"))
            poller = make_poller(Router(ips={"https://a.test": "203.0.113.7"}), database=database)
            await poller.refresh()
            await poller.close()

            restored = make_poller(Router(), database=Database(str(Path(tmp) / "cache.db")))
            self.assertEqual(restored.state.external_ip, "203.0.113.7")
            self.assertEqual(restored.state.country_name, "Netherlands")
            self.assertIsNotNone(restored.state.last_updated)
            await restored.close()

    async def test_cache_write_failure_does_not_fail_refresh(self):
        database = MagicMock()
        database.load_external_ip.return_value = None
        database.store_external_ip.side_effect = sqlite3.OperationalError("database is locked")
        poller = make_poller(Router(ips={"https://a.test": "203.0.113.7"}), database=database)
        with self.assertLogs("macstats.external_ip", level="WARNING"):
            self.assertTrue(await poller.refresh())
        self.assertEqual(poller.state.external_ip, "203.0.113.7")
        self.assertFalse(poller.state.is_loading)
        await poller.close()

    async def test_set_interval_enforces_minimum(self):
        poller = make_poller(Router())
        self.assertEqual(poller.set_interval(1), 300)
        self.assertEqual(poller.set_interval(45), 2700)
        await poller.close()


class TestDatabase(unittest.TestCase):

    def test_empty_cache(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertIsNone(Database(str(Path(tmp) / "sub" / "cache.db")).load_external_ip())

    def test_overwrite(self):
        with tempfile.TemporaryDirectory() as tmp:
            database = Database(str(Path(tmp) / "cache.db"))
            database.store_external_ip(ExternalIPState(external_ip="1.1.1.1", last_updated=datetime(2024, 1, 1)))
            database.store_external_ip(ExternalIPState(external_ip="8.8.8.8"))
            state = database.load_external_ip()
            self.assertEqual(state.external_ip, "8.8.8.8")
            self.assertEqual(state.last_updated, datetime(2024, 1, 1))
            self.assertEqual(database.get("country_code"), "")


if __name__ == "__main__":
    unittest.main()

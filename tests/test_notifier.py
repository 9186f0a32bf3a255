"""Tests for macstats.notifier."""
import unittest
from datetime import datetime

import httpx

from macstats.config import NotificationConfig
from macstats.models import IPChangeEvent, UPSPowerChangeEvent
from macstats.notifier import Notifier, format_duration


class Recorder:
    def __init__(self, status=200):
        self.status = status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, text="ok")


def make_notifier(recorder, enabled=True):
    config = NotificationConfig(enabled=enabled, server_url="https://ntfy.example/", topic="desk")
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return Notifier(config, client=client)


class TestNotifier(unittest.IsolatedAsyncioTestCase):

    async def test_posts_to_topic(self):
        recorder = Recorder()
        notifier = make_notifier(recorder)
        self.assertTrue(await notifier.send_notification("Hello", "body", tags=["a", "b"]))
        request = recorder.requests[0]
        self.assertEqual(str(request.url), "https://ntfy.example/desk")
        self.assertEqual(request.headers["Title"], "Hello")
        self.assertEqual(request.headers["Priority"], "default")
        self.assertEqual(request.headers["Tags"], "a,b")
        self.assertEqual(request.content, b"body")
        await notifier.close()

    async def test_disabled_sends_nothing(self):
        recorder = Recorder()
        notifier = make_notifier(recorder, enabled=False)
        self.assertTrue(await notifier.send_notification("Hello", "body"))
        self.assertEqual(recorder.requests, [])
        await notifier.close()

    async def test_server_error(self):
        notifier = make_notifier(Recorder(status=500))
        self.assertFalse(await notifier.send_notification("Hello", "body"))
        await notifier.close()

    async def test_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("refused")

        config = NotificationConfig(enabled=True)
        notifier = Notifier(config, client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)))
        self.assertFalse(await notifier.send_notification("Hello", "body"))
        await notifier.close()

    async def test_ip_change(self):
        recorder = Recorder()
        notifier = make_notifier(recorder)
        event = IPChangeEvent(old_ip="203.0.113.7", new_ip="203.0.113.8", timestamp=datetime(2024, 5, 1, 12, 0))
        await notifier.send_ip_change(event)
        body = recorder.requests[0].content.decode()
        self.assertIn("203.0.113.7 -> 203.0.113.8", body)
        await notifier.close()

    async def test_ups_outage_is_high_priority(self):
        recorder = Recorder()
        notifier = make_notifier(recorder)
        event = UPSPowerChangeEvent(
            ups_name="Back-UPS", on_battery=True, charge_percent=90,
            time_remaining_minutes=25, timestamp=datetime.now(),
        )
        await notifier.send_ups_power_change(event)
        request = recorder.requests[0]
        self.assertEqual(request.headers["Title"], "Power Outage")
        self.assertEqual(request.headers["Priority"], "high")
        self.assertIn("25m 0s", request.content.decode())
        await notifier.close()

    async def test_ups_restored_reports_outage(self):
        recorder = Recorder()
        notifier = make_notifier(recorder)
        event = UPSPowerChangeEvent(
            ups_name="Back-UPS", on_battery=False, charge_percent=80,
            outage_seconds=3720, timestamp=datetime.now(),
        )
        await notifier.send_ups_power_change(event)
        self.assertIn("Outage lasted 1h 2m", recorder.requests[0].content.decode())
        await notifier.close()


class TestFormatDuration(unittest.TestCase):

    def test_formats(self):
        self.assertEqual(format_duration(45), "45s")
        self.assertEqual(format_duration(200), "3m 20s")
        self.assertEqual(format_duration(3900), "1h 5m")


if __name__ == "__main__":
    unittest.main()

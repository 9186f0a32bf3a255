"""Tests for macstats.server."""
import asyncio
import unittest
from unittest.mock import MagicMock

import httpx
from fastapi.testclient import TestClient
from helpers import FakeProbes, make_config

from macstats.external_ip import ExternalIPPoller
from macstats.monitor import SystemMonitor
from macstats.server import convert_temperature, create_app


def ip_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "ipinfo.io":
        return httpx.Response(200, json={"country": "SE", "country_name": "Sweden", "org": "AS3301 Telia"})
    return httpx.Response(200, text="192.0.2.44")


class TestAPI(unittest.TestCase):

    def setUp(self):
        self.config = make_config()
        self.config.display.temperature_unit = "fahrenheit"
        self.scheduler = MagicMock()
        self.monitor = SystemMonitor(self.config, probes=FakeProbes(), scheduler=self.scheduler)
        asyncio.run(self.monitor.run_fast_pass())
        self.poller = ExternalIPPoller(
            self.config,
            client=httpx.AsyncClient(transport=httpx.MockTransport(ip_handler)),
            scheduler=self.scheduler,
        )
        self.client = TestClient(create_app(self.config, self.monitor, self.poller))

    def tearDown(self):
        self.monitor.close()

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["status"], "healthy")
        self.assertTrue(data["initial_data_loaded"])

    def test_snapshot(self):
        data = self.client.get("/snapshot").json()
        self.assertTrue(data["initial_data_loaded"])
        self.assertEqual(data["cpu_temperature"]["celsius"], 45.0)
        self.assertEqual(data["display"]["temperature_unit"], "fahrenheit")
        self.assertEqual(data["display"]["cpu_temperature"], 113.0)
        self.assertEqual(len(data["top_memory_processes"]), 5)

    def test_histories(self):
        data = self.client.get("/histories").json()
        self.assertEqual(data["capacity"], 30)
        self.assertEqual(data["series"]["cpu_temp"], [45.0])
        self.assertEqual(data["summaries"]["cpu_temp"]["maximum"], 45.0)

    def test_interfaces_and_selection(self):
        data = self.client.get("/interfaces").json()
        self.assertEqual(data, {"interfaces": ["All", "en0"], "selected": "All"})

        response = self.client.put("/settings/interface", json={"name": "en0"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/interfaces").json()["selected"], "en0")

        response = self.client.put("/settings/interface", json={"name": "bond3"})
        self.assertEqual(response.status_code, 404)

    def test_intervals(self):
        response = self.client.put(
            "/settings/intervals",
            json={"fast_interval_seconds": 5, "ip_interval_minutes": 2},
        )
        self.assertEqual(response.status_code, 200)
        applied = response.json()["applied"]
        self.assertEqual(applied["fast_interval_seconds"], 5.0)
        self.assertEqual(applied["ip_effective_interval_seconds"], 300)

    def test_intervals_validated(self):
        response = self.client.put("/settings/intervals", json={"fast_interval_seconds": 0.01})
        self.assertEqual(response.status_code, 422)

    def test_external_ip_refresh(self):
        self.assertEqual(self.client.get("/external-ip").json()["external_ip"], "")
        data = self.client.post("/external-ip/refresh").json()
        self.assertEqual(data["status"], "refreshed")
        self.assertEqual(data["state"]["external_ip"], "192.0.2.44")
        self.assertEqual(data["state"]["country_name"], "Sweden")
        self.assertEqual(self.client.get("/external-ip").json()["isp_name"], "AS3301 Telia")

    def test_uninitialised_monitor(self):
        client = TestClient(create_app(self.config))
        self.assertEqual(client.get("/snapshot").status_code, 503)
        self.assertEqual(client.get("/external-ip").status_code, 503)


class TestConvertTemperature(unittest.TestCase):

    def test_units(self):
        self.assertEqual(convert_temperature(100, "fahrenheit"), 212.0)
        self.assertEqual(convert_temperature(36.66, "celsius"), 36.7)


if __name__ == "__main__":
    unittest.main()

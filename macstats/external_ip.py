"""Public IP address polling with geolocation and change notifications."""
import ipaddress
import logging
import sqlite3
import threading
import time
from datetime import datetime
from typing import Optional

import httpx

from .config import MIN_IP_INTERVAL_MINUTES, Config
from .database import Database
from .models import ExternalIPState, IPChangeEvent
from .notifier import Notifier
from .scheduler import SamplingScheduler

logger = logging.getLogger(__name__)

IP_CADENCE = "external_ip"


def parse_ip(text: str) -> Optional[str]:
    """The address in an endpoint's plain-text body, or None if it is not one."""
    candidate = text.strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


class ExternalIPPoller:
    """
    Periodically looks up the public address and where it is registered.

    Owns the previous address and the notification cooldown; a failed lookup
    keeps the last known values.
    """

    def __init__(
        self,
        config: Config,
        notifier: Optional[Notifier] = None,
        database: Optional[Database] = None,
        client: Optional[httpx.AsyncClient] = None,
        scheduler: Optional[SamplingScheduler] = None,
    ):
        self.config = config
        self.notifier = notifier
        self.database = database
        self.scheduler = scheduler or SamplingScheduler()
        self._client = client
        self._lock = threading.Lock()
        self._state = ExternalIPState()
        self._last_notification: Optional[float] = None
        self._interval_seconds = config.external_ip.effective_interval_seconds

        if database is not None:
            cached = database.load_external_ip()
            if cached is not None:
                self._state = cached
                logger.info(f"Loaded cached external IP {cached.external_ip}")
        self._previous_ip = self._state.external_ip

    @property
    def state(self) -> ExternalIPState:
        with self._lock:
            return self._state

    def _publish(self, **changes) -> None:
        with self._lock:
            self._state = self._state.model_copy(update=changes)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.external_ip.timeout_seconds)
        return self._client

    async def fetch_public_ip(self) -> Optional[str]:
        """First address returned by the configured endpoints, tried in order."""
        client = await self._get_client()
        for url in self.config.external_ip.endpoints:
            try:
                response = await client.get(url)
            except httpx.TimeoutException:
                logger.warning(f"Timeout fetching IP from {url}")
                continue
            except httpx.HTTPError as e:
                logger.warning(f"Failed to fetch IP from {url}: {e}")
                continue

            if response.status_code != 200:
                logger.warning(f"{url} returned {response.status_code}")
                continue
            ip = parse_ip(response.text)
            if ip is None:
                logger.warning(f"{url} returned an invalid address")
                continue
            return ip
        return None

    async def resolve_geo(self, ip: str) -> tuple[str, str, str]:
        """(country code, country name, ISP); empty strings when unknown."""
        url = self.config.external_ip.geo_url.format(ip=ip)
        try:
            client = await self._get_client()
            response = await client.get(url)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.warning(f"Geolocation lookup failed for {ip}: {e}")
            return "", "", ""
        except ValueError as e:
            logger.warning(f"Malformed geolocation response for {ip}: {e}")
            return "", "", ""

        if not isinstance(data, dict):
            return "", "", ""
        country = data.get("country") or ""
        return country, data.get("country_name") or country, data.get("org") or ""

    async def refresh(self) -> bool:
        """
        Look up the public address now.

        Returns False without doing anything while a lookup is already running.
        """
        if self.state.is_loading:
            logger.debug("External IP lookup already in progress")
            return False
        self._publish(is_loading=True)
        try:
            ip = await self.fetch_public_ip()
            if ip is None:
                logger.warning("All external IP endpoints failed, keeping cached value")
                return True

            country_code, country_name, isp = await self.resolve_geo(ip)
            now = datetime.now()
            self._publish(
                external_ip=ip,
                country_code=country_code,
                country_name=country_name,
                isp_name=isp,
                last_updated=now,
            )

            previous, self._previous_ip = self._previous_ip, ip
            if previous and previous != ip:
                logger.info(f"External IP changed: {previous} -> {ip}")
                await self._notify_change(IPChangeEvent(old_ip=previous, new_ip=ip, timestamp=now))

            if self.database is not None:
                try:
                    self.database.store_external_ip(self.state)
                except sqlite3.Error as e:
                    logger.warning(f"Could not cache external IP: {e}")
            return True
        finally:
            self._publish(is_loading=False)

    async def _notify_change(self, event: IPChangeEvent) -> None:
        settings = self.config.notifications
        if self.notifier is None or not settings.ip_change_enabled:
            return
        now = time.monotonic()
        if self._last_notification is not None and now - self._last_notification < settings.ip_change_cooldown_seconds:
            logger.info("IP change notification suppressed by cooldown")
            return
        self._last_notification = now
        await self.notifier.send_ip_change(event)

    # --- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if not self.config.external_ip.enabled:
            logger.info("External IP polling disabled")
            return
        self.scheduler.add_cadence(IP_CADENCE, self.refresh, self._interval_seconds)
        self.scheduler.start(IP_CADENCE)

    def stop(self) -> None:
        self.scheduler.stop(IP_CADENCE)

    def set_interval(self, minutes: float) -> float:
        """Apply a new polling interval; returns the effective value in seconds."""
        self._interval_seconds = max(MIN_IP_INTERVAL_MINUTES, minutes) * 60
        if self.scheduler.is_running(IP_CADENCE):
            self.scheduler.reschedule(IP_CADENCE, self._interval_seconds)
        return self._interval_seconds

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

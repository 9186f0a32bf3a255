"""Alerts published to an ntfy topic."""
import logging
from typing import Optional

import httpx

from .config import NotificationConfig
from .models import IPChangeEvent, UPSPowerChangeEvent

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    """'1h 5m', '3m 20s' or '45s'."""
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class Notifier:
    """Publishes alerts to an ntfy topic."""

    def __init__(self, config: NotificationConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.topic_url = f"{config.server_url.rstrip('/')}/{config.topic}"
        self._client = client

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    def _headers(self, title: str, priority: Optional[str], tags: Optional[list[str]]) -> dict[str, str]:
        headers = {"Title": title, "Priority": priority or self.config.priority}
        if tags:
            headers["Tags"] = ",".join(tags)
        return headers

    async def send_notification(
        self,
        title: str,
        message: str,
        priority: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> bool:
        """
        Post one message to the topic.

        Returns False when the server rejects it or cannot be reached. A disabled
        notifier reports success without sending anything.
        """
        if not self.enabled:
            logger.debug(f"Notifications off, dropping '{title}'")
            return True

        client = await self._get_client()
        try:
            response = await client.post(
                self.topic_url,
                content=message.encode("utf-8"),
                headers=self._headers(title, priority, tags),
            )
        except httpx.ConnectError as e:
            logger.error(f"ntfy server unreachable at {self.config.server_url}: {e}")
            return False
        except httpx.TimeoutException:
            logger.error(f"ntfy request timed out after {self.config.timeout_seconds}s")
            return False
        except httpx.HTTPError as e:
            logger.error(f"ntfy request failed: {e}")
            return False

        if not response.is_success:
            logger.error(f"ntfy rejected '{title}': {response.status_code} {response.text}")
            return False
        logger.info(f"Sent '{title}' to {self.config.topic}")
        return True

    async def send_ip_change(self, event: IPChangeEvent) -> bool:
        old = event.old_ip or "unknown"
        return await self.send_notification(
            title="External IP Changed",
            message=f"{old} -> {event.new_ip}\nat {event.timestamp:%Y-%m-%d %H:%M:%S}",
            tags=["globe_with_meridians"],
        )

    async def send_ups_power_change(self, event: UPSPowerChangeEvent) -> bool:
        """Outages go out at high priority; restores report how long the outage lasted."""
        if event.on_battery:
            lines = [f"{event.ups_name} is running on battery", f"Charge: {event.charge_percent:.0f}%"]
            if event.time_remaining_minutes is not None:
                lines.append(f"Time remaining: {format_duration(event.time_remaining_minutes * 60)}")
            return await self.send_notification(
                "Power Outage", "\n".join(lines), priority="high", tags=["warning", "electric_plug"]
            )

        lines = [f"{event.ups_name} is back on AC power", f"Charge: {event.charge_percent:.0f}%"]
        if event.outage_seconds is not None:
            lines.append(f"Outage lasted {format_duration(event.outage_seconds)}")
        return await self.send_notification(
            "Power Restored", "\n".join(lines), tags=["white_check_mark", "electric_plug"]
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

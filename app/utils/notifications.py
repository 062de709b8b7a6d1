import asyncio
import aiohttp
import logging
from typing import Any, Dict, Optional
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class OperationsWebhook:
    """
    Relays operations-room events (bus locations, speed violations,
    geofence alerts) to an external operations system over HTTP.
    Delivery is best-effort: failures are logged and never raised.
    """

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout_seconds: float = 5.0,
        events: Optional[set] = None
    ):
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds
        # Location updates are too chatty for most operations systems
        self.events = events or {"speed_violation", "geofence_alert"}

    @classmethod
    def from_settings(cls, config) -> Optional["OperationsWebhook"]:
        if not config.OPS_WEBHOOK_URL:
            return None
        return cls(
            config.OPS_WEBHOOK_URL,
            token=config.OPS_WEBHOOK_TOKEN,
            timeout_seconds=config.OPS_WEBHOOK_TIMEOUT_SECONDS
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json"
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def relay(self, event: str, data: Dict[str, Any]) -> bool:
        """Send one event to the operations webhook"""
        if event not in self.events:
            return False

        payload = {
            "event": event,
            "data": data,
            "sent_at": datetime.now(timezone.utc).isoformat()
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.url,
                    json=payload,
                    headers=self._headers(),
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
                ) as response:
                    if response.status >= 400:
                        response_text = await response.text()
                        logger.error(f"Operations webhook error: {response.status} - {response_text}")
                        return False
                    return True

        except asyncio.TimeoutError:
            logger.error(f"Operations webhook timeout for {event}")
            return False
        except aiohttp.ClientError as e:
            logger.error(f"Operations webhook request error for {event}: {e}")
            return False

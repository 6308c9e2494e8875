import asyncio
import logging
from typing import Optional

import httpx

from .models import FraudAlert

logger = logging.getLogger(__name__)

# ======================================================================
# NON-BLOCKING ALERT WEBHOOK WITH RETRY
# ----------------------------------------------------------------------
# New fraud alerts are forwarded to the admin/notification tooling.
# The engine runs synchronously inside the game loop, so delivery must
# never hold up question delivery:
# 1. AlertDispatcher schedules send_alert_with_retry() as a background
#    task on the running event loop and returns immediately.
# 2. Up to 3 attempts with exponential backoff (2s, 4s, 8s).
# 3. With no running loop or no configured URL, the alert is only logged.
# ======================================================================


async def send_alert(alert: FraudAlert, url: str,
                     transport: Optional[httpx.AsyncBaseTransport] = None) -> bool:
    """
    Single-shot POST of the alert to the webhook.
    Returns True on HTTP 200, False otherwise.
    """
    async with httpx.AsyncClient(transport=transport) as client:
        try:
            response = await client.post(
                url,
                json=alert.model_dump(mode="json"),
                headers={"Content-Type": "application/json"},
                timeout=10.0,
            )
            logger.info(f"Alert webhook response: status={response.status_code}")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.error(f"Alert webhook failed: {e}")
            return False


async def send_alert_with_retry(
    alert: FraudAlert,
    url: str,
    max_retries: int = 3,
    base_delay: float = 2.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    for attempt in range(1, max_retries + 1):
        if await send_alert(alert, url, transport=transport):
            logger.info(f"✅ Alert #{alert.id} delivered on attempt {attempt}")
            return True

        if attempt < max_retries:
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(f"⚠️ Alert #{alert.id} attempt {attempt} failed, retrying in {delay}s...")
            await asyncio.sleep(delay)

    logger.error(f"❌ Alert #{alert.id} not delivered after {max_retries} attempts")
    return False


class AlertDispatcher:
    """AlertBook listener that forwards alerts in the background."""

    def __init__(self, url: Optional[str], transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.transport = transport
        self.pending = set()

    def __call__(self, alert: FraudAlert):
        if not self.url:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.info(f"No event loop; alert #{alert.id} kept for polling only")
            return
        task = loop.create_task(send_alert_with_retry(alert, self.url, transport=self.transport))
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)
        logger.info(f"🚀 Alert #{alert.id} dispatched (non-blocking)")

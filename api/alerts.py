import logging
import time
from typing import Dict, Optional

import aiohttp

from config import config


logger = logging.getLogger(__name__)


class AlertWebhook:
    def __init__(self, url: Optional[str] = None):
        url = url if url is not None else config.monitoring.get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Optional[Dict] = None):
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return

        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {}
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status != 200:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
        except Exception as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def order_rejected_alert(self, ticker: str, side: str, code: Optional[str], reason: str):
        await self.send_alert(
            'order_rejected',
            f'{side} order for {ticker} rejected: {reason}',
            'warning',
            {'ticker': ticker, 'side': side, 'code': code}
        )

    async def reconcile_alert(self, ticker: str, error: str):
        await self.send_alert(
            'reconcile_failed',
            f'Position re-fetch failed after {ticker} order; stored state may be stale',
            'critical',
            {'ticker': ticker, 'error': error}
        )

    async def metadata_alert(self, missing: int):
        await self.send_alert(
            'metadata_incomplete',
            f'{missing} instrument(s) fell back to default lot sizes',
            'warning',
            {'missing': missing}
        )


alert_webhook = AlertWebhook()

import logging
import time
from typing import Dict, Optional

import aiohttp

from config import config
from config.utils import as_secret


logger = logging.getLogger(__name__)


class AlertWebhook:
    def __init__(self, url: Optional[str] = None):
        monitoring = config.get('monitoring') or {}
        url = url or as_secret(monitoring.get('alert_webhook'))
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
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as response:
                    if response.status != 200:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
        except Exception as e:
            logger.error("[Alert] Webhook error: %s", e)

    async def order_failure_alert(self, exchange: str, symbol: str, side: str, reason: str):
        await self.send_alert(
            'order_failure',
            f'{exchange} {side} order for {symbol} failed: {reason}',
            'critical',
            {'exchange': exchange, 'symbol': symbol, 'side': side, 'reason': reason}
        )

    async def persistence_alert(self, exchange: str, order_id: str, symbol: str):
        await self.send_alert(
            'persistence',
            f'Executed {exchange} order {order_id} ({symbol}) was not persisted',
            'warning',
            {'exchange': exchange, 'order_id': order_id, 'symbol': symbol}
        )

    async def order_alert(self, exchange: str, symbol: str, side: str, quantity: float, price: Optional[float]):
        await self.send_alert(
            'order',
            f'{exchange}: {side} {quantity} {symbol} at {price}',
            'info',
            {'exchange': exchange, 'symbol': symbol, 'side': side, 'quantity': quantity, 'price': price}
        )

alert_webhook = AlertWebhook()

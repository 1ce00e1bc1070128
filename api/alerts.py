import asyncio
import logging
import time
from typing import Any, Dict, Mapping, Optional, Set

import aiohttp

from config import config
from orchestration.events import EventKind, Severity, TraderEvent


logger = logging.getLogger(__name__)


def _usable_url(url: Optional[str]) -> Optional[str]:
    # Treat empty, placeholder or unexpanded ${VAR} URLs as disabled
    if not url:
        return None
    text = str(url)
    if text.startswith('${') or 'your-webhook-url' in text:
        return None
    return text


class AlertWebhook:
    """Notification sink posting trader events to a JSON webhook.

    ``notify`` never raises and never blocks the caller: delivery runs as a
    background task and failures are only logged.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        min_severity: Any = None,
        timeout_s: float = 5.0,
    ):
        monitoring = config.section('monitoring')
        self.webhook_url = _usable_url(webhook_url if webhook_url is not None else monitoring.get('alert_webhook'))
        self.enabled = self.webhook_url is not None
        self.min_severity = Severity.parse(min_severity or monitoring.get('alert_min_severity', 'warning'))
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._pending: Set[asyncio.Task] = set()

    def notify(self, event: TraderEvent) -> None:
        if event.severity < self.min_severity and event.kind is not EventKind.TRADE:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("[Alert] %s %s: %s (no event loop)", event.severity.name, event.symbol, event.message)
            return
        task = loop.create_task(
            self.send_alert(event.kind.value, event.message, event.severity.name.lower(), {'symbol': event.symbol, **dict(event.data)})
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Optional[Mapping[str, Any]] = None) -> bool:
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return False

        payload: Dict[str, Any] = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': dict(metadata or {}),
        }

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
                        return False
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[Alert] Webhook error: %s", e)
            return False

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

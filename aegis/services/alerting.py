"""
Threshold alerting for recorded security events.

Alerts are queued from the request path and delivered by a background worker:
always logged, and POSTed to an optional signed webhook.
"""

import asyncio
import hashlib
import hmac
import json
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

import httpx
from loguru import logger

from aegis.services.security_events import (
    EventType,
    SEVERITY_LOG_LEVELS,
    SecurityEvent,
    SecurityLevel,
)


class AlertDispatcher:
    """Decides which events warrant an alert and delivers them off the request path."""

    def __init__(
        self,
        critical_threshold: int = 1,
        high_threshold: int = 5,
        hourly_limit: int = 50,
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        queue_size: int = 1000,
        history_size: int = 100,
    ):
        self.critical_threshold = critical_threshold
        self.high_threshold = high_threshold
        self.hourly_limit = hourly_limit
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self.failed_deliveries = 0
        self._worker: Optional[asyncio.Task] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def should_alert(self, event: SecurityEvent, hourly_count: int) -> bool:
        if event.severity is SecurityLevel.CRITICAL:
            return event.count >= self.critical_threshold
        if event.severity is SecurityLevel.HIGH:
            return event.count >= self.high_threshold
        # Volume alerts only apply to application errors
        if event.type is EventType.APPLICATION_ERROR:
            return hourly_count >= self.hourly_limit
        return False

    def evaluate(self, event: SecurityEvent, hourly_count: int) -> bool:
        """Queue an alert for ``event`` once; returns True when one was queued."""
        if event.alert_sent or not self.should_alert(event, hourly_count):
            return False

        event.alert_sent = True
        alert = {
            "alert": "security_event",
            "reason": self._reason(event, hourly_count),
            "raisedAt": datetime.now(timezone.utc).isoformat(),
            "event": event.to_dict(),
        }
        try:
            self.queue.put_nowait(alert)
        except asyncio.QueueFull:
            logger.error(f"Alert queue full, dropping alert for event {event.id}")
            event.alert_sent = False
            return False
        return True

    def _reason(self, event: SecurityEvent, hourly_count: int) -> str:
        if event.severity is SecurityLevel.CRITICAL:
            return f"critical event seen {event.count} time(s)"
        if event.severity is SecurityLevel.HIGH:
            return f"high severity event seen {event.count} time(s)"
        return f"{hourly_count} events in the current hour"

    async def start(self):
        if self._worker is not None and not self._worker.done():
            return
        self._worker = asyncio.create_task(self._delivery_worker(), name="aegis:alerts")
        logger.info("Alert dispatcher started")

    async def stop(self):
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.process_pending()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Alert dispatcher stopped")

    async def process_pending(self) -> int:
        """Deliver everything currently queued; returns the number processed."""
        processed = 0
        while not self.queue.empty():
            alert = self.queue.get_nowait()
            try:
                await self.deliver(alert)
            finally:
                self.queue.task_done()
            processed += 1
        return processed

    async def _delivery_worker(self):
        while True:
            alert = await self.queue.get()
            try:
                await self.deliver(alert)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in alert delivery worker: {e}")
            finally:
                self.queue.task_done()

    async def deliver(self, alert: Dict[str, Any]) -> bool:
        event = alert["event"]
        level = SEVERITY_LOG_LEVELS.get(SecurityLevel(event["severity"]), "ERROR")
        logger.log(
            level,
            f"Security alert: {event['type']} from {event['ip']} "
            f"(id={event['id']}, count={event['count']}, reason={alert['reason']})"
        )
        self.history.append(alert)

        if not self.webhook_url:
            return True
        return await self._post_webhook(alert)

    async def _post_webhook(self, alert: Dict[str, Any]) -> bool:
        payload = json.dumps(alert, separators=(",", ":"), default=str)
        headers = {"Content-Type": "application/json", "User-Agent": "Aegis-Alerts/1.0"}
        if self.webhook_secret:
            headers["X-Aegis-Signature"] = f"sha256={self._generate_signature(payload, self.webhook_secret)}"

        try:
            response = await self.client.post(
                self.webhook_url,
                content=payload.encode(),
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            self.failed_deliveries += 1
            logger.error(f"Alert webhook timeout: {self.webhook_url}")
            return False
        except httpx.RequestError as e:
            self.failed_deliveries += 1
            logger.error(f"Alert webhook request error: {e}")
            return False

        if not 200 <= response.status_code < 300:
            self.failed_deliveries += 1
            logger.error(f"Alert webhook rejected delivery: {response.status_code} - {response.text[:200]}")
            return False
        return True

    @staticmethod
    def _generate_signature(payload: str, secret: str) -> str:
        """Generate HMAC signature for webhook payload."""
        return hmac.new(
            secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

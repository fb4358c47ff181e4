"""
In-process notification hub.

Carries post-processing notifications (``audit.record.created``,
``audit.critical.event``, ``audit.lgpd.event``), operator alerts
(``audit.deadletter.alert``) and health events. Subscriber failures are
logged and never reach the publisher. An optional webhook sink delivers
selected topics to an external endpoint over aiohttp.
"""

import asyncio
import inspect
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, Union

import aiohttp
import structlog

logger = structlog.get_logger(__name__)

RECORD_CREATED = "audit.record.created"
CRITICAL_EVENT = "audit.critical.event"
LGPD_EVENT = "audit.lgpd.event"
DEAD_LETTER_ALERT = "audit.deadletter.alert"
HEALTH_CHECKED = "audit.health.checked"
HEALTH_CRITICAL = "audit.health.critical"

Handler = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]


class Notifier:
    """Topic publisher with sync or async subscribers."""

    def __init__(self, history_size: int = 200) -> None:
        self._subscribers: Dict[str, List[Handler]] = {}
        self.history: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=history_size)

    def subscribe(self, topic: str, handler: Handler) -> None:
        """Subscribe to a topic; ``*`` receives every topic."""
        self._subscribers.setdefault(topic, []).append(handler)

    async def publish(self, topic: str, payload: Dict[str, Any]) -> int:
        """
        Deliver ``payload`` to every subscriber of ``topic``.

        Returns:
            Number of handlers that completed without error
        """
        self.history.append((topic, payload))
        handlers = self._subscribers.get(topic, []) + self._subscribers.get("*", [])
        delivered = 0
        for handler in handlers:
            try:
                result = handler(topic, payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(
                    "Notification handler failed",
                    topic=topic,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )
        return delivered

    def published(self, topic: str) -> List[Dict[str, Any]]:
        """Payloads published on ``topic`` that are still in history."""
        return [payload for t, payload in self.history if t == topic]


class WebhookSink:
    """
    Posts notifications to an operator webhook.

    Handles:
    - Session lifecycle (start/stop)
    - JSON delivery with a bounded timeout
    - Logging of non-2xx responses
    """

    def __init__(self, url: str, timeout_seconds: int = 10) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
            logger.info("Webhook sink started", url=self.url)

    async def stop(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("Webhook sink stopped")

    async def __call__(self, topic: str, payload: Dict[str, Any]) -> None:
        if not self.session:
            logger.warning("Webhook sink not started, dropping notification", topic=topic)
            return

        headers = {
            "Content-Type": "application/json",
            "User-Agent": "auditpipe-notifier/1.0",
        }
        try:
            async with self.session.post(
                self.url,
                json={"topic": topic, "payload": payload},
                headers=headers,
            ) as response:
                if response.status >= 300:
                    error_text = await response.text()
                    logger.error(
                        "Webhook returned error",
                        topic=topic,
                        status=response.status,
                        error=error_text,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Webhook delivery failed", topic=topic, error=str(e))

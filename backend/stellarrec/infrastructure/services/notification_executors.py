"""
Notification Action Executors

Transports for the email, webhook and push actions a rule can carry.
Mail delivery itself is external; the default email sender only logs.
Push notifications fan out in-process and are streamed to operators over
Server-Sent Events.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Set

import httpx

from stellarrec.infrastructure.exceptions import NotificationActionError


logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send(self, recipients: List[str], template: str, data: Dict[str, Any]) -> None:
        ...


class WebhookCaller(Protocol):
    async def call(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
    ) -> None:
        ...


class PushPublisher(Protocol):
    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


# =============================================================================
# Email
# =============================================================================

class LoggingEmailSender:
    """Email sender that records the message in the application log."""

    def __init__(self, subject_prefix: str = "[StellarRec Alert]"):
        self._subject_prefix = subject_prefix

    async def send(self, recipients: List[str], template: str, data: Dict[str, Any]) -> None:
        subject = f"{self._subject_prefix} {data.get('title', 'Notification')}"
        logger.info(
            f"[RULES] Email '{template}' to {', '.join(recipients)}: {subject}"
        )


# =============================================================================
# Webhook
# =============================================================================

class HttpxWebhookCaller:
    """Webhook caller over a shared httpx.AsyncClient."""

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout_seconds

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def call(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
    ) -> None:
        """Send the event payload; any non-2xx response raises."""
        try:
            response = await self._get_client().request(
                method,
                url,
                headers={"Content-Type": "application/json", **headers},
                content=json.dumps(body, default=str),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationActionError(
                f"Webhook {method} {url} failed: {e}",
                action="webhook",
                original_error=e,
            ) from e

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# =============================================================================
# Push (in-process broadcast)
# =============================================================================

class BroadcastHub:
    """
    In-process pub/sub with one bounded queue per subscriber.

    A slow subscriber loses its oldest messages rather than blocking the
    publisher.
    """

    def __init__(self, max_queue_size: int = 100):
        self._max_queue_size = max_queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(topic, ())):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(payload)
        logger.debug(f"[RULES] Published to '{topic}' ({self.subscriber_count(topic)} subscribers)")

    def subscribe(self, topic: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(topic, set()).add(queue)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(topic)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[topic]

    async def stream(self, topic: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield messages published to ``topic`` until the consumer stops."""
        queue = self.subscribe(topic)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(topic, queue)

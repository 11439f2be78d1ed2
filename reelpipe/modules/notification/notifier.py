"""Completion events for processed media.

A notifier tells the rest of the product that an asset finished processing.
Delivery problems are logged and never affect the run that emitted the event.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Optional

from redis.exceptions import RedisError

from reelpipe.core.config import settings
from reelpipe.core.logging import log_error, log_info

logger = logging.getLogger(__name__)


@dataclass
class CompletionEvent:
    """``{assetId, status, message}`` sent when a run ends."""
    asset_id: uuid.UUID
    status: str
    message: str

    def to_payload(self) -> dict:
        data = asdict(self)
        return {
            "assetId": str(data["asset_id"]),
            "status": data["status"],
            "message": data["message"],
        }


class CompletionNotifier(ABC):
    """Base class for completion event delivery."""

    channel_name: str = "base"

    @abstractmethod
    async def deliver(self, event: CompletionEvent) -> None:
        """Send ``event``. May raise on delivery failure."""
        pass

    async def notify(self, event: CompletionEvent) -> bool:
        """Send ``event``, logging instead of raising on failure.

        Returns:
            True if the event was delivered
        """
        try:
            await self.deliver(event)
            return True
        except Exception as e:
            log_error(
                logger,
                f"Failed to deliver completion event via {self.channel_name}",
                exception=e,
                asset_id=str(event.asset_id),
                event_status=event.status,
            )
            return False


class LoggingNotifier(CompletionNotifier):
    """Writes completion events to the application log."""

    channel_name = "log"

    async def deliver(self, event: CompletionEvent) -> None:
        log_info(
            logger,
            f"Asset {event.asset_id} finished processing: {event.status}",
            asset_id=str(event.asset_id),
            event_status=event.status,
            event_message=event.message,
        )


class RedisNotifier(CompletionNotifier):
    """Publishes completion events as JSON on a Redis pub/sub channel."""

    channel_name = "redis"

    def __init__(self, client=None, channel: Optional[str] = None):
        self._client = client
        self.channel = channel or settings.NOTIFICATION_CHANNEL

    @property
    def client(self):
        if self._client is None:
            from reelpipe.core.redis import get_redis

            self._client = get_redis()
        return self._client

    async def deliver(self, event: CompletionEvent) -> None:
        try:
            await self.client.publish(self.channel, json.dumps(event.to_payload()))
        except RedisError as e:
            raise ConnectionError(f"Redis publish to {self.channel} failed: {e}") from e


def get_notifier(backend: Optional[str] = None, client=None) -> CompletionNotifier:
    """Notifier selected by ``NOTIFIER_BACKEND``.

    ``client`` replaces the shared Redis client for the redis backend.
    """
    backend = (backend or settings.NOTIFIER_BACKEND).lower()
    if backend == "redis":
        return RedisNotifier(client=client)
    if backend == "log":
        return LoggingNotifier()
    raise ValueError(f"Unknown notifier backend: {backend}")

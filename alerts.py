"""Best-effort, in-process fan-out of over-budget alerts to live subscribers.

The registry only tracks which channels are currently connected for an owner;
connection lifecycle belongs to whoever registers the channel (the websocket
endpoint in ``main``). Nothing here is persisted or retried.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional, Protocol, Sequence

from config import get_settings
from money import from_cents
from schemas import AlertEventOut, AlertOut


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    category: str
    spent_cents: int
    limit_cents: int

    def to_schema(self) -> AlertOut:
        return AlertOut(
            category=self.category,
            spent=from_cents(self.spent_cents),
            limit=from_cents(self.limit_cents),
        )


class Channel(Protocol):
    def send(self, payload: dict[str, object]) -> None: ...


class QueueChannel:
    """Channel backed by a bounded asyncio queue owned by one event loop.

    ``send`` may be called from any thread and never blocks; when the
    subscriber falls behind and the queue is full the event is dropped.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        maxsize: Optional[int] = None,
    ) -> None:
        if maxsize is None:
            maxsize = get_settings().alert_queue_size
        self.loop = loop
        self.queue: asyncio.Queue[dict[str, object]] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def send(self, payload: dict[str, object]) -> None:
        self.loop.call_soon_threadsafe(self._put, payload)

    def _put(self, payload: dict[str, object]) -> None:
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"alert_dropped: reason=queue_full dropped={self.dropped}")

    async def receive(self) -> dict[str, object]:
        return await self.queue.get()


class ChannelRegistry:
    def __init__(self) -> None:
        self._channels: dict[int, set[Channel]] = {}
        self._lock = threading.Lock()

    def register(self, user_id: int, channel: Channel) -> None:
        with self._lock:
            self._channels.setdefault(user_id, set()).add(channel)
        logger.info(f"channel_registered: user_id={user_id}")

    def unregister(self, user_id: int, channel: Channel) -> None:
        with self._lock:
            channels = self._channels.get(user_id)
            if not channels:
                return
            channels.discard(channel)
            if not channels:
                del self._channels[user_id]
        logger.info(f"channel_unregistered: user_id={user_id}")

    def channels_for(self, user_id: int) -> list[Channel]:
        with self._lock:
            return list(self._channels.get(user_id, ()))

    def connected_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._channels.get(user_id, ()))


class AlertPublisher:
    def __init__(self, registry: Optional[ChannelRegistry] = None) -> None:
        self.registry = registry or ChannelRegistry()

    @staticmethod
    def build_event(
        alerts: Sequence[Alert], created_at: Optional[datetime] = None
    ) -> dict[str, object]:
        event = AlertEventOut(
            alerts=[alert.to_schema() for alert in alerts],
            created_at=created_at or datetime.now(timezone.utc),
        )
        return event.model_dump(mode="json")

    def publish(self, user_id: int, alerts: Sequence[Alert]) -> int:
        """Send one event with ``alerts`` to every live channel of ``user_id``.

        Returns the number of channels the event was handed to. Missing
        subscribers and failing channels are never reported to the caller.
        """
        if not alerts:
            return 0
        channels = self.registry.channels_for(user_id)
        if not channels:
            logger.info(
                f"alert_publish: user_id={user_id} alerts={len(alerts)} channels=0"
            )
            return 0

        payload = self.build_event(alerts)
        delivered = 0
        for channel in channels:
            try:
                channel.send(payload)
                delivered += 1
            except Exception:
                logger.warning(
                    f"alert_publish_failed: user_id={user_id}", exc_info=True
                )
        logger.info(
            f"alert_publish: user_id={user_id} alerts={len(alerts)} "
            f"channels={len(channels)} delivered={delivered}"
        )
        return delivered


@lru_cache(maxsize=1)
def get_alert_publisher() -> AlertPublisher:
    return AlertPublisher(ChannelRegistry())

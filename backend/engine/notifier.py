"""
Snapshot commit notifications.

The orchestrator publishes a SnapshotCommitted event after the snapshot
pointer swap is durable. In-process subscribers (the query service cache)
are called directly. With `snapshot_publish_redis` enabled the event is
also pushed to Redis pub/sub on `snapshots:{tenant_id}` for external
consumers. API processes do not subscribe: a query service whose
orchestrator runs elsewhere evicts superseded summaries itself when it
resolves a newer snapshot pointer.
"""

import inspect
import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Awaitable, Callable, Union

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from core.types import RunId, TenantId

logger = structlog.get_logger()


@dataclass(frozen=True)
class SnapshotCommitted:
    tenant_id: TenantId
    run_id: RunId
    as_of_date: date
    committed_at: datetime

    def to_payload(self) -> dict:
        return {
            "type": "snapshot_committed",
            "payload": {
                "tenant_id": self.tenant_id,
                "run_id": self.run_id,
                "as_of_date": self.as_of_date.isoformat(),
                "committed_at": self.committed_at.isoformat(),
            },
        }


Subscriber = Callable[[SnapshotCommitted], Union[None, Awaitable[None]]]


class SnapshotNotifier:
    """Fan-out of commit events to registered subscribers."""

    def __init__(self, redis_url: str | None = None):
        self._subscribers: list[Subscriber] = []
        self.redis_url = redis_url

    def subscribe(self, callback: Subscriber) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def publish(self, event: SnapshotCommitted) -> int:
        """Notify every subscriber. Returns the number notified without error.

        The snapshot is already committed when this runs, so a failing
        subscriber is logged and skipped rather than failing the run.
        """
        delivered = 0
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as exc:
                logger.warning(
                    "snapshot.subscriber_failed",
                    tenant_id=event.tenant_id,
                    run_id=event.run_id,
                    error=str(exc),
                )

        if self.redis_url:
            delivered += await self._publish_redis(event)
        return delivered

    async def _publish_redis(self, event: SnapshotCommitted) -> int:
        redis = aioredis.from_url(self.redis_url)
        try:
            return await redis.publish(f"snapshots:{event.tenant_id}", json.dumps(event.to_payload()))
        except (RedisError, OSError) as exc:
            logger.warning("snapshot.redis_publish_failed", tenant_id=event.tenant_id, error=str(exc))
            return 0
        finally:
            await redis.aclose()

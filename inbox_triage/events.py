"""
Event dispatch at the orchestration boundary.

Graph nodes never publish; they return `TriageEvent`s in their state update
and the service hands them to an `EventDispatcher`. Delivery is
fire-and-forget: handler failures are logged and counted, never raised.
"""
import asyncio
import inspect
import json
from collections import defaultdict
from typing import Awaitable, Callable, Optional, Union

import redis.asyncio as aioredis

from inbox_triage.config import settings
from inbox_triage.logger import get_logger
from inbox_triage.metrics import events_published_total, event_handler_errors_total
from inbox_triage.state import TriageEvent

logger = get_logger(__name__)

# --- Event Names ---
TRIAGE_STARTED = "email.triage.started"
TRIAGE_COMPLETED = "email.triage.completed"
TRIAGE_FAILED = "email.triage.failed"
EMAIL_FILTERED = "email.filtered"
EMAIL_SNOOZED = "email.snoozed"
SNOOZE_CANCELLED = "email.snooze.cancelled"
SNOOZE_AWAKENED = "email.snooze.awakened"

WILDCARD = "*"

Handler = Callable[[TriageEvent], Union[None, Awaitable[None]]]


class EventDispatcher:
    """Routes events to handlers subscribed by name or to `*`."""

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event_name: str, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        self._handlers[event_name].append(handler)

        def unsubscribe():
            if handler in self._handlers[event_name]:
                self._handlers[event_name].remove(handler)

        return unsubscribe

    def publish(self, event: TriageEvent) -> None:
        """Deliver without waiting; coroutine handlers run as tasks."""
        events_published_total.labels(event=event.name).inc()
        handlers = self._handlers.get(event.name, []) + self._handlers.get(WILDCARD, [])
        logger.debug("Publishing event", extra={"event": event.name, "handlers": len(handlers)})

        for handler in handlers:
            try:
                outcome = handler(event)
            except Exception as e:
                self._report(event, e)
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(self._await_handler(event, outcome))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    def emit(self, name: str, **payload) -> TriageEvent:
        event = TriageEvent(name=name, payload=payload)
        self.publish(event)
        return event

    async def _await_handler(self, event: TriageEvent, outcome: Awaitable) -> None:
        try:
            await outcome
        except Exception as e:
            self._report(event, e)

    def _report(self, event: TriageEvent, error: Exception) -> None:
        event_handler_errors_total.labels(event=event.name).inc()
        logger.warning("Event handler failed", extra={"event": event.name, "error": str(error)})

    async def flush(self) -> None:
        """Wait for in-flight async handlers (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class RedisEventRelay:
    """
    Handler forwarding events as JSON to a Redis pub/sub channel, where
    WebSocket relays and dashboards pick them up.

    Args:
        redis_client: Optional injected client (for testing)
        channel: Pub/sub channel name
    """

    def __init__(self, redis_client: Optional[aioredis.Redis] = None, channel: Optional[str] = None):
        self._redis = redis_client
        self.channel = channel or settings.event_channel

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        return self._redis

    async def __call__(self, event: TriageEvent) -> None:
        message = json.dumps({
            "event": event.name,
            "payload": event.payload,
            "timestamp": event.timestamp.isoformat(),
        }, default=str)
        await self.redis.publish(self.channel, message)

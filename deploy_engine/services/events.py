"""
Event Fan-out - in-process publish/subscribe for deployment events.

Delivery is best-effort and at-least-once to the observers subscribed at
publish time. Each subscription owns an unbounded queue, so a slow
consumer never blocks the publisher, and a failing subscription never
affects the others.

Event types published by the engine:
- deployment_created, stage_changed, plan_generated, gate_step_completed
- command_started, command_output, command_finished
- execution_started, execution_completed, execution_failed, execution_cancelled
- step_started, step_completed, step_failed, step_skipped, step_info
- approval_required, approval_granted, approval_resolved
- rollback_started, rollback_step, rollback_finished
"""

import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field

from deploy_engine.domain.models import utcnow
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)


class Event(BaseModel):
    """A single event delivered to observers."""
    type: str
    deployment_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


_CLOSED = object()


class Subscription:
    """
    Async-iterable stream of events for one observer.

    Usage:
        async with bus.subscribe(deployment_id) as subscription:
            async for event in subscription:
                ...
    """

    def __init__(self, bus: "EventBus", deployment_id: Optional[str] = None):
        self._bus = bus
        self.deployment_id = deployment_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, event: Event) -> bool:
        return self.deployment_id is None or self.deployment_id == event.deployment_id

    def deliver(self, event: Event) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """
        Wait for the next event.

        Returns:
            The event, or None when the subscription is closed or the
            timeout expires
        """
        if self.closed and self._queue.empty():
            return None
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def drain(self) -> list[Event]:
        """Return all queued events without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                events.append(item)
        return events

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBus:
    """
    Event sink shared by all engine components.

    Passed to each component at construction.
    """

    def __init__(self):
        self._subscriptions: list[Subscription] = []

    def subscribe(self, deployment_id: Optional[str] = None) -> Subscription:
        """
        Subscribe to events.

        Args:
            deployment_id: Only receive events for this deployment
                           (None receives everything)
        """
        subscription = Subscription(self, deployment_id)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: Event) -> int:
        """
        Deliver an event to every matching subscriber.

        Returns:
            Number of subscribers the event was delivered to
        """
        delivered = 0
        for subscription in list(self._subscriptions):
            try:
                if subscription.matches(event):
                    subscription.deliver(event)
                    delivered += 1
            except Exception:
                logger.exception(
                    "Event delivery failed (type=%s, deployment=%s)",
                    event.type,
                    event.deployment_id,
                )
        return delivered

    async def emit(
        self,
        event_type: str,
        deployment_id: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> Event:
        """Build and publish an event in one call."""
        event = Event(type=event_type, deployment_id=deployment_id, payload=payload or {})
        await self.publish(event)
        return event

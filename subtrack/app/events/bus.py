"""Event bus clients: Redis Streams transport and an in-process bus."""
from __future__ import annotations

import logging
import socket
from collections import deque
from threading import Event, Lock, Thread
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Sequence, Tuple

import redis

from .models import DeliveryGuarantee, DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]

_PAYLOAD_FIELD = "event"


class EventConsumer(Protocol):
    def stop(self, timeout: Optional[float] = None) -> None:
        ...


class EventBus(Protocol):
    """Publishes domain events to topics and hands out topic consumers."""

    source: str

    def publish(
        self,
        topic: str,
        event_type: str,
        data: Dict[str, Any],
        *,
        correlation_id: Optional[str] = None,
    ) -> Optional[DomainEvent]:
        ...

    def subscribe(self, topics: Sequence[str], group_id: str, handler: EventHandler) -> EventConsumer:
        ...


class _PendingBuffer:
    """In-process retry buffer for the at-least-once contract.

    Events survive transport outages but not process restarts.
    """

    def __init__(self, maxlen: int) -> None:
        self._items: Deque[Tuple[str, DomainEvent]] = deque(maxlen=maxlen)
        self._lock = Lock()

    def push(self, topic: str, event: DomainEvent) -> None:
        with self._lock:
            if self._items.maxlen is not None and len(self._items) == self._items.maxlen:
                dropped_topic, dropped = self._items[0]
                logger.error(
                    "Pending event buffer full; dropping oldest event",
                    extra={"event_id": dropped.id, "event_type": dropped.type, "topic": dropped_topic},
                )
            self._items.append((topic, event))

    def drain(self) -> List[Tuple[str, DomainEvent]]:
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items

    def requeue_front(self, items: List[Tuple[str, DomainEvent]]) -> None:
        with self._lock:
            self._items.extendleft(reversed(items))

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class RedisStreamEventBus:
    """Event bus backed by Redis Streams, one stream per topic."""

    def __init__(
        self,
        client: "redis.Redis",
        *,
        source: str,
        guarantee: DeliveryGuarantee = DeliveryGuarantee.BEST_EFFORT,
        stream_maxlen: int = 10_000,
        pending_limit: int = 10_000,
    ) -> None:
        self._client = client
        self.source = source
        self.guarantee = guarantee
        self._stream_maxlen = stream_maxlen
        self._pending = _PendingBuffer(pending_limit)

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        source: str,
        guarantee: DeliveryGuarantee = DeliveryGuarantee.BEST_EFFORT,
        socket_timeout: float = 5.0,
    ) -> "RedisStreamEventBus":
        client = redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )
        return cls(client, source=source, guarantee=guarantee)

    @property
    def client(self) -> "redis.Redis":
        return self._client

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _send(self, topic: str, event: DomainEvent) -> None:
        self._client.xadd(
            topic,
            {_PAYLOAD_FIELD: event.to_json()},
            maxlen=self._stream_maxlen,
            approximate=True,
        )

    def publish(
        self,
        topic: str,
        event_type: str,
        data: Dict[str, Any],
        *,
        correlation_id: Optional[str] = None,
    ) -> Optional[DomainEvent]:
        event = DomainEvent(
            type=event_type,
            source=self.source,
            correlation_id=correlation_id,
            data=data,
        )
        if self.guarantee == DeliveryGuarantee.AT_LEAST_ONCE and len(self._pending):
            self.flush_pending()

        try:
            self._send(topic, event)
        except redis.RedisError as exc:
            if self.guarantee == DeliveryGuarantee.AT_LEAST_ONCE:
                self._pending.push(topic, event)
                logger.warning(
                    "Event bus unavailable; event buffered for retry",
                    extra={"event_id": event.id, "event_type": event_type, "topic": topic, "error": str(exc)},
                )
                return event
            logger.warning(
                "Event bus unavailable; event dropped",
                extra={"event_id": event.id, "event_type": event_type, "topic": topic, "error": str(exc)},
            )
            return None

        logger.info(
            "Event published",
            extra={"event_id": event.id, "event_type": event_type, "topic": topic},
        )
        return event

    def flush_pending(self) -> int:
        """Retry buffered events in order; stops at the first transport failure."""

        items = self._pending.drain()
        if not items:
            return 0
        sent = 0
        for index, (topic, event) in enumerate(items):
            try:
                self._send(topic, event)
            except redis.RedisError:
                self._pending.requeue_front(items[index:])
                break
            sent += 1
        if sent:
            logger.info("Flushed buffered events", extra={"count": sent})
        return sent

    def subscribe(
        self,
        topics: Sequence[str],
        group_id: str,
        handler: EventHandler,
        *,
        consumer_name: Optional[str] = None,
        block_ms: int = 1000,
    ) -> "RedisStreamConsumer":
        consumer = RedisStreamConsumer(
            self,
            topics=list(topics),
            group_id=group_id,
            handler=handler,
            consumer_name=consumer_name or f"{group_id}-{socket.gethostname()}",
            block_ms=block_ms,
        )
        consumer.start()
        return consumer


class RedisStreamConsumer(Thread):
    """Consumer-group reader that acknowledges each message after its handler returns."""

    def __init__(
        self,
        bus: RedisStreamEventBus,
        *,
        topics: List[str],
        group_id: str,
        handler: EventHandler,
        consumer_name: str,
        block_ms: int = 1000,
        retry_interval: float = 2.0,
    ) -> None:
        super().__init__(daemon=True, name=f"event-consumer-{group_id}")
        self._bus = bus
        self._client = bus.client
        self.topics = topics
        self.group_id = group_id
        self.consumer_name = consumer_name
        self._handler = handler
        self._block_ms = block_ms
        self._retry_interval = retry_interval
        self._stop_event = Event()
        self._groups_ready = False
        self._backlog_done = False

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def ensure_groups(self) -> None:
        for topic in self.topics:
            try:
                self._client.xgroup_create(topic, self.group_id, id="0", mkstream=True)
            except redis.ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise
        self._groups_ready = True

    def poll_once(self) -> int:
        """Read and dispatch one batch. Returns the number of messages handled.

        The first successful read replays this consumer's unacknowledged backlog;
        later reads only receive new messages.
        """

        if not self._groups_ready:
            self.ensure_groups()

        if self._bus.guarantee == DeliveryGuarantee.AT_LEAST_ONCE and self._bus.pending_count:
            self._bus.flush_pending()

        cursor = ">" if self._backlog_done else "0"
        response = self._client.xreadgroup(
            self.group_id,
            self.consumer_name,
            {topic: cursor for topic in self.topics},
            count=50,
            block=self._block_ms if self._backlog_done else None,
        )
        handled = 0
        backlog_seen = False
        for stream, messages in response or []:
            for message_id, fields in messages:
                backlog_seen = True
                self._dispatch(stream, message_id, fields)
                handled += 1
        if not self._backlog_done and not backlog_seen:
            self._backlog_done = True
        return handled

    def _dispatch(self, stream: str, message_id: str, fields: Optional[Dict[str, str]]) -> None:
        raw = (fields or {}).get(_PAYLOAD_FIELD)
        try:
            if raw is None:
                raise ValueError("message has no event payload")
            event = DomainEvent.from_json(raw)
            self._handler(event)
        except Exception:
            logger.exception(
                "Event handler failed; acknowledging and skipping",
                extra={"stream": stream, "message_id": message_id, "group": self.group_id},
            )
        self._client.xack(stream, self.group_id, message_id)

    def run(self) -> None:  # pragma: no cover - thread execution
        logger.info(
            "Event consumer started",
            extra={"topics": self.topics, "group": self.group_id, "consumer": self.consumer_name},
        )
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except redis.RedisError as exc:
                logger.warning(
                    "Event consumer read failed; retrying",
                    extra={"group": self.group_id, "error": str(exc)},
                )
                if self._stop_event.wait(self._retry_interval):
                    break
        logger.info("Event consumer stopped", extra={"group": self.group_id})


class InMemoryEventBus:
    """Synchronous in-process bus for local runs and tests.

    ``available`` simulates a transport outage; the configured guarantee then
    decides whether the event is dropped or buffered until the next flush.
    """

    def __init__(
        self,
        *,
        source: str = "billing-service",
        guarantee: DeliveryGuarantee = DeliveryGuarantee.BEST_EFFORT,
    ) -> None:
        self.source = source
        self.guarantee = guarantee
        self.available = True
        self.published: List[Tuple[str, DomainEvent]] = []
        self._pending: List[Tuple[str, DomainEvent]] = []
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._lock = Lock()

    def publish(
        self,
        topic: str,
        event_type: str,
        data: Dict[str, Any],
        *,
        correlation_id: Optional[str] = None,
    ) -> Optional[DomainEvent]:
        event = DomainEvent(type=event_type, source=self.source, correlation_id=correlation_id, data=data)
        if not self.available:
            if self.guarantee == DeliveryGuarantee.AT_LEAST_ONCE:
                with self._lock:
                    self._pending.append((topic, event))
                return event
            logger.warning(
                "Event bus unavailable; event dropped",
                extra={"event_id": event.id, "event_type": event_type, "topic": topic},
            )
            return None
        self.flush_pending()
        self._deliver(topic, event)
        return event

    def flush_pending(self) -> int:
        if not self.available:
            return 0
        with self._lock:
            pending, self._pending = self._pending, []
        for topic, event in pending:
            self._deliver(topic, event)
        return len(pending)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _deliver(self, topic: str, event: DomainEvent) -> None:
        with self._lock:
            self.published.append((topic, event))
            handlers = list(self._handlers.get(topic, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed; skipping",
                    extra={"event_id": event.id, "event_type": event.type, "topic": topic},
                )

    def subscribe(self, topics: Sequence[str], group_id: str, handler: EventHandler) -> "InMemoryEventBus._Subscription":
        with self._lock:
            for topic in topics:
                self._handlers.setdefault(topic, []).append(handler)
        return InMemoryEventBus._Subscription(self, list(topics), handler)

    def events(self, event_type: Optional[str] = None) -> List[DomainEvent]:
        with self._lock:
            return [event for _, event in self.published if event_type is None or event.type == event_type]

    class _Subscription:
        def __init__(self, bus: "InMemoryEventBus", topics: List[str], handler: EventHandler) -> None:
            self._bus = bus
            self._topics = topics
            self._handler = handler

        def stop(self, timeout: Optional[float] = None) -> None:
            with self._bus._lock:
                for topic in self._topics:
                    handlers = self._bus._handlers.get(topic, [])
                    if self._handler in handlers:
                        handlers.remove(self._handler)


__all__ = [
    "EventBus",
    "EventConsumer",
    "EventHandler",
    "InMemoryEventBus",
    "RedisStreamConsumer",
    "RedisStreamEventBus",
]

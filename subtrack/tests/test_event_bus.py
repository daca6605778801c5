"""Tests for the Redis Streams and in-process event buses."""
from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Tuple

import pytest
import redis

from subtrack.app.events import (
    DeliveryGuarantee,
    DomainEvent,
    InMemoryEventBus,
    RedisStreamConsumer,
    RedisStreamEventBus,
)


class FakeRedis:
    """Just enough of the Streams API for consumer-group bookkeeping."""

    def __init__(self) -> None:
        self.streams: Dict[str, List[Tuple[str, Dict[str, str]]]] = {}
        self.groups: Dict[Tuple[str, str], Dict[str, object]] = {}
        self.acked: List[Tuple[str, str, str]] = []
        self.xadd_calls: List[dict] = []
        self.fail_writes = False
        self._sequence = 0

    def xadd(self, name, fields, maxlen=None, approximate=True):
        if self.fail_writes:
            raise redis.ConnectionError("Connection refused")
        self._sequence += 1
        message_id = f"{self._sequence}-0"
        self.streams.setdefault(name, []).append((message_id, dict(fields)))
        self.xadd_calls.append({"name": name, "maxlen": maxlen, "approximate": approximate})
        return message_id

    def xgroup_create(self, name, groupname, id="$", mkstream=False):
        if (name, groupname) in self.groups:
            raise redis.ResponseError("BUSYGROUP Consumer Group name already exists")
        if name not in self.streams and not mkstream:
            raise redis.ResponseError("ERR no such key")
        self.streams.setdefault(name, [])
        offset = 0 if id == "0" else len(self.streams[name])
        self.groups[(name, groupname)] = {"offset": offset, "pending": {}}
        return True

    def xreadgroup(self, groupname, consumername, streams, count=None, block=None, noack=False):
        result = []
        for name, cursor in streams.items():
            group = self.groups[(name, groupname)]
            pending: Dict[str, List[str]] = group["pending"]
            if cursor == ">":
                entries = self.streams[name][group["offset"]:]
                if count is not None:
                    entries = entries[:count]
                group["offset"] += len(entries)
                pending.setdefault(consumername, []).extend(message_id for message_id, _ in entries)
            else:
                owned = set(pending.get(consumername, []))
                entries = [(mid, fields) for mid, fields in self.streams[name] if mid in owned]
            if entries:
                result.append([name, entries])
        if not result and block:
            time.sleep(min(block, 50) / 1000)
        return result

    def xack(self, name, groupname, *ids):
        group = self.groups[(name, groupname)]
        for consumer_ids in group["pending"].values():
            for message_id in ids:
                if message_id in consumer_ids:
                    consumer_ids.remove(message_id)
        for message_id in ids:
            self.acked.append((name, groupname, message_id))
        return len(ids)

    def pending_for(self, name: str, groupname: str) -> List[str]:
        group = self.groups[(name, groupname)]
        return [mid for ids in group["pending"].values() for mid in ids]


def stream_events(client: FakeRedis, topic: str) -> List[DomainEvent]:
    return [DomainEvent.from_json(fields["event"]) for _, fields in client.streams.get(topic, [])]


@pytest.fixture
def fake_redis():
    return FakeRedis()


def make_consumer(bus: RedisStreamEventBus, handler, *, name: str = "worker-1") -> RedisStreamConsumer:
    return RedisStreamConsumer(
        bus,
        topics=["user.events"],
        group_id="billing-service-group",
        handler=handler,
        consumer_name=name,
        block_ms=0,
    )


def test_publish_appends_event_to_topic_stream(fake_redis):
    bus = RedisStreamEventBus(fake_redis, source="billing-service", stream_maxlen=500)

    event = bus.publish("billing.events", "subscription.created", {"organizationId": "org1"}, correlation_id="req-1")

    (stored,) = stream_events(fake_redis, "billing.events")
    assert stored == event
    assert stored.source == "billing-service"
    assert stored.correlation_id == "req-1"
    assert fake_redis.xadd_calls[0]["maxlen"] == 500
    assert fake_redis.xadd_calls[0]["approximate"] is True


def test_envelope_uses_camel_case_correlation_id(fake_redis):
    bus = RedisStreamEventBus(fake_redis, source="billing-service")
    bus.publish("billing.events", "subscription.canceled", {}, correlation_id="req-2")

    raw = fake_redis.streams["billing.events"][0][1]["event"]

    assert '"correlationId":"req-2"' in raw


def test_best_effort_publish_drops_when_transport_is_down(fake_redis):
    bus = RedisStreamEventBus(fake_redis, source="billing-service")
    fake_redis.fail_writes = True

    assert bus.publish("billing.events", "invoice.paid", {"organizationId": "org1"}) is None
    assert bus.pending_count == 0

    fake_redis.fail_writes = False
    bus.publish("billing.events", "invoice.paid", {"organizationId": "org2"})
    assert [event.data["organizationId"] for event in stream_events(fake_redis, "billing.events")] == ["org2"]


def test_at_least_once_publish_buffers_and_flushes_in_order(fake_redis):
    bus = RedisStreamEventBus(fake_redis, source="billing-service", guarantee=DeliveryGuarantee.AT_LEAST_ONCE)
    fake_redis.fail_writes = True

    first = bus.publish("billing.events", "subscription.created", {"n": 1})
    second = bus.publish("billing.events", "subscription.canceled", {"n": 2})

    assert first is not None and second is not None
    assert bus.pending_count == 2
    assert bus.flush_pending() == 0
    assert bus.pending_count == 2

    fake_redis.fail_writes = False
    bus.publish("billing.events", "invoice.paid", {"n": 3})

    assert [event.data["n"] for event in stream_events(fake_redis, "billing.events")] == [1, 2, 3]
    assert stream_events(fake_redis, "billing.events")[0].id == first.id
    assert bus.pending_count == 0


def test_consumer_dispatches_and_acknowledges(fake_redis):
    bus = RedisStreamEventBus(fake_redis, source="user-service")
    received: List[DomainEvent] = []
    consumer = make_consumer(bus, received.append)
    consumer.ensure_groups()
    bus.publish("user.events", "org.created", {"organizationId": "org1"})

    assert consumer.poll_once() == 0  # empty backlog
    assert consumer.poll_once() == 1

    assert [event.data["organizationId"] for event in received] == ["org1"]
    assert fake_redis.pending_for("user.events", "billing-service-group") == []
    assert len(fake_redis.acked) == 1


def test_ensure_groups_tolerates_existing_group(fake_redis):
    fake_redis.xgroup_create("user.events", "billing-service-group", id="0", mkstream=True)
    consumer = make_consumer(RedisStreamEventBus(fake_redis, source="test"), lambda event: None)

    consumer.ensure_groups()
    consumer.ensure_groups()


def test_failing_handler_is_acknowledged_and_skipped(fake_redis):
    bus = RedisStreamEventBus(fake_redis, source="user-service")
    handled: List[str] = []

    def handler(event: DomainEvent) -> None:
        if event.data.get("poison"):
            raise RuntimeError("cannot handle")
        handled.append(event.data["organizationId"])

    consumer = make_consumer(bus, handler)
    consumer.ensure_groups()
    bus.publish("user.events", "org.created", {"organizationId": "bad", "poison": True})
    bus.publish("user.events", "org.created", {"organizationId": "org2"})
    fake_redis.xadd("user.events", {"unexpected": "field"})

    consumer.poll_once()
    assert consumer.poll_once() == 3

    assert handled == ["org2"]
    assert len(fake_redis.acked) == 3
    assert fake_redis.pending_for("user.events", "billing-service-group") == []


def test_consumer_replays_unacknowledged_backlog_first(fake_redis):
    bus = RedisStreamEventBus(fake_redis, source="user-service")
    fake_redis.xgroup_create("user.events", "billing-service-group", id="0", mkstream=True)
    bus.publish("user.events", "org.created", {"organizationId": "org-crashed"})
    # A previous process read the message and died before acknowledging it.
    fake_redis.xreadgroup("billing-service-group", "worker-1", {"user.events": ">"})
    bus.publish("user.events", "org.created", {"organizationId": "org-new"})

    received: List[str] = []
    consumer = make_consumer(bus, lambda event: received.append(event.data["organizationId"]))

    assert consumer.poll_once() == 1
    assert received == ["org-crashed"]
    consumer.poll_once()  # backlog now empty
    consumer.poll_once()
    assert received == ["org-crashed", "org-new"]


def test_consumer_poll_flushes_buffered_events(fake_redis):
    bus = RedisStreamEventBus(fake_redis, source="billing-service", guarantee=DeliveryGuarantee.AT_LEAST_ONCE)
    fake_redis.fail_writes = True
    bus.publish("billing.events", "subscription.created", {"organizationId": "org1"})
    fake_redis.fail_writes = False

    consumer = make_consumer(bus, lambda event: None)
    consumer.poll_once()

    assert bus.pending_count == 0
    assert len(stream_events(fake_redis, "billing.events")) == 1


def test_subscribe_runs_consumer_thread_until_stopped(fake_redis):
    bus = RedisStreamEventBus(fake_redis, source="user-service")
    delivered = threading.Event()
    received: List[DomainEvent] = []

    def handler(event: DomainEvent) -> None:
        received.append(event)
        delivered.set()

    consumer = bus.subscribe(["user.events"], "billing-service-group", handler, consumer_name="worker-t", block_ms=10)
    try:
        bus.publish("user.events", "org.created", {"organizationId": "org-thread"})
        assert delivered.wait(timeout=5)
    finally:
        consumer.stop(timeout=2)

    assert consumer.stopped
    assert not consumer.is_alive()
    assert received[0].data["organizationId"] == "org-thread"


def test_in_memory_bus_delivers_to_subscribers():
    bus = InMemoryEventBus(source="billing-service")
    seen: List[str] = []
    subscription = bus.subscribe(["billing.events"], "group", lambda event: seen.append(event.type))

    bus.publish("billing.events", "subscription.created", {})
    bus.publish("user.events", "org.created", {})
    subscription.stop()
    bus.publish("billing.events", "subscription.canceled", {})

    assert seen == ["subscription.created"]
    assert [event.type for event in bus.events()] == [
        "subscription.created",
        "org.created",
        "subscription.canceled",
    ]


def test_in_memory_bus_isolates_failing_handlers():
    bus = InMemoryEventBus()
    seen: List[str] = []

    def broken(event: DomainEvent) -> None:
        raise RuntimeError("boom")

    bus.subscribe(["billing.events"], "a", broken)
    bus.subscribe(["billing.events"], "b", lambda event: seen.append(event.id))

    event = bus.publish("billing.events", "invoice.paid", {})

    assert seen == [event.id]


@pytest.mark.parametrize(
    "guarantee, expected_pending, expected_result",
    [
        (DeliveryGuarantee.BEST_EFFORT, 0, None),
        (DeliveryGuarantee.AT_LEAST_ONCE, 1, "event"),
    ],
)
def test_in_memory_bus_outage_follows_guarantee(guarantee, expected_pending, expected_result):
    bus = InMemoryEventBus(guarantee=guarantee)
    bus.available = False

    result: Optional[DomainEvent] = bus.publish("billing.events", "payment.failed", {"organizationId": "org1"})

    assert bus.pending_count == expected_pending
    assert (result is None) == (expected_result is None)
    assert bus.events() == []

    bus.available = True
    bus.publish("billing.events", "invoice.paid", {})
    assert len(bus.events()) == expected_pending + 1

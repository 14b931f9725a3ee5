"""Tests for the async EventBus."""

import pytest

from openai_lab.events.bus import EventBus
from openai_lab.types import EventType, LabEvent


@pytest.fixture
def bus():
    return EventBus()


class TestSubscribeAndEmit:
    async def test_async_handler(self, bus: EventBus):
        received = []

        async def handler(event: LabEvent):
            received.append(event)

        bus.subscribe(EventType.EXCHANGE_STARTED, handler)
        ev = LabEvent(type=EventType.EXCHANGE_STARTED, data={"request_id": "req_1"})
        await bus.emit(ev)

        assert received == [ev]

    async def test_sync_handler(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.USAGE_RECORDED, received.append)
        await bus.emit(LabEvent(type=EventType.USAGE_RECORDED))
        assert len(received) == 1

    async def test_no_cross_delivery(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.EXCHANGE_STARTED, received.append)
        await bus.emit(LabEvent(type=EventType.EXCHANGE_COMPLETED))
        assert received == []

    async def test_publish_builds_event(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.BULK_PROGRESS, received.append)
        event = await bus.publish(EventType.BULK_PROGRESS, progress=50.0, completed=2)
        assert received == [event]
        assert event.data == {"progress": 50.0, "completed": 2}
        assert event.timestamp > 0

    async def test_string_event_type(self, bus: EventBus):
        received = []
        bus.subscribe("exchange.delta", received.append)
        await bus.emit(LabEvent(type=EventType.EXCHANGE_DELTA))
        assert len(received) == 1


class TestWildcard:
    async def test_wildcard_receives_all(self, bus: EventBus):
        received = []
        bus.subscribe("*", lambda e: received.append(e.type))
        await bus.emit(LabEvent(type=EventType.EXCHANGE_STARTED))
        await bus.emit(LabEvent(type=EventType.RETRY_SCHEDULED))
        await bus.emit(LabEvent(type=EventType.BULK_RESULT))
        assert received == [
            EventType.EXCHANGE_STARTED,
            EventType.RETRY_SCHEDULED,
            EventType.BULK_RESULT,
        ]

    async def test_family_subscription(self, bus: EventBus):
        received = []
        bus.subscribe("exchange.*", lambda e: received.append(e.type))
        await bus.emit(LabEvent(type=EventType.EXCHANGE_STARTED))
        await bus.emit(LabEvent(type=EventType.BULK_RESULT))
        await bus.emit(LabEvent(type=EventType.EXCHANGE_FAILED))
        assert received == [EventType.EXCHANGE_STARTED, EventType.EXCHANGE_FAILED]

    async def test_family_and_exact_both_delivered(self, bus: EventBus):
        received = []
        bus.subscribe("bulk.*", lambda e: received.append("family"))
        bus.subscribe(EventType.BULK_PROGRESS, lambda e: received.append("exact"))
        await bus.emit(LabEvent(type=EventType.BULK_PROGRESS))
        assert sorted(received) == ["exact", "family"]


class TestUnsubscribe:
    async def test_unsubscribe(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.EXCHANGE_FAILED, received.append)
        await bus.emit(LabEvent(type=EventType.EXCHANGE_FAILED))
        bus.unsubscribe(EventType.EXCHANGE_FAILED, received.append)
        await bus.emit(LabEvent(type=EventType.EXCHANGE_FAILED))
        assert len(received) == 1

    async def test_unsubscribe_nonexistent(self, bus: EventBus):
        bus.unsubscribe(EventType.EXCHANGE_FAILED, print)


class TestHistory:
    async def test_history_limit(self):
        bus = EventBus(max_history=5)
        for i in range(10):
            await bus.publish(EventType.EXCHANGE_DELTA, i=i)
        assert len(bus.history) == 5
        assert bus.history[0].data["i"] == 5

    async def test_events_of(self, bus: EventBus):
        await bus.publish(EventType.EXCHANGE_STARTED)
        await bus.publish(EventType.EXCHANGE_DELTA)
        await bus.publish(EventType.EXCHANGE_DELTA)
        assert len(bus.events_of(EventType.EXCHANGE_DELTA)) == 2

    async def test_clear(self, bus: EventBus):
        bus.subscribe(EventType.EXCHANGE_STARTED, print)
        await bus.publish(EventType.EXCHANGE_STARTED)
        bus.clear()
        assert bus.history == []
        assert bus._handlers == {}


class TestTimeline:
    async def test_events_for_one_request(self, bus: EventBus):
        await bus.publish(EventType.EXCHANGE_STARTED, request_id="req_1")
        await bus.publish(EventType.EXCHANGE_STARTED, request_id="req_2")
        await bus.publish(EventType.EXCHANGE_DELTA, request_id="req_1", delta="a")
        await bus.publish(EventType.EXCHANGE_COMPLETED, request_id="req_1")

        assert [e.type for e in bus.timeline("req_1")] == [
            EventType.EXCHANGE_STARTED,
            EventType.EXCHANGE_COMPLETED,
        ]
        assert len(bus.timeline("req_1", include_deltas=True)) == 3
        assert bus.timeline("req_missing") == []


class TestErrorHandling:
    async def test_handler_exception_does_not_propagate(self, bus: EventBus):
        async def bad_handler(event: LabEvent):
            raise ValueError("boom")

        received = []
        bus.subscribe(EventType.EXCHANGE_STARTED, bad_handler)
        bus.subscribe(EventType.EXCHANGE_STARTED, received.append)

        await bus.emit(LabEvent(type=EventType.EXCHANGE_STARTED))
        assert len(received) == 1

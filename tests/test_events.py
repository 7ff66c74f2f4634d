"""Tests for the typed event channel."""

from core.events import (
    DomainEvent,
    EventBus,
    OperationEnqueued,
    OperationFailed,
    SyncStarted,
)


class TestEventBus:
    def test_typed_delivery_and_catch_all(self):
        bus = EventBus()
        enqueued, everything = [], []
        bus.subscribe(OperationEnqueued, enqueued.append)
        bus.subscribe(DomainEvent, everything.append)

        bus.publish(OperationEnqueued(operation_id="a", kind="submit"))
        bus.publish(SyncStarted(queue_size=1))

        assert [e.operation_id for e in enqueued] == ["a"]
        assert [e.event_type for e in everything] == ["OperationEnqueued", "SyncStarted"]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        subscription = bus.subscribe(OperationFailed, seen.append)
        assert bus.subscriber_count(OperationFailed) == 1

        subscription.unsubscribe()
        subscription.unsubscribe()
        bus.publish(OperationFailed(operation_id="x"))

        assert seen == []
        assert bus.subscriber_count(OperationFailed) == 0

    def test_failing_handler_does_not_stop_delivery(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("observer bug")

        bus.subscribe(SyncStarted, broken)
        bus.subscribe(SyncStarted, seen.append)
        bus.publish(SyncStarted(queue_size=3))

        assert [e.queue_size for e in seen] == [3]

    def test_history_is_bounded_and_filterable(self):
        bus = EventBus(history_size=3)
        for i in range(5):
            bus.publish(SyncStarted(queue_size=i))
        bus.publish(OperationFailed(operation_id="f"))

        assert [e.queue_size for e in bus.get_history(SyncStarted)] == [3, 4]
        assert len(bus.get_history()) == 3
        bus.clear_history()
        assert bus.get_history() == []

    def test_events_are_immutable_with_identity(self):
        a = SyncStarted(queue_size=1)
        b = SyncStarted(queue_size=1)
        assert a.event_id != b.event_id
        try:
            a.queue_size = 2
        except AttributeError:
            pass
        else:
            raise AssertionError("events must be frozen")

"""Tests for the sync orchestrator: ordering, gating, retries and triggers."""

import asyncio

import pytest
from pydantic import BaseModel

from config import SyncSettings
from core.events import (
    OperationEnqueued,
    OperationFailed,
    QueueCleared,
    SyncCompleted,
    SyncStarted,
)
from core.exceptions import QueueFullError, ValidationError
from edge.operation_store import OperationStore
from edge.sync_orchestrator import SyncOrchestrator
from schemas.entity import Entity, EntitySyncStatus, RemoteSyncResult, compute_content_hash
from schemas.operation import Priority, SyncStatus
from schemas.recovery import FallbackProvider, RecoveryPolicy


class Recorder:
    """Transport handler that records what it saw and can be told to fail."""

    def __init__(self, fail_with=None, returns=None):
        self.seen = []
        self.fail_with = fail_with
        self.returns = returns

    async def __call__(self, operation):
        self.seen.append(operation)
        if self.fail_with is not None:
            raise self.fail_with
        return self.returns

    @property
    def actions(self):
        return [op.action for op in self.seen]


class TestDrain:
    async def test_priority_order(self, orchestrator, events):
        handler = Recorder()
        orchestrator.register_handler("submit", handler)
        await orchestrator.enqueue("submit", "low", priority=Priority.LOW)
        await orchestrator.enqueue("submit", "medium-1")
        await orchestrator.enqueue("submit", "high", priority="high")
        await orchestrator.enqueue("submit", "medium-2")

        result = await orchestrator.trigger_sync()

        assert result.success
        assert result.processed == 4
        assert handler.actions == ["high", "medium-1", "medium-2", "low"]
        assert orchestrator.get_pending_count() == 0
        assert len(events.get_history(OperationEnqueued)) == 4

    async def test_events_and_status_bracket_the_pass(self, orchestrator, events):
        orchestrator.register_handler("submit", Recorder())
        await orchestrator.enqueue("submit")
        assert orchestrator.sync_status is SyncStatus.IDLE

        result = await orchestrator.trigger_sync()

        [started] = events.get_history(SyncStarted)
        [completed] = events.get_history(SyncCompleted)
        assert started.queue_size == 1
        assert completed.result == result
        assert orchestrator.sync_status is SyncStatus.COMPLETED
        assert orchestrator.status().last_result == result

    async def test_payload_model_validation(self, orchestrator):
        class Transfer(BaseModel):
            amount: int
            to: str

        handler = Recorder()
        orchestrator.register_handler("transfer", handler, payload_model=Transfer)
        await orchestrator.enqueue("transfer", payload={"amount": 5, "to": "bob"})
        await orchestrator.enqueue("transfer", payload={"amount": "lots"}, max_retries=0)

        result = await orchestrator.trigger_sync()

        assert result.processed == 1
        assert result.failed == 1
        assert handler.seen[0].payload == Transfer(amount=5, to="bob")
        assert orchestrator.get_pending_count() == 0

    async def test_unknown_kind_counts_as_failure(self, orchestrator):
        op_id = await orchestrator.enqueue("nobody-handles-this")
        result = await orchestrator.trigger_sync()
        assert result.failed == 1
        assert "nobody-handles-this" in result.errors[0].error
        [pending] = orchestrator.get_pending_operations()
        assert pending.id == op_id
        assert pending.retry_count == 1

    async def test_negative_handler_retries_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.register_handler("submit", Recorder(), retries=-1)


class TestRetryCeiling:
    async def test_false_result_is_a_failure(self, orchestrator):
        orchestrator.register_handler("submit", Recorder(returns=False))
        await orchestrator.enqueue("submit")
        result = await orchestrator.trigger_sync()
        assert not result.success
        assert result.failed == 1
        assert orchestrator.get_pending_operations()[0].retry_count == 1
        assert orchestrator.sync_status is SyncStatus.ERROR

    async def test_max_retries_gives_n_plus_one_attempts(self, orchestrator, events):
        handler = Recorder(fail_with=ConnectionError("remote down"))
        orchestrator.register_handler("submit", handler)
        op_id = await orchestrator.enqueue("submit", "pay", max_retries=2)

        for expected_retry_count in (1, 2):
            await orchestrator.trigger_sync()
            assert orchestrator.get_pending_operations()[0].retry_count == expected_retry_count
        result = await orchestrator.trigger_sync()

        assert len(handler.seen) == 3
        assert result.failed == 1
        assert orchestrator.get_pending_count() == 0
        [failed] = events.get_history(OperationFailed)
        assert failed.operation_id == op_id
        assert failed.retry_count == 2
        assert failed.action == "pay"
        assert failed.error == "remote down"

    async def test_zero_retries_removes_after_one_attempt(self, orchestrator, events):
        handler = Recorder(fail_with=ConnectionError("remote down"))
        orchestrator.register_handler("submit", handler)
        await orchestrator.enqueue("submit", max_retries=0)
        await orchestrator.trigger_sync()
        assert len(handler.seen) == 1
        assert orchestrator.get_pending_count() == 0
        assert len(events.get_history(OperationFailed)) == 1

    async def test_handler_retries_run_inside_one_pass(self, orchestrator, clock):
        attempts = []

        async def flaky(operation):
            attempts.append(operation.id)
            if len(attempts) < 3:
                raise ConnectionError("blip")

        orchestrator.register_handler("submit", flaky, retries=2)
        await orchestrator.enqueue("submit")
        result = await orchestrator.trigger_sync()
        assert result.processed == 1
        assert len(attempts) == 3
        assert clock.sleeps == [1.0, 2.0]

    async def test_fallback_policy_completes_operation(self, orchestrator, recovery):
        async def queue_locally(error, context):
            return "stored for later"

        recovery.register_fallback_provider("submit", FallbackProvider(id="local", execute=queue_locally))
        orchestrator.register_handler(
            "submit",
            Recorder(fail_with=ConnectionError("down")),
            policy=RecoveryPolicy.FALLBACK,
        )
        await orchestrator.enqueue("submit")
        result = await orchestrator.trigger_sync()
        assert result.processed == 1
        assert orchestrator.get_pending_count() == 0


class TestDependencies:
    async def test_unsatisfied_dependency_is_deferred(self, orchestrator):
        handler = Recorder()
        orchestrator.register_handler("submit", handler)
        parent = await orchestrator.enqueue("submit", "parent", priority="low")
        await orchestrator.enqueue("submit", "child", priority="high", depends_on=[parent])

        first = await orchestrator.trigger_sync()
        assert first.processed == 1
        assert first.skipped == 1
        assert first.failed == 0
        assert first.success
        assert handler.actions == ["parent"]

        second = await orchestrator.trigger_sync()
        assert second.processed == 1
        assert handler.actions == ["parent", "child"]

    async def test_dependency_completed_earlier_in_same_pass(self, orchestrator):
        handler = Recorder()
        orchestrator.register_handler("submit", handler)
        parent = await orchestrator.enqueue("submit", "parent")
        await orchestrator.enqueue("submit", "child", depends_on=[parent])
        result = await orchestrator.trigger_sync()
        assert result.processed == 2
        assert handler.actions == ["parent", "child"]

    async def test_dependents_of_failing_operation_never_run(self, orchestrator):
        calls = []

        async def handler(operation):
            calls.append(operation.action)
            if operation.action == "parent":
                raise ConnectionError("down")

        orchestrator.register_handler("submit", handler)
        parent = await orchestrator.enqueue("submit", "parent", max_retries=1)
        await orchestrator.enqueue("submit", "child", depends_on=[parent])

        for _ in range(3):
            await orchestrator.trigger_sync()

        assert calls == ["parent", "parent"]
        assert [op.action for op in orchestrator.get_pending_operations()] == ["child"]


class TestGuards:
    async def test_single_flight(self, orchestrator):
        gate = asyncio.Event()

        async def slow(operation):
            await gate.wait()

        orchestrator.register_handler("slow", slow)
        await orchestrator.enqueue("slow")

        first = asyncio.create_task(orchestrator.trigger_sync())
        await asyncio.sleep(0)
        assert orchestrator.sync_in_progress
        assert orchestrator.sync_status is SyncStatus.SYNCING

        second = await orchestrator.trigger_sync()
        assert second.processed == 0
        assert second.failed == 0
        assert [(e.operation_id, e.error) for e in second.errors] == [("system", "Sync already in progress")]

        gate.set()
        result = await first
        assert result.processed == 1
        assert not orchestrator.sync_in_progress

    async def test_offline_refuses_unless_forced(self, orchestrator, network):
        handler = Recorder()
        orchestrator.register_handler("submit", handler)
        await orchestrator.enqueue("submit")
        network.set_status("offline")

        refused = await orchestrator.trigger_sync()
        assert not refused.success
        assert [(e.operation_id, e.error) for e in refused.errors] == [("system", "Device is offline")]
        assert handler.seen == []

        forced = await orchestrator.trigger_sync(force=True)
        assert forced.processed == 1

    async def test_degraded_counts_as_online(self, orchestrator, network):
        orchestrator.register_handler("submit", Recorder())
        await orchestrator.enqueue("submit")
        network.set_status("degraded")
        assert (await orchestrator.trigger_sync()).processed == 1


class TestAutomaticTriggers:
    async def test_network_restore_triggers_sync(self, orchestrator, network, scheduler):
        handler = Recorder()
        orchestrator.register_handler("submit", handler)
        orchestrator.start(scheduler)
        network.set_status("offline")
        await orchestrator.enqueue("submit")

        network.set_status("online")
        await orchestrator.wait_for_background()

        assert len(handler.seen) == 1
        assert orchestrator.get_pending_count() == 0
        orchestrator.stop()

    async def test_online_to_degraded_does_not_trigger(self, orchestrator, network, scheduler, events):
        orchestrator.register_handler("submit", Recorder())
        orchestrator.start(scheduler)
        await orchestrator.enqueue("submit")
        network.set_status("degraded")
        await orchestrator.wait_for_background()
        assert events.get_history(SyncStarted) == []
        orchestrator.stop()

    async def test_periodic_ticker_syncs_non_empty_queue(self, orchestrator, scheduler, events):
        handler = Recorder()
        orchestrator.register_handler("submit", handler)
        orchestrator.start(scheduler)
        orchestrator.start(scheduler)

        await scheduler.advance(30)
        assert events.get_history(SyncStarted) == []

        await orchestrator.enqueue("submit")
        await scheduler.advance(30)
        assert len(handler.seen) == 1
        assert len(events.get_history(SyncStarted)) == 1

    async def test_stop_cancels_ticker_and_subscription(self, orchestrator, network, scheduler, events):
        handler = Recorder()
        orchestrator.register_handler("submit", handler)
        orchestrator.start(scheduler)
        orchestrator.stop()
        network.set_status("offline")
        await orchestrator.enqueue("submit")
        network.set_status("online")
        await scheduler.advance(120)
        await orchestrator.wait_for_background()
        assert handler.seen == []
        assert orchestrator.get_pending_count() == 1

    async def test_sync_on_enqueue(self, operation_store, network, recovery, events, clock):
        orchestrator = SyncOrchestrator(
            operation_store,
            network,
            recovery,
            events,
            clock=clock,
            settings=SyncSettings(sync_on_enqueue=True),
        )
        handler = Recorder()
        orchestrator.register_handler("submit", handler)
        await orchestrator.enqueue("submit")
        await orchestrator.wait_for_background()
        assert len(handler.seen) == 1


class TestAdministration:
    async def test_clear_all(self, orchestrator, events):
        await orchestrator.enqueue("submit")
        await orchestrator.enqueue("submit")
        assert orchestrator.clear_all() == 2
        assert orchestrator.get_pending_count() == 0
        [cleared] = events.get_history(QueueCleared)
        assert cleared.removed == 2

    async def test_queue_survives_restart(self, kv, clock, network, recovery, events, sync_settings):
        first = SyncOrchestrator(OperationStore(kv, clock=clock), network, recovery, events, clock, sync_settings)
        await first.enqueue("submit", "before-restart", payload={"n": 1})

        second = SyncOrchestrator(OperationStore(kv, clock=clock), network, recovery, events, clock, sync_settings)
        handler = Recorder()
        second.register_handler("submit", handler)
        result = await second.trigger_sync()
        assert result.processed == 1
        assert handler.seen[0].payload == {"n": 1}


class TestEntitySync:
    async def test_put_is_pushed_by_next_pass(self, orchestrator, entity_store):
        pushed = []

        async def push(entity):
            pushed.append(entity.version)
            return True

        entity_store.register_remote_handler("note", push)
        await entity_store.put("note", "n1", {"title": "a"})
        await entity_store.put("note", "n1", {"title": "b"})
        assert orchestrator.get_pending_count() == 2

        result = await orchestrator.trigger_sync()

        assert result.processed == 2
        assert pushed == [2]
        assert entity_store.get("note", "n1").sync_status is EntitySyncStatus.SYNCED

    async def test_conflict_ends_operation_successfully(self, orchestrator, entity_store, clock):
        async def push(entity):
            remote_data = {"title": "theirs"}
            return RemoteSyncResult(
                remote=Entity(
                    type="note",
                    id="n1",
                    data=remote_data,
                    last_modified=clock.utcnow(),
                    version=7,
                    content_hash=compute_content_hash(remote_data),
                )
            )

        entity_store.register_remote_handler("note", push)
        await entity_store.put("note", "n1", {"title": "mine"})
        result = await orchestrator.trigger_sync()
        assert result.processed == 1
        assert result.failed == 0
        assert orchestrator.get_pending_count() == 0
        assert entity_store.get("note", "n1").sync_status is EntitySyncStatus.CONFLICT

    async def test_rejected_push_is_retried(self, orchestrator, entity_store):
        async def push(entity):
            return False

        entity_store.register_remote_handler("note", push)
        await entity_store.put("note", "n1", {})
        result = await orchestrator.trigger_sync()
        assert result.failed == 1
        assert orchestrator.get_pending_operations()[0].retry_count == 1

    async def test_remote_delete(self, orchestrator, entity_store):
        deleted = []

        async def push(entity):
            return True

        async def remove(entity_type, entity_id):
            deleted.append((entity_type, entity_id))

        entity_store.register_remote_handler("note", push, remove)
        await entity_store.put("note", "n1", {})
        await entity_store.delete("note", "n1")
        result = await orchestrator.trigger_sync()
        assert result.processed == 2
        assert deleted == [("note", "n1")]

    async def test_full_queue_rejects_entity_write(
        self, kv, clock, events, network, recovery, sync_settings, entity_store
    ):
        store = OperationStore(kv, clock=clock, events=events, max_queue_size=1)
        orchestrator = SyncOrchestrator(
            store, network, recovery, events, clock=clock, settings=sync_settings, entities=entity_store
        )
        blocker = await orchestrator.enqueue("submit", "blocker", priority="high")

        with pytest.raises(QueueFullError):
            await entity_store.put("note", "1", {"title": "a"})

        assert entity_store.get("note", "1") is None
        assert [op.id for op in orchestrator.get_pending_operations()] == [blocker]

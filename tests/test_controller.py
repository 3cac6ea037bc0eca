"""Unit tests for controller.py - Worker pool and work sources."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conditions import StatusProjector
from config import ControllerConfig, SSHConfig
from controller import Controller
from events import EventBus, EventType, ResourceEvent
from reconciler import ManagedReconciler, ReconcileResult
from resources.file import File, FileConnector
from resources.registry import KindRegistry

from fakes import FakeDialer, FakeRemote, InMemoryStore

# ==================== Test Helpers ====================


def fast_config(**overrides):
    settings = {
        "resync_interval": 0.01,
        "max_concurrent_reconciles": 3,
        "backoff_jitter_factor": 0,
    }
    settings.update(overrides)
    return ControllerConfig(**settings)


def make_controller(store, remote, event_bus=None, **overrides):
    config = fast_config(**overrides)
    registry = KindRegistry()
    registry.register(
        "File", File, FileConnector(store, SSHConfig(), dial=FakeDialer(remote))
    )
    reconciler = ManagedReconciler(
        store, registry, StatusProjector(store, event_bus), config
    )
    return Controller(store, reconciler, config, event_bus)


def mock_reconciler(*results):
    reconciler = MagicMock()
    reconciler.reconcile = AsyncMock(
        side_effect=list(results) or None,
        return_value=ReconcileResult(success=True),
    )
    return reconciler


async def run_for(controller, seconds):
    task = asyncio.create_task(controller.start())
    await asyncio.sleep(seconds)
    await controller.stop()
    await asyncio.wait_for(task, 2)


def in_flight_overlaps(log):
    """Pairs of passes that touched the same path concurrently."""
    active = {}
    overlaps = 0
    for phase, _, path in log:
        if phase == "start":
            active[path] = active.get(path, 0) + 1
            if active[path] > 1:
                overlaps += 1
        else:
            active[path] -= 1
    return overlaps


# ==================== End to End ====================


@pytest.mark.asyncio
class TestControllerLoop:
    async def test_converges_due_resources(self):
        store = InMemoryStore()
        store.add_provider_config("default")
        first = store.add_file("a", path="/tmp/a")
        second = store.add_file("b", path="/tmp/b")
        remote = FakeRemote()

        await run_for(make_controller(store, remote), 0.3)

        assert remote.files == {"/tmp/a", "/tmp/b"}
        for resource_id in (first, second):
            ready = store.resources[resource_id]["status"]["conditions"][0]
            assert ready["reason"] == "Available"
            assert store.resources[resource_id]["next_reconcile_time"] == 300

    async def test_at_most_one_pass_per_resource(self):
        store = InMemoryStore()
        store.add_provider_config("default")
        resource_id = store.add_file(path="/tmp/a")
        record = store.resources[resource_id]
        remote = FakeRemote(delay=0.02)
        bus = EventBus()
        controller = make_controller(store, remote, event_bus=bus)

        task = asyncio.create_task(controller.start())
        for i in range(20):
            created = any(program == "touch" for _, program, _ in remote.log)
            if i >= 5 and created and record["deleted_at"] is None:
                store.mark_deleted(resource_id)
            controller.queue.add(resource_id)
            await bus.publish(ResourceEvent.from_resource(EventType.MODIFIED, record))
            await asyncio.sleep(0.01)
        for _ in range(100):
            if resource_id not in store.resources:
                break
            await asyncio.sleep(0.02)
        await controller.stop()
        await asyncio.wait_for(task, 2)

        programs = [program for phase, program, _ in remote.log if phase == "start"]
        assert "touch" in programs
        assert "rm" in programs
        assert programs.index("touch") < programs.index("rm")
        assert in_flight_overlaps(remote.log) == 0
        assert resource_id not in store.resources
        assert remote.files == set()

    async def test_deleted_resource_is_removed(self):
        store = InMemoryStore()
        store.add_provider_config("default")
        resource_id = store.add_file(path="/tmp/a")
        remote = FakeRemote()
        controller = make_controller(store, remote)

        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0.2)
        store.mark_deleted(resource_id)
        await controller.trigger_reconciliation(resource_id)
        await asyncio.sleep(0.2)
        await controller.stop()
        await asyncio.wait_for(task, 2)

        assert remote.files == set()
        assert resource_id not in store.resources


# ==================== Work Sources ====================


@pytest.mark.asyncio
class TestWorkSources:
    async def test_watch_queues_changed_resources(self):
        store = InMemoryStore()
        resource_id = store.add_file(next_reconcile_time=None)
        bus = EventBus()
        reconciler = mock_reconciler()
        controller = Controller(store, reconciler, fast_config(), bus)

        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0.05)
        await bus.publish(
            ResourceEvent.from_resource(EventType.CREATED, store.resources[resource_id])
        )
        await asyncio.sleep(0.05)
        await controller.stop()
        await asyncio.wait_for(task, 2)

        reconciler.reconcile.assert_awaited_once_with(resource_id)

    async def test_watch_ignores_condition_events(self):
        store = InMemoryStore()
        resource_id = store.add_file(next_reconcile_time=None)
        bus = EventBus()
        reconciler = mock_reconciler()
        controller = Controller(store, reconciler, fast_config(), bus)

        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0.05)
        await bus.publish(
            ResourceEvent.from_resource(
                EventType.CONDITION_CHANGED, store.resources[resource_id]
            )
        )
        await asyncio.sleep(0.05)
        await controller.stop()
        await asyncio.wait_for(task, 2)

        reconciler.reconcile.assert_not_called()

    async def test_resync_picks_up_due_resources(self):
        store = InMemoryStore()
        due = store.add_file("due")
        store.add_file("later", next_reconcile_time=60)
        reconciler = mock_reconciler()
        controller = Controller(store, reconciler, fast_config())

        await run_for(controller, 0.05)

        called = {c.args[0] for c in reconciler.reconcile.call_args_list}
        assert called == {due}

    async def test_trigger_reconciliation(self):
        store = InMemoryStore()
        resource_id = store.add_file(next_reconcile_time=None)
        controller = Controller(store, mock_reconciler(), fast_config())

        await controller.trigger_reconciliation(resource_id)

        assert store.resources[resource_id]["next_reconcile_time"] == 0
        assert len(controller.queue) == 1


# ==================== Workers ====================


@pytest.mark.asyncio
class TestWorker:
    async def test_requeue_after_readds_key(self):
        store = InMemoryStore()
        reconciler = mock_reconciler(
            ReconcileResult(success=True, requeue_after=0.01),
            ReconcileResult(success=True),
        )
        controller = Controller(store, reconciler, fast_config())
        worker = asyncio.create_task(controller._worker(0))

        controller.queue.add(1)
        await asyncio.sleep(0.1)
        await controller.queue.shutdown()
        await asyncio.wait_for(worker, 1)

        assert reconciler.reconcile.await_count == 2

    async def test_unexpected_error_is_rescheduled(self):
        store = InMemoryStore()
        resource_id = store.add_file(retry_count=3)
        reconciler = mock_reconciler(RuntimeError("boom"))
        controller = Controller(store, reconciler, fast_config(backoff_base_delay=30))
        worker = asyncio.create_task(controller._worker(0))

        controller.queue.add(resource_id)
        await asyncio.sleep(0.05)
        await controller.queue.shutdown()
        await asyncio.wait_for(worker, 1)

        assert store.last_schedule(resource_id) == (resource_id, 30, None)
        assert store.resources[resource_id]["retry_count"] == 3
        assert not controller.queue.is_processing(resource_id)

    async def test_stop_releases_idle_workers(self):
        controller = Controller(InMemoryStore(), mock_reconciler(), fast_config())

        await run_for(controller, 0.02)

        assert controller.queue.shutting_down
        assert controller._tasks == []

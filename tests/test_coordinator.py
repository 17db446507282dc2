import asyncio
import unittest
from playon_sync.clock import SystemClock
from playon_sync.connectivity import Connectivity
from playon_sync.coordinator import SyncCoordinator
from playon_sync.errors import FatalRemoteError, TransientRemoteError, UnregisteredOperationError
from playon_sync.models import (
    MediaStatus,
    OpType,
    RemoteListEntry,
    SyncState,
    UpdateProgressMutation,
    UpdateStatusMutation,
)
from playon_sync.mutation_queue import MutationQueue
from playon_sync.storage import MemoryStorage
from playon_sync.store import EntryStore

class FakeClock:
    def __init__(self):
        self.t = 1000.0
        self.sleeps = []
    def now(self):
        return self.t
    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.t += seconds
        await asyncio.sleep(0)

class FakeAdapter:
    def __init__(self):
        self.calls = []
        self.failures = []
        self.remote = None
        self.gate = None
        self.in_flight = 0
        self.max_in_flight = 0
    async def apply(self, mutation, credential):
        self.calls.append(mutation)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.failures:
                exc = self.failures.pop(0)
                if exc is not None:
                    raise exc
        finally:
            self.in_flight -= 1
    async def fetch_list_entry(self, remote_id, credential):
        return self.remote

class RecordingNotifier:
    def __init__(self):
        self.sent = []
    async def notify(self, title, body, icon=None):
        self.sent.append((title, body, icon))

class CoordinatorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.storage = MemoryStorage()
        self.store = EntryStore(self.storage, self.clock)
        self.queue = MutationQueue(self.storage, self.clock)
        self.adapter = FakeAdapter()
        self.notifier = RecordingNotifier()
        self.connectivity = Connectivity(online=True)
        self.token = "token"
        self.coordinator = self.make_coordinator(self.clock)

    def make_coordinator(self, clock, interval_seconds=60):
        return SyncCoordinator(
            self.store,
            self.queue,
            self.adapter,
            notifier=self.notifier,
            credential_provider=lambda: self.token,
            connectivity=self.connectivity,
            clock=clock,
            interval_seconds=interval_seconds,
            item_delay_seconds=0.5
        )

    def track(self, entry_id="100", progress=1, **extra):
        patch = {"title": "Frieren", "progress": progress, "remote_id": int(entry_id), "total": 28}
        patch.update(extra)
        return patch

class TestImmediateSync(CoordinatorTestCase):
    async def test_success_marks_synced_and_notifies(self):
        entry, synced = await self.coordinator.update_and_sync("100", self.track(progress=3, cover_image="f.jpg"))

        self.assertTrue(synced)
        self.assertEqual(entry.sync_state, SyncState.SYNCED)
        self.assertEqual(len(self.adapter.calls), 1)
        call = self.adapter.calls[0]
        self.assertEqual((call.remote_id, call.progress, call.status), (100, 3, MediaStatus.CURRENT))
        self.assertEqual(self.notifier.sent, [("Synced to AniList", "Updated: Frieren - Ep 3", "f.jpg")])
        self.assertEqual(len(self.queue), 0)

    async def test_manga_notification_uses_chapters(self):
        await self.coordinator.update_and_sync("100", self.track(progress=12, kind="manga", season=None))
        self.assertEqual(self.notifier.sent[0][1], "Updated: Frieren - Ch 12")

    async def test_without_credential_stays_local(self):
        self.token = None
        entry, synced = await self.coordinator.update_and_sync("100", self.track())
        self.assertFalse(synced)
        self.assertEqual(entry.sync_state, SyncState.UNSYNCED)
        self.assertEqual(self.adapter.calls, [])
        self.assertEqual(len(self.queue), 0)

    async def test_without_remote_id_stays_local(self):
        entry, synced = await self.coordinator.update_and_sync("src:1", {"title": "Local", "progress": 2})
        self.assertFalse(synced)
        self.assertEqual(self.adapter.calls, [])

    async def test_transient_failure_is_queued(self):
        self.adapter.failures = [TransientRemoteError("connection refused")]
        entry, synced = await self.coordinator.update_and_sync("100", self.track(progress=4))

        self.assertFalse(synced)
        self.assertEqual(entry.sync_state, SyncState.UNSYNCED)
        self.assertEqual(entry.last_sync_attempt_at, 1000.0)
        items = self.queue.items()
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].op_type, OpType.UPDATE_PROGRESS)
        self.assertEqual((items[0].mutation.entry_id, items[0].mutation.progress), ("100", 4))
        self.assertEqual(self.notifier.sent, [])

    async def test_rejection_raises_and_is_not_retried(self):
        self.adapter.failures = [FatalRemoteError("Not Found.", 404)]
        with self.assertRaises(FatalRemoteError):
            await self.coordinator.update_and_sync("100", self.track())

        entry = self.store.get("100")
        self.assertEqual(entry.sync_state, SyncState.ERROR)
        self.assertEqual(entry.last_sync_error, "Not Found.")
        self.assertEqual(len(self.queue), 0)

        # A new local change re-arms sync
        entry, synced = await self.coordinator.update_and_sync("100", self.track(progress=2))
        self.assertTrue(synced)
        self.assertEqual(entry.sync_state, SyncState.SYNCED)

    async def test_success_purges_superseded_queue_items(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("100", self.track(progress=3))
        self.assertEqual(len(self.queue), 1)

        self.connectivity.set_online(True)
        _, synced = await self.coordinator.update_and_sync("100", self.track(progress=5))
        self.assertTrue(synced)
        self.assertEqual(len(self.queue), 0)

    async def test_overlapping_syncs_go_out_in_order(self):
        self.adapter.gate = asyncio.Event()

        first = asyncio.create_task(self.coordinator.update_and_sync("100", self.track(progress=5)))
        await asyncio.sleep(0)
        second = asyncio.create_task(self.coordinator.update_and_sync("100", self.track(progress=6)))
        await asyncio.sleep(0)
        # The second write waits for the first one to land
        self.assertEqual(len(self.adapter.calls), 1)

        self.adapter.gate.set()
        await first
        entry, synced = await second

        self.assertTrue(synced)
        self.assertEqual(self.adapter.max_in_flight, 1)
        self.assertEqual([c.progress for c in self.adapter.calls], [5, 6])
        self.assertEqual(entry.progress, 6)
        self.assertEqual(entry.sync_state, SyncState.SYNCED)

    async def test_sync_pushes_latest_local_value(self):
        self.adapter.gate = asyncio.Event()
        first = asyncio.create_task(self.coordinator.update_and_sync("100", self.track(progress=2)))
        await asyncio.sleep(0)
        # Two writes queue up behind the one in flight
        second = asyncio.create_task(self.coordinator.update_and_sync("100", self.track(progress=4)))
        third = asyncio.create_task(self.coordinator.update_and_sync("100", self.track(progress=3)))
        await asyncio.sleep(0)

        self.adapter.gate.set()
        await asyncio.gather(first, second, third)

        # Neither waiting write pushes less than what is stored locally
        self.assertEqual([c.progress for c in self.adapter.calls], [2, 4, 4])
        self.assertEqual(self.store.get("100").sync_state, SyncState.SYNCED)

    async def test_status_change_syncs_entry(self):
        await self.coordinator.update_and_sync("100", self.track(progress=3))
        synced = await self.coordinator.set_status_and_sync("100", MediaStatus.PAUSED)
        self.assertTrue(synced)
        last = self.adapter.calls[-1]
        self.assertEqual((last.progress, last.status), (3, MediaStatus.PAUSED))
        self.assertFalse(await self.coordinator.set_status_and_sync("missing", MediaStatus.PAUSED))

    async def test_remote_status_for_untracked_media(self):
        synced = await self.coordinator.set_remote_status(555, MediaStatus.PLANNING)
        self.assertTrue(synced)
        self.assertIsInstance(self.adapter.calls[0], UpdateStatusMutation)

        self.adapter.failures = [TransientRemoteError("timeout")]
        self.assertFalse(await self.coordinator.set_remote_status(556, MediaStatus.PLANNING))
        self.assertEqual(self.queue.items()[0].op_type, OpType.UPDATE_STATUS)

class TestQueueReplay(CoordinatorTestCase):
    async def test_offline_scenario(self):
        self.connectivity.set_online(False)
        entry, synced = await self.coordinator.update_and_sync("100", self.track(progress=6))

        self.assertFalse(synced)
        self.assertEqual(self.adapter.calls, [])
        self.assertEqual(entry.sync_state, SyncState.UNSYNCED)
        self.assertEqual(len(self.queue), 1)

        self.connectivity.set_online(True)
        result = await self.coordinator.drain()

        self.assertEqual(result.applied, 1)
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.store.get("100").sync_state, SyncState.SYNCED)
        self.assertEqual(self.adapter.calls[0].progress, 6)
        self.assertEqual(len(self.notifier.sent), 1)

    async def test_drain_keeps_order_after_failure(self):
        self.connectivity.set_online(False)
        for entry_id in ["101", "102", "103"]:
            await self.coordinator.update_and_sync(entry_id, self.track(entry_id))
        self.connectivity.set_online(True)

        self.adapter.failures = [TransientRemoteError("timeout")]
        result = await self.coordinator.drain()

        self.assertTrue(result.stopped)
        self.assertEqual([i.mutation.entry_id for i in self.queue.items()], ["101", "102", "103"])
        self.assertEqual(len(self.adapter.calls), 1)
        self.assertEqual(self.store.get("101").sync_state, SyncState.UNSYNCED)

    async def test_inter_item_delay(self):
        self.connectivity.set_online(False)
        for entry_id in ["101", "102", "103"]:
            await self.coordinator.update_and_sync(entry_id, self.track(entry_id))
        self.connectivity.set_online(True)

        result = await self.coordinator.drain()
        self.assertEqual(result.applied, 3)
        self.assertEqual(self.clock.sleeps, [0.5, 0.5])
        self.assertEqual(self.coordinator.last_drain_at, 1001.0)

    async def test_single_concurrent_drain(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("100", self.track())
        self.connectivity.set_online(True)
        self.adapter.gate = asyncio.Event()

        first = asyncio.create_task(self.coordinator.drain())
        await asyncio.sleep(0)
        self.assertTrue(self.coordinator.draining)
        self.assertIsNone(await self.coordinator.drain())
        self.assertIsNone(await self.coordinator.drain())

        self.adapter.gate.set()
        result = await first
        self.assertEqual(result.applied, 1)
        self.assertEqual(len(self.adapter.calls), 1)
        self.assertFalse(self.coordinator.draining)

    async def test_replay_never_pushes_less_than_local(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("100", self.track(progress=3))
        await self.coordinator.update_and_sync("100", self.track(progress=5))
        self.assertEqual([i.mutation.progress for i in self.queue.items()], [3, 5])

        self.connectivity.set_online(True)
        result = await self.coordinator.drain()
        self.assertEqual([call.progress for call in self.adapter.calls], [5])
        self.assertEqual(len(self.notifier.sent), 1)
        self.assertEqual(result.applied, 1)
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.store.get("100").sync_state, SyncState.SYNCED)

    async def test_replay_sends_one_write_per_entry(self):
        self.connectivity.set_online(False)
        for progress in [1, 2, 3]:
            await self.coordinator.update_and_sync("100", self.track(progress=progress))
        await self.coordinator.update_and_sync("101", self.track("101", progress=4))
        self.assertEqual(len(self.queue), 4)

        self.connectivity.set_online(True)
        await self.coordinator.drain()

        self.assertEqual([(c.entry_id, c.progress) for c in self.adapter.calls], [("100", 3), ("101", 4)])
        self.assertEqual([body for _, body, _ in self.notifier.sent], [
            "Updated: Frieren - Ep 3",
            "Updated: Frieren - Ep 4",
        ])
        self.assertEqual(len(self.queue), 0)

    async def test_unexpected_error_during_drain_rearms_entry(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("100", self.track(progress=2))
        self.connectivity.set_online(True)

        self.adapter.failures = [ValueError("malformed payload")]
        result = await self.coordinator.drain()

        self.assertTrue(result.stopped)
        self.assertEqual(len(self.queue), 1)
        self.assertEqual(self.store.get("100").sync_state, SyncState.UNSYNCED)
        self.assertEqual(self.coordinator.status()["unsynced"], 1)

        # Next pass picks it up again
        result = await self.coordinator.drain()
        self.assertEqual(result.applied, 1)
        self.assertEqual(self.store.get("100").sync_state, SyncState.SYNCED)

    async def test_immediate_sync_waits_for_drain_item(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("100", self.track(progress=3))
        self.connectivity.set_online(True)
        self.adapter.gate = asyncio.Event()

        drain = asyncio.create_task(self.coordinator.drain())
        await asyncio.sleep(0)
        update = asyncio.create_task(self.coordinator.update_and_sync("100", self.track(progress=7)))
        await asyncio.sleep(0)
        self.assertEqual(len(self.adapter.calls), 1)

        self.adapter.gate.set()
        await drain
        entry, synced = await update

        self.assertTrue(synced)
        self.assertEqual(self.adapter.max_in_flight, 1)
        self.assertEqual([c.progress for c in self.adapter.calls], [3, 7])
        self.assertEqual(entry.progress, 7)
        self.assertEqual(entry.sync_state, SyncState.SYNCED)

    async def test_replay_follows_relinked_entry(self):
        self.queue.enqueue(OpType.UPDATE_PROGRESS, UpdateProgressMutation(
            entry_id="src:abc", remote_id=100, progress=2, status=MediaStatus.CURRENT
        ))
        self.store.upsert_progress("100", self.track(progress=4))
        await self.coordinator.drain()
        self.assertEqual(self.adapter.calls[0].entry_id, "100")
        self.assertEqual(self.adapter.calls[0].progress, 4)

    async def test_rejection_during_drain(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("101", self.track("101"))
        await self.coordinator.update_and_sync("102", self.track("102"))
        self.connectivity.set_online(True)

        self.adapter.failures = [FatalRemoteError("Invalid media", 400)]
        result = await self.coordinator.drain()

        self.assertEqual((result.purged, result.applied), (1, 1))
        self.assertEqual(self.store.get("101").sync_state, SyncState.ERROR)
        self.assertEqual(self.store.get("102").sync_state, SyncState.SYNCED)

    async def test_drain_without_credential_leaves_queue(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("100", self.track())
        self.connectivity.set_online(True)
        self.token = None
        self.assertIsNone(await self.coordinator.drain())
        self.assertEqual(len(self.queue), 1)

    async def test_empty_queue_drain(self):
        result = await self.coordinator.drain()
        self.assertEqual(result.applied, 0)
        self.assertEqual(self.adapter.calls, [])

    def test_processors_registered(self):
        queue = MutationQueue(MemoryStorage())
        with self.assertRaises(UnregisteredOperationError):
            queue.enqueue(OpType.UPDATE_STATUS, {"entry_id": "1", "remote_id": 1, "status": "CURRENT"})
        self.make_coordinator(self.clock)
        self.queue.enqueue(OpType.UPDATE_STATUS, {"entry_id": "1", "remote_id": 1, "status": "CURRENT"})

class TestTriggers(CoordinatorTestCase):
    async def test_network_reachable_triggers_drain(self):
        coordinator = self.make_coordinator(SystemClock(), interval_seconds=3600)
        coordinator.item_delay_seconds = 0
        coordinator.start()
        try:
            self.connectivity.set_online(False)
            await coordinator.update_and_sync("100", self.track(progress=2))
            self.assertEqual(len(self.queue), 1)

            self.connectivity.set_online(True)
            for _ in range(10):
                await asyncio.sleep(0)

            self.assertEqual(len(self.queue), 0)
            self.assertEqual(self.store.get("100").sync_state, SyncState.SYNCED)
        finally:
            await coordinator.stop()

    async def test_periodic_drain(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("100", self.track(progress=2))
        self.connectivity.set_online(True)

        self.coordinator.start()
        try:
            for _ in range(10):
                await asyncio.sleep(0)
        finally:
            await self.coordinator.stop()

        self.assertIn(60, self.clock.sleeps)
        self.assertEqual(len(self.queue), 0)
        self.assertFalse(self.coordinator.running)

    async def test_periodic_drain_waits_while_offline(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("100", self.track(progress=2))

        self.coordinator.start()
        try:
            for _ in range(10):
                await asyncio.sleep(0)
        finally:
            await self.coordinator.stop()

        self.assertEqual(self.adapter.calls, [])
        self.assertEqual(len(self.queue), 1)

    async def test_stopped_coordinator_ignores_reachable_event(self):
        self.coordinator.start()
        await self.coordinator.stop()
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("100", self.track())
        self.connectivity.set_online(True)
        await asyncio.sleep(0)
        self.assertEqual(len(self.queue), 1)

class TestSyncAllAndRecalibrate(CoordinatorTestCase):
    async def test_sync_all(self):
        self.store.upsert_progress("101", self.track("101"))
        self.store.upsert_progress("102", self.track("102"))
        self.store.upsert_progress("src:x", {"title": "Unlinked", "progress": 1})

        summary = await self.coordinator.sync_all()

        self.assertEqual((summary.success, summary.failed), (2, 0))
        self.assertEqual(self.clock.sleeps, [0.5])
        self.assertEqual(self.store.unsynced_entries(), [])

    async def test_sync_all_skips_queued_entries(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("101", self.track("101"))
        self.connectivity.set_online(True)
        self.store.upsert_progress("102", self.track("102"))

        summary = await self.coordinator.sync_all()
        self.assertEqual(summary.success, 1)
        self.assertEqual([c.entry_id for c in self.adapter.calls], ["102"])

    async def test_recalibrate_takes_remote_when_ahead(self):
        await self.coordinator.update_and_sync("100", self.track(progress=3))
        self.adapter.remote = RemoteListEntry(remote_id=100, progress=7, status=MediaStatus.CURRENT)

        remote = await self.coordinator.recalibrate("100")

        self.assertEqual(remote.progress, 7)
        entry = self.store.get("100")
        self.assertEqual(entry.progress, 7)
        self.assertEqual(entry.sync_state, SyncState.SYNCED)
        self.assertEqual(len(self.adapter.calls), 1)

    async def test_recalibrate_pushes_when_local_ahead(self):
        self.store.upsert_progress("100", self.track(progress=9))
        self.adapter.remote = RemoteListEntry(remote_id=100, progress=2, status=MediaStatus.CURRENT)

        await self.coordinator.recalibrate("100")

        self.assertEqual(self.store.get("100").progress, 9)
        self.assertEqual(self.adapter.calls[0].progress, 9)

    async def test_recalibrate_unknown_entry(self):
        self.assertIsNone(await self.coordinator.recalibrate("missing"))

    async def test_status_snapshot(self):
        self.connectivity.set_online(False)
        await self.coordinator.update_and_sync("100", self.track())
        status = self.coordinator.status()
        self.assertEqual(status["queue_length"], 1)
        self.assertEqual(status["unsynced"], 1)
        self.assertFalse(status["online"])
        self.assertTrue(status["logged_in"])

if __name__ == '__main__':
    unittest.main()

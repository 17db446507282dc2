import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set, Tuple, Union

from .clients.base import RemoteAdapter
from .clock import SystemClock
from .config import settings
from .connectivity import Connectivity
from .errors import FatalRemoteError, TransientRemoteError
from .models import (
    DrainResult,
    MediaKind,
    MediaStatus,
    OpType,
    ProgressEntry,
    ProgressPatch,
    RemoteListEntry,
    SyncState,
    SyncSummary,
    UpdateProgressMutation,
    UpdateStatusMutation,
)
from .mutation_queue import MutationQueue
from .notifier import LogNotifier, Notifier
from .store import EntryStore

logger = logging.getLogger(__name__)

CredentialProvider = Callable[[], Optional[str]]


def _default_credential() -> Optional[str]:
    return settings.ANILIST_TOKEN


class SyncCoordinator:
    """
    Pushes local progress to the remote tracking service.

    Local writes are synced immediately when possible. Anything that fails for
    network reasons goes to the mutation queue, which is drained on a timer and
    whenever the network comes back. Only one drain runs at a time, and queued
    writes go out one by one with a fixed pause between them. Remote writes
    never overlap, whether they come from an immediate sync or a drain.

    Create a single instance per process.
    """

    def __init__(
        self,
        store: EntryStore,
        queue: MutationQueue,
        adapter: RemoteAdapter,
        notifier: Optional[Notifier] = None,
        credential_provider: Optional[CredentialProvider] = None,
        connectivity: Optional[Connectivity] = None,
        clock=None,
        interval_seconds: Optional[float] = None,
        item_delay_seconds: Optional[float] = None,
    ):
        self.store = store
        self.queue = queue
        self.adapter = adapter
        self.notifier = notifier or LogNotifier(settings.NOTIFICATIONS_ENABLED)
        self.credential_provider = credential_provider or _default_credential
        self.connectivity = connectivity or Connectivity()
        self.clock = clock or SystemClock()
        self.interval_seconds = settings.SYNC_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self.item_delay_seconds = settings.SYNC_ITEM_DELAY_SECONDS if item_delay_seconds is None else item_delay_seconds

        self.running = False
        self.draining = False
        self.last_drain_at: float = 0.0
        self.last_drain_result: Optional[DrainResult] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        # Serializes every remote write so they land in the order they were made
        self._write_lock = asyncio.Lock()

        queue.register_processor(OpType.UPDATE_PROGRESS, self._process_progress)
        queue.register_processor(OpType.UPDATE_STATUS, self._process_status)

    # === Immediate sync ===

    async def sync_entry(self, entry_id: str) -> bool:
        """
        Push one entry's progress and status now.

        Returns True on success. Returns False when the entry cannot be synced
        (no credential, no remote id) or when the write was queued after a
        network failure. A rejection by the remote side leaves the entry in
        the error state and is raised to the caller.

        Remote writes go out one at a time; the pushed values are read after
        the write lock is taken, so a later local change is never overwritten
        by an older write landing last.
        """
        entry = self.store.get(entry_id)
        if entry is None:
            logger.debug(f"sync_entry: no entry {entry_id}")
            return False

        credential = self.credential_provider()
        if not credential:
            logger.info(f"Not logged in, skipping sync for: {entry.title}")
            return False
        if entry.remote_id is None:
            logger.info(f"No remote id for: {entry.title}")
            return False

        if not self.connectivity.is_online:
            logger.info(f"Offline, queuing sync for: {entry.title}")
            self.store.mark_sync_attempt(entry.id)
            self.store.mark_sync_pending(entry.id)
            self.queue.enqueue(OpType.UPDATE_PROGRESS, self._progress_mutation(entry))
            return False

        async with self._write_lock:
            entry = self.store.get(entry_id)
            if entry is None or entry.remote_id is None:
                return False
            mutation = self._progress_mutation(entry)
            self.store.mark_sync_attempt(entry.id)

            logger.info(f"Syncing \"{entry.title}\" {self._unit_label(entry)} {entry.progress} to AniList...")
            try:
                await self.adapter.apply(mutation, credential)
            except TransientRemoteError as e:
                logger.warning(f"Sync failed for {entry.title}, queued for retry: {e}")
                self.store.mark_sync_pending(entry.id)
                self.queue.enqueue(OpType.UPDATE_PROGRESS, mutation)
                return False
            except Exception as e:
                logger.error(f"Sync rejected for {entry.title}: {e}")
                self.store.mark_sync_error(entry.id, str(e))
                raise

            self._on_synced(entry, mutation.progress)

        await self._notify_synced(entry)
        return True

    @staticmethod
    def _progress_mutation(entry: ProgressEntry) -> UpdateProgressMutation:
        return UpdateProgressMutation(
            entry_id=entry.id,
            remote_id=entry.remote_id,
            progress=entry.progress,
            status=entry.status
        )

    def _on_synced(self, entry: ProgressEntry, progress: int):
        self.store.mark_synced(entry.id)
        # Older queued writes for this entry would only repeat or regress what just went out
        self.queue.purge(
            lambda item: item.op_type == OpType.UPDATE_PROGRESS
            and (item.mutation.entry_id == entry.id or item.mutation.remote_id == entry.remote_id)
            and item.mutation.progress <= progress
        )

    async def update_and_sync(
        self, entry_id: str, patch: Union[ProgressPatch, Dict[str, Any]]
    ) -> Tuple[ProgressEntry, bool]:
        """Save locally first, then try to push. Returns the stored entry and whether it synced."""
        entry = self.store.upsert_progress(entry_id, patch)
        synced = await self.sync_entry(entry.id)
        return self.store.get(entry.id) or entry, synced

    async def set_status_and_sync(self, entry_id: str, status: MediaStatus) -> bool:
        if self.store.set_status(entry_id, status) is None:
            return False
        return await self.sync_entry(entry_id)

    async def set_remote_status(self, remote_id: int, status: MediaStatus) -> bool:
        """
        Set the list status for a media id. Media tracked locally goes through the
        entry; anything else is sent as a status-only write.
        """
        entry = self.store.get_by_remote_id(remote_id)
        if entry is not None:
            return await self.set_status_and_sync(entry.id, status)

        credential = self.credential_provider()
        if not credential:
            logger.info(f"Not logged in, skipping status update for {remote_id}")
            return False

        mutation = UpdateStatusMutation(entry_id=str(remote_id), remote_id=remote_id, status=status)
        if not self.connectivity.is_online:
            self.queue.enqueue(OpType.UPDATE_STATUS, mutation)
            return False
        async with self._write_lock:
            try:
                await self.adapter.apply(mutation, credential)
            except TransientRemoteError as e:
                logger.warning(f"Status update for {remote_id} failed, queued for retry: {e}")
                self.queue.enqueue(OpType.UPDATE_STATUS, mutation)
                return False
        return True

    # === Queue processors ===

    def _entry_for(self, entry_id: str, remote_id: int) -> Optional[ProgressEntry]:
        # Linking may have re-keyed the entry since the write was queued
        return self.store.get(entry_id) or self.store.get_by_remote_id(remote_id)

    def _require_credential(self) -> str:
        credential = self.credential_provider()
        if not credential:
            raise TransientRemoteError("No credential available")
        return credential

    async def _process_progress(self, mutation: UpdateProgressMutation):
        credential = self._require_credential()
        async with self._write_lock:
            entry = self._entry_for(mutation.entry_id, mutation.remote_id)
            if entry is None:
                await self.adapter.apply(mutation, credential)
                return

            if entry.progress >= mutation.progress:
                # Never push less than what is recorded locally
                mutation = mutation.model_copy(update={
                    "entry_id": entry.id,
                    "progress": entry.progress,
                    "status": entry.status,
                })
            await self._push_entry(entry, mutation, credential)
        await self._notify_synced(entry)

    async def _process_status(self, mutation: UpdateStatusMutation):
        credential = self._require_credential()
        async with self._write_lock:
            entry = self._entry_for(mutation.entry_id, mutation.remote_id)
            if entry is None:
                await self.adapter.apply(mutation, credential)
                return

            full = self._progress_mutation(entry).model_copy(update={"remote_id": mutation.remote_id})
            await self._push_entry(entry, full, credential)
        await self._notify_synced(entry)

    async def _push_entry(self, entry: ProgressEntry, mutation: UpdateProgressMutation, credential: str):
        """Write one queued entry. The caller holds the write lock."""
        self.store.mark_sync_attempt(entry.id)
        try:
            await self.adapter.apply(mutation, credential)
        except FatalRemoteError as e:
            self.store.mark_sync_error(entry.id, str(e))
            raise
        except Exception:
            # Transient or unexpected: the item stays queued, so the entry goes back to pending
            self.store.mark_sync_pending(entry.id)
            raise
        self._on_synced(entry, mutation.progress)

    # === Queue drain ===

    async def _pause(self):
        await self.clock.sleep(self.item_delay_seconds)

    async def drain(self) -> Optional[DrainResult]:
        """
        Replay the mutation queue. A call made while a drain is already running
        returns None without doing anything.
        """
        if self.draining:
            logger.debug("Drain already in progress, skipping trigger")
            return None
        if len(self.queue) == 0:
            return DrainResult()
        if not self.credential_provider():
            logger.debug("Not logged in, leaving queue untouched")
            return None

        self.draining = True
        try:
            result = await self.queue.drain(pause=self._pause)
            self.last_drain_at = self.clock.now()
            self.last_drain_result = result
            return result
        finally:
            self.draining = False

    async def sync_all(self) -> SyncSummary:
        """Push every unsynced entry one at a time. Entries already waiting in the queue are left to the drain."""
        queued = {item.mutation.entry_id for item in self.queue.items()}
        pending = [e for e in self.store.unsynced_entries() if e.id not in queued]
        summary = SyncSummary()
        if not pending:
            logger.info("No entries to sync")
            return summary

        logger.info(f"Syncing {len(pending)} entries...")
        for index, entry in enumerate(pending):
            if index > 0:
                await self._pause()
            if not self.connectivity.is_online:
                summary.failed += len(pending) - index
                logger.warning("Went offline, stopping sync pass")
                break
            try:
                ok = await self.sync_entry(entry.id)
            except FatalRemoteError:
                ok = False
            if ok:
                summary.success += 1
            else:
                summary.failed += 1

        logger.info(f"Sync complete: {summary.success} synced, {summary.failed} failed")
        return summary

    # === Recalibration ===

    async def recalibrate(self, entry_id: str) -> Optional[RemoteListEntry]:
        """
        Compare an entry with the remote list and reconcile on request.

        A remote value ahead of ours is taken over locally; a local value ahead of
        the remote one is pushed. Progress never moves backwards either way.
        """
        entry = self.store.get(entry_id)
        credential = self.credential_provider()
        if entry is None or entry.remote_id is None or not credential:
            return None

        remote = await self.adapter.fetch_list_entry(entry.remote_id, credential)
        if remote is None:
            logger.info(f"{entry.title} is not on the remote list yet")
            await self.sync_entry(entry.id)
            return None

        if remote.progress > entry.progress:
            logger.info(f"Remote is ahead for {entry.title}: {entry.progress} -> {remote.progress}")
            self.store.upsert_progress(entry.id, ProgressPatch(
                progress=remote.progress,
                progress_secondary=remote.progress_secondary,
                status=remote.status
            ))
            self.store.mark_sync_attempt(entry.id)
            self.store.mark_synced(entry.id)
        elif remote.progress < entry.progress or (remote.status and remote.status != entry.status):
            logger.info(f"Local is ahead for {entry.title}, pushing {entry.progress}")
            await self.sync_entry(entry.id)
        elif entry.sync_state != SyncState.SYNCED:
            self.store.mark_sync_attempt(entry.id)
            self.store.mark_synced(entry.id)
        return remote

    # === Notifications ===

    @staticmethod
    def _unit_label(entry: ProgressEntry) -> str:
        return "Ch" if entry.kind == MediaKind.MANGA else "Ep"

    async def _notify_synced(self, entry: ProgressEntry):
        season = f" S{entry.season}" if entry.season else ""
        body = f"Updated: {entry.title} - {self._unit_label(entry)} {entry.progress}{season}"
        try:
            await self.notifier.notify("Synced to AniList", body, entry.cover_image)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    # === Scheduling ===

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _drain_safely(self):
        try:
            await self.drain()
        except Exception as e:
            logger.error(f"Error draining queue: {e}", exc_info=True)

    def _on_reachable(self):
        if self.running:
            logger.info("Network reconnected, syncing...")
            self._spawn(self._drain_safely())

    async def _periodic(self):
        logger.info(f"Starting auto-sync every {self.interval_seconds} seconds")
        while self.running:
            await self.clock.sleep(self.interval_seconds)
            if not self.running:
                break
            if self.connectivity.is_online:
                await self._drain_safely()

    def start(self):
        """Arm the periodic drain and the network-reachable trigger. Needs a running event loop."""
        if self.running:
            return
        self.running = True
        self.connectivity.add_listener(self._on_reachable)
        self._timer_task = self._spawn(self._periodic())

    async def stop(self):
        self.running = False
        self.connectivity.remove_listener(self._on_reachable)
        tasks = list(self._tasks)
        for task in tasks:
            if task is self._timer_task:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._timer_task = None

    def status(self) -> Dict[str, Any]:
        entries = self.store.all_entries()
        return {
            "online": self.connectivity.is_online,
            "logged_in": bool(self.credential_provider()),
            "draining": self.draining,
            "queue_length": len(self.queue),
            "entries": len(entries),
            "unsynced": sum(1 for e in entries if e.sync_state == SyncState.UNSYNCED),
            "errors": sum(1 for e in entries if e.sync_state == SyncState.ERROR),
            "last_drain_at": self.last_drain_at,
        }

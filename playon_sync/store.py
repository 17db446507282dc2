import json
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from .clock import SystemClock
from .models import (
    LibraryCategory,
    LibraryInfo,
    MediaStatus,
    ProgressEntry,
    ProgressPatch,
    SyncState,
)
from .storage import (
    CATEGORIES_KEY,
    DEFAULT_CATEGORY_KEY,
    ENTRIES_KEY,
    KeyValueStorage,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_ID = "default"


def source_key(source_id: str, source_media_id: str) -> str:
    """Local id for an entry that is not matched to a remote media id yet."""
    return f"{source_id}:{source_media_id}"


def derive_status(progress: int, total: Optional[int], prior: Optional[MediaStatus]) -> MediaStatus:
    """
    Status implied by a progress write.
    Reaching the known total completes the entry, a brand new entry is being
    consumed, and anything else keeps the status it already had.
    """
    if total and progress >= total:
        return MediaStatus.COMPLETED
    if prior is None:
        return MediaStatus.CURRENT
    return prior


class EntryStore:
    """
    Local source of truth for progress entries and library categories.

    Every mutation is written through to the key-value storage. Reads come from
    the in-memory copy loaded at construction. Public getters hand out copies,
    so callers cannot change stored state without going through a mutator.
    """

    def __init__(self, storage: KeyValueStorage, clock=None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self._entries: Dict[str, ProgressEntry] = self._load_entries()
        self._categories: List[LibraryCategory] = self._load_categories()

    # === Persistence ===

    def _load_entries(self) -> Dict[str, ProgressEntry]:
        raw = self.storage.get(ENTRIES_KEY)
        if not raw:
            return {}

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to parse progress entries: {e}. Starting with an empty store.")
            return {}

        entries = {}
        for key, value in data.items():
            try:
                entry = ProgressEntry.model_validate(value)
            except ValidationError as e:
                logger.warning(f"Skipping malformed entry {key}: {e.error_count()} validation errors")
                continue
            entries[entry.id] = entry
        logger.debug(f"Loaded {len(entries)} progress entries")
        return entries

    def _save(self):
        doc = {key: entry.model_dump(mode="json") for key, entry in self._entries.items()}
        self.storage.set(ENTRIES_KEY, json.dumps(doc))

    def _load_categories(self) -> List[LibraryCategory]:
        default = [LibraryCategory(id=DEFAULT_CATEGORY_ID, name="Default", order=0)]
        raw = self.storage.get(CATEGORIES_KEY)
        if not raw:
            return default
        try:
            cats = [LibraryCategory.model_validate(c) for c in json.loads(raw)]
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to parse library categories: {e}. Using defaults.")
            return default
        if not any(c.id == DEFAULT_CATEGORY_ID for c in cats):
            cats = default + cats
        return cats

    def _save_categories(self):
        self.storage.set(CATEGORIES_KEY, json.dumps([c.model_dump() for c in self._categories]))

    # === Lookups ===

    def get(self, entry_id: str) -> Optional[ProgressEntry]:
        entry = self._entries.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    def get_by_remote_id(self, remote_id: int) -> Optional[ProgressEntry]:
        entry = self._find_by_remote_id(remote_id)
        return entry.model_copy(deep=True) if entry else None

    def get_by_source(self, source_id: str, source_media_id: str) -> Optional[ProgressEntry]:
        entry = self._find_by_source(source_id, source_media_id)
        return entry.model_copy(deep=True) if entry else None

    def _find_by_remote_id(self, remote_id: int) -> Optional[ProgressEntry]:
        # Entries linked through link_remote_id are keyed by the remote id
        entry = self._entries.get(str(remote_id))
        if entry and entry.remote_id == remote_id:
            return entry
        return next((e for e in self._entries.values() if e.remote_id == remote_id), None)

    def _find_by_source(self, source_id: str, source_media_id: str) -> Optional[ProgressEntry]:
        return next(
            (e for e in self._entries.values()
             if e.source_id == source_id and e.source_media_id == source_media_id),
            None
        )

    def all_entries(self) -> List[ProgressEntry]:
        """All entries, most recently active first."""
        entries = sorted(self._entries.values(), key=lambda e: e.last_activity_at, reverse=True)
        return [e.model_copy(deep=True) for e in entries]

    def library_entries(self) -> List[ProgressEntry]:
        entries = sorted(
            (e for e in self._entries.values() if e.in_library),
            key=lambda e: e.title.casefold()
        )
        return [e.model_copy(deep=True) for e in entries]

    def entries_by_status(self, status: MediaStatus) -> List[ProgressEntry]:
        return [e for e in self.all_entries() if e.status == status]

    def unsynced_entries(self) -> List[ProgressEntry]:
        """Entries with local changes that can be pushed (a remote id is bound)."""
        return [
            e for e in self.all_entries()
            if e.sync_state == SyncState.UNSYNCED and e.remote_id is not None
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._entries

    # === Progress ===

    def upsert_progress(self, entry_id: str, patch: Union[ProgressPatch, Dict[str, Any]]) -> ProgressEntry:
        """
        Record local progress for an entry, creating it if needed.

        Progress only moves forward: the stored value becomes max(stored, patch.progress).
        Status follows derive_status unless the patch carries an explicit status.
        The entry is marked unsynced.
        """
        if not isinstance(patch, ProgressPatch):
            patch = ProgressPatch.model_validate(patch)

        now = self.clock.now()
        existing = self._entries.get(entry_id)
        entry = existing or ProgressEntry(
            id=entry_id,
            title=patch.title or entry_id,
            status=MediaStatus.PLANNING,
        )

        if patch.progress < entry.progress:
            logger.debug(f"Ignoring progress regression for {entry.title}: {entry.progress} -> {patch.progress}")

        progress = max(entry.progress, patch.progress)
        secondary = entry.progress_secondary
        if patch.progress_secondary is not None:
            secondary = max(secondary or 0, patch.progress_secondary)

        remote_id = entry.remote_id
        if patch.remote_id is not None:
            if remote_id is None:
                remote_id = patch.remote_id
            elif remote_id != patch.remote_id:
                logger.warning(
                    f"Entry {entry_id} is bound to remote id {remote_id}; "
                    f"ignoring {patch.remote_id}. Use link_remote_id to re-bind."
                )

        total = patch.total if patch.total is not None else entry.total
        if patch.status is not None:
            status = patch.status
        else:
            status = derive_status(progress, total, existing.status if existing else None)

        updates: Dict[str, Any] = {
            "progress": progress,
            "progress_secondary": secondary,
            "remote_id": remote_id,
            "total": total,
            "status": status,
            "last_activity_at": now,
            "sync_state": SyncState.UNSYNCED,
            "last_sync_error": None,
        }
        for field, value in (
            ("title", patch.title),
            ("title_romaji", patch.title_romaji),
            ("kind", patch.kind),
            ("total_secondary", patch.total_secondary),
            ("season", patch.season),
            ("source_id", patch.source_id),
            ("source_media_id", patch.source_media_id),
            ("last_unit_id", patch.unit_id),
            ("last_unit_title", patch.unit_title),
            ("cover_image", patch.cover_image),
            ("description", patch.description),
            ("genres", patch.genres),
            ("author", patch.author),
        ):
            if value is not None:
                updates[field] = value
        if patch.description is not None or patch.genres is not None:
            updates["cache_updated_at"] = now

        entry = entry.model_copy(update=updates)
        self._entries[entry_id] = entry
        self._save()

        logger.info(f"Updated progress: {entry.title} -> {entry.progress} ({entry.status.value})")
        return entry.model_copy(deep=True)

    def set_status(self, entry_id: str, status: MediaStatus) -> Optional[ProgressEntry]:
        """Explicit status change by the user. Re-arms sync."""
        entry = self._entries.get(entry_id)
        if not entry:
            logger.debug(f"set_status: no entry {entry_id}")
            return None
        entry.status = status
        entry.last_activity_at = self.clock.now()
        entry.sync_state = SyncState.UNSYNCED
        entry.last_sync_error = None
        self._save()
        logger.info(f"Status for {entry.title} set to {status.value}")
        return entry.model_copy(deep=True)

    # === Linking ===

    def link_remote_id(
        self,
        source_id: str,
        source_media_id: str,
        remote_id: int,
        title: str,
        cover_image: Optional[str] = None,
        total: Optional[int] = None,
    ) -> ProgressEntry:
        """
        Bind a source-provided media item to a remote media id.

        The entry is re-keyed to str(remote_id). An entry already stored under that
        key is merged with the source entry rather than overwritten, and the stale
        source-keyed record is removed.
        """
        key = str(remote_id)
        by_source = self._find_by_source(source_id, source_media_id)
        by_remote = self._entries.get(key)
        if by_source is not None and by_source.id == key:
            by_source = None

        if by_source and by_remote:
            entry = self._merge(by_remote, by_source)
            if entry.progress > by_remote.progress:
                entry.sync_state = SyncState.UNSYNCED
        elif by_source:
            entry = by_source.model_copy(deep=True)
        elif by_remote:
            entry = by_remote.model_copy(deep=True)
        else:
            entry = ProgressEntry(
                id=key,
                title=title,
                status=MediaStatus.PLANNING,
                last_activity_at=self.clock.now(),
                sync_state=SyncState.SYNCED,
            )

        entry.id = key
        entry.remote_id = remote_id
        entry.title = title
        entry.source_id = source_id
        entry.source_media_id = source_media_id
        entry.in_library = True
        if cover_image:
            entry.cover_image = cover_image
        if total is not None:
            entry.total = total
        if not entry.category_ids:
            entry.category_ids = {self.get_default_category()}

        if by_source:
            del self._entries[by_source.id]
        self._entries[key] = entry
        self._save()

        logger.info(f"Linked {source_id}/{source_media_id} ({title}) to remote id {remote_id}")
        return entry.model_copy(deep=True)

    @staticmethod
    def _merge(a: ProgressEntry, b: ProgressEntry) -> ProgressEntry:
        """Merge two records of the same media. Newer values win, progress never drops."""
        newer, older = (a, b) if a.last_activity_at >= b.last_activity_at else (b, a)
        merged = newer.model_copy(deep=True)

        merged.progress = max(a.progress, b.progress)
        if a.progress_secondary is not None or b.progress_secondary is not None:
            merged.progress_secondary = max(a.progress_secondary or 0, b.progress_secondary or 0)

        for field in ("title_romaji", "total", "total_secondary", "season", "last_unit_id",
                      "last_unit_title", "cover_image", "description", "author", "cache_updated_at",
                      "last_sync_attempt_at"):
            if getattr(merged, field) is None:
                setattr(merged, field, getattr(older, field))
        if not merged.genres:
            merged.genres = list(older.genres)

        merged.in_library = a.in_library or b.in_library
        merged.category_ids = a.category_ids | b.category_ids
        merged.bookmarks = a.bookmarks | b.bookmarks
        merged.downloads = a.downloads | b.downloads
        merged.status = derive_status(merged.progress, merged.total, merged.status)
        return merged

    # === Library ===

    def add_to_library(self, entry_id: str, info: Union[LibraryInfo, Dict[str, Any]]) -> ProgressEntry:
        if not isinstance(info, LibraryInfo):
            info = LibraryInfo.model_validate(info)

        entry = self._entries.get(entry_id)
        if entry is None:
            entry = ProgressEntry(
                id=entry_id,
                title=info.title,
                status=MediaStatus.PLANNING,
                last_activity_at=self.clock.now(),
                sync_state=SyncState.SYNCED,
            )
            self._entries[entry_id] = entry

        entry.title = info.title
        entry.in_library = True
        if entry.remote_id is None:
            entry.remote_id = info.remote_id
        for field in ("kind", "cover_image", "source_id", "source_media_id", "description", "genres", "author"):
            value = getattr(info, field)
            if value is not None:
                setattr(entry, field, value)
        if not entry.category_ids:
            entry.category_ids = {self.get_default_category()}

        self._save()
        logger.info(f"Added to library: {entry.title}")
        return entry.model_copy(deep=True)

    def remove_from_library(self, entry_id: str) -> None:
        """Drop library membership. Progress and history stay."""
        entry = self._entries.get(entry_id)
        if not entry or not entry.in_library:
            return
        entry.in_library = False
        self._save()
        logger.info(f"Removed from library: {entry.title}")

    def update_cache(
        self,
        entry_id: str,
        description: Optional[str] = None,
        genres: Optional[List[str]] = None,
        author: Optional[str] = None,
        cover_image: Optional[str] = None,
    ) -> None:
        entry = self._entries.get(entry_id)
        if not entry:
            return
        if description:
            entry.description = description
        if genres:
            entry.genres = list(genres)
        if author:
            entry.author = author
        if cover_image:
            entry.cover_image = cover_image
        entry.cache_updated_at = self.clock.now()
        self._save()

    def delete(self, entry_id: str) -> None:
        if self._entries.pop(entry_id, None) is not None:
            self._save()
            logger.info(f"Deleted entry {entry_id}")

    def clear(self) -> None:
        self._entries = {}
        self.storage.remove(ENTRIES_KEY)
        logger.warning("Progress store cleared")

    # === Set-style mutators ===

    def _update_set(self, entry_id: str, field: str, add: Iterable[str] = (), discard: Iterable[str] = ()) -> bool:
        """Apply set changes to one field. Returns True when something changed."""
        entry = self._entries.get(entry_id)
        if not entry:
            return False
        current = getattr(entry, field)
        updated = (current | set(add)) - set(discard)
        if updated == current:
            return False
        setattr(entry, field, updated)
        self._save()
        return True

    def set_categories(self, entry_id: str, category_ids: Iterable[str]) -> None:
        entry = self._entries.get(entry_id)
        if not entry:
            return
        wanted = set(category_ids)
        if wanted != entry.category_ids:
            entry.category_ids = wanted
            self._save()

    def add_to_category(self, entry_id: str, category_id: str) -> None:
        self._update_set(entry_id, "category_ids", add=[category_id])

    def remove_from_category(self, entry_id: str, category_id: str) -> None:
        self._update_set(entry_id, "category_ids", discard=[category_id])

    def add_bookmark(self, entry_id: str, unit_id: str) -> None:
        if self._update_set(entry_id, "bookmarks", add=[unit_id]):
            logger.debug(f"Bookmarked {unit_id} on {entry_id}")

    def remove_bookmark(self, entry_id: str, unit_id: str) -> None:
        if self._update_set(entry_id, "bookmarks", discard=[unit_id]):
            logger.debug(f"Removed bookmark {unit_id} on {entry_id}")

    def toggle_bookmark(self, entry_id: str, unit_id: str) -> bool:
        """Flip a bookmark. Returns whether the unit is bookmarked afterwards."""
        if self.is_bookmarked(entry_id, unit_id):
            self.remove_bookmark(entry_id, unit_id)
            return False
        self.add_bookmark(entry_id, unit_id)
        return entry_id in self._entries

    def is_bookmarked(self, entry_id: str, unit_id: str) -> bool:
        entry = self._entries.get(entry_id)
        return bool(entry and unit_id in entry.bookmarks)

    def mark_downloaded(self, entry_id: str, unit_id: str) -> None:
        self._update_set(entry_id, "downloads", add=[unit_id])

    def remove_download(self, entry_id: str, unit_id: str) -> None:
        self._update_set(entry_id, "downloads", discard=[unit_id])

    def is_downloaded(self, entry_id: str, unit_id: str) -> bool:
        entry = self._entries.get(entry_id)
        return bool(entry and unit_id in entry.downloads)

    # === Sync state ===

    def mark_sync_attempt(self, entry_id: str) -> None:
        entry = self._entries.get(entry_id)
        if not entry:
            return
        entry.sync_state = SyncState.SYNCING
        entry.last_sync_attempt_at = self.clock.now()
        self._save()

    def mark_synced(self, entry_id: str) -> bool:
        """
        Finish a successful attempt. Only an entry still in SYNCING moves to SYNCED;
        a local write that landed while the request was in flight keeps it unsynced.
        """
        entry = self._entries.get(entry_id)
        if not entry or entry.sync_state != SyncState.SYNCING:
            return False
        entry.sync_state = SyncState.SYNCED
        entry.last_sync_error = None
        entry.last_sync_attempt_at = self.clock.now()
        self._save()
        logger.info(f"Marked as synced: {entry.title}")
        return True

    def mark_sync_pending(self, entry_id: str) -> None:
        """A transient failure: the change is still waiting to go out."""
        entry = self._entries.get(entry_id)
        if not entry or entry.sync_state != SyncState.SYNCING:
            return
        entry.sync_state = SyncState.UNSYNCED
        self._save()

    def mark_sync_error(self, entry_id: str, message: str) -> None:
        entry = self._entries.get(entry_id)
        if not entry:
            return
        entry.last_sync_error = message
        if entry.sync_state == SyncState.SYNCING:
            entry.sync_state = SyncState.ERROR
        self._save()

    # === Categories ===

    def list_categories(self) -> List[LibraryCategory]:
        return sorted((c.model_copy() for c in self._categories), key=lambda c: c.order)

    def add_category(self, name: str) -> LibraryCategory:
        for category in self._categories:
            if category.name == name:
                return category.model_copy()
        category = LibraryCategory(
            id=uuid.uuid4().hex,
            name=name,
            order=max((c.order for c in self._categories), default=-1) + 1
        )
        self._categories.append(category)
        self._save_categories()
        logger.info(f"Added library category {name}")
        return category.model_copy()

    def delete_category(self, category_id: str) -> None:
        if category_id == DEFAULT_CATEGORY_ID:
            logger.warning("The default category cannot be deleted")
            return
        remaining = [c for c in self._categories if c.id != category_id]
        if len(remaining) == len(self._categories):
            return
        self._categories = remaining
        self._save_categories()

        changed = False
        for entry in self._entries.values():
            if category_id in entry.category_ids:
                entry.category_ids.discard(category_id)
                changed = True
        if changed:
            self._save()
        if self.get_default_category() == category_id:
            self.set_default_category(DEFAULT_CATEGORY_ID)

    def get_default_category(self) -> str:
        raw = self.storage.get(DEFAULT_CATEGORY_KEY)
        if not raw:
            return DEFAULT_CATEGORY_ID
        try:
            value = json.loads(raw)
        except ValueError:
            return DEFAULT_CATEGORY_ID
        return value if isinstance(value, str) and value else DEFAULT_CATEGORY_ID

    def set_default_category(self, category_id: str) -> None:
        self.storage.set(DEFAULT_CATEGORY_KEY, json.dumps(category_id))

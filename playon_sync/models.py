import uuid
from enum import Enum
from typing import Annotated, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, field_serializer


class MediaStatus(str, Enum):
    # Values match AniList's MediaListStatus
    PLANNING = "PLANNING"
    CURRENT = "CURRENT"
    PAUSED = "PAUSED"
    DROPPED = "DROPPED"
    COMPLETED = "COMPLETED"
    REPEATING = "REPEATING"


class SyncState(str, Enum):
    UNSYNCED = "unsynced"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


class MediaKind(str, Enum):
    ANIME = "anime"
    MANGA = "manga"


class OpType(str, Enum):
    UPDATE_PROGRESS = "update_progress"
    UPDATE_STATUS = "update_status"


class ProgressEntry(BaseModel):
    id: str
    title: str
    title_romaji: Optional[str] = None
    kind: MediaKind = MediaKind.ANIME
    remote_id: Optional[int] = None

    # Episodes or chapters; volumes for manga
    progress: int = Field(default=0, ge=0)
    progress_secondary: Optional[int] = Field(default=None, ge=0)
    total: Optional[int] = None
    total_secondary: Optional[int] = None
    season: Optional[int] = None

    status: MediaStatus = MediaStatus.PLANNING
    last_activity_at: float = 0.0

    sync_state: SyncState = SyncState.SYNCED
    last_sync_attempt_at: Optional[float] = None
    last_sync_error: Optional[str] = None

    # Provenance
    source_id: Optional[str] = None
    source_media_id: Optional[str] = None
    last_unit_id: Optional[str] = None
    last_unit_title: Optional[str] = None

    in_library: bool = False
    category_ids: Set[str] = Field(default_factory=set)
    bookmarks: Set[str] = Field(default_factory=set)
    downloads: Set[str] = Field(default_factory=set)

    # Cached details for offline viewing
    cover_image: Optional[str] = None
    description: Optional[str] = None
    genres: List[str] = Field(default_factory=list)
    author: Optional[str] = None
    cache_updated_at: Optional[float] = None

    @field_serializer("category_ids", "bookmarks", "downloads")
    def _sorted(self, value: Set[str]) -> List[str]:
        return sorted(value)


class ProgressPatch(BaseModel):
    """Fields a local progress write may carry. Unset fields keep the stored value."""
    title: Optional[str] = None
    title_romaji: Optional[str] = None
    kind: Optional[MediaKind] = None
    remote_id: Optional[int] = None
    progress: int = Field(ge=0)
    progress_secondary: Optional[int] = Field(default=None, ge=0)
    total: Optional[int] = None
    total_secondary: Optional[int] = None
    season: Optional[int] = None
    status: Optional[MediaStatus] = None  # explicit override
    source_id: Optional[str] = None
    source_media_id: Optional[str] = None
    unit_id: Optional[str] = None
    unit_title: Optional[str] = None
    cover_image: Optional[str] = None
    description: Optional[str] = None
    genres: Optional[List[str]] = None
    author: Optional[str] = None


class LibraryInfo(BaseModel):
    title: str
    kind: Optional[MediaKind] = None
    remote_id: Optional[int] = None
    cover_image: Optional[str] = None
    source_id: Optional[str] = None
    source_media_id: Optional[str] = None
    description: Optional[str] = None
    genres: Optional[List[str]] = None
    author: Optional[str] = None


class LibraryCategory(BaseModel):
    id: str
    name: str
    order: int = 0


class UpdateProgressMutation(BaseModel):
    kind: Literal["update_progress"] = "update_progress"
    entry_id: str
    remote_id: int
    progress: int = Field(ge=0)
    status: MediaStatus


class UpdateStatusMutation(BaseModel):
    kind: Literal["update_status"] = "update_status"
    entry_id: str
    remote_id: int
    status: MediaStatus


Mutation = Annotated[
    Union[UpdateProgressMutation, UpdateStatusMutation],
    Field(discriminator="kind")
]


class QueuedMutation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    mutation: Mutation
    enqueued_at: float = 0.0

    @property
    def op_type(self) -> OpType:
        return OpType(self.mutation.kind)


class RemoteListEntry(BaseModel):
    """The user's list entry for one media item as the remote service reports it."""
    remote_id: int
    progress: int = 0
    progress_secondary: Optional[int] = None
    status: Optional[MediaStatus] = None
    updated_at: float = 0.0


class DrainResult(BaseModel):
    applied: int = 0
    purged: int = 0
    remaining: int = 0
    stopped: bool = False


class SyncSummary(BaseModel):
    success: int = 0
    failed: int = 0

import logging
import httpx
from typing import Any, Dict, Optional, Union
from ..config import settings
from ..errors import FatalRemoteError, TransientRemoteError
from ..models import MediaStatus, RemoteListEntry, UpdateProgressMutation, UpdateStatusMutation

logger = logging.getLogger(__name__)

SAVE_MEDIA_LIST_ENTRY = """
mutation ($mediaId: Int, $progress: Int, $status: MediaListStatus) {
  SaveMediaListEntry(mediaId: $mediaId, progress: $progress, status: $status) {
    id
    progress
    status
    updatedAt
  }
}
"""

MEDIA_LIST_ENTRY_QUERY = """
query ($mediaId: Int) {
  Media(id: $mediaId) {
    id
    mediaListEntry {
      id
      progress
      progressVolumes
      status
      updatedAt
    }
  }
}
"""

# Worth retrying: throttling and server side trouble
RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


class AniListClient:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport
        )
        self.url = settings.ANILIST_API_URL

    async def close(self):
        await self.client.aclose()

    async def _graphql(self, query: str, variables: Dict[str, Any], credential: str) -> Dict[str, Any]:
        try:
            resp = await self.client.post(
                self.url,
                json={"query": query, "variables": variables},
                headers={"Authorization": f"Bearer {credential}"}
            )
        except httpx.TransportError as e:
            # Timeouts, DNS, refused connections
            raise TransientRemoteError(f"AniList unreachable: {e}") from e

        if resp.status_code in RETRYABLE_STATUS:
            retry_after = resp.headers.get("Retry-After")
            hint = f" (retry after {retry_after}s)" if retry_after else ""
            raise TransientRemoteError(f"AniList returned {resp.status_code}{hint}", resp.status_code)

        try:
            body = resp.json()
        except ValueError as e:
            if resp.is_success:
                raise TransientRemoteError(f"Unreadable AniList response: {e}", resp.status_code) from e
            raise FatalRemoteError(f"AniList returned {resp.status_code}", resp.status_code) from e

        if not isinstance(body, dict):
            body = {}
        errors = body.get("errors")
        if errors or not resp.is_success:
            message = "; ".join(
                str(err.get("message", err) if isinstance(err, dict) else err) for err in errors or []
            ) or resp.reason_phrase
            raise FatalRemoteError(f"AniList rejected request: {message}", resp.status_code)

        return body.get("data") or {}

    async def apply(self, mutation: Union[UpdateProgressMutation, UpdateStatusMutation], credential: str) -> None:
        variables: Dict[str, Any] = {"mediaId": mutation.remote_id, "status": mutation.status.value}
        if isinstance(mutation, UpdateProgressMutation):
            variables["progress"] = mutation.progress

        if settings.DRY_RUN:
            logger.info(f"[DRY RUN] Would update AniList media {mutation.remote_id}: {variables}")
            return

        data = await self._graphql(SAVE_MEDIA_LIST_ENTRY, variables, credential)
        saved = data.get("SaveMediaListEntry") or {}
        logger.info(
            f"Updated AniList media {mutation.remote_id}: "
            f"progress={saved.get('progress', variables.get('progress'))} status={saved.get('status', variables['status'])}"
        )

    async def fetch_list_entry(self, remote_id: int, credential: str) -> Optional[RemoteListEntry]:
        """
        Fetch the user's list entry for one media id.
        Returns None when the media is not on the user's list.
        """
        data = await self._graphql(MEDIA_LIST_ENTRY_QUERY, {"mediaId": remote_id}, credential)
        entry = (data.get("Media") or {}).get("mediaListEntry")
        if not entry:
            return None

        status = entry.get("status")
        return RemoteListEntry(
            remote_id=remote_id,
            progress=entry.get("progress") or 0,
            progress_secondary=entry.get("progressVolumes"),
            status=MediaStatus(status) if status else None,
            updated_at=float(entry.get("updatedAt") or 0)
        )

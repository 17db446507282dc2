from typing import Optional, Protocol, Union

from ..models import RemoteListEntry, UpdateProgressMutation, UpdateStatusMutation


class RemoteAdapter(Protocol):
    """
    Write contract against the remote tracking service.

    apply() returns on success and raises TransientRemoteError for failures worth
    retrying or FatalRemoteError when the remote side rejected the write.
    Session validity is the adapter's concern; callers only check that a
    credential exists.
    """

    async def apply(
        self,
        mutation: Union[UpdateProgressMutation, UpdateStatusMutation],
        credential: str,
    ) -> None: ...

    async def fetch_list_entry(self, remote_id: int, credential: str) -> Optional[RemoteListEntry]: ...

from __future__ import annotations

from typing import Optional, Protocol


DEFAULT_FILE_NAME = "tracker-data.json"
DEFAULT_DESCRIPTION = "Tracker backup data"


class RemoteBlobClient(Protocol):
    """
    One named file inside one remote container.

    - `fetch` returns the raw file text, or None when the container is
      reachable but holds no file under `file_name` yet.
    - `put` creates or replaces the file.
    - Failures raise `common.errors` kinds: AuthenticationRejected,
      RateLimited, NetworkUnreachable, ContainerNotFound.
    """

    async def fetch(self, container_id: str, credential: str, file_name: str) -> Optional[str]:
        ...

    async def put(
        self,
        container_id: str,
        credential: str,
        file_name: str,
        content: str,
        description: str = DEFAULT_DESCRIPTION,
    ) -> None:
        ...

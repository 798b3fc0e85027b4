from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .errors import (
    AuthenticationRejected,
    ContainerNotFound,
    NetworkUnreachable,
    RateLimited,
    SyncError,
)
from .rate_limiter import RateLimitError, SlidingWindowRateLimiter
from .remote import DEFAULT_DESCRIPTION


DEFAULT_API_BASE = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"

logger = logging.getLogger(__name__)


class GistApiError(SyncError):
    """GitHub returned an unexpected status or a malformed gist payload."""

    user_message = "Unexpected response from GitHub."


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _is_rate_limited(resp: httpx.Response) -> bool:
    # GitHub signals primary/secondary rate limits on 403 as well as 429
    if resp.status_code == 429:
        return True
    if resp.status_code != 403:
        return False
    return resp.headers.get("x-ratelimit-remaining") == "0" or "retry-after" in resp.headers


class GistBlobClient:
    """
    Remote blob client storing the synced document as one file of a GitHub Gist.

    Notes
    - The container id is the gist id; the credential is a token with `gist` scope.
    - A gist that exists but lacks the file is the "nothing synced yet" case:
      `fetch` returns None. A missing gist raises ContainerNotFound.
    - 429/5xx responses are retried with exponential backoff honoring
      `Retry-After`; transport failures raise NetworkUnreachable at once and
      are left for the next scheduled attempt.
    - Large files come back `truncated` from the API; their `raw_url` is fetched.
    """

    def __init__(
        self,
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 15.0,
        max_per_minute: int = 30,
        max_attempts: int = 3,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout)
        self._limiter = SlidingWindowRateLimiter(max_calls=max_per_minute, per_seconds=60.0)
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "GistBlobClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --------------- Public API ---------------
    async def fetch(self, container_id: str, credential: str, file_name: str) -> Optional[str]:
        """Return the content of `file_name` in the gist, or None if the gist has no such file."""
        resp = await self._request("GET", self._gist_url(container_id), credential)
        files = self._files(resp)
        entry = files.get(file_name)
        if entry is None:
            logger.info("File %s not found in gist %s", file_name, container_id)
            return None
        if not isinstance(entry, dict):
            raise GistApiError(f"Malformed gist file entry for {file_name}")

        if entry.get("truncated") and isinstance(entry.get("raw_url"), str):
            raw = await self._request("GET", entry["raw_url"], credential)
            return raw.text

        content = entry.get("content")
        if not isinstance(content, str):
            raise GistApiError(f"Gist file {file_name} has no text content")
        return content

    async def put(
        self,
        container_id: str,
        credential: str,
        file_name: str,
        content: str,
        description: str = DEFAULT_DESCRIPTION,
    ) -> None:
        """Create or replace `file_name` in the gist."""
        body = {"description": description, "files": {file_name: {"content": content}}}
        await self._request("PATCH", self._gist_url(container_id), credential, json_body=body)
        logger.info("Uploaded %s to gist %s (%d chars)", file_name, container_id, len(content))

    async def create(
        self,
        credential: str,
        file_name: str,
        content: str,
        description: str = DEFAULT_DESCRIPTION,
        *,
        public: bool = False,
    ) -> str:
        """Create a new gist holding one file; returns the new gist id."""
        body = {
            "description": description,
            "public": public,
            "files": {file_name: {"content": content}},
        }
        resp = await self._request("POST", f"{self._api_base}/gists", credential, json_body=body)
        data = self._json(resp)
        gist_id = data.get("id")
        if not isinstance(gist_id, str) or not gist_id:
            raise GistApiError("Gist creation response lacks an id")
        logger.info("Created gist %s", gist_id)
        return gist_id

    async def delete_file(self, container_id: str, credential: str, file_name: str) -> None:
        body: Dict[str, Any] = {"files": {file_name: None}}
        await self._request("PATCH", self._gist_url(container_id), credential, json_body=body)

    async def list_files(self, container_id: str, credential: str) -> List[str]:
        resp = await self._request("GET", self._gist_url(container_id), credential)
        return sorted(self._files(resp).keys())

    # --------------- Internal ---------------
    def _gist_url(self, container_id: str) -> str:
        if not container_id:
            raise ValueError("container_id (gist id) is required")
        return f"{self._api_base}/gists/{container_id}"

    @staticmethod
    def _headers(credential: str) -> Dict[str, str]:
        if not credential:
            raise AuthenticationRejected("No access token configured")
        return {
            "Authorization": f"Bearer {credential}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise GistApiError("Failed to parse JSON from GitHub") from exc
        if not isinstance(data, dict):
            raise GistApiError("Malformed response from GitHub")
        return data

    def _files(self, resp: httpx.Response) -> Dict[str, Any]:
        files = self._json(resp).get("files")
        if not isinstance(files, dict):
            raise GistApiError("Gist response has no files map")
        return files

    async def _request(
        self,
        method: str,
        url: str,
        credential: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = self._headers(credential)
        try:
            await self._limiter.acquire(blocking=True)
        except RateLimitError as rl:
            raise RateLimited("Local rate limiter prevented request") from rl

        attempt = 0
        backoff = 0.5
        while True:
            try:
                resp = await self._client.request(method, url, headers=headers, json=json_body)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                raise NetworkUnreachable(f"{method} {url} failed: {exc}") from exc

            status = resp.status_code
            if status < 300:
                return resp

            rate_limited = _is_rate_limited(resp)
            if status == 401 or (status == 403 and not rate_limited):
                raise AuthenticationRejected(f"HTTP {status} from GitHub: {resp.text[:200]}")
            if status == 404:
                raise ContainerNotFound(f"HTTP 404 from GitHub for {url}")

            if rate_limited or status in (500, 502, 503, 504):
                attempt += 1
                retry_after = _retry_after(resp)
                if attempt >= self._max_attempts:
                    if rate_limited:
                        raise RateLimited(
                            f"HTTP {status} from GitHub: rate limited", retry_after=retry_after
                        )
                    raise NetworkUnreachable(f"HTTP {status} from GitHub after {attempt} attempts")
                delay = retry_after if retry_after is not None else backoff
                logger.debug("GitHub %s %s returned %s; retrying in %.1fs", method, url, status, delay)
                await self._sleep(min(delay, 10.0))
                backoff = min(backoff * 2, 8.0)
                continue

            raise GistApiError(f"HTTP {status} from GitHub: {resp.text[:200]}")


__all__ = ["GistBlobClient", "GistApiError", "DEFAULT_API_BASE"]

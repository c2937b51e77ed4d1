"""
Story source: ranked id lists per category and item details.

The shipped implementation reads the public Hacker News Firebase API.
Transient failures (transport errors, 5xx) are retried with tenacity; a rank
list that still cannot be fetched aborts the crawl tick.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol, cast

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from qnews.constants import (
    CATEGORIES,
    EXTERNAL_REQUEST_SEMAPHORE,
    HN_API_BASE,
    MAX_RANK,
    SOURCE_HTTP_CONNECT_TIMEOUT,
    SOURCE_HTTP_TIMEOUT,
    SOURCE_RETRY_ATTEMPTS,
    SOURCE_RETRY_WAIT_MAX,
    SOURCE_RETRY_WAIT_MIN,
)
from qnews.errors import SourceError
from qnews.logging_config import get_logger
from qnews.models import ScrapedStory

logger = get_logger(__name__)


class RetryableSourceError(Exception):
    """Transport error or 5xx response worth another attempt."""


class StorySource(Protocol):
    async def ranked_ids(self, category: str) -> list[int]: ...

    async def item_details(self, ids: list[int]) -> list[ScrapedStory]: ...


def parse_item(sid: int, data: Any) -> ScrapedStory:
    """Map a Firebase item payload to a ScrapedStory. Unusable payloads get id 0."""
    if not isinstance(data, dict):
        return ScrapedStory(id=0)
    item = cast(dict[str, Any], data)
    if item.get("deleted") or item.get("dead") or item.get("id") != sid:
        return ScrapedStory(id=0)
    try:
        return ScrapedStory(
            id=sid,
            by=str(item.get("by", "")),
            title=str(item.get("title", "")),
            url=str(item.get("url", "")),
            score=int(item.get("score", 0) or 0),
            descendants=int(item.get("descendants", 0) or 0),
            submission_time=int(item.get("time", 0) or 0),
        )
    except (TypeError, ValueError):
        return ScrapedStory(id=0)


class HNFirebaseSource:
    def __init__(
        self,
        base_url: str = HN_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
        retry_attempts: int = SOURCE_RETRY_ATTEMPTS,
        retry_wait_min: float = SOURCE_RETRY_WAIT_MIN,
        retry_wait_max: float = SOURCE_RETRY_WAIT_MAX,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client: httpx.AsyncClient = client or httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(SOURCE_HTTP_TIMEOUT, connect=SOURCE_HTTP_CONNECT_TIMEOUT),
        )
        self.retry_attempts = retry_attempts
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self._sem = asyncio.Semaphore(EXTERNAL_REQUEST_SEMAPHORE)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _get_json(self, path: str) -> Any:
        url = f"{self.base_url}/{path}"
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            retry=retry_if_exception_type(RetryableSourceError),
            wait=wait_random_exponential(min=self.retry_wait_min, max=self.retry_wait_max),
            reraise=True,
        ):
            with attempt:
                async with self._sem:
                    try:
                        resp = await self.client.get(url)
                    except httpx.TransportError as e:
                        raise RetryableSourceError(f"GET {url}: {e}") from e
                if resp.status_code >= 500:
                    raise RetryableSourceError(f"GET {url}: HTTP {resp.status_code}")
                resp.raise_for_status()
                return resp.json()

    async def ranked_ids(self, category: str) -> list[int]:
        if category not in CATEGORIES:
            raise ValueError(f"Unknown category {category}")
        try:
            data = await self._get_json(f"{category}stories.json")
        except (RetryableSourceError, httpx.HTTPError, ValueError) as e:
            raise SourceError(f"{category} rank list: {e}") from e
        if not isinstance(data, list):
            raise SourceError(f"{category} rank list: expected a JSON array")
        ids = [int(x) for x in data if isinstance(x, int)]
        return ids[:MAX_RANK]

    async def _item(self, sid: int) -> ScrapedStory:
        try:
            data = await self._get_json(f"item/{sid}.json")
        except (RetryableSourceError, httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to fetch item details", item_id=sid, error=str(e))
            return ScrapedStory(id=0)
        return parse_item(sid, data)

    async def item_details(self, ids: list[int]) -> list[ScrapedStory]:
        return list(await asyncio.gather(*(self._item(sid) for sid in ids)))

"""
Archive stores and the per-item archive blob.

An archived item keeps its row in ``stories``; its samples move to a JSON
blob keyed ``{id}.json`` holding the rank, upvote and penalty series.
"""

from __future__ import annotations

import asyncio
import gzip
import json
from pathlib import Path
from typing import Optional, Protocol

import httpx

from qnews.cache_utils import atomic_write_bytes
from qnews.constants import ARCHIVE_CONTENT_TYPE, ARCHIVE_HTTP_TIMEOUT, MAX_RANK, UNRANKED_PLOT_RANK
from qnews.errors import ArchiveError
from qnews.logging_config import get_logger
from qnews.models import ArchiveDict, ModelParams, StoryDetailsDict
from qnews.storage import RANK_COLUMNS, NewsDatabase

logger = get_logger(__name__)


class ArchiveStore(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def upload(self, key: str, data: bytes, content_type: str) -> None: ...


def archive_key(item_id: int) -> str:
    return f"{item_id}.json"


class DirectoryArchiveStore:
    """Blobs as files under one directory."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _file(self, key: str) -> Path:
        if "/" in key or key.startswith("."):
            raise ArchiveError(f"Invalid archive key {key!r}")
        return self.path / key

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._file(key).exists)

    async def upload(self, key: str, data: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(atomic_write_bytes, self._file(key), data)
        except OSError as e:
            raise ArchiveError(f"write {key}: {e}") from e


class HTTPArchiveStore:
    """Blobs behind an HTTP object store: HEAD to check, PUT (gzipped) to upload."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self.client: httpx.AsyncClient = client or httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(ARCHIVE_HTTP_TIMEOUT),
        )
        if client is not None and headers:
            self.client.headers.update(headers)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def exists(self, key: str) -> bool:
        url = f"{self.base_url}/{key}"
        try:
            resp = await self.client.head(url)
        except httpx.HTTPError as e:
            raise ArchiveError(f"HEAD {url}: {e}") from e
        if resp.status_code == 404:
            return False
        if resp.status_code >= 300:
            raise ArchiveError(f"HEAD {url}: HTTP {resp.status_code}")
        return True

    async def upload(self, key: str, data: bytes, content_type: str) -> None:
        url = f"{self.base_url}/{key}"
        try:
            resp = await self.client.put(
                url,
                content=gzip.compress(data),
                headers={"Content-Type": content_type, "Content-Encoding": "gzip"},
            )
        except httpx.HTTPError as e:
            raise ArchiveError(f"PUT {url}: {e}") from e
        if resp.status_code >= 300:
            raise ArchiveError(f"PUT {url}: HTTP {resp.status_code}")


def _age_hours(sample_time: int, submission_time: int) -> float:
    return (sample_time - submission_time) / 3600


def rank_datapoints(rows, submission_time: int) -> list[list[float | int]]:
    """[ageHours, qnRank, topRank, newRank, bestRank, askRank, showRank] per sample.

    Missing ranks, and QN ranks beyond the last page, plot as 91.
    """
    out: list[list[float | int]] = []
    for row in rows:
        qn_rank = row["qnRank"]
        if qn_rank is None or qn_rank > MAX_RANK:
            qn_rank = UNRANKED_PLOT_RANK
        point: list[float | int] = [_age_hours(row["sampleTime"], submission_time), qn_rank]
        point.extend(
            row[name] if row[name] is not None else UNRANKED_PLOT_RANK for name in RANK_COLUMNS
        )
        out.append(point)
    return out


def upvotes_datapoints(
    rows, submission_time: int, params: ModelParams
) -> list[list[float | int]]:
    """[ageHours, upvotes, expectedUpvotes, upvoteRate] per sample."""
    return [
        [
            _age_hours(row["sampleTime"], submission_time),
            row["cumulativeUpvotes"],
            row["cumulativeExpectedUpvotes"],
            params.upvote_rate(row["cumulativeUpvotes"], row["cumulativeExpectedUpvotes"]),
        ]
        for row in rows
    ]


def penalty_datapoints(rows, submission_time: int) -> list[list[float | int]]:
    """[ageHours, penalty, currentPenalty] per sample."""
    return [
        [
            _age_hours(row["sampleTime"], submission_time),
            row["penalty"],
            row["currentPenalty"] or 0.0,
        ]
        for row in rows
    ]


def max_sample_time(rows) -> int:
    return max(int(row["sampleTime"]) for row in rows)


async def story_details(db: NewsDatabase, item_id: int) -> StoryDetailsDict:
    row = await db.story_details(item_id)
    return {
        "ID": row["id"],
        "By": row["by"],
        "Title": row["title"],
        "URL": row["url"],
        "SubmissionTime": row["submissionTime"],
        "OriginalSubmissionTime": row["timestamp"],
        "Score": row["score"],
        "Comments": row["descendants"],
        "CumulativeUpvotes": row["cumulativeUpvotes"],
        "CumulativeExpectedUpvotes": row["cumulativeExpectedUpvotes"],
    }


async def build_archive(db: NewsDatabase, item_id: int, params: ModelParams) -> ArchiveDict:
    details = await story_details(db, item_id)
    rows = await db.select_item_samples(item_id)
    submitted = details["OriginalSubmissionTime"]
    return {
        **details,
        "RanksPlotData": rank_datapoints(rows, submitted),
        "UpvotesPlotData": upvotes_datapoints(rows, submitted, params),
        "PenaltyPlotData": penalty_datapoints(rows, submitted),
        "MaxSampleTime": max_sample_time(rows),
    }


async def build_archive_blob(db: NewsDatabase, item_id: int, params: ModelParams) -> bytes:
    return json.dumps(await build_archive(db, item_id, params)).encode()


async def archive_item(
    db: NewsDatabase, store: ArchiveStore, item_id: int, params: ModelParams
) -> bool:
    """Upload one item's blob unless it is already there. Returns True if uploaded."""
    key = archive_key(item_id)
    if await store.exists(key):
        logger.debug("Archive already exists", item_id=item_id, key=key)
        return False
    data = await build_archive_blob(db, item_id, params)
    await store.upload(key, data, ARCHIVE_CONTENT_TYPE)
    logger.debug("Uploaded archive", item_id=item_id, key=key, size=len(data))
    return True

"""Minute-aligned crawl scheduler."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Optional

import structlog

from qnews.config import Settings
from qnews.constants import (
    CATEGORY_PAUSE_SECONDS,
    CRAWL_DEADLINE_SLACK_SECONDS,
    CRAWL_INTERVAL_SECONDS,
    MIN_ARCHIVE_WINDOW_SECONDS,
    WAKE_TOLERANCE_SECONDS,
)
from qnews.crawler import ingest_once
from qnews.errors import CrawlTimeoutError
from qnews.logging_config import get_logger
from qnews.models import CrawlResult
from qnews.postprocess import recompute_ranks
from qnews.source import StorySource
from qnews.storage import NewsDatabase
from qnews.worker import ArchiveWorker

logger = get_logger(__name__)


def seconds_until_next_minute(now: float) -> float:
    """Time to the next minute boundary. Exactly on a boundary waits a full minute."""
    return CRAWL_INTERVAL_SECONDS - (now % CRAWL_INTERVAL_SECONDS)


class CrawlScheduler:
    def __init__(
        self,
        source: StorySource,
        db: NewsDatabase,
        settings: Settings,
        worker: Optional[ArchiveWorker] = None,
        clock: Callable[[], float] = time.time,
        category_pause: float = CATEGORY_PAUSE_SECONDS,
    ) -> None:
        self.source = source
        self.db = db
        self.settings = settings
        self.worker = worker
        self.clock = clock
        self.category_pause = category_pause
        self.last_result: Optional[CrawlResult] = None

    async def crawl(self, sample_time: int, deadline: float) -> CrawlResult:
        """Ingest and re-rank one tick, all before ``deadline`` (event loop time)."""
        try:
            async with asyncio.timeout_at(deadline):
                result = await ingest_once(
                    self.source, self.db, self.settings, sample_time, self.category_pause
                )
                await recompute_ranks(self.db, self.settings, sample_time)
        except TimeoutError as e:
            raise CrawlTimeoutError(f"Crawl at {sample_time} missed its deadline") from e
        return result

    def tick_deadline(self) -> float:
        """Loop-time deadline one slack interval before the next minute boundary.

        Waking a hair before the boundary that was slept towards counts as
        being on it, so the tick still gets a full interval.
        """
        loop = asyncio.get_running_loop()
        until_boundary = seconds_until_next_minute(self.clock())
        if until_boundary < WAKE_TOLERANCE_SECONDS:
            until_boundary += CRAWL_INTERVAL_SECONDS
        return loop.time() + until_boundary - CRAWL_DEADLINE_SLACK_SECONDS

    async def tick(self) -> Optional[CrawlResult]:
        """Run one tick, logging failures. Hands spare time to the archive worker."""
        sample_time = int(self.clock())
        deadline = self.tick_deadline()
        with structlog.contextvars.bound_contextvars(sample_time=sample_time):
            try:
                result = await self.crawl(sample_time, deadline)
            except CrawlTimeoutError as e:
                logger.warning("Crawl timed out", error=str(e))
                return None
            except Exception:
                logger.exception("Crawl failed")
                return None
        self.last_result = result

        remaining = deadline - asyncio.get_running_loop().time()
        if self.worker is not None and remaining >= MIN_ARCHIVE_WINDOW_SECONDS:
            self.worker.signal(deadline)
        return result

    async def catch_up(self) -> Optional[CrawlResult]:
        """Crawl right away when the last crawl is a full interval old."""
        last = await self.db.last_crawl_time()
        elapsed = self.clock() - last
        if elapsed < CRAWL_INTERVAL_SECONDS:
            logger.info("Last crawl is recent, waiting for the next minute", elapsed=round(elapsed))
            return None
        logger.info("Crawling immediately on startup", elapsed=round(elapsed))
        return await self.tick()

    async def run(self) -> None:
        await self.catch_up()
        while True:
            await asyncio.sleep(
                seconds_until_next_minute(self.clock()) + WAKE_TOLERANCE_SECONDS
            )
            await self.tick()

"""Process wiring: store, source, archive worker and scheduler."""

from __future__ import annotations

import asyncio
from typing import Optional

from qnews.archive import ArchiveStore, DirectoryArchiveStore, HTTPArchiveStore
from qnews.config import Settings
from qnews.logging_config import get_logger
from qnews.scheduler import CrawlScheduler
from qnews.source import HNFirebaseSource, StorySource
from qnews.storage import NewsDatabase
from qnews.worker import ArchiveWorker

logger = get_logger(__name__)


def make_archive_store(settings: Settings) -> Optional[ArchiveStore]:
    if not settings.archive_enabled:
        return None
    if settings.archive_url:
        return HTTPArchiveStore(settings.archive_url, settings.archive_token)
    if settings.archive_dir is not None:
        return DirectoryArchiveStore(settings.archive_dir)
    return None


class App:
    def __init__(
        self,
        settings: Settings,
        db: NewsDatabase,
        source: StorySource,
        archive_store: Optional[ArchiveStore] = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self.source = source
        self.archive_store = archive_store
        self.worker = (
            ArchiveWorker(db, archive_store, settings) if archive_store is not None else None
        )
        self.scheduler = CrawlScheduler(source, db, settings, self.worker)
        self._tasks: list[asyncio.Task[None]] = []

    @classmethod
    async def create(
        cls,
        settings: Settings,
        source: Optional[StorySource] = None,
        archive_store: Optional[ArchiveStore] = None,
    ) -> App:
        db = await NewsDatabase.open(settings.database_path)
        if source is None:
            source = HNFirebaseSource(settings.source_base_url)
        if archive_store is None:
            archive_store = make_archive_store(settings)
        if archive_store is None:
            logger.info("No archive store configured, archiving disabled")
        return cls(settings, db, source, archive_store)

    def start(self) -> None:
        """Start the scheduler and worker as background tasks."""
        self._tasks.append(asyncio.create_task(self.scheduler.run(), name="crawl-scheduler"))
        if self.worker is not None:
            self._tasks.append(asyncio.create_task(self.worker.run(), name="archive-worker"))
        logger.info("Background tasks started", tasks=[t.get_name() for t in self._tasks])

    async def wait(self) -> None:
        """Block until a background task exits; re-raise its error."""
        if not self._tasks:
            return
        done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for resource in (self.source, self.archive_store):
            aclose = getattr(resource, "aclose", None)
            if aclose is not None:
                await aclose()
        await self.db.close()
        logger.info("Shut down")

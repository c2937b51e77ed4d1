"""
Archive/purge worker.

Moves the samples of items that dropped off every list long ago out of the
primary store. A pass only starts when the scheduler hands over a deadline,
uploads with a fixed pool of coroutines, and deletes sequentially once every
upload outcome is in.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Optional

from qnews.archive import ArchiveStore, archive_item
from qnews.config import Settings
from qnews.logging_config import get_logger
from qnews.storage import NewsDatabase

logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class WorkerState(StrEnum):
    IDLE = "idle"
    SELECTING = "selecting"
    UPLOADING = "uploading"
    DELETING = "deleting"


class ArchiveOutcome(StrEnum):
    UPLOADED = "uploaded"
    ALREADY_ARCHIVED = "already_archived"
    FAILED = "failed"


@dataclass(frozen=True)
class ArchiveResult:
    item_id: int
    outcome: ArchiveOutcome
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not ArchiveOutcome.FAILED


@dataclass(frozen=True)
class PassSummary:
    selected: int = 0
    uploaded: int = 0
    already_archived: int = 0
    failed: int = 0
    purged_items: int = 0
    purged_samples: int = 0
    purge_failed: int = 0


class ArchiveWorker:
    def __init__(
        self,
        db: NewsDatabase,
        store: ArchiveStore,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self.store = store
        self.settings = settings
        self.clock = clock
        self.state = WorkerState.IDLE
        self._signals: asyncio.Queue[float] = asyncio.Queue(maxsize=1)

    def signal(self, deadline: float) -> bool:
        """Ask for one pass that must finish by ``deadline`` (event loop time).

        Never blocks. Returns False when a signal is already pending.
        """
        try:
            self._signals.put_nowait(deadline)
        except asyncio.QueueFull:
            logger.warning("Archive worker busy, dropping signal", state=str(self.state))
            return False
        return True

    async def run(self) -> None:
        """Serve signals until cancelled."""
        while True:
            deadline = await self._signals.get()
            try:
                async with asyncio.timeout_at(deadline):
                    await self.archive_and_purge()
            except TimeoutError:
                logger.warning("Archive pass ran out of time", state=str(self.state))
            except Exception:
                logger.exception("Archive pass failed", state=str(self.state))
            finally:
                self.state = WorkerState.IDLE

    async def _upload_all(self, candidates: list[int]) -> list[ArchiveResult]:
        tasks: asyncio.Queue[int] = asyncio.Queue()
        for item_id in candidates:
            tasks.put_nowait(item_id)
        results: asyncio.Queue[ArchiveResult] = asyncio.Queue(maxsize=len(candidates))

        async def uploader() -> None:
            while True:
                try:
                    item_id = tasks.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    uploaded = await archive_item(
                        self.db, self.store, item_id, self.settings.model_params
                    )
                except Exception as e:
                    logger.warning("Archive upload failed", item_id=item_id, error=str(e))
                    result = ArchiveResult(item_id, ArchiveOutcome.FAILED, str(e))
                else:
                    outcome = (
                        ArchiveOutcome.UPLOADED if uploaded else ArchiveOutcome.ALREADY_ARCHIVED
                    )
                    result = ArchiveResult(item_id, outcome)
                results.put_nowait(result)

        n_workers = min(self.settings.archive_workers, len(candidates))
        await asyncio.gather(*(uploader() for _ in range(n_workers)))

        collected: list[ArchiveResult] = []
        while not results.empty():
            collected.append(results.get_nowait())
        return collected

    async def archive_and_purge(self) -> PassSummary:
        self.state = WorkerState.SELECTING
        cutoff = int(self.clock()) - self.settings.archive_after_days * SECONDS_PER_DAY
        candidates = await self.db.select_stories_to_archive(
            cutoff, self.settings.archive_batch_size
        )
        if not candidates:
            self.state = WorkerState.IDLE
            return PassSummary()
        logger.info("Archiving items", count=len(candidates))

        self.state = WorkerState.UPLOADING
        results = await self._upload_all(candidates)

        self.state = WorkerState.DELETING
        purged_items = 0
        purged_samples = 0
        purge_failed = 0
        for result in results:
            if not result.ok:
                continue
            try:
                purged_samples += await self.db.purge_story(result.item_id)
            except Exception as e:
                # The blob is stored; the item is re-selected and purged next pass.
                logger.error("Purge failed", item_id=result.item_id, error=str(e))
                purge_failed += 1
                continue
            purged_items += 1

        summary = PassSummary(
            selected=len(candidates),
            uploaded=sum(r.outcome is ArchiveOutcome.UPLOADED for r in results),
            already_archived=sum(r.outcome is ArchiveOutcome.ALREADY_ARCHIVED for r in results),
            failed=sum(r.outcome is ArchiveOutcome.FAILED for r in results),
            purged_items=purged_items,
            purged_samples=purged_samples,
            purge_failed=purge_failed,
        )
        logger.info(
            "Archive pass complete",
            selected=summary.selected,
            uploaded=summary.uploaded,
            already_archived=summary.already_archived,
            failed=summary.failed,
            purged_samples=purged_samples,
            purge_failed=purge_failed,
        )
        self.state = WorkerState.IDLE
        return summary

import asyncio
import json
from dataclasses import replace

import pytest

from conftest import T0, count_samples
from qnews.archive import DirectoryArchiveStore
from qnews.crawler import ingest_once
from qnews.errors import ArchiveError
from qnews.postprocess import recompute_ranks
from qnews.worker import ArchiveOutcome, ArchiveWorker, WorkerState

DAY = 24 * 60 * 60


class FailingStore:
    def __init__(self) -> None:
        self.uploads = 0

    async def exists(self, key: str) -> bool:
        return False

    async def upload(self, key: str, data: bytes, content_type: str) -> None:
        self.uploads += 1
        raise ArchiveError("bucket unavailable")


class SelectiveStore:
    """Accepts every upload except the keys in ``failing``."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.blobs = {}

    async def exists(self, key: str) -> bool:
        return key in self.blobs

    async def upload(self, key: str, data: bytes, content_type: str) -> None:
        if key in self.failing:
            raise ArchiveError(f"rejected {key}")
        self.blobs[key] = data


class CountingStore(SelectiveStore):
    """Tracks how many store calls are in flight at once."""

    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def _call(self):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1

    async def exists(self, key: str) -> bool:
        await self._call()
        return await super().exists(key)

    async def upload(self, key: str, data: bytes, content_type: str) -> None:
        await self._call()
        await super().upload(key, data, content_type)


class StuckStore:
    async def exists(self, key: str) -> bool:
        await asyncio.sleep(3600)
        return False

    async def upload(self, key: str, data: bytes, content_type: str) -> None:
        raise AssertionError("never reached")


@pytest.fixture
async def dropped(db, settings, fake_source):
    """Crawl twice; item 6 falls off every list in the second tick."""
    await ingest_once(fake_source, db, settings, T0, category_pause=0)
    await recompute_ranks(db, settings, T0)
    fake_source.lists["show"] = [5]
    await ingest_once(fake_source, db, settings, T0 + 60, category_pause=0)
    await recompute_ranks(db, settings, T0 + 60)
    return db


@pytest.fixture
async def many_dropped(db, settings, fake_source):
    """Crawl twice; items 2 to 6 fall off every list in the second tick."""
    await ingest_once(fake_source, db, settings, T0, category_pause=0)
    await recompute_ranks(db, settings, T0)
    fake_source.lists = {category: [1] for category in fake_source.lists}
    await ingest_once(fake_source, db, settings, T0 + 60, category_pause=0)
    await recompute_ranks(db, settings, T0 + 60)
    return db


def _worker(db, store, settings, days_later):
    return ArchiveWorker(db, store, settings, clock=lambda: T0 + 60 + days_later * DAY)


@pytest.mark.asyncio
async def test_archive_and_purge(dropped, settings):
    store = DirectoryArchiveStore(settings.archive_dir)
    worker = _worker(dropped, store, settings, days_later=25)

    summary = await worker.archive_and_purge()

    assert summary.selected == 1
    assert summary.uploaded == 1
    assert summary.purged_items == 1
    assert summary.purged_samples == 1
    assert worker.state is WorkerState.IDLE
    assert await count_samples(dropped, 6) == 0
    assert await count_samples(dropped, 5) == 2
    blob = json.loads((settings.archive_dir / "6.json").read_bytes())
    assert blob["ID"] == 6
    assert blob["MaxSampleTime"] == T0

    # Archived items are never selected again.
    assert (await worker.archive_and_purge()).selected == 0


@pytest.mark.asyncio
async def test_recent_items_are_kept(dropped, settings):
    store = DirectoryArchiveStore(settings.archive_dir)
    summary = await _worker(dropped, store, settings, days_later=10).archive_and_purge()
    assert summary.selected == 0
    assert await count_samples(dropped, 6) == 1


@pytest.mark.asyncio
async def test_failed_upload_keeps_samples(dropped, settings):
    store = FailingStore()
    worker = _worker(dropped, store, settings, days_later=25)

    results = await worker._upload_all([6])
    assert results[0].outcome is ArchiveOutcome.FAILED
    assert "bucket unavailable" in results[0].error

    summary = await worker.archive_and_purge()
    assert summary.failed == 1
    assert summary.purged_items == 0
    assert await count_samples(dropped, 6) == 1


@pytest.mark.asyncio
async def test_existing_blob_is_purged_without_upload(dropped, settings):
    settings.archive_dir.mkdir(parents=True)
    (settings.archive_dir / "6.json").write_text("{}")
    store = DirectoryArchiveStore(settings.archive_dir)

    summary = await _worker(dropped, store, settings, days_later=25).archive_and_purge()

    assert summary.already_archived == 1
    assert summary.uploaded == 0
    assert summary.purged_items == 1
    assert (settings.archive_dir / "6.json").read_text() == "{}"
    assert await count_samples(dropped, 6) == 0


@pytest.mark.asyncio
async def test_pending_signal_drops_new_ones(db, settings):
    worker = ArchiveWorker(db, FailingStore(), settings)
    assert worker.signal(1.0) is True
    assert worker.signal(2.0) is False


@pytest.mark.asyncio
async def test_pass_stops_at_deadline(dropped, settings):
    worker = _worker(dropped, StuckStore(), settings, days_later=25)
    task = asyncio.create_task(worker.run())
    try:
        worker.signal(asyncio.get_running_loop().time() + 0.05)
        await asyncio.sleep(0.3)
        assert worker.state is WorkerState.IDLE
        assert await count_samples(dropped, 6) == 1
        # The worker is free for the next signal.
        assert worker.signal(asyncio.get_running_loop().time() + 0.05) is True
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


@pytest.mark.asyncio
async def test_failed_upload_does_not_block_others(many_dropped, settings):
    store = SelectiveStore(failing={"4.json"})

    summary = await _worker(many_dropped, store, settings, days_later=25).archive_and_purge()

    assert summary.selected == 5
    assert summary.uploaded == 4
    assert summary.failed == 1
    assert summary.purged_items == 4
    assert await count_samples(many_dropped, 4) == 1
    for item_id in (2, 3, 5, 6):
        assert await count_samples(many_dropped, item_id) == 0
    assert await count_samples(many_dropped, 1) == 2


@pytest.mark.asyncio
async def test_upload_pool_is_bounded(many_dropped, settings):
    store = CountingStore()
    worker = _worker(many_dropped, store, replace(settings, archive_workers=2), days_later=25)

    summary = await worker.archive_and_purge()

    assert summary.uploaded == 5
    assert len(store.blobs) == 5
    assert store.peak == 2


@pytest.mark.asyncio
async def test_purge_failure_skips_only_that_item(many_dropped, settings, monkeypatch):
    store = DirectoryArchiveStore(settings.archive_dir)
    worker = _worker(many_dropped, store, settings, days_later=25)
    original = many_dropped.purge_story

    async def purge_story(item_id):
        if item_id == 3:
            raise RuntimeError("database is locked")
        return await original(item_id)

    monkeypatch.setattr(many_dropped, "purge_story", purge_story)
    summary = await worker.archive_and_purge()

    assert summary.uploaded == 5
    assert summary.purged_items == 4
    assert summary.purge_failed == 1
    assert await count_samples(many_dropped, 3) == 1
    assert await count_samples(many_dropped, 2) == 0

    # The blob is already stored, so the next pass only purges.
    monkeypatch.setattr(many_dropped, "purge_story", original)
    retry = await worker.archive_and_purge()
    assert retry.selected == 1
    assert retry.already_archived == 1
    assert retry.purged_items == 1
    assert await count_samples(many_dropped, 3) == 0

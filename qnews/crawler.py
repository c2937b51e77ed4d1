"""Crawl ingestion: one pass over every category, written as one tick."""

from __future__ import annotations

import asyncio

from qnews.attention import delta_expected_upvotes
from qnews.config import Settings
from qnews.constants import CATEGORIES, CATEGORY_PAUSE_SECONDS, MAX_RANK, N_CATEGORIES
from qnews.errors import SourceError
from qnews.logging_config import get_logger
from qnews.models import CrawlResult, Ranks, Sample, ScrapedStory
from qnews.source import StorySource
from qnews.storage import NewsDatabase

logger = get_logger(__name__)


async def fetch_ranks(
    source: StorySource, category_pause: float = CATEGORY_PAUSE_SECONDS
) -> dict[int, Ranks]:
    """Map item id to its 1-based rank in each category (0 = not listed)."""
    ranks: dict[int, list[int]] = {}
    for category_index, category in enumerate(CATEGORIES):
        if category_index and category_pause > 0:
            await asyncio.sleep(category_pause)
        ids = await source.ranked_ids(category)
        if not ids:
            raise SourceError(f"Empty rank list for {category}")
        for zero_based_rank, sid in enumerate(ids[:MAX_RANK]):
            item_ranks = ranks.setdefault(sid, [0] * N_CATEGORIES)
            # The feed can repeat an id; the first (best) position wins.
            if item_ranks[category_index] == 0:
                item_ranks[category_index] = zero_based_rank + 1
    return {sid: tuple(r) for sid, r in ranks.items()}  # type: ignore[misc]


async def ingest_once(
    source: StorySource,
    db: NewsDatabase,
    settings: Settings,
    sample_time: int,
    category_pause: float = CATEGORY_PAUSE_SECONDS,
) -> CrawlResult:
    """
    Sample every ranked item once and append the samples as one tick.

    All source calls happen before the write transaction opens, so a source
    failure leaves the store untouched. A store failure rolls back the tick.
    """
    ranks = await fetch_ranks(source, category_pause)
    details = await source.item_details(list(ranks))

    stories: list[ScrapedStory] = []
    skipped = 0
    for story in details:
        if not story.ok or story.id not in ranks:
            skipped += 1
            continue
        stories.append(story)
    if skipped:
        logger.warning("Skipped items without details", skipped=skipped)

    async with db.write_transaction() as conn:
        last_seen = await db.select_last_seen(conn, (s.id for s in stories))

        delta_upvotes: dict[int, int] = {}
        for story in stories:
            prev = last_seen.get(story.id)
            delta_upvotes[story.id] = max(0, story.score - prev.score) if prev else 0
        sitewide_upvotes = sum(delta_upvotes.values())

        samples: list[Sample] = []
        total_delta_expected = 0.0
        for story in stories:
            item_ranks = ranks[story.id]
            delta_expected = 0.0
            for category_index, rank in enumerate(item_ranks):
                if rank > 0:
                    delta_expected += delta_expected_upvotes(
                        category_index, rank, sitewide_upvotes, settings.coefficients
                    )
            total_delta_expected += delta_expected

            prev = last_seen.get(story.id)
            samples.append(
                Sample(
                    id=story.id,
                    sample_time=sample_time,
                    submission_time=story.submission_time,
                    score=story.score,
                    descendants=story.descendants,
                    ranks=item_ranks,
                    cumulative_upvotes=(prev.cumulative_upvotes if prev else 0)
                    + delta_upvotes[story.id],
                    cumulative_expected_upvotes=(
                        prev.cumulative_expected_upvotes if prev else 0.0
                    )
                    + delta_expected,
                    age_approx=max(0, sample_time - story.submission_time),
                )
            )

        await db.insert_samples(conn, samples)
        await db.upsert_stories(conn, stories, samples)

    result = CrawlResult(
        sample_time=sample_time,
        items=len(samples),
        new_items=len(samples) - len(last_seen),
        sitewide_upvotes=sitewide_upvotes,
        delta_expected_upvotes=total_delta_expected,
        skipped=skipped,
    )
    logger.info(
        "Crawl ingested",
        sample_time=sample_time,
        items=result.items,
        new_items=result.new_items,
        sitewide_upvotes=sitewide_upvotes,
        delta_expected_upvotes=round(total_delta_expected, 3),
    )
    return result

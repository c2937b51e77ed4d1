from dataclasses import replace
from typing import Optional

import pytest
from sqlalchemy import func, select

from qnews.attention import default_coefficients
from qnews.config import Settings
from qnews.constants import (
    DEFAULT_FATIGUE_FACTOR,
    DEFAULT_PRIOR_WEIGHT,
    FRONTPAGE_GRAVITY,
    FRONTPAGE_OVERALL_PRIOR_WEIGHT,
    FRONTPAGE_PRIOR_WEIGHT,
)
from qnews.errors import SourceError
from qnews.models import FrontPageParams, ModelParams, ScrapedStory
from qnews.storage import NewsDatabase, dataset, positions, published_tick

T0 = 1_700_000_000


def make_story(
    sid: int, score: int = 1, submission_time: int = T0 - 3600, descendants: int = 0
) -> ScrapedStory:
    return ScrapedStory(
        id=sid,
        by=f"user{sid}",
        title=f"Story {sid}",
        url=f"https://example.com/{sid}",
        score=score,
        descendants=descendants,
        submission_time=submission_time,
    )


class FakeSource:
    """In-memory story source. Items missing from ``items`` fail to fetch."""

    def __init__(
        self,
        lists: Optional[dict[str, list[int]]] = None,
        items: Optional[dict[int, ScrapedStory]] = None,
    ) -> None:
        self.lists = lists or {
            "top": [1, 2, 3],
            "new": [4, 3, 2, 1],
            "best": [1, 2],
            "ask": [5],
            "show": [6],
        }
        self.items = items or {sid: make_story(sid) for sid in range(1, 7)}
        self.failing: set[str] = set()
        self.calls: list[str] = []

    def set_score(self, sid: int, score: int) -> None:
        self.items[sid] = replace(self.items[sid], score=score)

    async def ranked_ids(self, category: str) -> list[int]:
        self.calls.append(category)
        if category in self.failing:
            raise SourceError(f"{category} unavailable")
        return list(self.lists.get(category, []))

    async def item_details(self, ids: list[int]) -> list[ScrapedStory]:
        return [self.items.get(sid, ScrapedStory(id=0)) for sid in ids]


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        data_dir=tmp_path / "data",
        model_params=ModelParams(DEFAULT_FATIGUE_FACTOR, DEFAULT_PRIOR_WEIGHT),
        frontpage_params=FrontPageParams(
            prior_weight=FRONTPAGE_PRIOR_WEIGHT,
            overall_prior_weight=FRONTPAGE_OVERALL_PRIOR_WEIGHT,
            gravity=FRONTPAGE_GRAVITY,
        ),
        coefficients=default_coefficients(),
        archive_dir=tmp_path / "archive",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def db(settings):
    database = await NewsDatabase.open(settings.database_path)
    yield database
    await database.close()


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


async def current_ranks(db: NewsDatabase) -> dict[int, Optional[int]]:
    """QN rank of every item in the latest published tick."""
    async with db.read_transaction() as conn:
        result = await conn.execute(
            select(dataset.c.id, dataset.c.qnRank).where(
                dataset.c.sampleTime == published_tick()
            )
        )
        return {row.id: row.qnRank for row in result}


async def count_samples(db: NewsDatabase, item_id: int) -> int:
    async with db.read_transaction() as conn:
        result = await conn.execute(
            select(func.count()).select_from(dataset).where(dataset.c.id == item_id)
        )
        return int(result.scalar_one())


async def count_positions(db: NewsDatabase, user_id: int, item_id: int) -> int:
    async with db.read_transaction() as conn:
        result = await conn.execute(
            select(func.count())
            .select_from(positions)
            .where(positions.c.userID == user_id, positions.c.storyID == item_id)
        )
        return int(result.scalar_one())

"""
Datapoint store.

SQLite in WAL mode behind an SQLAlchemy async engine. Readers get pooled
connections and see committed snapshots; all writers (ingestion, rank
recompute, votes, purges) go through ``write_transaction`` which serializes
them on one asyncio lock.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    and_,
    bindparam,
    delete,
    event,
    exists,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from qnews.constants import SQLITE_BUSY_TIMEOUT_MS
from qnews.errors import ItemNotFoundError, StoreError
from qnews.logging_config import get_logger
from qnews.models import LastSeen, Ranking, Sample, ScrapedStory

logger = get_logger(__name__)

RANK_COLUMNS = ("topRank", "newRank", "bestRank", "askRank", "showRank")

metadata = MetaData()

stories = Table(
    "stories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("by", String, nullable=False, default=""),
    Column("title", String, nullable=False, default=""),
    Column("url", String, nullable=False, default=""),
    Column("timestamp", Integer, nullable=False),
    Column("score", Integer, nullable=False, default=0),
    Column("cumulativeUpvotes", Integer, nullable=False, default=0),
    Column("cumulativeExpectedUpvotes", Float, nullable=False, default=0.0),
    *(Column(name, Integer) for name in RANK_COLUMNS),
    Column("qnRank", Integer),
    Column("lastSampleTime", Integer),
    Column("archived", Boolean, nullable=False, default=False),
)

dataset = Table(
    "dataset",
    metadata,
    Column("id", Integer, nullable=False),
    Column("sampleTime", Integer, nullable=False),
    Column("submissionTime", Integer, nullable=False),
    Column("score", Integer, nullable=False),
    Column("descendants", Integer, nullable=False),
    Column("ageApprox", Integer, nullable=False, default=0),
    *(Column(name, Integer) for name in RANK_COLUMNS),
    Column("qnRank", Integer),
    Column("rawRank", Integer),
    Column("cumulativeUpvotes", Integer, nullable=False, default=0),
    Column("cumulativeExpectedUpvotes", Float, nullable=False, default=0.0),
    Column("penalty", Float, nullable=False, default=0.0),
    Column("currentPenalty", Float),
    Column("upvoteRate", Float, nullable=False, default=1.0),
    Column("resubmitted", Boolean, nullable=False, default=False),
    UniqueConstraint("id", "sampleTime", name="dataset_id_sampletime"),
    Index("dataset_sampletime_id", "sampleTime", "id"),
)

positions = Table(
    "positions",
    metadata,
    Column("positionID", Integer, primary_key=True, autoincrement=True),
    Column("userID", Integer, nullable=False),
    Column("storyID", Integer, nullable=False),
    Column("direction", Integer, nullable=False),
    Column("entryTime", Integer, nullable=False),
    Column("entryUpvotes", Integer, nullable=False),
    Column("entryExpectedUpvotes", Float, nullable=False),
    Column("entryUpvoteRate", Float, nullable=False),
    Column("exitTime", Integer),
    Column("exitUpvotes", Integer),
    Column("exitExpectedUpvotes", Float),
    Column("exitUpvoteRate", Float),
    Index("positions_user_story", "userID", "storyID"),
)


def _configure_sqlite(engine: AsyncEngine) -> None:
    # Take over transaction control from the driver so BEGIN is emitted at
    # the start of every transaction, reads included.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def _rank_or_none(rank: int) -> Optional[int]:
    return rank if rank else None


def published_tick():
    """Sample time of the newest tick whose ranking has been committed.

    Ingestion commits a tick's samples before its ranks are computed, so the
    newest sample time alone may point at an unranked tick.
    """
    return (
        select(func.max(dataset.c.sampleTime))
        .where(dataset.c.qnRank.isnot(None))
        .scalar_subquery()
    )


class NewsDatabase:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: Path, echo: bool = False) -> NewsDatabase:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=echo)
            _configure_sqlite(engine)
            async with engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except (OSError, SQLAlchemyError) as e:
            raise StoreError(f"open database {path}: {e}") from e
        logger.info("Opened database", path=str(path))
        return cls(engine)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def write_transaction(self) -> AsyncIterator[AsyncConnection]:
        """Single-writer transaction. Commits on success, rolls back on error."""
        async with self._write_lock:
            async with self.engine.begin() as conn:
                yield conn

    @asynccontextmanager
    async def read_transaction(self) -> AsyncIterator[AsyncConnection]:
        """Snapshot read: every query inside sees the same committed state."""
        async with self.engine.connect() as conn:
            async with conn.begin():
                yield conn

    # ---- crawl ingestion ----

    async def last_crawl_time(self) -> int:
        async with self.read_transaction() as conn:
            result = await conn.execute(
                select(func.coalesce(func.max(dataset.c.sampleTime), 0))
            )
            return int(result.scalar_one())

    async def select_last_seen(
        self, conn: AsyncConnection, ids: Iterable[int]
    ) -> dict[int, LastSeen]:
        id_list = list(ids)
        if not id_list:
            return {}
        result = await conn.execute(
            select(
                stories.c.id,
                stories.c.score,
                stories.c.cumulativeUpvotes,
                stories.c.cumulativeExpectedUpvotes,
            ).where(stories.c.id.in_(id_list), stories.c.lastSampleTime.isnot(None))
        )
        return {
            row.id: LastSeen(
                score=row.score,
                cumulative_upvotes=row.cumulativeUpvotes,
                cumulative_expected_upvotes=row.cumulativeExpectedUpvotes,
            )
            for row in result
        }

    async def insert_samples(
        self, conn: AsyncConnection, samples: Sequence[Sample]
    ) -> None:
        if not samples:
            return
        rows = []
        for s in samples:
            row: dict[str, Any] = {
                "id": s.id,
                "sampleTime": s.sample_time,
                "submissionTime": s.submission_time,
                "score": s.score,
                "descendants": s.descendants,
                "ageApprox": s.age_approx,
                "cumulativeUpvotes": s.cumulative_upvotes,
                "cumulativeExpectedUpvotes": s.cumulative_expected_upvotes,
            }
            for name, rank in zip(RANK_COLUMNS, s.ranks):
                row[name] = _rank_or_none(rank)
            rows.append(row)
        await conn.execute(insert(dataset), rows)

    async def upsert_stories(
        self,
        conn: AsyncConnection,
        scraped: Sequence[ScrapedStory],
        samples: Sequence[Sample],
    ) -> None:
        """Insert or refresh item metadata and running state for this tick.

        The original submission time is kept on conflict. Items not sampled in
        this tick lose their current ranks.
        """
        if not samples:
            return
        by_id = {s.id: s for s in scraped}
        rows = []
        for sample in samples:
            story = by_id[sample.id]
            row: dict[str, Any] = {
                "id": story.id,
                "by": story.by,
                "title": story.title,
                "url": story.url,
                "timestamp": story.submission_time,
                "score": sample.score,
                "cumulativeUpvotes": sample.cumulative_upvotes,
                "cumulativeExpectedUpvotes": sample.cumulative_expected_upvotes,
                "lastSampleTime": sample.sample_time,
                "archived": False,
            }
            for name, rank in zip(RANK_COLUMNS, sample.ranks):
                row[name] = _rank_or_none(rank)
            rows.append(row)

        stmt = sqlite_insert(stories)
        refreshed = [
            "by",
            "title",
            "url",
            "score",
            "cumulativeUpvotes",
            "cumulativeExpectedUpvotes",
            "lastSampleTime",
            "archived",
            *RANK_COLUMNS,
        ]
        stmt = stmt.on_conflict_do_update(
            index_elements=[stories.c.id],
            set_={name: stmt.excluded[name] for name in refreshed},
        )
        await conn.execute(stmt, rows)

        sample_time = samples[0].sample_time
        ranked = [stories.c[name].isnot(None) for name in (*RANK_COLUMNS, "qnRank")]
        await conn.execute(
            update(stories)
            .where(stories.c.lastSampleTime != sample_time, or_(*ranked))
            .values({name: None for name in (*RANK_COLUMNS, "qnRank")})
        )

    # ---- rank recompute ----

    async def select_tick_samples(
        self, conn: AsyncConnection, sample_time: int
    ) -> list[RowMapping]:
        result = await conn.execute(
            select(
                dataset.c.id,
                dataset.c.score,
                dataset.c.sampleTime,
                dataset.c.submissionTime,
                dataset.c.topRank,
                dataset.c.cumulativeUpvotes,
                dataset.c.cumulativeExpectedUpvotes,
                stories.c.timestamp.label("originalSubmissionTime"),
            )
            .join(stories, stories.c.id == dataset.c.id)
            .where(dataset.c.sampleTime == sample_time)
            .order_by(dataset.c.id)
        )
        return list(result.mappings())

    async def select_previous_penalties(
        self, conn: AsyncConnection, sample_time: int
    ) -> dict[int, float]:
        """Penalty of each item's last ranked sample before ``sample_time``.

        Samples of ticks whose recompute never committed still hold the
        default penalty and are skipped.
        """
        tick_ids = select(dataset.c.id).where(dataset.c.sampleTime == sample_time)
        previous = (
            select(dataset.c.id, func.max(dataset.c.sampleTime).label("prev"))
            .where(
                dataset.c.sampleTime < sample_time,
                dataset.c.qnRank.isnot(None),
                dataset.c.id.in_(tick_ids),
            )
            .group_by(dataset.c.id)
            .subquery()
        )
        result = await conn.execute(
            select(dataset.c.id, dataset.c.penalty).join(
                previous,
                and_(
                    dataset.c.id == previous.c.id,
                    dataset.c.sampleTime == previous.c.prev,
                ),
            )
        )
        return {row.id: row.penalty for row in result}

    async def update_tick_rankings(
        self, conn: AsyncConnection, sample_time: int, rows: Sequence[dict[str, Any]]
    ) -> None:
        """Write derived columns for one tick. ``rows`` are keyed by column name."""
        if not rows:
            return
        params = [{**row, "b_id": row["id"], "b_time": sample_time} for row in rows]
        await conn.execute(
            update(dataset)
            .where(
                dataset.c.id == bindparam("b_id"),
                dataset.c.sampleTime == bindparam("b_time"),
            )
            .values(
                qnRank=bindparam("qnRank"),
                rawRank=bindparam("rawRank"),
                penalty=bindparam("penalty"),
                currentPenalty=bindparam("currentPenalty"),
                upvoteRate=bindparam("upvoteRate"),
                resubmitted=bindparam("resubmitted"),
            ),
            params,
        )
        await conn.execute(
            update(stories)
            .where(stories.c.id == bindparam("b_id"))
            .values(qnRank=bindparam("qnRank")),
            [{"b_id": row["id"], "qnRank": row["qnRank"]} for row in rows],
        )

    # ---- readers ----

    async def front_page(self, ranking: Ranking, limit: int = 90) -> list[RowMapping]:
        """Items of the latest published tick, ordered by ``ranking``."""
        order_column = {
            Ranking.QUALITY: dataset.c.qnRank,
            Ranking.HNTOP: dataset.c.topRank,
            Ranking.RAW: dataset.c.rawRank,
        }[ranking]
        async with self.read_transaction() as conn:
            latest = published_tick()
            result = await conn.execute(
                select(
                    dataset.c.id,
                    stories.c.title,
                    stories.c.url,
                    stories.c.by,
                    dataset.c.score,
                    dataset.c.upvoteRate,
                    dataset.c.cumulativeUpvotes,
                    dataset.c.cumulativeExpectedUpvotes,
                    dataset.c.qnRank,
                    dataset.c.topRank,
                    dataset.c.rawRank,
                    dataset.c.sampleTime,
                    dataset.c.submissionTime,
                )
                .join(stories, stories.c.id == dataset.c.id)
                .where(dataset.c.sampleTime == latest, order_column.isnot(None))
                .order_by(order_column)
                .limit(limit)
            )
            return list(result.mappings())

    # ---- positions ----

    async def latest_sample(
        self, conn: AsyncConnection, item_id: int
    ) -> RowMapping:
        result = await conn.execute(
            select(
                dataset.c.sampleTime,
                dataset.c.cumulativeUpvotes,
                dataset.c.cumulativeExpectedUpvotes,
            )
            .where(dataset.c.id == item_id)
            .order_by(dataset.c.sampleTime.desc())
            .limit(1)
        )
        row = result.mappings().first()
        if row is None:
            raise ItemNotFoundError(item_id)
        return row

    async def latest_position(
        self, conn: AsyncConnection, user_id: int, item_id: int
    ) -> Optional[RowMapping]:
        result = await conn.execute(
            select(positions)
            .where(positions.c.userID == user_id, positions.c.storyID == item_id)
            .order_by(positions.c.positionID.desc())
            .limit(1)
        )
        return result.mappings().first()

    async def insert_position(self, conn: AsyncConnection, values: dict[str, Any]) -> int:
        result = await conn.execute(insert(positions).values(**values))
        return int(result.inserted_primary_key[0])

    async def close_position(
        self, conn: AsyncConnection, position_id: int, values: dict[str, Any]
    ) -> None:
        await conn.execute(
            update(positions)
            .where(positions.c.positionID == position_id, positions.c.exitTime.is_(None))
            .values(**values)
        )

    async def select_positions(self, user_id: int) -> list[RowMapping]:
        """All of a user's positions joined with each item's running state."""
        async with self.read_transaction() as conn:
            result = await conn.execute(
                select(
                    positions,
                    stories.c.cumulativeUpvotes,
                    stories.c.cumulativeExpectedUpvotes,
                    stories.c.title,
                    stories.c.url,
                    stories.c.by,
                )
                .join(stories, stories.c.id == positions.c.storyID)
                .where(positions.c.userID == user_id)
                .order_by(positions.c.entryTime.desc(), positions.c.positionID.desc())
            )
            return list(result.mappings())

    # ---- archive ----

    async def select_stories_to_archive(self, cutoff: int, limit: int) -> list[int]:
        """Unranked, unarchived items whose latest sample is at or before ``cutoff``."""
        async with self.read_transaction() as conn:
            result = await conn.execute(
                select(stories.c.id)
                .where(
                    stories.c.archived.is_(False),
                    stories.c.lastSampleTime <= cutoff,
                    *(stories.c[name].is_(None) for name in RANK_COLUMNS),
                    exists().where(dataset.c.id == stories.c.id),
                )
                .order_by(stories.c.lastSampleTime, stories.c.id)
                .limit(limit)
            )
            return [row.id for row in result]

    async def select_item_samples(self, item_id: int) -> list[RowMapping]:
        async with self.read_transaction() as conn:
            result = await conn.execute(
                select(dataset)
                .where(dataset.c.id == item_id)
                .order_by(dataset.c.sampleTime)
            )
            rows = list(result.mappings())
        if not rows:
            raise ItemNotFoundError(item_id)
        return rows

    async def story_details(self, item_id: int) -> RowMapping:
        async with self.read_transaction() as conn:
            result = await conn.execute(
                select(
                    stories.c.id,
                    stories.c.by,
                    stories.c.title,
                    stories.c.url,
                    stories.c.timestamp,
                    dataset.c.submissionTime,
                    dataset.c.score,
                    dataset.c.descendants,
                    dataset.c.cumulativeUpvotes,
                    dataset.c.cumulativeExpectedUpvotes,
                    dataset.c.sampleTime,
                )
                .join(dataset, dataset.c.id == stories.c.id)
                .where(stories.c.id == item_id)
                .order_by(dataset.c.sampleTime.desc())
                .limit(1)
            )
            row = result.mappings().first()
        if row is None:
            raise ItemNotFoundError(item_id)
        return row

    async def purge_story(self, item_id: int) -> int:
        """Delete every sample of an archived item and flag it as archived."""
        async with self.write_transaction() as conn:
            result = await conn.execute(delete(dataset).where(dataset.c.id == item_id))
            await conn.execute(
                update(stories).where(stories.c.id == item_id).values(archived=True)
            )
            return result.rowcount or 0

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from qnews.app import App
from qnews.archive import ArchiveStore
from qnews.config import Settings, load_settings
from qnews.constants import DEFAULT_SCORING_FORMULA
from qnews.errors import InvalidVoteError, ItemNotFoundError, NonFiniteScoreError, UnknownFormulaError
from qnews.logging_config import configure_logging, get_logger
from qnews.models import FrontPageStoryDict, Ranking
from qnews.positions import load_positions, record_vote
from qnews.postprocess import front_page
from qnews.scoring import score_history
from qnews.source import StorySource

logger = get_logger(__name__)


class VoteRequest(BaseModel):
    userID: int
    storyID: int
    direction: int


class VoteResponse(BaseModel):
    entryUpvoteRate: float
    entryTime: int
    duplicate: bool


def get_qnews(request: Request) -> App:
    return request.app.state.qnews


def create_app(
    settings: Optional[Settings] = None,
    background: bool = False,
    source: Optional[StorySource] = None,
    archive_store: Optional[ArchiveStore] = None,
) -> FastAPI:
    """Build the API. With ``background`` the crawler and archiver run in-process."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        cfg = settings or load_settings()
        if settings is None:
            configure_logging(cfg.log_level, cfg.log_format)
        qnews = await App.create(cfg, source=source, archive_store=archive_store)
        app.state.qnews = qnews
        if background:
            qnews.start()
        try:
            yield
        finally:
            await qnews.close()

    app = FastAPI(title="qnews API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/vote", response_model=VoteResponse)
    async def vote_route(req: VoteRequest, qnews: App = Depends(get_qnews)):
        try:
            result = await record_vote(
                qnews.db, qnews.settings, req.userID, req.storyID, req.direction
            )
        except InvalidVoteError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ItemNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return VoteResponse(
            entryUpvoteRate=result.entry_upvote_rate,
            entryTime=result.entry_time,
            duplicate=result.duplicate,
        )

    @app.get("/score/{user_id}")
    async def score_route(
        user_id: int,
        formula: str = Query(DEFAULT_SCORING_FORMULA),
        fatigue_factor: Optional[float] = Query(None, alias="fatigueFactor", gt=0),
        prior_weight: Optional[float] = Query(None, alias="priorWeight", gt=0),
        qnews: App = Depends(get_qnews),
    ) -> dict[str, Any]:
        params = qnews.settings.model_params.with_overrides(fatigue_factor, prior_weight)
        positions = await load_positions(qnews.db, user_id, params)
        try:
            history = score_history(positions, params, formula)
        except UnknownFormulaError:
            raise HTTPException(status_code=400, detail=f"Unknown scoring formula {formula}")
        except NonFiniteScoreError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {
            "userID": user_id,
            "formula": formula,
            "score": history.score,
            "positions": [asdict(p) for p in history.positions],
            "plotData": history.plot_data,
        }

    @app.get("/frontpage")
    async def frontpage_route(
        ranking: Ranking = Ranking.QUALITY, qnews: App = Depends(get_qnews)
    ) -> list[FrontPageStoryDict]:
        return await front_page(qnews.db, qnews.settings.frontpage_params, ranking)

    return app

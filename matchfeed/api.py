# matchfeed/api.py — FastAPI + uvicorn surface over viewer sessions
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from . import config
from .database import init_db
from .errors import (
    EventNotFound, MatchFeedError, TransactionCommitFailure, TransactionInFlight, Unauthenticated,
)
from .filters import FilterSpec, Range
from .session import SessionRegistry, ViewerSession

log = logging.getLogger("api")
router = APIRouter()

_STATUS = [
    (Unauthenticated, 401),
    (EventNotFound, 404),
    (TransactionInFlight, 409),
    (TransactionCommitFailure, 503),
]


def viewer_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # identity is established upstream; this service only needs the id
    if not x_user_id:
        raise Unauthenticated()
    return x_user_id


async def viewer_session(request: Request, viewer: str = Depends(viewer_id)) -> ViewerSession:
    registry: SessionRegistry = request.app.state.registry
    return await registry.open(viewer)


def _range(lo: Optional[float], hi: Optional[float], top: float) -> Optional[Range]:
    if lo is None and hi is None:
        return None
    return Range(lo if lo is not None else 0, hi if hi is not None else top)


def feed_filters(
    age_min: Optional[int] = None, age_max: Optional[int] = None,
    height_min: Optional[float] = None, height_max: Optional[float] = None,
    intent: Optional[List[str]] = Query(default=None),
    max_distance_km: Optional[float] = None,
    occupation: Optional[List[str]] = Query(default=None),
    trust_min: Optional[int] = None, trust_max: Optional[int] = None,
    score_min: Optional[int] = None, score_max: Optional[int] = None,
) -> FilterSpec:
    return FilterSpec(
        age_range=_range(age_min, age_max, 200),
        height_range=_range(height_min, height_max, 300),
        relationship_intents=frozenset(intent) if intent else None,
        max_distance_km=max_distance_km,
        occupations=frozenset(occupation) if occupation else None,
        trust_range=_range(trust_min, trust_max, 100),
        match_score_range=_range(score_min, score_max, 100),
    )


def snapshot(session: ViewerSession, filters: Optional[FilterSpec] = None) -> Dict[str, Any]:
    feed = session.feed
    return {
        "likers": [l.to_dict() for l in feed.view(filters)],
        "has_more": feed.state.has_more,
        "total_count": feed.state.total_count,
        "available_occupations": feed.occupations(),
        "error": feed.state.error,
    }


@router.get("/healthz")
async def healthz():
    return {"ok": True}


@router.get("/likers")
async def likers(session: ViewerSession = Depends(viewer_session),
                 filters: FilterSpec = Depends(feed_filters)) -> Dict[str, Any]:
    return snapshot(session, filters)


@router.post("/likers/refill")
async def refill(session: ViewerSession = Depends(viewer_session)) -> Dict[str, Any]:
    await session.feed.refill()
    return snapshot(session)


@router.post("/likers/refetch")
async def refetch(session: ViewerSession = Depends(viewer_session)) -> Dict[str, Any]:
    await session.feed.refetch()
    return snapshot(session)


@router.post("/likers/{event_id}/like")
async def like_back(event_id: str, session: ViewerSession = Depends(viewer_session)) -> Dict[str, Any]:
    outcome = await session.matcher.like_back(event_id)
    return outcome.to_dict()


@router.post("/likers/{event_id}/pass")
async def pass_on(event_id: str, session: ViewerSession = Depends(viewer_session)) -> Dict[str, Any]:
    outcome = await session.matcher.pass_on(event_id)
    return outcome.to_dict()


@router.post("/likers/{event_id}/consumed")
async def mark_consumed(event_id: str, session: ViewerSession = Depends(viewer_session)) -> Dict[str, Any]:
    flipped = await session.feed.mark_consumed(event_id)
    return {"event_id": event_id, "consumed": True, "changed": flipped}


@router.post("/blocks/{blocked_id}")
async def block(blocked_id: str, request: Request, viewer: str = Depends(viewer_id)) -> Dict[str, Any]:
    await request.app.state.registry.block(viewer, blocked_id)
    return {"blocked": blocked_id}


@router.delete("/session")
async def end_session(request: Request, viewer: str = Depends(viewer_id)) -> Dict[str, Any]:
    closed = await request.app.state.registry.close(viewer)
    return {"closed": closed}


async def _error_handler(_request: Request, exc: MatchFeedError) -> JSONResponse:
    status = next((code for cls, code in _STATUS if isinstance(exc, cls)), 500)
    if status >= 500:
        log.warning("request failed: %s", exc)
    return JSONResponse({"error": type(exc).__name__, "detail": str(exc)}, status_code=status)


def create_app(store=None, **feed_kwargs) -> FastAPI:
    """App over `store`, or over the configured database when none is given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        backend = store if store is not None else await init_db()
        app.state.store = backend
        app.state.registry = SessionRegistry(backend, **feed_kwargs)
        try:
            yield
        finally:
            await app.state.registry.close_all()
            if store is None:
                await backend.close()

    app = FastAPI(title="matchfeed", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(MatchFeedError, _error_handler)
    return app


async def serve(host: str = config.API_HOST, port: int = config.API_PORT) -> None:
    server_config = uvicorn.Config(create_app(), host=host, port=port, loop="asyncio",
                                   log_level=config.LOG_LEVEL.lower())
    server = uvicorn.Server(server_config)
    log.info("serving on http://%s:%s/", host, port)
    await server.serve()

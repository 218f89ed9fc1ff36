"""FastAPI application entrypoint for the usage monitor."""
from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from contextlib import suppress
from datetime import datetime, timedelta
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from mistralai import Mistral
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import aggregation, analysis, recommendations, schemas
from .auth import verify_admin
from .database import SessionLocal, engine, session_scope, utcnow
from .ingestion import ingest_batch
from .models import Base

logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Usage Monitor API",
    description="Collects interaction telemetry, aggregates it and stores generated recommendations.",
    version="0.1.0",
)


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class RateLimitError(Exception):
    """Raised when a caller exceeds the configured rate limit."""


class FixedWindowRateLimiter:
    """Simple in-memory fixed window rate limiter keyed by identifier."""

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> None:
        now = time.monotonic()
        with self._lock:
            count, window_start = self._counters.get(key, (0, now))
            if now - window_start >= self._window_seconds:
                count = 0
                window_start = now
            if count >= self._max_requests:
                raise RateLimitError(f"Rate limit exceeded for key {key}")
            self._counters[key] = (count + 1, window_start)


def _get_rate_limiter() -> FixedWindowRateLimiter:
    requests_per_window = int(os.environ.get("MONITOR_ANALYZE_RATE_LIMIT", "5"))
    window_seconds = int(os.environ.get("MONITOR_ANALYZE_RATE_WINDOW", "3600"))
    return FixedWindowRateLimiter(requests_per_window, window_seconds)


_analyze_rate_limiter = _get_rate_limiter()
_snapshot_task: Optional[asyncio.Task[None]] = None
_snapshot_interval_seconds = int(os.environ.get("MONITOR_SNAPSHOT_INTERVAL_SECONDS", str(60 * 60)))
_snapshot_window_days = int(os.environ.get("MONITOR_SNAPSHOT_WINDOW_DAYS", "7"))


@lru_cache(maxsize=1)
def _build_text_generator(api_key: str, model: str) -> analysis.MistralTextGenerator:
    return analysis.MistralTextGenerator(Mistral(api_key=api_key), model=model)


def get_text_generator() -> analysis.TextGenerator:
    api_key = os.environ.get("MONITOR_MISTRAL_API_KEY")
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Text generation is not configured",
        )
    model = os.environ.get("MONITOR_MISTRAL_MODEL", analysis.DEFAULT_MODEL)
    return _build_text_generator(api_key, model)


def record_snapshot_once(now: Optional[datetime] = None) -> None:
    """Store the current summary as today's snapshot."""
    now = now or utcnow()
    with session_scope() as db:
        since = now - timedelta(days=_snapshot_window_days)
        summary = aggregation.compute_summary(db, since)
        recommendations.upsert_snapshot(db, now.date(), recommendations.summary_metrics(summary))


async def _run_snapshot_cycle() -> None:
    try:
        await asyncio.to_thread(record_snapshot_once)
    except Exception:  # pragma: no cover - log unexpected failures
        logger.exception("Failed to record daily snapshot")


async def _snapshot_worker() -> None:
    try:
        while True:
            await _run_snapshot_cycle()
            await asyncio.sleep(_snapshot_interval_seconds)
    except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
        pass


def _start_snapshot_worker() -> None:
    global _snapshot_task
    if _snapshot_task is None:
        loop = asyncio.get_running_loop()
        _snapshot_task = loop.create_task(_snapshot_worker())


@app.post("/api/monitor/events", response_model=schemas.BatchAccepted)
def ingest_events(
    batch_in: schemas.BatchIn,
    db: Session = Depends(get_db),
) -> schemas.BatchAccepted:
    try:
        received = ingest_batch(db, batch_in, received_at=utcnow())
    except SQLAlchemyError as exc:
        logger.exception("Event ingestion failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to ingest events",
        ) from exc
    return schemas.BatchAccepted(received=received)


@app.get("/api/monitor/overview", response_model=schemas.Overview)
def overview(
    days: int = Query(7, ge=1, le=365),
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> schemas.Overview:
    try:
        return aggregation.compute_overview(db, days=days)
    except SQLAlchemyError as exc:
        logger.exception("Overview query failed days=%d", days)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch overview",
        ) from exc


@app.get("/api/monitor/live", response_model=List[schemas.LiveEventOut])
def live_events(
    minutes: int = Query(5, ge=1, le=24 * 60),
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> List[schemas.LiveEventOut]:
    events = aggregation.recent_events(db, minutes=minutes)
    return [schemas.LiveEventOut.model_validate(event) for event in events]


@app.post("/api/monitor/analyze", response_model=schemas.AnalysisResult)
def analyze(
    request: Request,
    days: int = Query(7, ge=1, le=365),
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
    generator: analysis.TextGenerator = Depends(get_text_generator),
) -> schemas.AnalysisResult:
    client_identifier = "anonymous"
    if request.client:
        client_identifier = request.client.host or client_identifier

    try:
        _analyze_rate_limiter.check(client_identifier)
    except RateLimitError:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")

    try:
        return analysis.run_analysis(db, generator, days=days)
    except analysis.AnalysisError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to generate analysis", "details": str(exc)},
        ) from exc
    except SQLAlchemyError as exc:
        logger.exception("Storing analysis failed days=%d", days)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store analysis",
        ) from exc


@app.get("/api/monitor/recommendations", response_model=List[schemas.RecommendationOut])
def list_recommendations(
    status_filter: str = Query(recommendations.ALL_STATUSES, alias="status"),
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> List[schemas.RecommendationOut]:
    rows = recommendations.list_recommendations(db, status=status_filter)
    return [schemas.RecommendationOut.model_validate(row) for row in rows]


@app.patch("/api/monitor/recommendations/{recommendation_id}", response_model=schemas.StatusUpdated)
def update_recommendation(
    recommendation_id: int,
    update: schemas.StatusUpdate,
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> schemas.StatusUpdated:
    try:
        recommendations.update_status(db, recommendation_id, update.status)
    except recommendations.RecommendationNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return schemas.StatusUpdated()


@app.get("/api/monitor/trends", response_model=List[schemas.SnapshotOut])
def trends(
    days: int = Query(30, ge=1, le=3650),
    _: dict = Depends(verify_admin),
    db: Session = Depends(get_db),
) -> List[schemas.SnapshotOut]:
    return [schemas.SnapshotOut.model_validate(row) for row in recommendations.list_snapshots(db, days=days)]


@app.on_event("startup")
async def start_snapshot_worker() -> None:
    _start_snapshot_worker()


@app.on_event("shutdown")
async def stop_snapshot_worker() -> None:
    global _snapshot_task
    task = _snapshot_task
    if task is None:
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    _snapshot_task = None


def reset_application_state() -> None:
    """Reset mutable globals for test isolation."""

    global _analyze_rate_limiter
    _analyze_rate_limiter = _get_rate_limiter()
    _build_text_generator.cache_clear()

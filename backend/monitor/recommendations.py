"""Persistence for generated recommendations and daily snapshots."""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import schemas
from .database import conflict_insert, utcnow
from .models import Recommendation, Snapshot

logger = logging.getLogger(__name__)

ALL_STATUSES = "all"


class RecommendationNotFound(Exception):
    """Raised when a status transition targets an unknown recommendation."""


def upsert_snapshot(db: Session, snapshot_date: date, metrics: Dict[str, Any]) -> Snapshot:
    """Write the snapshot for ``snapshot_date``, overlaying any stored metrics.

    The row is claimed with an insert that ignores conflicts and then read
    back under a row lock, so concurrent writers for the same date queue up
    behind each other instead of failing on the unique date.
    """
    insert = conflict_insert(db)
    if insert is not None:
        claim = insert(Snapshot).values(snapshot_date=snapshot_date, metrics={}, created_at=utcnow())
        db.execute(claim.on_conflict_do_nothing(index_elements=[Snapshot.snapshot_date]))

    stmt = (
        select(Snapshot)
        .where(Snapshot.snapshot_date == snapshot_date)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    snapshot = db.execute(stmt).scalar_one_or_none()
    if snapshot is None:
        snapshot = Snapshot(snapshot_date=snapshot_date, metrics=dict(metrics), created_at=utcnow())
        db.add(snapshot)
    else:
        snapshot.metrics = {**snapshot.metrics, **metrics}
    db.flush()
    return snapshot


def summary_metrics(summary: schemas.Summary) -> Dict[str, Any]:
    return summary.model_dump(by_alias=True)


def save_analysis(
    db: Session,
    result: schemas.AnalysisResult,
    summary: schemas.Summary,
    source_model: str,
    generated_at: Optional[datetime] = None,
) -> List[Recommendation]:
    """Store one analysis run: its recommendations and the day's snapshot."""
    generated_at = generated_at or utcnow()
    try:
        rows = [
            Recommendation(
                generated_at=generated_at,
                category=rec.category.value,
                priority=rec.priority.value,
                title=rec.title,
                description=rec.description,
                evidence=rec.evidence,
                impact=rec.impact.value if rec.impact is not None else None,
                effort=rec.effort.value if rec.effort is not None else None,
                status=schemas.RecommendationStatus.NEW.value,
                source_model=source_model,
            )
            for rec in result.recommendations
        ]
        db.add_all(rows)
        upsert_snapshot(
            db,
            generated_at.date(),
            {
                **summary_metrics(summary),
                "overallScore": result.overall_score,
                "recommendations": len(rows),
            },
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return rows


def list_recommendations(db: Session, status: str = ALL_STATUSES) -> List[Recommendation]:
    stmt = select(Recommendation)
    if status != ALL_STATUSES:
        stmt = stmt.where(Recommendation.status == status)
    stmt = stmt.order_by(Recommendation.generated_at.desc(), Recommendation.id.desc())
    return list(db.execute(stmt).scalars())


def update_status(
    db: Session,
    recommendation_id: int,
    status: schemas.RecommendationStatus,
) -> Recommendation:
    """Move a recommendation to ``status``. Any status may follow any other."""
    recommendation = db.get(Recommendation, recommendation_id)
    if recommendation is None:
        raise RecommendationNotFound(f"Recommendation {recommendation_id} does not exist")
    previous = recommendation.status
    recommendation.status = status.value
    db.commit()
    logger.info(
        "Recommendation status changed id=%d from=%s to=%s", recommendation_id, previous, status.value
    )
    return recommendation


def list_snapshots(db: Session, days: int = 30, today: Optional[date] = None) -> List[Snapshot]:
    today = today or utcnow().date()
    stmt = (
        select(Snapshot)
        .where(Snapshot.snapshot_date >= today - timedelta(days=days))
        .order_by(Snapshot.snapshot_date.asc())
    )
    return list(db.execute(stmt).scalars())

"""Transactional ingestion of event batches."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import schemas
from .database import conflict_insert, utcnow
from .models import MonitorEvent, MonitorSession

logger = logging.getLogger(__name__)


def _count_page_views(batch_in: schemas.BatchIn) -> int:
    return sum(
        1
        for event in batch_in.batch
        if event.category is schemas.EventCategory.NAVIGATION and event.action == "page_view"
    )


def _upsert_session(
    db: Session,
    meta: schemas.SessionMeta,
    batch_size: int,
    page_views: int,
    received_at: datetime,
) -> None:
    values = dict(
        session_id=meta.session_id,
        user_id=meta.user_id,
        user_agent=meta.user_agent,
        screen_resolution=meta.screen_resolution,
        language=meta.language,
        referrer=meta.referrer,
        started_at=received_at,
        last_activity=received_at,
        page_views=page_views,
        total_events=batch_size,
    )

    insert = conflict_insert(db)
    if insert is not None:
        stmt = insert(MonitorSession).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[MonitorSession.session_id],
            set_={
                "last_activity": received_at,
                "total_events": MonitorSession.total_events + stmt.excluded.total_events,
                "page_views": MonitorSession.page_views + stmt.excluded.page_views,
            },
        )
        db.execute(stmt)
        return

    existing = db.execute(
        select(MonitorSession).where(MonitorSession.session_id == meta.session_id).with_for_update()
    ).scalar_one_or_none()
    if existing is None:
        db.add(MonitorSession(**values))
    else:
        existing.last_activity = received_at
        existing.total_events += batch_size
        existing.page_views += page_views
    db.flush()


def _event_row(event: schemas.EventIn, received_at: datetime) -> MonitorEvent:
    viewport = event.viewport or schemas.Viewport()
    return MonitorEvent(
        timestamp=event.timestamp,
        session_id=event.session_id,
        user_id=event.user_id,
        page=event.page,
        category=event.category.value,
        action=event.action,
        data=event.data,
        viewport_width=viewport.width,
        viewport_height=viewport.height,
        device_class=event.device.value if event.device is not None else None,
        created_at=received_at,
    )


def ingest_batch(
    db: Session,
    batch_in: schemas.BatchIn,
    received_at: Optional[datetime] = None,
) -> int:
    """Upsert the batch's session and store its events in one transaction.

    Either the whole batch becomes visible or none of it does. Returns the
    number of events accepted.
    """
    received_at = received_at or utcnow()
    try:
        if batch_in.session_meta is not None:
            _upsert_session(
                db,
                batch_in.session_meta,
                len(batch_in.batch),
                _count_page_views(batch_in),
                received_at,
            )
        for event in batch_in.batch:
            db.add(_event_row(event, received_at))
        db.flush()
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.debug(
        "Ingested batch events=%d session=%s",
        len(batch_in.batch),
        batch_in.session_meta.session_id if batch_in.session_meta else None,
    )
    return len(batch_in.batch)

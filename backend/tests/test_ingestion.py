from datetime import datetime

import pytest
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from backend.monitor import ingestion, schemas
from backend.monitor.models import MonitorEvent, MonitorSession

FIRST_ARRIVAL = datetime(2024, 5, 1, 9, 0, 0)
SECOND_ARRIVAL = datetime(2024, 5, 1, 9, 4, 30)


def _event_count(db):
    return db.scalar(select(func.count(MonitorEvent.id)))


def _session_row(db, session_id="sess-1"):
    return db.execute(select(MonitorSession).where(MonitorSession.session_id == session_id)).scalar_one()


def test_ingest_endpoint_stores_batch(app_module, db, make_batch):
    result = app_module.ingest_events(make_batch(size=3), db)

    assert result.received == 3
    assert _event_count(db) == 3
    session = _session_row(db)
    assert session.total_events == 3
    assert session.user_agent == "pytest"
    assert session.screen_resolution == "1920x1080"


def test_session_totals_accumulate_across_batches(db, make_batch):
    ingestion.ingest_batch(db, make_batch(size=4), received_at=FIRST_ARRIVAL)
    ingestion.ingest_batch(db, make_batch(size=6), received_at=SECOND_ARRIVAL)

    session = _session_row(db)
    assert session.total_events == 10
    assert session.started_at == FIRST_ARRIVAL
    assert session.last_activity == SECOND_ARRIVAL
    assert _event_count(db) == 10


def test_page_views_counted_per_batch(db, make_event, make_batch):
    events = [
        make_event(category="navigation", action="page_view", data={"url": "/a"}),
        make_event(category="navigation", action="page_change", data={"from": "/a", "to": "/b"}),
        make_event(category="navigation", action="page_view", data={"url": "/b"}),
    ]
    ingestion.ingest_batch(db, make_batch(events=events), received_at=FIRST_ARRIVAL)
    ingestion.ingest_batch(db, make_batch(events=events[:1]), received_at=SECOND_ARRIVAL)

    assert _session_row(db).page_views == 3


def test_batch_without_session_meta_stores_events_only(db, make_batch):
    ingestion.ingest_batch(db, make_batch(size=2, with_meta=False))

    assert _event_count(db) == 2
    assert db.scalar(select(func.count(MonitorSession.id))) == 0


def test_event_failure_rolls_back_entire_batch(app_module, db, make_batch, monkeypatch):
    ingestion.ingest_batch(db, make_batch(size=4), received_at=FIRST_ARRIVAL)

    original = ingestion._event_row
    calls = {"count": 0}

    def failing_event_row(event, received_at):
        calls["count"] += 1
        if calls["count"] == 3:
            raise SQLAlchemyError("disk full")
        return original(event, received_at)

    monkeypatch.setattr(ingestion, "_event_row", failing_event_row)

    with pytest.raises(HTTPException) as exc_info:
        app_module.ingest_events(make_batch(size=5), db)

    assert exc_info.value.status_code == 500
    assert exc_info.value.detail == "Failed to ingest events"
    assert _event_count(db) == 4
    session = _session_row(db)
    assert session.total_events == 4
    assert session.last_activity == FIRST_ARRIVAL


def test_event_fields_are_persisted(db, make_event, make_batch):
    event = make_event(category="feature", action="click", data={"feature": "save"}, device="mobile")
    ingestion.ingest_batch(db, make_batch(events=[event]), received_at=FIRST_ARRIVAL)

    row = db.execute(select(MonitorEvent)).scalar_one()
    assert row.category == "feature"
    assert row.device_class == "mobile"
    assert row.viewport_width == 1280
    assert row.data == {"feature": "save"}
    assert row.created_at == FIRST_ARRIVAL
    assert row.timestamp == 1_700_000_000_000


def test_known_payload_is_coerced(make_event):
    event = schemas.EventIn.model_validate(
        make_event(category="performance", action="page_load", data={"fullLoad": "1200", "ttfb": 80})
    )

    assert event.data == {"fullLoad": 1200.0, "ttfb": 80.0}


def test_unknown_keys_and_actions_pass_through(make_event):
    custom = schemas.EventIn.model_validate(make_event(category="business", action="checkout", data={"cart": 3}))
    extra = schemas.EventIn.model_validate(
        make_event(category="search", action="query", data={"query": "shoes", "source": "header"})
    )

    assert custom.data == {"cart": 3}
    assert extra.data == {"query": "shoes", "source": "header"}


def test_page_change_keeps_wire_keys(make_event):
    event = schemas.EventIn.model_validate(
        make_event(
            category="navigation",
            action="page_change",
            data={"from": "/a", "to": "/b", "timeOnPreviousPage": 1500},
        )
    )

    assert event.data == {"from": "/a", "to": "/b", "timeOnPreviousPage": 1500.0}


@pytest.mark.parametrize(
    "body",
    [
        {"batch": "not-a-list"},
        {"batch": [{"sessionId": "s", "category": "feature", "action": "click"}]},
        {"batch": [{"timestamp": 1, "sessionId": "s", "category": "unknown", "action": "x"}]},
        {"batch": [{"timestamp": 1, "sessionId": "s", "category": "feature", "action": ""}]},
        {
            "batch": [
                {
                    "timestamp": 1,
                    "sessionId": "s",
                    "category": "performance",
                    "action": "page_load",
                    "data": {"fullLoad": "slow"},
                }
            ]
        },
    ],
)
def test_malformed_batches_are_rejected(body):
    with pytest.raises(ValidationError):
        schemas.BatchIn.model_validate(body)

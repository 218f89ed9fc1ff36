"""Windowed aggregation over the event store.

Scalar counts, device and hourly breakdowns are computed in SQL. Breakdowns
keyed on the JSON ``data`` column stream the matching rows and group them in
Python, which keeps the grouping rules identical across database dialects.
Nothing here takes locks, so aggregation never blocks ingestion.
"""
from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Hashable, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import distinct, extract, func, select
from sqlalchemy.orm import Session

from . import schemas
from .database import utcnow
from .models import MonitorEvent

TOP_FEATURES = 30
TOP_PAGES = 20
TOP_UX_ISSUES = 20
TOP_ERRORS = 10
TOP_SEARCH_QUERIES = 20
TOP_FILTERS = 20
TOP_API_ENDPOINTS = 15
LIVE_EVENTS_LIMIT = 100
P95 = 0.95

_STREAM_BATCH = 500


def percentile_cont(values: Sequence[float], fraction: float) -> Optional[float]:
    """Continuous percentile with linear interpolation between closest ranks."""
    if not values:
        return None
    ordered = sorted(values)
    rank = fraction * (len(ordered) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(ordered[lower])
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (rank - lower)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


class _Group:
    __slots__ = ("count", "sessions", "samples", "failures")

    def __init__(self) -> None:
        self.count = 0
        self.sessions: Set[Optional[str]] = set()
        self.samples: List[float] = []
        self.failures = 0

    def add(self, session_id: Optional[str], sample: Optional[float] = None) -> None:
        self.count += 1
        self.sessions.add(session_id)
        if sample is not None:
            self.samples.append(sample)


def _tie_key(key: Hashable) -> Tuple[str, ...]:
    parts = key if isinstance(key, tuple) else (key,)
    return tuple("" if part is None else str(part) for part in parts)


def _top(groups: Dict[Hashable, _Group], limit: int) -> List[Tuple[Any, _Group]]:
    ordered = sorted(groups.items(), key=lambda item: (-item[1].count, _tie_key(item[0])))
    return ordered[:limit]


def _stream(db: Session, since: datetime, *criteria) -> Iterable[Any]:
    stmt = (
        select(MonitorEvent.session_id, MonitorEvent.page, MonitorEvent.action, MonitorEvent.data)
        .where(MonitorEvent.created_at >= since, *criteria)
        .execution_options(yield_per=_STREAM_BATCH)
    )
    for row in db.execute(stmt):
        yield row


def _window_start(days: int, now: Optional[datetime]) -> datetime:
    return (now or utcnow()) - timedelta(days=days)


# ---------------------------------------------------------------------------
# Scalar counts and SQL breakdowns
# ---------------------------------------------------------------------------


def compute_summary(db: Session, since: datetime) -> schemas.Summary:
    in_window = MonitorEvent.created_at >= since
    total_events = db.scalar(select(func.count(MonitorEvent.id)).where(in_window)) or 0
    total_sessions = (
        db.scalar(select(func.count(distinct(MonitorEvent.session_id))).where(in_window)) or 0
    )
    unique_users = db.scalar(select(func.count(distinct(MonitorEvent.user_id))).where(in_window)) or 0
    average = round_half_up(total_events / total_sessions) if total_sessions > 0 else 0
    return schemas.Summary(
        total_events=total_events,
        total_sessions=total_sessions,
        unique_users=unique_users,
        avg_events_per_session=average,
    )


def device_breakdown(db: Session, since: datetime) -> List[schemas.DeviceRow]:
    stmt = (
        select(MonitorEvent.device_class, func.count(distinct(MonitorEvent.session_id)))
        .where(MonitorEvent.created_at >= since, MonitorEvent.device_class.is_not(None))
        .group_by(MonitorEvent.device_class)
        .order_by(MonitorEvent.device_class)
    )
    return [schemas.DeviceRow(device=device, sessions=sessions) for device, sessions in db.execute(stmt)]


def hourly_activity(db: Session, since: datetime) -> List[schemas.HourlyActivityRow]:
    hour = extract("hour", MonitorEvent.created_at)
    stmt = (
        select(hour, func.count(MonitorEvent.id))
        .where(MonitorEvent.created_at >= since)
        .group_by(hour)
    )
    counts = {int(value): events for value, events in db.execute(stmt)}
    return [schemas.HourlyActivityRow(hour=h, events=counts.get(h, 0)) for h in range(24)]


# ---------------------------------------------------------------------------
# Breakdowns keyed on event data
# ---------------------------------------------------------------------------


def feature_usage(db: Session, since: datetime) -> List[schemas.FeatureUsageRow]:
    groups: Dict[Hashable, _Group] = defaultdict(_Group)
    for row in _stream(db, since, MonitorEvent.category == "feature"):
        feature = _text(row.data.get("feature"))
        if feature is not None:
            groups[feature].add(row.session_id)
    return [
        schemas.FeatureUsageRow(feature=feature, clicks=group.count, unique_sessions=len(group.sessions))
        for feature, group in _top(groups, TOP_FEATURES)
    ]


def top_pages(db: Session, since: datetime) -> List[schemas.PageRow]:
    groups: Dict[Hashable, _Group] = defaultdict(_Group)
    for row in _stream(db, since, MonitorEvent.action == "page_view"):
        if row.page is not None:
            groups[row.page].add(row.session_id, _number(row.data.get("timeOnPage")))
    return [
        schemas.PageRow(
            page=page,
            views=group.count,
            unique_sessions=len(group.sessions),
            avg_time=_mean(group.samples),
        )
        for page, group in _top(groups, TOP_PAGES)
    ]


def ux_issues(db: Session, since: datetime) -> List[schemas.UxIssueRow]:
    groups: Dict[Hashable, _Group] = defaultdict(_Group)
    for row in _stream(db, since, MonitorEvent.category == "ux_issue"):
        data = row.data
        key = (
            row.action,
            _text(data.get("element")),
            _text(data.get("text")),
            _text(data.get("className")),
            _number(data.get("x")),
            _number(data.get("y")),
        )
        groups[key].add(row.session_id)
    return [
        schemas.UxIssueRow(
            action=action,
            element=element,
            text=text,
            class_name=class_name,
            x=x,
            y=y,
            occurrences=group.count,
        )
        for (action, element, text, class_name, x, y), group in _top(groups, TOP_UX_ISSUES)
    ]


def error_messages(db: Session, since: datetime) -> List[schemas.ErrorRow]:
    groups: Dict[Hashable, _Group] = defaultdict(_Group)
    for row in _stream(db, since, MonitorEvent.category == "error"):
        message = _text(row.data.get("message"))
        if message is not None:
            groups[message].add(row.session_id)
    return [
        schemas.ErrorRow(message=message, count=group.count)
        for message, group in _top(groups, TOP_ERRORS)
    ]


def normalize_query(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized or None


def search_queries(db: Session, since: datetime) -> List[schemas.SearchQueryRow]:
    groups: Dict[Hashable, _Group] = defaultdict(_Group)
    for row in _stream(db, since, MonitorEvent.category == "search"):
        query = normalize_query(row.data.get("query"))
        if query is not None:
            groups[query].add(row.session_id)
    return [
        schemas.SearchQueryRow(query=query, count=group.count)
        for query, group in _top(groups, TOP_SEARCH_QUERIES)
    ]


def filter_usage(db: Session, since: datetime) -> List[schemas.FilterUsageRow]:
    groups: Dict[Hashable, _Group] = defaultdict(_Group)
    for row in _stream(db, since, MonitorEvent.category == "filter"):
        data = row.data
        key = (_text(data.get("label")), _text(data.get("name")), _text(data.get("value")))
        if key == (None, None, None):
            continue
        groups[key].add(row.session_id)
    return [
        schemas.FilterUsageRow(label=label, name=name, value=value, uses=group.count)
        for (label, name, value), group in _top(groups, TOP_FILTERS)
    ]


def api_endpoints(db: Session, since: datetime) -> List[schemas.ApiEndpointRow]:
    groups: Dict[Hashable, _Group] = defaultdict(_Group)
    for row in _stream(db, since, MonitorEvent.action == "api_call"):
        url = _text(row.data.get("url"))
        if url is None:
            continue
        group = groups[url]
        group.add(row.session_id, _number(row.data.get("duration")))
        if row.data.get("ok") is not True:
            group.failures += 1

    rows = [
        schemas.ApiEndpointRow(
            url=url,
            avg_duration=_mean(group.samples),
            calls=group.count,
            errors=group.failures,
        )
        for url, group in groups.items()
    ]
    rows.sort(key=lambda r: (r.avg_duration is None, -(r.avg_duration or 0.0), r.url))
    return rows[:TOP_API_ENDPOINTS]


def scroll_depth(db: Session, since: datetime) -> List[schemas.ScrollDepthRow]:
    counts: Dict[int, int] = defaultdict(int)
    for row in _stream(db, since, MonitorEvent.action == "scroll_depth"):
        depth = _number(row.data.get("depth"))
        if depth is not None:
            counts[int(depth)] += 1
    return [schemas.ScrollDepthRow(depth=depth, count=counts[depth]) for depth in sorted(counts)]


def load_time_stats(db: Session, since: datetime) -> schemas.LoadTimeStats:
    full_load: List[float] = []
    ttfb: List[float] = []
    dom_ready: List[float] = []
    criteria = (MonitorEvent.category == "performance", MonitorEvent.action == "page_load")
    for row in _stream(db, since, *criteria):
        for samples, key in ((full_load, "fullLoad"), (ttfb, "ttfb"), (dom_ready, "domReady")):
            value = _number(row.data.get(key))
            if value is not None:
                samples.append(value)
    return schemas.LoadTimeStats(
        avg_load_time=_mean(full_load),
        avg_ttfb=_mean(ttfb),
        avg_dom_ready=_mean(dom_ready),
        p95_load_time=percentile_cont(full_load, P95),
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def compute_overview(db: Session, days: int = 7, now: Optional[datetime] = None) -> schemas.Overview:
    """Aggregate every dimension over the trailing ``days`` window."""
    since = _window_start(days, now)
    return schemas.Overview(
        period=schemas.Period(days=days, since=since),
        summary=compute_summary(db, since),
        feature_usage=feature_usage(db, since),
        top_pages=top_pages(db, since),
        ux_issues=ux_issues(db, since),
        performance=schemas.PerformanceOut(
            averages=load_time_stats(db, since),
            api_endpoints=api_endpoints(db, since),
        ),
        errors=error_messages(db, since),
        devices=device_breakdown(db, since),
        search_queries=search_queries(db, since),
        scroll_depth=scroll_depth(db, since),
        filter_usage=filter_usage(db, since),
        hourly_activity=hourly_activity(db, since),
    )


def recent_events(db: Session, minutes: int = 5, now: Optional[datetime] = None) -> List[MonitorEvent]:
    since = (now or utcnow()) - timedelta(minutes=minutes)
    stmt = (
        select(MonitorEvent)
        .where(MonitorEvent.created_at >= since)
        .order_by(MonitorEvent.created_at.desc(), MonitorEvent.id.desc())
        .limit(LIVE_EVENTS_LIMIT)
    )
    return list(db.execute(stmt).scalars())

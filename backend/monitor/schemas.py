"""Pydantic models for request and response bodies."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class EventCategory(str, Enum):
    NAVIGATION = "navigation"
    FEATURE = "feature"
    INTERACTION = "interaction"
    SEARCH = "search"
    FILTER = "filter"
    ENGAGEMENT = "engagement"
    UX_ISSUE = "ux_issue"
    PERFORMANCE = "performance"
    ERROR = "error"
    CONTENT = "content"
    BUSINESS = "business"


class DeviceClass(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


# ---------------------------------------------------------------------------
# Event payloads, keyed by (category, action)
# ---------------------------------------------------------------------------


class EventData(BaseModel):
    """Base for typed event payloads. Unknown keys are kept as-is."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class ElementData(EventData):
    element: Optional[str] = None
    id: Optional[str] = None
    class_name: Optional[str] = None
    text: Optional[str] = None


class PageViewData(EventData):
    url: Optional[str] = None
    title: Optional[str] = None
    referrer: Optional[str] = None
    time_on_page: Optional[float] = None


class PageChangeData(EventData):
    from_: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None
    time_on_previous_page: Optional[float] = None


class FeatureClickData(ElementData):
    feature: Optional[str] = None
    href: Optional[str] = None
    data_feature: Optional[str] = None


class ClickVoidData(ElementData):
    x: Optional[float] = None
    y: Optional[float] = None


class SearchQueryData(EventData):
    query: Optional[str] = None
    length: Optional[int] = None
    input_id: Optional[str] = None
    placeholder: Optional[str] = None


class FilterChangeData(EventData):
    element: Optional[str] = None
    type: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    value: Optional[str] = None
    checked: Optional[bool] = None
    label: Optional[str] = None


class ScrollDepthData(EventData):
    depth: Optional[int] = None
    page_height: Optional[float] = None


class PageExitData(EventData):
    time_on_page: Optional[float] = None
    max_scroll_depth: Optional[int] = None
    page: Optional[str] = None


class TabVisibleData(EventData):
    hidden_duration: Optional[float] = None


class RageClickData(ElementData):
    x: Optional[float] = None
    y: Optional[float] = None
    click_count: Optional[int] = None


class DeadClickData(ElementData):
    x: Optional[float] = None
    y: Optional[float] = None


class PageLoadData(EventData):
    dns: Optional[float] = None
    tcp: Optional[float] = None
    ttfb: Optional[float] = None
    dom_ready: Optional[float] = None
    full_load: Optional[float] = None
    dom_interactive: Optional[float] = None
    transfer_size: Optional[float] = None
    encoded_size: Optional[float] = None
    decoded_size: Optional[float] = None


class WebVitalData(EventData):
    value: Optional[float] = None
    element: Optional[str] = None
    url: Optional[str] = None


class ApiCallData(EventData):
    url: Optional[str] = None
    method: Optional[str] = None
    status: Optional[int] = None
    duration: Optional[float] = None
    ok: Optional[bool] = None


class ApiErrorData(EventData):
    url: Optional[str] = None
    method: Optional[str] = None
    duration: Optional[float] = None
    error: Optional[str] = None


class ErrorData(EventData):
    message: Optional[str] = None
    source: Optional[str] = None
    line: Optional[int] = None
    col: Optional[int] = None


class ImageViewedData(EventData):
    src: Optional[str] = None
    alt: Optional[str] = None
    natural_width: Optional[int] = None
    natural_height: Optional[int] = None
    load_time: Optional[str] = None


EVENT_DATA_SCHEMAS: Dict[Tuple[str, str], Type[EventData]] = {
    ("navigation", "page_view"): PageViewData,
    ("navigation", "page_change"): PageChangeData,
    ("feature", "click"): FeatureClickData,
    ("interaction", "click_void"): ClickVoidData,
    ("search", "query"): SearchQueryData,
    ("filter", "change"): FilterChangeData,
    ("engagement", "scroll_depth"): ScrollDepthData,
    ("engagement", "page_exit"): PageExitData,
    ("engagement", "tab_visible"): TabVisibleData,
    ("ux_issue", "rage_click"): RageClickData,
    ("ux_issue", "dead_click"): DeadClickData,
    ("performance", "page_load"): PageLoadData,
    ("performance", "lcp"): WebVitalData,
    ("performance", "cls"): WebVitalData,
    ("performance", "fid"): WebVitalData,
    ("performance", "api_call"): ApiCallData,
    ("performance", "api_error"): ApiErrorData,
    ("error", "js_error"): ErrorData,
    ("error", "promise_rejection"): ErrorData,
    ("content", "image_viewed"): ImageViewedData,
}


def normalize_event_data(category: str, action: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate ``data`` against the schema registered for ``(category, action)``.

    Unregistered pairs are returned unchanged. Registered pairs are coerced to
    their declared field types, keeping any extra keys the client sent.
    """
    schema = EVENT_DATA_SCHEMAS.get((category, action))
    if schema is None:
        return dict(data)
    return schema.model_validate(data).model_dump(by_alias=True, exclude_unset=True)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class Viewport(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None


class EventIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: int = Field(..., description="Client clock, epoch milliseconds")
    session_id: str = Field(..., alias="sessionId", max_length=64)
    user_id: Optional[str] = Field(None, alias="userId", max_length=64)
    page: Optional[str] = Field(None, max_length=500)
    category: EventCategory
    action: str = Field(..., min_length=1, max_length=50)
    data: Dict[str, Any] = Field(default_factory=dict)
    viewport: Optional[Viewport] = None
    device: Optional[DeviceClass] = None

    @model_validator(mode="after")
    def _normalize_data(self) -> "EventIn":
        try:
            self.data = normalize_event_data(self.category.value, self.action, self.data)
        except ValidationError as exc:
            raise ValueError(
                f"invalid data for {self.category.value}/{self.action}: {exc.error_count()} error(s)"
            ) from exc
        return self


class SessionMeta(CamelModel):
    session_id: str = Field(..., max_length=64)
    user_id: Optional[str] = Field(None, max_length=64)
    user_agent: Optional[str] = None
    screen_resolution: Optional[str] = Field(None, max_length=20)
    language: Optional[str] = Field(None, max_length=35)
    referrer: Optional[str] = None


class BatchIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch: List[EventIn]
    session_meta: Optional[SessionMeta] = Field(None, alias="sessionMeta")


class BatchAccepted(BaseModel):
    received: int


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


class Period(CamelModel):
    days: int
    since: datetime


class Summary(CamelModel):
    total_events: int
    total_sessions: int
    unique_users: int
    avg_events_per_session: int


class FeatureUsageRow(CamelModel):
    feature: str
    clicks: int
    unique_sessions: int


class PageRow(CamelModel):
    page: str
    views: int
    unique_sessions: int
    avg_time: Optional[float] = None


class UxIssueRow(CamelModel):
    action: str
    element: Optional[str] = None
    text: Optional[str] = None
    class_name: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None
    occurrences: int


class ErrorRow(CamelModel):
    message: str
    count: int


class DeviceRow(CamelModel):
    device: str
    sessions: int


class SearchQueryRow(CamelModel):
    query: str
    count: int


class FilterUsageRow(CamelModel):
    label: Optional[str] = None
    name: Optional[str] = None
    value: Optional[str] = None
    uses: int


class ApiEndpointRow(CamelModel):
    url: str
    avg_duration: Optional[float] = None
    calls: int
    errors: int


class HourlyActivityRow(CamelModel):
    hour: int
    events: int


class ScrollDepthRow(CamelModel):
    depth: int
    count: int


class LoadTimeStats(CamelModel):
    avg_load_time: Optional[float] = None
    avg_ttfb: Optional[float] = None
    avg_dom_ready: Optional[float] = None
    p95_load_time: Optional[float] = None


class PerformanceOut(CamelModel):
    averages: LoadTimeStats
    api_endpoints: List[ApiEndpointRow]


class Overview(CamelModel):
    period: Period
    summary: Summary
    feature_usage: List[FeatureUsageRow]
    top_pages: List[PageRow]
    ux_issues: List[UxIssueRow]
    performance: PerformanceOut
    errors: List[ErrorRow]
    devices: List[DeviceRow]
    search_queries: List[SearchQueryRow]
    scroll_depth: List[ScrollDepthRow]
    filter_usage: List[FilterUsageRow]
    hourly_activity: List[HourlyActivityRow]


class LiveEventOut(CamelModel):
    category: str
    action: str
    page: Optional[str] = None
    data: Dict[str, Any]
    device: Optional[str] = Field(None, validation_alias="device_class")
    created_at: datetime


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------


class RecommendationCategory(str, Enum):
    FEATURE_REMOVAL = "feature_removal"
    FEATURE_IMPROVEMENT = "feature_improvement"
    NEW_FEATURE = "new_feature"
    PERFORMANCE = "performance"
    UX_FIX = "ux_fix"
    UI_IMPROVEMENT = "ui_improvement"
    WORKFLOW = "workflow"
    ACCESSIBILITY = "accessibility"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Level(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RecommendationStatus(str, Enum):
    NEW = "new"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DONE = "done"


class RecommendationIn(CamelModel):
    category: RecommendationCategory
    priority: Priority
    title: str = Field(..., max_length=200)
    description: str
    evidence: Optional[str] = None
    impact: Optional[Level] = None
    effort: Optional[Level] = None


class AnalysisResult(CamelModel):
    overall_score: Optional[float] = None
    summary: str = ""
    key_insights: List[str] = Field(default_factory=list)
    recommendations: List[RecommendationIn] = Field(default_factory=list)
    unused_features: List[str] = Field(default_factory=list)
    frustration_points: List[str] = Field(default_factory=list)
    positive_patterns: List[str] = Field(default_factory=list)


class RecommendationOut(CamelModel):
    id: int
    generated_at: datetime
    category: str
    priority: str
    title: str
    description: str
    evidence: Optional[str] = None
    impact: Optional[str] = None
    effort: Optional[str] = None
    status: str
    source_model: Optional[str] = None


class StatusUpdate(BaseModel):
    status: RecommendationStatus


class StatusUpdated(BaseModel):
    success: bool = True


class SnapshotOut(CamelModel):
    id: int
    snapshot_date: date
    metrics: Dict[str, Any]
    created_at: datetime

"""Event capture agent and the interaction handlers that feed it.

``Tracker`` is the single producer of events. Every handler is isolated from
the host application: failures are logged and never raised to the caller.
Handlers are serialized on one re-entrant lock so timer callbacks (scroll and
search debouncing) interleave with host calls the way a single-threaded
event loop would.
"""
from __future__ import annotations

import functools
import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlsplit

import requests

from .config import TrackerConfig
from .detectors import (
    Element,
    RageClickDetector,
    ScrollDepthTracker,
    compute_scroll_depth,
    device_class_for_width,
    is_dead_click,
)
from .flush import BatchFlushScheduler, Scheduler, ThreadingScheduler, TimerHandle, Transport
from .identity import FileStorage, IdentityStore, SessionState, UserState
from .transport import RequestsTransport

logger = logging.getLogger(__name__)

MONITOR_PATH = "/api/monitor/"
SCROLL_DEBOUNCE_SECONDS = 0.2
SEARCH_DEBOUNCE_SECONDS = 0.5
MAX_PAGE_LENGTH = 500
USER_FILE = "user.json"
SESSION_FILE = "session.json"

FEATURE_TAGS = frozenset({"button", "a", "input", "select"})
FEATURE_ATTRIBUTES = ("data-feature", "onclick")
SEARCH_INPUT_TYPES = frozenset({"search", "text"})
FILTER_INPUT_TYPES = frozenset({"checkbox", "radio"})
WEB_VITALS = frozenset({"lcp", "cls", "fid"})


def _clip(value: Optional[Any], limit: int) -> Optional[str]:
    if value is None:
        return None
    return str(value)[:limit].strip()


def _round(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(round(value))


def isolated(method: Callable) -> Callable:
    """Run a tracker handler under the tracker lock, logging instead of raising."""

    @functools.wraps(method)
    def wrapper(self: "Tracker", *args, **kwargs):
        try:
            with self._lock:
                return method(self, *args, **kwargs)
        except Exception:
            logger.exception("Tracker handler %s failed", method.__name__)
            return None

    return wrapper


@dataclass
class PageContext:
    """What the host tells the tracker about the current page and device."""

    url: str
    title: str = ""
    referrer: str = ""
    viewport_width: int = 1280
    viewport_height: int = 800
    screen_width: int = 1920
    screen_height: int = 1080
    user_agent: str = ""
    language: str = "en-US"
    element_from_point: Optional[Callable[[float, float], Optional[Element]]] = None

    @property
    def path(self) -> str:
        parts = urlsplit(self.url)
        path = parts.path or "/"
        return f"{path}?{parts.query}" if parts.query else path

    @property
    def pathname(self) -> str:
        return urlsplit(self.url).path or "/"


def _is_feature_target(element: Element) -> bool:
    if element.tag in FEATURE_TAGS:
        return True
    if any(name in element.attributes for name in FEATURE_ATTRIBUTES):
        return True
    return "clickable" in element.class_name.split()


def _is_search_input(element: Element) -> bool:
    if element.tag == "input" and element.attributes.get("type", "text") in SEARCH_INPUT_TYPES:
        return True
    if "search" in (element.data_feature or ""):
        return True
    if element.id == "search" or "search-input" in element.class_name.split():
        return True
    return "search" in element.attributes.get("placeholder", "").lower()


def _is_filter_control(element: Element) -> bool:
    if element.tag == "select":
        return True
    return element.tag == "input" and element.attributes.get("type") in FILTER_INPUT_TYPES


def _element_fields(element: Optional[Element], text_limit: int = 50) -> Dict[str, Any]:
    if element is None:
        return {"element": None, "id": None, "className": None, "text": None}
    return {
        "element": element.tag_name,
        "id": element.id,
        "className": _clip(element.class_name, 100),
        "text": _clip(element.text, text_limit),
    }


class Tracker:
    """Captures interaction events for one page load.

    Call :meth:`start` when the page loads and :meth:`close` when it unloads.
    ``track``, ``flush``, ``get_session``, ``get_user`` and ``config`` form the
    surface host applications use for custom events.
    """

    def __init__(
        self,
        page: PageContext,
        config: Optional[TrackerConfig] = None,
        *,
        transport: Optional[Transport] = None,
        identity: Optional[IdentityStore] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or TrackerConfig()
        if self.config.debug:
            logger.setLevel(logging.DEBUG)
        self.page = page
        self._clock = clock
        self._lock = threading.RLock()
        self._scheduler = scheduler or ThreadingScheduler()
        self._owns_transport = transport is None
        self._transport = transport or RequestsTransport(
            self.config.api_endpoint, timeout=self.config.request_timeout
        )
        self._identity = identity or self._default_identity(clock)
        self._queue = BatchFlushScheduler(
            self._transport,
            self._session_meta,
            batch_size=self.config.batch_size,
            flush_interval=self.config.flush_interval,
            max_queue_size=self.config.max_queue_size,
            backoff_base=self.config.retry_backoff_base,
            backoff_max=self.config.retry_backoff_max,
            scheduler=self._scheduler,
            clock=clock,
        )
        self._rage_clicks = RageClickDetector()
        self._scroll = ScrollDepthTracker()
        self._scroll_timer: Optional[TimerHandle] = None
        self._search_timer: Optional[TimerHandle] = None
        self._page_entry_ms = 0
        self._hidden_at_ms: Optional[int] = None
        self._closed = False

        self.session: Optional[SessionState] = None
        self.user: Optional[UserState] = None

    def _default_identity(self, clock: Callable[[], float]) -> IdentityStore:
        persistent = visit = None
        if self.config.storage_dir is not None:
            root = Path(self.config.storage_dir).expanduser()
            persistent = FileStorage(root / USER_FILE)
            visit = FileStorage(root / SESSION_FILE)
        return IdentityStore(persistent, visit, session_timeout=self.config.session_timeout, clock=clock)

    @property
    def queue(self) -> BatchFlushScheduler:
        return self._queue

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _session_meta(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session.id if self.session else None,
            "userId": self.user.id if self.user else None,
            "userAgent": self.page.user_agent,
            "screenResolution": f"{self.page.screen_width}x{self.page.screen_height}",
            "language": self.page.language,
            "referrer": self.page.referrer,
        }

    # -- lifecycle ------------------------------------------------------------

    @isolated
    def start(self) -> None:
        self.session = self._identity.get_or_create_session()
        self.user = self._identity.get_or_create_user()
        self._page_entry_ms = self._now_ms()
        self.track(
            "navigation",
            "page_view",
            {"url": self.page.url, "title": self.page.title, "referrer": self.page.referrer},
        )
        logger.debug("Tracker initialized session=%s user=%s", self.session.id, self.user.id)

    @isolated
    def close(self) -> None:
        """Unload: record the page exit, flush synchronously and persist the user."""
        if self._closed:
            return
        self._closed = True
        self.track(
            "engagement",
            "page_exit",
            {
                "timeOnPage": self._now_ms() - self._page_entry_ms,
                "maxScrollDepth": self._scroll.max_depth,
                "page": self.page.pathname,
            },
        )
        for timer in (self._scroll_timer, self._search_timer):
            if timer is not None:
                timer.cancel()
        self._queue.close()
        if self.user is not None:
            self._identity.save_user(self.user)
        if self._owns_transport:
            self._transport.close()

    # -- host-facing surface --------------------------------------------------

    @isolated
    def track(self, category: str, action: str, data: Optional[Mapping[str, Any]] = None) -> None:
        if self.session is None or self.user is None:
            raise RuntimeError("Tracker.start() must run before events are tracked")
        payload = dict(data or {})
        try:
            json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Data for {category}/{action} is not JSON serializable: {exc}") from exc
        event = {
            "timestamp": self._now_ms(),
            "sessionId": self.session.id,
            "userId": self.user.id,
            "page": self.page.path[:MAX_PAGE_LENGTH],
            "category": category,
            "action": action,
            "data": payload,
            "viewport": {"width": self.page.viewport_width, "height": self.page.viewport_height},
            "device": device_class_for_width(self.page.viewport_width),
        }
        self.user.total_events += 1
        logger.debug("[Monitor] %s %s %s", category, action, payload)
        self._queue.enqueue(event)

    @isolated
    def flush(self) -> None:
        self._queue.flush()

    def get_session(self) -> Optional[Dict[str, Any]]:
        return self.session.to_dict() if self.session else None

    def get_user(self) -> Optional[Dict[str, Any]]:
        return self.user.to_dict() if self.user else None

    # -- clicks -----------------------------------------------------------------

    def _element_at(self, x: float, y: float) -> Optional[Element]:
        if self.page.element_from_point is None:
            return None
        return self.page.element_from_point(x, y)

    @isolated
    def on_click(self, target: Element, x: float, y: float) -> None:
        feature_target = target.closest(_is_feature_target)
        if feature_target is None:
            self.track(
                "interaction",
                "click_void",
                {
                    "element": target.tag_name,
                    "className": _clip(target.class_name, 100),
                    "text": _clip(target.text, 50),
                    "x": x,
                    "y": y,
                },
            )
        else:
            feature = (
                feature_target.data_feature
                or feature_target.id
                or feature_target.attributes.get("aria-label")
                or _clip(feature_target.text, 50)
                or feature_target.tag_name
            )
            self.track(
                "feature",
                "click",
                {
                    "feature": feature,
                    **_element_fields(feature_target, text_limit=80),
                    "href": feature_target.attributes.get("href"),
                    "dataFeature": feature_target.data_feature,
                },
            )

        rage = self._rage_clicks.record(self._now_ms(), x, y)
        if rage is not None:
            self.track(
                "ux_issue",
                "rage_click",
                {
                    "x": rage.x,
                    "y": rage.y,
                    **_element_fields(self._element_at(rage.x, rage.y)),
                    "clickCount": rage.click_count,
                },
            )

        if is_dead_click(target):
            self.track("ux_issue", "dead_click", {**_element_fields(target), "x": x, "y": y})

    # -- scroll ---------------------------------------------------------------

    @isolated
    def on_scroll(self, scroll_top: float, scroll_height: float) -> None:
        if self._scroll_timer is not None:
            self._scroll_timer.cancel()
        self._scroll_timer = self._scheduler.call_later(
            SCROLL_DEBOUNCE_SECONDS, lambda: self._check_scroll(scroll_top, scroll_height)
        )

    @isolated
    def _check_scroll(self, scroll_top: float, scroll_height: float) -> None:
        self._scroll_timer = None
        depth = compute_scroll_depth(scroll_top, scroll_height, self.page.viewport_height)
        for checkpoint in self._scroll.update(depth):
            self.track("engagement", "scroll_depth", {"depth": checkpoint, "pageHeight": scroll_height})

    # -- inputs -----------------------------------------------------------------

    @isolated
    def on_input(self, target: Element, value: str) -> None:
        if not _is_search_input(target):
            return
        if self._search_timer is not None:
            self._search_timer.cancel()
        self._search_timer = self._scheduler.call_later(
            SEARCH_DEBOUNCE_SECONDS, lambda: self._track_search(target, value)
        )

    @isolated
    def _track_search(self, target: Element, value: str) -> None:
        self._search_timer = None
        self.track(
            "search",
            "query",
            {
                "query": (value or "")[:100],
                "length": len(value or ""),
                "inputId": target.id,
                "placeholder": target.attributes.get("placeholder"),
            },
        )

    @isolated
    def on_change(
        self,
        target: Element,
        value: Optional[str] = None,
        checked: Optional[bool] = None,
        label: Optional[str] = None,
    ) -> None:
        if not _is_filter_control(target):
            return
        if label is None:
            label_element = target.closest(lambda node: node.tag == "label")
            label = label_element.text if label_element is not None else None
        self.track(
            "filter",
            "change",
            {
                "element": target.tag_name,
                "type": target.attributes.get("type", target.tag),
                "id": target.id,
                "name": target.attributes.get("name"),
                "value": _clip(value, 100),
                "checked": checked,
                "label": _clip(label, 50),
            },
        )

    # -- page lifecycle signals -----------------------------------------------

    @isolated
    def navigate(self, url: str) -> None:
        if url == self.page.url:
            return
        now = self._now_ms()
        self.track(
            "navigation",
            "page_change",
            {"from": self.page.url, "to": url, "timeOnPreviousPage": now - self._page_entry_ms},
        )
        self.page.url = url
        self._page_entry_ms = now
        self._scroll.reset()

    @isolated
    def on_visibility_change(self, hidden: bool) -> None:
        if hidden:
            self._hidden_at_ms = self._now_ms()
            self.track("engagement", "tab_hidden", {})
        elif self._hidden_at_ms is not None:
            self.track("engagement", "tab_visible", {"hiddenDuration": self._now_ms() - self._hidden_at_ms})
            self._hidden_at_ms = None

    @isolated
    def on_page_load(self, timing: Mapping[str, float]) -> None:
        """Record navigation timing (keys as in the Navigation Timing API)."""
        start = timing.get("startTime", 0.0)

        def span(end_key: str, start_value: float) -> Optional[int]:
            end = timing.get(end_key)
            return _round(end - start_value) if end is not None else None

        self.track(
            "performance",
            "page_load",
            {
                "dns": span("domainLookupEnd", timing.get("domainLookupStart", 0.0)),
                "tcp": span("connectEnd", timing.get("connectStart", 0.0)),
                "ttfb": span("responseStart", timing.get("requestStart", 0.0)),
                "domReady": span("domContentLoadedEventEnd", start),
                "fullLoad": span("loadEventEnd", start),
                "domInteractive": span("domInteractive", start),
                "transferSize": timing.get("transferSize"),
                "encodedSize": timing.get("encodedBodySize"),
                "decodedSize": timing.get("decodedBodySize"),
            },
        )

    @isolated
    def on_web_vital(
        self,
        name: str,
        value: float,
        element: Optional[str] = None,
        url: Optional[str] = None,
    ) -> None:
        name = name.lower()
        if name not in WEB_VITALS:
            raise ValueError(f"Unknown web vital {name!r}")
        data: Dict[str, Any] = {"value": round(value, 3) if name == "cls" else _round(value)}
        if name == "lcp":
            data.update(element=element, url=url)
        self.track("performance", name, data)

    # -- errors -------------------------------------------------------------------

    @isolated
    def on_error(
        self,
        message: str,
        source: Optional[str] = None,
        line: Optional[int] = None,
        col: Optional[int] = None,
    ) -> None:
        self.track(
            "error",
            "js_error",
            {"message": _clip(message, 200), "source": source, "line": line, "col": col},
        )

    @isolated
    def on_unhandled_rejection(self, reason: Any) -> None:
        self.track("error", "promise_rejection", {"message": _clip(reason, 200)})

    # -- network -------------------------------------------------------------------

    @isolated
    def on_api_call(self, url: str, method: str, status: int, duration_ms: float, ok: bool) -> None:
        if MONITOR_PATH in url:
            return
        self.track(
            "performance",
            "api_call",
            {
                "url": url[:200],
                "method": method or "GET",
                "status": status,
                "duration": _round(duration_ms),
                "ok": ok,
            },
        )

    @isolated
    def on_api_error(self, url: str, method: str, duration_ms: float, error: Any) -> None:
        if MONITOR_PATH in url:
            return
        self.track(
            "performance",
            "api_error",
            {
                "url": url[:200],
                "method": method or "GET",
                "duration": _round(duration_ms),
                "error": _clip(error, 100),
            },
        )

    def instrument(self, session: requests.Session) -> requests.Session:
        """Report every response received through ``session`` as an API call."""

        def _on_response(response: requests.Response, *args, **kwargs) -> requests.Response:
            request = response.request
            self.on_api_call(
                response.url,
                request.method if request is not None else "GET",
                response.status_code,
                response.elapsed.total_seconds() * 1000,
                response.ok,
            )
            return response

        session.hooks["response"].append(_on_response)
        return session

    # -- content ---------------------------------------------------------------

    @isolated
    def on_image_viewed(
        self,
        src: str,
        alt: str = "",
        natural_width: int = 0,
        natural_height: int = 0,
        complete: bool = True,
    ) -> None:
        self.track(
            "content",
            "image_viewed",
            {
                "src": _clip(src, 200),
                "alt": _clip(alt, 100),
                "naturalWidth": natural_width,
                "naturalHeight": natural_height,
                "loadTime": "already_loaded" if complete else "loading",
            },
        )

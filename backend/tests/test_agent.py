import json
from datetime import datetime, timedelta

import pytest
import requests

from backend.tracker import Element, PageContext, Tracker, TrackerConfig
from backend.tracker.identity import USER_KEY, IdentityStore, MemoryStorage


@pytest.fixture
def page():
    return PageContext(
        url="https://shop.example/catalog?sort=price",
        title="Catalog",
        referrer="https://search.example/",
        viewport_width=1280,
        viewport_height=800,
        user_agent="pytest",
    )


@pytest.fixture
def tracker(page, transport, scheduler):
    identity = IdentityStore(persistent=MemoryStorage(), clock=scheduler.time)
    tracker = Tracker(
        page,
        TrackerConfig(batch_size=50),
        transport=transport,
        identity=identity,
        scheduler=scheduler,
        clock=scheduler.time,
    )
    tracker.start()
    return tracker


def _actions(tracker):
    return [(e["category"], e["action"]) for e in tracker.queue.pending_events]


def _last(tracker):
    return tracker.queue.pending_events[-1]


def test_start_records_page_view_with_identity(tracker):
    event = _last(tracker)

    assert (event["category"], event["action"]) == ("navigation", "page_view")
    assert event["sessionId"] == tracker.get_session()["id"]
    assert event["userId"] == tracker.get_user()["id"]
    assert event["page"] == "/catalog?sort=price"
    assert event["device"] == "desktop"
    assert event["viewport"] == {"width": 1280, "height": 800}
    assert event["data"]["title"] == "Catalog"


def test_track_enriches_custom_events(tracker, scheduler):
    scheduler.now = 2.5
    tracker.track("custom", "checkout_started", {"cart": 3})

    event = _last(tracker)
    assert event["data"] == {"cart": 3}
    assert event["timestamp"] == int((1_700_000_000.0 + 2.5) * 1000)
    assert tracker.get_user()["totalEvents"] == 2


def test_track_before_start_is_swallowed(page, transport, scheduler):
    tracker = Tracker(
        page, TrackerConfig(storage_dir=None), transport=transport, scheduler=scheduler, clock=scheduler.time
    )

    tracker.track("custom", "early")

    assert len(tracker.queue) == 0


def test_tenth_event_flushes_default_batch(page, transport, scheduler):
    tracker = Tracker(
        page, TrackerConfig(storage_dir=None), transport=transport, scheduler=scheduler, clock=scheduler.time
    )
    tracker.start()
    for n in range(9):
        tracker.track("custom", "tick", {"n": n})

    assert len(transport.batches) == 1
    assert len(transport.batches[0]) == 10
    assert transport.payloads[0]["sessionMeta"]["screenResolution"] == "1920x1080"


def test_click_on_feature_records_feature_usage(tracker):
    button = Element("button", id="save-btn", text="Save", attributes={"data-feature": "save"})
    icon = Element("svg", parent=button)

    tracker.on_click(icon, 10, 10)

    event = _last(tracker)
    assert (event["category"], event["action"]) == ("feature", "click")
    assert event["data"]["feature"] == "save"
    assert event["data"]["element"] == "BUTTON"
    assert event["data"]["dataFeature"] == "save"


def test_click_outside_features_records_void_click(tracker):
    tracker.on_click(Element("p", text="Some copy"), 5, 6)

    event = _last(tracker)
    assert (event["category"], event["action"]) == ("interaction", "click_void")
    assert event["data"]["element"] == "P"
    assert event["data"]["x"] == 5


def test_repeated_clicks_emit_rage_click(tracker, scheduler, page):
    target = Element("div", class_name="banner")
    page.element_from_point = lambda x, y: target
    for _ in range(3):
        tracker.on_click(target, 100, 100)
        scheduler.now += 0.2

    assert _actions(tracker).count(("ux_issue", "rage_click")) == 1
    rage = [e for e in tracker.queue.pending_events if e["action"] == "rage_click"][0]
    assert rage["data"]["clickCount"] == 3
    assert rage["data"]["className"] == "banner"


def test_pointer_without_behaviour_emits_dead_click(tracker):
    tracker.on_click(Element("div", class_name="card", cursor="pointer"), 1, 2)

    assert _actions(tracker)[-1] == ("ux_issue", "dead_click")


def test_handler_failure_does_not_reach_host(tracker, scheduler, page):
    def broken(x, y):
        raise RuntimeError("layout unavailable")

    page.element_from_point = broken
    for _ in range(3):
        tracker.on_click(Element("span"), 50, 50)

    assert _actions(tracker).count(("interaction", "click_void")) == 3
    tracker.track("custom", "still_alive")
    assert _actions(tracker)[-1] == ("custom", "still_alive")


def test_scroll_is_debounced_and_fires_checkpoints(tracker, scheduler):
    tracker.on_scroll(200, 2800)
    tracker.on_scroll(1000, 2800)
    scheduler.advance(0.2)

    depths = [e["data"]["depth"] for e in tracker.queue.pending_events if e["action"] == "scroll_depth"]
    assert depths == [25, 50]


def test_navigation_resets_scroll_checkpoints(tracker, scheduler, page):
    tracker.on_scroll(600, 1400)
    scheduler.advance(0.2)
    tracker.navigate("https://shop.example/cart")
    tracker.on_scroll(600, 1400)
    scheduler.advance(0.2)

    assert _actions(tracker).count(("engagement", "scroll_depth")) == 10
    change = [e for e in tracker.queue.pending_events if e["action"] == "page_change"][0]
    assert change["data"]["to"] == "https://shop.example/cart"
    assert _last(tracker)["page"] == "/cart"


def test_search_input_is_debounced(tracker, scheduler):
    box = Element("input", id="q", attributes={"type": "search", "placeholder": "Search products"})
    tracker.on_input(box, "sh")
    scheduler.advance(0.3)
    tracker.on_input(box, "shoes")
    scheduler.advance(0.5)

    searches = [e for e in tracker.queue.pending_events if e["category"] == "search"]
    assert len(searches) == 1
    assert searches[0]["data"]["query"] == "shoes"
    assert searches[0]["data"]["length"] == 5


def test_filter_change_uses_enclosing_label(tracker):
    label = Element("label", text="In stock")
    checkbox = Element("input", id="stock", attributes={"type": "checkbox", "name": "stock"}, parent=label)

    tracker.on_change(checkbox, value="on", checked=True)

    data = _last(tracker)["data"]
    assert data["label"] == "In stock"
    assert data["checked"] is True
    assert data["type"] == "checkbox"


def test_visibility_change_reports_hidden_duration(tracker, scheduler):
    tracker.on_visibility_change(True)
    scheduler.now += 4
    tracker.on_visibility_change(False)

    assert _last(tracker)["data"]["hiddenDuration"] == 4000


def test_page_load_timing_spans(tracker):
    tracker.on_page_load(
        {
            "startTime": 0,
            "domainLookupStart": 5,
            "domainLookupEnd": 25,
            "requestStart": 40,
            "responseStart": 160,
            "domContentLoadedEventEnd": 800,
            "loadEventEnd": 1234.6,
        }
    )

    data = _last(tracker)["data"]
    assert data["dns"] == 20
    assert data["ttfb"] == 120
    assert data["fullLoad"] == 1235
    assert data["tcp"] is None


def test_monitor_api_calls_are_not_reported(tracker):
    before = len(tracker.queue)
    tracker.on_api_call("https://shop.example/api/monitor/events", "POST", 200, 12, True)
    tracker.on_api_call("https://shop.example/api/products", "GET", 500, 87.4, False)

    assert len(tracker.queue) == before + 1
    data = _last(tracker)["data"]
    assert data["status"] == 500
    assert data["duration"] == 87
    assert data["ok"] is False


def test_instrumented_session_reports_responses(tracker):
    session = tracker.instrument(requests.Session())
    response = requests.Response()
    response.status_code = 404
    response.url = "https://shop.example/api/items/9"
    response.request = requests.Request("DELETE", response.url).prepare()
    response.elapsed = timedelta(milliseconds=42)

    session.hooks["response"][-1](response)

    data = _last(tracker)["data"]
    assert data["method"] == "DELETE"
    assert data["status"] == 404
    assert data["duration"] == 42
    assert data["ok"] is False


def test_close_records_exit_and_flushes_synchronously(tracker, transport, scheduler):
    scheduler.now = 12
    tracker.close()

    assert len(transport.batches) == 1
    exit_event = transport.batches[0][-1]
    assert exit_event["action"] == "page_exit"
    assert exit_event["data"]["timeOnPage"] == 12000
    assert exit_event["data"]["page"] == "/catalog"
    assert scheduler.pending == []

    tracker.close()
    assert len(transport.batches) == 1


def test_track_rejects_data_that_is_not_json(tracker):
    before = len(tracker.queue)

    tracker.track("custom", "checkout_started", {"at": datetime(2024, 1, 1)})
    tracker.track("custom", "checkout_started", {"total": float("nan")})

    assert len(tracker.queue) == before
    assert tracker.get_user()["totalEvents"] == 1


def test_identity_survives_page_loads_in_storage_dir(tmp_path, page, transport, scheduler):
    config = TrackerConfig(storage_dir=str(tmp_path))

    first = Tracker(page, config, transport=transport, scheduler=scheduler, clock=scheduler.time)
    first.start()
    first.close()

    scheduler.now = 60
    second = Tracker(page, config, transport=transport, scheduler=scheduler, clock=scheduler.time)
    second.start()

    assert second.get_user()["id"] == first.get_user()["id"]
    assert second.get_user()["totalSessions"] == 2
    assert second.get_session()["id"] == first.get_session()["id"]
    assert second.get_session()["pageViews"] == 2


class UnencodableTransport:
    def send(self, payload):
        raise TypeError("Object of type set is not JSON serializable")

    def send_async(self, payload, callback):
        callback(TypeError("Object of type set is not JSON serializable"))

    def close(self):
        pass


def test_close_still_saves_user_when_batch_cannot_be_sent(page, scheduler):
    storage = MemoryStorage()
    tracker = Tracker(
        page,
        TrackerConfig(batch_size=50),
        transport=UnencodableTransport(),
        identity=IdentityStore(persistent=storage, clock=scheduler.time),
        scheduler=scheduler,
        clock=scheduler.time,
    )
    tracker.start()

    tracker.close()

    assert len(tracker.queue) == 0
    assert json.loads(storage.get(USER_KEY))["totalEvents"] == 2

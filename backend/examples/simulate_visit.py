"""Example client that drives a simulated visit through the tracker."""
from __future__ import annotations

import argparse
import logging
import os
import time

import requests

from backend.tracker import Element, PageContext, Tracker, TrackerConfig
from backend.tracker.config import DEFAULT_STORAGE_DIR


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send a simulated browsing session to the usage monitor")
    parser.add_argument(
        "--api-url",
        default=os.environ.get("MONITOR_API_URL", "http://127.0.0.1:8000"),
        help="Monitor API base URL (default: %(default)s or MONITOR_API_URL)",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("MONITOR_JWT_TOKEN"),
        help="Bearer token for reading the overview back (MONITOR_JWT_TOKEN)",
    )
    parser.add_argument(
        "--storage-dir",
        default=DEFAULT_STORAGE_DIR,
        help="Where the visitor identity is kept between runs (default: %(default)s)",
    )
    parser.add_argument("--debug", action="store_true", help="Log every tracked event")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)

    catalog = Element("div", id="catalog", class_name="grid")
    badge = Element("span", class_name="badge", text="New arrivals", cursor="pointer", parent=catalog)
    search_box = Element("input", id="search", attributes={"type": "search", "placeholder": "Search"})
    colour_filter = Element("select", id="colour", attributes={"name": "colour"})
    share = Element("button", id="share", text="Share", attributes={"data-feature": "share-product"})

    page = PageContext(
        url="http://localhost:8000/catalog?season=fall",
        title="Catalog",
        viewport_width=1366,
        viewport_height=768,
        user_agent=f"python-requests/{requests.__version__}",
        element_from_point=lambda x, y: badge,
    )
    config = TrackerConfig(
        api_endpoint=f"{args.api_url}/api/monitor/events",
        storage_dir=args.storage_dir,
        debug=args.debug,
    )

    tracker = Tracker(page, config)
    tracker.start()
    tracker.on_click(share, 400, 220)
    for _ in range(3):
        tracker.on_click(badge, 120, 80)
    tracker.on_input(search_box, "denim jacket")
    tracker.on_change(colour_filter, value="indigo", label="Colour")
    tracker.on_scroll(2400, 3200)
    tracker.on_page_load({"startTime": 0, "requestStart": 20, "responseStart": 95, "loadEventEnd": 1450})
    time.sleep(0.6)
    tracker.navigate("http://localhost:8000/catalog/item/42")
    tracker.close()
    print("Visit sent:", tracker.get_session())

    headers = {"Authorization": f"Bearer {args.token}"} if args.token else {}
    overview = requests.get(f"{args.api_url}/api/monitor/overview", headers=headers, timeout=10)
    overview.raise_for_status()
    print("Summary:", overview.json()["summary"])


if __name__ == "__main__":
    main()

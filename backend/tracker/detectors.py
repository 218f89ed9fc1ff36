"""Heuristic detectors over raw interaction signals.

Rage clicks and scroll checkpoints keep a small rolling state; dead clicks
are decided per click from the element's capability classification.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Set

RAGE_CLICK_THRESHOLD = 3
RAGE_CLICK_WINDOW_MS = 1500
RAGE_CLICK_RADIUS_PX = 50
SCROLL_CHECKPOINTS = (25, 50, 75, 90, 100)

INTERACTIVE_TAGS = frozenset({"button", "a", "input", "select", "textarea"})
INTERACTIVE_ATTRIBUTES = ("onclick", "data-feature")
_INLINE_POINTER = re.compile(r"cursor\s*:\s*pointer", re.IGNORECASE)

MOBILE_MAX_WIDTH = 768
TABLET_MAX_WIDTH = 1024


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def device_class_for_width(width: int) -> str:
    if width < MOBILE_MAX_WIDTH:
        return "mobile"
    if width < TABLET_MAX_WIDTH:
        return "tablet"
    return "desktop"


@dataclass
class Element:
    """UI element as seen by the detectors, independent of any UI toolkit."""

    tag: str
    id: str = ""
    class_name: str = ""
    text: str = ""
    # resolved (computed) cursor style
    cursor: str = "auto"
    attributes: Dict[str, str] = field(default_factory=dict)
    parent: Optional["Element"] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.tag = self.tag.lower()

    @property
    def tag_name(self) -> str:
        return self.tag.upper()

    @property
    def data_feature(self) -> Optional[str]:
        return self.attributes.get("data-feature")

    def lineage(self) -> Iterator["Element"]:
        """The element itself, then each ancestor up to the root."""
        node: Optional[Element] = self
        while node is not None:
            yield node
            node = node.parent

    def closest(self, predicate: Callable[["Element"], bool]) -> Optional["Element"]:
        for node in self.lineage():
            if predicate(node):
                return node
        return None


class ElementCapability(str, Enum):
    INTERACTIVE = "interactive"
    DECORATIVE_CLICKABLE = "decorative_clickable"
    INERT = "inert"


def is_interactive(element: Element) -> bool:
    if element.tag in INTERACTIVE_TAGS:
        return True
    return any(name in element.attributes for name in INTERACTIVE_ATTRIBUTES)


def _has_inline_pointer(element: Element) -> bool:
    return bool(_INLINE_POINTER.search(element.attributes.get("style", "")))


def looks_clickable(element: Element) -> bool:
    if element.cursor == "pointer":
        return True
    return element.closest(_has_inline_pointer) is not None


def classify_element(element: Element) -> ElementCapability:
    if element.closest(is_interactive) is not None:
        return ElementCapability.INTERACTIVE
    if looks_clickable(element):
        return ElementCapability.DECORATIVE_CLICKABLE
    return ElementCapability.INERT


def is_dead_click(element: Element) -> bool:
    return classify_element(element) is ElementCapability.DECORATIVE_CLICKABLE


@dataclass(frozen=True)
class ClickSample:
    time: int
    x: float
    y: float


@dataclass(frozen=True)
class RageClick:
    x: int
    y: int
    click_count: int


class RageClickDetector:
    """Flags bursts of clicks that land close together within a short window."""

    def __init__(
        self,
        threshold: int = RAGE_CLICK_THRESHOLD,
        window_ms: int = RAGE_CLICK_WINDOW_MS,
        radius_px: float = RAGE_CLICK_RADIUS_PX,
    ) -> None:
        self._threshold = threshold
        self._window_ms = window_ms
        self._radius = radius_px
        self._clicks: List[ClickSample] = []

    @property
    def pending(self) -> int:
        return len(self._clicks)

    def record(self, time_ms: int, x: float, y: float) -> Optional[RageClick]:
        self._clicks.append(ClickSample(time_ms, x, y))
        self._clicks = [c for c in self._clicks if time_ms - c.time < self._window_ms]
        if len(self._clicks) < self._threshold:
            return None

        count = len(self._clicks)
        avg_x = sum(c.x for c in self._clicks) / count
        avg_y = sum(c.y for c in self._clicks) / count
        localized = all(
            abs(c.x - avg_x) < self._radius and abs(c.y - avg_y) < self._radius for c in self._clicks
        )
        if not localized:
            return None

        self._clicks = []
        return RageClick(x=round_half_up(avg_x), y=round_half_up(avg_y), click_count=count)


def compute_scroll_depth(scroll_top: float, scroll_height: float, viewport_height: float) -> int:
    scrollable = scroll_height - viewport_height
    if scrollable <= 0:
        return 0
    return round_half_up(scroll_top / scrollable * 100)


class ScrollDepthTracker:
    """Checkpoints fire once per logical page, in ascending order."""

    def __init__(self, checkpoints=SCROLL_CHECKPOINTS) -> None:
        self._checkpoints = tuple(sorted(checkpoints))
        self._fired: Set[int] = set()
        self.max_depth = 0

    @property
    def fired(self) -> Set[int]:
        return set(self._fired)

    def update(self, depth: int) -> List[int]:
        self.max_depth = max(self.max_depth, depth)
        crossed = [c for c in self._checkpoints if depth >= c and c not in self._fired]
        self._fired.update(crossed)
        return crossed

    def reset(self) -> None:
        self._fired.clear()
        self.max_depth = 0

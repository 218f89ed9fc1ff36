"""Client-side usage tracker: identity, detectors, capture and batched delivery."""
from __future__ import annotations

from .agent import PageContext, Tracker
from .config import TrackerConfig
from .detectors import Element, ElementCapability

__all__ = ["Element", "ElementCapability", "PageContext", "Tracker", "TrackerConfig"]

"""Tracker configuration."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_ENDPOINT = "http://127.0.0.1:8000/api/monitor/events"
DEFAULT_STORAGE_DIR = os.path.join("~", ".usage-monitor")


@dataclass(frozen=True)
class TrackerConfig:
    api_endpoint: str = DEFAULT_ENDPOINT
    batch_size: int = 10
    # seconds
    flush_interval: float = 30.0
    # minutes
    session_timeout: float = 30.0
    request_timeout: float = 5.0
    max_queue_size: Optional[int] = 1000
    retry_backoff_base: float = 1.0
    retry_backoff_max: float = 300.0
    # None keeps identities in memory for a single page load
    storage_dir: Optional[str] = DEFAULT_STORAGE_DIR
    debug: bool = False

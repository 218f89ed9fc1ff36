"""HTTP delivery of event batches."""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

DeliveryCallback = Callable[[Optional[BaseException]], None]


class TransportError(Exception):
    """Raised when a batch could not reach the ingestion endpoint."""


class RequestsTransport:
    """Posts batches with ``requests``.

    Only transport-level failures raise ``TransportError``; any HTTP status
    counts as delivered. A payload that cannot be encoded raises as is.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
        max_workers: int = 2,
    ) -> None:
        self.endpoint = endpoint
        self._timeout = timeout
        self._session = session or requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="monitor-flush")

    def send(self, payload: Dict[str, Any]) -> None:
        try:
            response = self._session.post(self.endpoint, json=payload, timeout=self._timeout)
        except requests.exceptions.InvalidJSONError:
            raise
        except requests.RequestException as exc:
            raise TransportError(str(exc)) from exc
        if not response.ok:
            logger.debug("Ingestion endpoint answered status=%d", response.status_code)

    def send_async(self, payload: Dict[str, Any], callback: DeliveryCallback) -> None:
        future = self._executor.submit(self.send, payload)

        def _done(done: Future) -> None:
            callback(done.exception())

        future.add_done_callback(_done)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._session.close()

"""Batch flush scheduling with requeue on delivery failure."""
from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from operator import itemgetter
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .transport import DeliveryCallback, TransportError

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
# (enqueue sequence, event)
Queued = Tuple[int, Event]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class Transport(Protocol):
    def send(self, payload: Dict[str, Any]) -> None:
        ...

    def send_async(self, payload: Dict[str, Any], callback: DeliveryCallback) -> None:
        ...


class ThreadingScheduler:
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class BatchFlushScheduler:
    """Owns the local event queue and decides when it is transmitted.

    The queue is flushed as soon as it reaches ``batch_size`` or when the
    single pending timer fires. Batches that hit a transport failure are
    merged back in enqueue order, ahead of anything enqueued after them, and
    a retry timer is armed with exponential backoff; while backing off,
    reaching ``batch_size`` does not trigger a flush. Any other send error
    means the batch can never be delivered, so it is logged and dropped.
    All queue and timer state is guarded by one lock.
    """

    def __init__(
        self,
        transport: Transport,
        session_meta: Callable[[], Dict[str, Any]],
        *,
        batch_size: int = 10,
        flush_interval: float = 30.0,
        max_queue_size: Optional[int] = 1000,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._session_meta = session_meta
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._max_queue_size = max_queue_size
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._scheduler = scheduler or ThreadingScheduler()
        self._clock = clock

        self._lock = threading.Lock()
        self._queue: List[Queued] = []
        self._sequence = itertools.count()
        self._timer: Optional[TimerHandle] = None
        self._timer_token = 0
        self._failures = 0
        self._retry_at: Optional[float] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def pending_events(self) -> List[Event]:
        with self._lock:
            return [event for _, event in self._queue]

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    # -- timer bookkeeping (call with the lock held) ------------------------

    def _arm_timer_locked(self, delay: float) -> None:
        self._timer_token += 1
        token = self._timer_token
        self._timer = self._scheduler.call_later(delay, lambda: self._on_timer(token))

    def _cancel_timer_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._timer_token += 1

    def _backing_off_locked(self) -> bool:
        return self._retry_at is not None and self._clock() < self._retry_at

    def _evict_locked(self) -> None:
        if self._max_queue_size is None:
            return
        overflow = len(self._queue) - self._max_queue_size
        if overflow > 0:
            del self._queue[:overflow]
            logger.warning("Event queue full, dropped %d oldest events", overflow)

    def _on_timer(self, token: int) -> None:
        with self._lock:
            if token != self._timer_token:
                return
            self._timer = None
        self.flush()

    # -- public API -----------------------------------------------------------

    def enqueue(self, event: Event) -> None:
        with self._lock:
            self._queue.append((next(self._sequence), event))
            self._evict_locked()
            flush_now = len(self._queue) >= self._batch_size and not self._backing_off_locked()
            if not flush_now and self._timer is None:
                self._arm_timer_locked(self._flush_interval)
        if flush_now:
            self.flush()

    def _take_batch(self) -> List[Queued]:
        with self._lock:
            batch, self._queue = self._queue, []
            return batch

    def flush(self, wait: bool = False) -> None:
        """Send everything queued.

        With ``wait=True`` the request runs on the calling thread, which is
        what the unload path needs; otherwise it is handed to the transport's
        worker and the outcome is handled in :meth:`_on_delivery`.
        """
        batch = self._take_batch()
        if not batch:
            return
        payload = {"batch": [event for _, event in batch], "sessionMeta": self._session_meta()}
        logger.debug("Flushing %d events", len(batch))

        if wait:
            try:
                self._transport.send(payload)
            except Exception as exc:
                self._on_delivery(batch, exc)
            else:
                self._on_delivery(batch, None)
            return

        self._transport.send_async(payload, lambda error: self._on_delivery(batch, error))

    def _on_delivery(self, batch: List[Queued], error: Optional[BaseException]) -> None:
        if error is not None and not isinstance(error, TransportError):
            logger.error("Dropping %d events that cannot be sent: %r", len(batch), error)
            return

        with self._lock:
            if error is None:
                self._failures = 0
                self._retry_at = None
                return

            self._queue = list(heapq.merge(batch, self._queue, key=itemgetter(0)))
            self._evict_locked()
            self._failures += 1
            delay = min(self._backoff_base * 2 ** (self._failures - 1), self._backoff_max)
            self._retry_at = self._clock() + delay
            self._cancel_timer_locked()
            self._arm_timer_locked(delay)

        logger.warning(
            "Flush of %d events failed (attempt %d), retrying in %.1fs: %s",
            len(batch),
            self._failures,
            delay,
            error,
        )

    def close(self) -> None:
        """Cancel timers and make one last synchronous delivery attempt."""
        with self._lock:
            self._cancel_timer_locked()
        self.flush(wait=True)
        with self._lock:
            self._cancel_timer_locked()

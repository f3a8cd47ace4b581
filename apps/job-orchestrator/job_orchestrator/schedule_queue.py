"""FIFO of scheduled job names drained by a single worker thread."""

from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Optional

import structlog

from scenario_engine.errors import QueueError

from .models import ScheduleQueueItem, SubmitResult

LOGGER = structlog.get_logger("job_orchestrator")

Dispatch = Callable[[ScheduleQueueItem], SubmitResult]
BlockCheck = Callable[[str], bool]
DropHandler = Callable[[ScheduleQueueItem, QueueError], None]


class ScheduleQueue:
    """Idempotent FIFO with bounded retries.

    The worker looks at the head item. While ``is_blocked(job_name)`` holds it
    waits ``retry_delay`` and tries again, counting retries; once the count
    exceeds ``max_retries`` the item is dropped through ``on_drop``. Otherwise
    the item is dispatched, the worker waits for the job to finish, then
    sleeps ``cooldown`` before looking at the next item.
    """

    def __init__(
        self,
        *,
        dispatch: Dispatch,
        is_blocked: BlockCheck,
        on_drop: Optional[DropHandler] = None,
        retry_delay: float = 10.0,
        max_retries: int = 3,
        cooldown: float = 1.0,
    ) -> None:
        self._dispatch = dispatch
        self._is_blocked = is_blocked
        self._on_drop = on_drop
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self.cooldown = cooldown
        self._items: deque[ScheduleQueueItem] = deque()
        self._cond = threading.Condition()
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._processing = False
        self._thread: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def processing(self) -> bool:
        return self._processing

    def items(self) -> list[ScheduleQueueItem]:
        with self._cond:
            return list(self._items)

    def snapshot(self) -> dict:
        with self._cond:
            return {
                "length": len(self._items),
                "items": [item.as_dict() for item in self._items],
                "processing": self._processing,
            }

    def enqueue(self, job_name: str) -> bool:
        """Append `job_name` unless it is already waiting. Returns True if appended."""

        with self._cond:
            if any(item.job_name == job_name for item in self._items):
                LOGGER.info("queue_duplicate_ignored", job=job_name)
                return False
            self._items.append(ScheduleQueueItem(job_name=job_name))
            LOGGER.info("queue_enqueued", job=job_name, length=len(self._items))
            self._cond.notify_all()
        return True

    def clear(self) -> int:
        with self._cond:
            count = len(self._items)
            self._items.clear()
        return count

    def wake(self) -> None:
        """Cut a pending retry wait short. The cooldown after a dispatch always runs in full."""
        self._wakeup.set()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="schedule-queue", daemon=True)
        self._thread.start()
        LOGGER.info("queue_worker_started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wakeup.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread:
            self._thread.join(timeout=timeout)
        LOGGER.info("queue_worker_stopped")

    def _sleep(self, seconds: float) -> None:
        if seconds <= 0 or self._stop.is_set():
            return
        self._wakeup.wait(timeout=seconds)
        self._wakeup.clear()

    def _next_item(self) -> Optional[ScheduleQueueItem]:
        with self._cond:
            while not self._items and not self._stop.is_set():
                self._cond.wait()
            if self._stop.is_set():
                return None
            return self._items[0]

    def _run(self) -> None:
        while not self._stop.is_set():
            item = self._next_item()
            if item is None:
                return
            self._processing = True
            try:
                self.process_head(item)
            except Exception:
                LOGGER.exception("queue_worker_error", job=item.job_name)
                self._discard(item)
                self._sleep(self.retry_delay)
            finally:
                self._processing = False

    def _discard(self, item: ScheduleQueueItem) -> None:
        with self._cond:
            if self._items and self._items[0] is item:
                self._items.popleft()

    def process_head(self, item: ScheduleQueueItem) -> None:
        # Only completions after this check may shorten the retry wait.
        self._wakeup.clear()
        if self._is_blocked(item.job_name):
            with self._cond:
                item.retry_count += 1
                drop = item.retry_count > self.max_retries
            if drop:
                self._discard(item)
                exc = QueueError(item.job_name, self.max_retries)
                LOGGER.error("queue_item_dropped", job=item.job_name, retries=self.max_retries)
                if self._on_drop:
                    self._on_drop(item, exc)
                return
            LOGGER.info("queue_retry_scheduled", job=item.job_name, retry=item.retry_count, delay=self.retry_delay)
            self._sleep(self.retry_delay)
            return

        self._discard(item)
        LOGGER.info("queue_dispatching", job=item.job_name, retry=item.retry_count)
        result = self._dispatch(item)
        if not result.started:
            LOGGER.error("queue_dispatch_rejected", job=item.job_name, reason=result.reason)
        elif result.future is not None:
            result.future.result()
        if self.cooldown > 0:
            self._stop.wait(timeout=self.cooldown)

"""Typed lifecycle events and the bus that delivers them."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Type, TypeVar

import structlog

from .models import Response, ScenarioResult, StepResult

LOGGER = structlog.get_logger("scenario_engine")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    scenario: str
    at: datetime = field(default_factory=_now, kw_only=True)


@dataclass(frozen=True)
class ScenarioStarted(Event):
    total_steps: int
    source: Optional[str] = None


@dataclass(frozen=True)
class StepStarted(Event):
    step_index: int
    step_name: str
    command_string: str


@dataclass(frozen=True)
class StdoutChunk(Event):
    step_index: int
    text: str


@dataclass(frozen=True)
class StderrChunk(Event):
    step_index: int
    text: str


@dataclass(frozen=True)
class StepCompleted(Event):
    result: StepResult


@dataclass(frozen=True)
class StepFailed(Event):
    result: StepResult
    error_type: str
    response: Optional[Response] = None


@dataclass(frozen=True)
class ScenarioFinished(Event):
    result: ScenarioResult


T = TypeVar("T")
Handler = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe channel.

    Handlers run on the publishing thread in subscription order. A handler
    that raises is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: list[tuple[Optional[type], Handler]] = []

    def subscribe(self, handler: Callable[[T], None], event_type: Optional[Type[T]] = None) -> Callable[[], None]:
        entry = (event_type, handler)
        with self._lock:
            self._handlers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._handlers:
                    self._handlers.remove(entry)

        return unsubscribe

    def publish(self, event: object) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for event_type, handler in handlers:
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                handler(event)
            except Exception:
                LOGGER.exception("event_handler_failed", event=type(event).__name__)

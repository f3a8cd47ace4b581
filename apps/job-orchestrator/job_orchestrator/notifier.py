"""Job lifecycle alerts."""

from __future__ import annotations

import json
from typing import Any, Mapping, Optional, Protocol, Sequence
from urllib import error, request

import structlog

from .config import OrchestratorSettings

LOGGER = structlog.get_logger("job_orchestrator")

START = "start"
SUCCESS = "success"
ERROR = "error"
QUEUE_DROPPED = "queue_dropped"
STATE_RESET = "state_reset"

_TITLES = {
    START: "Test Execution Started",
    SUCCESS: "Test Execution Success",
    ERROR: "Test Execution Failed",
    QUEUE_DROPPED: "Scheduled Job Dropped",
    STATE_RESET: "Running State Reset",
}


class Notifier(Protocol):
    def notify(self, kind: str, payload: Mapping[str, Any]) -> None: ...


def format_message(kind: str, payload: Mapping[str, Any]) -> str:
    lines = [_TITLES.get(kind, kind), f"Job: {payload.get('job_name', '-')}"]
    for key in ("collection", "summary", "reason", "error"):
        if payload.get(key):
            lines.append(f"{key.capitalize()}: {payload[key]}")
    if payload.get("duration_ms") is not None:
        lines.append(f"Duration: {float(payload['duration_ms']) / 1000:.1f}s")
    for key, label in (("started_at", "Time"), ("finished_at", "End Time")):
        if payload.get(key):
            lines.append(f"{label}: {payload[key]}")
    return "\n".join(lines)


class LogNotifier:
    """Writes every alert to the structured log."""

    def notify(self, kind: str, payload: Mapping[str, Any]) -> None:
        level = "error" if kind in {ERROR, QUEUE_DROPPED} else "warning" if kind == STATE_RESET else "info"
        getattr(LOGGER, level)("job_alert", kind=kind, **{k: v for k, v in payload.items() if k != "kind"})


class WebhookNotifier:
    """Posts a plain text message to a webhook, honouring the alert toggles.

    Delivery failures are logged and never raised.
    """

    def __init__(self, settings: OrchestratorSettings) -> None:
        self._settings = settings

    def enabled_for(self, kind: str) -> bool:
        settings = self._settings
        if not settings.run_event_alert or not settings.webhook_url:
            return False
        if kind == START:
            return settings.alert_on_start
        if kind == SUCCESS:
            return settings.alert_on_success
        return settings.alert_on_error

    def notify(self, kind: str, payload: Mapping[str, Any]) -> None:
        if not self.enabled_for(kind):
            LOGGER.debug("alert_skipped", kind=kind)
            return
        url = self._settings.webhook_url or ""
        body = json.dumps({"content": {"type": "text", "text": format_message(kind, payload)}}).encode("utf-8")
        req = request.Request(url, data=body, headers={"Content-Type": "application/json"}, method="POST")
        try:
            with request.urlopen(req, timeout=self._settings.webhook_timeout) as response:
                status = response.getcode()
        except error.HTTPError as exc:
            LOGGER.error("alert_delivery_failed", kind=kind, status=exc.code)
            return
        except (error.URLError, OSError) as exc:
            LOGGER.error("alert_delivery_failed", kind=kind, error=str(exc))
            return
        LOGGER.info("alert_delivered", kind=kind, status=status)


class CompositeNotifier:
    def __init__(self, notifiers: Sequence[Notifier]) -> None:
        self._notifiers = list(notifiers)

    def notify(self, kind: str, payload: Mapping[str, Any]) -> None:
        for notifier in self._notifiers:
            notifier.notify(kind, payload)


def build_notifier(settings: OrchestratorSettings, extra: Optional[Sequence[Notifier]] = None) -> Notifier:
    notifiers: list[Notifier] = [LogNotifier()]
    if settings.webhook_url:
        notifiers.append(WebhookNotifier(settings))
    notifiers.extend(extra or [])
    return CompositeNotifier(notifiers)

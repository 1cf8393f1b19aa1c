"""Alert sinks receiving AlertEvents from the health reporter."""

from __future__ import annotations

import http.client
import json
from typing import Iterable, Protocol
from urllib import error, request

import structlog

from .models import AlertEvent

LOGGER = structlog.get_logger("journey_probe.alerts")


class AlertSink(Protocol):
    def emit(self, alert: AlertEvent) -> None: ...


class LogAlertSink:
    """Writes alerts to the structured log."""

    def emit(self, alert: AlertEvent) -> None:
        LOGGER.warning(
            "alert_raised",
            threshold=alert.threshold_name,
            observed=alert.observed_value,
            threshold_value=alert.threshold_value,
            run_id=alert.run_id,
            step_id=alert.step_id,
            detail=alert.detail,
        )


class HttpAlertSink:
    """POSTs each alert as JSON to an external endpoint; failures are only logged."""

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout

    def emit(self, alert: AlertEvent) -> None:
        body = alert.model_dump_json().encode("utf-8")
        try:
            req = request.Request(
                self._url,
                data=body,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            with request.urlopen(req, timeout=self._timeout) as response:
                response.read()
        except (ValueError, error.URLError, OSError, http.client.HTTPException) as exc:
            LOGGER.error(
                "alert_delivery_failed",
                url=self._url,
                threshold=alert.threshold_name,
                error=str(exc),
                alert=json.loads(body),
            )


class FanoutAlertSink:
    """Delivers each alert to every sink; one failing sink does not starve the rest."""

    def __init__(self, sinks: Iterable[AlertSink]) -> None:
        self._sinks = list(sinks)

    def emit(self, alert: AlertEvent) -> None:
        for sink in self._sinks:
            try:
                sink.emit(alert)
            except Exception:
                LOGGER.exception("alert_sink_failed", sink=type(sink).__name__, threshold=alert.threshold_name)

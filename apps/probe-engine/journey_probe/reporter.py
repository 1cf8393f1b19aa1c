"""Latency aggregation and threshold alerting."""

from __future__ import annotations

import math
import threading
from collections import deque
from datetime import datetime
from typing import Callable, Optional, Sequence

import structlog
from pydantic import BaseModel

from .alerts import AlertSink, LogAlertSink
from .config import ThresholdConfig
from .models import AlertEvent, LatencyRecord, ParseFailure, ProbeRun, RunStatus, utcnow

LOGGER = structlog.get_logger("journey_probe.reporter")

RUN_FAILED = "run_failed"
STEP_LATENCY = "step_latency_ms"
LATENCY_P95 = "latency_p95_ms"
CONSECUTIVE_FAILURES = "consecutive_failures"
FAILURE_RATE = "failure_rate"
MALFORMED_INBOUND = "malformed_inbound_payloads"


def percentile(values: Sequence[float], pct: float) -> Optional[float]:
    """Nearest-rank percentile; None for an empty sample."""

    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


class HealthSnapshot(BaseModel):
    runs_total: int
    runs_completed: int
    runs_failed: int
    runs_aborted: int
    consecutive_failures: int
    failure_rate: Optional[float]
    parse_failures_total: int
    step_latency_p50_ms: Optional[float]
    step_latency_p95_ms: Optional[float]
    step_latency_p99_ms: Optional[float]
    run_latency_p50_ms: Optional[float]
    run_latency_p95_ms: Optional[float]


class HealthReporter:
    """Keeps rolling windows of latencies and outcomes and raises alerts.

    ``check_thresholds`` only reads the current windows, so calling it twice
    without new observations yields the same alerts.
    """

    def __init__(
        self,
        thresholds: Optional[ThresholdConfig] = None,
        sink: Optional[AlertSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._thresholds = thresholds or ThresholdConfig()
        self._sink = sink or LogAlertSink()
        self._clock = clock
        self._lock = threading.Lock()
        window = self._thresholds.window_size
        self._step_latencies: deque[LatencyRecord] = deque(maxlen=window)
        self._run_latencies: deque[float] = deque(maxlen=window)
        self._outcomes: deque[bool] = deque(maxlen=window)
        self._deliveries: deque[bool] = deque(maxlen=window)
        self._consecutive_failures = 0
        self._runs = {RunStatus.COMPLETED: 0, RunStatus.FAILED: 0, RunStatus.ABORTED: 0}
        self._parse_failures_total = 0

    @property
    def thresholds(self) -> ThresholdConfig:
        return self._thresholds

    def observe(self, record: LatencyRecord) -> None:
        with self._lock:
            self._step_latencies.append(record)

    def record_delivery(self) -> None:
        with self._lock:
            self._deliveries.append(False)

    def record_parse_failure(self, failure: ParseFailure) -> None:
        with self._lock:
            self._deliveries.append(True)
            self._parse_failures_total += 1
        LOGGER.warning("inbound_parse_failure", reason=failure.reason, size=len(failure.raw_body))

    def record_run(self, run: ProbeRun) -> Optional[AlertEvent]:
        """Account a finished run; a Failed run produces exactly one alert."""

        if not run.status.terminal:
            raise ValueError(f"Run {run.run_id} is not finished ({run.status.value})")
        with self._lock:
            self._runs[run.status] += 1
            if run.status is RunStatus.ABORTED:
                return None
            succeeded = run.status is RunStatus.COMPLETED
            self._outcomes.append(succeeded)
            self._consecutive_failures = 0 if succeeded else self._consecutive_failures + 1
            if succeeded and run.duration_ms is not None:
                self._run_latencies.append(run.duration_ms)
        if succeeded:
            return None

        failure = run.failure
        alert = AlertEvent(
            threshold_name=RUN_FAILED,
            observed_value=float(failure.attempts if failure else 0),
            run_id=run.run_id,
            step_id=failure.step_id if failure else None,
            detail=f"{failure.kind.value}: {failure.detail}" if failure else None,
            timestamp=self._clock(),
        )
        self._sink.emit(alert)
        return alert

    def check_thresholds(self) -> list[AlertEvent]:
        limits = self._thresholds
        with self._lock:
            records = list(self._step_latencies)
            outcomes = list(self._outcomes)
            deliveries = list(self._deliveries)
            consecutive = self._consecutive_failures
        now = self._clock()
        alerts: list[AlertEvent] = []

        if records:
            latest = records[-1]
            if latest.duration_ms > limits.latency_threshold_ms:
                alerts.append(
                    AlertEvent(
                        threshold_name=STEP_LATENCY,
                        observed_value=latest.duration_ms,
                        threshold_value=limits.latency_threshold_ms,
                        run_id=latest.run_id,
                        step_id=latest.step_id,
                        timestamp=now,
                    )
                )
            if len(records) >= limits.min_samples:
                p95 = percentile([record.duration_ms for record in records], 95)
                if p95 is not None and p95 > limits.latency_threshold_ms:
                    alerts.append(
                        AlertEvent(
                            threshold_name=LATENCY_P95,
                            observed_value=p95,
                            threshold_value=limits.latency_threshold_ms,
                            timestamp=now,
                        )
                    )

        if consecutive >= limits.consecutive_failures:
            alerts.append(
                AlertEvent(
                    threshold_name=CONSECUTIVE_FAILURES,
                    observed_value=float(consecutive),
                    threshold_value=float(limits.consecutive_failures),
                    timestamp=now,
                )
            )

        if len(outcomes) >= limits.min_samples:
            rate = outcomes.count(False) / len(outcomes)
            if rate >= limits.failure_rate:
                alerts.append(
                    AlertEvent(
                        threshold_name=FAILURE_RATE,
                        observed_value=rate,
                        threshold_value=limits.failure_rate,
                        timestamp=now,
                    )
                )

        malformed = deliveries.count(True)
        if malformed >= limits.parse_failures:
            alerts.append(
                AlertEvent(
                    threshold_name=MALFORMED_INBOUND,
                    observed_value=float(malformed),
                    threshold_value=float(limits.parse_failures),
                    timestamp=now,
                )
            )
        return alerts

    def evaluate(self) -> list[AlertEvent]:
        """Check thresholds and hand every breach to the sink."""

        alerts = self.check_thresholds()
        for alert in alerts:
            self._sink.emit(alert)
        return alerts

    def snapshot(self) -> HealthSnapshot:
        with self._lock:
            step_values = [record.duration_ms for record in self._step_latencies]
            run_values = list(self._run_latencies)
            outcomes = list(self._outcomes)
            runs = dict(self._runs)
            consecutive = self._consecutive_failures
            parse_failures = self._parse_failures_total
        return HealthSnapshot(
            runs_total=sum(runs.values()),
            runs_completed=runs[RunStatus.COMPLETED],
            runs_failed=runs[RunStatus.FAILED],
            runs_aborted=runs[RunStatus.ABORTED],
            consecutive_failures=consecutive,
            failure_rate=(outcomes.count(False) / len(outcomes)) if outcomes else None,
            parse_failures_total=parse_failures,
            step_latency_p50_ms=percentile(step_values, 50),
            step_latency_p95_ms=percentile(step_values, 95),
            step_latency_p99_ms=percentile(step_values, 99),
            run_latency_p50_ms=percentile(run_values, 50),
            run_latency_p95_ms=percentile(run_values, 95),
        )

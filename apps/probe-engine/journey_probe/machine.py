"""Probe state machine driving one scenario run step by step."""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union
from uuid import uuid4

import structlog

from .correlation import CorrelationKey, CorrelationStore
from .dispatcher import StimulusDispatcher
from .errors import DuplicateCorrelation, ExhaustedRetries, StimulusError
from .models import (
    Expectation,
    FailureKind,
    InboundEvent,
    LatencyRecord,
    ProbeRun,
    RunStatus,
    Scenario,
    Step,
    StepFailure,
    StepTiming,
    utcnow,
)
from .reporter import HealthReporter
from .verifier import ExpectationVerifier, Mismatch, Pass, Verdict

LOGGER = structlog.get_logger("journey_probe.machine")

RunObserver = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class Resolved:
    expectation: Expectation
    event: InboundEvent


@dataclass(frozen=True)
class TimedOut:
    expectation: Expectation


@dataclass(frozen=True)
class Cancelled:
    pass


Signal = Union[Resolved, TimedOut, Cancelled]


class RunCancelled(Exception):
    """Unwinds a run thread after cancel()."""


def new_run_id() -> str:
    return uuid4().hex[:12]


class ProbeStateMachine:
    """Sequences dispatch -> wait -> verify for every step of a scenario.

    The run thread blocks only while awaiting a response; it is woken by a
    ``Resolved`` or ``TimedOut`` signal delivered through :meth:`deliver`, or by
    :meth:`cancel`. Signals for any expectation other than the one currently
    awaited are dropped, so each expectation advances the run at most once.
    """

    def __init__(
        self,
        scenario: Scenario,
        *,
        store: CorrelationStore,
        dispatcher: StimulusDispatcher,
        verifier: ExpectationVerifier,
        reporter: HealthReporter,
        run_id: Optional[str] = None,
        default_timeout: float = 5.0,
        default_max_retries: int = 2,
        observer: Optional[RunObserver] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.scenario = scenario
        self._store = store
        self._dispatcher = dispatcher
        self._verifier = verifier
        self._reporter = reporter
        self._default_timeout = default_timeout
        self._default_max_retries = default_max_retries
        self._observer = observer
        self._clock = clock

        run_id = run_id or new_run_id()
        self._key = CorrelationKey.for_run(scenario.contact_prefix, run_id)
        self.run = ProbeRun(
            run_id=run_id,
            scenario_id=scenario.scenario_id,
            contact_id=self._key.value,
            correlation_key=self._key.value,
            context={"run_id": run_id, "contact_id": self._key.value, "scenario_id": scenario.scenario_id},
        )
        self._mailbox: queue.Queue[Signal] = queue.Queue()
        self._cancel = threading.Event()
        self._finished = threading.Event()
        self._lock = threading.RLock()
        self._logger = LOGGER.bind(run_id=run_id, scenario_id=scenario.scenario_id)

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def correlation_key(self) -> CorrelationKey:
        return self._key

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)

    def deliver(self, signal: Signal) -> None:
        self._mailbox.put(signal)

    def cancel(self) -> bool:
        """Abort a live run; a no-op returning False once the run is terminal."""

        with self._lock:
            if self.run.status.terminal:
                return False
            self.run.status = RunStatus.ABORTED
            self.run.finished_at = self._clock()
            self._cancel.set()
        released = self._store.release_run(self.run_id)
        self._mailbox.put(Cancelled())
        self._logger.warning("run_cancelled", released_expectations=len(released))
        self._notify("transition", status=RunStatus.ABORTED.value)
        return True

    def execute(self) -> ProbeRun:
        """Drive the scenario to a terminal state and return the run record."""

        step: Optional[Step] = None
        try:
            with self._lock:
                self.run.started_at = self._clock()
            self._logger.info("run_started", steps=len(self.scenario.steps), contact_id=self._key.value)
            for index, step in enumerate(self.scenario.steps):
                with self._lock:
                    self.run.current_step_index = index
                if not self._run_step(step):
                    break
            else:
                self._transition(RunStatus.COMPLETED)
        except RunCancelled:
            self._logger.info("run_aborted")
        except Exception as exc:
            self._logger.exception("run_crashed")
            if not self.run.status.terminal:
                try:
                    self._fail(step, FailureKind.INTERNAL_ERROR, f"{type(exc).__name__}: {exc}", 0)
                except RunCancelled:
                    pass
        finally:
            try:
                self._store.release_run(self.run_id)
                self._store.forget(self._key)
                with self._lock:
                    if self.run.finished_at is None:
                        self.run.finished_at = self._clock()
                self._reporter.record_run(self.run)
            except Exception:
                self._logger.exception("run_accounting_failed")
            finally:
                self._logger.info(
                    "run_finished",
                    status=self.run.status.value,
                    duration_ms=self.run.duration_ms,
                    failure=self.run.failure.kind.value if self.run.failure else None,
                )
                self._finished.set()
        return self.run

    def admits(self, expectation: Expectation, event: InboundEvent) -> bool:
        """False for a callback shaped like another step's reply while ``expectation`` waits.

        A late or re-sent reply to an earlier step must not be judged against the
        running step; it is logged and dropped and the step keeps waiting.
        """

        if self._verifier.matches(expectation, event):
            return True
        for other in self.scenario.steps:
            if other.step_id == expectation.step_id:
                continue
            if self._verifier.matches(expectation.model_copy(update={"matcher": other.expect}), event):
                self._logger.info(
                    "wrong_step_reply_discarded",
                    step_id=expectation.step_id,
                    shaped_like=other.step_id,
                    message_id=event.message_id,
                )
                return False
        return True

    def _run_step(self, step: Step) -> bool:
        timing = StepTiming(step_id=step.step_id)
        with self._lock:
            self.run.steps.append(timing)
        timeout = step.timeout if step.timeout is not None else self._default_timeout
        max_retries = step.max_retries if step.max_retries is not None else self._default_max_retries
        retry = self._dispatcher.retry_policy
        logger = self._logger.bind(step_id=step.step_id)

        # One budget of max_retries + 1 POSTs covers dispatch retries and re-dispatches.
        attempt = 0
        used = 0
        while True:
            attempt += 1
            timing.attempts = attempt
            timing.status = "running"
            self._transition(RunStatus.DISPATCHING, step)

            expectation = Expectation(
                expectation_id=uuid4().hex,
                correlation_key=self._key.value,
                run_id=self.run_id,
                step_id=step.step_id,
                matcher=step.expect,
                registered_at=self._clock(),
            )
            try:
                self._store.register(self._key, expectation)
            except DuplicateCorrelation as exc:
                logger.error("correlation_conflict", correlation_key=self._key.value, error=str(exc))
                return self._fail(step, exc.kind, str(exc), attempt)

            context = dict(self.run.context, step_id=step.step_id)
            try:
                result = self._dispatcher.send(
                    step.stimulus,
                    context,
                    max_retries=max_retries - used,
                    cancel=self._cancel,
                )
            except StimulusError as exc:
                self._store.release(self._key, expectation.expectation_id)
                return self._fail(step, exc.kind, str(exc), attempt)
            used += len(result.attempts)
            timing.dispatch_attempts = used
            if result.cancelled:
                self._store.release(self._key, expectation.expectation_id)
                raise RunCancelled()
            if not result.ok:
                self._store.release(self._key, expectation.expectation_id)
                kind = result.failure_kind or FailureKind.EXHAUSTED_RETRIES
                return self._fail(step, kind, result.detail, used)

            timing.dispatched_at = result.dispatched_at
            completed_at = result.completed_at or self._clock()
            self._store.arm(self._key, expectation.expectation_id, completed_at + timedelta(seconds=timeout))
            self._transition(RunStatus.AWAITING_RESPONSE, step)

            signal = self._await(expectation.expectation_id)
            if isinstance(signal, TimedOut):
                kind = FailureKind.TIMEOUT_EXPIRED
                detail = f"no callback within {timeout:g}s"
                logger.warning("step_timed_out", attempt=attempt, timeout=timeout)
            else:
                self._transition(RunStatus.VERIFYING, step)
                verdict = self._verifier.verify(signal.expectation, signal.event)
                self._notify_inbound(step, signal.event, verdict)
                if isinstance(verdict, Pass):
                    self._advance(step, timing, result.dispatched_at or completed_at, signal.event, verdict)
                    return True
                kind = FailureKind.MISMATCH
                detail = verdict.describe()

            if not (step.redispatchable and retry.is_retryable(kind)):
                return self._fail(step, kind, detail, used)
            if not retry.allows_retry(kind, used, max_retries):
                exhausted = ExhaustedRetries(f"{used} attempts failed; last {kind.value}: {detail}", used)
                return self._fail(step, exhausted.kind, str(exhausted), used)
            self._transition(RunStatus.RETRYING, step, detail=detail)
            if self._cancel.wait(retry.delay_for(attempt)):
                raise RunCancelled()

    def _await(self, expectation_id: str) -> Union[Resolved, TimedOut]:
        while True:
            signal = self._mailbox.get()
            if isinstance(signal, Cancelled):
                raise RunCancelled()
            if signal.expectation.expectation_id != expectation_id:
                self._logger.debug(
                    "stale_signal_dropped",
                    signal=type(signal).__name__,
                    step_id=signal.expectation.step_id,
                )
                continue
            return signal

    def _advance(
        self,
        step: Step,
        timing: StepTiming,
        dispatch_time: datetime,
        event: InboundEvent,
        verdict: Pass,
    ) -> None:
        duration_ms = max(0.0, (event.received_at - dispatch_time).total_seconds() * 1000)
        record = LatencyRecord(
            run_id=self.run_id,
            step_id=step.step_id,
            dispatch_time=dispatch_time,
            receive_time=event.received_at,
            duration_ms=round(duration_ms, 3),
        )
        with self._lock:
            self.run.latencies.append(record)
            self.run.context.update(verdict.extracted)
            timing.received_at = event.received_at
            timing.status = "passed"
        self._reporter.observe(record)
        self._transition(RunStatus.ADVANCING, step, latency_ms=record.duration_ms)

    def _fail(self, step: Optional[Step], kind: FailureKind, detail: Optional[str], attempts: int) -> bool:
        step_id = step.step_id if step else "-"
        with self._lock:
            if self.run.status is RunStatus.ABORTED:
                raise RunCancelled()
            self.run.failure = StepFailure(step_id=step_id, kind=kind, detail=detail, attempts=attempts)
            if self.run.steps and self.run.steps[-1].step_id == step_id:
                self.run.steps[-1].status = "failed"
        self._logger.error("step_failed", step_id=step_id, kind=kind.value, detail=detail, attempts=attempts)
        self._transition(RunStatus.FAILED, step, detail=detail)
        return False

    def _transition(self, status: RunStatus, step: Optional[Step] = None, **details: Any) -> None:
        with self._lock:
            if self.run.status is RunStatus.ABORTED:
                raise RunCancelled()
            if self.run.status.terminal:
                raise RuntimeError(f"Run {self.run_id} already finished as {self.run.status.value}")
            self.run.status = status
            if status.terminal:
                self.run.finished_at = self._clock()
        self._logger.debug("run_transition", status=status.value, step_id=step.step_id if step else None)
        self._notify("transition", status=status.value, step_id=step.step_id if step else None, **details)

    def _notify_inbound(self, step: Step, event: InboundEvent, verdict: Verdict) -> None:
        self._notify(
            "inbound",
            step_id=step.step_id,
            received_at=event.received_at.isoformat(),
            message_id=event.message_id,
            verdict="pass" if isinstance(verdict, Pass) else "mismatch",
            reason=verdict.describe() if isinstance(verdict, Mismatch) else None,
            body=event.body,
        )

    def _notify(self, event: str, **fields: Any) -> None:
        if self._observer is None:
            return
        payload = {"event": event, "run_id": self.run_id, "timestamp": self._clock().isoformat(), **fields}
        try:
            self._observer(payload)
        except Exception:
            self._logger.exception("run_observer_failed", event=event)

"""Probe service: run threads, inbound routing, timeout sweeps and scheduling."""

from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Iterable, Optional, Union

import structlog

from .alerts import AlertSink, FanoutAlertSink, HttpAlertSink, LogAlertSink
from .config import ProbeConfig
from .correlation import CorrelationKey, CorrelationStore, NoMatch
from .dispatcher import HttpTransport, RetryPolicy, StimulusDispatcher, Transport
from .errors import ConcurrencyLimitExceeded
from .machine import ProbeStateMachine, Resolved, RunObserver, TimedOut
from .models import Expectation, InboundEvent, ParseFailure, ProbeRun, Scenario, utcnow
from .reporter import HealthReporter
from .verifier import ExpectationVerifier

LOGGER = structlog.get_logger("journey_probe.service")

FINISHED_HISTORY = 256


def build_alert_sink(config: ProbeConfig) -> AlertSink:
    sinks: list[AlertSink] = [LogAlertSink()]
    if config.alert_sink_url:
        sinks.append(HttpAlertSink(config.alert_sink_url))
    return FanoutAlertSink(sinks)


class ProbeService:
    """Owns the shared correlation store and one thread per active probe run."""

    def __init__(
        self,
        config: ProbeConfig,
        *,
        transport: Optional[Transport] = None,
        sink: Optional[AlertSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self._clock = clock
        self.store = CorrelationStore()
        self.reporter = HealthReporter(config.thresholds, sink or build_alert_sink(config), clock=clock)
        self.verifier = ExpectationVerifier(config.layout)
        self.dispatcher = StimulusDispatcher(
            transport or HttpTransport.from_config(config.platform),
            RetryPolicy.from_config(config.retry),
        )
        self._slots = threading.BoundedSemaphore(config.concurrency_limit)
        self._lock = threading.Lock()
        self._live: dict[str, ProbeStateMachine] = {}
        self._finished: OrderedDict[str, ProbeStateMachine] = OrderedDict()
        self._threads: dict[str, threading.Thread] = {}
        self._stopping = threading.Event()
        self._ticker: Optional[threading.Thread] = None
        self._scheduler: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the timeout sweep ticker."""

        if self._ticker is not None:
            return
        self._stopping.clear()
        self._ticker = threading.Thread(target=self._sweep_loop, name="probe-sweep", daemon=True)
        self._ticker.start()
        LOGGER.info("service_started", sweep_interval=self.config.sweep_interval)

    def serve(self, scenarios: Iterable[Scenario]) -> None:
        """Start the ticker and launch every scenario each ``schedule_interval`` seconds."""

        self.start()
        scenario_list = list(scenarios)
        self._scheduler = threading.Thread(
            target=self._schedule_loop,
            args=(scenario_list,),
            name="probe-scheduler",
            daemon=True,
        )
        self._scheduler.start()
        LOGGER.info(
            "scheduler_started",
            scenarios=[scenario.scenario_id for scenario in scenario_list],
            schedule_interval=self.config.schedule_interval,
            concurrency_limit=self.config.concurrency_limit,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        with self._lock:
            live = list(self._live.values())
        for machine in live:
            machine.cancel()
        for thread in [self._scheduler, self._ticker]:
            if thread is not None:
                thread.join(timeout=timeout)
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout=timeout)
        self._ticker = None
        self._scheduler = None
        LOGGER.info("service_stopped", cancelled_runs=len(live))

    def launch(
        self,
        scenario: Scenario,
        *,
        run_id: Optional[str] = None,
        observer: Optional[RunObserver] = None,
    ) -> ProbeStateMachine:
        """Start a run on its own thread, respecting the concurrency limit."""

        if not self._slots.acquire(blocking=False):
            raise ConcurrencyLimitExceeded(
                f"{self.config.concurrency_limit} runs already active; not starting {scenario.scenario_id}"
            )
        try:
            machine = ProbeStateMachine(
                scenario,
                store=self.store,
                dispatcher=self.dispatcher,
                verifier=self.verifier,
                reporter=self.reporter,
                run_id=run_id,
                default_timeout=self.config.timeout,
                default_max_retries=self.config.max_retries,
                observer=observer,
                clock=self._clock,
            )
            thread = threading.Thread(
                target=self._run_thread,
                args=(machine,),
                name=f"probe-run-{machine.run_id}",
                daemon=True,
            )
            with self._lock:
                if machine.run_id in self._live or machine.run_id in self._finished:
                    raise ValueError(f"Run id {machine.run_id} is already in use")
                self._live[machine.run_id] = machine
                self._threads[machine.run_id] = thread
        except BaseException:
            self._slots.release()
            raise
        thread.start()
        return machine

    def run_once(
        self,
        scenario: Scenario,
        *,
        run_id: Optional[str] = None,
        observer: Optional[RunObserver] = None,
        timeout: Optional[float] = None,
    ) -> ProbeRun:
        machine = self.launch(scenario, run_id=run_id, observer=observer)
        self._join(machine, timeout)
        return machine.run

    def cancel(self, run_id: str) -> bool:
        machine = self.get(run_id)
        if machine is None:
            return False
        return machine.cancel()

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[ProbeRun]:
        machine = self.get(run_id)
        if machine is None:
            return None
        self._join(machine, timeout)
        return machine.run

    def _join(self, machine: ProbeStateMachine, timeout: Optional[float]) -> None:
        # The run thread evaluates thresholds after the machine finishes.
        with self._lock:
            thread = self._threads.get(machine.run_id)
        if thread is not None:
            thread.join(timeout)
        else:
            machine.wait(timeout)

    def get(self, run_id: str) -> Optional[ProbeStateMachine]:
        with self._lock:
            return self._live.get(run_id) or self._finished.get(run_id)

    @property
    def active_runs(self) -> int:
        with self._lock:
            return len(self._live)

    def handle_inbound(self, delivery: Union[InboundEvent, ParseFailure]) -> None:
        """Route one webhook delivery to the run awaiting it."""

        if isinstance(delivery, ParseFailure):
            self.reporter.record_parse_failure(delivery)
            return
        self.reporter.record_delivery()
        key = CorrelationKey.from_event(delivery)
        if key is None:
            LOGGER.info("inbound_uncorrelated", message_id=delivery.message_id)
            return
        result = self.store.resolve(key, delivery, admit=self._admits)
        if isinstance(result, NoMatch):
            LOGGER.info(
                "inbound_unmatched",
                correlation_key=key.value,
                message_id=delivery.message_id,
                reason=result.reason,
            )
            return
        with self._lock:
            machine = self._live.get(result.expectation.run_id)
        if machine is None:
            LOGGER.warning("inbound_run_gone", correlation_key=key.value, run_id=result.expectation.run_id)
            return
        machine.deliver(Resolved(expectation=result.expectation, event=delivery))

    def _admits(self, expectation: Expectation, event: InboundEvent) -> bool:
        with self._lock:
            machine = self._live.get(expectation.run_id)
        return machine is None or machine.admits(expectation, event)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Expire overdue expectations and signal their runs; returns the count."""

        expired = self.store.sweep(now or self._clock())
        for expectation in expired:
            with self._lock:
                machine = self._live.get(expectation.run_id)
            if machine is not None:
                machine.deliver(TimedOut(expectation=expectation))
        return len(expired)

    def _sweep_loop(self) -> None:
        while not self._stopping.wait(self.config.sweep_interval):
            try:
                self.sweep()
            except Exception:
                LOGGER.exception("sweep_failed")

    def _schedule_loop(self, scenarios: list[Scenario]) -> None:
        while not self._stopping.is_set():
            for scenario in scenarios:
                try:
                    self.launch(scenario)
                except ConcurrencyLimitExceeded as exc:
                    LOGGER.warning("run_skipped", scenario_id=scenario.scenario_id, reason=str(exc))
            if self._stopping.wait(self.config.schedule_interval):
                break

    def _run_thread(self, machine: ProbeStateMachine) -> None:
        try:
            machine.execute()
        finally:
            with self._lock:
                self._live.pop(machine.run_id, None)
                self._finished[machine.run_id] = machine
                while len(self._finished) > FINISHED_HISTORY:
                    self._finished.popitem(last=False)
            self._slots.release()
            try:
                self.reporter.evaluate()
            except Exception:
                LOGGER.exception("threshold_evaluation_failed")
            with self._lock:
                self._threads.pop(machine.run_id, None)

"""Correlation store linking outbound stimuli to asynchronous webhook callbacks."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

import structlog

from .errors import DuplicateCorrelation
from .models import Expectation, InboundEvent

LOGGER = structlog.get_logger("journey_probe.correlation")

DEFAULT_CONSUMED_HISTORY = 64


@dataclass(frozen=True)
class CorrelationKey:
    """Synthetic contact id shared by the stimulus and the platform's callback.

    The platform never echoes a caller supplied id, so the run id is encoded into
    the recipient identity the probe talks as.
    """

    value: str

    @classmethod
    def for_run(cls, contact_prefix: str, run_id: str) -> "CorrelationKey":
        return cls(f"{contact_prefix}-{run_id}")

    @classmethod
    def from_event(cls, event: InboundEvent) -> Optional["CorrelationKey"]:
        if not event.recipient_id:
            return None
        return cls(event.recipient_id)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Matched:
    expectation: Expectation
    event: InboundEvent


@dataclass(frozen=True)
class NoMatch:
    reason: str


ResolveResult = Union[Matched, NoMatch]


class CorrelationStore:
    """Holds at most one live expectation per correlation key.

    All mutations happen under a single lock, so a resolve and a sweep racing for
    the same expectation can never both win.
    """

    def __init__(self, consumed_history: int = DEFAULT_CONSUMED_HISTORY) -> None:
        self._lock = threading.Lock()
        self._live: dict[str, Expectation] = {}
        self._consumed: dict[str, deque[str]] = {}
        self._consumed_history = consumed_history

    def register(self, key: CorrelationKey, expectation: Expectation) -> Expectation:
        if expectation.correlation_key != key.value:
            raise ValueError(
                f"Expectation key {expectation.correlation_key} does not match {key.value}"
            )
        with self._lock:
            if key.value in self._live:
                raise DuplicateCorrelation(key.value)
            self._live[key.value] = expectation
        LOGGER.debug(
            "expectation_registered",
            correlation_key=key.value,
            run_id=expectation.run_id,
            step_id=expectation.step_id,
        )
        return expectation

    def arm(self, key: CorrelationKey, expectation_id: str, deadline: datetime) -> Optional[Expectation]:
        """Set the deadline of a registered expectation; returns None if it is gone."""

        with self._lock:
            current = self._live.get(key.value)
            if current is None or current.expectation_id != expectation_id:
                return None
            armed = current.model_copy(update={"deadline": deadline})
            self._live[key.value] = armed
        return armed

    def resolve(
        self,
        key: CorrelationKey,
        event: InboundEvent,
        admit: Optional[Callable[[Expectation, InboundEvent], bool]] = None,
    ) -> ResolveResult:
        """Consume the live expectation for ``key`` with ``event``.

        ``admit`` is consulted under the store lock; when it refuses the event the
        expectation stays live, deadline included, and the result is
        ``NoMatch("wrong_step")``.
        """

        with self._lock:
            consumed = self._consumed.get(key.value)
            if event.message_id and consumed is not None and event.message_id in consumed:
                return NoMatch("duplicate")
            expectation = self._live.get(key.value)
            if expectation is None:
                return NoMatch("no_live_expectation")
            if admit is not None and not admit(expectation, event):
                return NoMatch("wrong_step")
            del self._live[key.value]
            if event.message_id:
                if consumed is None:
                    consumed = deque(maxlen=self._consumed_history)
                    self._consumed[key.value] = consumed
                consumed.append(event.message_id)
        return Matched(expectation=expectation, event=event)

    def sweep(self, now: datetime) -> list[Expectation]:
        """Remove and return every armed expectation whose deadline has passed."""

        with self._lock:
            expired = [
                expectation
                for expectation in self._live.values()
                if expectation.deadline is not None and expectation.deadline <= now
            ]
            for expectation in expired:
                del self._live[expectation.correlation_key]
        return expired

    def release(self, key: CorrelationKey, expectation_id: Optional[str] = None) -> Optional[Expectation]:
        with self._lock:
            current = self._live.get(key.value)
            if current is None:
                return None
            if expectation_id is not None and current.expectation_id != expectation_id:
                return None
            return self._live.pop(key.value)

    def release_run(self, run_id: str) -> list[Expectation]:
        with self._lock:
            released = [exp for exp in self._live.values() if exp.run_id == run_id]
            for expectation in released:
                del self._live[expectation.correlation_key]
        return released

    def forget(self, key: CorrelationKey) -> None:
        """Drop the consumed-message history of a finished run."""

        with self._lock:
            self._consumed.pop(key.value, None)

    def get(self, key: CorrelationKey) -> Optional[Expectation]:
        with self._lock:
            return self._live.get(key.value)

    def __len__(self) -> int:
        with self._lock:
            return len(self._live)
